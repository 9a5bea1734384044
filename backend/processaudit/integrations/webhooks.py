"""Inbound webhook authentication for PagerDuty and Slack.

Verification is pure: the same envelope and clock always produce the same
result. Expected rejections (missing inputs, stale timestamps, mismatched or
malformed signatures) are returned, never raised, so HTTP handlers can answer
every failure with the same unauthorized response.
"""

from __future__ import annotations

import binascii
from dataclasses import dataclass
from enum import Enum
import hashlib
import hmac
import logging
import time
import uuid

from processaudit.core.metrics import webhook_verifications_total
from processaudit.integrations.errors import WebhookVerificationError
from processaudit.observability.events import emit_webhook_accepted, emit_webhook_rejected


logger = logging.getLogger("processaudit.integrations.webhooks")

DEFAULT_TOLERANCE_SECONDS = 300
PAGERDUTY_SIGNATURE_VERSION = "v1"
SLACK_SIGNATURE_VERSION = "v0"


class SignatureScheme(str, Enum):
    RAW = "raw"
    TIMESTAMPED = "timestamped"


class VerificationReason(str, Enum):
    OK = "ok"
    MISSING_INPUT = "missing_input"
    STALE_TIMESTAMP = "stale_timestamp"
    SIGNATURE_MISMATCH = "signature_mismatch"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class WebhookEnvelope:
    raw_payload: str | bytes | None
    provided_signature: str | None
    secret: str | None
    provided_timestamp: str | int | None = None


@dataclass(frozen=True)
class WebhookVerification:
    valid: bool
    reason: VerificationReason

    def __bool__(self) -> bool:
        return self.valid


def _as_bytes(value: str | bytes) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def _hex_digest(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_pagerduty_payload(raw_payload: str | bytes, secret: str) -> str:
    return f"{PAGERDUTY_SIGNATURE_VERSION}={_hex_digest(secret, _as_bytes(raw_payload))}"


def slack_base_string(raw_payload: str | bytes, timestamp: str | int) -> bytes:
    return f"{SLACK_SIGNATURE_VERSION}:{timestamp}:".encode("utf-8") + _as_bytes(raw_payload)


def sign_slack_payload(raw_payload: str | bytes, timestamp: str | int, secret: str) -> str:
    return f"{SLACK_SIGNATURE_VERSION}={_hex_digest(secret, slack_base_string(raw_payload, timestamp))}"


def _signature_candidates(header: str, version: str) -> list[bytes]:
    # PagerDuty sends several comma-separated signatures while rotating secrets.
    candidates: list[bytes] = []
    for part in header.split(","):
        value = part.strip()
        prefix = f"{version}="
        if value.startswith(prefix):
            value = value[len(prefix):]
        elif "=" in value:
            continue
        candidates.append(binascii.unhexlify(value))
    return candidates


def _single_signature(header: str, version: str) -> list[bytes]:
    # Slack sends exactly one versioned signature; there is no rotation list.
    prefix = f"{version}="
    if not header.startswith(prefix) or "," in header:
        raise ValueError("unexpected signature format")
    return [binascii.unhexlify(header[len(prefix):])]


def _matches_any(expected_hex: str, candidates: list[bytes]) -> bool:
    expected = binascii.unhexlify(expected_hex)
    matched = False
    for candidate in candidates:
        # Evaluate every candidate so timing does not reveal which one matched.
        matched = hmac.compare_digest(expected, candidate) | matched
    return matched


def verify(
    envelope: WebhookEnvelope,
    scheme: SignatureScheme,
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> WebhookVerification:
    if not envelope.raw_payload or not envelope.provided_signature or not envelope.secret:
        return WebhookVerification(False, VerificationReason.MISSING_INPUT)
    if scheme == SignatureScheme.TIMESTAMPED and envelope.provided_timestamp in (None, ""):
        return WebhookVerification(False, VerificationReason.MISSING_INPUT)

    try:
        payload = _as_bytes(envelope.raw_payload)
        if scheme == SignatureScheme.TIMESTAMPED:
            raw_timestamp = str(envelope.provided_timestamp).strip()
            timestamp = int(raw_timestamp)
            now_value = time.time() if now is None else now
            if abs(now_value - timestamp) > tolerance_seconds:
                return WebhookVerification(False, VerificationReason.STALE_TIMESTAMP)
            expected_hex = _hex_digest(envelope.secret, slack_base_string(payload, raw_timestamp))
            candidates = _single_signature(envelope.provided_signature.strip(), SLACK_SIGNATURE_VERSION)
        else:
            expected_hex = _hex_digest(envelope.secret, payload)
            candidates = _signature_candidates(envelope.provided_signature.strip(), PAGERDUTY_SIGNATURE_VERSION)
    except (ValueError, TypeError, binascii.Error):
        return WebhookVerification(False, VerificationReason.MALFORMED)

    if not candidates:
        return WebhookVerification(False, VerificationReason.MALFORMED)
    if _matches_any(expected_hex, candidates):
        return WebhookVerification(True, VerificationReason.OK)
    return WebhookVerification(False, VerificationReason.SIGNATURE_MISMATCH)


def verify_and_audit(
    envelope: WebhookEnvelope,
    scheme: SignatureScheme,
    *,
    provider: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
    correlation_id: str | None = None,
) -> WebhookVerification:
    correlation_id = correlation_id or f"{provider}_webhook_{uuid.uuid4().hex[:12]}"
    result = verify(envelope, scheme, tolerance_seconds=tolerance_seconds, now=now)
    payload_length = len(envelope.raw_payload or b"")
    webhook_verifications_total.labels(provider=provider, result=result.reason.value).inc()
    if result.valid:
        logger.info("%s webhook validated", provider, extra={"correlation_id": correlation_id})
        emit_webhook_accepted(provider=provider, correlation_id=correlation_id, payload_length=payload_length)
        return result

    if result.reason == VerificationReason.MISSING_INPUT:
        logger.warning(
            "%s webhook validation failed - missing parameters",
            provider,
            extra={
                "correlation_id": correlation_id,
                "has_payload": bool(envelope.raw_payload),
                "has_signature": bool(envelope.provided_signature),
                "has_secret": bool(envelope.secret),
                "has_timestamp": envelope.provided_timestamp not in (None, ""),
            },
        )
    elif result.reason == VerificationReason.STALE_TIMESTAMP:
        logger.warning(
            "%s webhook timestamp outside replay window",
            provider,
            extra={"correlation_id": correlation_id, "reason": result.reason.value},
        )
    else:
        logger.warning(
            "%s webhook signature validation failed",
            provider,
            extra={"correlation_id": correlation_id, "reason": result.reason.value},
        )
    emit_webhook_rejected(
        provider=provider,
        reason=result.reason.value,
        correlation_id=correlation_id,
        payload_length=payload_length,
    )
    return result


def verify_pagerduty_signature(*, payload: str | bytes | None, signature: str | None, secret: str | None) -> bool:
    envelope = WebhookEnvelope(raw_payload=payload, provided_signature=signature, secret=secret)
    return verify_and_audit(envelope, SignatureScheme.RAW, provider="pagerduty").valid


def verify_slack_signature(
    *,
    payload: str | bytes | None,
    timestamp: str | int | None,
    signature: str | None,
    signing_secret: str | None,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> bool:
    envelope = WebhookEnvelope(
        raw_payload=payload,
        provided_signature=signature,
        secret=signing_secret,
        provided_timestamp=timestamp,
    )
    return verify_and_audit(
        envelope,
        SignatureScheme.TIMESTAMPED,
        provider="slack",
        tolerance_seconds=tolerance_seconds,
        now=now,
    ).valid


def require_valid_webhook(
    envelope: WebhookEnvelope,
    scheme: SignatureScheme,
    *,
    provider: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    result = verify_and_audit(envelope, scheme, provider=provider, tolerance_seconds=tolerance_seconds, now=now)
    if not result.valid:
        raise WebhookVerificationError(provider=provider, reason=result.reason.value)
