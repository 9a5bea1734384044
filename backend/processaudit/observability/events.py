from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger('processaudit.audit')


def _emit(event_name: str, payload: dict[str, Any]) -> None:
    message = {
        'event': event_name,
        **payload,
    }
    logger.info(json.dumps(message, sort_keys=True, separators=(',', ':'), default=str))


def emit_webhook_rejected(*, provider: str, reason: str, correlation_id: str, payload_length: int) -> None:
    _emit(
        'webhook_rejected',
        {
            'provider': provider,
            'reason': reason,
            'correlation_id': correlation_id,
            'payload_length': payload_length,
            'blocked': True,
            'security_violation': reason in {'signature_mismatch', 'stale_timestamp'},
        },
    )


def emit_webhook_accepted(*, provider: str, correlation_id: str, payload_length: int) -> None:
    _emit(
        'webhook_accepted',
        {
            'provider': provider,
            'correlation_id': correlation_id,
            'payload_length': payload_length,
        },
    )


def emit_circuit_transition(*, target: str, prior_state: str, new_state: str, consecutive_failures: int) -> None:
    _emit(
        'circuit_transition',
        {
            'target': target,
            'prior_state': prior_state,
            'new_state': new_state,
            'consecutive_failures': consecutive_failures,
        },
    )


def emit_retry_outcome(
    *,
    provider: str,
    target: str,
    success: bool,
    attempts: int,
    correlation_id: str | None,
    reason_code: str | None = None,
) -> None:
    if success:
        outcome = 'succeeded_first_attempt' if attempts <= 1 else 'succeeded_after_retry'
    else:
        outcome = 'failed_after_attempts'
    _emit(
        'integration_retry_outcome',
        {
            'provider': provider,
            'target': target,
            'outcome': outcome,
            'attempts': attempts,
            'correlation_id': correlation_id,
            'reason_code': reason_code,
        },
    )


def emit_quota_warning(*, organization_id: str, provider: str, used: float, limit: float, percentage_used: float) -> None:
    _emit(
        'quota_warning',
        {
            'organization_id': organization_id,
            'provider': provider,
            'used': used,
            'limit': limit,
            'percentage_used': round(percentage_used, 2),
        },
    )
