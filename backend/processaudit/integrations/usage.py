from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
import logging
import math
from threading import Lock
import time
from typing import Any, Callable, Mapping, Protocol

from processaudit.core.settings import Settings
from processaudit.integrations.errors import QuotaExceededError
from processaudit.observability.events import emit_quota_warning


logger = logging.getLogger("processaudit.integrations.usage")


class Provider(str, Enum):
    CLAUDE = "claude"
    OPENAI = "openai"
    PAGERDUTY = "pagerduty"
    SLACK = "slack"


class InvalidUsageError(ValueError):
    pass


@dataclass
class UsageRecord:
    organization_id: str
    provider: str
    window_start: float
    window_end: float
    count: int = 0
    amount: float = 0.0
    successes: int = 0
    failures: int = 0
    total_cost: float = 0.0
    cost_samples: int = 0
    total_response_ms: float = 0.0
    response_samples: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class ThresholdCheck:
    within_limit: bool
    remaining: float
    percentage_used: float
    warning: bool
    used: float
    limit: float


@dataclass(frozen=True)
class UsageStats:
    organization_id: str
    provider: str | None
    total_requests: int
    total_amount: float
    successes: int
    failures: int
    success_rate: float | None
    average_cost: float | None
    average_response_time_ms: float | None
    total_cost: float
    input_tokens: int
    output_tokens: int


class UsageStore(Protocol):
    def record(self, organization_id: str, provider: str, amount: float, metadata: Mapping[str, Any]) -> UsageRecord:
        ...

    def read(self, organization_id: str, provider: str) -> UsageRecord:
        ...

    def all_for(self, organization_id: str) -> list[UsageRecord]:
        ...


def _window_bounds(now: float, window_seconds: int) -> tuple[float, float]:
    start = math.floor(now / window_seconds) * window_seconds
    return float(start), float(start + window_seconds)


class InMemoryUsageStore:
    """Process-local usage windows, serialized per (organization, provider) key."""

    def __init__(self, *, window_seconds: int = 86400, clock: Callable[[], float] = time.time) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be greater than 0")
        self.window_seconds = window_seconds
        self._clock = clock
        self._records: dict[tuple[str, str], UsageRecord] = {}
        self._key_locks: dict[tuple[str, str], Lock] = {}
        self._registry_lock = Lock()

    def _lock_for(self, key: tuple[str, str]) -> Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = Lock()
                self._key_locks[key] = lock
            return lock

    def _baseline(self, organization_id: str, provider: str, now: float) -> UsageRecord:
        window_start, window_end = _window_bounds(now, self.window_seconds)
        return UsageRecord(
            organization_id=organization_id,
            provider=provider,
            window_start=window_start,
            window_end=window_end,
        )

    def record(self, organization_id: str, provider: str, amount: float, metadata: Mapping[str, Any]) -> UsageRecord:
        key = (organization_id, provider)
        with self._lock_for(key):
            now = self._clock()
            current = self._records.get(key)
            if current is None or now >= current.window_end:
                current = self._baseline(organization_id, provider, now)
                self._records[key] = current
            current.count += 1
            current.amount += amount
            success = metadata.get("success")
            if success is True:
                current.successes += 1
            elif success is False:
                current.failures += 1
            cost = metadata.get("cost")
            if cost is not None:
                current.total_cost += float(cost)
                current.cost_samples += 1
            response_time_ms = metadata.get("response_time_ms")
            if response_time_ms is not None:
                current.total_response_ms += float(response_time_ms)
                current.response_samples += 1
            current.input_tokens += int(metadata.get("input_tokens") or 0)
            current.output_tokens += int(metadata.get("output_tokens") or 0)
            return replace(current)

    def read(self, organization_id: str, provider: str) -> UsageRecord:
        key = (organization_id, provider)
        with self._lock_for(key):
            now = self._clock()
            current = self._records.get(key)
            if current is None or now >= current.window_end:
                return self._baseline(organization_id, provider, now)
            return replace(current)

    def all_for(self, organization_id: str) -> list[UsageRecord]:
        with self._registry_lock:
            providers = sorted(provider for org, provider in self._records if org == organization_id)
        return [self.read(organization_id, provider) for provider in providers]


def _provider_key(provider: Provider | str) -> str:
    if isinstance(provider, Provider):
        return provider.value
    return str(provider).strip().lower()


class UsageTracker:
    def __init__(self, store: UsageStore, *, soft_threshold: float = 0.9) -> None:
        if not 0 < soft_threshold <= 1:
            raise ValueError("soft_threshold must be within (0, 1]")
        self._store = store
        self.soft_threshold = soft_threshold

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Callable[[], float] = time.time) -> "UsageTracker":
        store = InMemoryUsageStore(window_seconds=settings.usage_window_seconds, clock=clock)
        return cls(store, soft_threshold=settings.usage_soft_threshold)

    def record(
        self,
        organization_id: str,
        provider: Provider | str,
        amount: float = 1,
        metadata: Mapping[str, Any] | None = None,
    ) -> UsageRecord:
        if not organization_id:
            raise InvalidUsageError("organization_id is required")
        provider_key = _provider_key(provider)
        if provider_key not in {item.value for item in Provider}:
            raise InvalidUsageError(f"unsupported provider '{provider_key}'")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise InvalidUsageError("amount must be numeric")
        if not math.isfinite(amount) or amount < 0:
            raise InvalidUsageError("amount must be a finite, non-negative number")
        return self._store.record(organization_id, provider_key, float(amount), metadata or {})

    def record_ai_usage(
        self,
        organization_id: str,
        provider: Provider | str,
        *,
        input_tokens: int,
        output_tokens: int,
        cost: float | None = None,
        response_time_ms: float | None = None,
        success: bool = True,
    ) -> UsageRecord:
        metadata: dict[str, Any] = {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "success": success,
        }
        if cost is not None:
            metadata["cost"] = cost
        if response_time_ms is not None:
            metadata["response_time_ms"] = response_time_ms
        return self.record(organization_id, provider, input_tokens + output_tokens, metadata)

    def check_threshold(self, organization_id: str, provider: Provider | str, limit: float) -> ThresholdCheck:
        if not math.isfinite(limit) or limit <= 0:
            raise InvalidUsageError("limit must be a finite, positive number")
        provider_key = _provider_key(provider)
        used = self._store.read(organization_id, provider_key).amount
        percentage_used = used / limit * 100
        within_limit = used <= limit
        warning = used >= self.soft_threshold * limit
        if warning and within_limit:
            emit_quota_warning(
                organization_id=organization_id,
                provider=provider_key,
                used=used,
                limit=limit,
                percentage_used=percentage_used,
            )
        return ThresholdCheck(
            within_limit=within_limit,
            remaining=max(0.0, limit - used),
            percentage_used=percentage_used,
            warning=warning,
            used=used,
            limit=limit,
        )

    def enforce(self, organization_id: str, provider: Provider | str, limit: float, *, amount: float = 1) -> ThresholdCheck:
        check = self.check_threshold(organization_id, provider, limit)
        if check.used + amount > limit:
            logger.warning(
                "usage quota exceeded",
                extra={"organization_id": organization_id, "provider": _provider_key(provider)},
            )
            raise QuotaExceededError(
                f"Usage quota exceeded for {_provider_key(provider)}.",
                organization_id=organization_id,
                used=check.used,
                limit=limit,
                provider=_provider_key(provider),
            )
        return check

    def get_usage_stats(self, organization_id: str, provider: Provider | str | None = None) -> UsageStats:
        if provider is None:
            records = self._store.all_for(organization_id)
            provider_key = None
        else:
            provider_key = _provider_key(provider)
            records = [self._store.read(organization_id, provider_key)]

        total_requests = sum(item.count for item in records)
        successes = sum(item.successes for item in records)
        failures = sum(item.failures for item in records)
        total_cost = sum(item.total_cost for item in records)
        cost_samples = sum(item.cost_samples for item in records)
        response_ms = sum(item.total_response_ms for item in records)
        response_samples = sum(item.response_samples for item in records)
        outcomes = successes + failures
        return UsageStats(
            organization_id=organization_id,
            provider=provider_key,
            total_requests=total_requests,
            total_amount=sum(item.amount for item in records),
            successes=successes,
            failures=failures,
            success_rate=successes / outcomes if outcomes else None,
            average_cost=total_cost / cost_samples if cost_samples else None,
            average_response_time_ms=response_ms / response_samples if response_samples else None,
            total_cost=total_cost,
            input_tokens=sum(item.input_tokens for item in records),
            output_tokens=sum(item.output_tokens for item in records),
        )
