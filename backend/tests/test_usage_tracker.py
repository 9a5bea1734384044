from concurrent.futures import ThreadPoolExecutor
import logging

import pytest

from processaudit.integrations.errors import QuotaExceededError
from processaudit.integrations.usage import InMemoryUsageStore, InvalidUsageError, Provider, UsageTracker


def _tracker(clock=lambda: 1_000.0, *, window_seconds: int = 86400, soft_threshold: float = 0.9) -> UsageTracker:
    return UsageTracker(InMemoryUsageStore(window_seconds=window_seconds, clock=clock), soft_threshold=soft_threshold)


def test_threshold_check_reports_remaining_and_percentage() -> None:
    tracker = _tracker()
    tracker.record("org_1", Provider.CLAUDE, 89)
    check = tracker.check_threshold("org_1", Provider.CLAUDE, 100)
    assert check.within_limit is True
    assert check.warning is False
    assert check.remaining == 11.0
    assert check.percentage_used == pytest.approx(89.0)


def test_threshold_warning_starts_at_soft_limit() -> None:
    tracker = _tracker()
    tracker.record("org_1", "openai", 90)
    check = tracker.check_threshold("org_1", "openai", 100)
    assert check.within_limit is True
    assert check.warning is True


def test_usage_at_limit_is_still_within_limit() -> None:
    tracker = _tracker()
    tracker.record("org_1", Provider.SLACK, 100)
    check = tracker.check_threshold("org_1", Provider.SLACK, 100)
    assert check.within_limit is True
    assert check.remaining == 0.0


def test_usage_over_limit_is_reported_not_raised() -> None:
    tracker = _tracker()
    tracker.record("org_1", Provider.SLACK, 101)
    check = tracker.check_threshold("org_1", Provider.SLACK, 100)
    assert check.within_limit is False
    assert check.warning is True
    assert check.remaining == 0.0


def test_usage_is_isolated_per_organization_and_provider() -> None:
    tracker = _tracker()
    tracker.record("org_1", Provider.CLAUDE, 50)
    assert tracker.check_threshold("org_2", Provider.CLAUDE, 100).used == 0.0
    assert tracker.check_threshold("org_1", Provider.OPENAI, 100).used == 0.0


def test_usage_window_rolls_over() -> None:
    now = {"value": 1_000.0}
    tracker = _tracker(lambda: now["value"], window_seconds=60)
    tracker.record("org_1", Provider.PAGERDUTY, 5)
    assert tracker.check_threshold("org_1", Provider.PAGERDUTY, 10).used == 5.0
    now["value"] = 1_020.0
    assert tracker.check_threshold("org_1", Provider.PAGERDUTY, 10).used == 0.0
    record = tracker.record("org_1", Provider.PAGERDUTY, 1)
    assert record.window_start == 1_020.0
    assert record.amount == 1.0


def test_unknown_provider_reads_as_empty_baseline() -> None:
    tracker = _tracker()
    check = tracker.check_threshold("org_1", "gemini", 10)
    assert check.used == 0.0
    assert check.within_limit is True


@pytest.mark.parametrize(
    ("organization_id", "provider", "amount"),
    [
        ("", Provider.CLAUDE, 1),
        ("org_1", "gemini", 1),
        ("org_1", Provider.CLAUDE, -1),
        ("org_1", Provider.CLAUDE, float("nan")),
        ("org_1", Provider.CLAUDE, float("inf")),
        ("org_1", Provider.CLAUDE, True),
        ("org_1", Provider.CLAUDE, "10"),
    ],
)
def test_record_rejects_invalid_input(organization_id, provider, amount) -> None:
    tracker = _tracker()
    with pytest.raises(InvalidUsageError):
        tracker.record(organization_id, provider, amount)


@pytest.mark.parametrize("limit", [0, -5, float("inf")])
def test_threshold_rejects_invalid_limit(limit) -> None:
    with pytest.raises(InvalidUsageError):
        _tracker().check_threshold("org_1", Provider.CLAUDE, limit)


def test_enforce_raises_quota_exceeded_before_the_call() -> None:
    tracker = _tracker()
    tracker.record("org_1", Provider.CLAUDE, 99)
    tracker.enforce("org_1", Provider.CLAUDE, 100, amount=1)
    tracker.record("org_1", Provider.CLAUDE, 1)
    with pytest.raises(QuotaExceededError) as exc:
        tracker.enforce("org_1", Provider.CLAUDE, 100, amount=1)
    assert exc.value.used == 100.0
    assert exc.value.limit == 100
    assert exc.value.reason_code == "quota_exceeded"


def test_soft_threshold_crossing_emits_quota_warning(caplog) -> None:
    caplog.set_level(logging.INFO, logger="processaudit.audit")
    tracker = _tracker()
    tracker.record("org_1", Provider.OPENAI, 95)
    tracker.check_threshold("org_1", Provider.OPENAI, 100)
    messages = [record.getMessage() for record in caplog.records if record.name == "processaudit.audit"]
    assert any('"event":"quota_warning"' in message and '"organization_id":"org_1"' in message for message in messages)


def test_usage_stats_aggregate_ai_usage() -> None:
    tracker = _tracker()
    tracker.record_ai_usage("org_1", Provider.CLAUDE, input_tokens=100, output_tokens=50, cost=0.02, response_time_ms=200)
    tracker.record_ai_usage(
        "org_1",
        Provider.CLAUDE,
        input_tokens=10,
        output_tokens=0,
        cost=0.04,
        response_time_ms=400,
        success=False,
    )
    stats = tracker.get_usage_stats("org_1", Provider.CLAUDE)
    assert stats.total_requests == 2
    assert stats.total_amount == 160.0
    assert stats.success_rate == 0.5
    assert stats.average_cost == pytest.approx(0.03)
    assert stats.average_response_time_ms == pytest.approx(300.0)
    assert stats.input_tokens == 110
    assert stats.output_tokens == 50


def test_usage_stats_across_providers() -> None:
    tracker = _tracker()
    tracker.record("org_1", Provider.SLACK, 2, {"success": True})
    tracker.record("org_1", Provider.PAGERDUTY, 3, {"success": True})
    tracker.record("org_2", Provider.PAGERDUTY, 7, {"success": True})
    stats = tracker.get_usage_stats("org_1")
    assert stats.provider is None
    assert stats.total_requests == 2
    assert stats.total_amount == 5.0
    assert stats.success_rate == 1.0
    assert stats.average_cost is None


def test_concurrent_records_are_not_lost() -> None:
    tracker = _tracker()

    def _record(_: int) -> None:
        for _ in range(250):
            tracker.record("org_1", Provider.CLAUDE, 1)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(_record, range(8)))

    assert tracker.check_threshold("org_1", Provider.CLAUDE, 10_000).used == 2000.0
    assert tracker.get_usage_stats("org_1", Provider.CLAUDE).total_requests == 2000


def test_recorded_amounts_accumulate_within_window() -> None:
    tracker = _tracker()
    tracker.record("org_1", Provider.CLAUDE, 10)
    tracker.record("org_1", Provider.CLAUDE, 15)
    check = tracker.check_threshold("org_1", Provider.CLAUDE, 200)
    assert check.used == 25.0
    assert check.percentage_used == pytest.approx(12.5)


def test_free_plan_daily_limit() -> None:
    tracker = _tracker()
    tracker.record("org_free_456", Provider.CLAUDE, 45)
    check = tracker.check_threshold("org_free_456", Provider.CLAUDE, 50)
    assert (check.within_limit, check.remaining, check.warning) == (True, 5.0, True)
    assert check.percentage_used == pytest.approx(90.0)

    tracker.record("org_free_456", Provider.CLAUDE, 10)
    check = tracker.check_threshold("org_free_456", Provider.CLAUDE, 50)
    assert check.within_limit is False
    assert check.remaining == 0.0
    assert check.percentage_used == pytest.approx(110.0)
