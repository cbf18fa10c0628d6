"""
Tests for the quota ledger:
- limit boundaries and all-or-nothing consumption
- window rollover and key derivation
- usage reporting and stale counter purging
"""

import asyncio
import uuid
from datetime import datetime, timezone

import pytest

from trackcore.config import QuotaConfig, QuotaWindow
from trackcore.errors import QuotaExceededError, ValidationError
from trackcore.services.quota_ledger import QuotaLedger, window_bounds

DAILY = QuotaWindow(name="daily_limit", limit=100, period="day")


@pytest.fixture
def daily_ledger(session_factory, clock) -> QuotaLedger:
    """Ledger with a single daily window, so rate limits stay out of the way."""
    config = QuotaConfig.from_limits({"llm": {"daily_limit": 100}})
    return QuotaLedger(session_factory, config, clock=clock)


async def _consumed(ledger: QuotaLedger, user_id, dimension: str = "llm") -> dict[str, int]:
    return {usage.window: usage.consumed for usage in await ledger.get_usage(user_id, dimension)}


class TestCheckAndConsume:
    """QuotaLedger.check_and_consume() tests."""

    async def test_reaching_limit_exactly_is_allowed(self, daily_ledger, user_id):
        assert await daily_ledger.check_and_consume(user_id, "llm", amount=99)
        assert await daily_ledger.check_and_consume(user_id, "llm", amount=1)

        assert await _consumed(daily_ledger, user_id) == {"daily_limit": 100}

    async def test_exceeding_limit_is_denied_without_consuming(self, daily_ledger, user_id):
        assert await daily_ledger.check_and_consume(user_id, "llm", amount=100)

        assert not await daily_ledger.check_and_consume(user_id, "llm", amount=1)
        assert await _consumed(daily_ledger, user_id) == {"daily_limit": 100}

    async def test_large_request_denied_even_when_counter_is_empty(self, daily_ledger, user_id):
        assert not await daily_ledger.check_and_consume(user_id, "llm", amount=101)
        assert await _consumed(daily_ledger, user_id) == {"daily_limit": 0}

    async def test_denial_in_one_window_leaves_others_untouched(self, ledger, user_id):
        # Rate window allows 10 per minute, daily allows 100
        for _ in range(10):
            assert await ledger.check_and_consume(user_id, "llm")

        assert not await ledger.check_and_consume(user_id, "llm")
        assert await _consumed(ledger, user_id) == {"daily_limit": 10, "rate_limit": 10}

    async def test_rate_window_rolls_over(self, ledger, user_id, clock):
        assert await ledger.check_and_consume(user_id, "llm", amount=10)
        assert not await ledger.check_and_consume(user_id, "llm")

        clock.advance(seconds=60)

        assert await ledger.check_and_consume(user_id, "llm")
        assert await _consumed(ledger, user_id) == {"daily_limit": 11, "rate_limit": 1}

    async def test_daily_window_rolls_over_at_utc_midnight(self, daily_ledger, user_id, clock):
        assert await daily_ledger.check_and_consume(user_id, "llm", amount=100)

        clock.advance(hours=12)

        assert await daily_ledger.check_and_consume(user_id, "llm")
        assert await _consumed(daily_ledger, user_id) == {"daily_limit": 1}

    async def test_users_have_separate_counters(self, daily_ledger):
        alice, bob = uuid.uuid4(), uuid.uuid4()
        assert await daily_ledger.check_and_consume(alice, "llm", amount=100)

        assert await daily_ledger.check_and_consume(bob, "llm", amount=100)

    async def test_explicit_windows_override_config(self, ledger, user_id):
        tight = [QuotaWindow(name="daily_limit", limit=2, period="day")]

        assert await ledger.check_and_consume(user_id, "llm", windows=tight)
        assert await ledger.check_and_consume(user_id, "llm", windows=tight)
        assert not await ledger.check_and_consume(user_id, "llm", windows=tight)

    async def test_unconfigured_dimension_is_denied(self, ledger, user_id):
        assert not await ledger.check_and_consume(user_id, "unknown")

    @pytest.mark.parametrize("amount", [0, -1, True, 1.5])
    async def test_invalid_amount_raises(self, ledger, user_id, amount):
        with pytest.raises(ValidationError) as exc_info:
            await ledger.check_and_consume(user_id, "llm", amount=amount)

        assert exc_info.value.code == "INVALID_AMOUNT"

    async def test_concurrent_requests_never_overshoot(self, ledger, user_id):
        results = await asyncio.gather(
            *(ledger.check_and_consume(user_id, "llm") for _ in range(15))
        )

        assert results.count(True) == 10
        assert await _consumed(ledger, user_id) == {"daily_limit": 10, "rate_limit": 10}


class TestRequire:
    async def test_denial_carries_window_details(self, daily_ledger, user_id):
        await daily_ledger.require(user_id, "llm", amount=100)

        with pytest.raises(QuotaExceededError) as exc_info:
            await daily_ledger.require(user_id, "llm")

        error = exc_info.value
        assert error.code == "QUOTA_EXCEEDED"
        assert error.status_code == 429
        assert error.details["window"] == "daily_limit"

    async def test_unconfigured_dimension_has_own_code(self, ledger, user_id):
        with pytest.raises(QuotaExceededError) as exc_info:
            await ledger.require(user_id, "unknown")

        assert exc_info.value.code == "QUOTA_NOT_CONFIGURED"


class TestUsage:
    async def test_usage_of_fresh_user_is_zero(self, ledger, user_id):
        usage = await ledger.get_usage(user_id, "llm")

        assert [(u.window, u.consumed, u.remaining) for u in usage] == [
            ("daily_limit", 0, 100),
            ("rate_limit", 0, 10),
        ]

    async def test_usage_reports_remaining(self, ledger, user_id):
        await ledger.check_and_consume(user_id, "llm", amount=4)

        usage = {u.window: u for u in await ledger.get_usage(user_id, "llm")}

        assert usage["daily_limit"].remaining == 96
        assert usage["rate_limit"].remaining == 6
        assert usage["daily_limit"].window_key == "daily_limit:2026-10-17"

    async def test_usage_of_unconfigured_dimension_is_empty(self, ledger, user_id):
        assert await ledger.get_usage(user_id, "unknown") == []

    def test_list_quota_definitions(self, ledger):
        assert ledger.list_quota_definitions() == ["llm.daily_limit", "llm.rate_limit"]


class TestPurgeStale:
    async def test_purges_only_ended_windows(self, ledger, user_id, clock):
        await ledger.check_and_consume(user_id, "llm")
        clock.advance(minutes=5)

        # Only the rate window of the first call has ended
        assert await ledger.purge_stale() == 1
        assert await _consumed(ledger, user_id) == {"daily_limit": 1, "rate_limit": 0}

    async def test_purge_with_explicit_cutoff(self, ledger, user_id):
        await ledger.check_and_consume(user_id, "llm")

        removed = await ledger.purge_stale(before=datetime(2026, 10, 19, tzinfo=timezone.utc))

        assert removed == 2


class TestWindowBounds:
    def test_day_window_starts_at_utc_midnight(self):
        key, ends_at = window_bounds(DAILY, datetime(2026, 10, 17, 23, 59, 59, tzinfo=timezone.utc))

        assert key == "daily_limit:2026-10-17"
        assert ends_at == datetime(2026, 10, 18, tzinfo=timezone.utc)

    def test_rate_window_is_epoch_aligned(self):
        window = QuotaWindow(name="rate_limit", limit=10, period=60)

        key, ends_at = window_bounds(window, datetime(2026, 10, 17, 12, 0, 42, tzinfo=timezone.utc))

        assert key == "rate_limit:2026-10-17T12:00:00Z"
        assert ends_at == datetime(2026, 10, 17, 12, 1, tzinfo=timezone.utc)

    def test_defaults_to_current_time(self, frozen_time):
        with frozen_time("2026-02-01 08:30:00"):
            key, _ = window_bounds(DAILY)

        assert key == "daily_limit:2026-02-01"

    def test_non_positive_period_is_rejected(self):
        with pytest.raises(ValueError):
            window_bounds(QuotaWindow(name="rate_limit", limit=1, period=0), datetime.now(timezone.utc))


class TestRefund:
    async def test_refund_restores_every_window(self, ledger, user_id):
        await ledger.require(user_id, "llm", amount=3)
        charge = await ledger.require(user_id, "llm", amount=2)

        assert await ledger.refund(charge)
        assert await _consumed(ledger, user_id) == {"daily_limit": 3, "rate_limit": 3}

    async def test_refund_after_rollover_leaves_new_window_alone(self, ledger, user_id, clock):
        charge = await ledger.require(user_id, "llm", amount=2)
        clock.advance(seconds=60)
        await ledger.require(user_id, "llm", amount=1)

        await ledger.refund(charge)

        # Daily window is shared; the old rate window is credited, not the new one
        assert await _consumed(ledger, user_id) == {"daily_limit": 1, "rate_limit": 1}

    async def test_refund_reopens_exhausted_quota(self, daily_ledger, user_id):
        charge = await daily_ledger.require(user_id, "llm", amount=100)
        await daily_ledger.refund(charge)

        assert await daily_ledger.check_and_consume(user_id, "llm", amount=100)


class TestDuplicateWindows:
    async def test_repeated_window_name_is_rejected(self, ledger, user_id):
        windows = [DAILY, DAILY]

        with pytest.raises(ValidationError) as exc_info:
            await ledger.require(user_id, "llm", amount=60, windows=windows)

        assert exc_info.value.code == "DUPLICATE_WINDOW"
        assert await _consumed(ledger, user_id) == {"daily_limit": 0, "rate_limit": 0}

    async def test_limit_holds_with_distinct_windows(self, ledger, user_id):
        windows = [DAILY, QuotaWindow(name="hourly_limit", limit=100, period=3600)]

        assert await ledger.check_and_consume(user_id, "llm", amount=60, windows=windows)
        assert not await ledger.check_and_consume(user_id, "llm", amount=60, windows=windows)


class TestOverrides:
    @pytest.fixture
    def override_ledger(self, session_factory, clock):
        def _ledger(**layers) -> QuotaLedger:
            config = QuotaConfig.from_limits({"llm": {"daily_limit": 5}}, **layers)
            return QuotaLedger(session_factory, config, clock=clock)

        return _ledger

    async def test_user_override_raises_limit(self, override_ledger, user_id):
        ledger = override_ledger(user_overrides={str(user_id): {"llm": {"daily_limit": 8}}})

        assert await ledger.check_and_consume(user_id, "llm", amount=8)
        assert not await ledger.check_and_consume(user_id, "llm")

    async def test_user_override_lowers_limit(self, override_ledger, user_id):
        ledger = override_ledger(user_overrides={str(user_id): {"llm": {"daily_limit": 2}}})

        assert not await ledger.check_and_consume(user_id, "llm", amount=3)
        assert await ledger.check_and_consume(user_id, "llm", amount=2)

    async def test_override_only_applies_to_its_user(self, override_ledger, user_id):
        ledger = override_ledger(user_overrides={str(user_id): {"llm": {"daily_limit": 50}}})

        assert not await ledger.check_and_consume(uuid.uuid4(), "llm", amount=6)

    async def test_group_limits_apply_to_members(self, override_ledger, user_id):
        ledger = override_ledger(
            group_limits={"pro": {"llm": {"daily_limit": 20}}},
            user_groups={str(user_id): "pro"},
        )

        assert await ledger.check_and_consume(user_id, "llm", amount=20)

    async def test_user_override_beats_group(self, override_ledger, user_id):
        ledger = override_ledger(
            group_limits={"pro": {"llm": {"daily_limit": 20}}},
            user_groups={str(user_id): "pro"},
            user_overrides={str(user_id): {"llm": {"daily_limit": 1}}},
        )

        assert not await ledger.check_and_consume(user_id, "llm", amount=2)

    async def test_override_can_add_a_window(self, override_ledger, user_id):
        ledger = override_ledger(user_overrides={str(user_id): {"llm": {"rate_limit": 1}}})

        assert await ledger.check_and_consume(user_id, "llm")
        assert not await ledger.check_and_consume(user_id, "llm")

    async def test_usage_reports_effective_limit(self, override_ledger, user_id):
        ledger = override_ledger(user_overrides={str(user_id): {"llm": {"daily_limit": 8}}})

        usage = await ledger.get_usage(user_id, "llm")

        assert [(u.window, u.limit, u.remaining) for u in usage] == [("daily_limit", 8, 8)]
