"""Tests for the rate limiter: budget, per-agent quota and reservations."""

import pytest

from citytalk import QuotaSettings, RateLimiter, VirtualClock
from citytalk.errors import BudgetExhaustedError, ParticipantsBusyError


def make_limiter(**overrides):
    clock = VirtualClock()
    return RateLimiter(QuotaSettings(**overrides), clock), clock


def test_reserve_is_all_or_nothing():
    limiter, _ = make_limiter()
    limiter.reserve(["alice", "bob"])

    with pytest.raises(ParticipantsBusyError) as excinfo:
        limiter.reserve(["carol", "bob"])

    assert excinfo.value.agent_ids == ["bob"]
    assert not limiter.is_busy("carol")
    assert limiter.quota_for("carol").count == 0
    assert limiter.busy_agents == {"alice", "bob"}


def test_reserve_rejects_duplicate_participants():
    limiter, _ = make_limiter()
    with pytest.raises(ParticipantsBusyError):
        limiter.reserve(["alice", "alice"])
    assert limiter.busy_agents == set()


def test_release_is_idempotent():
    limiter, _ = make_limiter()
    limiter.reserve(["alice"])
    limiter.release(["alice"])
    limiter.release(["alice", "nobody"])
    assert not limiter.is_busy("alice")


def test_daily_cap_blocks_until_reset():
    limiter, clock = make_limiter(
        max_daily_conversations_per_agent=2,
        min_conversation_cooldown_seconds=0,
    )
    for _ in range(2):
        assert limiter.can_start("alice")
        limiter.reserve(["alice"])
        limiter.release(["alice"])
        clock.advance(1)

    assert limiter.quota_for("alice").count == 2
    assert not limiter.can_start("alice")

    limiter.reset_daily()
    assert limiter.can_start("alice")


def test_cooldown_stretches_with_call_volume():
    limiter, clock = make_limiter(
        min_conversation_cooldown_seconds=60,
        dynamic_cooldown_multiplier=0.1,
    )
    for _ in range(10):
        limiter.consume_call()
    assert limiter.cooldown_seconds() == pytest.approx(120)

    limiter.reserve(["alice"])
    limiter.release(["alice"])

    clock.advance(90)
    assert not limiter.can_start("alice")
    clock.advance(31)
    assert limiter.can_start("alice")


def test_budget_exhaustion():
    limiter, _ = make_limiter(max_daily_calls=5)
    for _ in range(5):
        limiter.consume_call()

    assert limiter.budget_exhausted
    assert limiter.remaining_budget == 0
    assert not limiter.can_start("alice")

    with pytest.raises(BudgetExhaustedError) as excinfo:
        limiter.consume_call()
    assert excinfo.value.used == 5
    assert excinfo.value.limit == 5

    with pytest.raises(BudgetExhaustedError):
        limiter.reserve(["alice"])
    assert not limiter.is_busy("alice")


def test_roll_over_resets_counters_but_keeps_reservations():
    limiter, clock = make_limiter(max_daily_calls=3)
    limiter.reserve(["alice"])
    for _ in range(3):
        limiter.consume_call()

    assert limiter.roll_over() is False

    clock.advance(24 * 60 * 60)
    assert limiter.roll_over() is True
    assert limiter.daily_call_count == 0
    assert limiter.quota_for("alice").count == 0
    assert limiter.is_busy("alice")
    assert limiter.roll_over() is False
