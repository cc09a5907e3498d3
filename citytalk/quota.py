"""
Rate limiter and quota tracker.

Enforces three throughput limits, all in memory:
- a global daily budget of external generation calls
- a per-agent daily conversation cap with a cooldown between conversations
- the one-active-conversation-per-agent invariant (the busy set)

The cooldown is a negative-feedback throttle: it stretches as the day's call
volume grows, ``cooldown * (1 + k * daily_call_count)``.

Every method is synchronous. Callers reserve agents before their first await
so two interleaved triggers can never both observe an agent as idle.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Dict, Iterable, Optional, Set

from .clock import Clock, SystemClock
from .config import QuotaSettings
from .errors import BudgetExhaustedError, ParticipantsBusyError
from .logging_utils import log_deterministic, log_info
from .schemas import QuotaRecord


class RateLimiter:
    """Per-agent and global daily quota tracker plus the busy-agent set."""

    def __init__(
        self,
        settings: Optional[QuotaSettings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or QuotaSettings()
        self.clock = clock or SystemClock()
        self.daily_call_count = 0
        self.quotas: Dict[str, QuotaRecord] = {}
        self._busy: Set[str] = set()
        self.current_day: date = self.clock.local_now().date()

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    @property
    def budget_exhausted(self) -> bool:
        return self.daily_call_count >= self.settings.max_daily_calls

    @property
    def remaining_budget(self) -> int:
        return max(0, self.settings.max_daily_calls - self.daily_call_count)

    def consume_call(self) -> None:
        """Record one external generation call, or refuse when the budget is spent."""

        if self.budget_exhausted:
            raise BudgetExhaustedError(
                used=self.daily_call_count, limit=self.settings.max_daily_calls
            )
        self.daily_call_count += 1

    # ------------------------------------------------------------------
    # Per-agent quota
    # ------------------------------------------------------------------

    def quota_for(self, agent_id: str) -> QuotaRecord:
        return self.quotas.get(agent_id, QuotaRecord())

    def cooldown_seconds(self) -> float:
        return self.settings.min_conversation_cooldown_seconds * (
            1 + self.settings.dynamic_cooldown_multiplier * self.daily_call_count
        )

    def can_start(self, agent_id: str, now: Optional[datetime] = None) -> bool:
        """True iff the agent is under its daily cap and past its cooldown.

        Also false while the global budget is exhausted.
        """

        if self.budget_exhausted:
            return False
        quota = self.quota_for(agent_id)
        if quota.count >= self.settings.max_daily_conversations_per_agent:
            return False
        if quota.last_conversation_at is None:
            return True
        now = now or self.clock.now()
        elapsed = (now - quota.last_conversation_at).total_seconds()
        return elapsed > self.cooldown_seconds()

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    def is_busy(self, agent_id: str) -> bool:
        return agent_id in self._busy

    @property
    def busy_agents(self) -> Set[str]:
        return set(self._busy)

    def reserve(self, agent_ids: Iterable[str]) -> None:
        """Mark every agent busy, or none of them.

        Raises:
            ParticipantsBusyError: an agent is already busy or listed twice
            BudgetExhaustedError: the global budget is spent
        """

        requested = list(agent_ids)
        duplicates = {agent_id for agent_id in requested if requested.count(agent_id) > 1}
        conflicts = {agent_id for agent_id in requested if agent_id in self._busy} | duplicates
        if conflicts:
            raise ParticipantsBusyError(conflicts)
        if self.budget_exhausted:
            raise BudgetExhaustedError(
                used=self.daily_call_count, limit=self.settings.max_daily_calls
            )

        now = self.clock.now()
        for agent_id in requested:
            self._busy.add(agent_id)
            quota = self.quotas.setdefault(agent_id, QuotaRecord())
            quota.count += 1
            quota.last_conversation_at = now
        log_deterministic(f"[Quota] Reserved {', '.join(requested)}")

    def release(self, agent_ids: Iterable[str]) -> None:
        for agent_id in agent_ids:
            self._busy.discard(agent_id)

    # ------------------------------------------------------------------
    # Daily rollover
    # ------------------------------------------------------------------

    def reset_daily(self) -> None:
        """Clear all counters. Busy reservations are untouched."""

        self.quotas.clear()
        self.daily_call_count = 0
        self.current_day = self.clock.local_now().date()
        log_info("[Quota] Reset daily conversation counts and call budget")

    def roll_over(self, now: Optional[datetime] = None) -> bool:
        """Reset when the local date has moved past the tracked day."""

        today = (now or self.clock.local_now()).date()
        if today != self.current_day:
            self.reset_daily()
            self.current_day = today
            return True
        return False
