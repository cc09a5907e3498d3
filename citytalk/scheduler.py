"""
Scheduler driving the lifecycle manager.

Periodic triggers run on an explicit ticker over the injected clock:

1. generator - start a natural conversation among idle agents
2. continuation - advance conversations that have gone quiet
3. daily_reset - roll quotas over at local midnight
4. activities - routine-driven conversations among co-located agents
5. social - prune interactions and update friendships

Triggers are cooperatively interleaved on one event loop. Conversation turns
run as their own tasks, so a hung generation call never holds up the ticker.
An unexpected error inside a trigger is logged and never stops the others.
"""

from __future__ import annotations

import asyncio
import random
from datetime import datetime
from typing import Awaitable, Dict, List, Optional, Set, Tuple

from .clock import Clock, PeriodicTrigger
from .config import SchedulerSettings
from .context import interaction_probability
from .errors import BudgetExhaustedError, ParticipantsBusyError
from .lifecycle import ConversationManager
from .logging_utils import log_deterministic, log_error, log_info
from .quota import RateLimiter
from .registry import AgentRegistry
from .schemas import ConversationRecord, TerminationReason


class Scheduler:
    """Fires the engine's periodic triggers against a clock."""

    def __init__(
        self,
        manager: ConversationManager,
        *,
        settings: Optional[SchedulerSettings] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.manager = manager
        self.settings = settings or manager.settings.scheduler
        self.clock = clock or manager.clock
        self.rng = rng or manager.rng
        self.last_conversation_at: Optional[datetime] = None
        # Conversations with a sweep-started turn in flight
        self._pending: Set[str] = set()
        self._turns: Dict[str, "asyncio.Task[None]"] = {}
        self.triggers: List[PeriodicTrigger] = [
            PeriodicTrigger(
                "generator", self.settings.generator_interval_seconds, self.generate_natural_conversation
            ),
            PeriodicTrigger(
                "continuation", self.settings.continuation_interval_seconds, self.continuation_sweep
            ),
            PeriodicTrigger("daily_reset", self.settings.daily_reset_check_seconds, self.daily_reset),
            PeriodicTrigger("activities", self.settings.activity_interval_seconds, self.activity_sweep),
            PeriodicTrigger("social", self.settings.social_update_interval_seconds, self.update_social_networks),
        ]

    @property
    def registry(self) -> AgentRegistry:
        return self.manager.registry

    @property
    def limiter(self) -> RateLimiter:
        return self.manager.limiter

    # ------------------------------------------------------------------
    # Ticker
    # ------------------------------------------------------------------

    async def tick(self) -> List[str]:
        """Fire every due trigger once and return their names."""

        fired: List[str] = []
        for trigger in self.triggers:
            now = self.clock.now()
            if not trigger.is_due(now):
                continue
            trigger.last_fired = now
            fired.append(trigger.name)
            try:
                await trigger.callback()
            except Exception as exc:
                log_error(f"[Scheduler] Trigger '{trigger.name}' failed: {exc}")
        return fired

    async def run_for(self, seconds: float) -> int:
        """Drive the ticker for ``seconds`` of clock time. Returns the tick count.

        Turns still in flight at the deadline keep running; call
        ``wait_for_turns`` or ``stop`` to settle them.
        """

        deadline = self.clock.now().timestamp() + seconds
        ticks = 0
        while True:
            remaining = deadline - self.clock.now().timestamp()
            if remaining <= 0:
                break
            await self.tick()
            ticks += 1
            now = self.clock.now()
            wait = min(trigger.seconds_until_due(now) for trigger in self.triggers)
            remaining = deadline - now.timestamp()
            if remaining <= 0:
                break
            await self.clock.sleep(min(wait, remaining) if wait > 0 else remaining)
        return ticks

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _within_hours(self, hour: int) -> bool:
        return self.settings.conversation_start_hour <= hour < self.settings.conversation_end_hour

    def available_agents(self, now: Optional[datetime] = None) -> List[str]:
        """Active, idle agents whose quota allows a new conversation."""

        now = now or self.clock.now()
        return [
            agent.id
            for agent in self.registry.agents(active_only=True)
            if not self.limiter.is_busy(agent.id) and self.limiter.can_start(agent.id, now)
        ]

    async def generate_natural_conversation(self) -> Optional[ConversationRecord]:
        """Start a conversation among two or three idle agents when the gates allow it."""

        if self.limiter.budget_exhausted:
            log_deterministic("[Scheduler] Daily call budget reached")
            return None
        if not self._within_hours(self.clock.local_now().hour):
            log_deterministic("[Scheduler] Outside conversation hours")
            return None

        now = self.clock.now()
        if self.last_conversation_at is not None:
            since_last = (now - self.last_conversation_at).total_seconds()
            if since_last < self.settings.min_conversation_cooldown_seconds:
                log_deterministic("[Scheduler] Conversation cooldown active")
                return None
        if len(self.manager.active_conversations()) >= self.settings.max_concurrent_conversations:
            log_deterministic(
                f"[Scheduler] Max concurrent conversations ({self.settings.max_concurrent_conversations}) reached"
            )
            return None

        available = self.available_agents(now)
        if len(available) < 2:
            log_deterministic("[Scheduler] Not enough available agents within limits")
            return None

        self.rng.shuffle(available)
        participants = available[: 2 + self.rng.randint(0, 1)]
        activity = self.manager.context_simulator.pick_activity()
        self.last_conversation_at = now
        context = await self.manager.build_context(self.settings.default_district, activity)
        try:
            record = await self.manager.start_conversation(participants, context)
        except (ParticipantsBusyError, BudgetExhaustedError) as exc:
            log_deterministic(f"[Scheduler] Natural conversation skipped: {exc.args[0].splitlines()[0]}")
            return None
        log_info(f"[Scheduler] Started natural conversation with {len(participants)} agents")
        return record

    async def continuation_sweep(self) -> int:
        """Start one turn for every idle conversation; end overlong ones.

        Each turn runs as its own task, so a slow or hung generation call
        stalls only its own conversation and the ticker keeps firing.
        Conversations with a turn already in flight are skipped, so repeated
        sweeps never stack turns. Returns the number of turns started.
        """

        now = self.clock.now()
        started = 0
        for record in list(self.manager.active_conversations()):
            if record.id in self._pending or self.manager.is_turn_in_flight(record.id):
                continue
            elapsed = (now - record.started_at).total_seconds()
            if elapsed >= self.manager.settings.termination.max_duration_seconds:
                await self._guarded(
                    record.id, self.manager.end_conversation(record.id, TerminationReason.MAX_DURATION)
                )
                continue
            idle = (now - record.last_update).total_seconds()
            if idle >= self.settings.message_interval_seconds:
                self._start_turn(record.id)
                started += 1
        return started

    def _start_turn(self, conversation_id: str) -> None:
        self._pending.add(conversation_id)
        task = asyncio.create_task(
            self._guarded(conversation_id, self.manager.continue_conversation(conversation_id)),
            name=f"turn-{conversation_id}",
        )
        self._turns[conversation_id] = task
        task.add_done_callback(lambda done: self._turn_finished(conversation_id, done))

    def _turn_finished(self, conversation_id: str, task: "asyncio.Task[None]") -> None:
        self._pending.discard(conversation_id)
        if self._turns.get(conversation_id) is task:
            del self._turns[conversation_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_error(f"[Scheduler] Turn task for {conversation_id} failed: {exc}")

    async def wait_for_turns(self) -> None:
        """Wait until every turn started by a sweep has finished."""

        while self._turns:
            await asyncio.gather(*list(self._turns.values()), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel turns still in flight and wait for them to unwind."""

        tasks = list(self._turns.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _guarded(self, conversation_id: str, operation: Awaitable[object]) -> None:
        try:
            await operation
        except Exception as exc:
            log_error(f"[Scheduler] Conversation {conversation_id} failed: {exc}")

    async def daily_reset(self) -> bool:
        """Reset quotas and prune social state once the local date changes."""

        local_now = self.clock.local_now()
        if not self.limiter.roll_over(local_now):
            return False
        self.registry.update_social_networks(self.clock.now())
        return True

    async def update_social_networks(self) -> None:
        self.registry.update_social_networks(self.clock.now())

    async def activity_sweep(self) -> List[ConversationRecord]:
        """Start conversations among agents sharing a routine activity this hour."""

        hour = self.clock.local_now().hour
        if not self._within_hours(hour):
            return []

        groups: Dict[Tuple[str, str, str], List[str]] = {}
        for agent_id in self.available_agents():
            profile = self.registry.profile(agent_id)
            slot = profile.routine_at(hour)
            if slot is None:
                continue
            district_id = (
                profile.regular_locations[0] if profile.regular_locations else self.settings.default_district
            )
            groups.setdefault((district_id, slot.activity, slot.location), []).append(agent_id)

        started: List[ConversationRecord] = []
        for (district_id, activity, location), members in groups.items():
            idle = [agent_id for agent_id in members if not self.limiter.is_busy(agent_id)]
            if len(idle) < 2:
                continue
            context = await self.manager.build_context(district_id, activity)
            chance = interaction_probability(activity, context.social_mood, context.cultural_context)
            if self.rng.random() >= chance:
                continue
            group = self.rng.sample(idle, min(3, len(idle)))
            try:
                started.append(await self.manager.start_conversation(group, context, location=location))
            except (ParticipantsBusyError, BudgetExhaustedError) as exc:
                log_deterministic(f"[Scheduler] Activity conversation skipped: {exc.args[0].splitlines()[0]}")
        return started

    async def bootstrap(self) -> List[ConversationRecord]:
        """Pair agents with shared interests and start their routine conversations."""

        started: List[ConversationRecord] = []
        pending = list(self.registry.agents(active_only=True))
        while len(pending) >= 2:
            first = pending.pop(0)
            partner = next(
                (other for other in pending if set(other.interests) & set(first.interests)),
                None,
            )
            if partner is None:
                continue
            pending.remove(partner)
            try:
                record = await self.manager.initiate_agent_activity(first.id)
            except Exception as exc:
                log_error(f"[Scheduler] Bootstrap for {first.id} failed: {exc}")
                continue
            if record is not None:
                started.append(record)
        log_info(f"[Scheduler] Bootstrap started {len(started)} conversations")
        return started
