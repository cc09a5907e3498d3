"""Tests for the scheduler's periodic triggers on a virtual clock."""

import asyncio
import random

import pytest

from citytalk import (
    Agent,
    ConversationContext,
    ConversationEngine,
    ConversationStarted,
    DelaySettings,
    EngineSettings,
    GenerationSettings,
    QuotaSettings,
    RecordingBroadcaster,
    Scheduler,
    SchedulerSettings,
    ScriptedTextGenerator,
    TerminationReason,
    VirtualClock,
)


ZERO_DELAYS = DelaySettings(
    response_delay_seconds=0,
    typing_seconds_per_char=0,
    user_response_delay_seconds=0,
)


class FixedRandom(random.Random):
    """Seeded random source whose ``random()`` always returns ``value``."""

    def __init__(self, value: float) -> None:
        super().__init__(3)
        self.value = value

    def random(self) -> float:
        return self.value


def make_engine(clock=None, **settings) -> ConversationEngine:
    settings.setdefault("delays", ZERO_DELAYS)
    settings.setdefault("generation", GenerationSettings(backoff_seconds=0))
    return ConversationEngine(
        generator=ScriptedTextGenerator(),
        broadcaster=RecordingBroadcaster(),
        clock=clock or VirtualClock(),
        seed=11,
        settings=EngineSettings(**settings),
    )


async def register(engine, *names, **kwargs):
    await engine.register(*(Agent(id=name, name=name.title(), **kwargs) for name in names))


@pytest.mark.asyncio
async def test_concurrent_sweeps_run_one_turn():
    clock = VirtualClock()
    engine = make_engine(clock)
    await register(engine, "alice", "bob")
    record = await engine.manager.start_conversation(
        ["alice", "bob"], ConversationContext(district_id="downtown", activity="lunch_break")
    )

    clock.advance(61)
    before = len(record.messages)
    await asyncio.gather(engine.scheduler.continuation_sweep(), engine.scheduler.continuation_sweep())
    await engine.scheduler.wait_for_turns()
    assert len(record.messages) == before + 1

    assert await engine.scheduler.continuation_sweep() == 0
    assert len(record.messages) == before + 1
    assert engine.scheduler._pending == set()


@pytest.mark.asyncio
async def test_sweep_skips_recent_and_ends_overlong_conversations():
    clock = VirtualClock()
    engine = make_engine(clock)
    await register(engine, "alice", "bob")
    record = await engine.manager.start_conversation(
        ["alice", "bob"], ConversationContext(district_id="downtown", activity="lunch_break")
    )

    clock.advance(30)
    assert await engine.scheduler.continuation_sweep() == 0

    clock.advance(20 * 60)
    await engine.scheduler.continuation_sweep()
    assert record.end_reason == TerminationReason.MAX_DURATION
    assert engine.limiter.busy_agents == set()


@pytest.mark.asyncio
async def test_natural_conversation_respects_gates():
    clock = VirtualClock()
    engine = make_engine(clock)
    await register(engine, "alice", "bob", "carol")

    record = await engine.scheduler.generate_natural_conversation()
    assert record is not None
    assert 2 <= len(record.participants) <= 3
    assert record.district_id == "downtown"

    # Cooldown since the last generated conversation
    assert await engine.scheduler.generate_natural_conversation() is None

    # Concurrency cap of one
    clock.advance(120)
    assert record.is_active
    assert await engine.scheduler.generate_natural_conversation() is None


@pytest.mark.asyncio
async def test_natural_conversation_outside_hours_or_budget():
    late = make_engine(scheduler=SchedulerSettings(conversation_start_hour=10))
    await register(late, "alice", "bob")
    assert await late.scheduler.generate_natural_conversation() is None

    broke = make_engine(quota=QuotaSettings(max_daily_calls=0))
    await register(broke, "alice", "bob")
    assert await broke.scheduler.generate_natural_conversation() is None

    lonely = make_engine()
    await register(lonely, "alice")
    assert await lonely.scheduler.generate_natural_conversation() is None


@pytest.mark.asyncio
async def test_available_agents_excludes_busy_and_inactive():
    engine = make_engine()
    await register(engine, "alice", "bob", "carol", "dave")
    engine.registry.set_active("dave", False)
    engine.limiter.reserve(["alice"])

    assert sorted(engine.scheduler.available_agents()) == ["bob", "carol"]


@pytest.mark.asyncio
async def test_daily_reset_clears_quotas_once_per_day():
    clock = VirtualClock()
    engine = make_engine(clock)
    await register(engine, "alice", "bob")
    record = await engine.manager.start_conversation(
        ["alice", "bob"], ConversationContext(district_id="downtown", activity="lunch_break")
    )
    await engine.manager.end_conversation(record.id)
    assert engine.limiter.quota_for("alice").count == 1

    assert await engine.scheduler.daily_reset() is False

    clock.advance(16 * 60 * 60)
    assert await engine.scheduler.daily_reset() is True
    assert engine.limiter.quota_for("alice").count == 0
    assert engine.limiter.daily_call_count == 0
    assert await engine.scheduler.daily_reset() is False


@pytest.mark.asyncio
async def test_tick_fires_due_triggers_and_survives_failures():
    engine = make_engine()
    await register(engine, "alice", "bob")

    async def broken() -> None:
        raise RuntimeError("trigger exploded")

    engine.scheduler.triggers[0].callback = broken

    fired = await engine.scheduler.tick()
    assert fired == ["generator", "continuation", "daily_reset", "activities", "social"]
    assert await engine.scheduler.tick() == []


@pytest.mark.asyncio
async def test_activity_sweep_groups_agents_by_routine():
    engine = make_engine()
    await register(engine, "alice", "bob", "carol", "dave")

    eager = Scheduler(engine.manager, rng=FixedRandom(0.0))
    started = await eager.activity_sweep()
    assert len(started) == 1
    assert len(started[0].participants) == 3
    assert started[0].location == "District Center"
    assert started[0].activity == "morning_coffee"

    other = make_engine()
    await register(other, "alice", "bob")
    shy = Scheduler(other.manager, rng=FixedRandom(0.99))
    assert await shy.activity_sweep() == []


@pytest.mark.asyncio
async def test_bootstrap_pairs_shared_interests():
    engine = make_engine()
    await engine.register(
        Agent(id="alice", name="Alice", interests=["art"]),
        Agent(id="bob", name="Bob", interests=["art", "food"]),
        Agent(id="carol", name="Carol", interests=["music"]),
    )

    started = await engine.scheduler.bootstrap()

    assert len(started) == 1
    assert started[0].participants[0] == "alice"
    assert "bob" in started[0].participants


@pytest.mark.asyncio
async def test_run_for_keeps_agents_in_one_conversation_at_a_time():
    clock = VirtualClock()
    engine = ConversationEngine(
        generator=ScriptedTextGenerator(["{name} mentions the plaza (turn {turn}).", "{name} agrees, turn {turn}."]),
        clock=clock,
        seed=5,
        settings=EngineSettings(scheduler=SchedulerSettings(max_concurrent_conversations=2)),
    )
    await register(engine, "alice", "bob", "carol", "dave", "erin", "frank")

    violations = []

    def check_exclusive(event: ConversationStarted) -> None:
        seen = [agent for record in engine.manager.active_conversations() for agent in record.participants]
        if len(seen) != len(set(seen)):
            violations.append(event.conversation_id)

    engine.dispatcher.subscribe(ConversationStarted, check_exclusive)

    ticks = await engine.scheduler.run_for(30 * 60)
    await engine.scheduler.stop()

    assert ticks > 0
    assert violations == []
    records = engine.manager.active_conversations() + engine.manager.store.archived()
    assert records
    for record in records:
        stamps = [message.timestamp for message in record.messages]
        assert stamps == sorted(stamps)
    busy = engine.limiter.busy_agents
    active = {agent for record in engine.manager.active_conversations() for agent in record.participants}
    assert busy == active


class StallingGenerator(ScriptedTextGenerator):
    """Scripted generator that never answers follow-up turns for ``stalled`` agents."""

    def __init__(self, stalled) -> None:
        super().__init__()
        self.stalled = set(stalled)

    async def generate(self, agent, prior_messages, system_prompt):
        if agent.id in self.stalled and prior_messages:
            await asyncio.Event().wait()
        return await super().generate(agent, prior_messages, system_prompt)


@pytest.mark.asyncio
async def test_stalled_turn_does_not_block_other_conversations():
    clock = VirtualClock()
    start = clock.now()
    engine = ConversationEngine(
        generator=StallingGenerator({"carol", "dave"}),
        clock=clock,
        seed=11,
        settings=EngineSettings(
            delays=ZERO_DELAYS,
            generation=GenerationSettings(backoff_seconds=0),
            scheduler=SchedulerSettings(max_concurrent_conversations=2),
        ),
    )
    await register(engine, "alice", "bob", "carol", "dave")
    context = ConversationContext(district_id="downtown", activity="lunch_break")
    healthy = await engine.manager.start_conversation(["alice", "bob"], context)
    stalled = await engine.manager.start_conversation(["carol", "dave"], context)

    await asyncio.wait_for(engine.scheduler.run_for(600), timeout=5)

    assert len(healthy.messages) - 1 >= 3
    assert len(stalled.messages) == 1
    assert engine.manager.is_turn_in_flight(stalled.id)
    generator_trigger = engine.scheduler.triggers[0]
    assert (generator_trigger.last_fired - start).total_seconds() >= 540

    await engine.scheduler.stop()
    assert engine.scheduler._pending == set()
    assert not engine.manager.is_turn_in_flight(stalled.id)
