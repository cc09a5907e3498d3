"""Tests covering the conversation lifecycle with scripted generation."""

import asyncio
from typing import Sequence

import pytest

from citytalk import (
    Agent,
    Broadcaster,
    ConversationContext,
    ConversationEngine,
    ConversationEnded,
    ConversationStarted,
    ConversationStatus,
    DelaySettings,
    EngineSettings,
    EventRecorder,
    GenerationSettings,
    InMemoryVectorStore,
    MessageAdded,
    QuotaSettings,
    RecordingBroadcaster,
    ScriptedTextGenerator,
    TerminationReason,
    TextGenerator,
    TopicShifted,
    VectorStore,
    VirtualClock,
)
from citytalk.errors import (
    BudgetExhaustedError,
    InvalidMessageError,
    NotFoundError,
    ParticipantsBusyError,
)
from citytalk.schemas import Message


def make_settings(**overrides) -> EngineSettings:
    values = dict(
        delays=DelaySettings(
            response_delay_seconds=0,
            typing_seconds_per_char=0,
            user_response_delay_seconds=0,
        ),
        generation=GenerationSettings(backoff_seconds=0),
    )
    values.update(overrides)
    return EngineSettings(**values)


def make_engine(generator=None, *, settings=None, vector_store=None, broadcaster=None, clock=None):
    return ConversationEngine(
        generator=generator or ScriptedTextGenerator(),
        vector_store=vector_store if vector_store is not None else InMemoryVectorStore(),
        broadcaster=broadcaster or RecordingBroadcaster(),
        clock=clock or VirtualClock(),
        seed=7,
        settings=settings or make_settings(),
    )


def make_agent(agent_id: str, **kwargs) -> Agent:
    return Agent(id=agent_id, name=agent_id.title(), **kwargs)


def make_context(activity: str = "morning_coffee") -> ConversationContext:
    return ConversationContext(district_id="downtown", activity=activity)


async def run_until_ended(engine, record, limit: int = 500) -> None:
    for _ in range(limit):
        if not record.is_active:
            return
        await engine.manager.continue_conversation(record.id)
    raise AssertionError(f"{record.id} still active after {limit} turns")


class FailingGenerator(TextGenerator):
    def __init__(self) -> None:
        self.calls = 0

    async def generate(self, agent: Agent, prior_messages: Sequence[Message], system_prompt: str) -> str:
        self.calls += 1
        raise RuntimeError("provider unavailable")


class SelectiveGenerator(ScriptedTextGenerator):
    """Fails for some agents, scripted for the rest."""

    def __init__(self, failing) -> None:
        super().__init__()
        self.failing = set(failing)

    async def generate(self, agent: Agent, prior_messages: Sequence[Message], system_prompt: str) -> str:
        if agent.id in self.failing:
            raise RuntimeError(f"cannot speak for {agent.id}")
        return await super().generate(agent, prior_messages, system_prompt)


class ExplodingBroadcaster(Broadcaster):
    def broadcast(self, district_id, event):
        raise ConnectionError("socket closed")


class ExplodingVectorStore(VectorStore):
    async def embed(self, text):
        raise ConnectionError("vector store down")

    async def upsert(self, id, vector, metadata):
        raise ConnectionError("vector store down")

    async def query(self, vector, filter=None, top_k=5):
        raise ConnectionError("vector store down")

    async def sentiment(self, text):
        raise ConnectionError("vector store down")


@pytest.mark.asyncio
async def test_two_agents_alternate_until_message_cap():
    engine = make_engine()
    await engine.register(make_agent("alice"), make_agent("bob"))

    record = await engine.manager.start_conversation(["alice", "bob"], make_context())
    assert record.status == ConversationStatus.ACTIVE
    assert [message.author for message in record.messages] == ["alice"]
    assert engine.manager.eligible_speakers(record) == ["bob"]

    await run_until_ended(engine, record)

    assert record.status == ConversationStatus.ENDED
    assert record.end_reason == TerminationReason.MAX_MESSAGES
    assert len(record.messages) == 101
    summary = record.messages[-1]
    assert summary.author == "system"
    assert summary.role == "system"
    assert summary.content.startswith("Conversation ended after 100 messages.")

    authors = [message.author for message in record.messages[:-1]]
    assert all(previous != current for previous, current in zip(authors, authors[1:]))
    assert not engine.limiter.is_busy("alice")
    assert not engine.limiter.is_busy("bob")
    assert engine.manager.store.get(record.id) is record
    assert engine.manager.active_conversations() == []


@pytest.mark.asyncio
async def test_sixth_start_rejected_when_budget_is_five():
    engine = make_engine(settings=make_settings(quota=QuotaSettings(max_daily_calls=5)))
    agents = [make_agent(f"agent{index}") for index in range(12)]
    await engine.register(*agents)

    records = []
    for index in range(5):
        pair = [f"agent{2 * index}", f"agent{2 * index + 1}"]
        records.append(await engine.manager.start_conversation(pair, make_context()))

    assert engine.limiter.daily_call_count == 5
    assert engine.limiter.budget_exhausted
    assert records[-1].end_reason == TerminationReason.RESOURCE_EXHAUSTION

    with pytest.raises(BudgetExhaustedError):
        await engine.manager.start_conversation(["agent10", "agent11"], make_context())

    assert not engine.limiter.is_busy("agent10")
    assert not engine.limiter.is_busy("agent11")
    assert len(engine.manager.store.archived()) + len(engine.manager.active_conversations()) == 5
    assert not engine.limiter.can_start("agent10")


@pytest.mark.asyncio
async def test_turn_after_budget_runs_out_ends_with_resource_exhaustion():
    engine = make_engine(settings=make_settings(quota=QuotaSettings(max_daily_calls=2)))
    recorder = EventRecorder(engine.dispatcher)
    await engine.register(make_agent("alice"), make_agent("bob"), make_agent("carol"), make_agent("dave"))

    first = await engine.manager.start_conversation(["alice", "bob"], make_context())
    second = await engine.manager.start_conversation(["carol", "dave"], make_context())
    assert second.end_reason == TerminationReason.RESOURCE_EXHAUSTION

    assert await engine.manager.continue_conversation(first.id) is None
    assert first.end_reason == TerminationReason.RESOURCE_EXHAUSTION

    ended = recorder.of_type(ConversationEnded)
    assert [event.conversation_id for event in ended] == [second.id, first.id]
    assert all(event.resource_exhausted for event in ended)


@pytest.mark.asyncio
async def test_agent_cannot_join_second_active_conversation():
    engine = make_engine()
    await engine.register(make_agent("alice"), make_agent("bob"), make_agent("carol"))

    first = await engine.manager.start_conversation(["alice", "bob"], make_context())

    with pytest.raises(ParticipantsBusyError) as excinfo:
        await engine.manager.start_conversation(["bob", "carol"], make_context())
    assert excinfo.value.agent_ids == ["bob"]
    assert not engine.limiter.is_busy("carol")
    assert engine.manager.active_conversations() == [first]

    await engine.manager.end_conversation(first.id)
    second = await engine.manager.start_conversation(["bob", "carol"], make_context())
    assert second.is_active


@pytest.mark.asyncio
async def test_interleaved_starts_claim_each_agent_once():
    engine = make_engine()
    await engine.register(make_agent("alice"), make_agent("bob"), make_agent("carol"))

    results = await asyncio.gather(
        engine.manager.start_conversation(["alice", "bob"], make_context()),
        engine.manager.start_conversation(["bob", "carol"], make_context()),
        return_exceptions=True,
    )

    errors = [result for result in results if isinstance(result, Exception)]
    started = [result for result in results if not isinstance(result, Exception)]
    assert len(started) == 1
    assert len(errors) == 1 and isinstance(errors[0], ParticipantsBusyError)

    seen = [agent for record in engine.manager.active_conversations() for agent in record.participants]
    assert len(seen) == len(set(seen))


@pytest.mark.asyncio
async def test_unknown_participant_reserves_nobody():
    engine = make_engine()
    await engine.register(make_agent("alice"))

    with pytest.raises(NotFoundError):
        await engine.manager.start_conversation(["alice", "ghost"], make_context())
    assert engine.limiter.busy_agents == set()

    with pytest.raises(NotFoundError):
        await engine.manager.continue_conversation("conv-missing")


@pytest.mark.asyncio
async def test_group_rotation_keeps_last_three_speakers_distinct():
    engine = make_engine()
    await engine.register(*(make_agent(name) for name in ("alice", "bob", "carol", "dave")))

    record = await engine.manager.start_conversation(["alice", "bob", "carol", "dave"], make_context())
    for _ in range(30):
        await engine.manager.continue_conversation(record.id)

    authors = [message.author for message in record.messages if not message.is_system]
    assert len(authors) == 31
    for window in zip(authors, authors[1:], authors[2:]):
        assert len(set(window)) == 3


@pytest.mark.asyncio
async def test_three_participants_never_repeat_back_to_back():
    engine = make_engine()
    await engine.register(make_agent("alice"), make_agent("bob"), make_agent("carol"))

    record = await engine.manager.start_conversation(["alice", "bob", "carol"], make_context())
    for _ in range(20):
        await engine.manager.continue_conversation(record.id)

    authors = [message.author for message in record.messages]
    assert all(previous != current for previous, current in zip(authors, authors[1:]))
    assert set(authors) == {"alice", "bob", "carol"}


@pytest.mark.asyncio
async def test_failed_opener_ends_with_generation_failed():
    clock = VirtualClock()
    generator = FailingGenerator()
    engine = make_engine(
        generator,
        clock=clock,
        settings=make_settings(generation=GenerationSettings(max_attempts=3, backoff_seconds=5)),
    )
    await engine.register(make_agent("alice"), make_agent("bob"))
    started = clock.now()

    record = await engine.manager.start_conversation(["alice", "bob"], make_context())

    assert generator.calls == 3
    assert (clock.now() - started).total_seconds() == 10
    assert record.status == ConversationStatus.ENDED
    assert record.end_reason == TerminationReason.GENERATION_FAILED
    assert [message.author for message in record.messages] == ["system"]
    assert engine.limiter.daily_call_count == 1
    assert engine.limiter.busy_agents == set()


@pytest.mark.asyncio
async def test_generation_failure_is_isolated_to_its_conversation():
    engine = make_engine(SelectiveGenerator(failing=["carol"]))
    await engine.register(make_agent("alice"), make_agent("bob"), make_agent("carol"), make_agent("dave"))

    broken = await engine.manager.start_conversation(["carol", "dave"], make_context())
    healthy = await engine.manager.start_conversation(["alice", "bob"], make_context())
    await engine.manager.continue_conversation(healthy.id)

    assert broken.end_reason == TerminationReason.GENERATION_FAILED
    assert healthy.is_active
    assert [message.author for message in healthy.messages] == ["alice", "bob"]


@pytest.mark.asyncio
async def test_side_channel_failures_do_not_abort_turns():
    engine = make_engine(vector_store=ExplodingVectorStore(), broadcaster=ExplodingBroadcaster())
    await engine.register(make_agent("alice"), make_agent("bob"))

    profile = engine.registry.profile("alice")
    assert len(profile.routines) == 5

    record = await engine.manager.start_conversation(["alice", "bob"], make_context())
    reply = await engine.manager.continue_conversation(record.id)

    assert reply is not None
    assert reply.sentiment is None
    assert len(record.messages) == 2
    assert record.metrics.quality_score == 0.5


@pytest.mark.asyncio
async def test_end_conversation_summarises_and_releases():
    broadcaster = RecordingBroadcaster()
    engine = make_engine(broadcaster=broadcaster)
    recorder = EventRecorder(engine.dispatcher)
    await engine.register(make_agent("alice"), make_agent("bob"))

    record = await engine.manager.start_conversation(["alice", "bob"], make_context(), topic="street food")
    await engine.manager.continue_conversation(record.id)

    ended = await engine.manager.end_conversation(record.id)
    assert ended is record
    assert record.end_reason == TerminationReason.MANUAL
    assert record.ended_at is not None
    assert record.messages[-1].content.startswith("Conversation ended after 2 messages.")
    assert "Topics discussed: street food" in record.messages[-1].content
    assert engine.limiter.busy_agents == set()
    assert await engine.manager.end_conversation(record.id) is None
    assert await engine.manager.continue_conversation(record.id) is None

    partners = [interaction.agent_id for interaction in engine.registry.profile("alice").recent_interactions]
    assert partners == ["bob"]

    assert len(recorder.of_type(ConversationStarted)) == 1
    assert len(recorder.of_type(MessageAdded)) == 2
    (event,) = recorder.of_type(ConversationEnded)
    assert event.reason == TerminationReason.MANUAL
    assert event.resource_exhausted is False
    assert event.message_count == 3

    types = broadcaster.types()
    assert types[0] == "conversation_started"
    assert types.count("agent_conversation") == 2
    assert types[-1] == "conversation_ended"

    stored = engine.manager.vector_store.entries
    assert f"conversation-{record.id}" in stored
    assert f"district_conversation-{record.id}" in stored


@pytest.mark.asyncio
async def test_appending_to_ended_record_is_rejected():
    engine = make_engine()
    await engine.register(make_agent("alice"), make_agent("bob"))
    record = await engine.manager.start_conversation(["alice", "bob"], make_context())
    await engine.manager.end_conversation(record.id)

    late = Message(id="late", author="alice", content="one more thing", timestamp=engine.clock.now())
    with pytest.raises(InvalidMessageError):
        record.append_message(late)
    with pytest.raises(InvalidMessageError):
        await engine.manager.handle_user_message(record.id, "hello?")


@pytest.mark.asyncio
async def test_topic_shifts_once_current_topic_is_worn_out():
    engine = make_engine()
    recorder = EventRecorder(engine.dispatcher)
    await engine.register(make_agent("alice"), make_agent("bob"))

    record = await engine.manager.start_conversation(["alice", "bob"], make_context(), topic="morning routines")
    for _ in range(11):
        await engine.manager.continue_conversation(record.id)

    shifts = recorder.of_type(TopicShifted)
    assert shifts, "expected at least one topic shift"
    assert shifts[0].previous_topic == "morning routines"
    assert record.topic_history[0] == "morning routines"
    assert len(record.topic_history) >= 2
    assert record.topic != "morning routines"
    assert record.metrics.topic_exhaustion["morning routines"] == 1.0
    assert record.metrics.topic_exhaustion[record.topic] < 1.0


@pytest.mark.asyncio
async def test_user_message_gets_one_or_two_replies():
    engine = make_engine()
    await engine.register(make_agent("alice"), make_agent("bob"), make_agent("carol"))
    record = await engine.manager.start_conversation(["alice", "bob", "carol"], make_context())

    replies = await engine.manager.handle_user_message(record.id, "  What do you make of the new plaza?  ")

    user_message = record.messages[1]
    assert user_message.author == "user"
    assert user_message.role == "user"
    assert user_message.content == "What do you make of the new plaza?"
    assert 1 <= len(replies) <= 2
    assert all(reply.author in record.participants for reply in replies)
    assert len({reply.author for reply in replies}) == len(replies)

    with pytest.raises(InvalidMessageError):
        await engine.manager.handle_user_message(record.id, "   ")


@pytest.mark.asyncio
async def test_respond_to_user_opens_single_agent_conversation():
    engine = make_engine()
    await engine.register(make_agent("alice"), make_agent("bob"))

    reply = await engine.manager.respond_to_user("downtown", "alice", "Any good cafes nearby?")

    assert reply is not None and reply.author == "alice"
    record = engine.manager.conversation_for("alice")
    assert record is not None
    assert record.participants == ["alice"]
    assert record.activity == "user_interaction"
    assert [message.author for message in record.messages] == ["user", "alice"]
    assert engine.limiter.is_busy("alice")

    follow_up = await engine.manager.respond_to_user("downtown", "alice", "Thanks!", record.id)
    assert follow_up is not None and follow_up.author == "alice"

    with pytest.raises(NotFoundError):
        await engine.manager.respond_to_user("downtown", "bob", "Hi Bob", record.id)


@pytest.mark.asyncio
async def test_system_message_reaches_every_active_conversation():
    engine = make_engine()
    await engine.register(*(make_agent(name) for name in ("alice", "bob", "carol", "dave")))
    first = await engine.manager.start_conversation(["alice", "bob"], make_context())
    second = await engine.manager.start_conversation(["carol", "dave"], make_context())

    delivered = await engine.manager.broadcast_system_message("The street fair starts at noon.")

    assert delivered == 2
    for record in (first, second):
        announcement = record.messages[1]
        assert announcement.is_system
        assert announcement.content == "The street fair starts at noon."
        assert [message.author for message in record.messages[2:]] == record.participants
    assert first.metrics.message_count == 4


@pytest.mark.asyncio
async def test_routine_activity_gathers_colocated_agents():
    engine = make_engine()
    await engine.register(*(make_agent(name) for name in ("alice", "bob", "carol", "dave")))

    record = await engine.manager.initiate_agent_activity("alice")

    assert record is not None
    assert record.participants == ["alice", "bob", "carol"]
    assert record.location == "District Center"
    assert record.activity == "morning_coffee"
    assert await engine.manager.initiate_agent_activity("alice") is None


@pytest.mark.asyncio
async def test_routine_activity_outside_routine_hours_is_skipped():
    clock = VirtualClock()
    clock.advance(60 * 60)
    engine = make_engine(clock=clock)
    await engine.register(make_agent("alice"), make_agent("bob"))

    assert await engine.manager.initiate_agent_activity("alice") is None
    assert engine.manager.active_conversations() == []


@pytest.mark.asyncio
async def test_archive_keeps_only_recent_conversations():
    engine = make_engine(settings=make_settings(archive_limit=2))
    await engine.register(make_agent("alice"), make_agent("bob"))

    ended = []
    for _ in range(3):
        record = await engine.manager.start_conversation(["alice", "bob"], make_context())
        await engine.manager.end_conversation(record.id)
        ended.append(record.id)

    assert [record.id for record in engine.manager.store.archived()] == ended[1:]
    assert engine.manager.store.get(ended[0]) is None
    with pytest.raises(NotFoundError):
        engine.manager.get_conversation(ended[0])
