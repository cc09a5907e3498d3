"""
Conversation lifecycle manager.

Creates conversations, picks speakers, runs turns and ends conversations.
All dependencies are injected; the manager owns no global state.

A conversation moves proposed -> active -> ended. A record only becomes
active once every participant has been reserved with the rate limiter, and
that reservation happens before the first await so interleaved triggers
cannot both claim the same agent. A per-conversation ``asyncio.Lock`` keeps
at most one turn in flight per conversation.

Turn flow:
1. Consume one unit of the daily budget
2. Pick the next speaker (rotation over the last three speakers)
3. Sample the surroundings and build the prompt
4. Generate text with bounded retries
5. Simulate response and typing delays on the injected clock
6. Score sentiment, append, recompute metrics, maybe shift topic
7. Broadcast, persist, evaluate termination

Vector store, broadcaster and event listener failures are logged and never
abort a turn.
"""

from __future__ import annotations

import asyncio
import random
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

from .clock import Clock, SystemClock
from .collaborators import (
    Broadcaster,
    CityContextProvider,
    NullBroadcaster,
    StaticCityContext,
    TextGenerator,
    VectorStore,
)
from .config import EngineSettings
from .context import (
    ContextSimulator,
    describe_crowding,
    describe_noise,
    environmental_factors,
    time_of_day,
)
from .errors import (
    BudgetExhaustedError,
    GenerationFailedError,
    InvalidMessageError,
    NotFoundError,
    ParticipantsBusyError,
)
from .events import (
    ConversationEnded,
    ConversationStarted,
    EventDispatcher,
    MessageAdded,
    TopicShifted,
)
from .llm import format_transcript
from .llm_utils import generate_with_retries
from .logging_utils import log_deterministic, log_error, log_info, log_llm, log_success
from .metrics import compute_metrics, is_natural_response, response_type, topic_shift_trigger
from .prompts import DEFAULT_PROMPTS, PromptLibrary, render_prompt
from .quota import RateLimiter
from .registry import AgentRegistry
from .schemas import (
    Agent,
    CommunityMood,
    ConversationContext,
    ConversationRecord,
    ConversationStatus,
    CulturalContext,
    Message,
    SYSTEM_AUTHOR,
    TerminationReason,
    USER_AUTHOR,
)
from .store import ConversationStore, InMemoryConversationStore
from .termination import evaluate_termination


RECENT_SPEAKER_WINDOW = 3
USER_INTERACTION_ACTIVITY = "user_interaction"


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


def _describe_level(value: float, high: str, medium: str, low: str) -> str:
    if value > 0.7:
        return high
    if value > 0.4:
        return medium
    return low


def _cultural_summary(culture: CulturalContext) -> str:
    parts = []
    if culture.events:
        parts.append("Current events: " + ", ".join(event.title for event in culture.events))
    if culture.traditions:
        parts.append("Local traditions: " + ", ".join(culture.traditions))
    return ". ".join(parts)


class ConversationManager:
    """Runs the lifecycle of every conversation in the engine."""

    def __init__(
        self,
        registry: AgentRegistry,
        limiter: RateLimiter,
        generator: TextGenerator,
        *,
        store: Optional[ConversationStore] = None,
        vector_store: Optional[VectorStore] = None,
        broadcaster: Optional[Broadcaster] = None,
        city_context: Optional[CityContextProvider] = None,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        settings: Optional[EngineSettings] = None,
        prompt_library: Optional[PromptLibrary] = None,
    ) -> None:
        self.registry = registry
        self.limiter = limiter
        self.generator = generator
        self.vector_store = vector_store
        self.broadcaster = broadcaster or NullBroadcaster()
        self.city_context = city_context or StaticCityContext()
        self.dispatcher = dispatcher or EventDispatcher()
        self.clock = clock or limiter.clock or SystemClock()
        self.rng = rng or random.Random()
        self.settings = settings or EngineSettings()
        self.store = store or InMemoryConversationStore(archive_limit=self.settings.archive_limit)
        self.prompt_library = prompt_library or DEFAULT_PROMPTS
        self.context_simulator = ContextSimulator(self.rng)
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def active_conversations(self) -> List[ConversationRecord]:
        return self.store.active()

    def get_conversation(self, conversation_id: str) -> ConversationRecord:
        return self.store.require(conversation_id)

    def is_turn_in_flight(self, conversation_id: str) -> bool:
        lock = self._locks.get(conversation_id)
        return lock is not None and lock.locked()

    def conversation_for(self, agent_id: str) -> Optional[ConversationRecord]:
        for record in self.store.active():
            if agent_id in record.participants:
                return record
        return None

    async def build_context(self, district_id: str, activity: str) -> ConversationContext:
        """Fetch mood and culture for ``district_id``, falling back to neutral."""

        try:
            mood = await self.city_context.community_mood(district_id)
        except Exception as exc:
            log_error(f"[Context] Community mood unavailable for {district_id}: {exc}")
            mood = CommunityMood()
        try:
            culture = await self.city_context.cultural_context(district_id)
        except Exception as exc:
            log_error(f"[Context] Cultural context unavailable for {district_id}: {exc}")
            culture = CulturalContext()
        return ConversationContext(
            district_id=district_id,
            activity=activity,
            social_mood=mood,
            cultural_context=culture,
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _open_record(
        self,
        participant_ids: Sequence[str],
        context: ConversationContext,
        *,
        topic: Optional[str] = None,
        location: Optional[str] = None,
    ) -> ConversationRecord:
        """Reserve participants and index a new active record. Never awaits."""

        participant_ids = list(participant_ids)
        if not participant_ids:
            raise ValueError("A conversation needs at least one participant")
        agents = [self.registry.require(agent_id) for agent_id in participant_ids]
        self.limiter.reserve(participant_ids)

        now = self.clock.now()
        topic = topic or self.context_simulator.generate_topic(context)
        record = ConversationRecord(
            id=_new_id("conv"),
            participants=participant_ids,
            topic=topic,
            topic_history=[topic],
            district_id=context.district_id,
            location=location or self.context_simulator.determine_location(context.activity),
            activity=context.activity,
            social_mood=context.social_mood,
            cultural_context=context.cultural_context,
            time_of_day=time_of_day(self.clock.local_now()),
            status=ConversationStatus.ACTIVE,
            started_at=now,
            last_update=now,
        )
        record.metrics = compute_metrics(record, now, self.settings.metrics)
        self.store.add(record)
        self._locks[record.id] = asyncio.Lock()

        self._broadcast(
            record.district_id,
            {
                "type": "conversation_started",
                "data": {
                    "conversation_id": record.id,
                    "participants": [
                        {"id": agent.id, "name": agent.name, "role": agent.role} for agent in agents
                    ],
                    "location": record.location,
                    "activity": record.activity,
                    "topic": record.topic,
                    "timestamp": now.isoformat(),
                },
            },
        )
        self.dispatcher.publish(
            ConversationStarted(
                conversation_id=record.id,
                participants=list(record.participants),
                district_id=record.district_id,
                location=record.location,
                activity=record.activity,
                topic=record.topic,
                timestamp=now,
            )
        )
        log_info(
            f"[Lifecycle] Started {record.id} at {record.location} about '{record.topic}' "
            f"with {', '.join(agent.name for agent in agents)}"
        )
        return record

    async def start_conversation(
        self,
        participant_ids: Sequence[str],
        context: ConversationContext,
        *,
        topic: Optional[str] = None,
        location: Optional[str] = None,
    ) -> ConversationRecord:
        """Start a conversation and generate its opener.

        Raises:
            NotFoundError: a participant id is not registered
            ParticipantsBusyError: a participant is already in a conversation
            BudgetExhaustedError: the daily budget is spent

        A failed opener ends the conversation (``generation_failed``); the
        ended record is still returned.
        """

        record = self._open_record(participant_ids, context, topic=topic, location=location)
        async with self._locks[record.id]:
            initiator = self.registry.require(record.participants[0])
            rendered = render_prompt(
                self.prompt_library.get("opener"),
                {
                    "speaker_name": initiator.name,
                    "speaker_role": initiator.role,
                    "speaker_personality": initiator.personality or "(unspecified)",
                    "location": record.location,
                    "activity": record.activity.replace("_", " "),
                    "topic": record.topic,
                    "cultural_summary": _cultural_summary(record.cultural_context),
                },
            )
            opener = await self._take_turn(
                record,
                initiator,
                rendered.text,
                base_delay=self.settings.delays.response_delay_seconds,
                event_type="agent_conversation",
            )
            if opener is not None:
                await self._persist_transcript(record, "district_conversation", opener.content)
        return record

    # ------------------------------------------------------------------
    # Turn selection and execution
    # ------------------------------------------------------------------

    def eligible_speakers(self, record: ConversationRecord) -> List[str]:
        """Participants allowed to speak next.

        The last three speakers sit out; when that leaves nobody, everyone
        but the most recent speaker is eligible.
        """

        participants = list(record.participants)
        if len(participants) == 1:
            return participants
        recent = record.speakers(RECENT_SPEAKER_WINDOW)
        pool = [agent_id for agent_id in participants if agent_id not in recent]
        if not pool:
            last = recent[-1] if recent else None
            pool = [agent_id for agent_id in participants if agent_id != last]
        return pool

    def select_next_speaker(self, record: ConversationRecord) -> Optional[str]:
        pool = self.eligible_speakers(record)
        if not pool:
            return None
        return self.rng.choice(pool)

    async def continue_conversation(self, conversation_id: str) -> Optional[Message]:
        """Run one turn. Returns ``None`` when skipped or when the turn ended the conversation."""

        record = self.store.require(conversation_id)
        if not record.is_active:
            return None
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        if lock.locked():
            log_deterministic(f"[Lifecycle] {conversation_id} already has a turn in flight")
            return None

        async with lock:
            if not record.is_active:
                return None
            speaker_id = self.select_next_speaker(record)
            if speaker_id is None:
                await self.end_conversation(conversation_id, TerminationReason.NO_AVAILABLE_SPEAKER)
                return None
            speaker = self.registry.require(speaker_id)
            record.environment = self.context_simulator.sample_environment()
            system_prompt = await self._build_turn_prompt(record, speaker)
            return await self._take_turn(
                record,
                speaker,
                system_prompt,
                base_delay=self.settings.delays.response_delay_seconds,
                event_type="agent_conversation",
            )

    async def _take_turn(
        self,
        record: ConversationRecord,
        agent: Agent,
        system_prompt: str,
        *,
        base_delay: float,
        event_type: str,
    ) -> Optional[Message]:
        try:
            self.limiter.consume_call()
        except BudgetExhaustedError as exc:
            log_error(f"[Lifecycle] {record.id}: {exc.args[0].splitlines()[0]}")
            await self.end_conversation(record.id, TerminationReason.RESOURCE_EXHAUSTION)
            return None

        log_llm(f"[Lifecycle] {agent.name} is speaking in {record.id}")
        generation = self.settings.generation
        try:
            text = await generate_with_retries(
                self.generator.generate,
                agent,
                record.messages[-agent.memory_window_size:],
                system_prompt,
                max_attempts=generation.max_attempts,
                backoff_seconds=generation.backoff_seconds,
                sleep=self.clock.sleep,
            )
        except GenerationFailedError as exc:
            log_error(f"[Lifecycle] {record.id}: {exc.args[0].splitlines()[0]}")
            await self.end_conversation(record.id, TerminationReason.GENERATION_FAILED)
            return None

        if not record.is_active:
            return None
        await self._simulate_delay(text, base_delay)
        sentiment = await self._score_sentiment(text)
        if not record.is_active:
            return None

        previous = record.last_message
        message = Message(
            id=_new_id("msg"),
            author=agent.id,
            content=text,
            timestamp=self.clock.now(),
            role="assistant",
            sentiment=sentiment,
            topics=[record.topic],
        )
        self._append(
            record,
            message,
            event_type,
            extra={
                "agent_name": agent.name,
                "agent_role": agent.role,
                "response_type": response_type(text),
                "natural_transition": is_natural_response(
                    previous.content if previous else None, text
                ),
            },
        )
        await self._persist_message(record, message)
        if not record.is_active:
            return message

        self._maybe_shift_topic(record)
        reason = evaluate_termination(
            record,
            record.metrics,
            self.clock.now(),
            self.settings.termination,
            budget_exhausted=self.limiter.budget_exhausted,
        )
        if reason is not None:
            await self.end_conversation(record.id, reason)
        return message

    async def _simulate_delay(self, text: str, base_delay: float) -> None:
        delay = base_delay + self.settings.delays.typing_seconds_per_char * len(text)
        if delay > 0:
            await self.clock.sleep(delay)

    def _append(
        self,
        record: ConversationRecord,
        message: Message,
        event_type: str,
        extra: Optional[dict] = None,
    ) -> None:
        record.append_message(message)
        record.metrics = compute_metrics(record, message.timestamp, self.settings.metrics)
        self.dispatcher.publish(
            MessageAdded(
                conversation_id=record.id,
                district_id=record.district_id,
                message=message,
            )
        )
        data = {
            "conversation_id": record.id,
            "author": message.author,
            "content": message.content,
            "timestamp": message.timestamp.isoformat(),
            "location": record.location,
            "activity": record.activity,
            "topic": record.topic,
            "sentiment": record.metrics.sentiment,
        }
        data.update(extra or {})
        self._broadcast(record.district_id, {"type": event_type, "data": data})

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    async def _build_turn_prompt(self, record: ConversationRecord, agent: Agent) -> str:
        metrics = record.metrics
        dynamics = metrics.emotional_dynamics
        environment = record.environment
        names = {participant: self._name(participant) for participant in record.participants}
        recent_topics = "\n".join(f"- {topic}" for topic in record.topic_history[-5:])
        factors = environmental_factors(environment, self.clock.local_now())

        rendered = render_prompt(
            self.prompt_library.get("turn"),
            {
                "speaker_name": agent.name,
                "speaker_role": agent.role,
                "speaker_personality": agent.personality or "(unspecified)",
                "speaker_interests": ", ".join(agent.interests) or "(none)",
                "location": record.location,
                "activity": record.activity.replace("_", " "),
                "topic": record.topic,
                "noise_description": describe_noise(environment.noise),
                "crowding_description": describe_crowding(environment.crowding),
                "time_pressure": (
                    " You're a bit pressed for time." if "time_constrained" in factors else ""
                ),
                "community_mood": _describe_level(
                    record.social_mood.positivity, "upbeat", "steady", "subdued"
                ),
                "cultural_summary": _cultural_summary(record.cultural_context),
                "depth": _describe_level(
                    metrics.conversation_depth, "deep", "moderate", "surface level"
                ),
                "engagement": _describe_level(
                    metrics.participant_engagement.get(agent.id, 0.0), "high", "moderate", "low"
                ),
                "harmony": "some tension" if dynamics.tension > 0.5 else "harmony",
                "agreement": "strong agreement" if dynamics.agreement > 0.7 else "a range of views",
                "recent_topics": recent_topics or "- (none yet)",
                "recall": await self._recall(record),
                "transcript": format_transcript(
                    record.messages[-agent.memory_window_size:], names
                ),
            },
        )
        return rendered.text

    def _name(self, agent_id: str) -> str:
        agent = self.registry.get(agent_id)
        return agent.name if agent is not None else agent_id

    async def _recall(self, record: ConversationRecord) -> str:
        if self.vector_store is None:
            return ""
        try:
            vector = await self.vector_store.embed(
                f"conversations in {record.location} at {record.district_id} about {record.topic}"
            )
            matches = await self.vector_store.query(
                vector,
                filter={"type": "conversation", "district_id": record.district_id},
                top_k=3,
            )
        except Exception as exc:
            log_error(f"[Lifecycle] Recall failed for {record.id}: {exc}")
            return ""
        lines = [
            f"- {match.metadata.get('topic', 'a past topic')} at "
            f"{match.metadata.get('location', 'somewhere nearby')}"
            for match in matches
            if match.metadata.get("conversation_id") != record.id
        ]
        if not lines:
            return ""
        return "Relevant past conversations:\n" + "\n".join(lines) + "\n\n"

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    def _maybe_shift_topic(self, record: ConversationRecord) -> Optional[str]:
        exhaustion = record.metrics.topic_exhaustion.get(record.topic, 0.0)
        if exhaustion < self.settings.metrics.topic_shift_exhaustion:
            return None
        context = ConversationContext(
            district_id=record.district_id,
            activity=record.activity,
            social_mood=record.social_mood,
            cultural_context=record.cultural_context,
        )
        new_topic = self.context_simulator.generate_topic(context, exclude=record.topic_history)
        if new_topic == record.topic:
            return None

        previous = record.topic
        trigger = topic_shift_trigger(record)
        record.topic = new_topic
        record.topic_history.append(new_topic)
        now = self.clock.now()
        record.metrics = compute_metrics(record, now, self.settings.metrics)
        self.dispatcher.publish(
            TopicShifted(
                conversation_id=record.id,
                previous_topic=previous,
                new_topic=new_topic,
                trigger=trigger,
                timestamp=now,
            )
        )
        self._broadcast(
            record.district_id,
            {
                "type": "topic_shift",
                "data": {
                    "conversation_id": record.id,
                    "previous_topic": previous,
                    "new_topic": new_topic,
                    "trigger": trigger,
                },
            },
        )
        log_deterministic(f"[Lifecycle] {record.id} moved from '{previous}' to '{new_topic}' ({trigger})")
        return new_topic

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def end_conversation(
        self,
        conversation_id: str,
        reason: TerminationReason = TerminationReason.MANUAL,
    ) -> Optional[ConversationRecord]:
        """End an active conversation. Returns ``None`` if it was not active."""

        record = self.store.require(conversation_id)
        if not record.is_active:
            return None

        now = self.clock.now()
        self.limiter.release(record.participants)
        final = compute_metrics(record, now, self.settings.metrics)
        topics = list(
            dict.fromkeys(
                [
                    *record.topic_history,
                    *(topic for message in record.messages for topic in message.topics or []),
                ]
            )
        )
        summary = Message(
            id=_new_id("msg"),
            author=SYSTEM_AUTHOR,
            content=(
                f"Conversation ended after {len(record.messages)} messages. "
                f"Final sentiment: {'positive' if final.sentiment >= 0.5 else 'negative'}. "
                f"Topics discussed: {', '.join(topics)}"
            ),
            timestamp=max(now, record.last_update),
            role="system",
            topics=topics,
        )
        record.append_message(summary)
        record.status = ConversationStatus.ENDED
        record.ended_at = now
        record.end_reason = reason
        record.metrics = compute_metrics(record, now, self.settings.metrics)
        self.store.archive(record)
        self._locks.pop(conversation_id, None)
        self.registry.record_conversation(
            record.participants, sentiment=final.sentiment, timestamp=now
        )

        duration = (now - record.started_at).total_seconds()
        self.dispatcher.publish(
            ConversationEnded(
                conversation_id=record.id,
                district_id=record.district_id,
                reason=reason,
                resource_exhausted=reason == TerminationReason.RESOURCE_EXHAUSTION,
                duration_seconds=duration,
                message_count=len(record.messages),
                final_metrics=record.metrics,
                timestamp=now,
            )
        )
        self._broadcast(
            record.district_id,
            {
                "type": "conversation_ended",
                "data": {
                    "conversation_id": record.id,
                    "reason": reason.value,
                    "message_count": len(record.messages),
                    "duration_seconds": duration,
                    "quality": record.metrics.quality_score,
                    "summary": summary.content,
                },
            },
        )
        log_success(f"[Lifecycle] Ended {record.id} ({reason.value}) after {len(record.messages)} messages")
        await self._persist_transcript(record, "conversation", summary.content)
        return record

    # ------------------------------------------------------------------
    # Users and announcements
    # ------------------------------------------------------------------

    async def respond_to_user(
        self,
        district_id: str,
        agent_id: str,
        text: str,
        conversation_id: Optional[str] = None,
    ) -> Optional[Message]:
        """Let one agent answer a user.

        Without ``conversation_id`` a single-agent ``user_interaction``
        conversation is created. Returns the reply, or ``None`` when the turn
        ended the conversation.
        """

        agent = self.registry.require(agent_id)
        if conversation_id is None:
            record = self._open_record(
                [agent_id], ConversationContext(district_id=district_id, activity=USER_INTERACTION_ACTIVITY)
            )
            context = await self.build_context(district_id, USER_INTERACTION_ACTIVITY)
            record.social_mood = context.social_mood
            record.cultural_context = context.cultural_context
        else:
            record = self.store.require(conversation_id)
            if agent_id not in record.participants:
                raise NotFoundError(f"Participant of {conversation_id}", agent_id)
        if not record.is_active:
            raise InvalidMessageError(f"Conversation {record.id} is not active")

        async with self._locks.setdefault(record.id, asyncio.Lock()):
            if not record.is_active:
                raise InvalidMessageError(f"Conversation {record.id} is not active")
            self._append_user_message(record, text)
            rendered = render_prompt(
                self.prompt_library.get("user_reply"),
                {
                    "speaker_name": agent.name,
                    "speaker_role": agent.role,
                    "speaker_personality": agent.personality or "(unspecified)",
                    "location": record.location,
                    "activity": record.activity.replace("_", " "),
                    "topic": record.topic,
                    "transcript": format_transcript(
                        record.messages[-agent.memory_window_size:],
                        {participant: self._name(participant) for participant in record.participants},
                    ),
                },
            )
            return await self._take_turn(
                record,
                agent,
                rendered.text,
                base_delay=self.settings.delays.user_response_delay_seconds,
                event_type="agent_response",
            )

    async def handle_user_message(self, conversation_id: str, text: str) -> List[Message]:
        """Append a user message and let one or two participants respond."""

        record = self.store.require(conversation_id)
        if not record.is_active:
            raise InvalidMessageError(f"Conversation {conversation_id} is not active")

        replies: List[Message] = []
        async with self._locks.setdefault(conversation_id, asyncio.Lock()):
            if not record.is_active:
                raise InvalidMessageError(f"Conversation {conversation_id} is not active")
            self._append_user_message(record, text)
            pool = self.eligible_speakers(record)
            responders = self.rng.sample(pool, min(len(pool), self.rng.randint(1, 2)))
            for agent_id in responders:
                agent = self.registry.require(agent_id)
                record.environment = self.context_simulator.sample_environment()
                system_prompt = await self._build_turn_prompt(record, agent)
                reply = await self._take_turn(
                    record,
                    agent,
                    system_prompt,
                    base_delay=self.settings.delays.user_response_delay_seconds,
                    event_type="agent_response",
                )
                if reply is None:
                    break
                replies.append(reply)
                if not record.is_active:
                    break
        return replies

    def _append_user_message(self, record: ConversationRecord, text: str) -> Message:
        if not text or not text.strip():
            raise InvalidMessageError("User messages cannot be empty")
        message = Message(
            id=_new_id("msg"),
            author=USER_AUTHOR,
            content=text.strip(),
            timestamp=self.clock.now(),
            role="user",
            topics=[record.topic],
        )
        self._append(record, message, "user_message")
        return message

    async def broadcast_system_message(self, content: str) -> int:
        """Announce ``content`` in every active conversation and collect reactions.

        Returns the number of conversations that received the announcement.
        """

        delivered = 0
        for record in list(self.store.active()):
            async with self._locks.setdefault(record.id, asyncio.Lock()):
                if not record.is_active:
                    continue
                announcement = Message(
                    id=_new_id("msg"),
                    author=SYSTEM_AUTHOR,
                    content=content,
                    timestamp=self.clock.now(),
                    role="system",
                    topics=[],
                )
                self._append(record, announcement, "system_message")
                delivered += 1
                for agent_id in list(record.participants):
                    agent = self.registry.require(agent_id)
                    rendered = render_prompt(
                        self.prompt_library.get("system_reaction"),
                        {
                            "speaker_name": agent.name,
                            "speaker_role": agent.role,
                            "location": record.location,
                            "topic": record.topic,
                            "announcement": content,
                        },
                    )
                    reaction = await self._take_turn(
                        record,
                        agent,
                        rendered.text,
                        base_delay=self.settings.delays.user_response_delay_seconds,
                        event_type="agent_conversation",
                    )
                    if reaction is None or not record.is_active:
                        break
        return delivered

    async def initiate_agent_activity(self, agent_id: str) -> Optional[ConversationRecord]:
        """Start a routine-driven conversation with agents sharing this hour's location."""

        self.registry.require(agent_id)
        if self.limiter.is_busy(agent_id):
            return None
        profile = self.registry.profile(agent_id)
        hour = self.clock.local_now().hour
        slot = profile.routine_at(hour)
        if slot is None:
            return None

        partners = [
            partner
            for partner in self.registry.agents_at(hour, slot.location, exclude=[agent_id])
            if not self.limiter.is_busy(partner)
        ][:2]
        if not partners:
            return None

        district_id = (
            profile.regular_locations[0]
            if profile.regular_locations
            else self.settings.scheduler.default_district
        )
        context = await self.build_context(district_id, slot.activity)
        try:
            return await self.start_conversation(
                [agent_id, *partners], context, location=slot.location
            )
        except (ParticipantsBusyError, BudgetExhaustedError) as exc:
            log_deterministic(f"[Lifecycle] Routine conversation for {agent_id} skipped: {exc.args[0].splitlines()[0]}")
            return None

    # ------------------------------------------------------------------
    # Best-effort side channels
    # ------------------------------------------------------------------

    def _broadcast(self, district_id: str, event: dict) -> None:
        try:
            self.broadcaster.broadcast(district_id, event)
        except Exception as exc:
            log_error(f"[Broadcast] {event.get('type', 'event')} to {district_id} failed: {exc}")

    async def _score_sentiment(self, text: str) -> Optional[float]:
        if self.vector_store is None:
            return None
        try:
            score = await self.vector_store.sentiment(text)
        except Exception as exc:
            log_error(f"[VectorStore] Sentiment scoring failed: {exc}")
            return None
        return min(1.0, max(0.0, score))

    async def _persist_message(self, record: ConversationRecord, message: Message) -> None:
        if self.vector_store is None:
            return
        try:
            vector = await self.vector_store.embed(message.content)
            await self.vector_store.upsert(
                f"msg-{message.id}",
                vector,
                {
                    "type": "conversation_message",
                    "conversation_id": record.id,
                    "agent_id": message.author,
                    "content": message.content,
                    "sentiment": message.sentiment,
                    "topics": ",".join(message.topics or []),
                    "location": record.location,
                    "activity": record.activity,
                    "contextual_relevance": record.metrics.contextual_relevance,
                    "conversation_depth": record.metrics.conversation_depth,
                    "timestamp": message.timestamp.isoformat(),
                },
            )
        except Exception as exc:
            log_error(f"[VectorStore] Could not persist {message.id}: {exc}")

    async def _persist_transcript(self, record: ConversationRecord, kind: str, content: str) -> None:
        if self.vector_store is None:
            return
        transcript = format_transcript(
            record.messages, {participant: self._name(participant) for participant in record.participants}
        )
        try:
            vector = await self.vector_store.embed(f"Conversation in district {record.district_id}: {transcript}")
            await self.vector_store.upsert(
                f"{kind}-{record.id}",
                vector,
                {
                    "type": kind,
                    "conversation_id": record.id,
                    "district_id": record.district_id,
                    "location": record.location,
                    "activity": record.activity,
                    "participants": ",".join(record.participants),
                    "topic": record.topic,
                    "topics": ",".join(record.topic_history),
                    "sentiment": record.metrics.sentiment,
                    "content": content,
                    "timestamp": record.started_at.isoformat(),
                },
            )
        except Exception as exc:
            log_error(f"[VectorStore] Could not persist transcript of {record.id}: {exc}")
