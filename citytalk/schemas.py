"""
Pydantic schemas for the conversation engine.

All data structures shared across the registry, rate limiter, metrics
calculator and lifecycle manager are defined here.

Design Philosophy:
- Messages are frozen once created; the log on a ConversationRecord only grows
- Metrics are a frozen snapshot recomputed from the log, never patched in place
- Metadata fields carry scenario-specific extensions
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidMessageError


USER_AUTHOR = "user"
SYSTEM_AUTHOR = "system"


# ============================================================================
# Agent Schemas
# ============================================================================


class AgentTraits(BaseModel):
    """Numeric personality axes on a 0-1 scale."""

    analytical_thinking: float = Field(0.5, ge=0, le=1)
    creativity: float = Field(0.5, ge=0, le=1)
    empathy: float = Field(0.5, ge=0, le=1)
    curiosity: float = Field(0.5, ge=0, le=1)
    enthusiasm: float = Field(0.5, ge=0, le=1)
    # Optional axes some agents carry (decisiveness, formality, leadership, ...)
    extra: Dict[str, float] = Field(default_factory=dict)


class Agent(BaseModel):
    """A registered conversational agent.

    Identity, personality and interests are fixed after registration. The
    registry owns the only mutable bit (``is_active``) and replaces the model
    wholesale when it flips.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique agent identifier")
    name: str = Field(..., description="Display name used in prompts and broadcasts")
    role: str = Field("resident", description="Short summary of the agent's role")
    personality: str = Field("", description="Free-text personality description")
    interests: List[str] = Field(default_factory=list)
    preferred_style: str = Field("casual", description="Preferred conversation style")
    memory_window_size: int = Field(10, ge=1, description="Prior messages included in prompts")
    traits: AgentTraits = Field(default_factory=AgentTraits)
    district_id: Optional[str] = Field(None, description="Home district")
    is_active: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RoutineSlot(BaseModel):
    """One entry of an agent's daily routine."""

    time_slot: int = Field(..., ge=0, le=23, description="Hour of day")
    activity: str
    location: str
    possible_topics: List[str] = Field(default_factory=list)
    social_probability: float = Field(0.5, ge=0, le=1)


class RoutinePlan(BaseModel):
    """Structured response expected from routine generation."""

    routines: List[RoutineSlot] = Field(..., min_length=5, max_length=5)


class AgentInteraction(BaseModel):
    """A past interaction with another agent, kept for a rolling window."""

    agent_id: str
    kind: str = "conversation"
    sentiment: float = Field(0.5, ge=0, le=1)
    timestamp: datetime


class SocialPersonality(BaseModel):
    extroversion: float = 0.5
    cultural_openness: float = 0.5
    community_orientation: float = 0.5


class SocialProfile(BaseModel):
    """Mutable social state owned by the registry."""

    friends: Set[str] = Field(default_factory=set)
    regular_locations: List[str] = Field(default_factory=list)
    recent_interactions: List[AgentInteraction] = Field(default_factory=list)
    cultural_preferences: List[str] = Field(default_factory=list)
    routines: List[RoutineSlot] = Field(default_factory=list)
    personality: SocialPersonality = Field(default_factory=SocialPersonality)

    def routine_at(self, hour: int) -> Optional[RoutineSlot]:
        for routine in self.routines:
            if routine.time_slot == hour:
                return routine
        return None


# ============================================================================
# City context
# ============================================================================


class CommunityMood(BaseModel):
    positivity: float = Field(0.5, ge=0, le=1)
    engagement: float = Field(0.5, ge=0, le=1)


class CulturalEvent(BaseModel):
    title: str
    type: str = "event"


class CulturalContext(BaseModel):
    events: List[CulturalEvent] = Field(default_factory=list)
    traditions: List[str] = Field(default_factory=list)


class ConversationContext(BaseModel):
    """Where and why a conversation is starting."""

    district_id: str
    activity: str
    social_mood: CommunityMood = Field(default_factory=CommunityMood)
    cultural_context: CulturalContext = Field(default_factory=CulturalContext)


class EnvironmentalContext(BaseModel):
    """Ambient conditions sampled for a single turn."""

    noise: float = Field(0.0, ge=0, le=1)
    crowding: float = Field(0.0, ge=0, le=1)
    time_constraints: bool = False


# ============================================================================
# Messages
# ============================================================================


class Message(BaseModel):
    """One entry of a conversation log. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str
    author: str = Field(..., description="Agent id, or the 'user' / 'system' sentinel")
    content: str
    timestamp: datetime
    role: Literal["assistant", "user", "system"] = "assistant"
    sentiment: Optional[float] = Field(None, ge=0, le=1)
    topics: Optional[List[str]] = None

    @property
    def is_system(self) -> bool:
        return self.author == SYSTEM_AUTHOR


# ============================================================================
# Metrics
# ============================================================================


class EmotionalDynamics(BaseModel):
    model_config = ConfigDict(frozen=True)

    tension: float = 0.0
    agreement: float = 0.5
    empathy: float = 0.0


class InteractionPatterns(BaseModel):
    model_config = ConfigDict(frozen=True)

    turn_taking_balance: float = 1.0
    response_latencies: List[float] = Field(default_factory=list)
    topic_initiation_counts: Dict[str, int] = Field(default_factory=dict)


class TopicSpan(BaseModel):
    """A stretch of the log spent on one topic."""

    model_config = ConfigDict(frozen=True)

    topic: str
    duration_seconds: float
    engagement: float


class ConversationMetrics(BaseModel):
    """Derived metrics snapshot. Recomputed from the log, never edited."""

    model_config = ConfigDict(frozen=True)

    message_count: int = 0
    momentum: float = Field(0.5, ge=0.1, le=0.9)
    silence_duration: float = 0.0
    silence_probability: float = Field(0.5, ge=0, le=1)
    topic_exhaustion: Dict[str, float] = Field(default_factory=dict)
    emotional_state: float = 0.5
    emotional_dynamics: EmotionalDynamics = Field(default_factory=EmotionalDynamics)
    interaction_patterns: InteractionPatterns = Field(default_factory=InteractionPatterns)
    participant_engagement: Dict[str, float] = Field(default_factory=dict)
    contextual_relevance: float = 1.0
    conversation_depth: float = 0.0
    natural_transitions: int = 0
    turns_in_current_topic: int = 0
    topic_history: List[TopicSpan] = Field(default_factory=list)
    sentiment: float = 0.5
    quality_score: float = 0.5
    computed_at: Optional[datetime] = None


# ============================================================================
# Conversation records
# ============================================================================


class ConversationStatus(str, Enum):
    PROPOSED = "proposed"
    ACTIVE = "active"
    ENDED = "ended"


class TerminationReason(str, Enum):
    MAX_DURATION = "max_duration"
    MAX_MESSAGES = "max_messages"
    QUALITY_THRESHOLD = "quality_threshold"
    NATURAL_CONCLUSION = "natural_conclusion"
    TOPIC_EXHAUSTION = "topic_exhaustion"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    GENERATION_FAILED = "generation_failed"
    NO_AVAILABLE_SPEAKER = "no_available_speaker"
    MANUAL = "manual"


class ConversationRecord(BaseModel):
    """Authoritative state for one conversation.

    The message log is the source of truth. ``append_message`` is the only
    supported way to grow it and refuses out-of-order timestamps or appends to
    an ended conversation.
    """

    id: str
    participants: List[str] = Field(..., min_length=1)
    messages: List[Message] = Field(default_factory=list)
    topic: str
    topic_history: List[str] = Field(default_factory=list)
    district_id: str
    location: str
    activity: str
    social_mood: CommunityMood = Field(default_factory=CommunityMood)
    cultural_context: CulturalContext = Field(default_factory=CulturalContext)
    environment: EnvironmentalContext = Field(default_factory=EnvironmentalContext)
    time_of_day: str = "day"
    status: ConversationStatus = ConversationStatus.PROPOSED
    started_at: datetime
    last_update: datetime
    ended_at: Optional[datetime] = None
    end_reason: Optional[TerminationReason] = None
    metrics: ConversationMetrics = Field(default_factory=ConversationMetrics)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == ConversationStatus.ACTIVE

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    def append_message(self, message: Message) -> None:
        if self.status == ConversationStatus.ENDED:
            raise InvalidMessageError(
                f"Conversation {self.id} has ended; cannot append {message.id}"
            )
        last = self.last_message
        if last is not None and message.timestamp < last.timestamp:
            raise InvalidMessageError(
                f"Message {message.id} is older than the last entry of conversation {self.id}"
            )
        self.messages.append(message)
        self.last_update = message.timestamp

    def speakers(self, last: int) -> List[str]:
        """Authors of the last ``last`` non-system messages, oldest first."""

        authors = [m.author for m in self.messages if not m.is_system]
        return authors[-last:] if last > 0 else []


class QuotaRecord(BaseModel):
    """Per-agent daily conversation quota."""

    count: int = 0
    last_conversation_at: Optional[datetime] = None
