"""
Citytalk - conversation dynamics engine for simulated city agents.

Decides when agents start talking, who speaks next, how long to wait, when
topics shift and when conversations end, within a daily call budget and
per-agent quotas.

No file I/O required. No database required. No global state.
All collaborators injected by the user.
"""

__version__ = "0.1.0"

# Main components
from .engine import ConversationEngine
from .lifecycle import ConversationManager
from .scheduler import Scheduler
from .registry import AgentRegistry
from .quota import RateLimiter
from .store import ConversationStore, InMemoryConversationStore
from .termination import evaluate_termination
from .metrics import compute_metrics

# Collaborators
from .collaborators import (
    TextGenerator,
    ScriptedTextGenerator,
    VectorStore,
    VectorMatch,
    InMemoryVectorStore,
    Broadcaster,
    NullBroadcaster,
    RecordingBroadcaster,
    CityContextProvider,
    StaticCityContext,
    RoutineGenerator,
    DefaultRoutineGenerator,
    default_routines,
)
from .llm import LLMTextGenerator, LLMRoutineGenerator
from .prompts import PromptTemplate, PromptLibrary, DEFAULT_PROMPTS

# Time and events
from .clock import Clock, SystemClock, VirtualClock, PeriodicTrigger
from .events import (
    ConversationStarted,
    MessageAdded,
    TopicShifted,
    ConversationEnded,
    ConversationEvent,
    EventDispatcher,
    EventRecorder,
)

# Configuration
from .config import (
    Config,
    EngineSettings,
    QuotaSettings,
    DelaySettings,
    GenerationSettings,
    TerminationSettings,
    MetricsSettings,
    SchedulerSettings,
)

# Errors
from .errors import (
    ConversationError,
    ParticipantsBusyError,
    BudgetExhaustedError,
    GenerationFailedError,
    NotFoundError,
    InvalidMessageError,
)

# Core schemas
from .schemas import (
    Agent,
    AgentTraits,
    RoutineSlot,
    SocialProfile,
    CommunityMood,
    CulturalEvent,
    CulturalContext,
    ConversationContext,
    EnvironmentalContext,
    Message,
    ConversationMetrics,
    ConversationRecord,
    ConversationStatus,
    TerminationReason,
    QuotaRecord,
)

__all__ = [
    # Main components
    "ConversationEngine",
    "ConversationManager",
    "Scheduler",
    "AgentRegistry",
    "RateLimiter",
    "ConversationStore",
    "InMemoryConversationStore",
    "evaluate_termination",
    "compute_metrics",
    # Collaborators
    "TextGenerator",
    "ScriptedTextGenerator",
    "VectorStore",
    "VectorMatch",
    "InMemoryVectorStore",
    "Broadcaster",
    "NullBroadcaster",
    "RecordingBroadcaster",
    "CityContextProvider",
    "StaticCityContext",
    "RoutineGenerator",
    "DefaultRoutineGenerator",
    "default_routines",
    "LLMTextGenerator",
    "LLMRoutineGenerator",
    "PromptTemplate",
    "PromptLibrary",
    "DEFAULT_PROMPTS",
    # Time and events
    "Clock",
    "SystemClock",
    "VirtualClock",
    "PeriodicTrigger",
    "ConversationStarted",
    "MessageAdded",
    "TopicShifted",
    "ConversationEnded",
    "ConversationEvent",
    "EventDispatcher",
    "EventRecorder",
    # Configuration
    "Config",
    "EngineSettings",
    "QuotaSettings",
    "DelaySettings",
    "GenerationSettings",
    "TerminationSettings",
    "MetricsSettings",
    "SchedulerSettings",
    # Errors
    "ConversationError",
    "ParticipantsBusyError",
    "BudgetExhaustedError",
    "GenerationFailedError",
    "NotFoundError",
    "InvalidMessageError",
    # Schemas
    "Agent",
    "AgentTraits",
    "RoutineSlot",
    "SocialProfile",
    "CommunityMood",
    "CulturalEvent",
    "CulturalContext",
    "ConversationContext",
    "EnvironmentalContext",
    "Message",
    "ConversationMetrics",
    "ConversationRecord",
    "ConversationStatus",
    "TerminationReason",
    "QuotaRecord",
]
