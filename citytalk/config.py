"""
Citytalk Configuration

Loads configuration from environment variables with sensible defaults.
Engine tunables live in pydantic settings models so tests and embedding
services can construct them explicitly instead of touching the environment.
"""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load .env file if it exists
load_dotenv()


class Config:
    """Application configuration loaded from environment variables."""

    # LLM Provider Configuration
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "openai")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-5-nano")
    LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "120"))

    # API Keys
    ANTHROPIC_API_KEY: str | None = os.getenv("ANTHROPIC_API_KEY")
    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")

    # Throughput limits
    MAX_DAILY_CALLS: int = int(os.getenv("CITYTALK_MAX_DAILY_CALLS", "100000"))
    MAX_CONVERSATIONS_PER_AGENT: int = int(
        os.getenv("CITYTALK_MAX_CONVERSATIONS_PER_AGENT", "10000")
    )
    MAX_CONCURRENT_CONVERSATIONS: int = int(os.getenv("CITYTALK_MAX_CONCURRENT", "1"))

    # City wiring
    DEFAULT_DISTRICT: str = os.getenv("CITYTALK_DEFAULT_DISTRICT", "downtown")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors if required values are missing."""
        if cls.LLM_PROVIDER == "anthropic" and not cls.ANTHROPIC_API_KEY:
            raise ValueError(
                "ANTHROPIC_API_KEY is required when using the 'anthropic' provider"
            )

        if cls.LLM_PROVIDER == "openai" and not cls.OPENAI_API_KEY:
            raise ValueError(
                "OPENAI_API_KEY is required when using the 'openai' provider"
            )

        if cls.MAX_DAILY_CALLS <= 0:
            raise ValueError("CITYTALK_MAX_DAILY_CALLS must be a positive integer")

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        lines = [
            "Citytalk Configuration:",
            f"  LLM Provider: {cls.LLM_PROVIDER}",
            f"  LLM Model: {cls.LLM_MODEL}",
            f"  Daily call budget: {cls.MAX_DAILY_CALLS}",
            f"  Conversations per agent: {cls.MAX_CONVERSATIONS_PER_AGENT}",
            f"  Concurrent conversations: {cls.MAX_CONCURRENT_CONVERSATIONS}",
            f"  Default district: {cls.DEFAULT_DISTRICT}",
        ]
        return "\n".join(lines)


# ============================================================================
# Engine settings
# ============================================================================


class QuotaSettings(BaseModel):
    """Daily budget and per-agent quota knobs for the rate limiter."""

    max_daily_calls: int = Field(100_000, ge=0, description="Global daily generation budget")
    max_daily_conversations_per_agent: int = Field(10_000, ge=0)
    min_conversation_cooldown_seconds: float = Field(60.0, ge=0)
    # Cooldown grows with global call volume: cooldown * (1 + k * daily_call_count)
    dynamic_cooldown_multiplier: float = Field(0.1, ge=0)


class DelaySettings(BaseModel):
    """Human-like pacing applied before a generated message is appended."""

    response_delay_seconds: float = Field(5.0, ge=0)
    typing_seconds_per_char: float = Field(0.1, ge=0)
    user_response_delay_seconds: float = Field(2.0, ge=0)


class GenerationSettings(BaseModel):
    """Retry policy for the text generation collaborator."""

    max_attempts: int = Field(3, ge=1)
    backoff_seconds: float = Field(5.0, ge=0)


class TerminationSettings(BaseModel):
    """Thresholds for the termination policy.

    The OR-of-ANDs structure is fixed in ``citytalk.termination``; only the
    constants are configurable.
    """

    min_duration_seconds: float = 10 * 60
    max_duration_seconds: float = 20 * 60
    max_messages: int = 100

    min_quality: float = 0.6
    quality_min_messages: int = 20
    quality_agreement: float = 0.7
    quality_tension: float = 0.8

    silence_probability: float = 0.95
    silence_min_messages: int = 15
    silence_agreement: float = 0.8

    depth: float = 0.8
    depth_min_messages: int = 25
    depth_agreement: float = 0.7
    depth_relevance_ceiling: float = 0.3


class MetricsSettings(BaseModel):
    """Constants used by the metrics calculator and topic shifting."""

    topic_exhaustion_threshold: int = Field(5, ge=1, description="Messages before a topic counts as worn")
    topic_shift_exhaustion: float = Field(1.0, ge=0, le=1)
    deep_message_length: int = Field(200, ge=1)
    emotional_window: int = Field(5, ge=1)


class SchedulerSettings(BaseModel):
    """Periodic trigger cadence and conversation generation gates."""

    generator_interval_seconds: float = 30.0
    continuation_interval_seconds: float = 15.0
    message_interval_seconds: float = 60.0
    daily_reset_check_seconds: float = 60.0
    activity_interval_seconds: float = 5 * 60.0
    social_update_interval_seconds: float = 60 * 60.0
    max_concurrent_conversations: int = Field(1, ge=1)
    min_conversation_cooldown_seconds: float = 60.0
    conversation_start_hour: int = Field(0, ge=0, le=24)
    conversation_end_hour: int = Field(24, ge=0, le=24)
    default_district: str = "downtown"


class EngineSettings(BaseModel):
    """Bundle of every tunable the engine consumes."""

    quota: QuotaSettings = Field(default_factory=QuotaSettings)
    delays: DelaySettings = Field(default_factory=DelaySettings)
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    termination: TerminationSettings = Field(default_factory=TerminationSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    archive_limit: int = Field(500, ge=1, description="Ended conversations kept in the in-memory archive")

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings seeded from ``Config`` environment values."""

        return cls(
            quota=QuotaSettings(
                max_daily_calls=Config.MAX_DAILY_CALLS,
                max_daily_conversations_per_agent=Config.MAX_CONVERSATIONS_PER_AGENT,
            ),
            scheduler=SchedulerSettings(
                max_concurrent_conversations=Config.MAX_CONCURRENT_CONVERSATIONS,
                default_district=Config.DEFAULT_DISTRICT,
            ),
        )
