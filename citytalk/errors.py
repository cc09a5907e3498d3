"""Exception taxonomy for the conversation engine.

Each error carries the identifiers a caller needs to decide what to do next
plus a short remediation hint, mirroring how the simulation surfaces
failures to operators.
"""

from __future__ import annotations

from typing import Iterable, Optional


class ConversationError(Exception):
    """Base class for all engine errors."""


class ParticipantsBusyError(ConversationError):
    """Raised when a reservation conflicts with an active conversation.

    Do not retry immediately; the busy agents are released only when their
    current conversation ends.
    """

    def __init__(self, agent_ids: Iterable[str]) -> None:
        self.agent_ids = sorted(set(agent_ids))
        super().__init__(
            "One or more participants are already in active conversations: "
            + ", ".join(self.agent_ids)
        )


class BudgetExhaustedError(ConversationError):
    """Raised when the global daily call budget is spent.

    Recoverable only after the daily reset.
    """

    def __init__(self, *, used: int, limit: int) -> None:
        self.used = used
        self.limit = limit
        super().__init__(
            f"Daily generation budget exhausted ({used}/{limit} calls).\n"
            "Remediation tips:\n"
            "  - Wait for the daily reset\n"
            "  - Raise CITYTALK_MAX_DAILY_CALLS if the budget is too tight"
        )


class GenerationFailedError(ConversationError):
    """Raised when the text generator keeps failing after all retries."""

    def __init__(
        self,
        *,
        agent_id: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
    ) -> None:
        self.agent_id = agent_id
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(
            f"Generation for agent '{agent_id}' failed after {attempts} attempts{detail}\n"
            "Remediation tips:\n"
            "  - Verify LLM configuration (LLM_PROVIDER, LLM_MODEL, API key)\n"
            "  - Enable DEBUG_LLM=true to inspect prompts"
        )


class NotFoundError(ConversationError, KeyError):
    """Raised when an agent or conversation id is unknown."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} '{identifier}' not found")

    def __str__(self) -> str:
        return f"{self.kind} '{self.identifier}' not found"


class InvalidMessageError(ConversationError):
    """Raised when an append would break the append-only, ordered log."""
