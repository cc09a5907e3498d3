"""
Conversation state store.

Keeps the active-conversation index plus an archive of ended conversations.
Follows the persistence pattern of an abstract contract with an in-memory
implementation; durability across restarts is not a goal, but the contract
lets an embedding service mirror records elsewhere.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .errors import NotFoundError
from .schemas import ConversationRecord, ConversationStatus


class ConversationStore(ABC):
    """Storage contract for conversation records."""

    @abstractmethod
    def add(self, record: ConversationRecord) -> None:
        """Index a newly started conversation."""

    @abstractmethod
    def get(self, conversation_id: str) -> Optional[ConversationRecord]:
        """Return the record (active or archived), or ``None``."""

    @abstractmethod
    def active(self) -> List[ConversationRecord]:
        """Return conversations whose status is ``active``."""

    @abstractmethod
    def archive(self, record: ConversationRecord) -> None:
        """Move an ended record out of the active index."""

    @abstractmethod
    def archived(self) -> List[ConversationRecord]:
        """Return ended conversations, oldest first."""

    def require(self, conversation_id: str) -> ConversationRecord:
        record = self.get(conversation_id)
        if record is None:
            raise NotFoundError("Conversation", conversation_id)
        return record


class InMemoryConversationStore(ConversationStore):
    """Dict-backed store used by default and in tests.

    The archive keeps the most recent ``archive_limit`` ended conversations and
    evicts the oldest first. ``None`` keeps everything.
    """

    def __init__(self, archive_limit: Optional[int] = 500) -> None:
        self._active: Dict[str, ConversationRecord] = {}
        self._archive: Dict[str, ConversationRecord] = {}
        self.archive_limit = archive_limit

    def add(self, record: ConversationRecord) -> None:
        self._active[record.id] = record

    def get(self, conversation_id: str) -> Optional[ConversationRecord]:
        return self._active.get(conversation_id) or self._archive.get(conversation_id)

    def active(self) -> List[ConversationRecord]:
        return [
            record
            for record in self._active.values()
            if record.status == ConversationStatus.ACTIVE
        ]

    def archive(self, record: ConversationRecord) -> None:
        self._active.pop(record.id, None)
        self._archive[record.id] = record
        if self.archive_limit is not None:
            while len(self._archive) > self.archive_limit:
                oldest = next(iter(self._archive))
                del self._archive[oldest]

    def archived(self) -> List[ConversationRecord]:
        return list(self._archive.values())
