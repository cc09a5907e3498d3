"""
Collaborator interfaces consumed by the conversation engine.

The engine never talks to a model provider, a vector database, a socket
server or the wider city simulation directly. It depends on the abstract
classes below, and each ships with an in-memory implementation so the engine
runs with no external services (tests, prototyping, offline demos).

Interfaces:
1. TextGenerator - produces the text for one turn
2. VectorStore - embeddings, semantic recall, transcript persistence, sentiment
3. Broadcaster - fire-and-forget delivery of events to a district
4. CityContextProvider - read-only community mood and cultural context
5. RoutineGenerator - daily routines for newly registered agents

Vector store and broadcaster calls are best-effort side channels: the engine
logs and swallows their failures, so implementations may raise freely.
"""

from __future__ import annotations

import hashlib
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .schemas import (
    Agent,
    CommunityMood,
    CulturalContext,
    Message,
    RoutineSlot,
)


# ============================================================================
# Text generation
# ============================================================================


class TextGenerator(ABC):
    """Produces the text of one conversational turn."""

    @abstractmethod
    async def generate(
        self,
        agent: Agent,
        prior_messages: Sequence[Message],
        system_prompt: str,
    ) -> str:
        """Return the agent's next utterance.

        Empty strings and raised exceptions are both treated as retryable
        failures by the engine.
        """


class ScriptedTextGenerator(TextGenerator):
    """Deterministic generator that cycles through canned lines.

    Useful for demos and tests. Lines may contain ``{name}`` and ``{turn}``
    placeholders.
    """

    def __init__(self, lines: Optional[Sequence[str]] = None) -> None:
        self.lines = list(lines or ["{name} shares a thought (turn {turn})."])
        self.calls: List[Tuple[str, str]] = []

    async def generate(
        self,
        agent: Agent,
        prior_messages: Sequence[Message],
        system_prompt: str,
    ) -> str:
        turn = len(self.calls)
        self.calls.append((agent.id, system_prompt))
        line = self.lines[turn % len(self.lines)]
        return line.format(name=agent.name, turn=turn + 1)


# ============================================================================
# Vector store
# ============================================================================


@dataclass
class VectorMatch:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class VectorStore(ABC):
    """Embedding and semantic storage contract."""

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Return an embedding vector for ``text``."""

    @abstractmethod
    async def upsert(self, id: str, vector: List[float], metadata: Dict[str, Any]) -> None:
        """Insert or replace a vector with metadata."""

    @abstractmethod
    async def query(
        self,
        vector: List[float],
        filter: Optional[Dict[str, Any]] = None,
        top_k: int = 5,
    ) -> List[VectorMatch]:
        """Return the ``top_k`` nearest entries whose metadata matches ``filter``."""

    @abstractmethod
    async def sentiment(self, text: str) -> float:
        """Return a sentiment score in [0, 1] (0.5 is neutral)."""


_TOKEN_RE = re.compile(r"[a-z']+")

_POSITIVE_WORDS = frozenset(
    {
        "great", "good", "love", "wonderful", "amazing", "enjoy", "happy", "excited",
        "beautiful", "nice", "lovely", "fantastic", "glad", "agree", "perfect",
        "vibrant", "impressive", "thanks", "appreciate", "fun", "pleasant",
    }
)
_NEGATIVE_WORDS = frozenset(
    {
        "bad", "hate", "terrible", "awful", "sad", "angry", "worried", "problem",
        "disagree", "annoying", "boring", "poor", "worse", "worst", "upset",
        "frustrating", "noisy", "crowded", "unfortunately", "concerned",
    }
)


def _tokens(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


class InMemoryVectorStore(VectorStore):
    """Dict-backed vector store using hashed bag-of-words embeddings.

    Embeddings are deterministic across processes (hashing uses md5 rather
    than ``hash``), similarity is cosine, and sentiment comes from a small
    lexicon. Good enough for recall in tests and demos.
    """

    def __init__(self, dimensions: int = 64) -> None:
        self.dimensions = dimensions
        self.entries: Dict[str, Tuple[List[float], Dict[str, Any]]] = {}

    async def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for token in _tokens(text):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vector[digest[0] % self.dimensions] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]

    async def upsert(self, id: str, vector: List[float], metadata: Dict[str, Any]) -> None:
        self.entries[id] = (list(vector), dict(metadata))

    async def query(
        self,
        vector: List[float],
        filter: Optional[Dict[str, Any]] = None,
        top_k: int = 5,
    ) -> List[VectorMatch]:
        matches: List[VectorMatch] = []
        for entry_id, (stored, metadata) in self.entries.items():
            if filter and any(metadata.get(key) != value for key, value in filter.items()):
                continue
            score = sum(a * b for a, b in zip(vector, stored))
            matches.append(VectorMatch(id=entry_id, score=score, metadata=metadata))
        matches.sort(key=lambda match: match.score, reverse=True)
        return matches[:top_k]

    async def sentiment(self, text: str) -> float:
        tokens = _tokens(text)
        positive = sum(1 for token in tokens if token in _POSITIVE_WORDS)
        negative = sum(1 for token in tokens if token in _NEGATIVE_WORDS)
        if positive + negative == 0:
            return 0.5
        return 0.5 + 0.5 * (positive - negative) / (positive + negative)


# ============================================================================
# Broadcast
# ============================================================================


class Broadcaster(ABC):
    """Delivers events to everyone watching a district. Fire-and-forget."""

    @abstractmethod
    def broadcast(self, district_id: str, event: Dict[str, Any]) -> None:
        """Send ``event`` to ``district_id``. Must not block."""


class NullBroadcaster(Broadcaster):
    def broadcast(self, district_id: str, event: Dict[str, Any]) -> None:
        return None


class RecordingBroadcaster(Broadcaster):
    """Keeps every broadcast for inspection."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    def broadcast(self, district_id: str, event: Dict[str, Any]) -> None:
        self.sent.append((district_id, event))

    def types(self) -> List[str]:
        return [event.get("type", "") for _, event in self.sent]


# ============================================================================
# City context
# ============================================================================


class CityContextProvider(ABC):
    """Read-only social and cultural signals from the surrounding city."""

    @abstractmethod
    async def community_mood(self, district_id: str) -> CommunityMood:
        """Return the district's current community mood."""

    @abstractmethod
    async def cultural_context(self, district_id: str) -> CulturalContext:
        """Return the district's current events and traditions."""


class StaticCityContext(CityContextProvider):
    """Fixed per-district context with a neutral fallback."""

    def __init__(
        self,
        moods: Optional[Dict[str, CommunityMood]] = None,
        cultures: Optional[Dict[str, CulturalContext]] = None,
    ) -> None:
        self.moods = moods or {}
        self.cultures = cultures or {}

    async def community_mood(self, district_id: str) -> CommunityMood:
        return self.moods.get(district_id, CommunityMood())

    async def cultural_context(self, district_id: str) -> CulturalContext:
        return self.cultures.get(district_id, CulturalContext())


# ============================================================================
# Routines
# ============================================================================


class RoutineGenerator(ABC):
    """Produces a daily routine for an agent."""

    @abstractmethod
    async def generate_routines(self, agent: Agent) -> List[RoutineSlot]:
        """Return the agent's routine. Raise to fall back to the default."""


def default_routines() -> List[RoutineSlot]:
    """Routine used whenever a generated one is unavailable."""

    return [
        RoutineSlot(
            time_slot=9,
            activity="morning_coffee",
            location="District Center",
            possible_topics=["weather", "news", "community"],
            social_probability=0.7,
        ),
        RoutineSlot(
            time_slot=12,
            activity="lunch_break",
            location="Local Cafe",
            possible_topics=["food", "culture", "events"],
            social_probability=0.8,
        ),
        RoutineSlot(
            time_slot=15,
            activity="afternoon_work",
            location="Office",
            possible_topics=["projects", "collaboration"],
            social_probability=0.6,
        ),
        RoutineSlot(
            time_slot=17,
            activity="community_meeting",
            location="Community Center",
            possible_topics=["development", "planning"],
            social_probability=0.9,
        ),
        RoutineSlot(
            time_slot=19,
            activity="evening_leisure",
            location="Park",
            possible_topics=["leisure", "hobbies"],
            social_probability=0.7,
        ),
    ]


class DefaultRoutineGenerator(RoutineGenerator):
    async def generate_routines(self, agent: Agent) -> List[RoutineSlot]:
        return default_routines()
