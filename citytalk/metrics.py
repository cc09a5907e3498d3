"""
Metrics calculator.

Pure, deterministic functions over a conversation record. Every function
returns a documented neutral value on empty or short logs instead of failing
or producing ``NaN``:

- momentum: 0.5 under two messages, always within [0.1, 0.9]
- silence probability: 0.5 under two messages, 0 when all intervals are zero
- emotional state: 0.5 on an empty log
- tension 0 / agreement 0.5 under two messages, empathy 0 on an empty log
- turn-taking balance: 1 under two messages
- contextual relevance: 1 on an empty log, conversation depth 0
- quality score: 0.5 when no message carries a sentiment

Timing metrics use every message in the log. Content metrics use the
dialogue only; system announcements and summaries are excluded.
"""

from __future__ import annotations

import math
import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from .config import MetricsSettings
from .schemas import (
    ConversationMetrics,
    ConversationRecord,
    EmotionalDynamics,
    InteractionPatterns,
    Message,
    TopicSpan,
    USER_AUTHOR,
)


NEUTRAL_SENTIMENT = 0.5
MOMENTUM_FLOOR = 0.1
MOMENTUM_CEILING = 0.9
DOMINANCE_LATENCY_SCALE_SECONDS = 60.0

DISAGREEMENT_MARKERS = ("disagree", "but", "however", "actually", "not")
AGREEMENT_MARKERS = ("agree", "yes", "exactly", "indeed", "true", "right")
EMPATHY_MARKERS = (
    "understand",
    "feel",
    "appreciate",
    "care",
    "support",
    "sorry to hear",
    "must be",
    "can imagine",
)
TRANSITION_PHRASES = ("speaking of", "that reminds me", "similarly", "on that note")


def _marker_pattern(markers: Iterable[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(marker) for marker in markers)
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


_DISAGREEMENT_RE = _marker_pattern(DISAGREEMENT_MARKERS)
_AGREEMENT_RE = _marker_pattern(AGREEMENT_MARKERS)
_EMPATHY_RE = _marker_pattern(EMPATHY_MARKERS)
_TRANSITION_RE = _marker_pattern(TRANSITION_PHRASES)

_AGREE_START_RE = re.compile(r"^(?:yes|exactly|indeed|agree|true|right|correct)\b", re.IGNORECASE)
_DISAGREE_START_RE = re.compile(r"^(?:no|disagree|however|but|actually|not)\b", re.IGNORECASE)
_ELABORATE_START_RE = re.compile(
    r"^(?:furthermore|moreover|additionally|also|in addition)\b", re.IGNORECASE
)


# ============================================================================
# Small numeric helpers
# ============================================================================


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _pstdev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    avg = _mean(values)
    return math.sqrt(sum((value - avg) ** 2 for value in values) / len(values))


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _sentiment_or_neutral(message: Message) -> float:
    return NEUTRAL_SENTIMENT if message.sentiment is None else message.sentiment


def dialogue(record: ConversationRecord) -> List[Message]:
    """Messages written by agents or the user (system entries excluded)."""

    return [message for message in record.messages if not message.is_system]


def intervals(messages: Sequence[Message]) -> List[float]:
    """Seconds between consecutive messages."""

    return [
        (current.timestamp - previous.timestamp).total_seconds()
        for previous, current in zip(messages, messages[1:])
    ]


def volatility(values: Sequence[float]) -> float:
    """Mean absolute change between consecutive values (0 under two values)."""

    if len(values) < 2:
        return 0.0
    return sum(abs(b - a) for a, b in zip(values, values[1:])) / (len(values) - 1)


# ============================================================================
# Pacing
# ============================================================================


def momentum(messages: Sequence[Message]) -> float:
    """How rapidly the conversation is progressing.

    Starts at 0.5. Each interval shorter than the running average (including
    itself) pushes momentum up by ``0.1 * (1 - interval / average)``; any
    other interval decays it by 10%. The value is clamped to [0.1, 0.9] after
    every step.
    """

    gaps = intervals(messages)
    value = 0.5
    total = 0.0
    for index, gap in enumerate(gaps, start=1):
        total += gap
        average = total / index
        if gap < average:
            value += 0.1 * (1 - gap / average)
        else:
            value *= 0.9
        value = _clamp(value, MOMENTUM_FLOOR, MOMENTUM_CEILING)
    return value


def silence_probability(messages: Sequence[Message]) -> float:
    """Half the coefficient of variation of message intervals, capped at 1."""

    if len(messages) < 2:
        return 0.5
    gaps = intervals(messages)
    average = _mean(gaps)
    if average <= 0:
        return 0.0
    return min(1.0, 0.5 * _pstdev(gaps) / average)


def silence_duration(record: ConversationRecord, now: datetime) -> float:
    last = record.last_message
    reference = last.timestamp if last is not None else record.started_at
    return max(0.0, (now - reference).total_seconds())


# ============================================================================
# Topics
# ============================================================================


def repetition(messages: Sequence[Message]) -> float:
    if len(messages) < 2:
        return 0.0
    unique = len({message.content for message in messages})
    return 1 - unique / len(messages)


def topic_exhaustion(messages: Sequence[Message], topic: str, threshold: int = 5) -> float:
    """How talked-out ``topic`` is, from repetition and message volume."""

    tagged = [message for message in messages if message.topics and topic in message.topics]
    duration_factor = len(tagged) / threshold
    return _clamp((repetition(tagged) + duration_factor) / 2)


def topic_exhaustion_map(record: ConversationRecord, threshold: int = 5) -> Dict[str, float]:
    messages = dialogue(record)
    topics = list(dict.fromkeys([*record.topic_history, record.topic]))
    return {topic: topic_exhaustion(messages, topic, threshold) for topic in topics}


def topic_consistency(messages: Sequence[Message]) -> float:
    """Average topic overlap between consecutive messages.

    Two consecutive untagged messages count as consistent.
    """

    if len(messages) < 2:
        return 1.0
    scores = []
    for previous, current in zip(messages, messages[1:]):
        previous_topics = previous.topics or []
        current_topics = current.topics or []
        widest = max(len(previous_topics), len(current_topics))
        if widest == 0:
            scores.append(1.0)
            continue
        common = len([topic for topic in previous_topics if topic in current_topics])
        scores.append(common / widest)
    return _mean(scores)


def turns_in_current_topic(record: ConversationRecord) -> int:
    turns = 0
    for message in reversed(dialogue(record)):
        if message.topics and record.topic in message.topics:
            turns += 1
        else:
            break
    return turns


def topic_initiation_counts(messages: Sequence[Message]) -> Dict[str, int]:
    """Per author, how many topics they introduced relative to the previous message."""

    counts: Dict[str, int] = {}
    previous_topics: List[str] = []
    for message in messages:
        current = message.topics or []
        new_topics = [topic for topic in current if topic not in previous_topics]
        if new_topics:
            counts[message.author] = counts.get(message.author, 0) + len(new_topics)
        previous_topics = current
    return counts


def shared_topics(messages: Sequence[Message]) -> List[str]:
    """Topics raised by more than one author, in order of first mention."""

    authors_by_topic: Dict[str, set] = {}
    for message in messages:
        for topic in message.topics or []:
            authors_by_topic.setdefault(topic, set()).add(message.author)
    return [topic for topic, authors in authors_by_topic.items() if len(authors) > 1]


def is_natural_transition(previous: Message, current: Message) -> bool:
    previous_topics = previous.topics or []
    if any(topic in previous_topics for topic in current.topics or []):
        return True
    prefix = previous.content.lower()[:10]
    return bool(prefix) and prefix in current.content.lower()


def natural_transitions(messages: Sequence[Message]) -> int:
    return sum(
        1 for previous, current in zip(messages, messages[1:]) if is_natural_transition(previous, current)
    )


def is_natural_response(previous_content: Optional[str], response: str) -> bool:
    """Whether ``response`` follows on from ``previous_content``.

    True for transition phrases, shared words, or an answer to a question.
    """

    if not previous_content:
        return True
    last = previous_content.lower()
    current = response.lower()
    if _TRANSITION_RE.search(current):
        return True
    if set(last.split()) & set(current.split()):
        return True
    return "?" in last and bool(current) and "?" not in current


def topic_shift_trigger(record: ConversationRecord) -> str:
    """Classify what prompted a topic shift, from the last three messages."""

    recent = dialogue(record)[-3:]
    if len(recent) < 2:
        return "initial_topic"
    if "?" in recent[-2].content:
        return "question_response"

    location = record.location.lower()
    activities = {record.activity.lower(), record.activity.replace("_", " ").lower()}
    for message in recent:
        content = message.content.lower()
        if location in content or any(activity in content for activity in activities):
            return "context_reference"

    sentiments = [message.sentiment for message in recent if message.sentiment is not None]
    if len(sentiments) >= 2 and abs(sentiments[1] - sentiments[0]) > 0.3:
        return "emotional_shift"
    return "natural_progression"


def response_type(text: str) -> str:
    """One of question, agreement, disagreement, elaboration or statement."""

    content = text.strip().lower()
    if "?" in content:
        return "question"
    if _AGREE_START_RE.match(content):
        return "agreement"
    if _DISAGREE_START_RE.match(content):
        return "disagreement"
    if _ELABORATE_START_RE.match(content):
        return "elaboration"
    return "statement"


def topic_history_spans(
    record: ConversationRecord,
    engagement: Dict[str, float],
    now: datetime,
) -> List[TopicSpan]:
    """Stretches of the dialogue spent on one topic.

    A message's first tag names its topic; untagged messages continue the
    current stretch. The final span stays open until ``now``.
    """

    current = record.topic_history[0] if record.topic_history else record.topic
    start = record.started_at
    engagement_total = 0.0
    count = 0
    spans: List[TopicSpan] = []
    for message in dialogue(record):
        message_topic = message.topics[0] if message.topics else current
        if message_topic != current:
            spans.append(
                TopicSpan(
                    topic=current,
                    duration_seconds=max(0.0, (message.timestamp - start).total_seconds()),
                    engagement=engagement_total / count if count else 0.0,
                )
            )
            current = message_topic
            start = message.timestamp
            engagement_total = 0.0
            count = 0
        engagement_total += engagement.get(message.author, 0.0)
        count += 1
    spans.append(
        TopicSpan(
            topic=current,
            duration_seconds=max(0.0, (now - start).total_seconds()),
            engagement=engagement_total / count if count else 0.0,
        )
    )
    return spans


# ============================================================================
# Emotion
# ============================================================================


def emotional_state(messages: Sequence[Message], window: int = 5) -> float:
    if not messages:
        return 0.5
    recent = [_sentiment_or_neutral(message) for message in messages[-window:]]
    return 0.7 * _mean(recent) + 0.3 * volatility(recent)


def tension(messages: Sequence[Message]) -> float:
    if len(messages) < 2:
        return 0.0
    total = 0.0
    for index in range(1, len(messages)):
        current = messages[index]
        total += abs(_sentiment_or_neutral(current) - _sentiment_or_neutral(messages[index - 1]))
        if index >= 2 and current.author == messages[index - 2].author:
            total += 0.1
        if _DISAGREEMENT_RE.search(current.content):
            total += 0.2
    return min(1.0, total / len(messages))


def agreement(messages: Sequence[Message]) -> float:
    if len(messages) < 2:
        return 0.5
    total = 0.5
    for previous, current in zip(messages, messages[1:]):
        if _AGREEMENT_RE.search(current.content):
            total += 0.1
        alignment = 1 - abs(_sentiment_or_neutral(current) - _sentiment_or_neutral(previous))
        total += 0.1 * alignment
    return min(1.0, total)


def empathy(messages: Sequence[Message]) -> float:
    if not messages:
        return 0.0
    total = 0.0
    for message in messages:
        if _EMPATHY_RE.search(message.content):
            total += 0.2
        if message.sentiment is not None and message.sentiment > 0.6:
            total += 0.1
    return min(1.0, total / len(messages))


def emotional_dynamics(messages: Sequence[Message]) -> EmotionalDynamics:
    return EmotionalDynamics(
        tension=tension(messages),
        agreement=agreement(messages),
        empathy=empathy(messages),
    )


def sentiment_spread(messages: Sequence[Message]) -> float:
    """Standard deviation of the sentiments present, capped at 1."""

    sentiments = [message.sentiment for message in messages if message.sentiment is not None]
    if len(sentiments) < 2:
        return 0.0
    return min(1.0, _pstdev(sentiments))


def overall_sentiment(messages: Sequence[Message]) -> float:
    sentiments = [message.sentiment for message in messages if message.sentiment is not None]
    return _mean(sentiments) if sentiments else NEUTRAL_SENTIMENT


# ============================================================================
# Participation
# ============================================================================


def _counted_authors(record: ConversationRecord, messages: Sequence[Message]) -> List[str]:
    authors = list(record.participants)
    if any(message.author == USER_AUTHOR for message in messages):
        authors.append(USER_AUTHOR)
    return authors


def turn_taking_balance(record: ConversationRecord) -> float:
    """1 minus the coefficient of variation of per-author message counts.

    Silent participants count with zero messages.
    """

    messages = dialogue(record)
    if len(messages) < 2:
        return 1.0
    authors = _counted_authors(record, messages)
    counts = [sum(1 for message in messages if message.author == author) for author in authors]
    average = _mean(counts)
    if average == 0:
        return 1.0
    return max(0.0, 1 - _pstdev(counts) / average)


def participant_engagement(record: ConversationRecord) -> Dict[str, float]:
    messages = dialogue(record)
    total = len(messages)
    return {
        participant: (
            sum(1 for message in messages if message.author == participant) / total if total else 0.0
        )
        for participant in record.participants
    }


def dominance_score(record: ConversationRecord, agent_id: str) -> float:
    """How much one agent steers the conversation.

    Weighted from message share, response speed and topic initiations.
    """

    messages = dialogue(record)
    own_indexes = [index for index, message in enumerate(messages) if message.author == agent_id]
    if not own_indexes:
        return 0.0

    message_ratio = len(own_indexes) / len(messages)
    latencies = [
        (messages[index].timestamp - messages[index - 1].timestamp).total_seconds()
        for index in own_indexes
        if index > 0
    ]
    speed = 1 - min(1.0, _mean(latencies) / DOMINANCE_LATENCY_SCALE_SECONDS) if latencies else 0.0
    initiations = topic_initiation_counts(messages)
    total_initiations = sum(initiations.values())
    initiation_share = initiations.get(agent_id, 0) / total_initiations if total_initiations else 0.0
    return 0.4 * message_ratio + 0.3 * speed + 0.3 * initiation_share


# ============================================================================
# Quality
# ============================================================================


def _mentions(content: str, phrase: str) -> bool:
    if not phrase:
        return False
    lowered = content.lower()
    phrase = phrase.lower()
    return phrase in lowered or phrase.replace("_", " ") in lowered


def contextual_relevance(record: ConversationRecord) -> float:
    messages = dialogue(record)
    if not messages:
        return 1.0
    scores = []
    for message in messages:
        score = 0.0
        if message.topics and record.topic in message.topics:
            score += 0.4
        if _mentions(message.content, record.activity):
            score += 0.3
        if _mentions(message.content, record.location):
            score += 0.3
        scores.append(score)
    return _mean(scores)


def conversation_depth(
    record: ConversationRecord,
    engagement: Optional[Dict[str, float]] = None,
    deep_message_length: int = 200,
) -> float:
    messages = dialogue(record)
    if not messages:
        return 0.0
    engagement = engagement if engagement is not None else participant_engagement(record)
    average_length = _mean([len(message.content) for message in messages])
    return (
        0.3 * min(1.0, average_length / deep_message_length)
        + 0.3 * topic_consistency(messages)
        + 0.2 * _mean(list(engagement.values()))
        + 0.2 * sentiment_spread(messages)
    )


def quality_score(
    relevance: float,
    depth: float,
    balance: float,
    dynamics: EmotionalDynamics,
) -> float:
    return (
        0.3 * relevance
        + 0.3 * depth
        + 0.2 * balance
        + 0.2 * (dynamics.empathy + dynamics.agreement) / 2
    )


def conversation_quality(record: ConversationRecord) -> float:
    """Quality of ``record``; 0.5 when no message carries a sentiment."""

    messages = dialogue(record)
    if not any(message.sentiment is not None for message in messages):
        return 0.5
    return quality_score(
        contextual_relevance(record),
        conversation_depth(record),
        turn_taking_balance(record),
        emotional_dynamics(messages),
    )


# ============================================================================
# Snapshot
# ============================================================================


def compute_metrics(
    record: ConversationRecord,
    now: Optional[datetime] = None,
    settings: Optional[MetricsSettings] = None,
) -> ConversationMetrics:
    """Recompute the full metrics snapshot from the record's log."""

    settings = settings or MetricsSettings()
    now = now or record.last_update
    messages = dialogue(record)
    engagement = participant_engagement(record)
    dynamics = emotional_dynamics(messages)
    relevance = contextual_relevance(record)
    depth = conversation_depth(record, engagement, settings.deep_message_length)
    balance = turn_taking_balance(record)
    has_sentiment = any(message.sentiment is not None for message in messages)

    return ConversationMetrics(
        message_count=len(record.messages),
        momentum=momentum(record.messages),
        silence_duration=silence_duration(record, now),
        silence_probability=silence_probability(record.messages),
        topic_exhaustion=topic_exhaustion_map(record, settings.topic_exhaustion_threshold),
        emotional_state=emotional_state(messages, settings.emotional_window),
        emotional_dynamics=dynamics,
        interaction_patterns=InteractionPatterns(
            turn_taking_balance=balance,
            response_latencies=intervals(record.messages),
            topic_initiation_counts=topic_initiation_counts(messages),
        ),
        participant_engagement=engagement,
        contextual_relevance=relevance,
        conversation_depth=depth,
        natural_transitions=natural_transitions(messages),
        turns_in_current_topic=turns_in_current_topic(record),
        topic_history=topic_history_spans(record, engagement, now),
        sentiment=overall_sentiment(messages),
        quality_score=quality_score(relevance, depth, balance, dynamics) if has_sentiment else 0.5,
        computed_at=now,
    )
