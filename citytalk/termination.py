"""Termination policy evaluated after every turn."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .config import TerminationSettings
from .schemas import ConversationMetrics, ConversationRecord, TerminationReason


def elapsed_seconds(record: ConversationRecord, now: datetime) -> float:
    return max(0.0, (now - record.started_at).total_seconds())


def evaluate_termination(
    record: ConversationRecord,
    metrics: ConversationMetrics,
    now: datetime,
    settings: Optional[TerminationSettings] = None,
    *,
    budget_exhausted: bool = False,
) -> Optional[TerminationReason]:
    """Return why ``record`` should end now, or ``None`` to keep going.

    Budget exhaustion, maximum duration and the message cap apply at any
    time. The remaining conditions only apply once the conversation has run
    for the minimum duration.
    """

    settings = settings or TerminationSettings()
    elapsed = elapsed_seconds(record, now)
    count = len(record.messages)
    dynamics = metrics.emotional_dynamics

    if budget_exhausted:
        return TerminationReason.RESOURCE_EXHAUSTION
    if elapsed >= settings.max_duration_seconds:
        return TerminationReason.MAX_DURATION
    if count >= settings.max_messages:
        return TerminationReason.MAX_MESSAGES

    if elapsed < settings.min_duration_seconds:
        return None

    if (
        metrics.silence_probability > settings.silence_probability
        and count > settings.silence_min_messages
        and dynamics.agreement > settings.silence_agreement
    ):
        return TerminationReason.NATURAL_CONCLUSION

    if (
        metrics.quality_score < settings.min_quality
        and count > settings.quality_min_messages
        and (
            dynamics.agreement > settings.quality_agreement
            or dynamics.tension > settings.quality_tension
        )
    ):
        return TerminationReason.QUALITY_THRESHOLD

    if (
        metrics.conversation_depth > settings.depth
        and count > settings.depth_min_messages
        and dynamics.agreement > settings.depth_agreement
        and metrics.contextual_relevance < settings.depth_relevance_ceiling
    ):
        return TerminationReason.TOPIC_EXHAUSTION

    return None
