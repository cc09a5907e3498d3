"""Contextual simulation: activities, locations, topics and surroundings.

Everything random in here draws from the ``random.Random`` handed to
``ContextSimulator`` so a seeded engine replays identically.
"""

from __future__ import annotations

import random
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .schemas import (
    CommunityMood,
    ConversationContext,
    CulturalContext,
    EnvironmentalContext,
)


ACTIVITIES: List[str] = [
    "morning_coffee",
    "lunch_break",
    "evening_leisure",
    "cultural_event",
]

ACTIVITY_LOCATIONS: Dict[str, List[str]] = {
    "morning_coffee": ["Local Cafe", "Coffee Shop", "Breakfast Diner"],
    "lunch_break": ["Restaurant", "Food Court", "Park"],
    "cultural_event": ["Community Center", "Cultural Hub", "Event Space"],
    "evening_leisure": ["Plaza", "Park", "Recreation Center"],
}

ACTIVITY_TOPICS: Dict[str, List[str]] = {
    "morning_coffee": ["local cafe scene", "morning routines", "district development"],
    "lunch_break": ["local restaurants", "food culture", "community gatherings"],
    "evening_leisure": ["entertainment venues", "community events", "district lifestyle"],
    "cultural_event": ["cultural festivals", "local traditions", "arts and culture"],
}

PREDEFINED_TOPICS: List[str] = [
    "district_development",
    "local_events",
    "community_projects",
    "cultural_activities",
    "neighborhood_improvements",
]

ACTIVITY_INTERACTION_MODIFIERS: Dict[str, float] = {
    "morning_coffee": 0.4,
    "lunch_break": 0.5,
    "cultural_event": 0.6,
    "evening_leisure": 0.4,
}

DEFAULT_LOCATION = "District Center"


def time_of_day(moment: datetime) -> str:
    hour = moment.hour
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


def interaction_probability(
    activity: str,
    mood: CommunityMood,
    culture: CulturalContext,
) -> float:
    """Chance that co-located agents strike up a conversation, capped at 0.9."""

    probability = 0.3
    probability += ACTIVITY_INTERACTION_MODIFIERS.get(activity, 0.0)
    probability += mood.engagement * 0.2
    if culture.events:
        probability += 0.2
    return min(0.9, probability)


def environmental_factors(environment: EnvironmentalContext, moment: datetime) -> List[str]:
    """Tag list describing the surroundings of a turn."""

    factors: List[str] = []
    if environment.noise > 0.7:
        factors.append("high_noise")
    elif environment.noise < 0.3:
        factors.append("quiet_environment")

    if environment.crowding > 0.7:
        factors.append("crowded")
    elif environment.crowding < 0.3:
        factors.append("sparse_occupancy")

    if environment.time_constraints:
        factors.append("time_constrained")

    factors.append(f"time_{time_of_day(moment)}")
    return factors


def describe_noise(noise: float) -> str:
    if noise > 0.7:
        return "quite noisy"
    if noise < 0.3:
        return "quiet"
    return "moderately active"


def describe_crowding(crowding: float) -> str:
    if crowding > 0.7:
        return "many people around"
    if crowding < 0.3:
        return "few people present"
    return "a moderate number of people"


class ContextSimulator:
    """Samples the contextual details a conversation needs."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.Random()
        self._topic_index = 0

    def pick_activity(self) -> str:
        return self.rng.choice(ACTIVITIES)

    def determine_location(self, activity: str) -> str:
        return self.rng.choice(ACTIVITY_LOCATIONS.get(activity, [DEFAULT_LOCATION]))

    def generate_topic(
        self,
        context: ConversationContext,
        exclude: Iterable[str] = (),
    ) -> str:
        """Pick a topic for ``context``, avoiding ``exclude`` when possible.

        A share of conversations follow a rotating list of civic topics; the
        rest prefer a current cultural event, then the activity's own topics
        and the district's traditions.
        """

        excluded = set(exclude)

        if self.rng.random() < 0.3:
            for _ in range(len(PREDEFINED_TOPICS)):
                topic = PREDEFINED_TOPICS[self._topic_index]
                self._topic_index = (self._topic_index + 1) % len(PREDEFINED_TOPICS)
                if topic not in excluded:
                    return topic

        culture = context.cultural_context
        for event in culture.events:
            if event.title not in excluded:
                return event.title

        pool = [
            *ACTIVITY_TOPICS.get(context.activity, ["district life"]),
            *culture.traditions,
            *(event.type for event in culture.events),
        ]
        candidates = [topic for topic in pool if topic not in excluded]
        if not candidates:
            candidates = [topic for topic in PREDEFINED_TOPICS if topic not in excluded] or pool
        return self.rng.choice(candidates)

    def sample_environment(self) -> EnvironmentalContext:
        return EnvironmentalContext(
            noise=self.rng.random(),
            crowding=self.rng.random(),
            time_constraints=self.rng.random() > 0.7,
        )
