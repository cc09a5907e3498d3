"""
Agent registry.

Holds the agents known to the engine together with the mutable social state
the lifecycle manager accumulates about them (recent interactions, friends,
routines). Agent identity never changes after registration; only the active
flag can flip.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from .clock import Clock, SystemClock
from .collaborators import RoutineGenerator, VectorStore, default_routines
from .errors import NotFoundError
from .logging_utils import log_deterministic, log_error, log_info
from .schemas import (
    Agent,
    AgentInteraction,
    RoutinePlan,
    RoutineSlot,
    SocialPersonality,
    SocialProfile,
)


INTERACTION_WINDOW = timedelta(hours=24)
FRIENDSHIP_SENTIMENT = 0.7
ROUTINE_RECORD_TYPE = "agent_routine"


class AgentRegistry:
    """In-memory agent catalogue plus per-agent social profiles.

    Routines are recalled from the vector store when a previous run stored
    them, otherwise produced by the routine generator and written back. Any
    failure along that path falls back to the default routine; registration
    itself never fails because of a collaborator.
    """

    def __init__(
        self,
        *,
        vector_store: Optional[VectorStore] = None,
        routine_generator: Optional[RoutineGenerator] = None,
        clock: Optional[Clock] = None,
        default_district: str = "downtown",
    ) -> None:
        self.vector_store = vector_store
        self.routine_generator = routine_generator
        self.clock = clock or SystemClock()
        self.default_district = default_district
        self._agents: Dict[str, Agent] = {}
        self._profiles: Dict[str, SocialProfile] = {}

    # ------------------------------------------------------------------
    # Registration and lookup
    # ------------------------------------------------------------------

    async def register(self, agent: Agent) -> SocialProfile:
        """Add ``agent`` (replacing a previous registration) and build its profile."""

        self._agents[agent.id] = agent
        routines = await self._load_routines(agent)
        traits = agent.traits
        profile = SocialProfile(
            regular_locations=[agent.district_id or self.default_district],
            cultural_preferences=list(agent.interests),
            routines=routines,
            personality=SocialPersonality(
                extroversion=traits.enthusiasm,
                cultural_openness=traits.curiosity,
                community_orientation=traits.empathy,
            ),
        )
        self._profiles[agent.id] = profile
        log_info(f"[Registry] Registered {agent.name} ({agent.id}) with {len(routines)} routine slots")
        return profile

    def get(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    def require(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def agents(self, *, active_only: bool = False) -> List[Agent]:
        agents = list(self._agents.values())
        if active_only:
            agents = [agent for agent in agents if agent.is_active]
        return agents

    def set_active(self, agent_id: str, active: bool) -> Agent:
        agent = self.require(agent_id)
        updated = agent.model_copy(update={"is_active": active})
        self._agents[agent_id] = updated
        return updated

    def profile(self, agent_id: str) -> SocialProfile:
        profile = self._profiles.get(agent_id)
        if profile is None:
            raise NotFoundError("Agent profile", agent_id)
        return profile

    # ------------------------------------------------------------------
    # Social state
    # ------------------------------------------------------------------

    def record_interaction(
        self,
        agent_id: str,
        other_id: str,
        *,
        sentiment: float,
        kind: str = "conversation",
        timestamp: Optional[datetime] = None,
    ) -> None:
        profile = self._profiles.get(agent_id)
        if profile is None:
            return
        profile.recent_interactions.append(
            AgentInteraction(
                agent_id=other_id,
                kind=kind,
                sentiment=min(1.0, max(0.0, sentiment)),
                timestamp=timestamp or self.clock.now(),
            )
        )

    def record_conversation(
        self,
        participant_ids: Iterable[str],
        *,
        sentiment: float,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Record a pairwise interaction between every two participants."""

        participants = list(participant_ids)
        for agent_id in participants:
            for other_id in participants:
                if other_id != agent_id:
                    self.record_interaction(
                        agent_id, other_id, sentiment=sentiment, timestamp=timestamp
                    )

    def update_social_networks(self, now: Optional[datetime] = None) -> None:
        """Drop interactions older than a day and befriend positive partners."""

        now = now or self.clock.now()
        for profile in self._profiles.values():
            profile.recent_interactions = [
                interaction
                for interaction in profile.recent_interactions
                if now - interaction.timestamp < INTERACTION_WINDOW
            ]
            for interaction in profile.recent_interactions:
                if interaction.sentiment > FRIENDSHIP_SENTIMENT:
                    profile.friends.add(interaction.agent_id)
        log_deterministic("[Registry] Social networks updated")

    def agents_at(self, hour: int, location: str, *, exclude: Iterable[str] = ()) -> List[str]:
        """Ids of agents whose routine puts them at ``location`` at ``hour``."""

        excluded = set(exclude)
        matches = []
        for agent_id, profile in self._profiles.items():
            if agent_id in excluded:
                continue
            agent = self._agents.get(agent_id)
            if agent is None or not agent.is_active:
                continue
            slot = profile.routine_at(hour)
            if slot is not None and slot.location == location:
                matches.append(agent_id)
        return matches

    # ------------------------------------------------------------------
    # Routines
    # ------------------------------------------------------------------

    async def _load_routines(self, agent: Agent) -> List[RoutineSlot]:
        vector: Optional[List[float]] = None
        if self.vector_store is not None:
            try:
                vector = await self.vector_store.embed(
                    f"{agent.role} {agent.personality} routines"
                )
                matches = await self.vector_store.query(
                    vector,
                    filter={"type": ROUTINE_RECORD_TYPE, "agent_id": agent.id},
                    top_k=1,
                )
                if matches and matches[0].metadata.get("routines"):
                    plan = RoutinePlan.model_validate_json(matches[0].metadata["routines"])
                    log_deterministic(f"[Registry] Recalled stored routines for {agent.name}")
                    return list(plan.routines)
            except ValidationError as exc:
                log_error(f"[Registry] Stored routines for {agent.name} are unusable: {exc}")
            except Exception as exc:
                log_error(f"[Registry] Routine recall failed for {agent.name}: {exc}")

        if self.routine_generator is None:
            return default_routines()

        try:
            routines = await self.routine_generator.generate_routines(agent)
            plan = RoutinePlan(routines=routines)
        except Exception as exc:
            log_error(f"[Registry] Routine generation failed for {agent.name}, using defaults: {exc}")
            return default_routines()

        if self.vector_store is not None and vector is not None:
            try:
                await self.vector_store.upsert(
                    f"routine-{agent.id}",
                    vector,
                    {
                        "type": ROUTINE_RECORD_TYPE,
                        "agent_id": agent.id,
                        "routines": plan.model_dump_json(),
                        "timestamp": self.clock.now().isoformat(),
                    },
                )
            except Exception as exc:
                log_error(f"[Registry] Could not store routines for {agent.name}: {exc}")
        return list(plan.routines)
