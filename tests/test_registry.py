"""Tests for agent registration, routines and social state."""

from datetime import timedelta

import pytest

from citytalk import (
    Agent,
    AgentRegistry,
    AgentTraits,
    InMemoryVectorStore,
    RoutineGenerator,
    RoutineSlot,
    VirtualClock,
    default_routines,
)
from citytalk.errors import NotFoundError
from citytalk.schemas import RoutinePlan


def custom_routines():
    return [
        RoutineSlot(time_slot=hour, activity="gardening", location="Allotments", possible_topics=["plants"])
        for hour in (7, 10, 13, 16, 18)
    ]


class CountingRoutineGenerator(RoutineGenerator):
    def __init__(self, routines=None, error=None):
        self.routines = routines
        self.error = error
        self.calls = []

    async def generate_routines(self, agent):
        self.calls.append(agent.id)
        if self.error is not None:
            raise self.error
        return self.routines


@pytest.mark.asyncio
async def test_register_builds_profile_from_traits():
    registry = AgentRegistry(clock=VirtualClock(), default_district="harbor")
    agent = Agent(
        id="alice",
        name="Alice",
        interests=["jazz", "murals"],
        traits=AgentTraits(enthusiasm=0.9, curiosity=0.2, empathy=0.7),
    )

    profile = await registry.register(agent)

    assert profile.regular_locations == ["harbor"]
    assert profile.cultural_preferences == ["jazz", "murals"]
    assert profile.personality.extroversion == 0.9
    assert profile.personality.cultural_openness == 0.2
    assert profile.personality.community_orientation == 0.7
    assert profile.routines == default_routines()
    assert "alice" in registry and len(registry) == 1
    assert registry.profile("alice") is profile


@pytest.mark.asyncio
async def test_district_id_overrides_default_location():
    registry = AgentRegistry(clock=VirtualClock())
    profile = await registry.register(Agent(id="bob", name="Bob", district_id="old_town"))
    assert profile.regular_locations == ["old_town"]


@pytest.mark.asyncio
async def test_lookup_errors_are_not_found():
    registry = AgentRegistry(clock=VirtualClock())
    assert registry.get("ghost") is None
    with pytest.raises(NotFoundError):
        registry.require("ghost")
    with pytest.raises(KeyError):
        registry.profile("ghost")


@pytest.mark.asyncio
async def test_set_active_replaces_agent():
    registry = AgentRegistry(clock=VirtualClock())
    await registry.register(Agent(id="alice", name="Alice"))
    await registry.register(Agent(id="bob", name="Bob"))

    updated = registry.set_active("bob", False)

    assert updated.is_active is False
    assert registry.require("bob") is updated
    assert [agent.id for agent in registry.agents(active_only=True)] == ["alice"]
    assert len(registry.agents()) == 2


@pytest.mark.asyncio
async def test_generated_routines_are_stored_and_recalled():
    store = InMemoryVectorStore()
    generator = CountingRoutineGenerator(custom_routines())
    agent = Agent(id="alice", name="Alice", role="gardener")

    first = AgentRegistry(vector_store=store, routine_generator=generator, clock=VirtualClock())
    profile = await first.register(agent)
    assert profile.routines == custom_routines()
    assert "routine-alice" in store.entries
    stored = RoutinePlan.model_validate_json(store.entries["routine-alice"][1]["routines"])
    assert stored.routines == custom_routines()

    second = AgentRegistry(vector_store=store, routine_generator=generator, clock=VirtualClock())
    recalled = await second.register(agent)
    assert recalled.routines == custom_routines()
    assert generator.calls == ["alice"]


@pytest.mark.asyncio
async def test_routine_generation_failures_fall_back_to_defaults():
    failing = CountingRoutineGenerator(error=RuntimeError("model offline"))
    registry = AgentRegistry(routine_generator=failing, clock=VirtualClock())
    profile = await registry.register(Agent(id="alice", name="Alice"))
    assert profile.routines == default_routines()

    short = CountingRoutineGenerator(custom_routines()[:3])
    registry = AgentRegistry(routine_generator=short, clock=VirtualClock())
    profile = await registry.register(Agent(id="bob", name="Bob"))
    assert profile.routines == default_routines()


@pytest.mark.asyncio
async def test_social_network_update_prunes_and_befriends():
    clock = VirtualClock()
    registry = AgentRegistry(clock=clock)
    for agent_id in ("alice", "bob", "carol"):
        await registry.register(Agent(id=agent_id, name=agent_id.title()))

    registry.record_conversation(["alice", "bob"], sentiment=0.9, timestamp=clock.now() - timedelta(hours=30))
    registry.record_conversation(["alice", "carol"], sentiment=0.8)
    registry.record_conversation(["bob", "carol"], sentiment=0.4)

    registry.update_social_networks()

    alice = registry.profile("alice")
    assert [interaction.agent_id for interaction in alice.recent_interactions] == ["carol"]
    assert alice.friends == {"carol"}
    assert registry.profile("bob").friends == set()
    assert registry.profile("carol").friends == {"alice"}


@pytest.mark.asyncio
async def test_agents_at_matches_routine_location():
    registry = AgentRegistry(clock=VirtualClock())
    for agent_id in ("alice", "bob", "carol"):
        await registry.register(Agent(id=agent_id, name=agent_id.title()))
    registry.set_active("carol", False)

    assert registry.agents_at(12, "Local Cafe") == ["alice", "bob"]
    assert registry.agents_at(12, "Local Cafe", exclude=["alice"]) == ["bob"]
    assert registry.agents_at(12, "Park") == []
    assert registry.agents_at(8, "Local Cafe") == []
