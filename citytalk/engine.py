"""
Engine wiring.

Builds a registry, rate limiter, lifecycle manager and scheduler that share
one clock, one random source and one settings bundle. Every collaborator can
be injected; anything omitted gets its in-memory default.
"""

from __future__ import annotations

import random
from typing import Optional

from .clock import Clock, SystemClock
from .collaborators import (
    Broadcaster,
    CityContextProvider,
    DefaultRoutineGenerator,
    RoutineGenerator,
    ScriptedTextGenerator,
    TextGenerator,
    VectorStore,
)
from .config import EngineSettings
from .events import EventDispatcher
from .lifecycle import ConversationManager
from .prompts import PromptLibrary
from .quota import RateLimiter
from .registry import AgentRegistry
from .scheduler import Scheduler
from .schemas import Agent
from .store import ConversationStore


class ConversationEngine:
    """One fully wired conversation engine instance."""

    def __init__(
        self,
        *,
        generator: Optional[TextGenerator] = None,
        vector_store: Optional[VectorStore] = None,
        broadcaster: Optional[Broadcaster] = None,
        city_context: Optional[CityContextProvider] = None,
        routine_generator: Optional[RoutineGenerator] = None,
        store: Optional[ConversationStore] = None,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        seed: Optional[int] = None,
        settings: Optional[EngineSettings] = None,
        prompt_library: Optional[PromptLibrary] = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random(seed)
        self.dispatcher = dispatcher or EventDispatcher()
        self.registry = AgentRegistry(
            vector_store=vector_store,
            routine_generator=routine_generator or DefaultRoutineGenerator(),
            clock=self.clock,
            default_district=self.settings.scheduler.default_district,
        )
        self.limiter = RateLimiter(self.settings.quota, self.clock)
        self.manager = ConversationManager(
            self.registry,
            self.limiter,
            generator or ScriptedTextGenerator(),
            store=store,
            vector_store=vector_store,
            broadcaster=broadcaster,
            city_context=city_context,
            dispatcher=self.dispatcher,
            clock=self.clock,
            rng=self.rng,
            settings=self.settings,
            prompt_library=prompt_library,
        )
        self.scheduler = Scheduler(self.manager, clock=self.clock, rng=self.rng)

    async def register(self, *agents: Agent) -> None:
        for agent in agents:
            await self.registry.register(agent)
