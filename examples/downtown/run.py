"""Downtown conversation simulation.

Run deterministically (scripted lines, virtual clock):

    UV_CACHE_DIR=.uv-cache uv run python -m examples.downtown.run --minutes 60

Use an LLM for turns and routines (requires provider/model + API key):

    UV_CACHE_DIR=.uv-cache uv run python -m examples.downtown.run --llm --minutes 30

Print a per-conversation summary at the end:

    UV_CACHE_DIR=.uv-cache uv run python -m examples.downtown.run --analysis
"""

from __future__ import annotations

import argparse
import asyncio
from typing import List

from citytalk import (
    Agent,
    AgentTraits,
    CommunityMood,
    Config,
    ConversationEnded,
    ConversationEngine,
    CulturalContext,
    CulturalEvent,
    EngineSettings,
    InMemoryVectorStore,
    LLMRoutineGenerator,
    LLMTextGenerator,
    RecordingBroadcaster,
    ScriptedTextGenerator,
    SchedulerSettings,
    StaticCityContext,
    TopicShifted,
    VirtualClock,
)


SCRIPTED_LINES = [
    "{name}: Have you tried the new roastery by the plaza? (turn {turn})",
    "{name}: Yes, I agree, the espresso there is great. (turn {turn})",
    "{name}: Speaking of the plaza, the lantern festival is this weekend. (turn {turn})",
    "{name}: I understand the crowds worry people, but it should be fun. (turn {turn})",
    "{name}: Actually, the street closures might be a problem for deliveries. (turn {turn})",
]


def build_agents() -> List[Agent]:
    return [
        Agent(
            id="maya",
            name="Maya Chen",
            role="barista",
            personality="warm, chatty, notices everyone",
            interests=["coffee", "local music"],
            traits=AgentTraits(enthusiasm=0.9, empathy=0.8),
        ),
        Agent(
            id="omar",
            name="Omar Haddad",
            role="urban planner",
            personality="analytical, patient, fond of maps",
            interests=["transit", "local music"],
            traits=AgentTraits(analytical_thinking=0.9, curiosity=0.7),
        ),
        Agent(
            id="lena",
            name="Lena Novak",
            role="muralist",
            personality="playful, opinionated",
            interests=["street art", "coffee"],
            traits=AgentTraits(creativity=0.95, enthusiasm=0.7),
        ),
        Agent(
            id="sam",
            name="Sam Ortiz",
            role="bookshop owner",
            personality="dry humour, reflective",
            interests=["history", "transit"],
            traits=AgentTraits(empathy=0.6, curiosity=0.8),
        ),
    ]


def build_engine(use_llm: bool, seed: int) -> ConversationEngine:
    city = StaticCityContext(
        moods={"downtown": CommunityMood(positivity=0.7, engagement=0.8)},
        cultures={
            "downtown": CulturalContext(
                events=[CulturalEvent(title="Lantern Festival", type="festival")],
                traditions=["Sunday market"],
            )
        },
    )
    if use_llm:
        Config.validate()
        generator = LLMTextGenerator()
        routine_generator = LLMRoutineGenerator()
    else:
        generator = ScriptedTextGenerator(SCRIPTED_LINES)
        routine_generator = None

    return ConversationEngine(
        generator=generator,
        routine_generator=routine_generator,
        vector_store=InMemoryVectorStore(),
        broadcaster=RecordingBroadcaster(),
        city_context=city,
        clock=VirtualClock(),
        seed=seed,
        settings=EngineSettings(scheduler=SchedulerSettings(max_concurrent_conversations=2)),
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Downtown conversation simulation")
    parser.add_argument("--llm", action="store_true", help="Use LLM-backed generation")
    parser.add_argument("--minutes", type=int, default=60, help="Simulated minutes to run")
    parser.add_argument("--seed", type=int, default=7, help="Random seed")
    parser.add_argument("--analysis", action="store_true", help="Print a summary per conversation")
    return parser.parse_args()


async def run_simulation(minutes: int, *, use_llm: bool, seed: int, analysis: bool) -> ConversationEngine:
    engine = build_engine(use_llm, seed)
    shifts: List[TopicShifted] = []
    endings: List[ConversationEnded] = []
    engine.dispatcher.subscribe(TopicShifted, shifts.append)
    engine.dispatcher.subscribe(ConversationEnded, endings.append)

    await engine.register(*build_agents())
    await engine.scheduler.bootstrap()
    await engine.scheduler.run_for(minutes * 60)
    await engine.scheduler.stop()

    print(f"Calls used: {engine.limiter.daily_call_count}")
    print(f"Conversations ended: {len(endings)}, still active: {len(engine.manager.active_conversations())}")
    print(f"Topic shifts: {len(shifts)}")

    if analysis:
        for record in engine.manager.store.archived() + engine.manager.active_conversations():
            reason = record.end_reason.value if record.end_reason else "active"
            print(
                f"- {record.id} at {record.location}: {len(record.messages)} messages, "
                f"quality {record.metrics.quality_score:.2f}, topics {', '.join(record.topic_history)} ({reason})"
            )
    return engine


async def main(args: argparse.Namespace) -> None:
    try:
        await run_simulation(args.minutes, use_llm=args.llm, seed=args.seed, analysis=args.analysis)
    except ValueError as exc:
        print(f"[warning] {exc}. Falling back to scripted generation.")
        await run_simulation(args.minutes, use_llm=False, seed=args.seed, analysis=args.analysis)


if __name__ == "__main__":
    asyncio.run(main(parse_args()))
