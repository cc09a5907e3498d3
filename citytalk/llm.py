"""LLM-backed implementations of the text and routine generators."""

from __future__ import annotations

from typing import List, Optional, Sequence

from .collaborators import RoutineGenerator, TextGenerator
from .config import Config
from .llm_utils import call_llm_text, call_llm_with_retries
from .logging_utils import debug_llm_enabled, log_llm
from .prompts import DEFAULT_PROMPTS, PromptLibrary, render_prompt
from .schemas import Agent, Message, RoutinePlan, RoutineSlot, SYSTEM_AUTHOR, USER_AUTHOR


def format_transcript(messages: Sequence[Message], names: Optional[dict] = None) -> str:
    """Render messages as ``Name: content`` lines."""

    names = names or {}
    lines = []
    for message in messages:
        if message.author == USER_AUTHOR:
            speaker = "User"
        elif message.author == SYSTEM_AUTHOR:
            speaker = "System"
        else:
            speaker = names.get(message.author, message.author)
        lines.append(f"{speaker}: {message.content}")
    return "\n".join(lines) if lines else "(no messages yet)"


class LLMTextGenerator(TextGenerator):
    """Text generator that calls a provider through mirascope.

    The engine's system prompt already embeds the recent transcript; the
    prior messages are appended only up to the agent's memory window.
    """

    def __init__(
        self,
        *,
        llm_provider: Optional[str] = None,
        llm_model: Optional[str] = None,
    ) -> None:
        self.llm_provider = llm_provider or Config.LLM_PROVIDER
        self.llm_model = llm_model or Config.LLM_MODEL

    async def generate(
        self,
        agent: Agent,
        prior_messages: Sequence[Message],
        system_prompt: str,
    ) -> str:
        window = list(prior_messages)[-agent.memory_window_size:]
        user_prompt = (
            f"Conversation so far:\n{format_transcript(window)}\n\n"
            f"Reply as {agent.name}."
        )
        if debug_llm_enabled():
            log_llm(f"[{agent.name}] system prompt:\n{system_prompt}\n[user prompt]\n{user_prompt}")
        return await call_llm_text(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
        )


class LLMRoutineGenerator(RoutineGenerator):
    """Generates a five-slot daily routine with schema-validated retries."""

    def __init__(
        self,
        *,
        llm_provider: Optional[str] = None,
        llm_model: Optional[str] = None,
        prompt_library: Optional[PromptLibrary] = None,
    ) -> None:
        self.llm_provider = llm_provider or Config.LLM_PROVIDER
        self.llm_model = llm_model or Config.LLM_MODEL
        self.prompt_library = prompt_library or DEFAULT_PROMPTS

    async def generate_routines(self, agent: Agent) -> List[RoutineSlot]:
        rendered = render_prompt(
            self.prompt_library.get("routines"),
            {
                "speaker_name": agent.name,
                "speaker_role": agent.role,
                "speaker_personality": agent.personality or "(unspecified)",
                "speaker_interests": ", ".join(agent.interests) or "(none)",
            },
        )
        log_llm(f"[Registry] Generating routines for {agent.name}")
        plan = await call_llm_with_retries(
            system_prompt=rendered.system,
            user_prompt=rendered.user,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            response_model=RoutinePlan,
        )
        return list(plan.routines)
