"""Tests for the LLM-backed text and routine generators."""

from datetime import datetime, timezone

import pytest

from citytalk import LLMRoutineGenerator, LLMTextGenerator
from citytalk.llm import format_transcript
from citytalk.schemas import Agent, Message, RoutinePlan
from citytalk.collaborators import default_routines


def make_message(index: int, author: str) -> Message:
    return Message(
        id=f"m{index}",
        author=author,
        content=f"line {index}",
        timestamp=datetime(2025, 1, 1, 9, index, tzinfo=timezone.utc),
    )


def test_format_transcript_labels_speakers():
    messages = [make_message(0, "alice"), make_message(1, "user"), make_message(2, "system")]
    assert format_transcript(messages, {"alice": "Alice"}) == "Alice: line 0\nUser: line 1\nSystem: line 2"
    assert format_transcript([]) == "(no messages yet)"


@pytest.mark.asyncio
async def test_text_generator_sends_memory_window(monkeypatch):
    captured = {}

    async def fake_call_llm_text(**kwargs):
        captured.update(kwargs)
        return "Sounds good to me."

    monkeypatch.setattr("citytalk.llm.call_llm_text", fake_call_llm_text)

    agent = Agent(id="alice", name="Alice", memory_window_size=2)
    generator = LLMTextGenerator(llm_provider="openai", llm_model="gpt-5-nano")
    history = [make_message(index, "bob") for index in range(4)]

    text = await generator.generate(agent, history, "You are Alice.")

    assert text == "Sounds good to me."
    assert captured["system_prompt"] == "You are Alice."
    assert captured["llm_provider"] == "openai"
    assert "line 3" in captured["user_prompt"]
    assert "line 2" in captured["user_prompt"]
    assert "line 1" not in captured["user_prompt"]
    assert captured["user_prompt"].endswith("Reply as Alice.")


@pytest.mark.asyncio
async def test_routine_generator_requests_routine_plan(monkeypatch):
    captured = {}

    async def fake_call_llm_with_retries(**kwargs):
        captured.update(kwargs)
        return RoutinePlan(routines=default_routines())

    monkeypatch.setattr("citytalk.llm.call_llm_with_retries", fake_call_llm_with_retries)

    agent = Agent(id="alice", name="Alice", role="barista", interests=["latte art"])
    routines = await LLMRoutineGenerator(llm_provider="openai", llm_model="gpt-5-nano").generate_routines(agent)

    assert routines == default_routines()
    assert captured["response_model"] is RoutinePlan
    assert "Alice" in captured["system_prompt"] + captured["user_prompt"]
