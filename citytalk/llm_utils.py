"""Helper utilities for LLM-related error handling and retries."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from mirascope import llm
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .config import Config
from .errors import GenerationFailedError
from .logging_utils import log_error, log_llm
from .schemas import Agent, Message


ModelT = TypeVar("ModelT", bound=BaseModel)


class EmptyGenerationError(ValueError):
    """Raised when a generator returns blank text."""


@dataclass(slots=True)
class ValidationFeedback:
    """Structured feedback for retrying failed LLM schema outputs."""

    llm_text: str
    issues: Sequence[str]


def _truncate_preview(value: Any, *, limit: int = 80) -> str:
    """Return a compact preview of the offending input value."""

    if value is None:
        return "null"
    text = repr(value)
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def inject_validation_feedback(error: ValidationError) -> ValidationFeedback:
    """Produce guidance for the model plus structured issues for logging.

    Converts a pydantic ValidationError into readable feedback that is appended
    to the retry prompt so the model can correct field paths and types.
    """

    issues: list[str] = []
    for err in error.errors(include_url=False):
        loc = ".".join(str(part) for part in err.get("loc", [])) or "root"
        details = f"{loc}: {err.get('msg', 'validation error')}"
        if err.get("type"):
            details += f" [type={err['type']}]"
        if "input" in err:
            preview = _truncate_preview(err.get("input"))
            if preview:
                details += f" | received={preview}"
        issues.append(details)

    if not issues:
        issues.append("root: response did not match the expected schema")

    instructions = [
        "Your previous JSON response failed to validate against the required schema.",
        "Produce a corrected response that strictly matches the schema.",
        "Do not include explanations or code fences, return only valid JSON.",
        "Issues detected:",
    ]
    instructions.extend(f"- {issue}" for issue in issues)

    return ValidationFeedback(llm_text="\n".join(instructions), issues=issues)


def _combine(system_prompt: str, user_prompt: str) -> str:
    return "\n\n".join(section for section in (system_prompt.strip(), user_prompt.strip()) if section)


async def call_llm_with_retries(
    *,
    system_prompt: str,
    user_prompt: str,
    llm_provider: str,
    llm_model: str,
    response_model: type[ModelT],
    max_attempts: int = 3,
    feedback_builder: Callable[[ValidationError], ValidationFeedback] = inject_validation_feedback,
) -> ModelT:
    """Invoke a structured LLM call with validation-aware retries.

    Only validation errors are retried; the feedback from the failed attempt
    is appended to the original prompt so the model keeps its full context.
    Other exceptions (network, auth, timeout) propagate immediately.
    """

    feedback_payload: ValidationFeedback | None = None

    @llm.call(provider=llm_provider, model=llm_model, response_model=response_model)
    async def _invoke(prompt: str) -> str:
        return prompt

    attempt_number = 0
    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(ValidationError),
        stop=stop_after_attempt(max_attempts),
        reraise=True,
    ):
        with attempt:
            attempt_number += 1
            if attempt_number > 1:
                log_llm(
                    f"LLM retry {attempt_number}/{max_attempts} for {response_model.__name__};"
                    " attempting schema correction."
                )
            user_section = user_prompt.strip()
            if feedback_payload is not None:
                user_section = f"{user_section}\n\n{feedback_payload.llm_text}"
            try:
                return await asyncio.wait_for(
                    _invoke(_combine(system_prompt, user_section)),
                    timeout=Config.LLM_TIMEOUT_SECONDS,
                )
            except ValidationError as exc:
                feedback_payload = feedback_builder(exc)
                log_error(
                    f"LLM schema validation failed for {response_model.__name__} "
                    f"(attempt {attempt_number}/{max_attempts})."
                )
                for issue in feedback_payload.issues:
                    log_error(f"    - {issue}")
                raise

    raise RuntimeError("LLM retry mechanism exited unexpectedly")


async def call_llm_text(
    *,
    system_prompt: str,
    user_prompt: str,
    llm_provider: str,
    llm_model: str,
) -> str:
    """Invoke a free-text LLM call and return the response content."""

    @llm.call(provider=llm_provider, model=llm_model)
    async def _invoke(prompt: str) -> str:
        return prompt

    response = await asyncio.wait_for(
        _invoke(_combine(system_prompt, user_prompt)),
        timeout=Config.LLM_TIMEOUT_SECONDS,
    )
    return str(response.content)


async def generate_with_retries(
    generate: Callable[[Agent, Sequence[Message], str], Awaitable[str]],
    agent: Agent,
    prior_messages: Sequence[Message],
    system_prompt: str,
    *,
    max_attempts: int = 3,
    backoff_seconds: float = 5.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str:
    """Request a turn's text, retrying empty or failed responses.

    Attempts are bounded and separated by a fixed backoff (slept through the
    supplied ``sleep`` so virtual clocks stay in control). Once attempts are
    exhausted the last failure is wrapped in ``GenerationFailedError``.

    Budget is charged by the caller once per turn, not per attempt, so a
    single unit can cover up to ``max_attempts`` provider calls.
    """

    attempt_number = 0
    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(Exception),
            stop=stop_after_attempt(max_attempts),
            wait=wait_fixed(backoff_seconds),
            sleep=sleep,
            reraise=True,
        ):
            with attempt:
                attempt_number += 1
                try:
                    text = await generate(agent, prior_messages, system_prompt)
                    if not text or not text.strip():
                        raise EmptyGenerationError(f"Empty response for agent '{agent.id}'")
                    return text.strip()
                except Exception as exc:
                    log_error(
                        f"[Generation] {agent.name} attempt {attempt_number}/{max_attempts} failed: {exc}"
                    )
                    raise
    except Exception as exc:
        raise GenerationFailedError(
            agent_id=agent.id, attempts=attempt_number, last_error=exc
        ) from exc

    raise RuntimeError("Generation retry mechanism exited unexpectedly")
