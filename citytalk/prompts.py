"""Prompt templates and rendering for conversational turns."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping


@dataclass
class PromptTemplate:
    """Represents a templated prompt with ``{{placeholder}}`` slots."""

    name: str
    system: str
    user: str = ""
    description: str = ""


@dataclass
class RenderedPrompt:
    system: str
    user: str

    @property
    def text(self) -> str:
        """System and user sections joined, as handed to the text generator."""
        return "\n\n".join(section for section in (self.system.strip(), self.user.strip()) if section)


class PromptLibrary:
    """Container for named prompt templates."""

    def __init__(self) -> None:
        self.templates: Dict[str, PromptTemplate] = {}

    def register(self, template: PromptTemplate) -> None:
        self.templates[template.name] = template

    def get(self, name: str) -> PromptTemplate:
        return self.templates[name]


def render_prompt(template: PromptTemplate, values: Mapping[str, object]) -> RenderedPrompt:
    """Replace ``{{key}}`` placeholders with ``values``.

    Placeholders without a value are left in place so a missing key is easy
    to spot in DEBUG_LLM output.
    """

    system = template.system
    user = template.user
    for key, value in values.items():
        placeholder = "{{" + key + "}}"
        system = system.replace(placeholder, str(value))
        user = user.replace(placeholder, str(value))
    return RenderedPrompt(system=system, user=user)


# Default templates ------------------------------------------------------------

DEFAULT_PROMPTS = PromptLibrary()

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="opener",
        system=(
            "You are {{speaker_name}}, a {{speaker_role}} with the following personality: "
            "{{speaker_personality}}.\n"
            "You are starting a conversation at {{location}} during {{activity}}.\n"
            "The topic is: {{topic}}\n"
            "{{cultural_summary}}"
        ),
        user="Generate a natural conversation opener (1-2 sentences) that fits your character and the context.",
        description="First message of a new conversation.",
    )
)

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="turn",
        system=(
            "You are {{speaker_name}}, a {{speaker_role}} in the city. This is a natural conversation "
            "happening right now in {{location}}.\n\n"
            "Current Situation:\n"
            "You're {{activity}} while discussing {{topic}}. The environment is {{noise_description}} "
            "with {{crowding_description}}.{{time_pressure}}\n"
            "Community mood: {{community_mood}}.\n"
            "{{cultural_summary}}\n\n"
            "Your Background:\n"
            "{{speaker_personality}}\n"
            "Your interests: {{speaker_interests}}.\n\n"
            "Conversation Flow:\n"
            "- The discussion has reached a depth of {{depth}}\n"
            "- Your engagement level is {{engagement}}\n"
            "- The group's dynamic shows {{harmony}}\n"
            "- There's {{agreement}} among participants\n\n"
            "Recent Topics Discussed:\n"
            "{{recent_topics}}\n\n"
            "{{recall}}"
            "Recent messages:\n"
            "{{transcript}}"
        ),
        user=(
            "Response Guidelines:\n"
            "1. Speak naturally as yourself, focusing on the current discussion\n"
            "2. Share your professional insights when relevant\n"
            "3. React to others' points and build on them\n"
            "4. Keep it to 1-3 sentences\n\n"
            "Don't narrate actions or describe the scene, just respond to the others directly."
        ),
        description="Regular turn inside an ongoing conversation.",
    )
)

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="user_reply",
        system=(
            "You are {{speaker_name}}, a {{speaker_role}} with the following personality: "
            "{{speaker_personality}}.\n"
            "You are in a conversation at {{location}} during {{activity}}.\n"
            "The topic is: {{topic}}\n\n"
            "Previous messages:\n"
            "{{transcript}}"
        ),
        user="Generate a natural response (1-2 sentences) that fits your character and continues the conversation.",
        description="Reply to a message from a human user.",
    )
)

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="system_reaction",
        system=(
            "You are {{speaker_name}}, a {{speaker_role}}. You are at {{location}} talking about {{topic}}.\n"
            "You are reacting to this system announcement: {{announcement}}"
        ),
        user="Express your thoughts or feelings about it in 1-2 sentences.",
        description="Reaction to a city-wide announcement.",
    )
)

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="routines",
        system=(
            "You are a schedule generator. Generate a daily schedule for {{speaker_name}} ({{speaker_role}}).\n"
            "Personality: {{speaker_personality}}\n"
            "Interests: {{speaker_interests}}"
        ),
        user=(
            "Return JSON with a \"routines\" array of exactly 5 objects, each with:\n"
            "  time_slot (integer 0-23), activity (string), location (string),\n"
            "  possible_topics (array of strings), social_probability (number 0-1).\n"
            "Respond with JSON only."
        ),
        description="Structured daily routine generation.",
    )
)
