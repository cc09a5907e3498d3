"""Logging utilities for Citytalk.

Provides color-coded output to distinguish deterministic bookkeeping from
generation calls, failures, and lifecycle milestones.
"""

import os
from enum import Enum


class Color(Enum):
    """ANSI color codes for terminal output."""

    BLUE = "\033[94m"      # Deterministic operations (quota, metrics, scheduling)
    YELLOW = "\033[93m"    # Generation calls
    RED = "\033[91m"       # Errors and retries
    GREEN = "\033[92m"     # Success/completion
    CYAN = "\033[96m"      # Info/metadata

    BOLD = "\033[1m"
    RESET = "\033[0m"


def colored(text: str, color: Color, bold: bool = False) -> str:
    """Wrap text in ANSI color codes if colors are enabled.

    Args:
        text: Text to colorize
        color: Color to apply
        bold: Whether to make text bold

    Returns:
        Colorized text if CITYTALK_NO_COLOR is not set, otherwise plain text
    """
    if os.getenv("CITYTALK_NO_COLOR"):
        return text

    prefix = color.value
    if bold:
        prefix = Color.BOLD.value + prefix

    return f"{prefix}{text}{Color.RESET.value}"


def _emit(message: str, color: Color) -> None:
    if os.getenv("CITYTALK_QUIET", "").lower() in ("1", "true", "yes"):
        return
    print(colored(message, color))


def log_deterministic(message: str) -> None:
    """Log a deterministic operation (blue)."""
    _emit(f"{LOG_TAG_DETERMINISTIC} {message}", Color.BLUE)


def log_llm(message: str) -> None:
    """Log a generation call (yellow)."""
    _emit(f"{LOG_TAG_LLM} {message}", Color.YELLOW)


def log_error(message: str) -> None:
    """Log an error or retry (red)."""
    _emit(f"{LOG_TAG_ERROR} {message}", Color.RED)


def log_success(message: str) -> None:
    """Log a success (green)."""
    _emit(f"{LOG_TAG_SUCCESS} {message}", Color.GREEN)


def log_info(message: str) -> None:
    """Log metadata/info (cyan)."""
    _emit(f"{LOG_TAG_INFO} {message}", Color.CYAN)


def debug_llm_enabled() -> bool:
    return os.getenv("DEBUG_LLM", "").lower() in ("1", "true", "yes")


# Markers for operation types (color-blind accessible)
LOG_TAG_DETERMINISTIC = "[•]"
LOG_TAG_LLM = "[LLM]"
LOG_TAG_ERROR = "[!]"
LOG_TAG_SUCCESS = "[✓]"
LOG_TAG_INFO = "[i]"
