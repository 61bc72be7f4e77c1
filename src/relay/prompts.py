from __future__ import annotations

from pathlib import Path
from typing import Dict

import structlog

from src.relay.config import Config
from src.relay.errors import BackendFailure

logger = structlog.get_logger(__name__)

_DEFAULT_MAX_PROMPT_CHARS = 40_000

SYSTEM_PROMPT = """You are a helpful voice assistant engaged in a phone conversation. Your responses should be:

1. Concise and Natural: Keep responses brief and conversational, as if speaking on the phone. Avoid long explanations.

2. Voice-Optimized: Use simple, clear language without special formatting, markdown, or symbols that don't translate well to speech.

3. Interactive: Ask clarifying questions when needed, and acknowledge what the caller says.

4. Friendly and Professional: Maintain a warm, helpful tone appropriate for phone support.

5. Context-Aware: Remember the conversation context and refer back to previous topics naturally.

Guidelines:
- Respond in 1-2 sentences when possible
- Avoid using numbers in lists - use natural transitions instead
- Don't use abbreviations that need to be spelled out
- Speak numbers and dates naturally (e.g., "twenty-twenty-four" not "2024")
- If you need to provide multiple pieces of information, break them up conversationally
- Acknowledge interruptions gracefully and adjust your response accordingly

Remember: This is a voice conversation, not text. Everything you say will be spoken aloud."""

# DTMF responses
DTMF_GOODBYE = "Goodbye! Thank you for calling."
DTMF_MENU = (
    "You're at the main menu. Press 1 for account information, "
    "2 for support, or 0 to speak with an operator."
)
DTMF_ACCOUNT_INFO = (
    "For account information, please tell me what you'd like to know about your account."
)
DTMF_SUPPORT = "You've reached support. Please describe the issue you're having."
DTMF_TRANSFER = "Transferring you to an operator. Please hold."
DTMF_CONTINUE = "Please continue entering digits."
DTMF_INVALID = "I'm sorry, that's not a valid option. Please try again."
DTMF_BUFFER_CLEARED = "Clear DTMF buffer"
DTMF_NOTHING_TO_REPEAT = "No previous message to repeat."

GENERIC_APOLOGY = "I apologize, but I encountered an error. Please try again."
EMPTY_COMPLETION_APOLOGY = "I apologize, but I was unable to generate a response."

BACKEND_APOLOGIES: Dict[BackendFailure, str] = {
    BackendFailure.AUTHENTICATION: (
        "I apologize, but there is a configuration issue. Please contact support."
    ),
    BackendFailure.RATE_LIMIT: (
        "I apologize, but the service is currently experiencing high demand. "
        "Please try again in a moment."
    ),
    BackendFailure.TIMEOUT: "I apologize, but the request timed out. Please try again.",
    BackendFailure.SERVER_ERROR: (
        "I apologize, but the service is temporarily unavailable. Please try again later."
    ),
    BackendFailure.GENERIC: GENERIC_APOLOGY,
}


def apology_for(failure: BackendFailure) -> str:
    return BACKEND_APOLOGIES.get(failure, GENERIC_APOLOGY)


def _resolve_prompt_path(path: str) -> Path:
    """Relative prompt paths are taken from the project root, not the working directory."""
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    return Path(__file__).resolve().parents[2] / candidate


def load_prompt_file(path: str, *, max_chars: int = _DEFAULT_MAX_PROMPT_CHARS) -> str:
    """Read a prompt file. Returns "" when it is missing or unreadable."""
    if not path:
        return ""

    prompt_path = _resolve_prompt_path(path)
    try:
        text = prompt_path.read_text(encoding="utf-8-sig").strip()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("System prompt file unreadable", path=str(prompt_path), error=str(e))
        return ""

    if len(text) > max_chars:
        logger.warning(
            "System prompt file truncated",
            path=str(prompt_path),
            length=len(text),
            max_chars=max_chars,
        )
        text = text[:max_chars]
    return text


def resolve_system_prompt(config: Config, *, max_chars: int = _DEFAULT_MAX_PROMPT_CHARS) -> str:
    """
    Resolve the system instruction from (1) inline text, else (2) a file, else the default.
    """
    prompt = (config.llama_system_prompt or "").strip()
    if not prompt:
        prompt = load_prompt_file(config.llama_system_prompt_file, max_chars=max_chars)
    return prompt or SYSTEM_PROMPT
