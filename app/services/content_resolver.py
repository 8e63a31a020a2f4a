"""Fallback content lookup for conversational post actions.

Used only when the caller did not pass content explicitly, e.g. a chat
message like "post it". Order: explicit text, the conversation's cached last
post, then heuristics over the recent conversation text.
"""
import re
from collections.abc import Awaitable, Callable

_TOOL_OUTPUT_TEXT = re.compile(r'data-tool-output[^}]*?"text"\s*:\s*"([^"]+)"')
_CHAT_MARKERS = ("Tool called:", "Assistant:", "User:")
MIN_LINE_LENGTH = 20


def extract_from_conversation(conversation_text: str | None) -> str | None:
    """Best guess at the last drafted post in a conversation transcript."""
    if not conversation_text:
        return None

    matches = _TOOL_OUTPUT_TEXT.findall(conversation_text)
    if matches:
        return matches[-1].strip() or None

    candidates = [
        line.strip()
        for line in conversation_text.splitlines()
        if len(line.strip()) > MIN_LINE_LENGTH
        and not any(marker in line for marker in _CHAT_MARKERS)
        and "{" not in line
        and "}" not in line
    ]
    return candidates[-1] if candidates else None


async def resolve_content(
    explicit: str | None,
    cache_lookup: Callable[[], Awaitable[str | None]] | None = None,
    conversation_text: str | None = None,
) -> str | None:
    if explicit and explicit.strip():
        return explicit
    if cache_lookup is not None:
        cached = await cache_lookup()
        if cached and cached.strip():
            return cached
    return extract_from_conversation(conversation_text)
