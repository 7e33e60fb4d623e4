"""Upstream message assembly: system prompt plus a bounded context window."""
from typing import Dict, List, Optional, Sequence

from chat_relay.services.transcript_store import TurnRecord


def build_system_prompt(override: Optional[str], default: str) -> str:
    """Conversation override if set (and not blank), else the configured default."""
    if override and override.strip():
        return override
    return default


def truncate_context(prior_turns: Sequence[TurnRecord], context_turns: int) -> List[TurnRecord]:
    """
    Keep only the most recent ``context_turns`` prior turns.

    Oldest turns are dropped first; ``context_turns <= 0`` keeps none.

    Example:
        >>> [t.seq for t in truncate_context(turns_1_to_5, 2)]
        [4, 5]
    """
    if context_turns <= 0:
        return []
    return list(prior_turns[-context_turns:])


def build_upstream_messages(
    system_prompt: str,
    prior_turns: Sequence[TurnRecord],
    message: str,
    context_turns: int,
) -> List[Dict[str, str]]:
    """
    Build ``[system, *recent prior turns, new user message]``.

    Args:
        system_prompt: Resolved system prompt
        prior_turns: Transcript before this request, oldest first
        message: The new (already trimmed) user message
        context_turns: Maximum number of prior turns to include

    Returns:
        List[Dict[str, str]]: Ordered ``{"role", "content"}`` messages

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend(
        {"role": turn.role, "content": turn.content}
        for turn in truncate_context(prior_turns, context_turns)
    )
    messages.append({"role": "user", "content": message})
    return messages
