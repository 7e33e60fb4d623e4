"""Map decoded upstream payloads to assistant text fragments."""
from typing import Any, Optional


def _text_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def extract_token(payload: Any) -> Optional[str]:
    """
    Extract the incremental content string from one decoded payload.

    Recognised shapes (first match wins):
        - ``{"token": "..."}``
        - ``{"type": "token", "content": "..."}``
        - ``{"choices": [{"delta": {"content": "..."}}]}`` (OpenAI chunk)

    Metadata-only records (role-only deltas, finish reasons, usage chunks)
    and empty strings yield no fragment. Missing or oddly-typed fields are
    treated the same way rather than raised.

    Args:
        payload: Decoded JSON value of one frame

    Returns:
        Optional[str]: The fragment, or None when the record carries no text

    Example:
        >>> extract_token({"choices": [{"delta": {"content": "Hi"}}]})
        'Hi'
        >>> extract_token({"choices": [{"delta": {}, "finish_reason": "stop"}]}) is None
        True

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    if not isinstance(payload, dict):
        return None

    if "token" in payload:
        return _text_or_none(payload.get("token"))

    if payload.get("type") == "token":
        return _text_or_none(payload.get("content"))

    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, dict):
            delta = first.get("delta")
            if isinstance(delta, dict):
                return _text_or_none(delta.get("content"))
    return None
