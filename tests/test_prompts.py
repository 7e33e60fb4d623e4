from datetime import datetime, timezone

from chat_relay.services.prompts import build_system_prompt, build_upstream_messages, truncate_context
from chat_relay.services.transcript_store import TurnRecord


def _turns(n):
    now = datetime.now(timezone.utc)
    return [
        TurnRecord(
            id=str(i),
            conversation_id="c",
            seq=i,
            role="user" if i % 2 else "assistant",
            content=f"m{i}",
            created_at=now,
        )
        for i in range(1, n + 1)
    ]


def test_system_prompt_override():
    assert build_system_prompt("Custom", "Default") == "Custom"
    assert build_system_prompt(None, "Default") == "Default"
    assert build_system_prompt("   ", "Default") == "Default"


def test_truncate_keeps_most_recent():
    turns = _turns(5)
    assert [t.seq for t in truncate_context(turns, 2)] == [4, 5]
    assert [t.seq for t in truncate_context(turns, 10)] == [1, 2, 3, 4, 5]
    assert truncate_context(turns, 0) == []


def test_build_upstream_messages():
    messages = build_upstream_messages("sys", _turns(3), "new", context_turns=2)
    assert messages == [
        {"role": "system", "content": "sys"},
        {"role": "assistant", "content": "m2"},
        {"role": "user", "content": "m3"},
        {"role": "user", "content": "new"},
    ]
