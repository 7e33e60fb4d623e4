"""
Relay turn counters and the lost-turn audit trail.

Every relay invocation ends in exactly one ``record_relay_turn`` call, made
by the session when it reaches COMPLETED or FAILED. The counters answer the
operational questions about the relay:

    - how many turns ran and how many failed, by failure kind
    - how long a turn takes end to end
    - how many fragments were relayed
    - how often clients hang up mid-stream and how often upstream was cut short
    - how many assistant turns reached the client but not the transcript

Audit events are kept in a bounded in-process buffer for
``GET /internal/audit``.

Last Grunted: 10/18/2026 10:00:00 AM UTC
"""
from __future__ import annotations

import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Optional

DEFAULT_AUDIT_BUFFER = 1000

RELAY_TURN_METRIC = "relay.turn"


@dataclass
class RelayTurnCounters:
    turns: int = 0
    failures: Counter = field(default_factory=Counter)
    total_latency_ms: float = 0.0
    fragments: int = 0
    client_disconnects: int = 0
    upstream_aborts: int = 0
    lost_replies: int = 0

    def snapshot(self) -> dict[str, Any]:
        failed = sum(self.failures.values())
        return {
            "count": self.turns,
            "failures": failed,
            "failures_by_kind": dict(self.failures),
            "error_rate": (failed / self.turns) if self.turns else 0.0,
            "avg_latency_ms": (self.total_latency_ms / self.turns) if self.turns else 0.0,
            "fragments": self.fragments,
            "client_disconnects": self.client_disconnects,
            "upstream_aborts": self.upstream_aborts,
            "lost_replies": self.lost_replies,
        }


_turns = RelayTurnCounters()
_audit_events: deque[dict[str, Any]] = deque(maxlen=DEFAULT_AUDIT_BUFFER)


def configure_audit_buffer(max_events: int) -> None:
    global _audit_events
    _audit_events = deque(_audit_events, maxlen=max(1, max_events))


def record_relay_turn(
    latency_ms: float,
    failure_kind: Optional[str] = None,
    fragments: int = 0,
    client_disconnected: bool = False,
    upstream_aborted: bool = False,
    reply_lost: bool = False,
) -> None:
    """
    Count one finished relay turn.

    Args:
        latency_ms: Request start to final state
        failure_kind: Error kind when the turn failed, None on success
        fragments: Fragments received from upstream
        client_disconnected: Client went away before the terminal event
        upstream_aborted: Upstream was closed early because of the disconnect
        reply_lost: Reply was delivered but the assistant turn was not stored
    """
    _turns.turns += 1
    _turns.total_latency_ms += latency_ms
    _turns.fragments += fragments
    if failure_kind is not None:
        _turns.failures[failure_kind] += 1
    if client_disconnected:
        _turns.client_disconnects += 1
    if upstream_aborted:
        _turns.upstream_aborts += 1
    if reply_lost:
        _turns.lost_replies += 1


def get_metric_snapshot() -> dict[str, dict[str, Any]]:
    if not _turns.turns:
        return {}
    return {RELAY_TURN_METRIC: _turns.snapshot()}


def emit_audit_event(event_type: str, **payload: Any) -> None:
    _audit_events.append({"ts": time.time(), "event": event_type, **payload})


def get_audit_events(limit: int = 100) -> list[dict[str, Any]]:
    if limit <= 0:
        return []
    return list(_audit_events)[-limit:]


def reset() -> None:
    """Clear counters and audit buffer (tests)."""
    global _turns
    _turns = RelayTurnCounters()
    _audit_events.clear()
