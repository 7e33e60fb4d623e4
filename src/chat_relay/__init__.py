"""Chat Relay - streaming chat completion relay with a persisted transcript.

Relays an incrementally generated completion from an OpenAI-compatible
upstream provider to a client over Server-Sent Events, while keeping an
ordered, append-only conversation transcript.

Last Grunted: 10/18/2026 10:00:00 AM UTC
"""

__version__ = "0.1.0"
