"""
Streaming chat router.

Implements ``POST /api/chat/{conversation_id}``:
    - Authenticated by the ``X-User-Id`` header (set by the auth layer)
    - Body ``{"message": "..."}``
    - Answers with a Server-Sent Events stream of the assistant reply

SSE Protocol (events emitted):
==============================
    data: {"token": "<fragment>"}     zero or more, in order
    data: [DONE]                      exactly one on success
    data: {"error": "<message>"}      at most one, on failure after the first token

Errors detected before the first event are plain JSON instead:
    400 {"message": "Message is required"}
    401 {"message": "Not authenticated"}
    404 {"message": "Conversation not found"}
    500 {"message": "Internal server error"}   upstream unreachable
    500 {"message": "Stream error"}            upstream failed before any token

Frontend Integration Example:
    ```typescript
    const res = await fetch(`/api/chat/${conversationId}`, {
        method: 'POST',
        headers: {'Content-Type': 'application/json'},
        body: JSON.stringify({message}),
    });
    // read res.body, split on "\\n\\n", strip "data: "
    ```

Last Grunted: 10/18/2026 10:00:00 AM UTC
"""
import asyncio
import structlog
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from chat_relay.config import RelaySettings
from chat_relay.errors import RelayError, relay_error_response
from chat_relay.services.downstream import QueueDownstreamWriter
from chat_relay.services.relay_session import RelaySession
from chat_relay.services.request_context import require_owner_id
from chat_relay.services.tasks import TaskRegistry
from chat_relay.services.title_generator import TitleWorker
from chat_relay.services.transcript_store import TranscriptStore
from chat_relay.services.upstream import CompletionClient

logger = structlog.get_logger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


class ChatRequest(BaseModel):
    """
    Chat request body.

    ``message`` is optional at the schema level so that missing, empty and
    whitespace-only messages are all rejected by the same validation.

    Attributes:
        message: The user's message
    """
    message: Optional[str] = None


@dataclass
class RelayRuntime:
    """Process-wide collaborators shared by every relay session."""
    settings: RelaySettings
    store: TranscriptStore
    upstream: CompletionClient
    title_worker: Optional[TitleWorker]
    tasks: TaskRegistry


def get_runtime(request: Request) -> RelayRuntime:
    """FastAPI dependency returning the runtime attached by the app lifespan."""
    return request.app.state.runtime


async def _relay_body(
    first_chunk: Optional[str],
    writer: QueueDownstreamWriter,
    conversation_id: str,
) -> AsyncIterator[str]:
    try:
        if first_chunk is not None:
            yield first_chunk
        async for chunk in writer:
            yield chunk
    finally:
        if not writer.closed:
            logger.info("chat.stream.client_gone", conversation_id=conversation_id)
        writer.close()


@router.post("/api/chat/{conversation_id}")
async def stream_chat(
    conversation_id: str,
    body: ChatRequest,
    owner_id: str = Depends(require_owner_id),
    runtime: RelayRuntime = Depends(get_runtime),
):
    """
    Relay one chat turn as a Server-Sent Events stream.

    1. Validates the message and loads the caller's conversation
    2. Persists the user turn
    3. Opens the upstream completion stream
    4. Streams tokens; the assistant turn is persisted when the stream ends

    Steps 1-3 and the wait for the first upstream event complete before
    any response byte is sent, so their failures (including an upstream
    stream that fails before its first token) become JSON error responses.

    Args:
        conversation_id: Target conversation
        body: ChatRequest with the user's message
        owner_id: Authenticated caller (injected)
        runtime: Shared collaborators (injected)

    Returns:
        StreamingResponse (text/event-stream) or JSONResponse on error

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    session = RelaySession(
        runtime.store,
        runtime.upstream,
        runtime.settings,
        runtime.title_worker,
    )
    try:
        await session.prepare(conversation_id, owner_id, body.message)
    except RelayError as e:
        return relay_error_response(e)

    # The session runs in its own task so a client disconnect (which
    # cancels the response body) cannot interrupt transcript persistence.
    writer = QueueDownstreamWriter()
    task = runtime.tasks.spawn(session.stream(writer), name=f"relay-{conversation_id}")
    try:
        # No status is committed until the first event exists
        first_chunk = await writer.next_chunk()
        if first_chunk is None:
            outcome = await asyncio.shield(task)
            if outcome.error is not None:
                return relay_error_response(outcome.error)
    except asyncio.CancelledError:
        writer.close()
        raise

    return StreamingResponse(
        _relay_body(first_chunk, writer, conversation_id),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
