"""
Relay session: one chat turn from request to persisted transcript.

A ``RelaySession`` orchestrates a single invocation:

    INITIALIZING  validate input, load the owner-checked conversation and
                  its prior turns, persist the user turn, open upstream
    STREAMING     upstream bytes -> FrameParser -> extract_token ->
                  accumulator + DownstreamWriter, fragment by fragment
    FINALIZING    terminal client event, close the client stream, persist
                  the assistant turn, hand off auto-titling
    COMPLETED / FAILED

The two phases are separate calls so the HTTP layer can still answer with
a plain JSON error while nothing has been streamed: ``prepare()`` raises
``RelayError`` subclasses, ``stream()`` never raises for relay failures
and reports them on the returned outcome. A failure after the first token
also ends the client stream with one error event; a failure before it
closes the writer with nothing written, so the caller can still answer 500.

Guarantees:
    - exactly one user turn per prepared invocation, stored before the
      upstream call
    - exactly one assistant turn per completed upstream stream, equal to
      the concatenation of every fragment received (forwarded or not,
      possibly empty), never stored after an upstream failure
    - assistant turn stored before the auto-title job is submitted

Client disconnects follow the configured policy: ``drain`` keeps reading
upstream so the transcript holds the whole reply, ``abort`` closes the
upstream stream at once and stores what was received so far.

Last Grunted: 10/18/2026 10:00:00 AM UTC
"""
import structlog
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from chat_relay.config import RelaySettings
from chat_relay.errors import (
    NotFoundError,
    PersistenceError,
    RelayError,
    UpstreamError,
    UpstreamStreamError,
    ValidationError,
)
from chat_relay.services.downstream import (
    DownstreamClosedError,
    DownstreamWriter,
    format_done_event,
    format_error_event,
    format_token_event,
)
from chat_relay.services.frame_parser import iter_frames
from chat_relay.services.observability import emit_audit_event, record_relay_turn
from chat_relay.services.prompts import build_system_prompt, build_upstream_messages
from chat_relay.services.title_generator import TitleJob, TitleWorker
from chat_relay.services.token_extractor import extract_token
from chat_relay.services.transcript_store import (
    ConversationRecord,
    TranscriptStore,
    TurnRecord,
)
from chat_relay.services.upstream import CompletionClient, CompletionStream

logger = structlog.get_logger(__name__)

class RelayState(str, Enum):
    INITIALIZING = "initializing"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RelayInvocation:
    """
    Transient state of one prepared request.

    Attributes:
        conversation: Owner-checked conversation
        incoming_message: Trimmed user message
        prior_turns: Transcript before this request, oldest first
        user_turn: The user turn persisted for this request
        messages: Exact message list sent upstream
        model: Upstream model used
    """
    conversation: ConversationRecord
    incoming_message: str
    prior_turns: List[TurnRecord]
    user_turn: TurnRecord
    messages: List[Dict[str, str]]
    model: str

    @property
    def conversation_id(self) -> str:
        return self.conversation.id


@dataclass
class RelayOutcome:
    state: RelayState
    content: str = ""
    fragments: int = 0
    assistant_turn: Optional[TurnRecord] = None
    error: Optional[Exception] = None
    client_disconnected: bool = False
    upstream_aborted: bool = False
    forwarded: List[str] = field(default_factory=list)


class RelaySession:
    """
    Orchestrates one relay invocation. Single use.

    Args:
        store: Transcript store (shared, concurrency-safe)
        upstream: Provider client (injected; a fake in tests)
        settings: Relay settings (context window, models, policies)
        title_worker: Auto-title worker; None disables auto-titling

    Example:
        session = RelaySession(store, upstream, settings, title_worker)
        await session.prepare(conversation_id, owner_id, "Hello")   # may raise RelayError
        outcome = await session.stream(writer)                      # never raises RelayError

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """

    def __init__(
        self,
        store: TranscriptStore,
        upstream: CompletionClient,
        settings: RelaySettings,
        title_worker: Optional[TitleWorker] = None,
    ):
        self._store = store
        self._upstream = upstream
        self._settings = settings
        self._title_worker = title_worker
        self._state = RelayState.INITIALIZING
        self._invocation: Optional[RelayInvocation] = None
        self._stream: Optional[CompletionStream] = None
        self._client_gone = False
        self._reply_lost = False
        self._started = time.perf_counter()
        self._log = logger

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def invocation(self) -> Optional[RelayInvocation]:
        return self._invocation

    def _transition(self, state: RelayState) -> None:
        self._log.debug("relay.state", from_state=self._state.value, to_state=state.value)
        self._state = state

    def _record(self, failure_kind: Optional[str] = None, outcome: Optional[RelayOutcome] = None) -> None:
        record_relay_turn(
            (time.perf_counter() - self._started) * 1000,
            failure_kind=failure_kind,
            fragments=outcome.fragments if outcome else 0,
            client_disconnected=outcome.client_disconnected if outcome else False,
            upstream_aborted=outcome.upstream_aborted if outcome else False,
            reply_lost=self._reply_lost,
        )

    # ------------------------------------------------------------------
    # INITIALIZING
    # ------------------------------------------------------------------

    async def prepare(self, conversation_id: str, owner_id: str, message: Optional[str]) -> RelayInvocation:
        """
        Validate, persist the user turn and open the upstream stream.

        Args:
            conversation_id: Target conversation
            owner_id: Authenticated caller
            message: Raw user message

        Returns:
            RelayInvocation: Prepared invocation (stream is open)

        Raises:
            ValidationError: Message empty after trimming (nothing persisted)
            NotFoundError: Conversation missing or owned by someone else
            PersistenceError: Loading history or storing the user turn failed
            UpstreamConnectError / UpstreamTimeoutError: Upstream not reachable
                (the user turn stays persisted)

        Last Grunted: 10/18/2026 10:00:00 AM UTC
        """
        if self._state is not RelayState.INITIALIZING or self._invocation is not None:
            raise RuntimeError("RelaySession is single use")

        self._log = logger.bind(conversation_id=conversation_id, owner_id=owner_id)
        try:
            text = (message or "").strip()
            if not text:
                raise ValidationError()

            conversation = await self._store.get_conversation(conversation_id, owner_id)
            if conversation is None:
                raise NotFoundError()

            prior_turns = await self._store.list_ordered(conversation_id)
            user_turn = await self._store.append(conversation_id, "user", text)

            system_prompt = build_system_prompt(
                conversation.system_prompt_override,
                self._settings.default_system_prompt,
            )
            messages = build_upstream_messages(
                system_prompt,
                prior_turns,
                text,
                self._settings.context_turns,
            )
            model = conversation.model or self._settings.default_model

            self._invocation = RelayInvocation(
                conversation=conversation,
                incoming_message=text,
                prior_turns=prior_turns,
                user_turn=user_turn,
                messages=messages,
                model=model,
            )

            self._log.info(
                "relay.stream.open",
                model=model,
                prior_turns=len(prior_turns),
                sent_messages=len(messages),
            )
            self._stream = await self._upstream.open_stream(model, messages)
        except RelayError as e:
            self._transition(RelayState.FAILED)
            self._record(failure_kind=e.kind)
            log = self._log.warning if e.status_code < 500 else self._log.error
            log("relay.prepare.failed", kind=e.kind, error=str(e))
            raise

        return self._invocation

    # ------------------------------------------------------------------
    # STREAMING / FINALIZING
    # ------------------------------------------------------------------

    async def _forward(self, writer: DownstreamWriter, chunk: str) -> bool:
        if self._client_gone:
            return False
        try:
            await writer.write(chunk)
            return True
        except DownstreamClosedError:
            self._client_gone = True
            self._log.info(
                "relay.client_disconnected",
                policy=self._settings.disconnect_policy,
            )
            return False

    async def _close_upstream(self) -> None:
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        try:
            await stream.aclose()
        except Exception as e:
            self._log.warning("relay.upstream_close_failed", error=str(e))

    async def stream(self, writer: DownstreamWriter) -> RelayOutcome:
        """
        Relay fragments to ``writer`` and finalize the turn.

        Always closes both the writer and the upstream stream. If upstream
        fails before the first token, nothing is written and the failure is
        only reported as ``outcome.error``.

        Returns:
            RelayOutcome: Final state, accumulated content and persisted turn

        Last Grunted: 10/18/2026 10:00:00 AM UTC
        """
        if self._invocation is None or self._stream is None:
            raise RuntimeError("prepare() must succeed before stream()")

        self._transition(RelayState.STREAMING)
        outcome = RelayOutcome(state=self._state)
        fragments: List[str] = []
        failure: Optional[RelayError] = None

        try:
            async with aclosing(iter_frames(self._stream.aiter_bytes())) as events:
                async for event in events:
                    if event.is_terminal:
                        break
                    fragment = extract_token(event.payload)
                    if fragment is None:
                        continue
                    fragments.append(fragment)
                    if await self._forward(writer, format_token_event(fragment)):
                        outcome.forwarded.append(fragment)
                    if self._client_gone and self._settings.disconnect_policy == "abort":
                        outcome.upstream_aborted = True
                        break
        except UpstreamError as e:
            failure = e
        except Exception as e:
            self._log.exception("relay.stream.unexpected_error", error=str(e))
            failure = UpstreamStreamError(detail=f"{type(e).__name__}: {e}")
        finally:
            await self._close_upstream()

        self._transition(RelayState.FINALIZING)
        outcome.content = "".join(fragments)
        outcome.fragments = len(fragments)

        if failure is not None:
            await self._fail(writer, outcome, failure)
            return outcome

        await self._forward(writer, format_done_event())
        writer.close()
        outcome.client_disconnected = self._client_gone

        outcome.assistant_turn = await self._persist_reply(outcome.content)
        if outcome.assistant_turn is not None:
            await self._request_title()

        self._transition(RelayState.COMPLETED)
        outcome.state = self._state
        self._record(failure_kind=PersistenceError.kind if self._reply_lost else None, outcome=outcome)
        self._log.info(
            "relay.stream.complete",
            fragments=outcome.fragments,
            chars=len(outcome.content),
            client_disconnected=outcome.client_disconnected,
            upstream_aborted=outcome.upstream_aborted,
        )
        return outcome

    async def run(self, conversation_id: str, owner_id: str, message: Optional[str], writer: DownstreamWriter) -> RelayOutcome:
        """Both phases in one call; pre-stream errors still raise."""
        await self.prepare(conversation_id, owner_id, message)
        return await self.stream(writer)

    async def _fail(self, writer: DownstreamWriter, outcome: RelayOutcome, failure: RelayError) -> None:
        self._log.error(
            "relay.stream.failed",
            kind=failure.kind,
            error=str(failure),
            fragments=outcome.fragments,
            before_first_token=not outcome.forwarded,
        )
        # Nothing sent yet: leave the error to the caller's status code
        if outcome.forwarded:
            await self._forward(writer, format_error_event(failure.message))
        writer.close()
        outcome.error = failure
        outcome.client_disconnected = self._client_gone
        self._transition(RelayState.FAILED)
        outcome.state = self._state
        self._record(failure_kind=failure.kind, outcome=outcome)

    async def _persist_reply(self, content: str) -> Optional[TurnRecord]:
        invocation = self._invocation
        if not content:
            self._log.warning("relay.empty_reply")
        try:
            turn = await self._store.append(invocation.conversation_id, "assistant", content)
        except PersistenceError as e:
            # The client already has the reply; only the transcript misses it
            self._reply_lost = True
            self._log.error(
                "relay.assistant_turn_lost",
                error=str(e),
                chars=len(content),
            )
            emit_audit_event(
                "assistant_turn.lost",
                conversation_id=invocation.conversation_id,
                user_turn_id=invocation.user_turn.id,
                chars=len(content),
                error=str(e),
            )
            return None
        self._log.debug("relay.assistant_turn_persisted", turn_id=turn.id, seq=turn.seq)
        return turn

    def _first_user_message(self) -> str:
        invocation = self._invocation
        for turn in invocation.prior_turns:
            if turn.role == "user":
                return turn.content
        return invocation.incoming_message

    async def _request_title(self) -> None:
        if self._title_worker is None:
            return
        invocation = self._invocation
        try:
            # Fresh read: must observe this session's own writes
            conversation = await self._store.get_conversation(
                invocation.conversation_id,
                invocation.conversation.owner_id,
            )
            if conversation is None or conversation.title != self._settings.default_title:
                return
            self._title_worker.submit(
                TitleJob(
                    conversation_id=conversation.id,
                    owner_id=conversation.owner_id,
                    first_message=self._first_user_message(),
                )
            )
        except Exception as e:
            self._log.warning("relay.title_request_failed", error=str(e))
