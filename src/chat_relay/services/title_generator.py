"""Auto-generate conversation titles from the first user message.

Titles are produced off the request path: a relay session that just
stored an assistant turn for a conversation still carrying the placeholder
title submits a ``TitleJob`` to the ``TitleWorker``. The worker drains its
queue in a background task, asks the upstream provider for a short title
and writes it to the transcript store.

Nothing in here may affect the response the client already received:
every failure is logged and swallowed, and an unusable model answer falls
back to the first words of the message.

Last Grunted: 10/18/2026 10:00:00 AM UTC
"""
import asyncio
import structlog
from dataclasses import dataclass
from typing import Any, Optional

from chat_relay.services.transcript_store import TranscriptStore
from chat_relay.services.upstream import CompletionClient

logger = structlog.get_logger(__name__)

# Title generation prompt template
TITLE_PROMPT_TEMPLATE = """Generate a short, descriptive title (max 5 words) for a conversation that starts with this message:

Message: "{message}"

Title:"""

# Maximum length for message preview in prompt
MAX_MESSAGE_PREVIEW_LENGTH: int = 200

# Maximum length for generated title
MAX_TITLE_LENGTH: int = 50

FALLBACK_TITLE: str = "New Chat"


def _create_fallback_title(message: str) -> str:
    """
    Create a fallback title from the first few words of a message.

    Args:
        message: The user message

    Returns:
        str: Fallback title (first 5 words, max 50 chars)

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    if not message:
        return FALLBACK_TITLE

    words = message.split()[:5]
    fallback = " ".join(words)[:MAX_TITLE_LENGTH]
    return fallback if fallback.strip() else FALLBACK_TITLE


def _clean_title(title: str) -> str:
    """
    Clean and normalize a generated title.

    Removes quotes, excessive whitespace, and truncates to max length.

    Args:
        title: Raw title from LLM

    Returns:
        str: Cleaned title

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    title = " ".join(title.split())

    # Remove surrounding quotes
    if (title.startswith('"') and title.endswith('"')) or \
       (title.startswith("'") and title.endswith("'")):
        title = title[1:-1]

    title = title.strip('"\' ')

    # Models sometimes echo the label from the prompt
    if title.lower().startswith("title:"):
        title = title[len("title:"):].strip()

    return title[:MAX_TITLE_LENGTH].rstrip()


class TitleGenerator:
    """
    Ask the upstream provider for a concise conversation title.

    Args:
        client: Provider client (same one the relay uses)
        model: Model for title generation (cheap and fast)
        timeout: Request timeout in seconds

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """

    def __init__(self, client: CompletionClient, model: str, timeout: float = 10.0):
        self._client = client
        self._model = model
        self._timeout = timeout

    async def generate(self, first_message: str) -> Optional[str]:
        """
        Generate a title, or None if the provider fails or answers nothing usable.

        Example:
            >>> await generator.generate("How do I implement a binary search tree in Python?")
            'Binary Search Tree Implementation'
        """
        if not first_message or not first_message.strip():
            return None

        prompt = TITLE_PROMPT_TEMPLATE.format(message=first_message[:MAX_MESSAGE_PREVIEW_LENGTH])
        try:
            raw_title = await self._client.complete(
                self._model,
                [{"role": "user", "content": prompt}],
                max_tokens=20,
                temperature=0.3,
                timeout=self._timeout,
            )
        except Exception as e:
            logger.warning(
                "title_generation.error",
                error=str(e),
                error_type=type(e).__name__,
                model=self._model,
            )
            return None

        title = _clean_title(raw_title or "")
        if not title:
            logger.warning("title_generation.empty_response", model=self._model)
            return None

        logger.debug("title_generation.success", model=self._model, title=title)
        return title

    async def generate_with_fallback(self, first_message: str) -> str:
        """Generate a title, falling back to the first words of the message."""
        title = await self.generate(first_message)
        if title:
            return title
        return _create_fallback_title(first_message)


@dataclass(frozen=True)
class TitleJob:
    conversation_id: str
    owner_id: str
    first_message: str


class TitleWorker:
    """
    Background consumer of auto-title jobs.

    ``submit()`` only enqueues, so the relay's critical path never waits on
    title generation. Each job re-reads the conversation and only replaces
    the title while it still equals the placeholder.

    Example:
        worker = TitleWorker(store, TitleGenerator(client, "gpt-4o-mini"), "New Mission")
        worker.start()
        worker.submit(TitleJob(conversation_id, owner_id, "Who is the Riddler?"))
        ...
        await worker.stop()

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """

    def __init__(self, store: TranscriptStore, generator: TitleGenerator, placeholder: str):
        self._store = store
        self._generator = generator
        self._placeholder = placeholder
        self._queue: "asyncio.Queue[Optional[TitleJob]]" = asyncio.Queue()
        self._task: Optional["asyncio.Task[Any]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="title-worker")
        logger.info("title_worker.started")

    def submit(self, job: TitleJob) -> None:
        """Enqueue a job. Never raises and never blocks."""
        try:
            if not self.running:
                self.start()
            self._queue.put_nowait(job)
        except Exception as e:
            logger.warning(
                "title_worker.submit_failed",
                conversation_id=job.conversation_id,
                error=str(e),
            )

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Finish queued jobs, then stop the consumer task."""
        if not self.running:
            return
        self._queue.put_nowait(None)
        await self._task
        self._task = None
        logger.info("title_worker.stopped")

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job is None:
                    return
                await self._process(job)
            except Exception as e:
                logger.warning(
                    "title_worker.failed",
                    conversation_id=job.conversation_id if job else None,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self._queue.task_done()

    async def _process(self, job: TitleJob) -> None:
        conversation = await self._store.get_conversation(job.conversation_id, job.owner_id)
        if conversation is None or conversation.title != self._placeholder:
            logger.debug("title_worker.skipped", conversation_id=job.conversation_id)
            return

        title = await self._generator.generate_with_fallback(job.first_message)

        # Another session may have titled the conversation meanwhile
        conversation = await self._store.get_conversation(job.conversation_id, job.owner_id)
        if conversation is None or conversation.title != self._placeholder:
            return

        await self._store.update_title(job.conversation_id, title)
        logger.info("title_worker.titled", conversation_id=job.conversation_id, title=title)
