import asyncio

import pytest

from chat_relay.errors import PersistenceError, UpstreamTimeoutError
from chat_relay.services.title_generator import (
    FALLBACK_TITLE,
    MAX_TITLE_LENGTH,
    TitleGenerator,
    TitleJob,
    TitleWorker,
    _clean_title,
    _create_fallback_title,
)
from chat_relay.services.transcript_store import DEFAULT_TITLE, InMemoryTranscriptStore


@pytest.mark.parametrize(
    "raw, expected",
    [
        ('"Gotham Crime Wave"', "Gotham Crime Wave"),
        ("'Batcave Setup'", "Batcave Setup"),
        ("  Joker   Origins \n", "Joker Origins"),
        ("Title: Arkham Asylum", "Arkham Asylum"),
        ("x" * 80, "x" * MAX_TITLE_LENGTH),
        ('""', ""),
    ],
)
def test_clean_title(raw, expected):
    assert _clean_title(raw) == expected


def test_fallback_title():
    assert _create_fallback_title("How do I implement a binary search tree in Python?") == "How do I implement a"
    assert _create_fallback_title("") == FALLBACK_TITLE
    assert _create_fallback_title("   ") == FALLBACK_TITLE
    assert len(_create_fallback_title("a" * 200)) == MAX_TITLE_LENGTH


@pytest.mark.asyncio
async def test_generate_uses_title_model_and_prompt(upstream):
    upstream.title = '"Riddler Identity"'
    generator = TitleGenerator(upstream, "title-model", timeout=3.0)

    title = await generator.generate("Who is the Riddler?")

    assert title == "Riddler Identity"
    call = upstream.complete_calls[0]
    assert call["model"] == "title-model"
    assert 'Message: "Who is the Riddler?"' in call["messages"][0]["content"]


@pytest.mark.asyncio
async def test_generate_returns_none_on_failure_or_empty(upstream):
    generator = TitleGenerator(upstream, "title-model")

    assert await generator.generate("   ") is None
    assert upstream.complete_calls == []

    upstream.title = '  ""  '
    assert await generator.generate("hello") is None

    upstream.complete_error = UpstreamTimeoutError()
    assert await generator.generate("hello") is None
    assert await generator.generate_with_fallback("hello there") == "hello there"


@pytest.mark.asyncio
async def test_worker_replaces_placeholder(upstream):
    store = InMemoryTranscriptStore()
    conv = await store.create_conversation("user-1")
    worker = TitleWorker(store, TitleGenerator(upstream, "title-model"), DEFAULT_TITLE)

    worker.submit(TitleJob(conv.id, "user-1", "first message"))
    await worker.join()
    await worker.stop()

    assert (await store.get_conversation(conv.id, "user-1")).title == "Generated Title"
    assert not worker.running


@pytest.mark.asyncio
async def test_worker_leaves_named_conversation_alone(upstream):
    store = InMemoryTranscriptStore()
    conv = await store.create_conversation("user-1", title="Chosen By User")
    worker = TitleWorker(store, TitleGenerator(upstream, "title-model"), DEFAULT_TITLE)

    worker.submit(TitleJob(conv.id, "user-1", "first message"))
    await worker.join()
    await worker.stop()

    assert (await store.get_conversation(conv.id, "user-1")).title == "Chosen By User"
    assert upstream.complete_calls == []


@pytest.mark.asyncio
async def test_worker_does_not_overwrite_title_set_while_generating(upstream):
    store = InMemoryTranscriptStore()
    conv = await store.create_conversation("user-1")

    class SlowGenerator(TitleGenerator):
        async def generate(self, first_message):
            await store.update_title(conv.id, "Renamed Meanwhile")
            return "Too Late"

    worker = TitleWorker(store, SlowGenerator(upstream, "title-model"), DEFAULT_TITLE)
    worker.submit(TitleJob(conv.id, "user-1", "first message"))
    await worker.join()
    await worker.stop()

    assert (await store.get_conversation(conv.id, "user-1")).title == "Renamed Meanwhile"


@pytest.mark.asyncio
async def test_worker_survives_store_failure(upstream):
    class FlakyStore(InMemoryTranscriptStore):
        failures = 1

        async def update_title(self, conversation_id, title):
            if self.failures:
                self.failures -= 1
                raise PersistenceError(detail="locked")
            await super().update_title(conversation_id, title)

    store = FlakyStore()
    first = await store.create_conversation("user-1")
    second = await store.create_conversation("user-1")
    worker = TitleWorker(store, TitleGenerator(upstream, "title-model"), DEFAULT_TITLE)

    worker.submit(TitleJob(first.id, "user-1", "one"))
    worker.submit(TitleJob(second.id, "user-1", "two"))
    await asyncio.wait_for(worker.join(), timeout=5)
    await worker.stop()

    assert (await store.get_conversation(first.id, "user-1")).title == DEFAULT_TITLE
    assert (await store.get_conversation(second.id, "user-1")).title == "Generated Title"
