import json

import pytest

from chat_relay.services.downstream import (
    BufferedDownstreamWriter,
    DownstreamClosedError,
    QueueDownstreamWriter,
    format_done_event,
    format_error_event,
    format_token_event,
)


def test_event_formats():
    assert format_token_event("Hi") == 'data: {"token": "Hi"}\n\n'
    assert format_done_event() == "data: [DONE]\n\n"
    assert format_error_event("Stream error") == 'data: {"error": "Stream error"}\n\n'


def test_token_event_escapes_json():
    event = format_token_event('say "hi"\n')
    assert event.startswith("data: ") and event.endswith("\n\n")
    assert json.loads(event[len("data: "):-2]) == {"token": 'say "hi"\n'}


@pytest.mark.asyncio
async def test_queue_writer_delivers_in_order_until_closed():
    writer = QueueDownstreamWriter()
    await writer.write("a")
    await writer.write("b")
    writer.close()

    assert [chunk async for chunk in writer] == ["a", "b"]
    assert writer.closed


@pytest.mark.asyncio
async def test_queue_writer_next_chunk_then_iterate_rest():
    writer = QueueDownstreamWriter()
    await writer.write("first")
    await writer.write("second")
    writer.close()

    assert await writer.next_chunk() == "first"
    assert [chunk async for chunk in writer] == ["second"]
    assert await writer.next_chunk() is None


@pytest.mark.asyncio
async def test_queue_writer_rejects_writes_after_close():
    writer = QueueDownstreamWriter()
    writer.close()
    writer.close()
    with pytest.raises(DownstreamClosedError):
        await writer.write("late")


@pytest.mark.asyncio
async def test_buffered_writer_simulates_disconnect():
    writer = BufferedDownstreamWriter(fail_after=2)
    await writer.write(format_token_event("a"))
    await writer.write(format_token_event("b"))
    with pytest.raises(DownstreamClosedError):
        await writer.write(format_token_event("c"))
    assert writer.closed
    assert writer.events() == ['{"token": "a"}', '{"token": "b"}']
