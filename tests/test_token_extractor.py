import pytest

from chat_relay.services.token_extractor import extract_token

from fixtures.fake_upstream import openai_chunk


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({"token": "Hi"}, "Hi"),
        ({"type": "token", "content": "Hi"}, "Hi"),
        (openai_chunk("Hi"), "Hi"),
        ({"choices": [{"delta": {"content": "a"}}, {"delta": {"content": "b"}}]}, "a"),
    ],
)
def test_recognised_shapes(payload, expected):
    assert extract_token(payload) == expected


@pytest.mark.parametrize(
    "payload",
    [
        None,
        "Hi",
        ["Hi"],
        42,
        {},
        {"token": ""},
        {"token": None},
        {"token": 5},
        {"type": "status", "content": "thinking"},
        {"type": "token"},
        {"choices": []},
        {"choices": "nope"},
        {"choices": [None]},
        {"choices": [{"delta": {"role": "assistant"}}]},
        openai_chunk(None, finish_reason="stop"),
        {"choices": [{"delta": {"content": ""}}]},
        {"choices": [{"delta": "text"}]},
        {"usage": {"total_tokens": 12}},
    ],
)
def test_metadata_and_malformed_records_yield_nothing(payload):
    assert extract_token(payload) is None


def test_whitespace_fragment_is_kept():
    assert extract_token({"token": " "}) == " "
    assert extract_token(openai_chunk("\n")) == "\n"
