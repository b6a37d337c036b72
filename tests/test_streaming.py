import asyncio
import io
import logging

import orjson
import pytest

from convstore import FunctionCall, TextContent
from errors import ApiError
from streaming import DecoderState, StreamDecoder, decode_stream


def _chunk(delta=None, finish_reason=None, **extra):
    choice = {"index": 0, "delta": delta or {}, "finish_reason": finish_reason}
    return "data: " + orjson.dumps({"choices": [choice], **extra}).decode()


def _feed_all(decoder, lines):
    return [f for f in (decoder.feed(line) for line in lines) if f is not None]


async def _aiter(lines):
    for line in lines:
        yield line


def test_content_stream():
    decoder = StreamDecoder()
    lines = [
        _chunk({"role": "assistant", "content": ""}),
        _chunk({"content": "Hel"}),
        "",
        _chunk({"content": "lo"}),
        _chunk({}, finish_reason="stop"),
        "data: [DONE]",
    ]
    assert _feed_all(decoder, lines) == ["Hel", "lo"]
    assert decoder.state is DecoderState.TERMINATED
    reply = decoder.finish()
    assert reply.role == "assistant"
    assert reply.body == TextContent("Hello")
    assert not reply.is_function_call


def test_function_call_stream():
    decoder = StreamDecoder()
    lines = [
        _chunk({"role": "assistant", "content": None, "function_call": {"name": "foo", "arguments": ""}}),
        _chunk({"function_call": {"arguments": '{"x":'}}),
        _chunk({"function_call": {"arguments": "1}"}}),
        _chunk({}, finish_reason="function_call"),
    ]
    fragments = _feed_all(decoder, lines)
    assert fragments == ['{"x":', "1}"]
    reply = decoder.finish()
    assert reply.body == FunctionCall("foo", {"x": 1})
    assert reply.is_function_call


def test_function_call_mode_never_reverts():
    decoder = StreamDecoder()
    decoder.feed(_chunk({"function_call": {"name": "foo"}}))
    assert decoder.state is DecoderState.DECODING_FUNCTION_CALL
    # no function_call field: still an argument fragment
    assert decoder.feed(_chunk({"content": "{}"})) == "{}"
    assert decoder.state is DecoderState.DECODING_FUNCTION_CALL
    assert decoder.finish().body == FunctionCall("foo", {})


def test_content_mode_ignores_late_function_name(caplog):
    decoder = StreamDecoder()
    decoder.feed(_chunk({"content": "hi"}))
    with caplog.at_level(logging.WARNING):
        decoder.feed(_chunk({"function_call": {"name": "late", "arguments": "{}"}}))
    assert decoder.state is DecoderState.DECODING_CONTENT
    assert decoder.function_name is None
    assert decoder.finish().body == TextContent("hi")
    assert "late" in caplog.text


def test_role_only_chunk_keeps_awaiting():
    decoder = StreamDecoder()
    assert decoder.feed(_chunk({"role": "assistant"})) is None
    assert decoder.state is DecoderState.AWAITING_FIRST_DELTA


def test_latest_role_wins():
    decoder = StreamDecoder()
    decoder.feed(_chunk({"role": "assistant", "content": "a"}))
    decoder.feed(_chunk({"role": "system", "content": "b"}))
    assert decoder.finish().role == "system"


def test_malformed_frame_is_skipped(caplog):
    decoder = StreamDecoder()
    lines = [
        _chunk({"content": "foo"}),
        "data: {this is not json",
        _chunk({"content": "bar"}),
        _chunk({}, finish_reason="stop"),
    ]
    with caplog.at_level(logging.WARNING):
        fragments = _feed_all(decoder, lines)
    assert fragments == ["foo", "bar"]
    assert decoder.finish().body == TextContent("foobar")
    assert decoder.malformed == 1
    assert "Failed to parse JSON stream chunk" in caplog.text


def test_prefix_is_optional_and_comments_skipped():
    decoder = StreamDecoder()
    raw = orjson.dumps({"choices": [{"delta": {"content": "x"}}]}).decode()
    assert decoder.feed(raw) == "x"
    assert decoder.feed(": keep-alive") is None
    assert decoder.feed("event: message") is None
    assert decoder.malformed == 0


def test_unexpected_finish_reason_is_fatal():
    decoder = StreamDecoder()
    decoder.feed(_chunk({"content": "partial"}))
    with pytest.raises(ApiError) as excinfo:
        decoder.feed(_chunk({}, finish_reason="content_filter"))
    assert excinfo.value.exit_code == 10
    assert "content_filter" in excinfo.value.message


def test_lines_after_termination_are_ignored():
    decoder = StreamDecoder()
    decoder.feed(_chunk({"content": "a"}, finish_reason="stop"))
    assert decoder.feed(_chunk({"content": "b"})) is None
    assert decoder.finish().body == TextContent("a")


def test_invalid_function_arguments_kept_raw(caplog):
    decoder = StreamDecoder()
    decoder.feed(_chunk({"function_call": {"name": "f", "arguments": "{oops"}}))
    with caplog.at_level(logging.WARNING):
        reply = decoder.finish()
    assert reply.body == FunctionCall("f", "{oops")
    assert "not valid JSON" in caplog.text


def test_usage_is_recorded():
    decoder = StreamDecoder()
    decoder.feed(_chunk({"content": "a"}, finish_reason="stop", usage={"total_tokens": 17}))
    assert decoder.finish().total_tokens == 17


def test_chunk_without_choices_is_harmless():
    decoder = StreamDecoder()
    assert decoder.feed('data: {"choices": []}') is None
    assert decoder.feed('data: {"id": "x"}') is None
    assert decoder.malformed == 0


def test_decode_stream_echoes_fragments_in_order():
    out = io.StringIO()
    lines = [
        _chunk({"content": "one "}),
        "garbage",
        _chunk({"content": "two"}),
        _chunk({}, finish_reason="stop"),
        _chunk({"content": "never"}),
    ]
    reply = asyncio.run(decode_stream(_aiter(lines), out))
    assert out.getvalue() == "one two\n"
    assert reply.body == TextContent("one two")


def test_decode_stream_without_finish_reason():
    out = io.StringIO()
    reply = asyncio.run(decode_stream(_aiter([_chunk({"content": "cut"})]), out))
    assert reply.body == TextContent("cut")
    assert out.getvalue() == "cut\n"


def test_trailing_usage_chunk_is_counted_but_text_is_frozen():
    decoder = StreamDecoder()
    decoder.feed(_chunk({"content": "hi"}))
    decoder.feed(_chunk({}, finish_reason="stop"))
    assert decoder.feed(_chunk({"content": "late"})) is None
    assert decoder.feed('data: {"choices": [], "usage": {"total_tokens": 7}}') is None
    decoder.feed("data: [DONE]")
    assert decoder.done
    assert decoder.feed('data: {"choices": [], "usage": {"total_tokens": 99}}') is None
    reply = decoder.finish()
    assert reply.body == TextContent("hi")
    assert reply.total_tokens == 7


def test_decode_stream_reads_usage_after_finish_reason():
    out = io.StringIO()
    lines = [
        _chunk({"content": "hi"}),
        _chunk({}, finish_reason="stop"),
        'data: {"choices": [], "usage": {"total_tokens": 7}}',
        "data: [DONE]",
    ]
    reply = asyncio.run(decode_stream(_aiter(lines), out))
    assert out.getvalue() == "hi\n"
    assert reply.total_tokens == 7
