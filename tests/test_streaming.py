import asyncio
import io
import json

import pytest
from rich.console import Console

from fresher.streaming import (
    AssistantEvent,
    ContentBlockDeltaEvent,
    ContentBlockStartEvent,
    ContentBlockStopEvent,
    InputJsonDelta,
    OtherBlock,
    OtherDelta,
    ResultEvent,
    StreamHandler,
    StreamParseError,
    SystemEvent,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UnknownEvent,
    UserEvent,
    iter_events,
    iter_lines,
    parse_event,
    process_stream,
)


def _line(obj) -> str:
    return json.dumps(obj)


class FakeReader:
    """Mimics asyncio.StreamReader.read over a fixed byte buffer."""

    def __init__(self, data: bytes):
        self._buf = io.BytesIO(data)

    async def read(self, n: int = -1) -> bytes:
        return self._buf.read(n)


class ChunkedReader:
    """Hands out pre-cut chunks, one per read."""

    def __init__(self, chunks: list[bytes]):
        self._chunks = list(chunks)

    async def read(self, n: int = -1) -> bytes:
        return self._chunks.pop(0) if self._chunks else b""


def _recording_handler(**kwargs) -> tuple[StreamHandler, io.StringIO]:
    out = io.StringIO()
    console = Console(file=out, width=500, color_system=None)
    return StreamHandler(console=console, **kwargs), out


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def test_parse_each_event_type():
    assert isinstance(parse_event(_line({"type": "system", "subtype": "init"})), SystemEvent)
    assert isinstance(parse_event(_line({"type": "content_block_stop", "index": 0})), ContentBlockStopEvent)

    start = parse_event(_line({
        "type": "content_block_start", "index": 1,
        "content_block": {"type": "tool_use", "id": "t1", "name": "Bash", "input": {}},
    }))
    assert isinstance(start, ContentBlockStartEvent)
    assert isinstance(start.content_block, ToolUseBlock)

    delta = parse_event(_line({
        "type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": "{\"a\""},
    }))
    assert isinstance(delta, ContentBlockDeltaEvent)
    assert isinstance(delta.delta, InputJsonDelta)

    odd_delta = parse_event(_line({"type": "content_block_delta", "delta": {"type": "thinking_delta"}}))
    assert isinstance(odd_delta.delta, OtherDelta)


def test_assistant_content_blocks():
    event = parse_event(_line({
        "type": "assistant",
        "message": {"content": [
            {"type": "text", "text": "hello"},
            {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "a.py"}},
            {"type": "thinking", "thinking": "hmm"},
        ]},
    }))
    assert isinstance(event, AssistantEvent)
    text, tool, other = event.message.content
    assert isinstance(text, TextBlock) and text.text == "hello"
    assert isinstance(tool, ToolUseBlock) and tool.input == {"file_path": "a.py"}
    assert isinstance(other, OtherBlock)


def test_tool_result_content_normalized():
    event = parse_event(_line({
        "type": "user",
        "message": {"content": [
            {"type": "tool_result", "tool_use_id": "t1", "content": "plain"},
            {"type": "tool_result", "tool_use_id": "t2",
             "content": [{"type": "text", "text": "part 1"}, {"type": "text", "text": "part 2"}]},
        ]},
    }))
    assert isinstance(event, UserEvent)
    first, second = event.message.content
    assert isinstance(first, ToolResultBlock) and first.content == "plain"
    assert second.content == "part 1\npart 2"


def test_unknown_type_is_not_an_error():
    event = parse_event(_line({"type": "rate_limit", "retry_after": 3}))
    assert isinstance(event, UnknownEvent)
    assert event.type == "rate_limit"

    assert isinstance(parse_event(_line({"no_type": True})), UnknownEvent)


def test_extra_fields_preserved():
    event = parse_event(_line({"type": "result", "result": "ok", "total_cost_usd": 0.5}))
    assert event.model_dump()["total_cost_usd"] == 0.5


@pytest.mark.parametrize("bad", ["not json", "[1, 2]", '"string"', "{"])
def test_parse_event_rejects_malformed(bad):
    with pytest.raises(StreamParseError):
        parse_event(bad)


def test_reparse_is_idempotent_and_ordered():
    line = _line({"type": "assistant", "message": {"content": [{"type": "text", "text": "x"}]}})
    events = list(iter_events([line, line, "garbage", "", _line({"type": "result"})]))

    assert len(events) == 3
    assert events[0] == events[1]
    assert isinstance(events[2], ResultEvent)


# ---------------------------------------------------------------------------
# process_stream
# ---------------------------------------------------------------------------

def test_process_stream_summary_last_result_wins():
    data = "\n".join([
        _line({"type": "system", "subtype": "init"}),
        "",
        "{broken json",
        _line({"type": "result", "duration_ms": 10, "cost_usd": 0.1, "num_turns": 1,
               "is_error": True, "result": "first"}),
        _line({"type": "mystery"}),
        _line({"type": "result", "duration_ms": 2500, "cost_usd": 0.25, "num_turns": 7,
               "is_error": False, "result": "done"}),
    ]).encode()

    result = asyncio.run(process_stream(FakeReader(data)))

    assert result.exit_code == 0
    assert result.duration_ms == 2500
    assert result.cost_usd == 0.25
    assert result.num_turns == 7
    assert result.is_error is False
    assert result.result_text == "done"


def test_process_stream_without_result():
    result = asyncio.run(process_stream(FakeReader(b"\n\n")))
    assert result.duration_ms is None
    assert result.result_text is None


def test_handler_failure_does_not_affect_parsing():
    class ExplodingConsole(Console):
        def print(self, *args, **kwargs):
            raise RuntimeError("terminal gone")

    handler = StreamHandler(console=ExplodingConsole(file=io.StringIO()))
    data = "\n".join([
        _line({"type": "assistant", "message": {"content": [{"type": "text", "text": "hi"}]}}),
        _line({"type": "result", "num_turns": 3}),
    ]).encode()

    result = asyncio.run(process_stream(FakeReader(data), handler))
    assert result.num_turns == 3


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------

def test_handler_prints_text_and_tool_calls():
    handler, out = _recording_handler()
    handler.handle_event(parse_event(_line({
        "type": "assistant",
        "message": {"content": [
            {"type": "text", "text": "Working on [it]"},
            {"type": "tool_use", "id": "1", "name": "Bash", "input": {"command": "x" * 150}},
            {"type": "tool_use", "id": "2", "name": "Grep", "input": {"pattern": "TODO"}},
            {"type": "tool_use", "id": "3", "name": "TodoWrite", "input": {"todos": []}},
        ]},
    })))

    printed = out.getvalue()
    assert "Working on [it]" in printed
    assert "Bash: " + "x" * 100 + "..." in printed
    assert "Grep: TODO" in printed
    assert "TodoWrite" in printed


def test_handler_hides_tool_results_by_default():
    event = parse_event(_line({
        "type": "user",
        "message": {"content": [{"type": "tool_result", "tool_use_id": "1", "content": "y" * 300}]},
    }))

    handler, out = _recording_handler()
    handler.handle_event(event)
    assert out.getvalue() == ""

    handler, out = _recording_handler(show_tool_results=True)
    handler.handle_event(event)
    assert "y" * 200 + "..." in out.getvalue()
    assert "y" * 201 not in out.getvalue()


def test_handler_verbose_result_metrics():
    handler, out = _recording_handler(verbose=True)
    handler.handle_event(parse_event(_line({
        "type": "result", "result": "All done", "duration_ms": 1200, "cost_usd": 0.01234, "num_turns": 4,
    })))
    printed = out.getvalue()
    assert "All done" in printed
    assert "1200ms" in printed
    assert "$0.0123" in printed
    assert "Turns: 4" in printed


# ---------------------------------------------------------------------------
# Line framing
# ---------------------------------------------------------------------------

def test_overlong_line_is_skipped_and_stream_continues():
    long_line = _line({"type": "assistant", "message": {"content": [{"type": "text", "text": "z" * 200}]}})
    handler, out = _recording_handler()

    async def run():
        reader = asyncio.StreamReader(limit=64)
        reader.feed_data(f"{long_line}\n{_line({'type': 'result', 'num_turns': 7})}\n".encode())
        reader.feed_eof()
        return await process_stream(reader, handler, line_limit=64)

    result = asyncio.run(run())

    assert result.num_turns == 7
    assert "z" * 200 not in out.getvalue()


def test_reader_limit_does_not_apply():
    long_line = _line({"type": "assistant", "message": {"content": [{"type": "text", "text": "z" * 200}]}})
    handler, out = _recording_handler()

    async def run():
        reader = asyncio.StreamReader(limit=64)
        reader.feed_data(f"{long_line}\n{_line({'type': 'result', 'num_turns': 7})}".encode())
        reader.feed_eof()
        return await process_stream(reader, handler)

    result = asyncio.run(run())

    assert result.num_turns == 7
    assert "z" * 200 in out.getvalue()


def test_iter_lines_discards_overflow_across_chunks():
    reader = ChunkedReader([b"ab", b"cdefgh", b"ij\nok\n", b"tail"])

    async def collect():
        return [line async for line in iter_lines(reader, line_limit=4)]

    assert asyncio.run(collect()) == [None, b"ok", b"tail"]


def test_iter_lines_overflow_at_eof():
    reader = ChunkedReader([b"ok\n", b"0123456789"])

    async def collect():
        return [line async for line in iter_lines(reader, line_limit=4)]

    assert asyncio.run(collect()) == [b"ok", None]
