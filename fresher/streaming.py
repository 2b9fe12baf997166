"""
Fresher Stream Classifier — worker stdout to typed events

The worker prints one JSON object per line, tagged by "type":

  system | assistant | user | content_block_start | content_block_delta |
  content_block_stop | result | <anything else -> UnknownEvent>

Each line is parsed on its own. A bad line is logged and skipped; it never
ends the stream. Result events feed the ProcessResult summary, last one wins.

Printing is a side channel (StreamHandler) and cannot affect parsing.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, AsyncIterator, Callable, Iterable, Iterator, Literal, Union

from loguru import logger
from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from rich.console import Console
from rich.markup import escape

from fresher.errors import FresherError


class StreamParseError(FresherError):
    pass


def _tagged(known: set[str], fallback: str) -> Callable[[Any], str]:
    """Discriminator that routes unrecognized tags to the fallback variant."""
    def discriminate(value: Any) -> str:
        if isinstance(value, dict):
            tag = value.get("type")
        else:
            tag = getattr(value, "type", None)
        return tag if isinstance(tag, str) and tag in known else fallback
    return discriminate


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------

class TextBlock(_Payload):
    type: Literal["text"] = "text"
    text: str = ""


class ToolUseBlock(_Payload):
    type: Literal["tool_use"] = "tool_use"
    id: str = ""
    name: str = ""
    input: Any = None


class ToolResultBlock(_Payload):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = ""
    content: str = ""

    @field_validator("content", mode="before")
    @classmethod
    def _flatten(cls, value: Any) -> str:
        # Either a plain string or a list of {"type": "text", "text": ...} parts
        if value is None:
            return ""
        if isinstance(value, list):
            parts = []
            for part in value:
                if isinstance(part, dict) and isinstance(part.get("text"), str):
                    parts.append(part["text"])
                elif isinstance(part, str):
                    parts.append(part)
            return "\n".join(parts)
        return value if isinstance(value, str) else json.dumps(value)


class OtherBlock(_Payload):
    type: Any = None


ContentBlock = Annotated[
    Union[
        Annotated[TextBlock, Tag("text")],
        Annotated[ToolUseBlock, Tag("tool_use")],
        Annotated[ToolResultBlock, Tag("tool_result")],
        Annotated[OtherBlock, Tag("other")],
    ],
    Discriminator(_tagged({"text", "tool_use", "tool_result"}, "other")),
]


class TextDelta(_Payload):
    type: Literal["text_delta"] = "text_delta"
    text: str = ""


class InputJsonDelta(_Payload):
    type: Literal["input_json_delta"] = "input_json_delta"
    partial_json: str = ""


class OtherDelta(_Payload):
    type: Any = None


Delta = Annotated[
    Union[
        Annotated[TextDelta, Tag("text_delta")],
        Annotated[InputJsonDelta, Tag("input_json_delta")],
        Annotated[OtherDelta, Tag("other")],
    ],
    Discriminator(_tagged({"text_delta", "input_json_delta"}, "other")),
]


class Message(_Payload):
    content: list[ContentBlock] = Field(default_factory=list)

    @field_validator("content", mode="before")
    @classmethod
    def _wrap_plain_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [{"type": "text", "text": value}]
        return value


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class SystemEvent(_Payload):
    type: Literal["system"] = "system"
    subtype: str | None = None
    session_id: str | None = None


class AssistantEvent(_Payload):
    type: Literal["assistant"] = "assistant"
    message: Message | None = None


class UserEvent(_Payload):
    type: Literal["user"] = "user"
    message: Message | None = None


class ContentBlockStartEvent(_Payload):
    type: Literal["content_block_start"] = "content_block_start"
    index: int | None = None
    content_block: ContentBlock | None = None


class ContentBlockDeltaEvent(_Payload):
    type: Literal["content_block_delta"] = "content_block_delta"
    index: int | None = None
    delta: Delta | None = None


class ContentBlockStopEvent(_Payload):
    type: Literal["content_block_stop"] = "content_block_stop"
    index: int | None = None


class ResultEvent(_Payload):
    type: Literal["result"] = "result"
    subtype: str | None = None
    is_error: bool | None = None
    duration_ms: int | None = None
    duration_api_ms: int | None = None
    num_turns: int | None = None
    result: str | None = None
    cost_usd: float | None = None
    session_id: str | None = None


class UnknownEvent(_Payload):
    type: Any = None


_EVENT_TAGS = {
    "system", "assistant", "user", "content_block_start",
    "content_block_delta", "content_block_stop", "result",
}

StreamEvent = Annotated[
    Union[
        Annotated[SystemEvent, Tag("system")],
        Annotated[AssistantEvent, Tag("assistant")],
        Annotated[UserEvent, Tag("user")],
        Annotated[ContentBlockStartEvent, Tag("content_block_start")],
        Annotated[ContentBlockDeltaEvent, Tag("content_block_delta")],
        Annotated[ContentBlockStopEvent, Tag("content_block_stop")],
        Annotated[ResultEvent, Tag("result")],
        Annotated[UnknownEvent, Tag("unknown")],
    ],
    Discriminator(_tagged(_EVENT_TAGS, "unknown")),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(StreamEvent)


def parse_event(line: str) -> StreamEvent:
    """Parse one JSON line. Raises StreamParseError for anything unusable."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise StreamParseError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise StreamParseError(f"Expected a JSON object, got {type(data).__name__}")
    try:
        return _EVENT_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise StreamParseError(f"Malformed {data.get('type')!r} event: {e}") from e


def iter_events(lines: Iterable[str]) -> Iterator[StreamEvent]:
    """Synchronous classifier over already-split lines. Bad lines are skipped."""
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            yield parse_event(line)
        except StreamParseError as e:
            logger.debug(f"[STREAM] Skipping line: {e}")


# ---------------------------------------------------------------------------
# Run summary
# ---------------------------------------------------------------------------

class ProcessResult(BaseModel):
    exit_code: int = 0
    duration_ms: int | None = None
    cost_usd: float | None = None
    num_turns: int | None = None
    is_error: bool = False
    result_text: str | None = None

    def absorb(self, event: ResultEvent) -> None:
        self.duration_ms = event.duration_ms
        self.cost_usd = event.cost_usd
        self.num_turns = event.num_turns
        self.is_error = bool(event.is_error)
        self.result_text = event.result


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------

_TOOL_STYLES = {
    "Bash": ("command", "bold blue"),
    "Read": ("file_path", "bold green"),
    "Write": ("file_path", "bold yellow"),
    "Edit": ("file_path", "bold yellow"),
    "Glob": ("pattern", "bold cyan"),
    "Grep": ("pattern", "bold cyan"),
    "Task": ("description", "bold magenta"),
    "TodoWrite": (None, "bold cyan"),
}


def _preview(text: str, limit: int) -> str:
    return f"{text[:limit]}..." if len(text) > limit else text


class StreamHandler:
    """Prints a human-readable view of the worker's activity."""

    def __init__(
        self,
        console: Console | None = None,
        show_tool_calls: bool = True,
        show_tool_results: bool = False,
        show_text: bool = True,
        verbose: bool = False,
    ):
        self.console = console or Console()
        self.show_tool_calls = show_tool_calls
        self.show_tool_results = show_tool_results
        self.show_text = show_text
        self.verbose = verbose

    def handle_event(self, event: StreamEvent) -> None:
        try:
            self._render(event)
        except Exception as e:
            logger.warning(f"[STREAM] Failed to display {type(event).__name__}: {e}")

    def format_tool_call(self, name: str, tool_input: Any) -> str:
        key, style = _TOOL_STYLES.get(name, (None, "bold"))
        value = tool_input.get(key) if key and isinstance(tool_input, dict) else None
        if not isinstance(value, str):
            return f"[{style}]{escape(name)}[/]"
        if name == "Bash":
            value = _preview(value, 100)
        return f"[{style}]{escape(name)}:[/] {escape(value)}"

    def _render(self, event: StreamEvent) -> None:
        c = self.console

        if isinstance(event, SystemEvent):
            if self.verbose and event.subtype:
                c.print(f"[dim]\\[system] {escape(event.subtype)}[/]")

        elif isinstance(event, AssistantEvent):
            for block in event.message.content if event.message else []:
                if isinstance(block, TextBlock) and self.show_text and block.text:
                    c.print(block.text, markup=False, highlight=False)
                elif isinstance(block, ToolUseBlock) and self.show_tool_calls:
                    c.print(f"  [dim]→[/] {self.format_tool_call(block.name, block.input)}")

        elif isinstance(event, UserEvent):
            if not self.show_tool_results:
                return
            for block in event.message.content if event.message else []:
                if isinstance(block, ToolResultBlock):
                    c.print(f"  [dim]→ {escape(_preview(block.content, 200))}[/]")

        elif isinstance(event, ContentBlockStartEvent):
            if self.verbose and isinstance(event.content_block, ToolUseBlock):
                c.print(f"  [dim]starting:[/] [yellow]{escape(event.content_block.name)}[/]")

        elif isinstance(event, ResultEvent):
            if self.show_text and event.result:
                c.print()
                c.print(event.result, markup=False, highlight=False)
            if self.verbose:
                if event.duration_ms is not None:
                    c.print(f"\n[dim]Duration:[/] [cyan]{event.duration_ms}ms[/]")
                if event.cost_usd is not None:
                    c.print(f"[dim]Cost:[/] ${event.cost_usd:.4f}")
                if event.num_turns is not None:
                    c.print(f"[dim]Turns:[/] {event.num_turns}")

        elif isinstance(event, UnknownEvent):
            if self.verbose:
                c.print("[dim]\\[unknown event][/]")


# ---------------------------------------------------------------------------
# Async consumption
# ---------------------------------------------------------------------------

# A single line (large tool results) can be far above asyncio's 64 KiB readline limit
STREAM_LINE_LIMIT = 16 * 1024 * 1024
READ_CHUNK = 64 * 1024


async def iter_lines(reader: Any, line_limit: int = STREAM_LINE_LIMIT) -> AsyncIterator[bytes | None]:
    """
    Split a byte reader (anything with an awaitable read(n)) into lines.

    Lines are framed here rather than with readline(), so an over-long line
    never raises: it is dropped in full and yielded as None.
    """
    buf = bytearray()
    overflow = False

    while True:
        chunk = await reader.read(READ_CHUNK)
        if not chunk:
            break
        buf += chunk

        end = buf.find(b"\n")
        while end >= 0:
            line = bytes(buf[:end])
            del buf[:end + 1]
            if overflow or len(line) > line_limit:
                overflow = False
                yield None
            else:
                yield line
            end = buf.find(b"\n")

        # Remainder of a line that is already too long: keep discarding until its newline
        if len(buf) > line_limit:
            overflow = True
            buf.clear()

    if overflow:
        yield None
    elif buf:
        yield bytes(buf)


async def process_stream(
    reader: Any,
    handler: StreamHandler | None = None,
    line_limit: int = STREAM_LINE_LIMIT,
) -> ProcessResult:
    """
    Drain a byte reader until EOF.

    The exit code is left at 0; the caller fills it in once the process
    has been waited on.
    """
    result = ProcessResult()
    parsed = skipped = 0

    async for raw in iter_lines(reader, line_limit):
        if raw is None:
            skipped += 1
            logger.debug(f"[STREAM] Dropping line longer than {line_limit} bytes")
            continue
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            continue

        try:
            event = parse_event(line)
        except StreamParseError as e:
            skipped += 1
            logger.debug(f"[STREAM] Skipping line: {e}")
            continue

        parsed += 1
        if handler is not None:
            handler.handle_event(event)
        if isinstance(event, ResultEvent):
            result.absorb(event)

    if skipped:
        logger.warning(f"[STREAM] Skipped {skipped} malformed line(s), parsed {parsed}")
    return result
