"""Incremental parsing of model API responses into span records.

``StreamAccumulator`` observes a copy of a server-sent-event byte stream
and builds a ``SpanRecord`` from it. It never touches the bytes that go to
the real consumer; a line that fails to parse is skipped and the capture
degrades instead of failing.
"""

import codecs
import json
import logging
from typing import Any

from .models import SpanRecord, ToolCall, ToolDefinition, ToolResult

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 500
CONTENT_CAP = 5000

# Text the host tool injects into user turns; not something the user typed
_INJECTED_PREFIXES = (
    "<system-reminder>",
    "<system>",
    "<policy_spec>",
    "<context>",
    "<command-message>",
    "Files modified by user:",
    "Files modified by other",
)
_INJECTED_EXACT = {"quota", "foo", "#"}


class StreamAccumulator:
    """Accumulates one streamed response.

    Feed raw chunks in arrival order with ``feed``; call ``finalize`` once
    the stream has ended. Chunk boundaries never affect the result.
    """

    def __init__(self, preview_chars: int = PREVIEW_CHARS):
        self.preview_chars = preview_chars
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._thinking: list[str] = []
        self._response: list[str] = []
        self._tools: dict[int, ToolCall] = {}  # content block index -> call
        self._fragments: dict[int, list[str]] = {}
        self._current_tool: int | None = None
        self.model: str | None = None
        self.request_id: str | None = None
        self.stop_reason: str | None = None
        self.input_tokens = 0
        self.output_tokens = 0
        self.cache_read = 0
        self.cache_write = 0
        self.skipped_lines = 0
        self._record: SpanRecord | None = None

    def feed(self, chunk: bytes) -> None:
        if self._record is not None:
            logger.debug("Ignoring data fed after finalize")
            return
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._process_line(line)

    def _process_line(self, line: str) -> None:
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            return
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            return
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            self.skipped_lines += 1
            logger.debug(f"Skipping unparsable event line: {payload[:80]!r}")
            return
        if isinstance(event, dict):
            try:
                self._process_event(event)
            except (AttributeError, TypeError, ValueError) as e:
                self.skipped_lines += 1
                logger.debug(f"Skipping malformed {event.get('type')} event: {e}")

    def _process_event(self, event: dict[str, Any]) -> None:
        kind = event.get("type")

        if kind == "message_start":
            message = event.get("message") or {}
            self.request_id = message.get("id")
            self.model = message.get("model")
            usage = message.get("usage") or {}
            self.input_tokens = usage.get("input_tokens") or 0
            self.cache_read = usage.get("cache_read_input_tokens") or 0
            self.cache_write = usage.get("cache_creation_input_tokens") or 0

        elif kind == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                index = event.get("index", len(self._tools))
                self._tools[index] = ToolCall(id=block.get("id"), name=block.get("name"))
                self._fragments[index] = []
                self._current_tool = index

        elif kind == "content_block_delta":
            delta = event.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "thinking_delta":
                self._thinking.append(delta.get("thinking") or "")
            elif delta_type == "text_delta":
                self._response.append(delta.get("text") or "")
            elif delta_type == "input_json_delta":
                index = event.get("index", self._current_tool)
                if index in self._fragments:
                    self._fragments[index].append(delta.get("partial_json") or "")

        elif kind == "content_block_stop":
            index = event.get("index", self._current_tool)
            if index in self._tools:
                self._tools[index].input = "".join(self._fragments.get(index, []))
            self._current_tool = None

        elif kind == "message_delta":
            delta = event.get("delta") or {}
            if delta.get("stop_reason"):
                self.stop_reason = delta["stop_reason"]
            usage = event.get("usage") or {}
            if "output_tokens" in usage:
                self.output_tokens = usage["output_tokens"] or 0

    def finalize(self, duration_ms: int | None = None) -> SpanRecord:
        """Return the accumulated record.

        Safe to call repeatedly; later calls return the first snapshot.
        """
        if self._record is not None:
            return self._record

        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if tail:
            self._process_line(tail)

        # Blocks that never saw a stop event still keep what arrived
        calls = []
        for index in sorted(self._tools):
            call = self._tools[index]
            if not call.input:
                call.input = "".join(self._fragments.get(index, []))
            calls.append(call)

        thinking = "".join(self._thinking)
        response = "".join(self._response)
        names = [c.name for c in calls if c.name]
        self._record = SpanRecord(
            model=self.model,
            request_id=self.request_id,
            stop_reason=self.stop_reason,
            duration_ms=duration_ms,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_read=self.cache_read,
            cache_write=self.cache_write,
            thinking_preview=thinking[: self.preview_chars] or None,
            response_preview=response[: self.preview_chars] or None,
            tool_names=",".join(names) or None,
            thinking=thinking or None,
            response=response or None,
            tool_calls=calls or None,
        )
        return self._record


def parse_message_response(body: dict[str, Any], preview_chars: int = PREVIEW_CHARS) -> SpanRecord:
    """Build a record from a complete (non-streaming) message response."""
    thinking: list[str] = []
    response: list[str] = []
    calls: list[ToolCall] = []
    for block in body.get("content") or []:
        kind = block.get("type")
        if kind == "thinking":
            thinking.append(block.get("thinking") or "")
        elif kind == "text":
            response.append(block.get("text") or "")
        elif kind == "tool_use":
            calls.append(
                ToolCall(
                    id=block.get("id"),
                    name=block.get("name"),
                    input=json.dumps(block.get("input") or {}),
                )
            )
    usage = body.get("usage") or {}
    thinking_text = "".join(thinking)
    response_text = "".join(response)
    return SpanRecord(
        model=body.get("model"),
        request_id=body.get("id"),
        stop_reason=body.get("stop_reason"),
        input_tokens=usage.get("input_tokens") or 0,
        output_tokens=usage.get("output_tokens") or 0,
        cache_read=usage.get("cache_read_input_tokens") or 0,
        cache_write=usage.get("cache_creation_input_tokens") or 0,
        thinking_preview=thinking_text[:preview_chars] or None,
        response_preview=response_text[:preview_chars] or None,
        tool_names=",".join(c.name for c in calls if c.name) or None,
        thinking=thinking_text or None,
        response=response_text or None,
        tool_calls=calls or None,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Request inspection
# ─────────────────────────────────────────────────────────────────────────────


def is_system_injected(text: str) -> bool:
    text = text.strip()
    return text in _INJECTED_EXACT or text.startswith(_INJECTED_PREFIXES)


def extract_user_preview(body: dict[str, Any], preview_chars: int = PREVIEW_CHARS) -> str | None:
    """Last thing the user actually typed, skipping tool results and injected text."""
    for message in reversed(body.get("messages") or []):
        if message.get("role") != "user":
            continue
        content = message.get("content")
        if isinstance(content, str):
            texts = [content]
        elif isinstance(content, list):
            texts = [b.get("text") for b in content
                     if isinstance(b, dict) and b.get("type") == "text"]
        else:
            continue
        for text in texts:
            if isinstance(text, str) and text.strip() and not is_system_injected(text):
                return text.strip()[:preview_chars]
    return None


def extract_system_prompt(body: dict[str, Any]) -> str | None:
    system = body.get("system")
    if not system:
        return None
    if isinstance(system, str):
        text = system
    else:
        text = "\n".join(b.get("text") for b in system
                         if isinstance(b, dict) and b.get("type") == "text" and b.get("text"))
    return text[:CONTENT_CAP] or None


def extract_tool_definitions(body: dict[str, Any]) -> list[ToolDefinition] | None:
    defs = [
        ToolDefinition(
            name=tool["name"],
            description=tool.get("description"),
            input_schema=tool.get("input_schema"),
        )
        for tool in body.get("tools") or []
        if isinstance(tool, dict) and tool.get("name")
    ]
    return defs or None


def _flatten_result(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(b.get("text", "") for b in content
                         if isinstance(b, dict) and b.get("type") == "text")
    return ""


def extract_tool_results(body: dict[str, Any]) -> list[ToolResult] | None:
    """Outputs of earlier tool calls that this request sends back."""
    results = []
    for message in body.get("messages") or []:
        if message.get("role") != "user" or not isinstance(message.get("content"), list):
            continue
        for block in message["content"]:
            if isinstance(block, dict) and block.get("type") == "tool_result" and block.get("tool_use_id"):
                results.append(
                    ToolResult(
                        tool_use_id=block["tool_use_id"],
                        content=_flatten_result(block.get("content"))[:CONTENT_CAP],
                        is_error=block.get("is_error"),
                    )
                )
    return results or None


def inspect_request(body: dict[str, Any], preview_chars: int = PREVIEW_CHARS) -> dict[str, Any]:
    """Everything worth recording from the request side, as record fields."""
    return {
        "model": body.get("model"),
        "user_preview": extract_user_preview(body, preview_chars),
        "system_prompt": extract_system_prompt(body),
        "tool_definitions": extract_tool_definitions(body),
        "tool_results": extract_tool_results(body),
        "message_count": len(body.get("messages") or []),
    }
