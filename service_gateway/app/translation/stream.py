"""
Streaming translation: upstream chat-completion chunks -> dialect events.

Each translator is a small state machine fed one upstream chunk at a time.
``feed`` returns the client-visible events produced by that chunk and
``finish`` emits the closing events once the upstream ends, synthesizing
them when no finish signal arrived. ``translate_stream`` drives a translator
over an async iterator of chunks, pulling one chunk per step.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from shared.errors import GatewayException, TranslationError, UpstreamError
from shared.logging import get_logger

from .envelopes import error_body
from .models import Dialect
from .response import map_stop_reason, map_usage, parse_tool_arguments, reasoning_of

logger = get_logger("gateway.translation.stream")


@dataclass(frozen=True)
class StreamEvent:
    """One server-sent event; ``event`` is omitted for dialect A."""

    data: Union[Dict[str, Any], str]
    event: Optional[str] = None

    def encode(self) -> str:
        payload = self.data if isinstance(self.data, str) else json.dumps(self.data, ensure_ascii=False)
        prefix = f"event: {self.event}\n" if self.event else ""
        return f"{prefix}data: {payload}\n\n"

    @property
    def is_error(self) -> bool:
        return self.event == "error" or (isinstance(self.data, dict) and "error" in self.data)


DONE = StreamEvent("[DONE]")


def _stream_error_data(dialect: Dialect, exc: BaseException) -> Dict[str, Any]:
    body = error_body(dialect, exc)
    # Failures after the response started are reported as provider errors.
    if isinstance(exc, TranslationError):
        body["error"]["type"] = "api_error"
    return body


def _upstream_error_chunk(chunk: Dict[str, Any]) -> Optional[UpstreamError]:
    error = chunk.get("error")
    if not error:
        return None
    status = 500
    if isinstance(error, dict) and isinstance(error.get("code"), int):
        status = error["code"]
    return UpstreamError(status, "Upstream stream error", body={"error": error})


class AnthropicStreamTranslator:
    """Turns upstream chunks into dialect-B message/content-block events."""

    dialect = Dialect.ANTHROPIC

    def __init__(self, model: str):
        self.model = model
        self.message_id: Optional[str] = None
        self.started = False
        self.finished = False
        self._next_index = 0
        self._open_blocks: Dict[int, str] = {}
        self._text_block: Optional[int] = None
        self._thinking_block: Optional[int] = None
        self._tool_blocks: Dict[int, int] = {}
        self._tool_arguments: Dict[int, List[str]] = {}
        self._usage: Dict[str, Any] = {}
        # Set once the finish signal has closed the blocks; usage may still follow.
        self._stop_reason: Optional[str] = None

    def feed(self, chunk: Dict[str, Any]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        if self.finished:
            return events
        if self._stop_reason is not None:
            if chunk.get("usage"):
                self._usage = chunk["usage"]
            self._stop(events)
            return events
        try:
            self._consume(chunk, events)
        except GatewayException as exc:
            events.append(self.error_event(exc))
        return events

    def finish(self) -> List[StreamEvent]:
        """Emit the closing events once the upstream has ended.

        Without a finish signal every open block is force-closed first.
        """
        events: List[StreamEvent] = []
        if self.finished:
            return events
        if self._stop_reason is None:
            logger.warning("Upstream stream ended without finish signal", open_blocks=sorted(self._open_blocks))
            try:
                self._ensure_started({}, events)
                self._close_all("tool_use" if self._tool_blocks else "end_turn", events)
            except GatewayException as exc:
                events.append(self.error_event(exc))
                return events
        self._stop(events)
        return events

    def error_event(self, exc: BaseException) -> StreamEvent:
        self.finished = True
        logger.error("Terminating stream with error event", error=str(exc))
        return StreamEvent(_stream_error_data(self.dialect, exc), event="error")

    def _consume(self, chunk: Dict[str, Any], events: List[StreamEvent]) -> None:
        upstream_error = _upstream_error_chunk(chunk)
        if upstream_error is not None:
            raise upstream_error

        self._ensure_started(chunk, events)
        if chunk.get("usage"):
            self._usage = chunk["usage"]

        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}

            reasoning = reasoning_of(delta)
            if reasoning:
                if self._thinking_block is None:
                    self._close_text_block(events)
                    self._thinking_block = self._open_block("thinking", {"type": "thinking", "thinking": ""}, events)
                events.append(self._delta(self._thinking_block, {"type": "thinking_delta", "thinking": reasoning}))

            text = delta.get("content")
            if isinstance(text, str) and text:
                self._close_thinking_block(events)
                if self._text_block is None:
                    self._text_block = self._open_block("text", {"type": "text", "text": ""}, events)
                events.append(self._delta(self._text_block, {"type": "text_delta", "text": text}))

            for call in delta.get("tool_calls") or []:
                self._consume_tool_fragment(call, events)

            if choice.get("finish_reason"):
                self._close_all(map_stop_reason(choice["finish_reason"]), events)
                return

    def _consume_tool_fragment(self, call: Dict[str, Any], events: List[StreamEvent]) -> None:
        tool_index = call.get("index", 0)
        function = call.get("function") or {}

        block = self._tool_blocks.get(tool_index)
        if block is None:
            name = function.get("name")
            if not name:
                raise TranslationError("First tool call fragment is missing the function name",
                                       details={"index": tool_index})
            self._close_thinking_block(events)
            self._close_text_block(events)
            block = self._open_block(
                "tool_use",
                {"type": "tool_use", "id": call.get("id") or f"toolu_{tool_index}", "name": name, "input": {}},
                events,
            )
            self._tool_blocks[tool_index] = block
            self._tool_arguments[block] = []

        fragment = function.get("arguments")
        if fragment:
            self._tool_arguments[block].append(fragment)
            events.append(self._delta(block, {"type": "input_json_delta", "partial_json": fragment}))

    def _ensure_started(self, chunk: Dict[str, Any], events: List[StreamEvent]) -> None:
        if self.started:
            return
        self.started = True
        self.message_id = chunk.get("id") or f"msg_{uuid.uuid4().hex}"
        self.model = chunk.get("model") or self.model
        usage = map_usage(chunk.get("usage"))
        usage["output_tokens"] = 0
        events.append(StreamEvent({
            "type": "message_start",
            "message": {
                "id": self.message_id,
                "type": "message",
                "role": "assistant",
                "content": [],
                "model": self.model,
                "stop_reason": None,
                "stop_sequence": None,
                "usage": usage,
            },
        }, event="message_start"))

    def _open_block(self, kind: str, content_block: Dict[str, Any], events: List[StreamEvent]) -> int:
        index = self._next_index
        self._next_index += 1
        self._open_blocks[index] = kind
        events.append(StreamEvent(
            {"type": "content_block_start", "index": index, "content_block": content_block},
            event="content_block_start",
        ))
        return index

    def _close_block(self, index: int, events: List[StreamEvent]) -> None:
        kind = self._open_blocks.pop(index)
        if kind == "tool_use":
            parse_tool_arguments("".join(self._tool_arguments.get(index, [])))
        elif kind == "thinking":
            events.append(self._delta(index, {"type": "signature_delta", "signature": ""}))
        events.append(StreamEvent({"type": "content_block_stop", "index": index}, event="content_block_stop"))

    def _close_text_block(self, events: List[StreamEvent]) -> None:
        if self._text_block is not None:
            self._close_block(self._text_block, events)
            self._text_block = None

    def _close_thinking_block(self, events: List[StreamEvent]) -> None:
        if self._thinking_block is not None:
            self._close_block(self._thinking_block, events)
            self._thinking_block = None

    def _close_all(self, stop_reason: Optional[str], events: List[StreamEvent]) -> None:
        for index in sorted(self._open_blocks):
            self._close_block(index, events)
        self._text_block = None
        self._thinking_block = None
        self._stop_reason = stop_reason or "end_turn"

    def _stop(self, events: List[StreamEvent]) -> None:
        usage = map_usage(self._usage)
        events.append(StreamEvent({
            "type": "message_delta",
            "delta": {"stop_reason": self._stop_reason, "stop_sequence": None},
            "usage": usage,
        }, event="message_delta"))
        events.append(StreamEvent({"type": "message_stop"}, event="message_stop"))
        self.finished = True

    @staticmethod
    def _delta(index: int, delta: Dict[str, Any]) -> StreamEvent:
        return StreamEvent({"type": "content_block_delta", "index": index, "delta": delta}, event="content_block_delta")


class OpenAIStreamTranslator:
    """Forwards upstream chunks, holding tool-call fragments until they are complete.

    Text and other delta fields pass straight through. Tool-call argument
    fragments are buffered per tool index and released as one chunk, in
    ascending index order, right before the finish chunk.
    """

    dialect = Dialect.OPENAI

    def __init__(self, model: str):
        self.model = model
        self.saw_finish = False
        self.finished = False
        self._meta: Dict[str, Any] = {"id": None, "object": "chat.completion.chunk", "created": None, "model": model}
        self._tool_calls: Dict[int, Dict[str, Any]] = {}

    def feed(self, chunk: Dict[str, Any]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        if self.finished:
            return events
        try:
            self._consume(chunk, events)
        except GatewayException as exc:
            events.append(self.error_event(exc))
        return events

    def finish(self) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        if self.finished:
            return events
        try:
            if not self.saw_finish:
                logger.warning("Upstream stream ended without finish signal", pending_tools=sorted(self._tool_calls))
                finish_reason = "tool_calls" if self._tool_calls else "stop"
                self._flush_tool_calls(events)
                events.append(StreamEvent(self._chunk([{"index": 0, "delta": {}, "finish_reason": finish_reason}])))
        except GatewayException as exc:
            events.append(self.error_event(exc))
            return events
        events.append(DONE)
        self.finished = True
        return events

    def error_event(self, exc: BaseException) -> StreamEvent:
        self.finished = True
        logger.error("Terminating stream with error event", error=str(exc))
        return StreamEvent(_stream_error_data(self.dialect, exc))

    def _consume(self, chunk: Dict[str, Any], events: List[StreamEvent]) -> None:
        upstream_error = _upstream_error_chunk(chunk)
        if upstream_error is not None:
            raise upstream_error

        for key in ("id", "created", "model", "system_fingerprint"):
            if chunk.get(key) is not None:
                self._meta[key] = chunk[key]

        forwarded_choices = []
        finishing = False
        for choice in chunk.get("choices") or []:
            delta = dict(choice.get("delta") or {})
            for call in delta.pop("tool_calls", None) or []:
                self._buffer_tool_fragment(call)

            if choice.get("finish_reason"):
                finishing = True
            if delta or choice.get("finish_reason"):
                forwarded = dict(choice)
                forwarded["delta"] = delta
                forwarded_choices.append(forwarded)

        if finishing:
            self._flush_tool_calls(events)
            self.saw_finish = True

        if forwarded_choices or (chunk.get("usage") and not chunk.get("choices")):
            outbound = dict(chunk)
            outbound["choices"] = forwarded_choices
            events.append(StreamEvent(outbound))

    def _buffer_tool_fragment(self, call: Dict[str, Any]) -> None:
        index = call.get("index", 0)
        function = call.get("function") or {}
        entry = self._tool_calls.get(index)
        if entry is None:
            if not function.get("name"):
                raise TranslationError("First tool call fragment is missing the function name",
                                       details={"index": index})
            entry = {"id": call.get("id"), "name": function["name"], "fragments": []}
            self._tool_calls[index] = entry
        if function.get("arguments"):
            entry["fragments"].append(function["arguments"])

    def _flush_tool_calls(self, events: List[StreamEvent]) -> None:
        if not self._tool_calls:
            return
        calls = []
        for index in sorted(self._tool_calls):
            entry = self._tool_calls[index]
            arguments = "".join(entry["fragments"])
            parse_tool_arguments(arguments)
            calls.append({
                "index": index,
                "id": entry["id"],
                "type": "function",
                "function": {"name": entry["name"], "arguments": arguments},
            })
        self._tool_calls = {}
        events.append(StreamEvent(self._chunk([{"index": 0, "delta": {"tool_calls": calls}, "finish_reason": None}])))

    def _chunk(self, choices: List[Dict[str, Any]]) -> Dict[str, Any]:
        chunk = {key: value for key, value in self._meta.items() if value is not None}
        chunk["choices"] = choices
        return chunk


StreamTranslator = Union[AnthropicStreamTranslator, OpenAIStreamTranslator]


def create_stream_translator(dialect: Dialect, model: str) -> StreamTranslator:
    if dialect is Dialect.ANTHROPIC:
        return AnthropicStreamTranslator(model)
    if dialect is Dialect.OPENAI:
        return OpenAIStreamTranslator(model)
    raise TranslationError(f"Unsupported dialect: {dialect!r}")


async def translate_stream(
    dialect: Dialect,
    chunks: AsyncIterator[Dict[str, Any]],
    *,
    model: str,
) -> AsyncIterator[StreamEvent]:
    """Lazily translate upstream chunks into dialect stream events."""
    translator = create_stream_translator(dialect, model)
    try:
        async for chunk in chunks:
            for event in translator.feed(chunk):
                yield event
            if translator.finished:
                return
    except GatewayException as exc:
        yield translator.error_event(exc)
        return
    for event in translator.finish():
        yield event
