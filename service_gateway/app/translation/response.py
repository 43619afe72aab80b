"""
Non-streaming response translation: canonical upstream response -> dialect.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from shared.errors import TranslationError

from .models import Dialect

OPENAI_TO_ANTHROPIC_STOP_REASON = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "refusal",
}

REASONING_KEYS = ("reasoning_content", "reasoning_text")


def map_stop_reason(finish_reason: Optional[str]) -> Optional[str]:
    """Map an upstream finish_reason onto the dialect-B stop_reason vocabulary."""
    if finish_reason is None:
        return None
    return OPENAI_TO_ANTHROPIC_STOP_REASON.get(finish_reason, "end_turn")


def map_usage(usage: Optional[Dict[str, Any]]) -> Dict[str, int]:
    """Rename upstream usage counters to dialect-B names."""
    usage = usage or {}
    prompt_tokens = int(usage.get("prompt_tokens") or 0)
    cached = int((usage.get("prompt_tokens_details") or {}).get("cached_tokens") or 0)
    mapped = {
        "input_tokens": max(0, prompt_tokens - cached),
        "output_tokens": int(usage.get("completion_tokens") or 0),
    }
    if cached:
        mapped["cache_read_input_tokens"] = cached
    return mapped


def parse_tool_arguments(arguments: Any) -> Dict[str, Any]:
    """Parse a complete tool-call argument JSON document."""
    if isinstance(arguments, dict):
        return arguments
    if arguments is None or (isinstance(arguments, str) and not arguments.strip()):
        return {}
    try:
        parsed = json.loads(arguments)
    except (TypeError, ValueError) as exc:
        raise TranslationError(
            "Tool call arguments are not valid JSON",
            details={"arguments": str(arguments)[:200]},
        ) from exc
    if not isinstance(parsed, dict):
        raise TranslationError("Tool call arguments must be a JSON object")
    return parsed


def reasoning_of(payload: Dict[str, Any]) -> Optional[str]:
    """Return reasoning text carried by an upstream message or delta."""
    for key in REASONING_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def translate_response(dialect: Dialect, response: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a whole upstream chat completion into the inbound dialect."""
    if dialect is Dialect.OPENAI:
        return response
    if dialect is Dialect.ANTHROPIC:
        return to_anthropic_message(response)
    raise TranslationError(f"Unsupported dialect: {dialect!r}")


def to_anthropic_message(response: Dict[str, Any]) -> Dict[str, Any]:
    choices = response.get("choices") or []
    content: List[Dict[str, Any]] = []
    finish_reason: Optional[str] = None

    # Some upstream models split text and tool calls across choices.
    for choice in sorted(choices, key=lambda item: item.get("index", 0)):
        message = choice.get("message") or {}

        reasoning = reasoning_of(message)
        if reasoning:
            content.append({"type": "thinking", "thinking": reasoning, "signature": ""})

        text = message.get("content")
        if isinstance(text, str) and text:
            content.append({"type": "text", "text": text})

        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            content.append({
                "type": "tool_use",
                "id": call.get("id"),
                "name": function.get("name"),
                "input": parse_tool_arguments(function.get("arguments")),
            })

        if choice.get("finish_reason"):
            finish_reason = choice["finish_reason"]

    stop_reason = map_stop_reason(finish_reason) or "end_turn"
    if any(block["type"] == "tool_use" for block in content):
        stop_reason = "tool_use"

    return {
        "id": response.get("id"),
        "type": "message",
        "role": "assistant",
        "model": response.get("model"),
        "content": content,
        "stop_reason": stop_reason,
        "stop_sequence": None,
        "usage": map_usage(response.get("usage")),
    }
