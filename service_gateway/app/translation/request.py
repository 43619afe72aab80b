"""
Inbound request translation: dialect payload -> canonical upstream request.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from shared.errors import TranslationError, ValidationError
from shared.logging import get_logger

from .models import (
    CanonicalRequest,
    ContentPart,
    Dialect,
    ImagePart,
    Message,
    Role,
    TextPart,
    ThinkingPart,
    ToolDefinition,
    ToolResultPart,
    ToolUsePart,
)

logger = get_logger("gateway.translation.request")

MaxTokensLookup = Callable[[str], Optional[int]]

# Request fields consumed explicitly; everything else in a dialect-A payload
# is forwarded to the upstream unchanged.
_OPENAI_MANAGED_FIELDS = {
    "model", "messages", "stream", "max_tokens", "tools", "tool_choice", "agent_prompt",
}

# Dialect-B fields with a direct canonical counterpart.
_ANTHROPIC_PASSTHROUGH_FIELDS = ("temperature", "top_p")

# Dialect-B fields the upstream has no equivalent for.
_ANTHROPIC_UNSUPPORTED_FIELDS = ("top_k", "thinking", "service_tier", "container", "mcp_servers")


class InboundEnvelope(BaseModel):
    """Fields every dialect request must carry."""

    model_config = ConfigDict(extra="allow")

    model: str = Field(..., min_length=1)
    messages: List[Dict[str, Any]] = Field(..., min_length=1)
    stream: Optional[bool] = None
    max_tokens: Optional[int] = Field(default=None, ge=1)
    agent_prompt: Optional[str] = None


def translate_request(
    dialect: Dialect,
    raw: Any,
    *,
    max_tokens_lookup: Optional[MaxTokensLookup] = None,
    preamble: Optional[str] = None,
) -> CanonicalRequest:
    """Translate an inbound dialect payload into the canonical request.

    ``preamble`` is a server-wide agent preamble; a per-request
    ``agent_prompt`` field takes precedence over it. When the payload omits
    ``max_tokens`` it is filled from ``max_tokens_lookup`` if the model is
    known there.
    """
    envelope = _validate_envelope(raw)

    if dialect is Dialect.OPENAI:
        request = _from_openai(envelope, raw)
    elif dialect is Dialect.ANTHROPIC:
        request = _from_anthropic(envelope, raw)
    else:
        raise ValidationError(f"Unsupported dialect: {dialect!r}")

    agent_prompt = envelope.agent_prompt if envelope.agent_prompt and envelope.agent_prompt.strip() else preamble
    if agent_prompt and agent_prompt.strip():
        request.messages = merge_preamble(request.messages, agent_prompt)
        request.preamble_applied = True

    if request.max_tokens is None and max_tokens_lookup is not None:
        request.max_tokens = max_tokens_lookup(request.model)
        if request.max_tokens is not None:
            logger.debug("Filled max_tokens from model catalog", model=request.model, max_tokens=request.max_tokens)

    return request


def merge_preamble(messages: List[Message], preamble: str) -> List[Message]:
    """Prepend ``preamble`` to the first system message, or add one."""
    for position, message in enumerate(messages):
        if message.role is Role.SYSTEM:
            existing = message.text() if message.content is not None else ""
            merged = Message(Role.SYSTEM, f"{preamble}\n\n{existing}", name=message.name)
            return messages[:position] + [merged] + messages[position + 1:]
    return [Message(Role.SYSTEM, preamble)] + list(messages)


def _validate_envelope(raw: Any) -> InboundEnvelope:
    if not isinstance(raw, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return InboundEnvelope.model_validate(raw)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(loc) for loc in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        raise ValidationError(
            "Missing or invalid required fields: model and a non-empty messages array",
            details={"errors": errors},
        ) from exc


# Dialect A (OpenAI-shaped)

def _from_openai(envelope: InboundEnvelope, raw: Dict[str, Any]) -> CanonicalRequest:
    messages = [_openai_message(item, position) for position, item in enumerate(envelope.messages)]
    options = {key: value for key, value in raw.items() if key not in _OPENAI_MANAGED_FIELDS}

    tools = None
    if raw.get("tools") is not None:
        tools = [_openai_tool(tool) for tool in _require_list(raw["tools"], "tools")]

    return CanonicalRequest(
        model=envelope.model,
        messages=messages,
        stream=bool(envelope.stream),
        max_tokens=envelope.max_tokens,
        tools=tools,
        tool_choice=_openai_tool_choice(raw.get("tool_choice")),
        options=options,
    )


def _openai_message(item: Dict[str, Any], position: int) -> Message:
    role = _parse_role(item.get("role"), position, allowed=tuple(Role))
    content = item.get("content")
    name = item.get("name")

    if role is Role.TOOL:
        tool_call_id = item.get("tool_call_id")
        if not isinstance(tool_call_id, str) or not tool_call_id:
            raise ValidationError("tool messages require tool_call_id", details={"message": position})
        return Message(role, [ToolResultPart(tool_call_id, _tool_result_text(content))], name=name)

    if content is None or isinstance(content, str):
        parsed: Any = content
    else:
        parsed = [_openai_part(part) for part in _require_list(content, f"messages[{position}].content")]

    tool_calls = item.get("tool_calls")
    if role is Role.ASSISTANT and tool_calls:
        parts: List[ContentPart] = []
        if isinstance(parsed, str) and parsed:
            parts.append(TextPart(parsed))
        elif isinstance(parsed, list):
            parts.extend(parsed)
        parts.extend(_openai_tool_call(call) for call in _require_list(tool_calls, "tool_calls"))
        parsed = parts

    return Message(role, parsed, name=name)


def _openai_part(part: Any) -> ContentPart:
    kind = part.get("type") if isinstance(part, dict) else None
    if kind == "text":
        return TextPart(_require_str(part.get("text"), "text"))
    if kind == "image_url":
        image = part.get("image_url")
        if isinstance(image, str):
            return ImagePart(image)
        image = _require_dict(image, "image_url")
        return ImagePart(_require_str(image.get("url"), "image_url.url"), image.get("detail"))
    raise TranslationError(f"Unsupported content part type: {kind!r}", details={"type": kind})


def _openai_tool_call(call: Any) -> ToolUsePart:
    if not isinstance(call, dict) or call.get("type", "function") != "function":
        raise TranslationError("Unsupported tool call shape", details={"tool_call": call})
    function = _require_dict(call.get("function"), "tool_calls.function")
    arguments = function.get("arguments", "")
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return ToolUsePart(
        id=_require_str(call.get("id"), "tool_calls.id"),
        name=_require_str(function.get("name"), "tool_calls.function.name"),
        arguments=arguments,
    )


def _openai_tool(tool: Any) -> ToolDefinition:
    if not isinstance(tool, dict) or tool.get("type") != "function" or not isinstance(tool.get("function"), dict):
        raise TranslationError("Unsupported tool definition", details={"tool": tool})
    function = tool["function"]
    return ToolDefinition(
        name=_require_str(function.get("name"), "tools.function.name"),
        description=function.get("description"),
        parameters=function.get("parameters") or {"type": "object", "properties": {}},
    )


def _openai_tool_choice(choice: Any) -> Any:
    if choice is None or choice in ("none", "auto", "required"):
        return choice
    if isinstance(choice, dict) and choice.get("type") == "function":
        name = _require_dict(choice.get("function"), "tool_choice.function").get("name")
        return {"type": "function", "function": {"name": _require_str(name, "tool_choice.function.name")}}
    raise TranslationError("Unsupported tool_choice", details={"tool_choice": choice})


# Dialect B (Anthropic-shaped)

def _from_anthropic(envelope: InboundEnvelope, raw: Dict[str, Any]) -> CanonicalRequest:
    messages: List[Message] = []

    system = raw.get("system")
    if system:
        messages.append(Message(Role.SYSTEM, _anthropic_system_text(system)))

    for position, item in enumerate(envelope.messages):
        messages.extend(_anthropic_message(item, position))

    options: Dict[str, Any] = {key: raw[key] for key in _ANTHROPIC_PASSTHROUGH_FIELDS if raw.get(key) is not None}
    if raw.get("stop_sequences"):
        options["stop"] = list(raw["stop_sequences"])
    metadata = raw.get("metadata")
    if isinstance(metadata, dict) and metadata.get("user_id"):
        options["user"] = metadata["user_id"]

    ignored = [key for key in _ANTHROPIC_UNSUPPORTED_FIELDS if key in raw]
    if ignored:
        logger.debug("Ignoring fields without an upstream equivalent", fields=ignored)

    tools = None
    if raw.get("tools") is not None:
        tools = [_anthropic_tool(tool) for tool in _require_list(raw["tools"], "tools")]

    return CanonicalRequest(
        model=envelope.model,
        messages=messages,
        stream=bool(envelope.stream),
        max_tokens=envelope.max_tokens,
        tools=tools,
        tool_choice=_anthropic_tool_choice(raw.get("tool_choice")),
        options=options,
    )


def _anthropic_system_text(system: Any) -> str:
    if isinstance(system, str):
        return system
    texts = []
    for block in _require_list(system, "system"):
        if not isinstance(block, dict) or block.get("type") != "text":
            raise TranslationError("system blocks must be text", details={"block": block})
        texts.append(_require_str(block.get("text"), "system.text"))
    return "\n\n".join(texts)


def _anthropic_message(item: Dict[str, Any], position: int) -> List[Message]:
    role = _parse_role(item.get("role"), position, allowed=(Role.USER, Role.ASSISTANT))
    content = item.get("content")

    if isinstance(content, str):
        return [Message(role, content)]

    blocks = [_anthropic_block(block) for block in _require_list(content, f"messages[{position}].content")]

    if role is Role.ASSISTANT:
        if any(isinstance(block, ToolResultPart) for block in blocks):
            raise TranslationError("tool_result blocks are only allowed in user messages")
        return [Message(role, blocks)]

    # tool_result blocks split a user turn into tool messages, keeping block order.
    messages: List[Message] = []
    pending: List[ContentPart] = []
    for block in blocks:
        if isinstance(block, ToolResultPart):
            if pending:
                messages.append(Message(Role.USER, pending))
                pending = []
            messages.append(Message(Role.TOOL, [block]))
        elif isinstance(block, ToolUsePart):
            raise TranslationError("tool_use blocks are only allowed in assistant messages")
        else:
            pending.append(block)
    if pending:
        messages.append(Message(Role.USER, pending))
    return messages


def _anthropic_block(block: Any) -> ContentPart:
    kind = block.get("type") if isinstance(block, dict) else None
    if kind == "text":
        return TextPart(_require_str(block.get("text"), "text"))
    if kind == "thinking":
        return ThinkingPart(_require_str(block.get("thinking"), "thinking"))
    if kind == "image":
        return _anthropic_image(_require_dict(block.get("source"), "image.source"))
    if kind == "tool_use":
        return ToolUsePart(
            id=_require_str(block.get("id"), "tool_use.id"),
            name=_require_str(block.get("name"), "tool_use.name"),
            arguments=json.dumps(block.get("input") or {}),
        )
    if kind == "tool_result":
        content = _tool_result_text(block.get("content"))
        if block.get("is_error") and content:
            content = f"Error: {content}"
        return ToolResultPart(_require_str(block.get("tool_use_id"), "tool_result.tool_use_id"), content)
    raise TranslationError(f"Unsupported content block type: {kind!r}", details={"type": kind})


def _anthropic_image(source: Dict[str, Any]) -> ImagePart:
    source_type = source.get("type")
    if source_type == "base64":
        media_type = _require_str(source.get("media_type"), "image.source.media_type")
        data = _require_str(source.get("data"), "image.source.data")
        return ImagePart(f"data:{media_type};base64,{data}")
    if source_type == "url":
        return ImagePart(_require_str(source.get("url"), "image.source.url"))
    raise TranslationError(f"Unsupported image source type: {source_type!r}", details={"type": source_type})


def _anthropic_tool(tool: Any) -> ToolDefinition:
    if not isinstance(tool, dict) or "input_schema" not in tool:
        raise TranslationError("Unsupported tool definition", details={"tool": tool})
    return ToolDefinition(
        name=_require_str(tool.get("name"), "tools.name"),
        description=tool.get("description"),
        parameters=tool["input_schema"],
    )


def _anthropic_tool_choice(choice: Any) -> Any:
    if choice is None:
        return None
    kind = choice.get("type") if isinstance(choice, dict) else None
    if kind == "auto":
        return "auto"
    if kind == "any":
        return "required"
    if kind == "none":
        return "none"
    if kind == "tool":
        return {"type": "function", "function": {"name": _require_str(choice.get("name"), "tool_choice.name")}}
    raise TranslationError("Unsupported tool_choice", details={"tool_choice": choice})


# Shared helpers

def _parse_role(value: Any, position: int, allowed) -> Role:
    try:
        role = Role(value)
    except ValueError:
        role = None
    if role is None or role not in allowed:
        raise ValidationError(f"Invalid role {value!r}", details={"message": position})
    return role


def _tool_result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    texts = []
    for part in _require_list(content, "tool result content"):
        if not isinstance(part, dict) or part.get("type") != "text":
            kind = part.get("type") if isinstance(part, dict) else None
            raise TranslationError(f"Unsupported tool result part type: {kind!r}", details={"type": kind})
        texts.append(_require_str(part.get("text"), "text"))
    return "\n\n".join(texts)


def _require_list(value: Any, field: str) -> List[Any]:
    if not isinstance(value, list):
        raise ValidationError(f"{field} must be an array", details={"field": field})
    return value


def _require_dict(value: Any, field: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ValidationError(f"{field} must be an object", details={"field": field})
    return value


def _require_str(value: Any, field: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={"field": field})
    return value
