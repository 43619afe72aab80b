"""
Canonical data model shared by every dialect translator.

The canonical request is the upstream provider's native chat-completions
shape. Inbound payloads are parsed into the dataclasses below first, so that
each content part is handled by kind and unknown kinds are rejected instead
of being passed through or dropped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from shared.errors import TranslationError


class Dialect(str, Enum):
    """Inbound wire dialects."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class Role(str, Enum):
    """Canonical message roles."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    DEVELOPER = "developer"


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    url: str
    detail: Optional[str] = None


@dataclass(frozen=True)
class ToolUsePart:
    """An assistant tool invocation; arguments are kept as JSON text."""

    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class ToolResultPart:
    tool_use_id: str
    content: str


@dataclass(frozen=True)
class ThinkingPart:
    text: str


ContentPart = Union[TextPart, ImagePart, ToolUsePart, ToolResultPart, ThinkingPart]

TEXTUAL_PARTS = (TextPart, ThinkingPart)


@dataclass
class Message:
    """A canonical chat message; content is plain text or ordered parts."""

    role: Role
    content: Union[str, List[ContentPart], None]
    name: Optional[str] = None

    @property
    def parts(self) -> List[ContentPart]:
        if self.content is None:
            return []
        if isinstance(self.content, str):
            return [TextPart(self.content)]
        return list(self.content)

    def text(self, separator: str = "\n\n") -> str:
        """Concatenate textual parts (thinking and text) in their original order."""
        if isinstance(self.content, str):
            return self.content
        chunks = []
        for part in self.parts:
            if isinstance(part, TEXTUAL_PARTS):
                chunks.append(part.text)
            else:
                raise TranslationError(
                    f"{type(part).__name__} is not allowed in a {self.role.value} message",
                    details={"role": self.role.value},
                )
        return separator.join(chunks)

    def to_payload(self) -> Dict[str, Any]:
        """Render this message in the upstream chat-completions shape."""
        if self.role is Role.TOOL:
            payload = _render_tool_message(self)
        elif self.role is Role.ASSISTANT:
            payload = _render_assistant_message(self)
        elif self.role is Role.USER:
            payload = {"role": self.role.value, "content": _render_user_content(self.content)}
        else:
            payload = {"role": self.role.value, "content": self.content if self.content is None else self.text()}

        if self.name:
            payload["name"] = self.name
        return payload


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: Optional[str]
    parameters: Dict[str, Any]

    def to_payload(self) -> Dict[str, Any]:
        function: Dict[str, Any] = {"name": self.name, "parameters": self.parameters}
        if self.description is not None:
            function["description"] = self.description
        return {"type": "function", "function": function}


@dataclass
class CanonicalRequest:
    """Upstream request assembled from either inbound dialect."""

    model: str
    messages: List[Message]
    stream: bool = False
    max_tokens: Optional[int] = None
    tools: Optional[List[ToolDefinition]] = None
    tool_choice: Any = None
    options: Dict[str, Any] = field(default_factory=dict)
    preamble_applied: bool = False

    @property
    def has_images(self) -> bool:
        return any(isinstance(part, ImagePart) for message in self.messages for part in message.parts)

    @property
    def is_agent_call(self) -> bool:
        return self.preamble_applied or any(
            message.role in (Role.ASSISTANT, Role.TOOL) for message in self.messages
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.options)
        payload["model"] = self.model
        payload["messages"] = [message.to_payload() for message in self.messages]
        if self.stream:
            payload["stream"] = True
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        if self.tools:
            payload["tools"] = [tool.to_payload() for tool in self.tools]
        if self.tool_choice is not None:
            payload["tool_choice"] = self.tool_choice
        return payload


def _render_user_content(content: Union[str, List[ContentPart], None]) -> Any:
    if content is None or isinstance(content, str):
        return content

    rendered = []
    for part in content:
        if isinstance(part, TEXTUAL_PARTS):
            rendered.append({"type": "text", "text": part.text})
        elif isinstance(part, ImagePart):
            image: Dict[str, Any] = {"url": part.url}
            if part.detail:
                image["detail"] = part.detail
            rendered.append({"type": "image_url", "image_url": image})
        else:
            raise TranslationError(
                f"{type(part).__name__} is not allowed in a user message",
                details={"role": "user"},
            )
    return rendered


def _render_assistant_message(message: Message) -> Dict[str, Any]:
    if isinstance(message.content, str) or message.content is None:
        return {"role": "assistant", "content": message.content}

    texts: List[str] = []
    tool_calls: List[Dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, TEXTUAL_PARTS):
            texts.append(part.text)
        elif isinstance(part, ToolUsePart):
            tool_calls.append({
                "id": part.id,
                "type": "function",
                "function": {"name": part.name, "arguments": part.arguments},
            })
        else:
            raise TranslationError(
                f"{type(part).__name__} is not allowed in an assistant message",
                details={"role": "assistant"},
            )

    payload: Dict[str, Any] = {"role": "assistant", "content": "\n\n".join(texts) if texts else None}
    if tool_calls:
        payload["tool_calls"] = tool_calls
    return payload


def _render_tool_message(message: Message) -> Dict[str, Any]:
    results = [part for part in message.parts if isinstance(part, ToolResultPart)]
    if len(results) != 1 or len(message.parts) != 1:
        raise TranslationError("tool messages must carry exactly one tool result")
    result = results[0]
    return {"role": "tool", "tool_call_id": result.tool_use_id, "content": result.content}
