"""Value types exchanged with the completion client."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ChatMessage:
    """A single chat message, either sent by the user or produced by the model."""

    role: str
    content: str
    name: str | None = None

    @classmethod
    def system(cls, content: str) -> ChatMessage:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> ChatMessage:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> ChatMessage:
        return cls(role="assistant", content=content)

    def to_dict(self) -> dict[str, str]:
        """Return the wire payload expected by chat clients."""
        payload = {"role": self.role, "content": self.content}
        if self.name:
            payload["name"] = self.name
        return payload


@dataclass(frozen=True)
class ChatCompletionRequest:
    """Snapshot of an outgoing chat completion request."""

    model: str
    messages: tuple[ChatMessage, ...]
    stream: bool = True
    options: dict[str, Any] = field(default_factory=dict)

    def to_kwargs(self) -> dict[str, Any]:
        """Build keyword arguments for ``AsyncClient.chat``."""
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [message.to_dict() for message in self.messages],
            "stream": self.stream,
        }
        if self.options:
            kwargs["options"] = dict(self.options)
        return kwargs


@dataclass(frozen=True)
class ChatCompletionChunk:
    """One incremental unit of a streamed response.

    ``index`` is the 0-based arrival order of the chunk within its exchange.
    """

    index: int
    content: str = ""
    thinking: str = ""
    done: bool = False
    done_reason: str | None = None
    raw: Any = field(default=None, repr=False, compare=False)

    @property
    def is_empty(self) -> bool:
        return not self.content and not self.thinking
