"""Top-level package for chatlink."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .app import ChatLinkApp
    from .bus import ExchangeEventBus
    from .chat import ChatLink
    from .config import ensure_config_dir, load_config
    from .events import (
        Cancelled,
        ChatMessageEvent,
        ExchangePhase,
        Failed,
        ResponseArrived,
        ResponseArriving,
        Started,
        Starting,
    )
    from .exceptions import (
        ChatBusyError,
        ChatConnectionError,
        ChatLinkError,
        ChatModelNotFoundError,
        ChatStreamingError,
        ConfigValidationError,
    )
    from .messages import ChatCompletionChunk, ChatCompletionRequest, ChatMessage
    from .subscription import EMPTY_SUBSCRIPTION, StreamSubscription, Subscription

_EXPORTS = {
    "ChatLinkApp": "app",
    "ExchangeEventBus": "bus",
    "ChatLink": "chat",
    "ensure_config_dir": "config",
    "load_config": "config",
    "Cancelled": "events",
    "ChatMessageEvent": "events",
    "ExchangePhase": "events",
    "Failed": "events",
    "ResponseArrived": "events",
    "ResponseArriving": "events",
    "Started": "events",
    "Starting": "events",
    "ChatBusyError": "exceptions",
    "ChatConnectionError": "exceptions",
    "ChatLinkError": "exceptions",
    "ChatModelNotFoundError": "exceptions",
    "ChatStreamingError": "exceptions",
    "ConfigValidationError": "exceptions",
    "ChatCompletionChunk": "messages",
    "ChatCompletionRequest": "messages",
    "ChatMessage": "messages",
    "EMPTY_SUBSCRIPTION": "subscription",
    "StreamSubscription": "subscription",
    "Subscription": "subscription",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import symbols so the Textual UI stays out of library imports."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module

    return getattr(import_module(f".{module_name}", __name__), name)
