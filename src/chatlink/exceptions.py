"""Domain exception hierarchy for the chatlink client."""

from __future__ import annotations


class ChatLinkError(RuntimeError):
    """Base class for all domain-level chat errors."""


class ChatConnectionError(ChatLinkError):
    """Raised when the completion host cannot be reached."""


class ChatModelNotFoundError(ChatLinkError):
    """Raised when the configured model is unavailable."""


class ChatStreamingError(ChatLinkError):
    """Raised when streaming fails for non-connectivity reasons."""


class ChatBusyError(ChatLinkError):
    """Raised when a chat link is asked to start a second concurrent exchange."""


class ConfigValidationError(ChatLinkError):
    """Raised when configuration cannot be validated safely."""
