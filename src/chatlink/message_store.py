"""Bounded chat history and deterministic context trimming."""

from __future__ import annotations

from .messages import ChatMessage


def estimate_tokens(message: ChatMessage) -> int:
    """Cheap deterministic token estimate for a single message."""
    role_cost = 2 if message.role else 0
    content = message.content
    return role_cost + len(content) // 4 + len(content.split()) + 2


class MessageStore:
    """Conversation history with a message cap and a token budget for requests.

    System messages configured at construction survive ``clear()`` and are
    never trimmed from request context.
    """

    def __init__(
        self,
        system_prompt: str = "",
        max_history_messages: int = 200,
        max_context_tokens: int = 4096,
    ) -> None:
        self.max_history_messages = max(1, max_history_messages)
        self.max_context_tokens = max(1, max_context_tokens)
        self._base_messages: list[ChatMessage] = []
        if system_prompt.strip():
            self._base_messages.append(ChatMessage.system(system_prompt.strip()))
        self._messages: list[ChatMessage] = list(self._base_messages)

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    @property
    def message_count(self) -> int:
        return len(self._messages)

    def clear(self) -> None:
        """Reset store while preserving initial system messages."""
        self._messages = list(self._base_messages)

    def append(self, message: ChatMessage) -> None:
        """Append a message and enforce the history cap."""
        role = message.role.strip().lower()
        if not role:
            return
        self._messages.append(ChatMessage(role=role, content=message.content.strip()))
        self._trim_by_history_limit()

    def build_context(
        self,
        pending: ChatMessage | None = None,
        max_context_tokens: int | None = None,
    ) -> list[ChatMessage]:
        """Build request context, optionally ending with a not-yet-stored message.

        The pending message is never trimmed; the oldest non-system history
        goes first when the token budget is exceeded.
        """
        limit = max(1, max_context_tokens or self.max_context_tokens)
        context = list(self._messages)
        if pending is not None:
            context.append(pending)
        total = sum(estimate_tokens(m) for m in context)
        protected = 1 if pending is not None else 0
        while total > limit:
            for index, message in enumerate(context[: len(context) - protected]):
                if message.role != "system":
                    total -= estimate_tokens(message)
                    del context[index]
                    break
            else:
                # Only system messages and the pending one remain.
                break
        return context

    def _trim_by_history_limit(self) -> None:
        while len(self._messages) > self.max_history_messages:
            for index, message in enumerate(self._messages):
                if message.role != "system":
                    del self._messages[index]
                    break
            else:
                self._messages.pop(0)
