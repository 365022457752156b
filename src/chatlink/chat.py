"""Chat link: one chat session that drives exchanges against a completion client."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
import logging
from typing import Any

import httpx
from ollama import AsyncClient, ResponseError

from .bus import ExchangeEventBus
from .events import ChatMessageEvent, Started
from .exceptions import (
    ChatBusyError,
    ChatConnectionError,
    ChatLinkError,
    ChatModelNotFoundError,
    ChatStreamingError,
)
from .message_store import MessageStore
from .messages import ChatCompletionChunk, ChatCompletionRequest, ChatMessage
from .subscription import StreamSubscription

LOGGER = logging.getLogger(__name__)

_CANCELLED = object()


class ChatLink:
    """Stateful chat session that keeps bounded history and streams replies.

    Every exchange is reported as a chain of lifecycle events published on
    ``event_bus``; ``send_message`` returns the terminal event.
    """

    def __init__(
        self,
        host: str,
        model: str,
        system_prompt: str,
        timeout: int = 120,
        retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        max_history_messages: int = 200,
        max_context_tokens: int = 4096,
        options: dict[str, Any] | None = None,
        client: Any | None = None,
        event_bus: ExchangeEventBus | None = None,
    ) -> None:
        self.host = host
        self.model = model
        self.system_prompt = system_prompt
        self.timeout = timeout
        self.retries = max(0, retries)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.options = dict(options or {})
        self._client = client if client is not None else AsyncClient(host=host, timeout=timeout)
        self.event_bus = event_bus if event_bus is not None else ExchangeEventBus()
        self.message_store = MessageStore(
            system_prompt=system_prompt,
            max_history_messages=max_history_messages,
            max_context_tokens=max_context_tokens,
        )
        self._current: ChatMessageEvent | None = None
        self._cancel_event = asyncio.Event()

    def __repr__(self) -> str:
        return f"ChatLink(host={self.host!r}, model={self.model!r})"

    @property
    def messages(self) -> list[ChatMessage]:
        """Expose message history for UI and tests."""
        return self.message_store.messages

    @property
    def current_exchange(self) -> ChatMessageEvent | None:
        """Latest event of the exchange in flight, or ``None`` when idle."""
        current = self._current
        if current is None or current.is_terminal:
            return None
        return current

    def clear_history(self) -> None:
        """Clear the conversation while keeping the configured system prompt."""
        self.message_store.clear()

    def set_model(self, model_name: str) -> None:
        normalized = model_name.strip()
        if normalized:
            self.model = normalized

    async def list_models(self) -> list[str]:
        """Return available model names from the completion host."""
        response = await self._client.list()
        if hasattr(response, "models"):
            models = getattr(response, "models")
        elif isinstance(response, dict):
            models = response.get("models")
        else:
            models = None

        names: list[str] = []
        for model in models or []:
            for key in ("name", "model"):
                value = model.get(key) if isinstance(model, dict) else getattr(model, key, None)
                if isinstance(value, str) and value.strip():
                    names.append(value.strip())
                    break
        return names

    async def check_connection(self) -> bool:
        """Return whether the completion host is reachable."""
        try:
            await self._client.list()
            return True
        except Exception:
            return False

    def build_request(self, user_message: ChatMessage) -> ChatCompletionRequest:
        """Snapshot the request for ``user_message`` on top of the stored history."""
        return ChatCompletionRequest(
            model=self.model,
            messages=tuple(self.message_store.build_context(pending=user_message)),
            stream=True,
            options=dict(self.options),
        )

    def cancel(self) -> bool:
        """Ask the exchange in flight to stop; return False when idle.

        Must be called from the event loop running the exchange. A pending
        client call or a stalled stream read is abandoned right away.
        """
        current = self.current_exchange
        if current is None:
            return False
        self._cancel_event.set()
        if isinstance(current, Started):
            current.subscription.cancel()
        LOGGER.info(
            "chat.exchange.cancel_requested",
            extra={"event": "chat.exchange.cancel_requested", "phase": current.phase.value},
        )
        return True

    async def send_message(self, text: str) -> ChatMessageEvent | None:
        """Run one exchange for ``text`` and return its terminal event.

        Empty input is ignored and returns ``None``. Request failures never
        raise; they end the exchange with a ``Failed`` event. Cancelling the
        calling task publishes ``Cancelled`` and re-raises.
        """
        normalized = text.strip()
        if not normalized:
            return None
        if self.current_exchange is not None:
            raise ChatBusyError("An exchange is already in progress on this chat link.")

        self._cancel_event = asyncio.Event()
        user_message = ChatMessage.user(normalized)
        try:
            starting = ChatMessageEvent.starting(self, user_message)
            await self._publish(starting)
            if self._cancel_event.is_set():
                return await self._publish(starting.cancelled())

            request = self.build_request(user_message)
            self.message_store.append(user_message)
            started = starting.started(request)
            LOGGER.info(
                "chat.exchange.started",
                extra={
                    "event": "chat.exchange.started",
                    "model": request.model,
                    "context_messages": len(request.messages),
                },
            )
            await self._publish(started)
            return await self._stream(started, request)
        except asyncio.CancelledError:
            current = self._current
            if current is not None and not current.is_terminal:
                LOGGER.info(
                    "chat.request.cancelled",
                    extra={"event": "chat.request.cancelled"},
                )
                if isinstance(current, Started):
                    current.subscription.cancel()
                await self._publish(current.cancelled())  # type: ignore[union-attr]
            raise

    async def _unless_cancelled(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable``, or return ``_CANCELLED`` once ``cancel()`` fires."""
        work = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
        if work.cancelled():
            return _CANCELLED
        return work.result()

    async def _stream(self, started: Started, request: ChatCompletionRequest) -> ChatMessageEvent:
        current: Started = started
        content = ""
        arrived = 0

        for attempt in range(self.retries + 1):
            if self._cancel_event.is_set():
                break
            try:
                stream = await self._unless_cancelled(self._client.chat(**request.to_kwargs()))
                if stream is _CANCELLED:
                    break
                subscription = StreamSubscription(stream)
                current.started(subscription)
                if self._cancel_event.is_set():
                    subscription.cancel()
                async for raw in subscription.chunks():
                    chunk = self._to_chunk(raw, arrived)
                    if chunk.is_empty:
                        continue
                    arrived += 1
                    content += chunk.content
                    current = current.response_arriving(
                        chunk, [ChatMessage.assistant(content)]
                    )
                    await self._publish(current)
                if subscription.cancelled:
                    self._cancel_event.set()
                break
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
                mapped_exc = self._map_exception(exc)
                if arrived or attempt >= self.retries:
                    LOGGER.warning(
                        "chat.exchange.failed",
                        extra={
                            "event": "chat.exchange.failed",
                            "attempt": attempt + 1,
                            "chunks": arrived,
                            "error_type": mapped_exc.__class__.__name__,
                        },
                    )
                    return await self._publish(current.failed(exc))
                LOGGER.warning(
                    "chat.request.retry",
                    extra={
                        "event": "chat.request.retry",
                        "attempt": attempt + 1,
                        "error_type": mapped_exc.__class__.__name__,
                    },
                )
                await self._unless_cancelled(
                    asyncio.sleep(self.retry_backoff_seconds * (attempt + 1))
                )

        if self._cancel_event.is_set():
            LOGGER.info(
                "chat.exchange.cancelled",
                extra={"event": "chat.exchange.cancelled", "chunks": arrived},
            )
            return await self._publish(current.cancelled())

        # Choices carry the streamed text as-is; the history keeps it normalized.
        final = ChatMessage.assistant(content)
        self.message_store.append(final)
        LOGGER.info(
            "chat.exchange.completed",
            extra={"event": "chat.exchange.completed", "chunks": arrived},
        )
        return await self._publish(current.response_arrived([final]))

    async def _publish(self, event: ChatMessageEvent) -> ChatMessageEvent:
        self._current = event
        await self.event_bus.publish(event)
        return event

    @staticmethod
    def _extract_field(chunk: Any, name: str, *, nested: bool = True) -> Any:
        """Read ``message.<name>`` (or a top-level ``name``) from a chunk payload.

        Tries SDK object attribute access first, then plain dict paths.
        """
        if nested:
            message_obj = getattr(chunk, "message", None)
            if message_obj is not None and not isinstance(chunk, dict):
                value = getattr(message_obj, name, None)
                if value is not None:
                    return value
        else:
            value = getattr(chunk, name, None)
            if value is not None and not isinstance(chunk, dict):
                return value

        if isinstance(chunk, dict):
            if nested:
                message = chunk.get("message")
                if isinstance(message, dict) and message.get(name) is not None:
                    return message.get(name)
            return chunk.get(name)
        return None

    @classmethod
    def _to_chunk(cls, raw: Any, index: int) -> ChatCompletionChunk:
        content = cls._extract_field(raw, "content")
        thinking = cls._extract_field(raw, "thinking")
        done_reason = cls._extract_field(raw, "done_reason", nested=False)
        return ChatCompletionChunk(
            index=index,
            content=content if isinstance(content, str) else "",
            thinking=thinking if isinstance(thinking, str) else "",
            done=bool(cls._extract_field(raw, "done", nested=False)),
            done_reason=done_reason if isinstance(done_reason, str) else None,
            raw=raw,
        )

    def _map_exception(self, exc: Exception) -> ChatLinkError:
        if isinstance(exc, ChatLinkError):
            return exc

        if isinstance(
            exc,
            (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout, httpx.NetworkError),
        ):
            return ChatConnectionError(f"Unable to connect to completion host {self.host}.")

        lower_message = str(exc).lower()
        if isinstance(exc, ResponseError) and exc.status_code == 404:
            return ChatModelNotFoundError(f"Model {self.model!r} was not found on {self.host}.")
        if "model" in lower_message and "not found" in lower_message:
            return ChatModelNotFoundError(f"Model {self.model!r} was not found on {self.host}.")

        return ChatStreamingError(f"Failed to stream response from {self.host}: {exc}")
