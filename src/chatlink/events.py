"""Lifecycle events of a single chat exchange.

An exchange starts with :meth:`ChatMessageEvent.starting` and advances only by
calling transition methods on the latest event, each of which returns a new
frozen event linked to its predecessor::

    Starting -> Started -> (ResponseArriving* -> ResponseArrived | Failed | Cancelled)

``Failed`` and ``Cancelled`` are also reachable straight from ``Starting``.
Transition methods exist only on the phases where they are legal, so code
holding a ``ResponseArrived`` always has final choices and code holding a
``Starting`` has no response data to read.

The only mutable state is the subscription of a ``Started`` event, which can
be back-filled once the streaming call hands out its cancellation handle.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from .messages import ChatCompletionChunk, ChatCompletionRequest, ChatMessage
from .subscription import EMPTY_SUBSCRIPTION, Subscription, SubscriptionSlot


class ExchangePhase(str, Enum):
    """Phases a chat exchange passes through."""

    STARTING = "STARTING"
    STARTED = "STARTED"
    RESPONSE_ARRIVING = "RESPONSE_ARRIVING"
    RESPONSE_ARRIVED = "RESPONSE_ARRIVED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_PHASES


_TERMINAL_PHASES = frozenset(
    {ExchangePhase.RESPONSE_ARRIVED, ExchangePhase.FAILED, ExchangePhase.CANCELLED}
)


def _require(value: Any, name: str) -> Any:
    if value is None:
        raise ValueError(f"{name} must not be None")
    return value


@dataclass(frozen=True, eq=False, kw_only=True)
class ChatMessageEvent:
    """Common identity of every event in an exchange."""

    phase: ClassVar[ExchangePhase]

    chat_link: Any
    user_message: ChatMessage
    previous: ChatMessageEvent | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        _require(self.chat_link, "chat_link")
        _require(self.user_message, "user_message")
        allowed = self._predecessor_types()
        if self.previous is None:
            if allowed:
                raise TypeError(
                    f"{type(self).__name__} must be derived from a prior event"
                )
        elif not allowed or not isinstance(self.previous, allowed):
            raise TypeError(
                f"{type(self).__name__} cannot follow {type(self.previous).__name__}"
            )

    @classmethod
    def _predecessor_types(cls) -> tuple[type, ...]:
        return ()

    @staticmethod
    def starting(chat_link: Any, user_message: ChatMessage) -> Starting:
        """Open a new exchange for ``user_message`` sent through ``chat_link``."""
        return Starting(chat_link=chat_link, user_message=user_message)

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def chain(self) -> list[ChatMessageEvent]:
        """Return the exchange history from ``Starting`` up to this event."""
        events: list[ChatMessageEvent] = []
        current: ChatMessageEvent | None = self
        while current is not None:
            events.append(current)
            current = current.previous
        events.reverse()
        return events

    def _successor_identity(self) -> dict[str, Any]:
        return {
            "chat_link": self.chat_link,
            "user_message": self.user_message,
            "previous": self,
        }


class _Interruptible(ChatMessageEvent):
    """Phases from which an exchange may still fail or be cancelled."""

    def failed(self, cause: BaseException) -> Failed:
        _require(cause, "cause")
        return Failed(cause=cause, **self._successor_identity())

    def cancelled(self) -> Cancelled:
        return Cancelled(**self._successor_identity())


@dataclass(frozen=True, eq=False, kw_only=True)
class Starting(_Interruptible):
    """The user submitted a message; nothing was sent yet."""

    phase: ClassVar[ExchangePhase] = ExchangePhase.STARTING

    def started(self, request: ChatCompletionRequest | None = None) -> Started:
        """Mark the request as dispatched, optionally recording its snapshot."""
        return Started(request=request, **self._successor_identity())


@dataclass(frozen=True, eq=False, kw_only=True)
class Started(_Interruptible):
    """The request is in flight and may be cancelled through ``subscription``."""

    phase: ClassVar[ExchangePhase] = ExchangePhase.STARTED

    request: ChatCompletionRequest | None = None
    subscription_slot: SubscriptionSlot = field(
        default_factory=SubscriptionSlot, repr=False
    )

    @classmethod
    def _predecessor_types(cls) -> tuple[type, ...]:
        return (Starting,)

    @property
    def subscription(self) -> Subscription:
        return self.subscription_slot.get()

    def started(self, subscription: Subscription) -> Started:
        """Back-fill the cancellation handle on this same event and return it."""
        self.subscription_slot.set(_require(subscription, "subscription"))
        return self

    def response_arriving(
        self,
        response_chunk: ChatCompletionChunk,
        partial_response_choices: Sequence[ChatMessage],
    ) -> ResponseArriving:
        """Record one streamed chunk and the choices accumulated so far."""
        _require(response_chunk, "response_chunk")
        _require(partial_response_choices, "partial_response_choices")
        return ResponseArriving(
            request=self.request,
            subscription_slot=SubscriptionSlot(self.subscription),
            response_chunk=response_chunk,
            partial_response_choices=partial_response_choices,
            **self._successor_identity(),
        )

    def response_arrived(self, response_choices: Sequence[ChatMessage]) -> ResponseArrived:
        """Finish the exchange with the final response choices."""
        _require(response_choices, "response_choices")
        return ResponseArrived(
            request=self.request,
            response_choices=response_choices,
            **self._successor_identity(),
        )


@dataclass(frozen=True, eq=False, kw_only=True)
class ResponseArriving(Started):
    """A chunk of the response arrived; more may follow."""

    phase: ClassVar[ExchangePhase] = ExchangePhase.RESPONSE_ARRIVING

    response_chunk: ChatCompletionChunk
    partial_response_choices: Sequence[ChatMessage]

    @classmethod
    def _predecessor_types(cls) -> tuple[type, ...]:
        return (Started,)


@dataclass(frozen=True, eq=False, kw_only=True)
class ResponseArrived(ChatMessageEvent):
    """The complete response arrived. Terminal."""

    phase: ClassVar[ExchangePhase] = ExchangePhase.RESPONSE_ARRIVED

    response_choices: Sequence[ChatMessage]
    request: ChatCompletionRequest | None = None

    @classmethod
    def _predecessor_types(cls) -> tuple[type, ...]:
        return (Started,)


@dataclass(frozen=True, eq=False, kw_only=True)
class Failed(ChatMessageEvent):
    """The exchange stopped because of an error. Terminal."""

    phase: ClassVar[ExchangePhase] = ExchangePhase.FAILED

    cause: BaseException

    @classmethod
    def _predecessor_types(cls) -> tuple[type, ...]:
        return (Starting, Started)


@dataclass(frozen=True, eq=False, kw_only=True)
class Cancelled(ChatMessageEvent):
    """The exchange was stopped on request. Terminal."""

    phase: ClassVar[ExchangePhase] = ExchangePhase.CANCELLED

    @classmethod
    def _predecessor_types(cls) -> tuple[type, ...]:
        return (Starting, Started)


ExchangeEvent = Starting | Started | ResponseArriving | ResponseArrived | Failed | Cancelled
