"""Tests for ChatLink exchange driving, retries, failure and cancellation."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
import unittest

from chatlink.bus import ExchangeEventBus
from chatlink.chat import ChatLink
from chatlink.events import (
    Cancelled,
    ChatMessageEvent,
    ExchangePhase,
    Failed,
    ResponseArrived,
    ResponseArriving,
    Started,
    Starting,
)
from chatlink.exceptions import ChatBusyError
from chatlink.messages import ChatMessage
from chatlink.subscription import StreamSubscription


def _content_chunk(text: str, done: bool = False) -> dict:
    return {"message": {"role": "assistant", "content": text}, "done": done}


async def _chunk_stream(
    chunks: list[dict], fail_after: int | None = None
) -> AsyncGenerator[dict, None]:
    for index, chunk in enumerate(chunks):
        if fail_after is not None and index == fail_after:
            raise RuntimeError("stream broke")
        yield chunk


class FakeClient:
    """Deterministic stand-in for ``ollama.AsyncClient``."""

    def __init__(
        self,
        responses: list[list[dict]],
        fail_calls: set[int] | None = None,
        fail_after: int | None = None,
        models: list[str] | None = None,
    ) -> None:
        self.responses = responses
        self.fail_calls = fail_calls or set()
        self.fail_after = fail_after
        self.calls = 0
        self.kwargs_per_call: list[dict] = []
        self.models = models or ["llama3.2"]

    async def chat(self, **kwargs) -> AsyncGenerator[dict, None]:
        self.calls += 1
        self.kwargs_per_call.append(kwargs)
        if self.calls in self.fail_calls:
            raise RuntimeError("simulated transient failure")
        payload_index = min(self.calls - 1, len(self.responses) - 1)
        return _chunk_stream(self.responses[payload_index], self.fail_after)

    async def list(self) -> dict:
        return {"models": [{"name": name} for name in self.models]}


def _make_link(client: FakeClient, **kwargs) -> ChatLink:
    return ChatLink(
        host="http://localhost:11434",
        model="llama3.2",
        system_prompt="You are helpful.",
        retry_backoff_seconds=0.0,
        client=client,
        **kwargs,
    )


class Recorder:
    def __init__(self, link: ChatLink) -> None:
        self.events: list[ChatMessageEvent] = []
        link.event_bus.subscribe(ChatMessageEvent, self.events.append)

    @property
    def phases(self) -> list[ExchangePhase]:
        return [event.phase for event in self.events]


class ChatLinkExchangeTests(unittest.IsolatedAsyncioTestCase):
    """Event sequences produced by a single exchange."""

    async def test_successful_exchange_publishes_full_chain(self) -> None:
        client = FakeClient([[_content_chunk("Hello"), _content_chunk(" world", done=True)]])
        link = _make_link(client)
        recorder = Recorder(link)

        terminal = await link.send_message("  Hi there ")

        self.assertIsInstance(terminal, ResponseArrived)
        self.assertEqual(
            recorder.phases,
            [
                ExchangePhase.STARTING,
                ExchangePhase.STARTED,
                ExchangePhase.RESPONSE_ARRIVING,
                ExchangePhase.RESPONSE_ARRIVING,
                ExchangePhase.RESPONSE_ARRIVED,
            ],
        )
        self.assertIs(recorder.events[-1], terminal)
        self.assertEqual(terminal.chain(), recorder.events)
        self.assertEqual(terminal.response_choices, [ChatMessage.assistant("Hello world")])
        self.assertIs(terminal.chat_link, link)
        self.assertEqual(terminal.user_message, ChatMessage.user("Hi there"))

        arriving = [e for e in recorder.events if isinstance(e, ResponseArriving)]
        self.assertEqual([e.response_chunk.index for e in arriving], [0, 1])
        self.assertEqual([e.response_chunk.content for e in arriving], ["Hello", " world"])
        self.assertTrue(arriving[-1].response_chunk.done)
        self.assertEqual(
            arriving[0].partial_response_choices, [ChatMessage.assistant("Hello")]
        )
        self.assertEqual(
            arriving[1].partial_response_choices, [ChatMessage.assistant("Hello world")]
        )
        self.assertIsNone(link.current_exchange)

    async def test_started_carries_request_and_backfilled_subscription(self) -> None:
        client = FakeClient([[_content_chunk("ok")]])
        link = _make_link(client, options={"temperature": 0.2})
        recorder = Recorder(link)

        await link.send_message("question")

        started = recorder.events[1]
        self.assertIsInstance(started, Started)
        self.assertIsInstance(started.subscription, StreamSubscription)
        request = started.request
        assert request is not None
        self.assertEqual(request.model, "llama3.2")
        self.assertEqual(
            list(request.messages),
            [ChatMessage.system("You are helpful."), ChatMessage.user("question")],
        )
        self.assertEqual(
            client.kwargs_per_call[0],
            {
                "model": "llama3.2",
                "messages": [
                    {"role": "system", "content": "You are helpful."},
                    {"role": "user", "content": "question"},
                ],
                "stream": True,
                "options": {"temperature": 0.2},
            },
        )

    async def test_history_persists_both_sides(self) -> None:
        client = FakeClient([[_content_chunk("first")], [_content_chunk("second")]])
        link = _make_link(client)

        await link.send_message("one")
        await link.send_message("two")

        self.assertEqual(
            link.messages,
            [
                ChatMessage.system("You are helpful."),
                ChatMessage.user("one"),
                ChatMessage.assistant("first"),
                ChatMessage.user("two"),
                ChatMessage.assistant("second"),
            ],
        )
        self.assertEqual(len(client.kwargs_per_call[1]["messages"]), 4)

    async def test_empty_message_starts_no_exchange(self) -> None:
        client = FakeClient([[_content_chunk("unused")]])
        link = _make_link(client)
        recorder = Recorder(link)

        self.assertIsNone(await link.send_message("   "))
        self.assertEqual(recorder.events, [])
        self.assertEqual(client.calls, 0)

    async def test_final_choice_matches_last_partial_choice(self) -> None:
        client = FakeClient([[_content_chunk("Hello"), _content_chunk(" world\n")]])
        link = _make_link(client)
        recorder = Recorder(link)

        terminal = await link.send_message("hi")

        last_partial = [e for e in recorder.events if isinstance(e, ResponseArriving)][-1]
        self.assertEqual(terminal.response_choices, last_partial.partial_response_choices)
        self.assertEqual(link.messages[-1], ChatMessage.assistant("Hello world"))

    async def test_empty_chunks_are_skipped(self) -> None:
        client = FakeClient(
            [[_content_chunk(""), _content_chunk("text"), {"done": True, "done_reason": "stop"}]]
        )
        link = _make_link(client)
        recorder = Recorder(link)

        terminal = await link.send_message("hi")

        self.assertIsInstance(terminal, ResponseArrived)
        self.assertEqual(recorder.phases.count(ExchangePhase.RESPONSE_ARRIVING), 1)


class ChatLinkFailureTests(unittest.IsolatedAsyncioTestCase):
    """Retries and terminal failures."""

    async def test_retries_before_first_chunk(self) -> None:
        client = FakeClient([[_content_chunk("recovered")]], fail_calls={1})
        link = _make_link(client, retries=2)
        recorder = Recorder(link)

        with self.assertLogs("chatlink.chat", level="WARNING") as logs:
            terminal = await link.send_message("hi")

        self.assertIsInstance(terminal, ResponseArrived)
        self.assertEqual(client.calls, 2)
        self.assertTrue(any("chat.request.retry" in line for line in logs.output))
        self.assertEqual(recorder.phases.count(ExchangePhase.STARTED), 1)

    async def test_exhausted_retries_produce_failed_with_original_cause(self) -> None:
        client = FakeClient([[_content_chunk("never")]], fail_calls={1, 2})
        link = _make_link(client, retries=1)
        recorder = Recorder(link)

        with self.assertLogs("chatlink.chat", level="WARNING"):
            terminal = await link.send_message("hi")

        self.assertIsInstance(terminal, Failed)
        self.assertIsInstance(terminal.cause, RuntimeError)
        self.assertEqual(str(terminal.cause), "simulated transient failure")
        self.assertEqual(
            recorder.phases,
            [ExchangePhase.STARTING, ExchangePhase.STARTED, ExchangePhase.FAILED],
        )
        self.assertEqual(link.messages[-1], ChatMessage.user("hi"))

    async def test_failure_after_chunks_is_not_retried(self) -> None:
        client = FakeClient(
            [[_content_chunk("partial"), _content_chunk("lost")]], fail_after=1
        )
        link = _make_link(client, retries=3)
        recorder = Recorder(link)

        with self.assertLogs("chatlink.chat", level="WARNING") as logs:
            terminal = await link.send_message("hi")

        self.assertIsInstance(terminal, Failed)
        self.assertEqual(client.calls, 1)
        self.assertIsInstance(terminal.previous, ResponseArriving)
        self.assertEqual(
            recorder.phases,
            [
                ExchangePhase.STARTING,
                ExchangePhase.STARTED,
                ExchangePhase.RESPONSE_ARRIVING,
                ExchangePhase.FAILED,
            ],
        )
        self.assertTrue(any("chat.exchange.failed" in line for line in logs.output))


class ChatLinkCancellationTests(unittest.IsolatedAsyncioTestCase):
    """Explicit cancellation through the link and through the task."""

    async def test_cancel_through_subscription_after_first_chunk(self) -> None:
        client = FakeClient(
            [[_content_chunk("one"), _content_chunk("two"), _content_chunk("three")]]
        )
        link = _make_link(client)
        recorder = Recorder(link)

        def cancel_on_first_chunk(event: ResponseArriving) -> None:
            self.assertTrue(link.cancel())

        link.event_bus.subscribe(ResponseArriving, cancel_on_first_chunk)
        terminal = await link.send_message("count")

        self.assertIsInstance(terminal, Cancelled)
        self.assertEqual(
            recorder.phases,
            [
                ExchangePhase.STARTING,
                ExchangePhase.STARTED,
                ExchangePhase.RESPONSE_ARRIVING,
                ExchangePhase.CANCELLED,
            ],
        )
        self.assertEqual(terminal.user_message, ChatMessage.user("count"))
        self.assertFalse(hasattr(terminal, "response_choices"))
        # No assistant reply is stored for a cancelled exchange.
        self.assertEqual(link.messages[-1], ChatMessage.user("count"))

    async def test_cancel_while_starting(self) -> None:
        client = FakeClient([[_content_chunk("unused")]])
        link = _make_link(client)
        recorder = Recorder(link)
        link.event_bus.subscribe(Starting, lambda event: link.cancel())

        terminal = await link.send_message("hi")

        self.assertIsInstance(terminal, Cancelled)
        self.assertIsInstance(terminal.previous, Starting)
        self.assertEqual(client.calls, 0)
        self.assertEqual(recorder.phases, [ExchangePhase.STARTING, ExchangePhase.CANCELLED])

    async def test_cancel_when_idle_returns_false(self) -> None:
        link = _make_link(FakeClient([[_content_chunk("x")]]))
        self.assertFalse(link.cancel())

    async def test_cancel_stops_stream_stalled_after_first_chunk(self) -> None:
        closed = asyncio.Event()

        async def stalled_stream() -> AsyncGenerator[dict, None]:
            try:
                yield _content_chunk("first")
                await asyncio.sleep(3600)
                yield _content_chunk("never")
            finally:
                closed.set()

        class StalledClient(FakeClient):
            async def chat(self, **kwargs):  # type: ignore[override]
                self.calls += 1
                return stalled_stream()

        link = _make_link(StalledClient([]))
        recorder = Recorder(link)
        first_chunk = asyncio.Event()
        link.event_bus.subscribe(ResponseArriving, lambda event: first_chunk.set())

        task = asyncio.create_task(link.send_message("hi"))
        await asyncio.wait_for(first_chunk.wait(), timeout=5)
        self.assertTrue(link.cancel())
        terminal = await asyncio.wait_for(task, timeout=5)

        self.assertIsInstance(terminal, Cancelled)
        self.assertIsInstance(terminal.previous, ResponseArriving)
        self.assertEqual(recorder.phases[-1], ExchangePhase.CANCELLED)
        self.assertTrue(closed.is_set())
        self.assertIsNone(link.current_exchange)
        self.assertEqual(link.messages[-1], ChatMessage.user("hi"))

    async def test_cancel_while_client_call_is_pending(self) -> None:
        call_started = asyncio.Event()
        call_cancelled = asyncio.Event()

        class HangingClient(FakeClient):
            async def chat(self, **kwargs):  # type: ignore[override]
                self.calls += 1
                call_started.set()
                try:
                    await asyncio.sleep(3600)
                except asyncio.CancelledError:
                    call_cancelled.set()
                    raise
                return _chunk_stream([])

        client = HangingClient([])
        link = _make_link(client)
        recorder = Recorder(link)

        task = asyncio.create_task(link.send_message("hi"))
        await asyncio.wait_for(call_started.wait(), timeout=5)
        self.assertTrue(link.cancel())
        terminal = await asyncio.wait_for(task, timeout=5)

        self.assertIsInstance(terminal, Cancelled)
        self.assertIsInstance(terminal.previous, Started)
        self.assertTrue(call_cancelled.is_set())
        self.assertEqual(client.calls, 1)
        self.assertEqual(
            recorder.phases,
            [ExchangePhase.STARTING, ExchangePhase.STARTED, ExchangePhase.CANCELLED],
        )

    async def test_cancel_during_retry_backoff_skips_remaining_attempts(self) -> None:
        client = FakeClient([[_content_chunk("late")]], fail_calls={1})
        link = _make_link(client)
        link.retry_backoff_seconds = 3600

        task = asyncio.create_task(link.send_message("hi"))
        for _ in range(50):
            if client.calls:
                break
            await asyncio.sleep(0)
        self.assertTrue(link.cancel())
        terminal = await asyncio.wait_for(task, timeout=5)

        self.assertIsInstance(terminal, Cancelled)
        self.assertEqual(client.calls, 1)

    async def test_task_cancellation_publishes_cancelled(self) -> None:
        release = asyncio.Event()

        async def slow_stream() -> AsyncGenerator[dict, None]:
            yield _content_chunk("first")
            await release.wait()
            yield _content_chunk("never")

        class SlowClient(FakeClient):
            async def chat(self, **kwargs):  # type: ignore[override]
                self.calls += 1
                return slow_stream()

        link = _make_link(SlowClient([]))
        recorder = Recorder(link)
        first_chunk = asyncio.Event()
        link.event_bus.subscribe(ResponseArriving, lambda event: first_chunk.set())

        task = asyncio.create_task(link.send_message("hi"))
        await asyncio.wait_for(first_chunk.wait(), timeout=5)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertEqual(recorder.phases[-1], ExchangePhase.CANCELLED)
        self.assertIsNone(link.current_exchange)

    async def test_second_exchange_while_busy_is_rejected(self) -> None:
        link = _make_link(FakeClient([[_content_chunk("x")]]))
        errors: list[Exception] = []

        async def try_second(event: Started) -> None:
            try:
                await link.send_message("second")
            except ChatBusyError as exc:
                errors.append(exc)

        link.event_bus.subscribe(Started, try_second)
        await link.send_message("first")
        self.assertTrue(errors)


class ChatLinkModelTests(unittest.IsolatedAsyncioTestCase):
    async def test_list_models_and_connection(self) -> None:
        link = _make_link(FakeClient([[]], models=["llama3.2", "qwen2.5"]))
        self.assertEqual(await link.list_models(), ["llama3.2", "qwen2.5"])
        self.assertTrue(await link.check_connection())

    async def test_set_model_ignores_blank(self) -> None:
        link = _make_link(FakeClient([[]]))
        link.set_model("  ")
        self.assertEqual(link.model, "llama3.2")
        link.set_model(" qwen2.5 ")
        self.assertEqual(link.model, "qwen2.5")

    async def test_custom_event_bus_is_used(self) -> None:
        bus = ExchangeEventBus()
        seen: list[ChatMessageEvent] = []
        bus.subscribe(ResponseArrived, seen.append)
        link = _make_link(FakeClient([[_content_chunk("x")]]), event_bus=bus)
        await link.send_message("hi")
        self.assertEqual(len(seen), 1)


if __name__ == "__main__":
    unittest.main()
