"""Textual application chatting through a ChatLink."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import Footer, Header, Log

from .chat import ChatLink
from .config import load_config
from .events import (
    Cancelled,
    ChatMessageEvent,
    Failed,
    ResponseArrived,
    ResponseArriving,
    Started,
)
from .logging_utils import configure_logging
from .task_manager import TaskManager
from .widgets.expandable_input import ExpandableInput

LOGGER = logging.getLogger(__name__)

EXCHANGE_TASK = "active_exchange"


def build_chat_link(config: dict[str, dict[str, Any]], client: Any | None = None) -> ChatLink:
    """Create a ChatLink from the ``[chat]`` config section."""
    chat_cfg = config["chat"]
    return ChatLink(
        host=str(chat_cfg["host"]),
        model=str(chat_cfg["model"]),
        system_prompt=str(chat_cfg["system_prompt"]),
        timeout=int(chat_cfg["timeout"]),
        retries=int(chat_cfg["retries"]),
        retry_backoff_seconds=float(chat_cfg["retry_backoff_seconds"]),
        max_history_messages=int(chat_cfg["max_history_messages"]),
        max_context_tokens=int(chat_cfg["max_context_tokens"]),
        options=dict(chat_cfg["options"]),
        client=client,
    )


class ChatLinkApp(App):
    """Transcript on top, expandable prompt editor at the bottom."""

    CSS = """
    #transcript {
        height: 1fr;
    }
    """

    BINDINGS = [
        Binding("escape", "interrupt_exchange", "Stop"),
        Binding("ctrl+l", "clear_conversation", "Clear"),
        Binding("ctrl+q", "quit", "Quit"),
    ]

    def __init__(
        self,
        config_path: Path | None = None,
        chat_link: ChatLink | None = None,
    ) -> None:
        super().__init__()
        self.config = load_config(config_path)
        configure_logging(self.config["logging"])
        self.title = str(self.config["app"]["title"])
        self.chat = chat_link if chat_link is not None else build_chat_link(self.config)
        self._task_manager = TaskManager()
        self.chat.event_bus.subscribe(ChatMessageEvent, self._on_exchange_event)

    def compose(self) -> ComposeResult:
        yield Header()
        yield Log(id="transcript", highlight=False)
        ui_cfg = self.config["ui"]
        yield ExpandableInput(
            placeholder="Ask something... (ctrl+e expands the editor)",
            replacement=str(ui_cfg["newline_replacement"]),
            expanded_rows=int(ui_cfg["expanded_rows"]),
            id="prompt",
        )
        yield Footer()

    def on_mount(self) -> None:
        self.sub_title = f"Model: {self.chat.model}"
        self.query_one("#prompt", ExpandableInput).focus()

    @property
    def transcript(self) -> Log:
        return self.query_one("#transcript", Log)

    @property
    def busy(self) -> bool:
        """Whether an exchange is still running, including one being stopped."""
        return self._task_manager.get(EXCHANGE_TASK) is not None

    def on_expandable_input_submitted(self, event: ExpandableInput.Submitted) -> None:
        if self.busy:
            self.notify("Wait for the current answer or press Esc.", severity="warning")
            return
        prompt = self.query_one("#prompt", ExpandableInput)
        prompt.collapse()
        prompt.clear()
        self._task_manager.start(EXCHANGE_TASK, self._run_exchange(event.text))

    async def _run_exchange(self, text: str) -> None:
        await self.chat.send_message(text)

    def _on_exchange_event(self, event: ChatMessageEvent) -> None:
        log = self.transcript
        if isinstance(event, ResponseArriving):
            log.write(event.response_chunk.content)
        elif isinstance(event, Started):
            self.sub_title = f"Model: {self.chat.model} | streaming..."
        elif isinstance(event, ResponseArrived):
            log.write("\n\n")
            self.sub_title = f"Model: {self.chat.model}"
        elif isinstance(event, Failed):
            log.write_line("")
            self.notify(f"Request failed: {event.cause}", severity="error")
            self.sub_title = f"Model: {self.chat.model}"
        elif isinstance(event, Cancelled):
            log.write_line(" [stopped]")
            self.sub_title = f"Model: {self.chat.model}"
        else:
            log.write_line(f"> {event.user_message.content}")
            log.write_line("")

    async def action_interrupt_exchange(self) -> None:
        """Stop the answer being streamed, if any."""
        if not self.busy:
            return
        if not self.chat.cancel():
            # Nothing reached the link yet; stop the task itself.
            await self._task_manager.cancel(EXCHANGE_TASK)

    async def action_clear_conversation(self) -> None:
        if self.busy:
            self.notify("Stop the current answer before clearing.", severity="warning")
            return
        self.chat.clear_history()
        self.transcript.clear()

    async def action_quit(self) -> None:
        await self._task_manager.cancel_all()
        self.exit()
