"""Prompt editor that switches between a single-line field and a text area."""

from __future__ import annotations

from textual.binding import Binding
from textual.containers import Vertical
from textual.message import Message
from textual.widgets import Input, TextArea

from ..prompt_text import (
    NEWLINE_REPLACEMENT,
    clamp_caret,
    collapse_text,
    expand_text,
    location_to_offset,
    normalize,
    offset_to_location,
)


class ExpandableInput(Vertical):
    """Single-line prompt field with an expanded multi-line editing mode.

    While collapsed, line breaks are shown as ``replacement`` so multi-line
    prompts survive the single-line field; ``text`` always reports real line
    breaks. The caret keeps its position across expand and collapse.
    """

    DEFAULT_CSS = """
    ExpandableInput {
        height: auto;
    }
    ExpandableInput > .hidden {
        display: none;
    }
    """

    BINDINGS = [
        Binding("ctrl+e", "toggle", "Expand/Collapse"),
        Binding("ctrl+s", "submit", "Send", show=False),
    ]

    class Submitted(Message):
        """Posted when the user sends the prompt."""

        def __init__(self, text: str) -> None:
            super().__init__()
            self.text = text

    def __init__(
        self,
        placeholder: str = "",
        *,
        replacement: str = NEWLINE_REPLACEMENT,
        expanded_rows: int = 8,
        name: str | None = None,
        id: str | None = None,
        classes: str | None = None,
    ) -> None:
        super().__init__(name=name, id=id, classes=classes)
        self.placeholder = placeholder
        self.replacement = replacement
        self.expanded_rows = max(2, expanded_rows)
        self._expanded = False

    def compose(self):  # type: ignore[override]
        yield Input(placeholder=self.placeholder, id="collapsed_input")
        area = TextArea(id="expanded_input", classes="hidden")
        area.styles.height = self.expanded_rows + 2
        yield area

    @property
    def expanded(self) -> bool:
        return self._expanded

    @property
    def _field(self) -> Input:
        return self.query_one("#collapsed_input", Input)

    @property
    def _area(self) -> TextArea:
        return self.query_one("#expanded_input", TextArea)

    @property
    def text(self) -> str:
        """Current prompt with real line breaks, whichever mode is showing."""
        if self._expanded:
            return self._area.text
        return normalize(self._field.value, self.replacement) or ""

    def clear(self) -> None:
        self._field.value = ""
        self._area.load_text("")

    def expand(self) -> None:
        if self._expanded:
            return
        field, area = self._field, self._area
        expanded = expand_text(field.value, self.replacement)
        area.load_text(expanded)
        area.move_cursor(offset_to_location(expanded, field.cursor_position))
        field.add_class("hidden")
        area.remove_class("hidden")
        self._expanded = True
        area.focus()

    def collapse(self) -> None:
        if not self._expanded:
            return
        field, area = self._field, self._area
        offset = location_to_offset(area.text, area.cursor_location)
        collapsed = collapse_text(area.text, self.replacement)
        field.value = collapsed
        field.cursor_position = clamp_caret(offset, collapsed)
        area.add_class("hidden")
        field.remove_class("hidden")
        self._expanded = False
        field.focus()

    def set_enabled(self, enabled: bool) -> None:
        """Enable or disable editing; disabling collapses the editor first."""
        if not enabled:
            self.collapse()
        self.disabled = not enabled

    def action_toggle(self) -> None:
        if self._expanded:
            self.collapse()
        else:
            self.expand()

    def action_submit(self) -> None:
        text = self.text
        if text.strip():
            self.post_message(self.Submitted(text))

    def on_input_submitted(self, event: Input.Submitted) -> None:
        event.stop()
        self.action_submit()
