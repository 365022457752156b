"""Text codec behind the expandable prompt editor.

The collapsed editor is a single-line field, so line breaks are stored as a
visible sentinel character. Expanding the editor turns every sentinel back into
a line break; collapsing it does the reverse. Both forms have one character per
line break, so a caret offset carries over unchanged apart from ``\\r\\n``.
"""

from __future__ import annotations

from collections.abc import Iterable
import re

NEWLINE_REPLACEMENT = "⏎"

_LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")


def split_lines(collapsed: str, replacement: str = NEWLINE_REPLACEMENT) -> list[str]:
    """Split collapsed text at each sentinel, keeping empty lines."""
    return collapsed.split(replacement)


def join_lines(lines: Iterable[str], replacement: str = NEWLINE_REPLACEMENT) -> str:
    return replacement.join(lines)


def expand_text(collapsed: str, replacement: str = NEWLINE_REPLACEMENT) -> str:
    """Return the multi-line form shown by the expanded editor."""
    return "\n".join(split_lines(collapsed, replacement))


def collapse_text(expanded: str, replacement: str = NEWLINE_REPLACEMENT) -> str:
    """Return the single-line form stored by the collapsed editor."""
    return join_lines(_LINE_BREAK_RE.split(expanded), replacement)


def normalize(text: str | None, replacement: str = NEWLINE_REPLACEMENT) -> str | None:
    """Return the text a collapsed field reports to its callers."""
    if text is None:
        return None
    return text.replace(replacement, "\n")


def clamp_caret(position: int, text: str) -> int:
    return min(max(position, 0), len(text))


def offset_to_location(text: str, offset: int) -> tuple[int, int]:
    """Convert a character offset in ``\\n``-separated text into ``(row, column)``."""
    offset = clamp_caret(offset, text)
    before = text[:offset]
    row = before.count("\n")
    column = offset - (before.rfind("\n") + 1)
    return row, column


def location_to_offset(text: str, location: tuple[int, int]) -> int:
    """Convert ``(row, column)`` back into a character offset, clamped to the text."""
    row, column = location
    lines = text.split("\n")
    if row < 0:
        return 0
    if row >= len(lines):
        return len(text)
    offset = sum(len(line) + 1 for line in lines[:row])
    return offset + min(max(column, 0), len(lines[row]))
