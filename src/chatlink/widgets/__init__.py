"""Widget exports for the chatlink UI."""

from .expandable_input import ExpandableInput

__all__ = ["ExpandableInput"]
