"""Terminal output helpers."""

from patchpilot.output.formatter import OutputFormatter, get_formatter

__all__ = ["OutputFormatter", "get_formatter"]
