"""patchpilot - budget-aware planning and sandboxed execution of coding-agent tasks."""

__version__ = "0.1.0"
