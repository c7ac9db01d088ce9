"""nestor: a personal-assistant host running one sandboxed agent session per group."""

__version__ = "0.1.0"
