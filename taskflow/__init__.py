"""Taskflow -- live dashboard replica of tasks, chat, and the user directory."""

__version__ = "0.1.0"
