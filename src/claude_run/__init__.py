"""Local web viewer for Claude Code conversation logs."""

__version__ = "0.1.0"
