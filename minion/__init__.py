"""Minion: isolated git worktrees for concurrent coding agents."""

__version__ = "0.1.0"
