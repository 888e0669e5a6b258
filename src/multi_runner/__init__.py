"""Run an AI coding-assistant CLI across isolated worktrees and compare the results."""

__version__ = "0.1.0"
