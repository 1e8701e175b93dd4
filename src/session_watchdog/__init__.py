"""Tick-driven supervisor for a worker hosted in a tmux or screen session."""

__version__ = "0.1.0"
