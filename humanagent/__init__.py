"""Autonomous agent task-processing runtime."""

__version__ = "0.4.0"
