"""Habit progress backend: counters, optimistic logging and the HTTP API."""

__version__ = "0.1.0"
