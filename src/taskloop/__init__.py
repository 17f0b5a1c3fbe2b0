"""Iteration-control engine for running a code-generation agent against a task list."""

__version__ = "0.1.0"
