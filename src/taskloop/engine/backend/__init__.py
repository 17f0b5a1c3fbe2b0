"""Agent backend implementations."""

from taskloop.engine.backend.base import AgentBackend, BackendRunRequest, BackendRunResult
from taskloop.engine.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "BackendRunError",
    "BackendRunRequest",
    "BackendRunResult",
    "CliAgentBackend",
]
