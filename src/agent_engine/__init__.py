"""Agent execution engine package."""

from .config import EngineConfig
from .types import AgentResponse, Outcome, Request

__all__ = ["AgentResponse", "EngineConfig", "Outcome", "Request"]
