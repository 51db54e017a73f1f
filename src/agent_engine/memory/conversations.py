"""Conversation history collaborator interface and an in-memory adapter."""

from __future__ import annotations

from collections import defaultdict
from typing import Protocol

from agent_engine.types import HistoryEntry


class ConversationStore(Protocol):
    """Read-only, best-effort access to prior turns of a session."""

    async def fetch_history(self, session_id: str, limit: int) -> list[HistoryEntry]:
        """Return up to `limit` most recent entries, oldest first."""


class InMemoryConversationStore:
    """Deterministic store used for tests and local prototyping."""

    def __init__(self) -> None:
        self._sessions: dict[str, list[HistoryEntry]] = defaultdict(list)

    def append(self, session_id: str, role: str, text: str) -> None:
        self._sessions[session_id].append(HistoryEntry(role=role, text=text))

    async def fetch_history(self, session_id: str, limit: int) -> list[HistoryEntry]:
        if limit <= 0:
            return []
        return list(self._sessions.get(session_id, [])[-limit:])
