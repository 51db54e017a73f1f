"""Chat transport boundary and helpers for replaying verified text."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


class ChatTransport(Protocol):
    """Streaming chat surface. Only verified text is ever appended."""

    async def start_stream(self) -> None: ...

    async def append_chunk(self, text: str) -> None: ...

    async def stop(self) -> None: ...

    async def set_status(self, text: str) -> None: ...

    async def add_reaction(self, name: str) -> None: ...


@dataclass(slots=True)
class InMemoryTransport:
    """Records every call; used by tests and the HTTP streaming endpoint."""

    calls: list[tuple[str, str]] = field(default_factory=list)
    chunks: list[str] = field(default_factory=list)
    statuses: list[str] = field(default_factory=list)
    reactions: list[str] = field(default_factory=list)

    async def start_stream(self) -> None:
        self.calls.append(("start_stream", ""))

    async def append_chunk(self, text: str) -> None:
        self.calls.append(("append_chunk", text))
        self.chunks.append(text)

    async def stop(self) -> None:
        self.calls.append(("stop", ""))

    async def set_status(self, text: str) -> None:
        self.calls.append(("set_status", text))
        self.statuses.append(text)

    async def add_reaction(self, name: str) -> None:
        self.calls.append(("add_reaction", name))
        self.reactions.append(name)

    @property
    def text(self) -> str:
        return "".join(self.chunks)

    @property
    def stream_count(self) -> int:
        return sum(1 for name, _ in self.calls if name == "start_stream")


def chunk_text(text: str, size: int) -> list[str]:
    """Split `text` into pieces of at most `size` characters, preferring whitespace."""

    if size <= 0:
        raise ValueError("size must be positive")
    chunks: list[str] = []
    remaining = text
    while len(remaining) > size:
        cut = remaining.rfind(" ", 0, size)
        if cut <= 0:
            cut = size
        else:
            cut += 1
        chunks.append(remaining[:cut])
        remaining = remaining[cut:]
    if remaining:
        chunks.append(remaining)
    return chunks
