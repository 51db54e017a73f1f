"""Bounded local knowledge corpus with an immutable snapshot cache."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from agent_engine.config import GatherConfig
from agent_engine.retrieval.scoring import find_excerpt, keywords, overlap_score
from agent_engine.types import KnowledgeExcerpt

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = frozenset({".md", ".txt", ".yaml", ".yml", ".json"})


class KnowledgeStore(Protocol):
    """Read-only, best-effort knowledge search collaborator."""

    async def search_corpus(self, query: str) -> list[KnowledgeExcerpt]:
        """Return ranked excerpts; may return an empty list on failure."""


@dataclass(slots=True, frozen=True)
class CorpusDocument:
    reference: str
    title: str
    text: str


@dataclass(slots=True, frozen=True)
class CorpusHit:
    document: CorpusDocument
    score: int
    excerpt: str


class LocalCorpus:
    """Scans a directory tree once, then serves searches from a snapshot.

    The snapshot is a tuple of documents replaced wholesale on refresh, so
    concurrent readers never observe a partially built corpus. Only one
    refresh runs at a time.
    """

    def __init__(self, root: str | Path, config: GatherConfig | None = None) -> None:
        self.root = Path(root)
        self.config = config or GatherConfig()
        self._snapshot: tuple[CorpusDocument, ...] | None = None
        self._loaded_at = 0.0
        self._refresh_lock = asyncio.Lock()

    @property
    def documents(self) -> tuple[CorpusDocument, ...]:
        return self._snapshot or ()

    def load(self) -> tuple[CorpusDocument, ...]:
        """Synchronously (re)build the snapshot. Intended for startup."""
        self._snapshot = self._scan()
        self._loaded_at = time.monotonic()
        logger.info("corpus.loaded root=%s documents=%d", self.root, len(self._snapshot))
        return self._snapshot

    async def refresh_if_stale(self) -> None:
        if self._snapshot is not None and not self._is_stale():
            return
        async with self._refresh_lock:
            if self._snapshot is not None and not self._is_stale():
                return
            snapshot = await asyncio.to_thread(self._scan)
            self._snapshot = snapshot
            self._loaded_at = time.monotonic()
            logger.info("corpus.loaded root=%s documents=%d", self.root, len(snapshot))

    async def search(self, query: str, *, top_k: int | None = None) -> list[CorpusHit]:
        await self.refresh_if_stale()
        terms = keywords(query)
        if not terms:
            return []

        hits: list[CorpusHit] = []
        for document in self.documents:
            score = overlap_score(terms, document.text)
            if score <= 0:
                continue
            hits.append(
                CorpusHit(document=document, score=score, excerpt=find_excerpt(document.text, terms))
            )
        hits.sort(key=lambda hit: (-hit.score, hit.document.reference))
        return hits[: top_k if top_k is not None else self.config.max_excerpts]

    async def document(self, reference: str) -> CorpusDocument | None:
        await self.refresh_if_stale()
        for document in self.documents:
            if document.reference == reference:
                return document
        return None

    async def search_corpus(self, query: str) -> list[KnowledgeExcerpt]:
        return [
            KnowledgeExcerpt(reference=hit.document.reference, excerpt=hit.excerpt)
            for hit in await self.search(query)
        ]

    def _is_stale(self) -> bool:
        interval = self.config.corpus_refresh_seconds
        return interval > 0 and (time.monotonic() - self._loaded_at) >= interval

    def _scan(self) -> tuple[CorpusDocument, ...]:
        cfg = self.config
        documents: list[CorpusDocument] = []
        files_read = 0
        bytes_read = 0
        queue: deque[tuple[Path, int]] = deque([(self.root, 0)])

        while queue and files_read < cfg.max_files and bytes_read < cfg.max_total_bytes:
            directory, depth = queue.popleft()
            if depth > cfg.max_depth:
                continue
            try:
                entries = sorted(directory.iterdir())
            except OSError:
                continue

            for entry in entries:
                if entry.is_dir():
                    queue.append((entry, depth + 1))
                    continue
                if files_read >= cfg.max_files or bytes_read >= cfg.max_total_bytes:
                    break
                if not entry.is_file() or entry.suffix.lower() not in ALLOWED_EXTENSIONS:
                    continue
                try:
                    size = entry.stat().st_size
                except OSError:
                    continue
                if size <= 0 or size > cfg.max_file_bytes or bytes_read + size > cfg.max_total_bytes:
                    continue
                try:
                    text = entry.read_text(encoding="utf-8")
                except (OSError, UnicodeDecodeError):
                    continue

                files_read += 1
                bytes_read += size
                documents.append(
                    CorpusDocument(
                        reference=entry.relative_to(self.root).as_posix(),
                        title=entry.name,
                        text=text,
                    )
                )

        return tuple(documents)
