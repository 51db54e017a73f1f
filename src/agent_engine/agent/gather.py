"""Gather phase: rank thread history and scan local knowledge.

Gathering is lexical (no embeddings) and bounded in time and size so it never
becomes the latency bottleneck. It is also best-effort: a failing corpus or
store contributes nothing instead of failing the request.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import replace

from agent_engine.config import GatherConfig
from agent_engine.memory.conversations import ConversationStore
from agent_engine.obs.tracing import Timer, estimate_token_count
from agent_engine.retrieval.corpus import KnowledgeStore, LocalCorpus
from agent_engine.retrieval.scoring import clip, keywords, overlap_score
from agent_engine.types import (
    GatheredContext,
    HistoryEntry,
    KnowledgeExcerpt,
    Request,
    Source,
    SourceType,
    dedupe_sources,
)

logger = logging.getLogger(__name__)

_SNIPPET_CHARS = 500
_SOURCE_EXCERPT_CHARS = 200


class Gatherer:
    def __init__(
        self,
        corpus: LocalCorpus | None = None,
        config: GatherConfig | None = None,
        *,
        conversation_store: ConversationStore | None = None,
        knowledge_store: KnowledgeStore | None = None,
    ) -> None:
        self.corpus = corpus
        self.config = config or GatherConfig()
        self.conversation_store = conversation_store
        self.knowledge_store = knowledge_store

    async def gather(
        self,
        request: Request,
        *,
        pinned: KnowledgeExcerpt | None = None,
        pinned_sources: tuple[Source, ...] = (),
    ) -> GatheredContext:
        """Assemble bounded context for `request`.

        `pinned` is placed ahead of every search result and is the last item
        shed when the rendered context exceeds `max_context_chars`.
        """

        with Timer() as timer:
            history = await self.load_history(request)
            thread = self._rank_history(request, history)
            knowledge: list[tuple[KnowledgeExcerpt, tuple[Source, ...]]] = [
                (excerpt, (source,)) for excerpt, source in await self._search_knowledge(request)
            ]
            if pinned is not None:
                knowledge.insert(0, (pinned, pinned_sources))
            context = self._assemble(knowledge, thread)

        logger.info(
            "context.gathered trace_id=%s thread=%d knowledge=%d sources=%d duration_ms=%.1f",
            request.trace_id,
            len(context.thread_snippets),
            len(context.knowledge_excerpts),
            len(context.relevant_sources),
            timer.elapsed_ms,
        )
        return context

    async def load_history(self, request: Request) -> list[HistoryEntry]:
        if request.history or self.conversation_store is None:
            return list(request.history)
        try:
            return await asyncio.wait_for(
                self.conversation_store.fetch_history(request.session_id, self.config.history_limit),
                timeout=self.config.timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "history.fetch_failed trace_id=%s error=%s", request.trace_id, type(exc).__name__
            )
            return []

    def _rank_history(
        self, request: Request, history: list[HistoryEntry]
    ) -> list[tuple[str, Source]]:
        """Highest keyword-overlap entries that fit the thread token budget."""

        terms = keywords(request.text)
        scored = [
            (overlap_score(terms, entry.text), index, entry)
            for index, entry in enumerate(history)
            if entry.text.strip()
        ]
        scored = [item for item in scored if item[0] > 0]
        scored.sort(key=lambda item: (-item[0], -item[1]))

        kept: list[tuple[str, Source]] = []
        budget = self.config.thread_token_budget
        for _, index, entry in scored:
            if len(kept) >= self.config.max_thread_snippets:
                break
            snippet = f"({entry.role}) {clip(entry.text.strip(), _SNIPPET_CHARS)}"
            cost = estimate_token_count(snippet)
            if cost > budget:
                continue
            budget -= cost
            kept.append(
                (
                    snippet,
                    Source(
                        id=f"thread:{request.session_id}:{index}",
                        type=SourceType.THREAD,
                        title=f"Thread message #{index + 1}",
                        excerpt=clip(entry.text.strip(), _SOURCE_EXCERPT_CHARS),
                    ),
                )
            )
        return kept

    async def _search_knowledge(self, request: Request) -> list[tuple[KnowledgeExcerpt, Source]]:
        corpus_items, store_items = await asyncio.gather(
            self._bounded("corpus", self._search_corpus(request), request),
            self._bounded("knowledge_store", self._search_store(request), request),
        )
        return (corpus_items + store_items)[: self.config.max_excerpts]

    async def _bounded(
        self,
        part: str,
        work: Awaitable[list[tuple[KnowledgeExcerpt, Source]]],
        request: Request,
    ) -> list[tuple[KnowledgeExcerpt, Source]]:
        try:
            return await asyncio.wait_for(work, timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "gather.timeout trace_id=%s part=%s timeout_s=%.1f",
                request.trace_id,
                part,
                self.config.timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "gather.failed trace_id=%s part=%s error=%s", request.trace_id, part, type(exc).__name__
            )
        return []

    async def _search_corpus(self, request: Request) -> list[tuple[KnowledgeExcerpt, Source]]:
        if self.corpus is None:
            return []
        hits = await self.corpus.search(request.text, top_k=self.config.max_excerpts)
        return [
            (
                KnowledgeExcerpt(reference=hit.document.reference, excerpt=hit.excerpt),
                Source(
                    id=f"file:{hit.document.reference}",
                    type=SourceType.FILE,
                    title=hit.document.title,
                    excerpt=clip(hit.excerpt, _SOURCE_EXCERPT_CHARS),
                ),
            )
            for hit in hits
        ]

    async def _search_store(self, request: Request) -> list[tuple[KnowledgeExcerpt, Source]]:
        if self.knowledge_store is None:
            return []
        excerpts = await self.knowledge_store.search_corpus(request.text)
        return [
            (
                excerpt,
                Source(
                    id=f"knowledge:{excerpt.reference}",
                    type=SourceType.WEB if excerpt.url else SourceType.FILE,
                    title=excerpt.reference,
                    url=excerpt.url,
                    excerpt=clip(excerpt.excerpt, _SOURCE_EXCERPT_CHARS),
                ),
            )
            for excerpt in excerpts
        ]

    def _assemble(
        self,
        knowledge: list[tuple[KnowledgeExcerpt, tuple[Source, ...]]],
        thread: list[tuple[str, Source]],
    ) -> GatheredContext:
        """Build the context and shed until the rendered block fits `max_context_chars`.

        Thread items go first, then trailing knowledge items. The first
        knowledge item is clipped, then loses its sources, and is dropped
        only when nothing else is left to shed.
        """

        knowledge = list(knowledge)
        thread = list(thread)
        while True:
            context = GatheredContext(
                thread_snippets=tuple(snippet for snippet, _ in thread),
                knowledge_excerpts=tuple(excerpt for excerpt, _ in knowledge),
                relevant_sources=dedupe_sources(
                    [source for _, sources in knowledge for source in sources]
                    + [source for _, source in thread]
                ),
            )
            overflow = len(context.render()) - self.config.max_context_chars
            if overflow <= 0:
                return context
            if thread:
                thread.pop()
            elif len(knowledge) > 1:
                knowledge.pop()
            elif knowledge:
                shrunk = self._shrink(knowledge[0], overflow)
                knowledge = [shrunk] if shrunk is not None else []
            else:
                return context

    @staticmethod
    def _shrink(
        item: tuple[KnowledgeExcerpt, tuple[Source, ...]], overflow: int
    ) -> tuple[KnowledgeExcerpt, tuple[Source, ...]] | None:
        excerpt, sources = item
        text = excerpt.excerpt.strip()
        keep = len(text) - overflow - 1
        if keep > 0:
            return replace(excerpt, excerpt=clip(text, keep)), sources
        if sources:
            return replace(excerpt, excerpt=""), sources[:-1]
        return None
