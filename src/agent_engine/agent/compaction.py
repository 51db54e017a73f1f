"""Compaction of long conversation history.

Older entries are folded into one summary entry and the most recent
`keep_last` entries are kept verbatim. Compaction is best-effort: any
failure leaves the history unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from agent_engine.agent.aggregator import truncate_to_tokens
from agent_engine.agent.completion import CompletionService, TextDelta
from agent_engine.config import CompactionConfig
from agent_engine.obs.tracing import estimate_token_count
from agent_engine.retrieval.scoring import clip
from agent_engine.types import HistoryEntry

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary]"

SUMMARIZATION_PROMPT = """You are summarizing a conversation to preserve critical context. Extract and structure the following:

## Preferences
- User formatting preferences (style, response length, tone)
- Communication constraints or requests

## Facts & Decisions
- Key facts established (IDs, names, configurations)
- Decisions made and approaches chosen
- Tool outputs that are authoritative

## Open Items
- Unresolved questions or tasks
- Pending actions

## Key Context
- Project constraints and technical requirements mentioned
- Important background information

Be comprehensive but concise. Use bullet points. Preserve exact values (IDs, paths, names).
Do not include conversational filler or pleasantries.
Only summarize what you are given."""


@dataclass(slots=True, frozen=True)
class CompactionResult:
    history: tuple[HistoryEntry, ...]
    applied: bool
    original_tokens: int
    compacted_tokens: int
    summary: str = ""


def estimate_history_tokens(history: Sequence[HistoryEntry], user_text: str = "") -> int:
    return sum(estimate_token_count(entry.text) for entry in history) + estimate_token_count(user_text)


class HistoryCompactor:
    """Summarizes older history through the completion service when one is
    given, otherwise with an extractive bullet list."""

    def __init__(
        self,
        completion: CompletionService | None = None,
        config: CompactionConfig | None = None,
    ) -> None:
        self.completion = completion
        self.config = config or CompactionConfig()

    def should_compact(self, history: Sequence[HistoryEntry], user_text: str = "") -> bool:
        if len(history) <= self.config.keep_last:
            return False
        threshold = int(self.config.max_context_tokens * self.config.threshold)
        return estimate_history_tokens(history, user_text) >= threshold

    async def compact(
        self,
        history: Sequence[HistoryEntry],
        user_text: str = "",
        *,
        trace_id: str | None = None,
    ) -> CompactionResult:
        history = tuple(history)
        original_tokens = estimate_history_tokens(history, user_text)
        unchanged = CompactionResult(
            history=history,
            applied=False,
            original_tokens=original_tokens,
            compacted_tokens=original_tokens,
        )
        if not self.should_compact(history, user_text):
            return unchanged

        keep = self.config.keep_last
        older, kept = history[:-keep], history[-keep:]
        logger.info(
            "compaction.summarizing trace_id=%s summarize=%d keep=%d tokens=%d",
            trace_id,
            len(older),
            len(kept),
            original_tokens,
        )
        try:
            summary = await asyncio.wait_for(self._summarize(older), timeout=self.config.timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "compaction.failed trace_id=%s error=%s messages=%d",
                trace_id,
                type(exc).__name__,
                len(history),
            )
            return unchanged

        summary, _ = truncate_to_tokens(summary, self.config.max_summary_tokens)
        compacted = (HistoryEntry(role="assistant", text=f"{SUMMARY_PREFIX}\n\n{summary}"),) + kept
        compacted_tokens = estimate_history_tokens(compacted, user_text)
        logger.info(
            "compaction.complete trace_id=%s messages=%d->%d tokens=%d->%d",
            trace_id,
            len(history),
            len(compacted),
            original_tokens,
            compacted_tokens,
        )
        return CompactionResult(
            history=compacted,
            applied=True,
            original_tokens=original_tokens,
            compacted_tokens=compacted_tokens,
            summary=summary,
        )

    async def _summarize(self, entries: Sequence[HistoryEntry]) -> str:
        if self.completion is None:
            return "\n".join(
                f"- {entry.role}: {clip(' '.join(entry.text.split()), 200)}"
                for entry in entries
                if entry.text.strip()
            )

        conversation = "\n\n".join(f"{entry.role.upper()}: {entry.text}" for entry in entries)
        messages = [{"role": "user", "content": f"Summarize this conversation history:\n\n{conversation}"}]
        parts: list[str] = []
        async for event in self.completion.send(messages, [], SUMMARIZATION_PROMPT):
            if isinstance(event, TextDelta):
                parts.append(event.text)
        summary = "".join(parts).strip()
        if not summary:
            raise ValueError("Summarization returned no text")
        return summary
