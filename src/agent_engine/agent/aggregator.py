"""Merge subagent results into one bounded synthesis."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from agent_engine.config import AggregatorConfig
from agent_engine.obs.tracing import estimate_token_count
from agent_engine.types import AggregatedResult, SubagentResult, TaskFailure, dedupe_sources

logger = logging.getLogger(__name__)

_SENTENCE_END = re.compile(r"[.!?](?=\s|$)")
_WORD = re.compile(r"\S+")


def truncation_marker(max_tokens: int) -> str:
    return f"[Truncated: content exceeded {max_tokens} tokens]"


def truncate_to_tokens(content: str, max_tokens: int) -> tuple[str, bool]:
    """Cut `content` so that it plus the marker fits in `max_tokens`.

    Prefers the last sentence boundary; falls back to a word boundary when
    not even the first sentence fits. Returns (text, truncated).
    """

    if estimate_token_count(content) <= max_tokens:
        return content, False

    marker = truncation_marker(max_tokens)
    budget = max_tokens - estimate_token_count(marker)

    cut = _last_fitting_end(content, (match.end() for match in _SENTENCE_END.finditer(content)), budget)
    if cut == 0:
        cut = _last_fitting_end(content, (match.end() for match in _WORD.finditer(content)), budget)

    body = content[:cut].rstrip()
    return (f"{body}\n\n{marker}" if body else marker), True


def _last_fitting_end(content: str, ends, budget: int) -> int:
    best = 0
    for end in ends:
        if estimate_token_count(content[:end]) > budget:
            break
        best = end
    return best


class Aggregator:
    def __init__(self, config: AggregatorConfig | None = None) -> None:
        self.config = config or AggregatorConfig()

    def merge(self, results: Sequence[SubagentResult], original_query: str) -> AggregatedResult:
        succeeded = [result for result in results if result.success]
        failures = tuple(
            TaskFailure(task_id=result.task_id, error=result.error or "Unknown error")
            for result in results
            if not result.success
        )

        sections: list[str] = []
        truncated_count = 0
        for result in succeeded:
            content, truncated = truncate_to_tokens(result.content.strip(), self.config.max_result_tokens)
            truncated_count += int(truncated)
            sections.append(f"*Sub-task {result.task_id}*\n{content}")

        if succeeded:
            synthesis = f"Findings for: {original_query.strip()}\n\n" + "\n\n".join(sections)
        else:
            synthesis = f"No information was retrieved for: {original_query.strip()}"

        if failures:
            synthesis += "\n\nFailed sub-tasks:\n" + "\n".join(
                f"• {failure.task_id}: {failure.error}" for failure in failures
            )

        sources = dedupe_sources([source for result in succeeded for source in result.sources])
        metadata: dict[str, int | float] = {
            "total": len(results),
            "succeeded": len(succeeded),
            "failed": len(failures),
            "truncated": truncated_count,
            "source_count": len(sources),
            "total_duration_ms": sum(result.duration_ms for result in results),
        }
        logger.info(
            "aggregate.merged total=%d succeeded=%d failed=%d truncated=%d sources=%d",
            metadata["total"],
            metadata["succeeded"],
            metadata["failed"],
            metadata["truncated"],
            metadata["source_count"],
        )
        return AggregatedResult(synthesis=synthesis, sources=sources, failures=failures, metadata=metadata)
