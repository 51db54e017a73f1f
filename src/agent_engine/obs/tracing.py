"""Tracing, cost accounting, and request-level metrics.

Spans and trace records carry lengths, counts, codes, booleans, and
sanitized tool arguments. Request text and answers are reduced to their
lengths and token estimates; tool results are never recorded.
"""

from __future__ import annotations

import logging
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from agent_engine.types import Outcome, ToolTrace

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class SpanRecord:
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp_utc: str = field(default_factory=_utc_now)


def child_trace_id(parent: str, name: str) -> str:
    """Trace id for work done on behalf of `parent`, e.g. one sub-task."""
    return f"{parent}/{name}"


class Tracer(Protocol):
    """Span sink keyed by the trace id threaded through every call."""

    def record_span(self, trace_id: str, span: SpanRecord) -> None:
        """Persist one span."""


class NullTracer:
    def record_span(self, trace_id: str, span: SpanRecord) -> None:
        return None


@dataclass(slots=True)
class TraceRecord:
    trace_id: str
    timestamp_utc: str
    outcome: str
    verified: bool
    attempts: int
    request_chars: int
    answer_chars: int
    source_count: int
    citation_count: int
    tool_traces: list[ToolTrace]
    input_tokens: int
    output_tokens: int
    usage_reported: bool
    estimated_cost_usd: float
    latency_ms: float
    spans: list[SpanRecord] = field(default_factory=list)
    child_spans: dict[str, list[SpanRecord]] = field(default_factory=dict)

    @property
    def first_attempt_pass(self) -> bool:
        return self.verified and self.attempts == 1


@dataclass(slots=True, frozen=True)
class CostModel:
    """USD per 1K tokens, split by direction."""

    input_per_1k: float = 0.005
    output_per_1k: float = 0.015

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens * self.input_per_1k + output_tokens * self.output_per_1k) / 1000.0


class TraceStore:
    """In-memory `Tracer` that also keeps one summary record per request.

    Spans and tool traces may arrive before the record is created; they are
    buffered by trace id and attached when `create_record` runs. Buffers for
    child trace ids (see `child_trace_id`) are folded into the parent's
    record. Both the pending buffers and the records are bounded; the oldest
    entries are evicted first.
    """

    def __init__(
        self,
        *,
        cost_model: CostModel | None = None,
        max_records: int = 1000,
        max_pending: int = 1000,
    ) -> None:
        self._records: dict[str, TraceRecord] = {}
        self._spans: dict[str, list[SpanRecord]] = {}
        self._tool_traces: dict[str, list[ToolTrace]] = {}
        self._cost_model = cost_model or CostModel()
        self._max_records = max_records
        self._max_pending = max_pending

    def __len__(self) -> int:
        return len(self._records)

    def record_span(self, trace_id: str, span: SpanRecord) -> None:
        record = self._records.get(trace_id)
        if record is not None:
            record.spans.append(span)
            return
        self._pending(self._spans, trace_id).append(span)

    def record_tool(self, trace_id: str, trace: ToolTrace) -> None:
        record = self._records.get(trace_id)
        if record is not None:
            record.tool_traces.append(trace)
            return
        self._pending(self._tool_traces, trace_id).append(trace)

    def spans_for(self, trace_id: str) -> list[SpanRecord]:
        record = self._records.get(trace_id)
        if record is not None:
            return list(record.spans)
        return list(self._spans.get(trace_id, []))

    def create_record(
        self,
        *,
        trace_id: str,
        outcome: Outcome,
        verified: bool,
        attempts: int,
        request_text: str,
        answer_text: str,
        source_count: int,
        citation_count: int,
        latency_ms: float,
    ) -> TraceRecord:
        spans = self._spans.pop(trace_id, [])
        tool_traces = self._tool_traces.pop(trace_id, [])
        prefix = child_trace_id(trace_id, "")
        child_spans = {
            key: self._spans.pop(key) for key in [key for key in self._spans if key.startswith(prefix)]
        }
        for key in [key for key in self._tool_traces if key.startswith(prefix)]:
            tool_traces.extend(self._tool_traces.pop(key))

        reported_in, reported_out = _reported_usage(
            spans + [span for child in child_spans.values() for span in child]
        )
        usage_reported = bool(reported_in or reported_out)
        if usage_reported:
            input_tokens, output_tokens = reported_in, reported_out
        else:
            input_tokens = estimate_token_count(request_text)
            output_tokens = estimate_token_count(answer_text)

        record = TraceRecord(
            trace_id=trace_id,
            timestamp_utc=_utc_now(),
            outcome=outcome.value,
            verified=verified,
            attempts=attempts,
            request_chars=len(request_text),
            answer_chars=len(answer_text),
            source_count=source_count,
            citation_count=citation_count,
            tool_traces=tool_traces,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            usage_reported=usage_reported,
            estimated_cost_usd=self._cost_model.estimate_cost(input_tokens, output_tokens),
            latency_ms=latency_ms,
            spans=spans,
            child_spans=child_spans,
        )
        self._records.pop(trace_id, None)
        self._records[trace_id] = record
        while len(self._records) > self._max_records:
            del self._records[next(iter(self._records))]
        return record

    def _pending(self, buffers: dict[str, list[Any]], trace_id: str) -> list[Any]:
        if trace_id not in buffers:
            while buffers and len(buffers) >= self._max_pending:
                evicted = next(iter(buffers))
                del buffers[evicted]
                logger.debug("trace.pending_evicted trace_id=%s", evicted)
            buffers[trace_id] = []
        return buffers[trace_id]

    def get(self, trace_id: str) -> TraceRecord:
        try:
            return self._records[trace_id]
        except KeyError:
            raise KeyError(f"Trace not found: {trace_id}") from None

    def list_recent(self, limit: int = 20) -> list[TraceRecord]:
        if limit <= 0:
            return []
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, Any]:
        """Aggregate request metrics for the /metrics endpoint.

        `citation_rate` only counts requests that had sources to cite.
        """
        records = list(self._records.values())
        latencies = sorted(record.latency_ms for record in records)
        with_sources = [record for record in records if record.source_count > 0]

        return {
            "total_requests": len(records),
            "avg_latency_ms": _mean(latencies),
            "p95_latency_ms": _percentile(latencies, 0.95),
            "first_attempt_pass_rate": _ratio(sum(record.first_attempt_pass for record in records), len(records)),
            "avg_attempts": _mean([record.attempts for record in records]),
            "citation_rate": _ratio(sum(record.citation_count > 0 for record in with_sources), len(with_sources)),
            "total_tool_calls": sum(len(record.tool_traces) for record in records),
            "total_input_tokens": sum(record.input_tokens for record in records),
            "total_output_tokens": sum(record.output_tokens for record in records),
            "total_estimated_cost_usd": sum(record.estimated_cost_usd for record in records),
            "outcomes": dict(Counter(record.outcome for record in records)),
        }


class Timer:
    """Context manager measuring wall time in milliseconds."""

    def __init__(self) -> None:
        self._started = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._started) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))


def _reported_usage(spans: list[SpanRecord]) -> tuple[int, int]:
    input_tokens = sum(int(span.metadata.get("input_tokens", 0)) for span in spans)
    output_tokens = sum(int(span.metadata.get("output_tokens", 0)) for span in spans)
    return input_tokens, output_tokens


def _mean(values: list[float] | list[int]) -> float:
    return sum(values) / len(values) if values else 0.0


def _ratio(part: int, whole: int) -> float:
    return part / whole if whole else 0.0


def _percentile(sorted_values: list[float], fraction: float) -> float:
    if not sorted_values:
        return 0.0
    return sorted_values[max(0, int(len(sorted_values) * fraction) - 1)]
