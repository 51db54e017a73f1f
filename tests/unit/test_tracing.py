import pytest

from agent_engine.obs.tracing import SpanRecord, TraceStore, child_trace_id, estimate_token_count
from agent_engine.types import Outcome, ToolTrace


def _record(store: TraceStore, trace_id: str, **overrides) -> None:
    values = {
        "trace_id": trace_id,
        "outcome": Outcome.SUCCESS,
        "verified": True,
        "attempts": 1,
        "request_text": "What is the refund policy?",
        "answer_text": "Refunds take 30 days [1].",
        "source_count": 1,
        "citation_count": 1,
        "latency_ms": 100.0,
    }
    values.update(overrides)
    store.create_record(**values)


def test_summary_reports_verification_and_citation_rates() -> None:
    store = TraceStore()
    store.record_tool("t1", ToolTrace(name="search_knowledge", attempts=1, duration_ms=3.0, outcome_code="SUCCESS"))
    _record(store, "t1")
    _record(store, "t2", attempts=2, latency_ms=300.0, citation_count=0)
    _record(
        store,
        "t3",
        outcome=Outcome.VERIFICATION_EXHAUSTED,
        verified=False,
        attempts=3,
        source_count=0,
        citation_count=0,
        latency_ms=500.0,
    )

    summary = store.summary()

    assert summary["total_requests"] == 3
    assert summary["avg_latency_ms"] == pytest.approx(300.0)
    assert summary["first_attempt_pass_rate"] == pytest.approx(1 / 3)
    assert summary["avg_attempts"] == pytest.approx(2.0)
    assert summary["citation_rate"] == pytest.approx(0.5)
    assert summary["total_tool_calls"] == 1
    assert summary["outcomes"] == {"SUCCESS": 2, "VERIFICATION_EXHAUSTED": 1}


def test_spans_attach_to_records_and_lookup_fails_loudly() -> None:
    store = TraceStore()
    store.record_span("t1", SpanRecord(name="phase-gather", output={"sources": 2}))
    _record(store, "t1")
    store.record_span("t1", SpanRecord(name="late-span"))

    record = store.get("t1")
    assert [span.name for span in record.spans] == ["phase-gather", "late-span"]
    assert record.request_chars == len("What is the refund policy?")
    assert record.estimated_cost_usd > 0

    with pytest.raises(KeyError):
        store.get("missing")


def test_empty_summary() -> None:
    assert TraceStore().summary()["total_requests"] == 0


def test_token_estimate_counts_words_and_punctuation() -> None:
    assert estimate_token_count("Refunds take 30 days [1].") == 8


def test_reported_usage_wins_over_text_estimate() -> None:
    store = TraceStore()
    store.record_span("t1", SpanRecord(name="phase-act", metadata={"input_tokens": 900, "output_tokens": 120}))
    store.record_span("t1", SpanRecord(name="phase-act", metadata={"input_tokens": 1000, "output_tokens": 80}))
    _record(store, "t1")
    _record(store, "t2")

    reported, estimated = store.get("t1"), store.get("t2")

    assert (reported.input_tokens, reported.output_tokens) == (1900, 200)
    assert reported.usage_reported is True
    assert reported.estimated_cost_usd == pytest.approx(1.9 * 0.005 + 0.2 * 0.015)
    assert estimated.usage_reported is False
    assert estimated.input_tokens == estimate_token_count("What is the refund policy?")
    assert len(store) == 2


def test_child_traces_fold_into_the_parent_record() -> None:
    store = TraceStore()
    child = child_trace_id("t1", "sso")
    store.record_span(child, SpanRecord(name="phase-act", metadata={"input_tokens": 40, "output_tokens": 10}))
    store.record_tool(child, ToolTrace(name="search_knowledge", attempts=1, duration_ms=2.0, outcome_code="SUCCESS"))
    store.record_span("t1", SpanRecord(name="phase-act", metadata={"input_tokens": 60, "output_tokens": 5}))
    store.record_span("t10/other", SpanRecord(name="unrelated"))
    _record(store, "t1")

    record = store.get("t1")

    assert child == "t1/sso"
    assert list(record.child_spans) == ["t1/sso"]
    assert [span.name for span in record.child_spans["t1/sso"]] == ["phase-act"]
    assert [trace.name for trace in record.tool_traces] == ["search_knowledge"]
    assert (record.input_tokens, record.output_tokens) == (100, 15)
    assert store.spans_for(child) == []
    assert [span.name for span in store.spans_for("t10/other")] == ["unrelated"]


def test_pending_buffers_and_records_are_bounded() -> None:
    store = TraceStore(max_records=2, max_pending=2)
    for index in range(4):
        store.record_span(f"orphan-{index}", SpanRecord(name="phase-gather"))
    for index in range(3):
        _record(store, f"t{index}")

    assert store.spans_for("orphan-0") == []
    assert store.spans_for("orphan-1") == []
    assert [span.name for span in store.spans_for("orphan-3")] == ["phase-gather"]
    assert len(store) == 2
    assert [record.trace_id for record in store.list_recent()] == ["t1", "t2"]
    with pytest.raises(KeyError):
        store.get("t0")
