"""Gather -> act -> verify loop with verify-before-delivery.

Candidate text is buffered until it passes verification and is then replayed
to the transport exactly once. The deadline bounds the work, not the replay,
so a run can never emit twice or emit a partial answer.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum

from agent_engine.agent.actor import Actor
from agent_engine.agent.aggregator import Aggregator
from agent_engine.agent.citations import cited_sources, format_citation_footer
from agent_engine.agent.compaction import HistoryCompactor
from agent_engine.agent.delivery import ChatTransport, chunk_text
from agent_engine.agent.gather import Gatherer
from agent_engine.agent.subagents import LoopTaskRunner, SubagentOrchestrator
from agent_engine.agent.verifier import Verifier, has_sources_footer
from agent_engine.config import AgentConfig, SubagentConfig
from agent_engine.obs.tracing import NullTracer, SpanRecord, Timer, TraceStore, Tracer
from agent_engine.types import (
    AgentResponse,
    AggregatedResult,
    GatheredContext,
    KnowledgeExcerpt,
    Outcome,
    Request,
    SubagentTask,
    VerificationIssue,
)

logger = logging.getLogger(__name__)

_FAILURE_HEADLINES = {
    Outcome.VERIFICATION_EXHAUSTED: (
        "I wasn't able to put together an answer I could verify after several attempts."
    ),
    Outcome.TIMEOUT: "I ran out of time while working on your request.",
    Outcome.RATE_LIMITED: "One of the services I rely on is rate limiting me right now.",
    Outcome.TOOL_EXECUTION_FAILED: "Something went wrong while I was gathering information for you.",
}

_FAILURE_SUGGESTIONS = {
    Outcome.VERIFICATION_EXHAUSTED: (
        "Rephrasing the question more specifically",
        "Adding detail such as the document, system, or time frame involved",
    ),
    Outcome.TIMEOUT: (
        "Asking a narrower question",
        "Splitting the request into smaller parts",
    ),
    Outcome.RATE_LIMITED: (
        "Asking again in a minute or two",
    ),
    Outcome.TOOL_EXECUTION_FAILED: (
        "Asking again in a few minutes",
        "Rephrasing the question or adding more detail",
    ),
}


class LoopState(str, Enum):
    GATHER = "GATHER"
    ACT = "ACT"
    VERIFY = "VERIFY"
    EMIT = "EMIT"
    RETRY = "RETRY"
    FAIL = "FAIL"


@dataclass(slots=True)
class _Progress:
    attempts: int = 0
    states: list[LoopState] = field(default_factory=list)

    def enter(self, state: LoopState, trace_id: str) -> None:
        self.states.append(state)
        logger.debug("loop.state trace_id=%s state=%s attempt=%d", trace_id, state.value, self.attempts)


ContextSource = Callable[[Request], Awaitable[GatheredContext]]


def graceful_failure_text(outcome: Outcome) -> str:
    """Deterministic, transport-safe explanation for a run that did not succeed."""

    headline = _FAILURE_HEADLINES.get(outcome, _FAILURE_HEADLINES[Outcome.VERIFICATION_EXHAUSTED])
    suggestions = _FAILURE_SUGGESTIONS.get(outcome, _FAILURE_SUGGESTIONS[Outcome.VERIFICATION_EXHAUSTED])
    lines = [f"*{headline}*", "", "You could try:"]
    lines.extend(f"• {item}" for item in suggestions)
    return "\n".join(lines)


class AgentLoop:
    """Orchestrates one request end to end.

    `run` is the entry point for chat surfaces; `solve` is the emission-free
    act/verify core used for sub-tasks; `run_with_subtasks` fans a request out
    to isolated sub-tasks before a final synthesis pass.
    """

    def __init__(
        self,
        *,
        gatherer: Gatherer,
        actor: Actor,
        verifier: Verifier,
        config: AgentConfig | None = None,
        subagent_config: SubagentConfig | None = None,
        aggregator: Aggregator | None = None,
        tracer: Tracer | None = None,
        trace_store: TraceStore | None = None,
        compactor: HistoryCompactor | None = None,
    ) -> None:
        self.gatherer = gatherer
        self.actor = actor
        self.verifier = verifier
        self.config = config or AgentConfig()
        self.aggregator = aggregator or Aggregator()
        self.compactor = compactor
        self.trace_store = trace_store
        if tracer is None:
            tracer = trace_store if trace_store is not None else NullTracer()
        self.tracer = tracer
        self.orchestrator = SubagentOrchestrator(LoopTaskRunner(self), subagent_config)

    async def run(
        self,
        request: Request,
        transport: ChatTransport | None = None,
        deadline: float | None = None,
    ) -> AgentResponse:
        return await self._run(request, self.gatherer.gather, transport, deadline)

    async def solve(self, request: Request, context: GatheredContext) -> AgentResponse:
        async def _fixed(_: Request) -> GatheredContext:
            return context

        return await self._attempts(request, _fixed, _Progress())

    async def run_with_subtasks(
        self,
        request: Request,
        tasks: Sequence[SubagentTask],
        transport: ChatTransport | None = None,
        deadline: float | None = None,
    ) -> AgentResponse:
        findings: list[AggregatedResult] = []

        async def _gather_with_findings(req: Request) -> GatheredContext:
            # Sub-tasks run once; later attempts reuse the merged findings.
            if not findings:
                with Timer() as timer:
                    results = await self.orchestrator.run(tasks, trace_id=req.trace_id)
                    findings.append(self.aggregator.merge(results, req.text))
                self._span(
                    req.trace_id,
                    "phase-subtasks",
                    output=dict(findings[0].metadata),
                    metadata={"duration_ms": timer.elapsed_ms},
                )
            return await self.gatherer.gather(
                req,
                pinned=KnowledgeExcerpt(reference="sub-task findings", excerpt=findings[0].synthesis),
                pinned_sources=findings[0].sources,
            )

        return await self._run(request, _gather_with_findings, transport, deadline)

    async def _run(
        self,
        request: Request,
        gather: ContextSource,
        transport: ChatTransport | None,
        deadline: float | None,
    ) -> AgentResponse:
        deadline = deadline if deadline is not None else self.config.run_deadline_seconds
        progress = _Progress()

        with Timer() as timer:
            try:
                response = await asyncio.wait_for(
                    self._prepare_and_attempt(request, gather, progress, transport), timeout=deadline
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "loop.deadline_exceeded trace_id=%s deadline_s=%.1f attempts=%d",
                    request.trace_id,
                    deadline,
                    progress.attempts,
                )
                progress.enter(LoopState.FAIL, request.trace_id)
                response = AgentResponse(
                    text=graceful_failure_text(Outcome.TIMEOUT),
                    outcome=Outcome.TIMEOUT,
                    verified=False,
                    attempts=progress.attempts,
                    trace_id=request.trace_id,
                )

            response = self._with_citation_footer(response)
            progress.enter(LoopState.EMIT, request.trace_id)
            await self._emit(response, transport)

        logger.info(
            "loop.done trace_id=%s outcome=%s verified=%s attempts=%d latency_ms=%.1f",
            request.trace_id,
            response.outcome.value,
            response.verified,
            response.attempts,
            timer.elapsed_ms,
        )
        if self.trace_store is not None:
            self.trace_store.create_record(
                trace_id=request.trace_id,
                outcome=response.outcome,
                verified=response.verified,
                attempts=response.attempts,
                request_text=request.text,
                answer_text=response.text,
                source_count=len(response.sources),
                citation_count=len(cited_sources(response.text, response.sources)),
                latency_ms=timer.elapsed_ms,
            )
        return response

    async def _prepare_and_attempt(
        self,
        request: Request,
        gather: ContextSource,
        progress: _Progress,
        transport: ChatTransport | None,
    ) -> AgentResponse:
        request = await self._compact(request)
        return await self._attempts(request, gather, progress, transport)

    async def _compact(self, request: Request) -> Request:
        if self.compactor is None:
            return request
        history = await self.gatherer.load_history(request)
        if not self.compactor.should_compact(history, request.text):
            return request
        with Timer() as timer:
            result = await self.compactor.compact(history, request.text, trace_id=request.trace_id)
        if not result.applied:
            return request
        self._span(
            request.trace_id,
            "phase-compact",
            output={
                "messages_before": len(history),
                "messages_after": len(result.history),
                "tokens_before": result.original_tokens,
                "tokens_after": result.compacted_tokens,
            },
            metadata={"duration_ms": timer.elapsed_ms},
        )
        return replace(request, history=result.history)

    async def _attempts(
        self,
        request: Request,
        gather: ContextSource,
        progress: _Progress,
        transport: ChatTransport | None = None,
    ) -> AgentResponse:
        if transport is not None:
            await transport.set_status("Working on it…")

        feedback: str | None = None
        last_issues: tuple[VerificationIssue, ...] = ()
        last_failure: Outcome | None = None

        for attempt in range(1, self.config.max_attempts + 1):
            progress.attempts = attempt
            if attempt > 1:
                progress.enter(LoopState.RETRY, request.trace_id)

            progress.enter(LoopState.GATHER, request.trace_id)
            with Timer() as gather_timer:
                context = await gather(request)
            self._span(
                request.trace_id,
                "phase-gather",
                output={
                    "thread_snippets": len(context.thread_snippets),
                    "knowledge_excerpts": len(context.knowledge_excerpts),
                    "sources": len(context.relevant_sources),
                },
                metadata={"attempt": attempt, "duration_ms": gather_timer.elapsed_ms},
            )

            progress.enter(LoopState.ACT, request.trace_id)
            with Timer() as act_timer:
                candidate = await self.actor.act(request, context, feedback)
            self._span(
                request.trace_id,
                "phase-act",
                output={
                    "chars": len(candidate.text),
                    "tool_calls": candidate.tool_calls_used,
                    "iterations": candidate.iterations,
                    "error_code": candidate.error_code.value if candidate.error_code else None,
                },
                metadata={
                    "attempt": attempt,
                    "duration_ms": act_timer.elapsed_ms,
                    "input_tokens": candidate.input_tokens,
                    "output_tokens": candidate.output_tokens,
                },
            )

            if candidate.failed:
                last_failure = candidate.error_code
                logger.warning(
                    "loop.candidate_failed trace_id=%s attempt=%d outcome=%s",
                    request.trace_id,
                    attempt,
                    candidate.error_code.value,
                )
                continue

            progress.enter(LoopState.VERIFY, request.trace_id)
            result = self.verifier.check(candidate, request, context)
            self._span(
                request.trace_id,
                "phase-verify",
                output={
                    "passed": result.passed,
                    "codes": [issue.code for issue in result.issues],
                },
                metadata={"attempt": attempt},
            )

            if result.passed:
                return AgentResponse(
                    text=candidate.text,
                    outcome=Outcome.SUCCESS,
                    verified=True,
                    attempts=attempt,
                    trace_id=request.trace_id,
                    sources=candidate.sources,
                    issues=result.issues,
                )

            logger.info(
                "loop.verification_failed trace_id=%s attempt=%d codes=%s",
                request.trace_id,
                attempt,
                ",".join(issue.code for issue in result.errors),
            )
            feedback = result.feedback
            last_issues = result.issues
            last_failure = None

        progress.enter(LoopState.FAIL, request.trace_id)
        outcome = last_failure or Outcome.VERIFICATION_EXHAUSTED
        return AgentResponse(
            text=graceful_failure_text(outcome),
            outcome=outcome,
            verified=False,
            attempts=progress.attempts,
            trace_id=request.trace_id,
            issues=last_issues,
        )

    def _with_citation_footer(self, response: AgentResponse) -> AgentResponse:
        if (
            response.outcome is not Outcome.SUCCESS
            or not self.config.citation_footer
            or has_sources_footer(response.text)
        ):
            return response
        footer = format_citation_footer(response.text, response.sources, self.verifier.config.text_format)
        return replace(response, text=response.text + footer) if footer else response

    async def _emit(self, response: AgentResponse, transport: ChatTransport | None) -> None:
        if transport is None:
            return
        await transport.start_stream()
        for chunk in chunk_text(response.text, self.config.stream_chunk_size):
            await transport.append_chunk(chunk)
        await transport.stop()

    def _span(
        self,
        trace_id: str,
        name: str,
        *,
        output: dict[str, object],
        metadata: dict[str, object],
    ) -> None:
        try:
            self.tracer.record_span(trace_id, SpanRecord(name=name, output=output, metadata=metadata))
        except Exception:
            logger.exception("trace.span_failed trace_id=%s span=%s", trace_id, name)
