"""Parallel, isolated sub-task execution."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import replace
from typing import Protocol

from agent_engine.config import SubagentConfig
from agent_engine.obs.tracing import Timer, child_trace_id
from agent_engine.types import (
    AgentResponse,
    GatheredContext,
    Outcome,
    Request,
    SubagentResult,
    SubagentTask,
)

logger = logging.getLogger(__name__)

TaskRunner = Callable[[SubagentTask, str], Awaitable[SubagentResult]]


class Solver(Protocol):
    async def solve(self, request: Request, context: GatheredContext) -> AgentResponse: ...


class LoopTaskRunner:
    """Runs one sub-task through the act/verify core with a fresh context.

    The sub-task sees only its own text, constraints and curated
    `context_slice`; parent history is never passed down.
    """

    def __init__(self, solver: Solver, *, user_id: str = "subagent") -> None:
        self.solver = solver
        self.user_id = user_id

    async def __call__(self, task: SubagentTask, trace_id: str) -> SubagentResult:
        text = task.task.strip()
        if task.constraints:
            text += "\n\nConstraints:\n" + "\n".join(f"- {item}" for item in task.constraints)

        request = Request(
            text=text, user_id=self.user_id, session_id=f"subtask:{task.id}", trace_id=trace_id
        )
        context = GatheredContext(
            thread_snippets=(task.context_slice.strip(),) if task.context_slice.strip() else ()
        )
        response = await self.solver.solve(request, context)
        success = response.outcome is Outcome.SUCCESS
        return SubagentResult(
            task_id=task.id,
            success=success,
            content=response.text if success else "",
            sources=response.sources if success else (),
            error=None if success else response.outcome.value,
        )


class SubagentOrchestrator:
    """Fans tasks out under a concurrency bound and a per-task timeout.

    Failures are isolated: one task timing out or raising produces a failed
    result for that task only, and output order always matches input order.
    """

    def __init__(self, runner: TaskRunner, config: SubagentConfig | None = None) -> None:
        self.runner = runner
        self.config = config or SubagentConfig()

    async def run(
        self, tasks: Sequence[SubagentTask], *, trace_id: str | None = None
    ) -> list[SubagentResult]:
        """Run every task; each gets a trace id derived from `trace_id`."""

        parent = trace_id or str(uuid.uuid4())
        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        results = await asyncio.gather(
            *(self._run_one(task, child_trace_id(parent, task.id), semaphore) for task in tasks)
        )
        logger.info(
            "subagents.done trace_id=%s total=%d succeeded=%d",
            parent,
            len(results),
            sum(1 for result in results if result.success),
        )
        return list(results)

    async def _run_one(
        self, task: SubagentTask, trace_id: str, semaphore: asyncio.Semaphore
    ) -> SubagentResult:
        async with semaphore:
            timeout = self.config.task_timeout_seconds
            result: SubagentResult | None = None
            error: str | None = None
            with Timer() as timer:
                try:
                    result = await asyncio.wait_for(self.runner(task, trace_id), timeout=timeout)
                except asyncio.TimeoutError:
                    error = f"Timed out after {timeout:g}s"
                except Exception as exc:
                    error = f"{type(exc).__name__}: {exc}"

        if result is None:
            logger.warning("subagent.failed trace_id=%s task_id=%s error=%s", trace_id, task.id, error)
            return SubagentResult(
                task_id=task.id,
                success=False,
                content="",
                error=error,
                duration_ms=timer.elapsed_ms,
            )
        return replace(result, task_id=task.id, duration_ms=timer.elapsed_ms)
