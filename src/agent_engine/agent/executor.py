"""Tool execution wrapper: timeout + retry + audit logging.

`ToolExecutor.execute` always returns a `ToolResult[str]`; it never raises
for tool or transport failures. Retry policy:

- at most 3 total attempts (1 initial + 2 retries)
- exponential backoff for transient failures (1s, 2s, 4s)
- fixed 30s backoff for rate-limit responses
- no retry for 400/401/403/404-class errors

Audit records carry sanitized arguments (see `sanitize_arguments`), never
the tool result.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from agent_engine.agent.registry import ToolTable
from agent_engine.agent.tool_result import (
    fail,
    format_error_for_model,
    normalize_failure,
    sanitize_arguments,
    serialize_payload,
    should_retry,
    to_tool_error,
)
from agent_engine.config import ToolExecutorConfig
from agent_engine.obs.tracing import NullTracer, SpanRecord, Timer, Tracer
from agent_engine.types import ToolErrorCode, ToolFailure, ToolResult, ToolSuccess, ToolTrace

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class ToolExecutor:
    """Executes named tool calls against a frozen `ToolTable`."""

    def __init__(
        self,
        table: ToolTable,
        config: ToolExecutorConfig | None = None,
        *,
        tracer: Tracer | None = None,
        sleep: SleepFn = asyncio.sleep,
        observer: Callable[[str, ToolTrace], None] | None = None,
    ) -> None:
        self.table = table
        self.config = config or ToolExecutorConfig()
        self.tracer = tracer if tracer is not None else NullTracer()
        self._sleep = sleep
        self._observer = observer

    def tool_schemas(self) -> list[dict[str, Any]]:
        return self.table.schemas()

    async def execute(
        self,
        tool_name: str,
        args: dict[str, Any],
        *,
        trace_id: str,
        tool_call_id: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> ToolResult[str]:
        timeout = timeout if timeout is not None else self.config.timeout_seconds
        max_attempts = max(1, min(max_attempts or self.config.max_attempts, self.config.max_attempts))

        attempts = 0
        result: ToolResult[Any]
        with Timer() as timer:
            spec = self.table.get(tool_name)
            if spec is None:
                result = fail(ToolErrorCode.TOOL_NOT_FOUND, f"Unknown tool: {tool_name}")
            else:
                for attempt in range(1, max_attempts + 1):
                    attempts = attempt
                    result = await self._attempt(tool_name, args, timeout)
                    if result.success or not should_retry(result):
                        break
                    if attempt == max_attempts:
                        break
                    delay = self._backoff(result, attempt)
                    logger.warning(
                        "tool.retry trace_id=%s tool=%s attempt=%d delay_s=%.1f code=%s",
                        trace_id,
                        tool_name,
                        attempt,
                        delay,
                        result.code.value,
                    )
                    await self._sleep(delay)

        outcome_code = "SUCCESS" if result.success else result.code.value
        self._audit(
            trace_id, tool_name, tool_call_id, args, attempts, timer.elapsed_ms, outcome_code, timeout
        )

        if isinstance(result, ToolSuccess):
            return ToolSuccess(data=serialize_payload(result.data))
        return ToolFailure(
            code=result.code,
            message=format_error_for_model(tool_name, result),
            retryable=result.retryable,
        )

    async def _attempt(self, tool_name: str, args: dict[str, Any], timeout: float) -> ToolResult[Any]:
        spec = self.table[tool_name]
        try:
            raw = await asyncio.wait_for(spec.invoke(args), timeout=timeout)
        except ValidationError as exc:
            return to_tool_error(exc)
        except asyncio.TimeoutError:
            return fail(
                ToolErrorCode.TOOL_EXECUTION_FAILED,
                f"Timeout after {timeout:g}s",
                retryable=True,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return to_tool_error(exc)

        if isinstance(raw, ToolFailure):
            return normalize_failure(raw)
        if isinstance(raw, ToolSuccess):
            return raw
        return ToolSuccess(data=raw)

    def _backoff(self, failure: ToolFailure, attempt: int) -> float:
        if failure.code is ToolErrorCode.RATE_LIMITED:
            return self.config.rate_limit_backoff_seconds
        return self.config.base_backoff_seconds * (2 ** (attempt - 1))

    def _audit(
        self,
        trace_id: str,
        tool_name: str,
        tool_call_id: str | None,
        args: dict[str, Any],
        attempts: int,
        duration_ms: float,
        outcome_code: str,
        timeout: float,
    ) -> None:
        logger.info(
            "tool.execute trace_id=%s tool=%s call_id=%s attempts=%d duration_ms=%.1f outcome=%s",
            trace_id,
            tool_name,
            tool_call_id,
            attempts,
            duration_ms,
            outcome_code,
        )
        sanitized = sanitize_arguments(args)
        logger.debug("tool.arguments trace_id=%s tool=%s args=%s", trace_id, tool_name, sanitized)
        try:
            self.tracer.record_span(
                trace_id,
                SpanRecord(
                    name="tool.execute",
                    input={"tool": tool_name, "tool_call_id": tool_call_id, "args": sanitized},
                    output={"success": outcome_code == "SUCCESS", "error_code": outcome_code},
                    metadata={
                        "attempts": attempts,
                        "duration_ms": duration_ms,
                        "timeout_s": timeout,
                    },
                ),
            )
            if self._observer is not None:
                self._observer(
                    trace_id,
                    ToolTrace(
                        name=tool_name,
                        attempts=attempts,
                        duration_ms=duration_ms,
                        outcome_code=outcome_code,
                    ),
                )
        except Exception:
            # Audit sinks must not turn a tool result into an exception.
            logger.exception("tool.audit_failed trace_id=%s tool=%s", trace_id, tool_name)
