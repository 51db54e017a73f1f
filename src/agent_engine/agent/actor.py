"""Act phase: drive the completion stream and the tool loop for one attempt."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum

from agent_engine.agent.completion import (
    CompletionService,
    Message,
    StreamEvent,
    TextDelta,
    ToolUseRequest,
    Usage,
)
from agent_engine.agent.executor import ToolExecutor
from agent_engine.agent.tool_result import to_tool_error
from agent_engine.config import AgentConfig
from agent_engine.retrieval.scoring import clip
from agent_engine.types import (
    Candidate,
    GatheredContext,
    Outcome,
    Request,
    Source,
    SourceType,
    ToolCall,
    ToolErrorCode,
    ToolSuccess,
)

logger = logging.getLogger(__name__)

_BASE_PROMPT = """
You are a helpful assistant answering questions for a team.

Formatting rules:
- Use *bold* for emphasis (not **bold**)
- Use _italic_ for secondary emphasis
- Use bullet points (•) for lists, not blockquotes (>)
- Write links as <url|text>, never [text](url)
- Keep responses concise and actionable
""".strip()

_PLAIN_FORMAT_PROMPT = """
You are a helpful assistant answering questions for a team.

Keep responses concise and actionable.
""".strip()

_WITH_SOURCES_PROMPT = """
When answering questions:
- Base your answer on the provided sources
- Cite sources using [1], [2], etc. markers matching the numbered source list
- If the sources don't fully answer the question, say so
""".strip()

_WITHOUT_SOURCES_PROMPT = """
No specific knowledge sources were found for this query.
- Be honest if you don't have specific information
- Don't make up facts or speculate
- If you can't answer definitively, acknowledge this
- Suggest other ways to find the information, such as adding more context
""".strip()


class ActorState(str, Enum):
    SENDING = "SENDING"
    STREAMING = "STREAMING"
    TOOL_REQUESTED = "TOOL_REQUESTED"
    EXECUTING_TOOLS = "EXECUTING_TOOLS"
    DONE = "DONE"


@dataclass(slots=True)
class _Turn:
    text: str = ""
    calls: list[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


def build_system_prompt(context: GatheredContext, *, text_format: str = "mrkdwn") -> str:
    base = _BASE_PROMPT if text_format == "mrkdwn" else _PLAIN_FORMAT_PROMPT
    guidance = _WITH_SOURCES_PROMPT if context.relevant_sources else _WITHOUT_SOURCES_PROMPT
    return f"{base}\n\n{guidance}"


def build_user_turn(
    request: Request, context: GatheredContext, prior_feedback: str | None = None
) -> str:
    rendered = context.render()
    prompt = f"Context:\n{rendered}\n\nUser Question: {request.text}" if rendered else request.text
    if prior_feedback:
        prompt += (
            "\n\n[Verification feedback]\n"
            "Your previous answer was rejected. Fix these issues:\n"
            f"{prior_feedback}"
        )
    return prompt


class Actor:
    """Runs the SENDING/STREAMING/tool loop and returns an unverified candidate.

    Text is buffered per call and only returned as part of the `Candidate`;
    nothing is delivered from here. Completion failures come back as a
    candidate carrying `error_code` instead of raising.
    """

    def __init__(
        self,
        completion: CompletionService,
        executor: ToolExecutor,
        config: AgentConfig | None = None,
        *,
        text_format: str = "mrkdwn",
    ) -> None:
        self.completion = completion
        self.executor = executor
        self.config = config or AgentConfig()
        self.text_format = text_format

    async def act(
        self,
        request: Request,
        context: GatheredContext,
        prior_feedback: str | None = None,
        *,
        trail: list[ActorState] | None = None,
    ) -> Candidate:
        trail = trail if trail is not None else []
        system_prompt = build_system_prompt(context, text_format=self.text_format)
        messages: list[Message] = [
            {"role": "user", "content": build_user_turn(request, context, prior_feedback)}
        ]
        tools = self.executor.tool_schemas()

        buffer: list[str] = []
        sources: list[Source] = list(context.relevant_sources)
        tool_rounds = 0
        tool_calls_used = 0
        input_tokens = 0
        output_tokens = 0

        while True:
            trail.append(ActorState.SENDING)
            try:
                turn = await asyncio.wait_for(
                    self._consume(self.completion.send(messages, tools, system_prompt), trail),
                    timeout=self.config.completion_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "completion.timeout trace_id=%s timeout_s=%.1f",
                    request.trace_id,
                    self.config.completion_timeout_seconds,
                )
                trail.append(ActorState.DONE)
                return Candidate(
                    text="",
                    tool_calls_used=tool_calls_used,
                    iterations=tool_rounds,
                    error_code=Outcome.TIMEOUT,
                    error=f"Completion timed out after {self.config.completion_timeout_seconds:g}s",
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                code = _completion_outcome(exc)
                logger.warning(
                    "completion.failed trace_id=%s outcome=%s error=%s",
                    request.trace_id,
                    code.value,
                    type(exc).__name__,
                )
                trail.append(ActorState.DONE)
                return Candidate(
                    text="",
                    tool_calls_used=tool_calls_used,
                    iterations=tool_rounds,
                    error_code=code,
                    error=f"{type(exc).__name__}: {exc}",
                )

            input_tokens += turn.input_tokens
            output_tokens += turn.output_tokens
            if turn.text.strip():
                buffer.append(turn.text.strip())

            if not turn.calls:
                break
            if tool_rounds >= self.config.max_tool_iterations:
                logger.warning(
                    "actor.iteration_ceiling trace_id=%s rounds=%d pending_calls=%d",
                    request.trace_id,
                    tool_rounds,
                    len(turn.calls),
                )
                break

            trail.append(ActorState.TOOL_REQUESTED)
            messages.append(
                {
                    "role": "assistant",
                    "content": turn.text,
                    "tool_calls": [
                        {"id": call.id, "name": call.tool_name, "args": call.args} for call in turn.calls
                    ],
                }
            )

            trail.append(ActorState.EXECUTING_TOOLS)
            results = await asyncio.gather(
                *(
                    self.executor.execute(
                        call.tool_name, call.args, trace_id=request.trace_id, tool_call_id=call.id
                    )
                    for call in turn.calls
                )
            )
            for call, result in zip(turn.calls, results):
                tool_calls_used += 1
                if isinstance(result, ToolSuccess):
                    content = result.data
                    sources.append(
                        Source(
                            id=f"tool:{call.tool_name}:{call.id}",
                            type=SourceType.TOOL,
                            title=call.tool_name,
                            excerpt=clip(result.data, 200),
                        )
                    )
                else:
                    content = result.message
                messages.append(
                    {"role": "tool", "tool_call_id": call.id, "name": call.tool_name, "content": content}
                )
            tool_rounds += 1

        trail.append(ActorState.DONE)
        logger.info(
            "actor.done trace_id=%s rounds=%d tool_calls=%d chars=%d",
            request.trace_id,
            tool_rounds,
            tool_calls_used,
            sum(len(part) for part in buffer),
        )
        return Candidate(
            text="\n\n".join(buffer),
            tool_calls_used=tool_calls_used,
            sources=tuple(sources),
            iterations=tool_rounds,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    async def _consume(self, stream: AsyncIterator[StreamEvent], trail: list[ActorState]) -> _Turn:
        turn = _Turn()
        parts: list[str] = []
        trail.append(ActorState.STREAMING)
        try:
            async for event in stream:
                if isinstance(event, TextDelta):
                    parts.append(event.text)
                elif isinstance(event, ToolUseRequest):
                    turn.calls.append(event.call)
                elif isinstance(event, Usage):
                    turn.input_tokens += event.input_tokens
                    turn.output_tokens += event.output_tokens
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        turn.text = "".join(parts)
        return turn


def _completion_outcome(error: Exception) -> Outcome:
    if to_tool_error(error).code is ToolErrorCode.RATE_LIMITED:
        return Outcome.RATE_LIMITED
    return Outcome.TOOL_EXECUTION_FAILED
