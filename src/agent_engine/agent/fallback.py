"""Deterministic completion service used when no external LLM is configured."""

from __future__ import annotations

import re
import uuid
from collections.abc import AsyncIterator
from typing import Any

from agent_engine.agent.completion import Message, StopReason, StreamEvent, TextDelta, ToolUseRequest, Usage
from agent_engine.obs.tracing import estimate_token_count
from agent_engine.retrieval.scoring import clip
from agent_engine.types import ToolCall

SEARCH_TOOL_NAME = "search_knowledge"

_SOURCE_LINE = re.compile(r"^\[(?P<index>\d+)\]\s+(?P<title>[^:\n]+?)(?::\s+(?P<body>.+))?$")
_TOOL_HIT_LINE = re.compile(r"^-\s+(?P<reference>[^:\n]+):\s+(?P<body>.+)$")
_BOLD = re.compile(r"\*\*([^*]+)\*\*")
_LINK = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")


class DeterministicCompletionService:
    """Answers from the rendered context without any LLM dependency.

    It keeps the same streaming contract as `LangChainCompletionService` and
    is useful for local/offline environments where `OPENAI_API_KEY` is not
    configured. Answers are citation-grounded when sources exist and honest
    when they don't. With no sources it asks the knowledge search tool once.
    """

    def __init__(self, *, max_points: int = 3, chunk_size: int = 40) -> None:
        self.max_points = max_points
        self.chunk_size = chunk_size

    async def send(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        system_prompt: str,
    ) -> AsyncIterator[StreamEvent]:
        prompt = _latest(messages, "user")
        question = _question_of(prompt)
        points = _parse_sources(prompt)

        if messages and messages[-1].get("role") == "tool":
            answer = _answer_from_tool_output(question, str(messages[-1].get("content", "")))
        elif points:
            answer = _answer_from_sources(question, points[: self.max_points])
        elif SEARCH_TOOL_NAME in _tool_names(tools):
            yield ToolUseRequest(
                call=ToolCall(
                    tool_name=SEARCH_TOOL_NAME,
                    id=f"call_{uuid.uuid4().hex[:12]}",
                    args={"query": question},
                )
            )
            yield StopReason(reason="tool_use")
            return
        else:
            answer = _no_information_answer()

        answer = to_mrkdwn(answer)
        for start in range(0, len(answer), self.chunk_size):
            yield TextDelta(text=answer[start : start + self.chunk_size])
        yield Usage(
            input_tokens=estimate_token_count(system_prompt + prompt),
            output_tokens=estimate_token_count(answer),
        )
        yield StopReason(reason="end_turn")


def to_mrkdwn(text: str) -> str:
    text = _BOLD.sub(r"*\1*", text)
    text = _LINK.sub(r"<\2|\1>", text)
    return "\n".join(line.lstrip(">").lstrip() if line.startswith(">") else line for line in text.splitlines())


def _latest(messages: list[Message], role: str) -> str:
    for message in reversed(messages):
        if message.get("role") == role:
            return str(message.get("content") or "")
    return ""


def _question_of(prompt: str) -> str:
    body = prompt.split("\n\n[Verification feedback]", 1)[0]
    if "User Question:" in body:
        body = body.rsplit("User Question:", 1)[1]
    return body.strip()


def _parse_sources(prompt: str) -> list[tuple[int, str, str]]:
    points: list[tuple[int, str, str]] = []
    in_sources = False
    for line in prompt.splitlines():
        stripped = line.strip()
        if stripped.startswith("## "):
            in_sources = stripped == "## Sources"
            continue
        if not in_sources:
            continue
        match = _SOURCE_LINE.match(stripped)
        if match and match.group("body"):
            points.append((int(match.group("index")), match.group("title").strip(), match.group("body").strip()))
    return points


def _tool_names(tools: list[dict[str, Any]]) -> set[str]:
    names: set[str] = set()
    for tool in tools:
        function = tool.get("function") if isinstance(tool, dict) else None
        if isinstance(function, dict) and function.get("name"):
            names.add(str(function["name"]))
    return names


def _answer_from_sources(question: str, points: list[tuple[int, str, str]]) -> str:
    lines = [f"Here is what I found about _{clip(question.rstrip('?'), 80)}_:", ""]
    for index, _, body in points:
        lines.append(f"• {clip(body, 240)} [{index}]")
    return "\n".join(lines)


def _answer_from_tool_output(question: str, output: str) -> str:
    hits = [match for match in (_TOOL_HIT_LINE.match(line.strip()) for line in output.splitlines()) if match]
    if not hits:
        return _no_information_answer()
    lines = [f"Here is what the knowledge search returned for _{clip(question.rstrip('?'), 80)}_:", ""]
    for match in hits[:3]:
        lines.append(f"• {clip(match.group('body').strip(), 240)} (from {match.group('reference').strip()})")
    return "\n".join(lines)


def _no_information_answer() -> str:
    return "\n".join(
        [
            "I couldn't find specific information about this in the knowledge sources I can access, "
            "so I don't want to guess.",
            "",
            "You could try:",
            "• Adding more context about what you're looking for",
            "• Pointing me to the document or system that covers it",
        ]
    )
