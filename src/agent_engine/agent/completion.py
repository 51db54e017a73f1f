"""Completion service boundary.

The engine speaks a small streaming protocol (`StreamEvent`) so the Actor is
independent of any provider wire format. `LangChainCompletionService` adapts
any langchain-core chat model that supports `bind_tools` + `astream`.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol, Union

from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from agent_engine.types import ToolCall

Message = dict[str, Any]


@dataclass(slots=True, frozen=True)
class TextDelta:
    text: str


@dataclass(slots=True, frozen=True)
class ToolUseRequest:
    call: ToolCall


@dataclass(slots=True, frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(slots=True, frozen=True)
class StopReason:
    reason: str


StreamEvent = Union[TextDelta, ToolUseRequest, Usage, StopReason]


class CompletionService(Protocol):
    def send(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        system_prompt: str,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one model turn. Tool calls arrive as `ToolUseRequest`s."""


class LangChainCompletionService:
    """Streams a langchain-core chat model through the engine protocol."""

    def __init__(self, llm: Any) -> None:
        self.llm = llm

    async def send(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        system_prompt: str,
    ) -> AsyncIterator[StreamEvent]:
        model = self.llm.bind_tools(tools) if tools else self.llm
        aggregate: AIMessageChunk | None = None

        async for chunk in model.astream(to_langchain_messages(messages, system_prompt)):
            text = _content_text(chunk.content)
            if text:
                yield TextDelta(text=text)
            aggregate = chunk if aggregate is None else aggregate + chunk

        if aggregate is None:
            yield StopReason(reason="end_turn")
            return

        for call in aggregate.tool_calls:
            yield ToolUseRequest(
                call=ToolCall(
                    tool_name=call["name"],
                    id=call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                    args=dict(call.get("args") or {}),
                )
            )

        usage = aggregate.usage_metadata
        if usage:
            yield Usage(
                input_tokens=int(usage.get("input_tokens", 0)),
                output_tokens=int(usage.get("output_tokens", 0)),
            )
        yield StopReason(reason="tool_use" if aggregate.tool_calls else "end_turn")


def to_langchain_messages(messages: list[Message], system_prompt: str) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    if system_prompt:
        converted.append(SystemMessage(content=system_prompt))

    for message in messages:
        role = message.get("role")
        content = message.get("content") or ""
        if role == "user":
            converted.append(HumanMessage(content=content))
        elif role == "assistant":
            converted.append(
                AIMessage(
                    content=content,
                    tool_calls=[
                        {"name": call["name"], "args": call.get("args", {}), "id": call["id"]}
                        for call in message.get("tool_calls") or []
                    ],
                )
            )
        elif role == "tool":
            converted.append(ToolMessage(content=content, tool_call_id=message["tool_call_id"]))
        elif role == "system":
            converted.append(SystemMessage(content=content))
        else:
            raise ValueError(f"Unsupported message role: {role!r}")
    return converted


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type", "text") == "text" and "text" in item:
                    parts.append(str(item["text"]))
            elif isinstance(item, str):
                parts.append(item)
        return "".join(parts)
    return ""
