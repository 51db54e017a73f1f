"""Tool registry built on Pydantic v2 models.

Tools are registered while the engine is wired together, then frozen into a
`ToolTable` snapshot. Executors and concurrently running subagents only ever
read the snapshot.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterator, Mapping
from types import MappingProxyType
from typing import Any

from langchain_core.tools import StructuredTool
from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, ConfigDict, Field

from agent_engine.errors import ToolRegistrationError

ToolHandler = Callable[[BaseModel], Awaitable[Any] | Any]


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str = Field(min_length=1, pattern=r"^[a-zA-Z0-9_-]+$")
    description: str
    args_schema: type[BaseModel]
    handler: ToolHandler
    tags: list[str] = Field(default_factory=list)

    async def invoke(self, payload: dict[str, Any]) -> Any:
        """Validate `payload` and run the handler.

        Synchronous handlers run in a worker thread so they do not block the
        event loop; only coroutine handlers can be cancelled mid-flight.
        """

        data = self.args_schema.model_validate(payload)
        if inspect.iscoroutinefunction(self.handler):
            return await self.handler(data)
        result = await asyncio.to_thread(self.handler, data)
        if inspect.isawaitable(result):
            return await result
        return result


class ToolTable(Mapping[str, ToolSpec]):
    """Immutable name -> spec lookup resolved once from the registry."""

    def __init__(self, specs: Mapping[str, ToolSpec]) -> None:
        self._specs = MappingProxyType(dict(specs))

    def __getitem__(self, name: str) -> ToolSpec:
        return self._specs[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def schemas(self) -> list[dict[str, Any]]:
        """OpenAI-style function schemas for the completion service."""
        return [convert_to_openai_tool(tool) for tool in as_langchain_tools(self.values())]


class ToolRegistry:
    """Collects tool specs at startup and produces frozen snapshots."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._snapshot: ToolTable | None = None

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ToolRegistrationError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec
        self._snapshot = None

    def snapshot(self) -> ToolTable:
        if self._snapshot is None:
            self._snapshot = ToolTable(self._tools)
        return self._snapshot

    def specs(self) -> list[ToolSpec]:
        return list(self._tools.values())


def as_langchain_tools(specs: Any) -> list[StructuredTool]:
    tools: list[StructuredTool] = []
    for spec in specs:
        tools.append(
            StructuredTool.from_function(
                coroutine=_build_coroutine(spec),
                name=spec.name,
                description=spec.description,
                args_schema=spec.args_schema,
            )
        )
    return tools


def _build_coroutine(spec: ToolSpec) -> Callable[..., Awaitable[Any]]:
    async def _callable(**kwargs: Any) -> Any:
        return await spec.invoke(kwargs)

    return _callable
