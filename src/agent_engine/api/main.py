"""FastAPI entrypoint for query/research/trace endpoints."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from agent_engine.agent.actor import Actor
from agent_engine.agent.aggregator import Aggregator
from agent_engine.agent.compaction import HistoryCompactor
from agent_engine.agent.completion import CompletionService, LangChainCompletionService
from agent_engine.agent.delivery import InMemoryTransport
from agent_engine.agent.executor import ToolExecutor
from agent_engine.agent.fallback import DeterministicCompletionService
from agent_engine.agent.gather import Gatherer
from agent_engine.agent.loop import AgentLoop
from agent_engine.agent.registry import ToolRegistry
from agent_engine.agent.tools import register_builtin_tools
from agent_engine.agent.verifier import Verifier
from agent_engine.config import EngineConfig
from agent_engine.memory.conversations import InMemoryConversationStore
from agent_engine.obs.log_config import setup_logging
from agent_engine.obs.tracing import TraceStore
from agent_engine.retrieval.corpus import LocalCorpus
from agent_engine.types import AgentResponse, HistoryEntry, Request, SubagentTask

logger = logging.getLogger(__name__)


def _create_llm() -> Any:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"), temperature=0)


class HistoryItem(BaseModel):
    role: str = Field(min_length=1)
    text: str


class QueryRequest(BaseModel):
    question: str = Field(min_length=1)
    user_id: str = "api"
    session_id: str = "api"
    history: list[HistoryItem] = Field(default_factory=list)

    def to_request(self) -> Request:
        return Request(
            text=self.question,
            user_id=self.user_id,
            session_id=self.session_id,
            history=tuple(HistoryEntry(role=item.role, text=item.text) for item in self.history),
        )


class TaskItem(BaseModel):
    id: str = Field(min_length=1)
    task: str = Field(min_length=1)
    constraints: list[str] = Field(default_factory=list)
    context_slice: str = ""


class ResearchRequest(QueryRequest):
    tasks: list[TaskItem] = Field(min_length=1, max_length=10)


class SourceSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    top_k: int = Field(default=5, ge=1, le=20)


@dataclass(slots=True)
class Engine:
    config: EngineConfig
    corpus: LocalCorpus
    registry: ToolRegistry
    conversations: InMemoryConversationStore
    trace_store: TraceStore
    loop: AgentLoop
    llm_configured: bool


def build_engine(
    config: EngineConfig | None = None,
    *,
    llm: Any | None = None,
    completion: CompletionService | None = None,
) -> Engine:
    """Wire every component once; the tool table is frozen here."""

    config = config or EngineConfig.from_env()
    corpus = LocalCorpus(config.gather.corpus_root, config.gather)
    corpus.load()
    registry = ToolRegistry()
    register_builtin_tools(registry, corpus)
    trace_store = TraceStore()
    conversations = InMemoryConversationStore()

    if completion is None:
        completion = LangChainCompletionService(llm) if llm is not None else DeterministicCompletionService()
    llm_configured = not isinstance(completion, DeterministicCompletionService)

    compactor = None
    if config.compaction.enabled:
        # The deterministic service cannot summarize; fall back to extractive summaries.
        compactor = HistoryCompactor(completion if llm_configured else None, config.compaction)

    executor = ToolExecutor(
        registry.snapshot(),
        config.tools,
        tracer=trace_store,
        observer=trace_store.record_tool,
    )
    loop = AgentLoop(
        gatherer=Gatherer(corpus, config.gather, conversation_store=conversations),
        actor=Actor(completion, executor, config.agent, text_format=config.verifier.text_format),
        verifier=Verifier(config.verifier),
        config=config.agent,
        subagent_config=config.subagents,
        aggregator=Aggregator(config.aggregator),
        trace_store=trace_store,
        compactor=compactor,
    )
    return Engine(
        config=config,
        corpus=corpus,
        registry=registry,
        conversations=conversations,
        trace_store=trace_store,
        loop=loop,
        llm_configured=llm_configured,
    )


def _response_payload(response: AgentResponse) -> dict[str, Any]:
    payload = asdict(response)
    payload["outcome"] = response.outcome.value
    payload["issues"] = [
        {"code": issue.code, "severity": issue.severity.value, "message": issue.message}
        for issue in response.issues
    ]
    payload["sources"] = [
        {**asdict(source), "type": source.type.value} for source in response.sources
    ]
    return payload


def create_app(engine: Engine | None = None) -> FastAPI:
    setup_logging()
    engine = engine or build_engine(llm=_create_llm())
    app = FastAPI(title="Agent Execution Engine", version="0.1.0")
    app.state.engine = engine

    def _remember(request: Request, response: AgentResponse) -> None:
        if request.history:
            return
        engine.conversations.append(request.session_id, "user", request.text)
        if response.verified:
            engine.conversations.append(request.session_id, "assistant", response.text)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "llm_configured": engine.llm_configured,
            "completion_mode": "langchain" if engine.llm_configured else "deterministic",
            "tools": sorted(spec.name for spec in engine.registry.specs()),
            "trace_count": len(engine.trace_store),
        }

    @app.post("/query")
    async def query(payload: QueryRequest) -> dict[str, Any]:
        request = payload.to_request()
        try:
            response = await engine.loop.run(request)
        except Exception as exc:
            logger.exception("api.query_failed trace_id=%s", request.trace_id)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        _remember(request, response)
        return _response_payload(response)

    @app.post("/query/stream")
    async def query_stream(payload: QueryRequest) -> StreamingResponse:
        request = payload.to_request()
        transport = InMemoryTransport()
        try:
            response = await engine.loop.run(request, transport=transport)
        except Exception as exc:
            logger.exception("api.query_stream_failed trace_id=%s", request.trace_id)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        _remember(request, response)

        async def _chunks() -> AsyncIterator[str]:
            for chunk in transport.chunks:
                yield chunk

        return StreamingResponse(
            _chunks(),
            media_type="text/plain; charset=utf-8",
            headers={"X-Trace-Id": response.trace_id, "X-Outcome": response.outcome.value},
        )

    @app.post("/research")
    async def research(payload: ResearchRequest) -> dict[str, Any]:
        request = payload.to_request()
        tasks = [
            SubagentTask(
                id=item.id,
                task=item.task,
                constraints=tuple(item.constraints),
                context_slice=item.context_slice,
            )
            for item in payload.tasks
        ]
        try:
            response = await engine.loop.run_with_subtasks(request, tasks)
        except Exception as exc:
            logger.exception("api.research_failed trace_id=%s", request.trace_id)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return _response_payload(response)

    @app.post("/sources/search")
    async def source_search(payload: SourceSearchRequest) -> dict[str, Any]:
        hits = await engine.corpus.search(payload.query, top_k=payload.top_k)
        return {
            "items": [
                {
                    "reference": hit.document.reference,
                    "title": hit.document.title,
                    "score": hit.score,
                    "excerpt": hit.excerpt,
                }
                for hit in hits
            ]
        }

    @app.get("/traces")
    def traces(limit: int = 20) -> dict[str, Any]:
        records = [asdict(record) for record in engine.trace_store.list_recent(limit=limit)]
        return {"items": records}

    @app.get("/traces/{trace_id}")
    def trace_detail(trace_id: str) -> dict[str, Any]:
        try:
            record = engine.trace_store.get(trace_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return engine.trace_store.summary()

    return app


app = create_app()
