"""Shared domain models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class SourceType(str, Enum):
    THREAD = "thread"
    FILE = "file"
    WEB = "web"
    TOOL = "tool"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class Outcome(str, Enum):
    """Exit codes surfaced to the caller of the agent loop."""

    SUCCESS = "SUCCESS"
    VERIFICATION_EXHAUSTED = "VERIFICATION_EXHAUSTED"
    TIMEOUT = "TIMEOUT"
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    RATE_LIMITED = "RATE_LIMITED"


class ToolErrorCode(str, Enum):
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    TOOL_INVALID_INPUT = "TOOL_INVALID_INPUT"
    TOOL_UNAVAILABLE = "TOOL_UNAVAILABLE"
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    CONNECTION_FAILED = "CONNECTION_FAILED"


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    role: str
    text: str


@dataclass(slots=True, frozen=True)
class Request:
    """A user request. Immutable for the lifetime of one loop run."""

    text: str
    user_id: str
    session_id: str
    history: tuple[HistoryEntry, ...] = ()
    trace_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(slots=True, frozen=True)
class Source:
    """A citable source. Deduplicated by `id`, or by a URL already seen, when merged."""

    id: str
    type: SourceType
    title: str
    url: str | None = None
    excerpt: str | None = None


@dataclass(slots=True, frozen=True)
class KnowledgeExcerpt:
    reference: str
    excerpt: str
    url: str | None = None


@dataclass(slots=True, frozen=True)
class GatheredContext:
    """Bounded context assembled for one attempt.

    `relevant_sources` is ordered: structured knowledge first, then thread
    history. The `[n]` markers produced by `render()` index into it.
    """

    thread_snippets: tuple[str, ...] = ()
    knowledge_excerpts: tuple[KnowledgeExcerpt, ...] = ()
    relevant_sources: tuple[Source, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.thread_snippets or self.knowledge_excerpts or self.relevant_sources)

    def render(self) -> str:
        parts: list[str] = []
        if self.relevant_sources:
            parts.append("## Sources")
            for index, source in enumerate(self.relevant_sources, start=1):
                line = f"[{index}] {source.title}"
                excerpt = (source.excerpt or "").replace("\n", " ").strip()
                if excerpt:
                    line += f": {excerpt}"
                parts.append(line)
        if self.knowledge_excerpts:
            parts.append("")
            parts.append("## Knowledge Base")
            for item in self.knowledge_excerpts:
                parts.append(f"- {item.reference}\n  {item.excerpt.strip()}")
        if self.thread_snippets:
            parts.append("")
            parts.append("## Previous Conversation")
            parts.extend(f"- {snippet}" for snippet in self.thread_snippets)
        return "\n".join(parts).strip()


@dataclass(slots=True, frozen=True)
class ToolCall:
    tool_name: str
    id: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ToolSuccess(Generic[T]):
    data: T

    @property
    def success(self) -> bool:
        return True


@dataclass(slots=True, frozen=True)
class ToolFailure:
    code: ToolErrorCode
    message: str
    retryable: bool

    @property
    def success(self) -> bool:
        return False


ToolResult = Union[ToolSuccess[T], ToolFailure]


@dataclass(slots=True, frozen=True)
class ToolTrace:
    """Audit record for an executed tool call. Carries no payload content."""

    name: str
    attempts: int
    duration_ms: float
    outcome_code: str


@dataclass(slots=True)
class Candidate:
    """An unverified draft produced by one Actor pass."""

    text: str
    tool_calls_used: int = 0
    sources: tuple[Source, ...] = ()
    iterations: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    error_code: Outcome | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error_code is not None


@dataclass(slots=True, frozen=True)
class VerificationIssue:
    code: str
    severity: Severity
    message: str


@dataclass(slots=True, frozen=True)
class VerificationResult:
    passed: bool
    issues: tuple[VerificationIssue, ...]
    feedback: str

    @property
    def errors(self) -> tuple[VerificationIssue, ...]:
        return tuple(issue for issue in self.issues if issue.severity is Severity.ERROR)


@dataclass(slots=True, frozen=True)
class SubagentTask:
    """An isolated unit of work. Carries a curated slice, never full history."""

    id: str
    task: str
    constraints: tuple[str, ...] = ()
    context_slice: str = ""


@dataclass(slots=True, frozen=True)
class SubagentResult:
    task_id: str
    success: bool
    content: str
    sources: tuple[Source, ...] = ()
    error: str | None = None
    duration_ms: float = 0.0


@dataclass(slots=True, frozen=True)
class TaskFailure:
    task_id: str
    error: str


@dataclass(slots=True, frozen=True)
class AggregatedResult:
    synthesis: str
    sources: tuple[Source, ...]
    failures: tuple[TaskFailure, ...]
    metadata: dict[str, int | float]


@dataclass(slots=True, frozen=True)
class AgentResponse:
    """Final value released by the agent loop."""

    text: str
    outcome: Outcome
    verified: bool
    attempts: int
    trace_id: str
    sources: tuple[Source, ...] = ()
    issues: tuple[VerificationIssue, ...] = ()


def dedupe_sources(sources: tuple[Source, ...] | list[Source]) -> tuple[Source, ...]:
    """First-seen order; a repeated `id` or a repeated URL is a duplicate."""
    seen_ids: set[str] = set()
    seen_urls: set[str] = set()
    deduped: list[Source] = []
    for source in sources:
        if source.id in seen_ids or (source.url and source.url in seen_urls):
            continue
        seen_ids.add(source.id)
        if source.url:
            seen_urls.add(source.url)
        deduped.append(source)
    return tuple(deduped)
