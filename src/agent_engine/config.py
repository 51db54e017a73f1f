"""Configuration models for the agent execution engine."""

from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field

_ENV_PREFIX = "AGENT_ENGINE_"


class ToolExecutorConfig(BaseModel):
    """Configures per-call timeout and the transient-failure retry policy."""

    timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_attempts: int = Field(default=3, ge=1, le=3)
    base_backoff_seconds: float = Field(default=1.0, ge=0.0)
    rate_limit_backoff_seconds: float = Field(default=30.0, ge=0.0)


class GatherConfig(BaseModel):
    """Bounds the gather phase so it never dominates request latency."""

    corpus_root: str = "knowledge"
    timeout_seconds: float = Field(default=5.0, gt=0.0)
    history_limit: int = Field(default=50, ge=0)
    max_thread_snippets: int = Field(default=5, ge=0)
    thread_token_budget: int = Field(default=1500, ge=0)
    max_excerpts: int = Field(default=5, ge=0)
    max_files: int = Field(default=50, ge=1)
    max_file_bytes: int = Field(default=100_000, ge=1)
    max_total_bytes: int = Field(default=250_000, ge=1)
    max_depth: int = Field(default=6, ge=0)
    max_context_chars: int = Field(default=12_000, ge=500)
    corpus_refresh_seconds: float = Field(default=300.0, ge=0.0)


class VerifierConfig(BaseModel):
    """Tunes verification thresholds and the transport's text conventions."""

    text_format: Literal["mrkdwn", "markdown", "plain"] = "mrkdwn"
    min_length_cap: int = Field(default=50, ge=0)
    min_length_ratio: float = Field(default=1.0, ge=0.0)


class AgentConfig(BaseModel):
    """Configures the act/verify loop and the completion boundary."""

    max_attempts: int = Field(default=3, ge=1)
    max_tool_iterations: int = Field(default=10, ge=1)
    completion_timeout_seconds: float = Field(default=120.0, gt=0.0)
    run_deadline_seconds: float = Field(default=180.0, gt=0.0)
    stream_chunk_size: int = Field(default=200, ge=1)
    citation_footer: bool = True


class SubagentConfig(BaseModel):
    max_concurrency: int = Field(default=3, ge=1)
    task_timeout_seconds: float = Field(default=60.0, gt=0.0)


class AggregatorConfig(BaseModel):
    max_result_tokens: int = Field(default=2000, ge=50)


class CompactionConfig(BaseModel):
    """Folds older thread history into a summary once it nears the token budget."""

    enabled: bool = True
    max_context_tokens: int = Field(default=100_000, ge=1)
    threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    keep_last: int = Field(default=10, ge=1)
    max_summary_tokens: int = Field(default=1000, ge=50)
    timeout_seconds: float = Field(default=30.0, gt=0.0)


class EngineConfig(BaseModel):
    """Top-level configuration grouping every component's settings."""

    tools: ToolExecutorConfig = Field(default_factory=ToolExecutorConfig)
    gather: GatherConfig = Field(default_factory=GatherConfig)
    verifier: VerifierConfig = Field(default_factory=VerifierConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    subagents: SubagentConfig = Field(default_factory=SubagentConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "EngineConfig":
        """Build a config, applying AGENT_ENGINE_<SECTION>__<FIELD> overrides.

        Example: ``AGENT_ENGINE_TOOLS__TIMEOUT_SECONDS=10``.
        Values are validated by the section models.
        """

        env = os.environ if environ is None else environ
        sections: dict[str, dict[str, str]] = {}
        for key, value in env.items():
            if not key.startswith(_ENV_PREFIX) or "__" not in key:
                continue
            section, _, name = key[len(_ENV_PREFIX):].lower().partition("__")
            if section in cls.model_fields and name:
                sections.setdefault(section, {})[name] = value
        return cls.model_validate(sections)
