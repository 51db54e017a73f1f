import pytest
from pydantic import ValidationError

from agent_engine.config import EngineConfig, ToolExecutorConfig


def test_defaults_match_operational_limits() -> None:
    config = EngineConfig()

    assert config.tools.max_attempts == 3
    assert config.tools.timeout_seconds == 30.0
    assert config.tools.rate_limit_backoff_seconds == 30.0
    assert config.agent.max_attempts == 3
    assert config.agent.max_tool_iterations == 10
    assert config.subagents.max_concurrency == 3
    assert config.subagents.task_timeout_seconds == 60.0
    assert config.aggregator.max_result_tokens == 2000
    assert config.verifier.text_format == "mrkdwn"
    assert config.agent.citation_footer is True
    assert config.compaction.max_context_tokens == 100_000
    assert config.compaction.threshold == 0.8
    assert config.compaction.keep_last == 10


def test_env_overrides_are_applied_per_section() -> None:
    config = EngineConfig.from_env(
        {
            "AGENT_ENGINE_TOOLS__TIMEOUT_SECONDS": "10",
            "AGENT_ENGINE_VERIFIER__TEXT_FORMAT": "plain",
            "AGENT_ENGINE_GATHER__CORPUS_ROOT": "/srv/knowledge",
            "AGENT_ENGINE_UNKNOWN__FIELD": "ignored",
            "OTHER_VARIABLE": "ignored",
        }
    )

    assert config.tools.timeout_seconds == 10.0
    assert config.verifier.text_format == "plain"
    assert config.gather.corpus_root == "/srv/knowledge"


def test_invalid_overrides_are_rejected() -> None:
    with pytest.raises(ValidationError):
        EngineConfig.from_env({"AGENT_ENGINE_VERIFIER__TEXT_FORMAT": "html"})


def test_retry_ceiling_cannot_be_raised() -> None:
    with pytest.raises(ValidationError):
        ToolExecutorConfig(max_attempts=5)
