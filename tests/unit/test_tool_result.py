import pytest
from pydantic import BaseModel

from agent_engine.agent.tool_result import (
    fail,
    format_error_for_model,
    normalize_failure,
    sanitize_arguments,
    serialize_payload,
    should_retry,
    status_code_of,
    to_tool_error,
)
from agent_engine.errors import ToolCallError
from agent_engine.types import ToolErrorCode


@pytest.mark.parametrize(
    ("error", "code", "retryable"),
    [
        (ToolCallError("too many requests", status_code=429), ToolErrorCode.RATE_LIMITED, True),
        (RuntimeError("Rate limit exceeded for key"), ToolErrorCode.RATE_LIMITED, True),
        (TimeoutError("operation timed out"), ToolErrorCode.TOOL_EXECUTION_FAILED, True),
        (ConnectionRefusedError("connect ECONNREFUSED"), ToolErrorCode.CONNECTION_FAILED, True),
        (ToolCallError("forbidden", status_code=403), ToolErrorCode.TOOL_UNAVAILABLE, False),
        (RuntimeError("HTTP 404 not found"), ToolErrorCode.TOOL_INVALID_INPUT, False),
        (RuntimeError("HTTP 502 bad gateway"), ToolErrorCode.TOOL_EXECUTION_FAILED, True),
        (ValueError("bad state"), ToolErrorCode.TOOL_EXECUTION_FAILED, False),
    ],
)
def test_to_tool_error_classification(error, code, retryable) -> None:
    failure = to_tool_error(error)

    assert failure.code is code
    assert failure.retryable is retryable


def test_status_code_prefers_attribute_over_message() -> None:
    assert status_code_of(ToolCallError("mentions 500", status_code=404)) == 404
    assert status_code_of("upstream returned 503") == 503
    assert status_code_of("no status here") is None


def test_auth_failures_are_labelled() -> None:
    failure = to_tool_error(ToolCallError("token expired", status_code=401))

    assert failure.message.startswith("Auth error:")
    assert should_retry(failure) is False


def test_normalize_keeps_explicit_classification() -> None:
    explicit = fail(ToolErrorCode.TOOL_UNAVAILABLE, "maintenance window")
    assert normalize_failure(explicit) is explicit

    reparsed = normalize_failure(fail(ToolErrorCode.TOOL_EXECUTION_FAILED, "status 429 from api"))
    assert reparsed.code is ToolErrorCode.RATE_LIMITED

    client = normalize_failure(fail(ToolErrorCode.TOOL_EXECUTION_FAILED, "404 missing", retryable=True))
    assert client.code is ToolErrorCode.TOOL_INVALID_INPUT
    assert should_retry(client) is False


def test_model_facing_messages_hide_raw_errors() -> None:
    failure = fail(ToolErrorCode.CONNECTION_FAILED, "ECONNRESET 10.0.0.12:5432")

    message = format_error_for_model("jira", failure)

    assert "jira" in message
    assert "10.0.0.12" not in message


def test_serialize_payload_handles_models() -> None:
    class Ticket(BaseModel):
        key: str
        status: str

    assert serialize_payload(Ticket(key="ENG-1", status="open")) == '{"key":"ENG-1","status":"open"}'
    assert serialize_payload(["a", 1]) == '["a", 1]'


def test_sanitize_arguments_redacts_credentials_and_cuts_long_strings() -> None:
    args = {
        "query": "refund policy",
        "api_key": "sk-live-123",
        "Authorization": "Bearer abc",
        "db_password": "hunter2",
        "body": "y" * 250,
        "top_k": 5,
    }

    sanitized = sanitize_arguments(args)

    assert sanitized == {
        "query": "refund policy",
        "api_key": "[REDACTED]",
        "Authorization": "[REDACTED]",
        "db_password": "[REDACTED]",
        "body": "y" * 200 + "...[truncated]",
        "top_k": 5,
    }
    assert args["api_key"] == "sk-live-123"
    assert sanitize_arguments(None) == {}
    assert sanitize_arguments(["not", "a", "mapping"]) == {}
