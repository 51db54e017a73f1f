"""ToolResult helpers: error classification and model-facing formatting."""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any

from pydantic import BaseModel, ValidationError

from agent_engine.types import ToolErrorCode, ToolFailure, ToolSuccess

_STATUS_PATTERN = re.compile(r"\b([45]\d{2})\b")
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "rate limit",
    "temporarily",
    "unavailable",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
)
_CONNECTION_MARKERS = (
    "econnrefused",
    "econnreset",
    "connection refused",
    "connection reset",
    "network",
    "dns",
    "name resolution",
)
_CLIENT_ERROR_STATUSES = frozenset({400, 401, 403, 404})
_SENSITIVE_KEY_PARTS = ("password", "token", "secret", "key", "auth", "credential", "api_key")
_MAX_AUDIT_STRING = 200


def ok(data: Any) -> ToolSuccess[Any]:
    return ToolSuccess(data=data)


def fail(code: ToolErrorCode, message: str, *, retryable: bool = False) -> ToolFailure:
    return ToolFailure(code=code, message=message, retryable=retryable)


def status_code_of(error: BaseException | str) -> int | None:
    """Best-effort HTTP status extraction from an exception or message."""

    if isinstance(error, BaseException):
        for attr in ("status_code", "status"):
            value = getattr(error, attr, None)
            if isinstance(value, int):
                return value
        response = getattr(error, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
        message = str(error)
    else:
        message = error
    match = _STATUS_PATTERN.search(message)
    return int(match.group(1)) if match else None


def is_retryable(error: BaseException | str) -> bool:
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    status = status_code_of(error)
    if status is not None:
        return status == 429 or status >= 500
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def to_tool_error(error: BaseException | str) -> ToolFailure:
    """Classify an exception (or message) into a `ToolFailure`."""

    if isinstance(error, ValidationError):
        return fail(ToolErrorCode.TOOL_INVALID_INPUT, _first_line(str(error)))

    message = str(error) or type(error).__name__
    lowered = message.lower()
    status = status_code_of(error)

    if status == 429 or "rate limit" in lowered:
        return fail(ToolErrorCode.RATE_LIMITED, message, retryable=True)

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)) or any(
        marker in lowered for marker in ("timeout", "timed out", "aborted")
    ):
        return fail(ToolErrorCode.TOOL_EXECUTION_FAILED, message, retryable=True)

    if isinstance(error, ConnectionError) or any(marker in lowered for marker in _CONNECTION_MARKERS):
        return fail(ToolErrorCode.CONNECTION_FAILED, message, retryable=True)

    if status in (401, 403):
        return fail(ToolErrorCode.TOOL_UNAVAILABLE, f"Auth error: {message}")

    if status in (400, 404):
        return fail(ToolErrorCode.TOOL_INVALID_INPUT, message)

    if status is not None and status >= 500:
        return fail(ToolErrorCode.TOOL_EXECUTION_FAILED, message, retryable=True)

    return fail(ToolErrorCode.TOOL_EXECUTION_FAILED, message, retryable=is_retryable(error))


def normalize_failure(failure: ToolFailure) -> ToolFailure:
    """Re-classify a handler-returned failure; explicit classifications win."""

    if failure.code is not ToolErrorCode.TOOL_EXECUTION_FAILED:
        return failure
    normalized = to_tool_error(failure.message)
    if failure.retryable and not normalized.retryable and not is_client_error(normalized):
        return fail(normalized.code, normalized.message, retryable=True)
    return normalized


def is_client_error(failure: ToolFailure) -> bool:
    if failure.code in (ToolErrorCode.TOOL_INVALID_INPUT, ToolErrorCode.TOOL_UNAVAILABLE):
        return True
    return status_code_of(failure.message) in _CLIENT_ERROR_STATUSES


def should_retry(failure: ToolFailure) -> bool:
    return failure.retryable and not is_client_error(failure)


def format_error_for_model(tool_name: str, failure: ToolFailure) -> str:
    """User-safe phrasing handed back to the model instead of raw errors."""

    code = failure.code
    if code is ToolErrorCode.RATE_LIMITED:
        return f"The {tool_name} tool is rate limited right now. Please wait a bit and try again."
    if code is ToolErrorCode.TOOL_INVALID_INPUT:
        return f"The {tool_name} tool request was invalid. Try rephrasing or providing required fields."
    if code is ToolErrorCode.TOOL_NOT_FOUND:
        return f"The {tool_name} tool is not available."
    if code is ToolErrorCode.CONNECTION_FAILED:
        return f"I couldn't reach the {tool_name} tool service. Try again in a moment."
    if code is ToolErrorCode.TOOL_UNAVAILABLE:
        return f"The {tool_name} tool is unavailable right now."
    return f"The {tool_name} tool failed. Try again or use a different approach."


def serialize_payload(data: Any) -> str:
    """Render a tool payload as text; the model consumes strings only."""

    if isinstance(data, str):
        return data
    if isinstance(data, BaseModel):
        return data.model_dump_json()
    if isinstance(data, dict) and isinstance(data.get("content"), list):
        texts = [
            block["text"]
            for block in data["content"]
            if isinstance(block, dict) and isinstance(block.get("text"), str) and block["text"]
        ]
        if texts:
            return "\n".join(texts)
    return json.dumps(data, default=str, ensure_ascii=False)


def sanitize_arguments(args: Any) -> dict[str, Any]:
    """Copy of tool arguments that is safe to log.

    Values under credential-like keys are redacted and long strings are cut
    to 200 characters. Anything that is not a mapping yields `{}`.
    """

    if not isinstance(args, dict):
        return {}
    sanitized: dict[str, Any] = {}
    for key, value in args.items():
        if any(part in str(key).lower() for part in _SENSITIVE_KEY_PARTS):
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, str) and len(value) > _MAX_AUDIT_STRING:
            sanitized[key] = value[:_MAX_AUDIT_STRING] + "...[truncated]"
        else:
            sanitized[key] = value
    return sanitized


def _first_line(text: str) -> str:
    return text.strip().splitlines()[0] if text.strip() else text
