"""Exceptions for programming and configuration faults.

External-service failures never surface as exceptions; they are carried as
`ToolFailure` values or failed `Candidate`s. The types here are raised only
while wiring the engine together at startup.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for engine configuration faults."""


class ToolRegistrationError(EngineError, ValueError):
    """A tool spec could not be registered (duplicate or invalid name)."""


class ToolCallError(Exception):
    """Raised by tool handlers to report a failure with an explicit status.

    The executor classifies it like any other exception, but uses
    `status_code` directly instead of scanning the message.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
