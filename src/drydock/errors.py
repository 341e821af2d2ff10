"""Error taxonomy for the execution runtime.

Retry decisions belong to the surrounding workflow engine; these classes only
tell it *what* went wrong:

  ConfigurationError    — bad template, missing credential field, misuse. Never retry.
  ValidationError       — rejected identifiers or filenames (a ConfigurationError).
  ContainerError        — image pull, job creation, non-zero exit. Carries a log tail.
  ExecutionTimeoutError — deadline exceeded waiting for a container or its completion.
  ServiceError          — registry / token HTTP failures. Carries status and body.
"""

from __future__ import annotations

from typing import Any


class DrydockError(Exception):
    """Base class for every error raised by drydock."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}


class ConfigurationError(DrydockError):
    pass


class ValidationError(ConfigurationError):
    def __init__(
        self,
        message: str,
        *,
        field_errors: dict[str, list[str]] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.field_errors: dict[str, list[str]] = field_errors or {}


class ContainerError(DrydockError):
    @property
    def logs(self) -> str:
        return self.details.get("logs", "")


class ExecutionTimeoutError(DrydockError, TimeoutError):
    def __init__(
        self,
        message: str,
        timeout_seconds: float,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.timeout_seconds = timeout_seconds


class ServiceError(DrydockError):
    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        body: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"{self.message} (HTTP {self.status}: {self.body[:200]})"
