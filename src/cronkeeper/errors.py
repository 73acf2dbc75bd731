"""Cronkeeper · Unified Error Hierarchy.

All custom exceptions inherit from CronkeeperError, which carries an
error_code and optional details dict for programmatic handling.

Usage::

    from cronkeeper.errors import StoreError, ValidationError

    raise ValidationError("command matches blocked pattern: privilege escalation", field="command")
    raise StoreError("Backend unreachable", details={"operation": "list"})
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cronkeeper.models import InstallStep


class CronkeeperError(Exception):
    """Base exception for all Cronkeeper errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "CRONKEEPER_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}


class ConfigError(CronkeeperError):
    """Configuration-related errors (loading, unknown backend)."""

    def __init__(
        self,
        message: str,
        error_code: str = "CONFIG_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class ValidationError(CronkeeperError):
    """A proposed name, command or schedule was rejected.

    The message is the Validator's reason, unchanged.
    """

    def __init__(
        self,
        message: str,
        field: str = "",
        error_code: str = "VALIDATION_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)
        self.field = field
        self.reason = message


class StoreError(CronkeeperError):
    """Backend unreachable, timed out or write conflict."""

    def __init__(
        self,
        message: str,
        error_code: str = "STORE_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class JobNotFoundError(StoreError):
    """Mutation addressed a job id the store does not know."""

    def __init__(
        self,
        job_id: str,
        error_code: str = "JOB_NOT_FOUND",
        details: dict | None = None,
    ) -> None:
        super().__init__(f"Job not found: {job_id}", error_code=error_code, details=details)
        self.job_id = job_id


class PublishError(CronkeeperError):
    """A publish run aborted at ``step``."""

    def __init__(
        self,
        message: str,
        step: InstallStep | None = None,
        error_code: str = "PUBLISH_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)
        self.step = step
        self.reason = message


class PublishInProgressError(PublishError):
    """Another publish currently holds the installer."""

    def __init__(
        self,
        message: str = "publish already in progress",
        step: InstallStep | None = None,
        error_code: str = "PUBLISH_IN_PROGRESS",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, step=step, error_code=error_code, details=details)


class HostCommandError(CronkeeperError):
    """A host command (``crontab -l``) could not be run or timed out."""

    def __init__(
        self,
        message: str,
        error_code: str = "HOST_COMMAND_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)
