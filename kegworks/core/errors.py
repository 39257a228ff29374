"""
Error taxonomy — every failure the pipeline can surface.

Each error carries the formula name and the stage that failed, so the
message a user sees always answers "which package" and "where".  The
CLI maps ``exit_code`` straight to the process exit status; the core
never calls ``sys.exit`` itself.
"""

from __future__ import annotations


class KegError(Exception):
    """Base class for all kegworks failures."""

    exit_code: int = 1
    stage: str = "kegworks"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        formula: str | None = None,
        stage: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.formula = formula
        if stage is not None:
            self.stage = stage

    def __str__(self) -> str:
        where = f"{self.formula} [{self.stage}]" if self.formula else f"[{self.stage}]"
        return f"{where}: {self.message}"

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "formula": self.formula,
            "stage": self.stage,
            "message": self.message,
            "exit_code": self.exit_code,
        }


class NotFound(KegError):
    """Unknown formula, or a formula that is not installed."""

    exit_code = 2
    stage = "lookup"


class UnsupportedArchitecture(KegError):
    """Architecture tag outside the supported set."""

    exit_code = 3
    stage = "resolve"


class NoArtifactForArchitecture(KegError):
    """Formula declares no artifact for the requested architecture."""

    exit_code = 4
    stage = "resolve"


class FetchFailed(KegError):
    """Network or transport failure while downloading an artifact."""

    exit_code = 5
    stage = "fetch"
    retryable = True


class ChecksumMismatch(KegError):
    """Downloaded content does not match the declared checksum."""

    exit_code = 6
    stage = "verify"


class UnverifiedArtifact(KegError):
    """Artifact has no checksum and strict mode refuses it."""

    exit_code = 7
    stage = "verify"


class InstallFailed(KegError):
    """Extraction or placement failed; prior install was restored."""

    exit_code = 8
    stage = "install"


class ServiceOperationFailed(KegError):
    """Process could not be launched or signalled."""

    exit_code = 9
    stage = "service"


class OperationCancelled(KegError):
    """Caller cancelled a fetch or extraction in flight."""

    exit_code = 10
    stage = "cancel"


class ConfigError(KegError):
    """Settings file is missing, unreadable or invalid."""

    exit_code = 11
    stage = "config"


class FormulaValidationError(ConfigError):
    """Formula source failed validation (bad record, bad dependency)."""


class DependentsInstalled(KegError):
    """Uninstall refused because installed formulas depend on this one."""

    exit_code = 12
    stage = "uninstall"


class FormulaTestFailed(KegError):
    """Installed binary did not pass the formula's self-test."""

    exit_code = 13
    stage = "test"
