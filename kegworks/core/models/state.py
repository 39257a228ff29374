"""
Installed state — the long-lived entities that outlive a single command.

A formula is discarded after every operation; what persists is the
InstalledRecord (files on disk) and the ServiceRegistration (the
supervised process).  Both are serialized to
``<state_dir>/installed/<name>.json`` and reloaded on startup.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from kegworks.core.models.formula import ServiceSpec


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class ServiceState(StrEnum):
    """Lifecycle of a supervised service."""

    UNREGISTERED = "unregistered"
    STOPPED = "stopped"
    RUNNING = "running"
    CRASHED = "crashed"


class ServiceRegistration(BaseModel):
    """Persisted view of one supervised service."""

    name: str
    spec: ServiceSpec
    binary_path: str
    state: ServiceState = ServiceState.STOPPED
    pid: int | None = None
    restarts: int = 0
    last_exit_code: int | None = None
    updated_at: str = Field(default_factory=_now_iso)


class InstalledRecord(BaseModel):
    """Durable result of a successful install."""

    schema_version: int = 1

    name: str
    version: str
    binary_paths: list[str] = Field(default_factory=list)
    verified: bool = True
    architecture: str = ""
    runtime_dependency: str | None = None
    installed_at: str = Field(default_factory=_now_iso)

    service: ServiceRegistration | None = None

    def touch(self) -> None:
        """Refresh the service registration timestamp."""
        if self.service is not None:
            self.service.updated_at = _now_iso()
