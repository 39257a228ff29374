"""
Service supervisor — run installed binaries as long-lived background processes.

State machine per service name::

    unregistered ──register──▶ stopped ──start──▶ running ──stop──▶ stopped
                                                     │
                                       unexpected exit ├─ keep_alive ──▶ running (restart after backoff)
                                                     └─ otherwise ───▶ crashed

Every start spawns a watcher thread for that launch generation.  The
watcher polls the process without holding the service's lock and only
takes it to transition state, so a user ``stop`` is never queued behind
a restart backoff: ``stop`` sets the generation's event, which both ends
the watcher and interrupts any backoff sleep.

Each transition is written to the formula's InstalledRecord so a later
process can ``load()`` the table and reattach to pids that are still
alive.  The supervisor knows nothing about formulas, downloads or
installs; it works from a binary path and a ServiceSpec.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kegworks.adapters.process import (
    AttachedProcess,
    ProcessHandle,
    launch,
    merge_environment,
    pid_alive,
)
from kegworks.core.errors import NotFound, ServiceOperationFailed
from kegworks.core.models.formula import ServiceSpec, expand_placeholders
from kegworks.core.models.state import ServiceRegistration, ServiceState
from kegworks.core.persistence.state_file import RecordStore
from kegworks.core.reliability.backoff import backoff_delay
from kegworks.core.reliability.locks import NameLocks

logger = logging.getLogger(__name__)


@dataclass
class _Service:
    """In-memory entry for one registered service."""

    name: str
    spec: ServiceSpec
    binary_path: str
    state: ServiceState = ServiceState.STOPPED
    handle: ProcessHandle | None = None
    generation: threading.Event | None = None
    watcher: threading.Thread | None = None
    restart_pending: bool = False
    consecutive_restarts: int = 0
    total_restarts: int = 0
    last_exit_code: int | None = None
    started_at: float = field(default=0.0)

    @property
    def pid(self) -> int | None:
        return self.handle.pid if self.handle is not None else None


class ServiceSupervisor:
    """Registers, starts, stops and keeps alive named services."""

    def __init__(
        self,
        store: RecordStore | None = None,
        locks: NameLocks | None = None,
        *,
        stop_grace_period: float = 10.0,
        restart_base_delay: float = 1.0,
        restart_max_delay: float = 60.0,
        restart_stable_after: float = 10.0,
        poll_interval: float = 0.5,
        launcher: Callable[..., ProcessHandle] = launch,
    ):
        self._store = store
        self._locks = locks or NameLocks()
        self._services: dict[str, _Service] = {}
        self._table_lock = threading.Lock()

        self.stop_grace_period = stop_grace_period
        self.restart_base_delay = restart_base_delay
        self.restart_max_delay = restart_max_delay
        self.restart_stable_after = restart_stable_after
        self.poll_interval = poll_interval
        self._launcher = launcher

    @classmethod
    def from_settings(cls, settings: Any, store: RecordStore, locks: NameLocks) -> ServiceSupervisor:
        return cls(
            store,
            locks,
            stop_grace_period=settings.stop_grace_period,
            restart_base_delay=settings.restart_base_delay,
            restart_max_delay=settings.restart_max_delay,
            restart_stable_after=settings.restart_stable_after,
            poll_interval=settings.poll_interval,
        )

    # ── Registration ────────────────────────────────────────────

    def register(self, name: str, spec: ServiceSpec, binary_path: str | Path) -> None:
        """Register ``name`` or update its spec/binary in place.

        A running process keeps running; the new spec applies from the
        next launch.
        """
        with self._locks.hold(name):
            svc = self._get(name)
            if svc is None:
                svc = _Service(name=name, spec=spec, binary_path=str(binary_path))
                with self._table_lock:
                    self._services[name] = svc
                logger.info("Service %s registered (%s)", name, binary_path)
            else:
                svc.spec = spec
                svc.binary_path = str(binary_path)
                logger.info("Service %s updated (%s, state=%s)", name, binary_path, svc.state)
            self._persist(svc)

    def deregister(self, name: str) -> None:
        """Stop the service if needed and forget it."""
        with self._locks.hold(name):
            if self._get(name) is None:
                return
            self.stop(name)
            with self._table_lock:
                self._services.pop(name, None)
            self._persist_removed(name)
            logger.info("Service %s deregistered", name)

    # ── Lifecycle ───────────────────────────────────────────────

    def start(self, name: str) -> ServiceState:
        """Launch the service; a no-op when it is already running.

        Raises:
            NotFound: ``name`` is not registered.
            ServiceOperationFailed: The process could not be launched
                (state unchanged).
        """
        with self._locks.hold(name):
            svc = self._require(name)
            if svc.state == ServiceState.RUNNING and (
                svc.restart_pending or (svc.handle is not None and svc.handle.alive())
            ):
                logger.debug("Service %s already running (pid %s)", name, svc.pid)
                if svc.watcher is None or not svc.watcher.is_alive():
                    self._spawn_watcher(svc)
                return svc.state

            self._launch(svc)
            svc.state = ServiceState.RUNNING
            svc.consecutive_restarts = 0
            svc.restart_pending = False
            self._spawn_watcher(svc)
            self._persist(svc)
            logger.info("Service %s started (pid %d)", name, svc.pid)
            return svc.state

    def stop(self, name: str) -> bool:
        """Terminate the service gracefully, then forcibly after the grace period.

        Cancels any pending keep-alive restart.  A service that already
        crashed stays crashed; there is nothing left to stop.

        Returns:
            True if the service was running before the call.

        Raises:
            NotFound: ``name`` is not registered.
            ServiceOperationFailed: The process could not be signalled
                (state unchanged, supervision resumed).
        """
        svc = self._require(name)
        # Interrupt a backoff sleep before queuing for the lock.
        if svc.generation is not None:
            svc.generation.set()

        with self._locks.hold(name):
            svc = self._require(name)
            if svc.generation is not None:
                svc.generation.set()
            # A recorded RUNNING state may hide a process that died unwatched.
            previous = self.status(name)
            was_running = previous == ServiceState.RUNNING

            handle = svc.handle
            if handle is not None:
                try:
                    svc.last_exit_code = handle.terminate(self.stop_grace_period)
                except OSError as e:
                    if was_running:
                        self._spawn_watcher(svc)
                    raise ServiceOperationFailed(
                        f"Cannot stop pid {handle.pid}: {e}", formula=name,
                    ) from e

            svc.handle = None
            svc.restart_pending = False
            svc.generation = None
            svc.watcher = None
            svc.state = (
                ServiceState.CRASHED if previous == ServiceState.CRASHED else ServiceState.STOPPED
            )
            self._persist(svc)
            logger.info("Service %s stopped (was %s)", name, previous)
            return was_running

    def restart(self, name: str) -> ServiceState:
        with self._locks.hold(name):
            self.stop(name)
            return self.start(name)

    # ── Queries ─────────────────────────────────────────────────

    def status(self, name: str) -> ServiceState:
        """Current state of ``name``; never changes anything."""
        svc = self._get(name)
        if svc is None:
            return ServiceState.UNREGISTERED
        if (
            svc.state == ServiceState.RUNNING
            and not svc.restart_pending
            and (svc.handle is None or not svc.handle.alive())
            and (svc.watcher is None or not svc.watcher.is_alive())
        ):
            # Died while nothing was watching it.
            return ServiceState.CRASHED
        return svc.state

    def pid(self, name: str) -> int | None:
        svc = self._get(name)
        return svc.pid if svc is not None else None

    def is_registered(self, name: str) -> bool:
        return self._get(name) is not None

    def names(self) -> list[str]:
        with self._table_lock:
            return sorted(self._services)

    def describe(self, name: str) -> dict[str, Any]:
        svc = self._require(name)
        return {
            "name": svc.name,
            "state": self.status(name).value,
            "pid": svc.pid,
            "binary_path": svc.binary_path,
            "keep_alive": svc.spec.keep_alive,
            "restarts": svc.total_restarts,
            "last_exit_code": svc.last_exit_code,
            "stdout_log_path": svc.spec.stdout_log_path,
            "stderr_log_path": svc.spec.stderr_log_path,
        }

    # ── Persistence / reattach ──────────────────────────────────

    def load(self) -> int:
        """Rebuild the service table from persisted records.

        Live pids of services recorded as running are reattached; no
        watcher is started and nothing is relaunched (see ``resume``).
        """
        if self._store is None:
            return 0
        count = 0
        for record in self._store.load_all():
            reg = record.service
            if reg is None:
                continue
            svc = _Service(
                name=reg.name,
                spec=reg.spec,
                binary_path=reg.binary_path,
                state=reg.state,
                total_restarts=reg.restarts,
                last_exit_code=reg.last_exit_code,
            )
            if reg.state == ServiceState.RUNNING and reg.pid and pid_alive(reg.pid):
                svc.handle = AttachedProcess(reg.pid)
                svc.started_at = time.monotonic()
            with self._table_lock:
                self._services[reg.name] = svc
            count += 1
        logger.debug("Loaded %d service registrations", count)
        return count

    def resume(self) -> None:
        """Supervise everything recorded as running.

        Live processes get a watcher; dead keep-alive services are
        relaunched; dead services without keep-alive become crashed.
        """
        for name in self.names():
            with self._locks.hold(name):
                svc = self._get(name)
                if svc is None or svc.state != ServiceState.RUNNING:
                    continue
                if svc.handle is not None and svc.handle.alive():
                    logger.info("Reattached to %s (pid %d)", name, svc.pid)
                elif svc.spec.keep_alive:
                    logger.warning("Service %s died while unsupervised — relaunching", name)
                    svc.handle = None
                    try:
                        self._launch(svc)
                    except ServiceOperationFailed as e:
                        logger.error("%s", e)
                        svc.restart_pending = True
                else:
                    logger.warning("Service %s died while unsupervised", name)
                    svc.handle = None
                    svc.state = ServiceState.CRASHED
                    self._persist(svc)
                    continue
                self._spawn_watcher(svc)
                self._persist(svc)

    def shutdown(self, stop_services: bool = False) -> None:
        """End all watchers; optionally stop the processes too."""
        for name in self.names():
            svc = self._get(name)
            if svc is None:
                continue
            if stop_services and svc.state == ServiceState.RUNNING:
                try:
                    self.stop(name)
                except ServiceOperationFailed as e:
                    logger.error("%s", e)
            elif svc.generation is not None:
                svc.generation.set()

    # ── Internals ───────────────────────────────────────────────

    def _get(self, name: str) -> _Service | None:
        with self._table_lock:
            return self._services.get(name)

    def _require(self, name: str) -> _Service:
        svc = self._get(name)
        if svc is None:
            raise NotFound("Service is not registered", formula=name, stage="service")
        return svc

    def _argv(self, svc: _Service) -> list[str]:
        values = {"binary": svc.binary_path}
        return [expand_placeholders(arg, values) for arg in svc.spec.command]

    def _launch(self, svc: _Service) -> None:
        """Start a process for ``svc``. Caller holds the name lock."""
        argv = self._argv(svc)
        env = merge_environment(svc.spec.environment)
        try:
            svc.handle = self._launcher(
                argv,
                env=env,
                stdout_path=Path(svc.spec.stdout_log_path) if svc.spec.stdout_log_path else None,
                stderr_path=Path(svc.spec.stderr_log_path) if svc.spec.stderr_log_path else None,
                cwd=svc.spec.working_directory,
            )
        except OSError as e:
            raise ServiceOperationFailed(f"Cannot launch {argv[0]}: {e}", formula=svc.name) from e
        svc.started_at = time.monotonic()

    def _spawn_watcher(self, svc: _Service) -> None:
        """Start a watcher for a new launch generation. Caller holds the name lock."""
        if svc.generation is not None:
            svc.generation.set()
        generation = threading.Event()
        svc.generation = generation
        svc.watcher = threading.Thread(
            target=self._watch,
            args=(svc, generation),
            daemon=True,
            name=f"keg-watch-{svc.name}",
        )
        svc.watcher.start()

    def _watch(self, svc: _Service, generation: threading.Event) -> None:
        name = svc.name
        while not generation.wait(self.poll_interval):
            handle = svc.handle
            if handle is not None and handle.alive():
                if (
                    svc.consecutive_restarts
                    and time.monotonic() - svc.started_at >= self.restart_stable_after
                ):
                    svc.consecutive_restarts = 0
                continue

            with self._locks.hold(name):
                if generation.is_set():
                    return
                if svc.handle is not handle:
                    continue
                svc.last_exit_code = handle.poll() if handle is not None else None
                svc.handle = None

                if not svc.spec.keep_alive:
                    svc.state = ServiceState.CRASHED
                    svc.generation = None
                    self._persist(svc)
                    logger.warning("Service %s exited unexpectedly (code %s)", name, svc.last_exit_code)
                    return

                svc.consecutive_restarts += 1
                svc.total_restarts += 1
                svc.restart_pending = True
                delay = backoff_delay(
                    svc.consecutive_restarts,
                    self.restart_base_delay,
                    self.restart_max_delay,
                )
                self._persist(svc)
                logger.warning(
                    "Service %s exited (code %s) — restart %d in %.2fs",
                    name, svc.last_exit_code, svc.consecutive_restarts, delay,
                )

            if generation.wait(delay):
                return

            with self._locks.hold(name):
                if generation.is_set():
                    return
                try:
                    self._launch(svc)
                except ServiceOperationFailed as e:
                    logger.error("%s", e)
                    continue
                svc.restart_pending = False
                self._persist(svc)
                logger.info("Service %s restarted (pid %d)", name, svc.pid)

    def _persist(self, svc: _Service) -> None:
        if self._store is None:
            return
        record = self._store.load(svc.name)
        if record is None:
            return
        record.service = ServiceRegistration(
            name=svc.name,
            spec=svc.spec,
            binary_path=svc.binary_path,
            state=svc.state,
            pid=svc.pid,
            restarts=svc.total_restarts,
            last_exit_code=svc.last_exit_code,
        )
        try:
            self._store.save(record)
        except OSError as e:
            logger.error("Cannot persist service state for %s: %s", svc.name, e)

    def _persist_removed(self, name: str) -> None:
        if self._store is None:
            return
        record = self._store.load(name)
        if record is None or record.service is None:
            return
        record.service = None
        try:
            self._store.save(record)
        except OSError as e:
            logger.error("Cannot persist service removal for %s: %s", name, e)
