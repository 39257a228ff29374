"""
Operations — install, upgrade, uninstall, service control, self-test.

``Keg`` wires the independent stages together:

    registry lookup → resolve → fetch/verify → install → supervise

Every mutating operation holds the formula's name lock for its whole
duration and appends one entry to the audit ledger.  Resolution and
verification happen before anything outside the staging area is
touched, so their failures never disturb a live install.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from kegworks.adapters.fetch import Fetcher, UrllibFetcher
from kegworks.core.config.formula_loader import load_formula_dirs
from kegworks.core.config.loader import Settings
from kegworks.core.errors import (
    DependentsInstalled,
    FormulaTestFailed,
    KegError,
    NotFound,
    UnverifiedArtifact,
)
from kegworks.core.models.formula import Architecture, Formula, FormulaTest, ServiceSpec
from kegworks.core.models.state import InstalledRecord, ServiceState
from kegworks.core.persistence.audit import AuditEntry, AuditWriter
from kegworks.core.persistence.state_file import RecordStore
from kegworks.core.reliability.backoff import retry_call
from kegworks.core.reliability.locks import NameLocks
from kegworks.core.services.fetcher import StagedArtifact, fetch_and_verify
from kegworks.core.services.installer import Installer
from kegworks.core.services.registry import FormulaRegistry
from kegworks.core.services.resolver import coerce_architecture, detect_architecture, resolve
from kegworks.core.services.supervisor import ServiceSupervisor

logger = logging.getLogger(__name__)


class Keg:
    """Facade over registry, installer and supervisor for one install prefix."""

    def __init__(
        self,
        settings: Settings,
        registry: FormulaRegistry,
        *,
        fetcher: Fetcher | None = None,
        store: RecordStore | None = None,
        locks: NameLocks | None = None,
        supervisor: ServiceSupervisor | None = None,
        installer: Installer | None = None,
        audit: AuditWriter | None = None,
    ):
        self.settings = settings
        self.registry = registry
        self.fetcher = fetcher or UrllibFetcher()
        self.store = store or RecordStore(settings.state_dir)
        self.locks = locks or NameLocks()
        self.supervisor = supervisor or ServiceSupervisor.from_settings(
            settings, self.store, self.locks,
        )
        self.installer = installer or Installer(settings.prefix, settings.staging_dir)
        self.audit = audit or AuditWriter(settings.state_dir)

    @classmethod
    def from_settings(cls, settings: Settings, *, fetcher: Fetcher | None = None) -> Keg:
        """Load formulas from the configured directories and reattach services."""
        registry = FormulaRegistry(load_formula_dirs(settings.formula_dirs))
        keg = cls(settings, registry, fetcher=fetcher)
        keg.supervisor.load()
        return keg

    @property
    def architecture(self) -> Architecture:
        if self.settings.architecture:
            return coerce_architecture(self.settings.architecture)
        return detect_architecture()

    # ── Install / upgrade / uninstall ───────────────────────────

    def install(self, name: str, *, cancel: threading.Event | None = None) -> InstalledRecord:
        """Install ``name`` (and its runtime dependency) and start its service.

        Installing the version that is already installed is a no-op; a
        different installed version is upgraded instead.
        """
        formula = self.registry.lookup(name)
        with self.locks.hold(name):
            existing = self.store.load(name)
            if existing is not None:
                if existing.version == formula.version:
                    logger.info("%s %s is already installed", name, existing.version)
                    self._write_noop("install", formula)
                    return existing
                return self.upgrade(name, cancel=cancel)

            with self._audited("install", formula) as entry:
                self._ensure_dependency(formula, cancel)
                staged, arch = self._stage(formula, cancel)
                try:
                    record = self.installer.install(
                        formula, staged, architecture=arch.value, cancel=cancel,
                    )
                finally:
                    staged.discard()
                self.store.save(record)
                entry.context["verified"] = record.verified

                if formula.service is not None:
                    self._register_service(formula, formula.service, record)
                    self.supervisor.start(name)
                return self.store.load(name) or record

    def upgrade(self, name: str, *, cancel: threading.Event | None = None) -> InstalledRecord:
        """Replace the installed version, restoring the service's prior run state."""
        formula = self.registry.lookup(name)
        with self.locks.hold(name):
            existing = self.store.load(name)
            if existing is None:
                return self.install(name, cancel=cancel)
            if existing.version == formula.version:
                logger.info("%s %s is already up to date", name, existing.version)
                self._write_noop("upgrade", formula)
                return existing

            with self._audited("upgrade", formula) as entry:
                entry.context["from_version"] = existing.version
                self._ensure_dependency(formula, cancel)
                staged, arch = self._stage(formula, cancel)
                try:
                    was_running = False
                    if self.supervisor.is_registered(name):
                        was_running = self.supervisor.stop(name)
                    entry.context["was_running"] = was_running
                    try:
                        record = self.installer.install(
                            formula, staged, architecture=arch.value, cancel=cancel,
                        )
                    except KegError:
                        if was_running:
                            self.supervisor.start(name)
                        raise
                finally:
                    staged.discard()

                record.service = existing.service
                self.store.save(record)
                stale = [p for p in existing.binary_paths if p not in record.binary_paths]
                if stale:
                    self.installer.remove(existing.model_copy(update={"binary_paths": stale}))

                if formula.service is not None:
                    self._register_service(formula, formula.service, record)
                    if was_running:
                        self.supervisor.start(name)
                elif self.supervisor.is_registered(name):
                    self.supervisor.deregister(name)

                logger.info("Upgraded %s %s → %s", name, existing.version, formula.version)
                return self.store.load(name) or record

    def uninstall(self, name: str, *, ignore_dependencies: bool = False) -> InstalledRecord:
        """Stop and deregister the service, remove files, forget the record."""
        with self.locks.hold(name):
            record = self.store.load(name)
            if record is None:
                raise NotFound("Formula is not installed", formula=name)

            with self._audited("uninstall", record) as entry:
                installed = {r.name: r for r in self.store.load_all()}
                # Current formulas first; records cover formulas since dropped from the registry.
                dependents = sorted(
                    {d for d in self.registry.dependents(name) if d in installed}
                    | {r.name for r in installed.values() if r.runtime_dependency == name}
                )
                if dependents and not ignore_dependencies:
                    raise DependentsInstalled(
                        f"Required by installed formulas: {', '.join(dependents)}",
                        formula=name,
                    )
                if self.supervisor.is_registered(name):
                    self.supervisor.deregister(name)
                entry.context["removed"] = self.installer.remove(record)
                self.store.delete(name)
                logger.info("Uninstalled %s %s", name, record.version)
                return record

    # ── Services ────────────────────────────────────────────────

    def service_start(self, name: str) -> ServiceState:
        with self.locks.hold(name):
            self._require_service(name)
            with self._audited("service-start", self.store.load(name)):
                return self.supervisor.start(name)

    def service_stop(self, name: str) -> bool:
        with self.locks.hold(name):
            self._require_service(name)
            with self._audited("service-stop", self.store.load(name)) as entry:
                was_running = self.supervisor.stop(name)
                entry.context["was_running"] = was_running
                return was_running

    def service_restart(self, name: str) -> ServiceState:
        with self.locks.hold(name):
            self._require_service(name)
            with self._audited("service-restart", self.store.load(name)):
                return self.supervisor.restart(name)

    def service_status(self, name: str) -> ServiceState:
        self._require_service(name)
        return self.supervisor.status(name)

    def supervise(self, stop: threading.Event) -> None:
        """Keep every running service alive until ``stop`` is set."""
        self.supervisor.resume()
        logger.info("Supervising %d services", len(self.supervisor.names()))
        try:
            stop.wait()
        finally:
            self.supervisor.shutdown(stop_services=False)

    # ── Read-only ───────────────────────────────────────────────

    def test(self, name: str) -> str:
        """Run the formula's smoke test against the installed binary."""
        record = self.store.load(name)
        if record is None or not record.binary_paths:
            raise NotFound("Formula is not installed", formula=name)
        formula = self.registry.lookup(name)
        spec = formula.test or FormulaTest()

        argv = [record.binary_paths[0], *spec.args]
        expect = spec.expect.replace("{version}", record.version)
        try:
            result = subprocess.run(
                argv, capture_output=True, text=True, timeout=spec.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise FormulaTestFailed(f"Timed out after {spec.timeout}s", formula=name) from e
        except OSError as e:
            raise FormulaTestFailed(f"Cannot run {argv[0]}: {e}", formula=name) from e

        output = (result.stdout or "") + (result.stderr or "")
        if expect not in output:
            raise FormulaTestFailed(
                f"Expected {expect!r} in output of {' '.join(argv)}, got {output.strip()[:200]!r}",
                formula=name,
            )
        return output.strip()

    def info(self, name: str) -> dict[str, Any]:
        record = self.store.load(name)
        if name not in self.registry and record is None:
            raise NotFound("No such formula", formula=name)

        data: dict[str, Any] = {"name": name}
        if name in self.registry:
            formula = self.registry.lookup(name)
            data.update({
                "version": formula.version,
                "desc": formula.desc,
                "homepage": formula.homepage,
                "license": formula.license,
                "runtime_dependency": formula.runtime_dependency,
                "architectures": sorted(a.value for a in formula.artifacts),
                "has_service": formula.has_service,
            })
        data["installed"] = record.model_dump(mode="json", exclude={"service"}) if record else None
        data["service"] = (
            self.supervisor.describe(name) if self.supervisor.is_registered(name) else None
        )
        return data

    def list_formulas(self) -> list[dict[str, Any]]:
        installed = {r.name: r for r in self.store.load_all()}
        names = sorted(set(self.registry.list()) | set(installed))
        rows = []
        for name in names:
            record = installed.get(name)
            rows.append({
                "name": name,
                "version": self.registry.lookup(name).version if name in self.registry else None,
                "installed": record.version if record else None,
                "verified": record.verified if record else None,
                "service": self.supervisor.status(name).value,
            })
        return rows

    def history(self, n: int = 20, name: str | None = None) -> list[AuditEntry]:
        return self.audit.read_recent(n, formula=name)

    # ── Internals ───────────────────────────────────────────────

    def _stage(
        self,
        formula: Formula,
        cancel: threading.Event | None,
    ) -> tuple[StagedArtifact, Architecture]:
        """Resolve, fetch (with retries) and verify; nothing live is touched."""
        try:
            arch = self.architecture
        except KegError as e:
            e.formula = formula.name
            raise
        descriptor = resolve(formula, arch)

        staged = retry_call(
            lambda: fetch_and_verify(
                descriptor,
                self.settings.staging_dir,
                fetcher=self.fetcher,
                timeout=self.settings.fetch_timeout,
                cancel=cancel,
                formula=formula.name,
            ),
            attempts=self.settings.fetch_retries,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            cancel=cancel,
            describe=f"fetch {formula.name}",
        )
        if not staged.verified and self.settings.strict_checksums:
            staged.discard()
            raise UnverifiedArtifact(
                "Artifact has no checksum and strict checksums are enabled",
                formula=formula.name,
            )
        return staged, arch

    def _ensure_dependency(self, formula: Formula, cancel: threading.Event | None) -> None:
        dep = formula.runtime_dependency
        if dep is None or self.store.load(dep) is not None:
            return
        logger.info("Installing %s (required by %s)", dep, formula.name)
        self.install(dep, cancel=cancel)

    def _register_service(
        self, formula: Formula, service: ServiceSpec, record: InstalledRecord,
    ) -> None:
        values = self.settings.placeholders()
        values["version"] = formula.version
        self.supervisor.register(formula.name, service.expand(values), record.binary_paths[0])

    def _require_service(self, name: str) -> None:
        if self.supervisor.is_registered(name):
            return
        if self.store.load(name) is None:
            raise NotFound("Formula is not installed", formula=name, stage="service")
        raise NotFound("Formula has no service", formula=name, stage="service")

    def _write_noop(self, operation: str, formula: Formula) -> None:
        self.audit.write(AuditEntry(
            operation=operation, formula=formula.name, version=formula.version, status="noop",
        ))

    @contextmanager
    def _audited(
        self,
        operation: str,
        subject: Formula | InstalledRecord | None,
    ) -> Iterator[AuditEntry]:
        entry = AuditEntry(
            operation=operation,
            formula=subject.name if subject is not None else "",
            version=subject.version if subject is not None else "",
        )
        start = time.monotonic()
        try:
            yield entry
        except KegError as e:
            entry.status = "failed"
            entry.error = e.message
            entry.stage = e.stage
            raise
        except Exception as e:
            entry.status = "failed"
            entry.error = f"{type(e).__name__}: {e}"
            raise
        else:
            entry.status = entry.status or "ok"
        finally:
            entry.duration_ms = int((time.monotonic() - start) * 1000)
            self.audit.write(entry)
