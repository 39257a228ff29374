"""
Installer — extract a staged artifact and promote its files all-or-nothing.

Three phases:

1. **extract** the archive into a fresh directory under the staging area;
2. **stage** every install target as a hidden temp file inside its
   destination directory, so the final move is a same-filesystem rename;
3. **promote** each staged file over the live path with ``os.replace``,
   keeping a hard-linked backup of whatever was there before.

If anything fails before all targets are promoted, every promoted file is
restored from its backup (or removed when there was none) and the staged
copies are deleted.  The live install is either entirely the old version
or entirely the new one.
"""

from __future__ import annotations

import logging
import os
import secrets
import shutil
import tarfile
import tempfile
import threading
import zipfile
from pathlib import Path

from kegworks.core.errors import InstallFailed, KegError, OperationCancelled
from kegworks.core.models.formula import Formula, InstallTarget, expand_placeholders
from kegworks.core.models.state import InstalledRecord
from kegworks.core.services.fetcher import StagedArtifact

logger = logging.getLogger(__name__)


def _atomic_move(src: Path, dst: Path) -> None:
    """Rename ``src`` over ``dst`` in one step (same filesystem)."""
    os.replace(src, dst)


def _check_cancel(cancel: threading.Event | None, formula: str) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Install cancelled", formula=formula)


class Installer:
    """Places formula files under an install prefix."""

    def __init__(self, prefix: Path, staging_dir: Path):
        self.prefix = prefix
        self.staging_dir = staging_dir

    def destination_dir(self, target: InstallTarget) -> Path:
        """Absolute destination for a target (relative paths hang off the prefix)."""
        raw = expand_placeholders(
            target.destination,
            {"prefix": str(self.prefix), "bin": str(self.prefix / "bin")},
        )
        path = Path(raw).expanduser()
        return path if path.is_absolute() else self.prefix / path

    def live_paths(self, formula: Formula) -> list[Path]:
        return [
            self.destination_dir(t) / Path(t.source).name for t in formula.install_targets
        ]

    # ── Install ─────────────────────────────────────────────────

    def install(
        self,
        formula: Formula,
        staged: StagedArtifact | Path,
        *,
        architecture: str = "",
        cancel: threading.Event | None = None,
    ) -> InstalledRecord:
        """Install ``formula`` from a staged archive.

        Raises:
            InstallFailed: Extraction, copy or rename failed; nothing live changed.
            OperationCancelled: ``cancel`` was set; nothing live changed.
        """
        archive = staged.path if isinstance(staged, StagedArtifact) else Path(staged)
        verified = staged.verified if isinstance(staged, StagedArtifact) else True

        self.staging_dir.mkdir(parents=True, exist_ok=True)
        extract_dir = Path(tempfile.mkdtemp(dir=self.staging_dir, prefix=f".extract_{formula.name}_"))

        staged_files: list[tuple[Path, Path]] = []      # (live, staged tmp)
        promoted: list[tuple[Path, Path | None]] = []   # (live, backup)
        created_dirs: list[Path] = []

        try:
            self._extract(archive, extract_dir, formula, cancel)

            for target in formula.install_targets:
                _check_cancel(cancel, formula.name)
                source = self._find_source(extract_dir, target.source, formula.name)
                dest_dir = self.destination_dir(target)
                created_dirs.extend(self._ensure_dir(dest_dir))
                live = dest_dir / Path(target.source).name

                fd, tmp_name = tempfile.mkstemp(dir=dest_dir, prefix=f".{live.name}.keg-new-")
                os.close(fd)
                tmp = Path(tmp_name)
                staged_files.append((live, tmp))
                shutil.copyfile(source, tmp)
                os.chmod(tmp, 0o755)

            _check_cancel(cancel, formula.name)

            for live, tmp in staged_files:
                backup = self._backup(live)
                try:
                    _atomic_move(tmp, live)
                except BaseException:
                    if backup is not None:
                        backup.unlink(missing_ok=True)
                    raise
                promoted.append((live, backup))
                logger.debug("Promoted %s", live)

        except BaseException as e:
            self._rollback(promoted, staged_files, created_dirs)
            if isinstance(e, KegError):
                if e.formula is None:
                    e.formula = formula.name
                raise
            if isinstance(e, Exception):
                raise InstallFailed(
                    f"{type(e).__name__}: {e} (previous installation left untouched)",
                    formula=formula.name,
                ) from e
            raise
        else:
            for _live, backup in promoted:
                if backup is not None:
                    backup.unlink(missing_ok=True)
        finally:
            shutil.rmtree(extract_dir, ignore_errors=True)

        logger.info("Installed %s %s (%d files)", formula.name, formula.version, len(promoted))
        return InstalledRecord(
            name=formula.name,
            version=formula.version,
            binary_paths=[str(live) for live, _ in promoted],
            verified=verified,
            architecture=str(architecture),
            runtime_dependency=formula.runtime_dependency,
        )

    def _extract(
        self,
        archive: Path,
        dest: Path,
        formula: Formula,
        cancel: threading.Event | None,
    ) -> None:
        try:
            if tarfile.is_tarfile(archive):
                with tarfile.open(archive, "r:*") as tf:
                    for member in tf:
                        _check_cancel(cancel, formula.name)
                        tf.extract(member, dest, filter="data")
            elif zipfile.is_zipfile(archive):
                with zipfile.ZipFile(archive) as zf:
                    for info in zf.infolist():
                        _check_cancel(cancel, formula.name)
                        zf.extract(info, dest)
            else:
                # Raw single-file artifact
                shutil.copyfile(archive, dest / formula.primary_binary)
        except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
            raise InstallFailed(f"Cannot extract {archive.name}: {e}", formula=formula.name) from e
        logger.debug("Extracted %s into %s", archive.name, dest)

    @staticmethod
    def _find_source(root: Path, source: str, formula: str) -> Path:
        direct = root / source
        if direct.is_file():
            return direct
        name = Path(source).name
        for candidate in sorted(root.rglob(name)):
            if candidate.is_file():
                return candidate
        available = sorted(p.name for p in root.rglob("*") if p.is_file())[:10]
        raise InstallFailed(
            f"{source!r} not found in archive (contains: {', '.join(available) or 'nothing'})",
            formula=formula,
        )

    @staticmethod
    def _ensure_dir(path: Path) -> list[Path]:
        """mkdir -p, returning the directories that were newly created (outermost first)."""
        missing = []
        current = path
        while not current.exists():
            missing.append(current)
            if current.parent == current:
                break
            current = current.parent
        path.mkdir(parents=True, exist_ok=True)
        return list(reversed(missing))

    @staticmethod
    def _backup(live: Path) -> Path | None:
        if not (live.exists() or live.is_symlink()):
            return None
        backup = live.with_name(f".{live.name}.keg-old-{secrets.token_hex(4)}")
        try:
            os.link(live, backup, follow_symlinks=False)
        except OSError:
            shutil.copy2(live, backup, follow_symlinks=False)
        return backup

    @staticmethod
    def _rollback(
        promoted: list[tuple[Path, Path | None]],
        staged_files: list[tuple[Path, Path]],
        created_dirs: list[Path],
    ) -> None:
        for live, backup in reversed(promoted):
            try:
                if backup is not None:
                    os.replace(backup, live)
                else:
                    live.unlink(missing_ok=True)
                logger.info("Rolled back %s", live)
            except OSError as e:
                logger.error("Rollback of %s failed: %s", live, e)
        for _live, tmp in staged_files:
            tmp.unlink(missing_ok=True)
        for directory in reversed(created_dirs):
            try:
                directory.rmdir()
            except OSError:
                pass

    # ── Remove ──────────────────────────────────────────────────

    def remove(self, record: InstalledRecord) -> list[str]:
        """Delete the record's files and prune empty directories under the prefix.

        Raises:
            InstallFailed: A file exists but cannot be removed.
        """
        removed = []
        for raw in record.binary_paths:
            path = Path(raw)
            try:
                if path.exists() or path.is_symlink():
                    path.unlink()
                    removed.append(raw)
            except OSError as e:
                raise InstallFailed(f"Cannot remove {path}: {e}", formula=record.name, stage="uninstall") from e
            self._prune(path.parent)
        logger.info("Removed %d files for %s", len(removed), record.name)
        return removed

    def _prune(self, directory: Path) -> None:
        prefix = self.prefix.resolve()
        current = directory
        while True:
            try:
                resolved = current.resolve()
            except OSError:
                return
            if resolved == prefix or prefix not in resolved.parents:
                return
            try:
                current.rmdir()
            except OSError:
                return
            current = current.parent
