"""
State file persistence — one JSON record per installed formula.

Records live under ``<state_dir>/installed/<name>.json``. Writes are
atomic (write to temp file, then rename) so a crash mid-write never
leaves a truncated record behind.
"""

from __future__ import annotations

import json
import logging
import tempfile
import threading
from pathlib import Path

from kegworks.core.models.state import InstalledRecord

logger = logging.getLogger(__name__)

INSTALLED_DIR = "installed"


class RecordStore:
    """Read and write InstalledRecords under a state directory."""

    def __init__(self, state_dir: Path):
        self._dir = state_dir / INSTALLED_DIR
        self._write_lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, name: str) -> Path:
        return self._dir / f"{name}.json"

    def load(self, name: str) -> InstalledRecord | None:
        """Load the record for ``name``; None if not installed or unreadable."""
        path = self.path_for(name)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return InstalledRecord.model_validate(data)
        except json.JSONDecodeError as e:
            logger.warning("Corrupt record %s: %s — ignoring", path, e)
            return None
        except Exception as e:
            logger.warning("Cannot load record %s: %s — ignoring", path, e)
            return None

    def load_all(self) -> list[InstalledRecord]:
        """Load every readable record, ordered by name."""
        if not self._dir.is_dir():
            return []
        records = []
        for path in sorted(self._dir.glob("*.json")):
            record = self.load(path.stem)
            if record is not None:
                records.append(record)
        return records

    def save(self, record: InstalledRecord) -> None:
        """Save a record (atomic write).

        Raises:
            OSError: If the state directory is not writable.
        """
        record.touch()
        path = self.path_for(record.name)
        content = json.dumps(record.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"

        with self._write_lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                fd, tmp_path = tempfile.mkstemp(
                    dir=path.parent,
                    prefix=f".{record.name}_",
                    suffix=".tmp",
                )
                tmp = Path(tmp_path)
                try:
                    with open(fd, "w", encoding="utf-8") as f:
                        f.write(content)
                    tmp.replace(path)
                    logger.debug("Record saved to %s", path)
                except BaseException:
                    tmp.unlink(missing_ok=True)
                    raise
            except Exception as e:
                logger.error("Failed to save record to %s: %s", path, e)
                raise

    def delete(self, name: str) -> None:
        self.path_for(name).unlink(missing_ok=True)
        logger.debug("Record for %s deleted", name)
