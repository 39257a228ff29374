"""
Fetch and verify — download an artifact into staging and check its digest.

The download always lands in a uniquely named temp file inside the
staging directory, never at a live path.  Every failure path (network
error, checksum mismatch, cancellation, interrupt) removes that file.
No retries happen here; see ``kegworks.core.reliability.backoff``.
"""

from __future__ import annotations

import hashlib
import logging
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path

from kegworks.adapters.fetch import Fetcher, UrllibFetcher
from kegworks.core.errors import ChecksumMismatch, KegError
from kegworks.core.models.formula import ArtifactDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StagedArtifact:
    """A downloaded artifact waiting in the staging area."""

    path: Path
    verified: bool
    digest: str
    size_bytes: int

    def discard(self) -> None:
        self.path.unlink(missing_ok=True)


def file_digest(path: Path, algorithm: str = "sha256") -> str:
    """Hex digest of a file, read in chunks."""
    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def verify_checksum(path: Path, checksum: str) -> bool:
    """Check ``path`` against ``algo:hex`` (or a bare sha256 hex digest)."""
    algo, _, expected = checksum.partition(":") if ":" in checksum else ("sha256", "", checksum)
    return file_digest(path, algo) == expected.lower()


def _artifact_suffix(url: str) -> str:
    name = url.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0]
    for ext in (".tar.gz", ".tar.xz", ".tar.bz2", ".tgz", ".tar", ".zip"):
        if name.endswith(ext):
            return ext
    return ""


def fetch_and_verify(
    descriptor: ArtifactDescriptor,
    staging_dir: Path,
    *,
    fetcher: Fetcher | None = None,
    timeout: float = 60.0,
    cancel: threading.Event | None = None,
    formula: str | None = None,
) -> StagedArtifact:
    """Download ``descriptor.url`` into ``staging_dir`` and verify it.

    Returns:
        StagedArtifact with ``verified=False`` when the descriptor carries
        no checksum.

    Raises:
        FetchFailed: Transport failure (retryable by the caller).
        ChecksumMismatch: Digest differs from ``descriptor.checksum``.
        OperationCancelled: ``cancel`` was set during the transfer.
    """
    fetcher = fetcher or UrllibFetcher()
    staging_dir.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        dir=staging_dir,
        prefix=".fetch_",
        suffix=_artifact_suffix(descriptor.url),
    )
    # The fetcher reopens by path; keep only the name.
    with open(fd, "wb"):
        pass
    tmp = Path(tmp_name)

    try:
        logger.info("Fetching %s via %s", descriptor.url, fetcher.name)
        size = fetcher.fetch(descriptor.url, tmp, timeout=timeout, cancel=cancel)

        if descriptor.verifiable:
            if not verify_checksum(tmp, descriptor.checksum):
                actual = file_digest(tmp, descriptor.algorithm)
                raise ChecksumMismatch(
                    f"Expected {descriptor.algorithm} {descriptor.digest}, got {actual}",
                    formula=formula,
                )
            logger.info("Checksum OK (%s %s)", descriptor.algorithm, descriptor.digest[:12])
            return StagedArtifact(
                path=tmp, verified=True, digest=descriptor.checksum, size_bytes=size,
            )

        actual = file_digest(tmp)
        logger.warning(
            "%s: artifact has no checksum — installing UNVERIFIED content (sha256 %s)",
            formula or descriptor.url, actual,
        )
        return StagedArtifact(path=tmp, verified=False, digest=f"sha256:{actual}", size_bytes=size)

    except KegError as e:
        tmp.unlink(missing_ok=True)
        if e.formula is None:
            e.formula = formula
        raise
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
