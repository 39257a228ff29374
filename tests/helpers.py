"""
Test helpers — archive builders, fake daemons, polling.

"Binaries" are small Python scripts with a shebang pointing at the
running interpreter, so services can really be launched, killed and
restarted.
"""

from __future__ import annotations

import hashlib
import io
import sys
import tarfile
import textwrap
import time
from collections.abc import Callable
from pathlib import Path

from kegworks.core.models.formula import Formula


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def service_script(version: str = "1.0", *, exit_after: float | None = None) -> bytes:
    """A long-running 'daemon' that prints its version on --version."""
    body = textwrap.dedent(f"""\
        #!{sys.executable}
        import os, sys, time
        VERSION = {version!r}
        if "--version" in sys.argv:
            print("demo " + VERSION)
            sys.exit(0)
        print("started " + VERSION + " pid=" + str(os.getpid()), flush=True)
        print("stderr line", file=sys.stderr, flush=True)
        print("ENV " + os.environ.get("KEG_TEST_VAR", "-"), flush=True)
        deadline = {exit_after!r}
        start = time.time()
        while deadline is None or time.time() - start < deadline:
            time.sleep(0.05)
        sys.exit(3)
    """)
    return body.encode()


def make_tarball(path: Path, files: dict[str, bytes]) -> Path:
    """Write a .tar.gz containing ``files`` (name → content), all executable."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tf:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o755
            tf.addfile(info, io.BytesIO(content))
    return path


def sha256_of(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def make_formula(
    name: str,
    version: str,
    archive: Path,
    *,
    checksum: str | None = None,
    arch: str = "arm",
    keep_alive: bool = True,
    service: bool = True,
    targets: list[dict] | None = None,
    dependency: str | None = None,
) -> Formula:
    """Formula whose artifact for ``arch`` is a local file:// archive."""
    data: dict = {
        "name": name,
        "version": version,
        "runtime_dependency": dependency,
        "artifacts": {
            arch: {
                "url": archive.as_uri(),
                "checksum": sha256_of(archive) if checksum is None else checksum,
            },
        },
        "install_targets": targets or [{"source": name, "destination": "bin"}],
    }
    if service:
        data["service"] = {
            "command": ["{binary}"],
            "keep_alive": keep_alive,
            "environment": {"KEG_TEST_VAR": "from-spec"},
            "stdout_log_path": "{var}/log/" + name + ".log",
            "stderr_log_path": "{var}/log/" + name + ".error.log",
        }
    return Formula.model_validate(data)


