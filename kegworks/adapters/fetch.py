"""
Fetch adapters — the transport that moves artifact bytes onto disk.

The verifier only talks to a ``Fetcher``; it never opens a URL itself.
``UrllibFetcher`` is the default (stdlib ``urllib.request``, which also
handles ``file://`` URLs for local mirrors and tests).
"""

from __future__ import annotations

import logging
import threading
import time
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from pathlib import Path

from kegworks import __version__
from kegworks.core.errors import FetchFailed, OperationCancelled

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192
USER_AGENT = f"kegworks/{__version__}"


class Fetcher(ABC):
    """Abstract transport.

    Implementations write the full body of ``url`` into ``dest`` (an
    already-created file the caller owns) and raise:

    - ``FetchFailed`` for timeouts, connection errors and non-2xx statuses;
    - ``OperationCancelled`` when ``cancel`` is set mid-transfer.

    They must not delete ``dest``; cleanup is the caller's job.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier used in log lines."""

    @abstractmethod
    def fetch(
        self,
        url: str,
        dest: Path,
        *,
        timeout: float = 60.0,
        cancel: threading.Event | None = None,
    ) -> int:
        """Download ``url`` into ``dest``. Returns the number of bytes written."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


class UrllibFetcher(Fetcher):
    """Stream a URL to disk in fixed-size chunks with an overall deadline."""

    @property
    def name(self) -> str:
        return "urllib"

    def fetch(
        self,
        url: str,
        dest: Path,
        *,
        timeout: float = 60.0,
        cancel: threading.Event | None = None,
    ) -> int:
        deadline = time.monotonic() + timeout
        req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})

        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                status = getattr(resp, "status", None) or resp.getcode()
                # file:// responses carry no status
                if status is not None and not 200 <= status < 300:
                    raise FetchFailed(f"HTTP {status} from {url}")

                total = int(resp.headers.get("Content-Length") or 0)
                written = 0
                last_progress = -1
                with open(dest, "wb") as f:
                    while True:
                        if cancel is not None and cancel.is_set():
                            raise OperationCancelled(f"Download of {url} cancelled")
                        if time.monotonic() > deadline:
                            raise FetchFailed(f"Download of {url} timed out after {timeout:.0f}s")
                        chunk = resp.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        f.write(chunk)
                        written += len(chunk)

                        if total > 0:
                            pct = int(written * 100 / total)
                            if pct >= last_progress + 10:
                                last_progress = pct
                                logger.info("Download progress: %d%% (%d / %d bytes)", pct, written, total)

                if total and written != total:
                    raise FetchFailed(
                        f"Connection closed after {written} of {total} bytes from {url}"
                    )
                return written

        except (FetchFailed, OperationCancelled):
            raise
        except urllib.error.HTTPError as e:
            raise FetchFailed(f"HTTP {e.code} from {url}") from e
        except urllib.error.URLError as e:
            raise FetchFailed(f"Cannot reach {url}: {e.reason}") from e
        except (TimeoutError, ConnectionError) as e:
            raise FetchFailed(f"Download of {url} failed: {e}") from e
        except OSError as e:
            raise FetchFailed(f"Download of {url} failed: {e}") from e
