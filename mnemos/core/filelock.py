"""
mnemos.core.filelock — Advisory file lock and atomic JSON writes.

``FileLock`` serialises writers of the shared index and edge-list
files across processes with an ``O_EXCL`` sidecar.  Record files are
replaced atomically with ``atomic_write_json`` so a reader never sees
a half-written record.

Usage::

    with FileLock(index_path):
        atomic_write_json(index_path, payload)
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from types import TracebackType
from typing import Any, Optional, Type

log = logging.getLogger(__name__)


class FileLock:
    """Advisory lock using a ``<path>.lock`` sidecar file.

    Parameters
    ----------
    path : Path
        The file to protect.
    timeout : float
        Maximum seconds to wait for the lock (default 5).
    poll : float
        Seconds between retry attempts (default 0.05).
    """

    def __init__(self, path: Path, timeout: float = 5.0, poll: float = 0.05) -> None:
        self.lock_path = Path(str(path) + ".lock")
        self.timeout = timeout
        self.poll = poll
        self._fd: Optional[int] = None

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        self.release()

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Block until the lock is acquired or *timeout* expires."""
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                self._fd = os.open(
                    str(self.lock_path),
                    os.O_CREAT | os.O_EXCL | os.O_WRONLY,
                )
                return
            except FileExistsError:
                if time.monotonic() >= deadline:
                    if self._break_if_stale():
                        continue
                    raise TimeoutError(
                        f"Could not acquire lock on {self.lock_path} "
                        f"within {self.timeout}s"
                    )
                time.sleep(self.poll)

    def release(self) -> None:
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError:
                pass
            self._fd = None
        try:
            os.unlink(str(self.lock_path))
        except FileNotFoundError:
            pass

    def _break_if_stale(self) -> bool:
        """Remove a lock file older than twice the timeout (crashed writer)."""
        try:
            age = time.time() - os.path.getmtime(str(self.lock_path))
        except OSError:
            return True  # vanished between attempts; retry
        if age <= self.timeout * 2:
            return False
        log.warning("Breaking stale lock (%.1fs old): %s", age, self.lock_path)
        try:
            os.unlink(str(self.lock_path))
        except FileNotFoundError:
            pass
        return True


def atomic_write_json(path: Path, data: Any) -> None:
    """Write *data* as JSON to *path* via a temp file + ``os.replace``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, ensure_ascii=False, indent=1)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def read_json(path: Path) -> Any:
    """Read a JSON file.  Raises ``OSError`` / ``ValueError`` on failure."""
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)
