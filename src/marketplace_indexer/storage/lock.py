"""Single-writer lock for reconciliation runs."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from marketplace_indexer.errors import RunLocked

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".marketplace-indexer.lock"


class RunLock:
    """Exclusive lock file; a second holder fails fast instead of waiting.

    Usage:
        with RunLock(settings.data_dir):
            pipeline.run()
    """

    def __init__(self, directory: Path, filename: str = LOCK_FILENAME):
        self.path = Path(directory) / filename
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as e:
            holder = _read_pid(self.path)
            raise RunLocked(
                f"Another run holds {self.path}"
                + (f" (pid {holder})" if holder else "")
                + "; remove the file if that run is no longer alive"
            ) from e
        os.write(self._fd, str(os.getpid()).encode())
        logger.debug("Acquired run lock %s", self.path)

    def release(self) -> None:
        if self._fd is None:
            return
        os.close(self._fd)
        self._fd = None
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning("Run lock %s vanished before release", self.path)

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


def _read_pid(path: Path) -> Optional[str]:
    try:
        return path.read_text().strip() or None
    except OSError:
        return None
