# src/quota_broker/utils/resilient_io.py
"""
Disk persistence for broker snapshots that never blocks selection.

SnapshotWriter always holds the newest snapshot in memory. Each write goes to
a temp file next to the target and is moved into place with os.replace, so
readers see either the old file or the new one. The file being replaced is
kept as `<name>.bak` for recovery. When the disk misbehaves the snapshot
stays pending and is retried on a later write (at most every
`retry_interval` seconds), on flush() and at interpreter exit.
"""

import atexit
import json
import os
import tempfile
import threading
import time
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union


def backup_path(path: Union[str, Path]) -> Path:
    path = Path(path)
    return path.with_name(path.name + ".bak")


def atomic_write_text(path: Path, content: str, keep_backup: bool = False) -> None:
    """Replace `path` with `content` in one rename; optionally keep the old file as .bak."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if keep_backup and path.exists():
            os.replace(path, backup_path(path))
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class SnapshotWriter:
    """
    Buffered, retrying writer for one JSON state file.

    Usage:
        writer = SnapshotWriter("broker_state.json", logger)
        writer.write(broker.snapshot())
        if not writer.is_healthy:
            logger.warning("State is only in memory until the disk recovers")
    """

    def __init__(
        self,
        path: Union[str, Path],
        logger: logging.Logger,
        retry_interval: float = 30.0,
        serializer: Optional[Callable[[Any], str]] = None,
        keep_backup: bool = True,
    ):
        self.path = Path(path)
        self.logger = logger
        self.retry_interval = retry_interval
        self.keep_backup = keep_backup
        self._serialize = serializer or (lambda state: json.dumps(state, indent=2))

        self._pending: Optional[Any] = None
        self._has_pending = False
        self._failures = 0
        self._next_attempt_at = 0.0
        self._last_written_at: Optional[float] = None
        self._lock = threading.Lock()

        atexit.register(self._flush_at_exit)

    def write(self, state: Any) -> bool:
        """
        Queue `state` and try to persist it.

        Returns:
            True when the snapshot reached the disk, False when it is pending
        """
        with self._lock:
            self._pending = state
            self._has_pending = True
            if self._failures and time.time() < self._next_attempt_at:
                return False
            return self._persist_pending()

    def flush(self) -> bool:
        """Persist the pending snapshot now, ignoring the retry spacing."""
        with self._lock:
            if not self._has_pending:
                return True
            return self._persist_pending()

    def _persist_pending(self) -> bool:
        try:
            atomic_write_text(self.path, self._serialize(self._pending), self.keep_backup)
        except (OSError, TypeError, ValueError) as e:
            self._failures += 1
            self._next_attempt_at = time.time() + self.retry_interval
            # One line on the first failure and every tenth after that
            if self._failures % 10 == 1:
                self.logger.warning(
                    f"Could not save {self.path.name} ({e}); keeping state in memory "
                    f"(failure #{self._failures})"
                )
            return False

        if self._failures:
            self.logger.info(
                f"Saving {self.path.name} works again after {self._failures} failed attempt(s)"
            )
        self._failures = 0
        self._has_pending = False
        self._last_written_at = time.time()
        return True

    def _flush_at_exit(self) -> None:
        if self._has_pending and not self.flush():
            self.logger.warning(f"Final save of {self.path.name} failed at shutdown")

    @property
    def is_healthy(self) -> bool:
        return self._failures == 0

    @property
    def pending_state(self) -> Optional[Any]:
        return self._pending if self._has_pending else None

    def health(self) -> Dict[str, Any]:
        return {
            "healthy": self.is_healthy,
            "failures": self._failures,
            "pending": self._has_pending,
            "last_written_at": self._last_written_at,
            "path": str(self.path),
        }
