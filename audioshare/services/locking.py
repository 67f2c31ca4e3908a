"""Single-flight locks guarding the reindex operation across processes."""

from __future__ import annotations

import contextlib
import logging
import os
import socket
import sqlite3
import threading
import time
import uuid
from pathlib import Path
from types import ModuleType
from typing import Callable, Optional

from ..config import AppConfig

try:
    import fcntl as _fcntl
except ImportError:  # pragma: no cover - platforms without advisory locks
    fcntl: ModuleType | None = None
else:
    fcntl = _fcntl


LOGGER = logging.getLogger(__name__)

REINDEX_LOCK_NAME = "reindex"


class LockUnavailableError(RuntimeError):
    """Raised when a lock backend cannot be used on this platform."""


class ReindexLock:
    """Non-blocking exclusive lock with an acquire/heartbeat/release contract.

    ``try_acquire`` never waits: it returns ``False`` when another holder owns
    the lock. Errors preparing the lock itself (file cannot be created, store
    cannot be opened) propagate to the caller.
    """

    description = "lock"

    def try_acquire(self) -> bool:
        raise NotImplementedError

    def heartbeat(self) -> None:
        """Signal that the holder is still alive."""

    def release(self) -> None:
        raise NotImplementedError

    @property
    def held(self) -> bool:
        raise NotImplementedError


class FileReindexLock(ReindexLock):
    """Advisory ``flock`` on a file beside the database.

    The kernel drops the lock when the owning process exits, so a lock file
    left behind by a crash never blocks later runs.
    """

    def __init__(self, path: Path) -> None:
        if fcntl is None:
            raise LockUnavailableError("fcntl.flock is not available on this platform")
        self.path = Path(path)
        self.description = f"file lock {self.path}"
        self._fd: Optional[int] = None
        self._guard = threading.Lock()

    @property
    def held(self) -> bool:
        return self._fd is not None

    def try_acquire(self) -> bool:
        with self._guard:
            if self._fd is not None:
                return False
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o600)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                os.close(fd)
                LOGGER.debug("Lock %s is held by another process", self.path)
                return False
            self._fd = fd
            with contextlib.suppress(OSError):
                os.ftruncate(fd, 0)
                os.write(fd, f"{os.getpid()} {time.time():.0f}\n".encode("ascii"))
            return True

    def release(self) -> None:
        with self._guard:
            if self._fd is None:
                return
            try:
                with contextlib.suppress(OSError):
                    fcntl.flock(self._fd, fcntl.LOCK_UN)
            finally:
                os.close(self._fd)
                self._fd = None


def _default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class DatabaseReindexLock(ReindexLock):
    """Lease row in the ``index_locks`` table, refreshed by heartbeats.

    A lease whose heartbeat is older than ``stale_seconds`` belongs to a
    holder that died without releasing it and may be taken over.
    """

    def __init__(
        self,
        database_file: Path,
        *,
        stale_seconds: float,
        name: str = REINDEX_LOCK_NAME,
        owner: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._database_file = Path(database_file)
        self._stale_seconds = float(stale_seconds)
        self._name = name
        self._owner = owner or _default_owner()
        self._clock = clock
        self._held = False
        self._guard = threading.Lock()
        self.description = f"database lease '{name}' in {self._database_file}"

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def held(self) -> bool:
        return self._held

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._database_file, timeout=30.0, isolation_level=None)
        connection.row_factory = sqlite3.Row
        return connection

    def try_acquire(self) -> bool:
        with self._guard:
            if self._held:
                return False
            self._held = self._claim_lease()
            return self._held

    def _claim_lease(self) -> bool:
        now = self._clock()
        stale_before = now - self._stale_seconds
        connection = self._connect()
        try:
            connection.execute("BEGIN IMMEDIATE")
            try:
                connection.execute(
                    """
                    INSERT INTO index_locks (name, owner, acquired_at, heartbeat_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        owner = excluded.owner,
                        acquired_at = excluded.acquired_at,
                        heartbeat_at = excluded.heartbeat_at
                    WHERE index_locks.heartbeat_at < ?
                    """,
                    (self._name, self._owner, now, now, stale_before),
                )
                row = connection.execute(
                    "SELECT owner, heartbeat_at FROM index_locks WHERE name = ?",
                    (self._name,),
                ).fetchone()
                connection.execute("COMMIT")
            except sqlite3.Error:
                connection.execute("ROLLBACK")
                raise
        finally:
            connection.close()

        if row is not None and row["owner"] == self._owner:
            return True
        if row is not None:
            LOGGER.debug(
                "Lease '%s' is held by %s (last heartbeat %.0fs ago)",
                self._name,
                row["owner"],
                now - float(row["heartbeat_at"]),
            )
        return False

    def heartbeat(self) -> None:
        with self._guard:
            if not self._held:
                return
            connection = self._connect()
            try:
                cursor = connection.execute(
                    "UPDATE index_locks SET heartbeat_at = ? WHERE name = ? AND owner = ?",
                    (self._clock(), self._name, self._owner),
                )
                if cursor.rowcount == 0:
                    LOGGER.warning("Lease '%s' was taken over by another holder", self._name)
                    self._held = False
            finally:
                connection.close()

    def release(self) -> None:
        with self._guard:
            if not self._held:
                return
            connection = self._connect()
            try:
                connection.execute(
                    "DELETE FROM index_locks WHERE name = ? AND owner = ?",
                    (self._name, self._owner),
                )
            finally:
                connection.close()
                self._held = False


def file_locks_supported() -> bool:
    return fcntl is not None


def create_reindex_lock(config: AppConfig) -> ReindexLock:
    """Return the lock backend selected by ``config.lock_backend``."""

    backend = config.lock_backend
    if backend == "auto":
        backend = "file" if file_locks_supported() else "database"
    if backend == "file":
        return FileReindexLock(config.lock_file)
    if backend == "database":
        return DatabaseReindexLock(
            config.database_file, stale_seconds=config.lock_stale_seconds
        )
    raise LockUnavailableError(f"Unknown lock backend '{config.lock_backend}'")


__all__ = [
    "DatabaseReindexLock",
    "FileReindexLock",
    "LockUnavailableError",
    "REINDEX_LOCK_NAME",
    "ReindexLock",
    "create_reindex_lock",
    "file_locks_supported",
]
