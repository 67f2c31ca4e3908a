"""Filesystem indexer reconciling the audio roots into the metadata store."""

from __future__ import annotations

import logging
import os
import sqlite3
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from .events import emit_task_event
from .locking import ReindexLock
from .naming import format_modified_time, join_virtual_path, parent_path, utc_timestamp
from .roots import RootDirectory, RootRegistry
from .sidecars import FolderMetadataSidecar, load_audio_info, load_folder_metadata, probe_poster, probe_thumbnail
from .storage import AudioFileRecord, FolderRecord, MediaRepository, ShareKeyCollisionError, UpsertOutcome


LOGGER = logging.getLogger(__name__)


AUDIO_MIME_TYPES: Dict[str, str] = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
    ".aac": "audio/aac",
    ".m4a": "audio/mp4",
    ".opus": "audio/opus",
}

DEFAULT_HEARTBEAT_INTERVAL = 30.0


class IndexingError(RuntimeError):
    """Raised when a reindex cannot run at all."""


@dataclass
class NewFolder:
    """A folder created by the current run that declares where it came from."""

    share_key: str
    name: str
    path: str
    original_url: str


@dataclass
class IndexRunResult:
    status: str
    started_at: Optional[str] = None
    elapsed_seconds: float = 0.0
    folders: int = 0
    audio_files: int = 0
    errors: int = 0
    folders_removed: int = 0
    audio_files_deleted: int = 0
    new_folders: List[NewFolder] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class _RunState:
    started_at: str
    folders: int = 0
    audio_files: int = 0
    errors: int = 0
    new_folders: List[NewFolder] = field(default_factory=list)
    visited: Set[Tuple[int, int]] = field(default_factory=set)


CompletionListener = Callable[[IndexRunResult], None]


class LibraryIndexer:
    """Walk every configured root and reconcile what it finds into the store.

    Each run is guarded by *lock*: when another run holds it the call returns
    a ``skipped`` result immediately instead of waiting. Records refreshed by
    the run carry an ``indexed_at`` at or after the run's start watermark;
    anything older afterwards is gone from disk. Vanished folders are deleted
    and vanished audio files are tombstoned with ``deleted = 1`` so their
    share keys and play history survive.
    """

    def __init__(
        self,
        repository: MediaRepository,
        registry: RootRegistry,
        lock: ReindexLock,
        *,
        clock: Callable[[], str] = utc_timestamp,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._lock = lock
        self._clock = clock
        self._heartbeat_interval = heartbeat_interval
        self._last_heartbeat = 0.0
        self._listeners: List[CompletionListener] = []

    @property
    def registry(self) -> RootRegistry:
        return self._registry

    def add_completion_listener(self, listener: CompletionListener) -> None:
        """Register *listener* to be called after every completed run."""

        self._listeners.append(listener)

    def rebuild_index(self) -> IndexRunResult:
        try:
            acquired = self._lock.try_acquire()
        except (OSError, sqlite3.Error) as error:
            raise IndexingError(f"Could not prepare {self._lock.description}: {error}") from error

        if not acquired:
            LOGGER.info("Reindex already in progress, skipping")
            emit_task_event("skipped", "Reindex skipped; another run holds the lock")
            return IndexRunResult(status="skipped")

        try:
            result = self._run()
        finally:
            self._lock.release()

        self._notify(result)
        return result

    # ------------------------------------------------------------------
    # Run phases
    # ------------------------------------------------------------------
    def _run(self) -> IndexRunResult:
        try:
            self._repository.check_connection()
        except sqlite3.Error as error:
            raise IndexingError(
                f"Could not open database '{self._repository.database_path}': {error}"
            ) from error

        started = time.perf_counter()
        self._last_heartbeat = time.monotonic()
        state = _RunState(started_at=self._clock())
        LOGGER.info("Starting index rebuild...")
        emit_task_event(
            "started",
            "Reindex started",
            payload={"roots": len(self._registry), "watermark": state.started_at},
        )

        for root in self._registry:
            LOGGER.info("Indexing directory: %s (%s)", root.display_name, root.slug)
            self._index_root(root, state)

        result = IndexRunResult(
            status="completed",
            started_at=state.started_at,
            folders=state.folders,
            audio_files=state.audio_files,
            new_folders=state.new_folders,
        )
        self._reconcile(state, result)

        result.errors = state.errors
        result.elapsed_seconds = round(time.perf_counter() - started, 3)
        LOGGER.info(
            "Index rebuild completed in %.2fs (%d folders, %d audio files, %d removed, %d deleted, %d errors)",
            result.elapsed_seconds,
            result.folders,
            result.audio_files,
            result.folders_removed,
            result.audio_files_deleted,
            result.errors,
        )
        emit_task_event(
            "completed",
            "Reindex completed",
            payload={
                "folders": result.folders,
                "audio_files": result.audio_files,
                "folders_removed": result.folders_removed,
                "audio_files_deleted": result.audio_files_deleted,
                "errors": result.errors,
                "new_folders": len(result.new_folders),
            },
            duration_ms=result.elapsed_seconds * 1000.0,
        )
        return result

    def _reconcile(self, state: _RunState, result: IndexRunResult) -> None:
        watermark = state.started_at
        try:
            result.folders_removed = self._repository.delete_stale_folders(watermark)
        except sqlite3.Error as error:
            LOGGER.error("Error cleaning up stale folders: %s", error)
            state.errors += 1
        try:
            result.audio_files_deleted = self._repository.tombstone_stale_audio_files(watermark)
        except sqlite3.Error as error:
            LOGGER.error("Error marking stale audio files deleted: %s", error)
            state.errors += 1
        try:
            self._repository.recompute_item_counts()
        except sqlite3.Error as error:
            LOGGER.error("Error recomputing folder item counts: %s", error)
            state.errors += 1

    def _notify(self, result: IndexRunResult) -> None:
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception:
                LOGGER.exception("Reindex completion listener %r failed", listener)

    # ------------------------------------------------------------------
    # Walking
    # ------------------------------------------------------------------
    def _heartbeat(self) -> None:
        now = time.monotonic()
        if now - self._last_heartbeat < self._heartbeat_interval:
            return
        self._last_heartbeat = now
        try:
            self._lock.heartbeat()
        except (OSError, sqlite3.Error) as error:
            LOGGER.warning("Could not refresh %s: %s", self._lock.description, error)

    def _preserve_subtree(self, virtual_path: str, state: _RunState) -> None:
        """Keep records under an unreachable path from being reconciled as stale."""

        try:
            self._repository.refresh_subtree(virtual_path, indexed_at=self._clock())
        except sqlite3.Error as error:
            LOGGER.error("Could not preserve records under %s: %s", virtual_path, error)
            state.errors += 1

    def _index_root(self, root: RootDirectory, state: _RunState) -> None:
        try:
            info = os.stat(root.path)
        except OSError as error:
            LOGGER.warning("Audio root %s is unavailable: %s", root.path, error)
            state.errors += 1
            self._preserve_subtree(root.slug, state)
            return

        record = FolderRecord(
            path=root.slug,
            parent_path="",
            folder_name=root.display_name,
            name=root.display_name,
            modified_at=format_modified_time(info.st_mtime),
            poster_image=probe_poster(root.path),
        )
        self._store_folder(record, state)
        self._walk(root.path, root.slug, None, state)

    def _walk(
        self,
        directory: Path,
        virtual_dir: str,
        source_path: Optional[str],
        state: _RunState,
    ) -> None:
        self._heartbeat()
        try:
            directory_stat = os.stat(directory)
            with os.scandir(directory) as iterator:
                entries = sorted(iterator, key=lambda entry: entry.name)
        except OSError as error:
            LOGGER.warning("Could not read directory %s: %s", directory, error)
            state.errors += 1
            self._preserve_subtree(virtual_dir, state)
            return

        identity = (directory_stat.st_dev, directory_stat.st_ino)
        if identity in state.visited:
            LOGGER.warning("Skipping %s: directory already indexed through another path", directory)
            return
        state.visited.add(identity)

        overrides = load_folder_metadata(directory)
        for entry in entries:
            name = entry.name
            virtual_path = join_virtual_path(virtual_dir, name)
            try:
                is_directory = entry.is_dir()
                info = entry.stat()
            except OSError as error:
                LOGGER.warning("Skipping %s: %s", entry.path, error)
                state.errors += 1
                self._preserve_subtree(virtual_path, state)
                continue

            if is_directory:
                if name.startswith("."):
                    continue
                self._index_folder(
                    Path(entry.path), name, virtual_path, info, overrides.get(name), source_path, state
                )
                continue

            mime_type = AUDIO_MIME_TYPES.get(os.path.splitext(name)[1].lower())
            if mime_type is None:
                continue
            self._index_audio(directory, name, virtual_path, info, mime_type, source_path, state)

    def _index_folder(
        self,
        path: Path,
        name: str,
        virtual_path: str,
        info: os.stat_result,
        override: Optional[FolderMetadataSidecar],
        source_path: Optional[str],
        state: _RunState,
    ) -> None:
        record = FolderRecord(
            path=virtual_path,
            parent_path=parent_path(virtual_path),
            folder_name=name,
            name=name,
            modified_at=format_modified_time(info.st_mtime),
            poster_image=probe_poster(path),
        )
        if override is not None:
            record.name = override.name
            record.original_url = override.original_url
            record.url_broken = override.url_broken
            record.directory_size = override.directory_size

        outcome = self._store_folder(record, state)
        if outcome is not None and outcome.created and record.original_url:
            state.new_folders.append(
                NewFolder(
                    share_key=outcome.share_key,
                    name=record.name,
                    path=record.path,
                    original_url=record.original_url,
                )
            )

        child_source = virtual_path if record.original_url else source_path
        self._walk(path, virtual_path, child_source, state)

    def _index_audio(
        self,
        directory: Path,
        name: str,
        virtual_path: str,
        info: os.stat_result,
        mime_type: str,
        source_path: Optional[str],
        state: _RunState,
    ) -> None:
        base_name = os.path.splitext(name)[0]
        record = AudioFileRecord(
            path=virtual_path,
            parent_path=parent_path(virtual_path),
            filename=name,
            size=int(info.st_size),
            mime_type=mime_type,
            modified_at=format_modified_time(info.st_mtime),
            source_path=source_path,
            thumbnail=probe_thumbnail(directory, base_name),
        )
        sidecar = load_audio_info(directory, base_name)
        if sidecar is not None:
            record.title = sidecar.title
            record.artist = sidecar.artist
            record.upload_date = sidecar.upload_date
            record.webpage_url = sidecar.webpage_url
            record.description = sidecar.description
            record.downloaded_at = sidecar.downloaded_at

        try:
            self._repository.upsert_audio_file(record, indexed_at=self._clock())
        except (sqlite3.Error, ShareKeyCollisionError) as error:
            LOGGER.error("Error indexing audio %s: %s", virtual_path, error)
            state.errors += 1
            return
        state.audio_files += 1

    def _store_folder(self, record: FolderRecord, state: _RunState) -> Optional[UpsertOutcome]:
        try:
            outcome = self._repository.upsert_folder(record, indexed_at=self._clock())
        except (sqlite3.Error, ShareKeyCollisionError) as error:
            LOGGER.error("Error indexing folder %s: %s", record.path, error)
            state.errors += 1
            return None
        state.folders += 1
        return outcome


__all__ = [
    "AUDIO_MIME_TYPES",
    "IndexRunResult",
    "IndexingError",
    "LibraryIndexer",
    "NewFolder",
]
