"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from ..config import AppConfig
from .naming import generate_share_key


@dataclass
class FolderRecord:
    path: str
    parent_path: str
    folder_name: str
    name: str
    modified_at: str
    original_url: Optional[str] = None
    url_broken: bool = False
    item_count: int = 0
    directory_size: Optional[str] = None
    poster_image: Optional[str] = None
    share_key: Optional[str] = None
    indexed_at: Optional[str] = None
    id: Optional[int] = None


@dataclass
class AudioFileRecord:
    path: str
    parent_path: str
    filename: str
    size: int
    mime_type: str
    modified_at: str
    title: Optional[str] = None
    artist: Optional[str] = None
    upload_date: Optional[str] = None
    webpage_url: Optional[str] = None
    description: Optional[str] = None
    downloaded_at: Optional[str] = None
    source_path: Optional[str] = None
    thumbnail: Optional[str] = None
    share_key: Optional[str] = None
    deleted: bool = False
    indexed_at: Optional[str] = None
    id: Optional[int] = None


@dataclass
class UpsertOutcome:
    """Result of writing one record: the share key it ended up with."""

    share_key: str
    created: bool


class ShareKeyCollisionError(RuntimeError):
    """Raised when no unique share key could be generated for a new record."""


FOLDER_COLUMNS = (
    "id, path, parent_path, folder_name, name, original_url, url_broken, item_count, "
    "directory_size, poster_image, modified_at, share_key, indexed_at"
)

AUDIO_COLUMNS = (
    "id, path, parent_path, filename, size, mime_type, modified_at, title, "
    "meta_artist AS artist, upload_date, webpage_url, description, downloaded_at, "
    "source_path, thumbnail, share_key, deleted, indexed_at"
)

SHARE_KEY_ATTEMPTS = 5

Parameters = Union[Sequence[Any], Mapping[str, Any], None]


LOGGER = logging.getLogger(__name__)


def folder_from_row(row: sqlite3.Row) -> FolderRecord:
    data = dict(row)
    data["parent_path"] = data.get("parent_path") or ""
    data["url_broken"] = bool(data.get("url_broken"))
    data["item_count"] = int(data.get("item_count") or 0)
    return FolderRecord(**data)


def audio_from_row(row: sqlite3.Row) -> AudioFileRecord:
    data = dict(row)
    data["parent_path"] = data.get("parent_path") or ""
    data["size"] = int(data.get("size") or 0)
    data["deleted"] = bool(data.get("deleted"))
    return AudioFileRecord(**data)


def _is_share_key_violation(error: sqlite3.IntegrityError) -> bool:
    return "share_key" in str(error)


class MediaRepository:
    """Repository over the folder, audio, play-event and request tables."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
        busy_timeout: float = 30.0,
    ) -> None:
        self._db_path = config.database_file
        self._busy_timeout = busy_timeout
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    @property
    def database_path(self):
        return self._db_path

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting debug events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Emit a structured debug event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        try:
            yield event_payload
        except Exception as exc:
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            event_payload.setdefault("status", "ok")
            filtered = {key: value for key, value in event_payload.items() if value is not None}
            self._event_emitter("DB_QUERY", action, payload=filtered, duration_ms=duration_ms)

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Parameters = None,
        *,
        action: str,
        table: Optional[str] = None,
    ) -> sqlite3.Cursor:
        params: Union[Tuple[Any, ...], Dict[str, Any]]
        if isinstance(parameters, Mapping):
            params = dict(parameters)
        else:
            params = tuple(parameters) if parameters is not None else ()
        with self._track_db_event(
            action,
            table=table,
            sql=self._summarize_sql(statement),
            parameter_count=len(params),
        ) as event:
            cursor = connection.execute(statement, params)
            if cursor.rowcount is not None and cursor.rowcount >= 0:
                event.setdefault("rowcount", int(cursor.rowcount))
            return cursor

    def execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Parameters = None,
        *,
        action: str,
        table: str,
    ) -> sqlite3.Cursor:
        """Run *statement* on a connection obtained from :meth:`session`."""

        return self._execute(connection, statement, parameters, action=action, table=table)

    def _connect(self) -> sqlite3.Connection:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        connection = sqlite3.connect(self._db_path, timeout=self._busy_timeout)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @contextlib.contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection that commits on success and is always closed."""

        connection = self._connect()
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    # ---------------------------------------------------------------------
    # Generic helpers used by the query services
    # ---------------------------------------------------------------------
    def fetch_all(
        self,
        statement: str,
        parameters: Parameters = None,
        *,
        action: str,
        table: str,
    ) -> List[sqlite3.Row]:
        with self.session() as connection:
            cursor = self._execute(connection, statement, parameters, action=action, table=table)
            return cursor.fetchall()

    def fetch_one(
        self,
        statement: str,
        parameters: Parameters = None,
        *,
        action: str,
        table: str,
    ) -> Optional[sqlite3.Row]:
        with self.session() as connection:
            cursor = self._execute(connection, statement, parameters, action=action, table=table)
            return cursor.fetchone()

    def execute_write(
        self,
        statement: str,
        parameters: Parameters = None,
        *,
        action: str,
        table: str,
    ) -> Tuple[int, Optional[int]]:
        """Run a write statement and return ``(rowcount, lastrowid)``."""

        with self.session() as connection:
            cursor = self._execute(connection, statement, parameters, action=action, table=table)
            return int(cursor.rowcount), cursor.lastrowid

    def check_connection(self) -> None:
        """Raise :class:`sqlite3.Error` when the database cannot be used."""

        with self.session() as connection:
            self._execute(connection, "SELECT COUNT(*) FROM folders", action="folders.ping", table="folders")

    # ---------------------------------------------------------------------
    # Indexer writes
    # ---------------------------------------------------------------------
    def _existing_share_key(
        self, connection: sqlite3.Connection, table: str, path: str
    ) -> Tuple[bool, Optional[str]]:
        cursor = self._execute(
            connection,
            f"SELECT share_key FROM {table} WHERE path = ?",
            (path,),
            action=f"{table}.lookup_share_key",
            table=table,
        )
        row = cursor.fetchone()
        if row is None:
            return False, None
        return True, row["share_key"]

    def _upsert_with_share_key(
        self,
        table: str,
        path: str,
        statement: str,
        build_params: Callable[[str], Sequence[Any]],
    ) -> UpsertOutcome:
        for attempt in range(1, SHARE_KEY_ATTEMPTS + 1):
            with self.session() as connection:
                exists, current_key = self._existing_share_key(connection, table, path)
                candidate = current_key or generate_share_key()
                try:
                    self._execute(
                        connection,
                        statement,
                        build_params(candidate),
                        action=f"{table}.upsert",
                        table=table,
                    )
                except sqlite3.IntegrityError as error:
                    if not _is_share_key_violation(error):
                        raise
                    LOGGER.warning(
                        "Share key collision for %s (attempt %s/%s)",
                        path,
                        attempt,
                        SHARE_KEY_ATTEMPTS,
                    )
                    continue
                return UpsertOutcome(share_key=candidate, created=not exists)
        raise ShareKeyCollisionError(f"Could not assign a unique share key to '{path}'")

    def upsert_folder(self, record: FolderRecord, *, indexed_at: str) -> UpsertOutcome:
        """Insert or refresh *record*, keeping any share key already assigned."""

        statement = """
            INSERT INTO folders (
                path, parent_path, folder_name, name, original_url, url_broken,
                item_count, directory_size, poster_image, modified_at, share_key, indexed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
                parent_path = excluded.parent_path,
                folder_name = excluded.folder_name,
                name = excluded.name,
                original_url = excluded.original_url,
                url_broken = excluded.url_broken,
                directory_size = excluded.directory_size,
                poster_image = excluded.poster_image,
                modified_at = excluded.modified_at,
                share_key = COALESCE(folders.share_key, excluded.share_key),
                indexed_at = excluded.indexed_at
        """

        def _params(share_key: str) -> Sequence[Any]:
            return (
                record.path,
                record.parent_path,
                record.folder_name,
                record.name,
                record.original_url,
                1 if record.url_broken else 0,
                record.item_count,
                record.directory_size,
                record.poster_image,
                record.modified_at,
                share_key,
                indexed_at,
            )

        return self._upsert_with_share_key("folders", record.path, statement, _params)

    def upsert_audio_file(self, record: AudioFileRecord, *, indexed_at: str) -> UpsertOutcome:
        """Insert or refresh *record*; a reappearing file is un-deleted."""

        statement = """
            INSERT INTO audio_files (
                path, parent_path, filename, size, mime_type, modified_at,
                title, meta_artist, upload_date, webpage_url, description,
                downloaded_at, source_path, thumbnail, share_key, deleted, indexed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
            ON CONFLICT(path) DO UPDATE SET
                parent_path = excluded.parent_path,
                filename = excluded.filename,
                size = excluded.size,
                mime_type = excluded.mime_type,
                modified_at = excluded.modified_at,
                title = excluded.title,
                meta_artist = excluded.meta_artist,
                upload_date = excluded.upload_date,
                webpage_url = excluded.webpage_url,
                description = excluded.description,
                downloaded_at = excluded.downloaded_at,
                source_path = excluded.source_path,
                thumbnail = excluded.thumbnail,
                share_key = COALESCE(audio_files.share_key, excluded.share_key),
                deleted = 0,
                indexed_at = excluded.indexed_at
        """

        def _params(share_key: str) -> Sequence[Any]:
            return (
                record.path,
                record.parent_path,
                record.filename,
                record.size,
                record.mime_type,
                record.modified_at,
                record.title,
                record.artist,
                record.upload_date,
                record.webpage_url,
                record.description,
                record.downloaded_at,
                record.source_path,
                record.thumbnail,
                share_key,
                indexed_at,
            )

        return self._upsert_with_share_key("audio_files", record.path, statement, _params)

    def refresh_subtree(self, virtual_path: str, *, indexed_at: str) -> int:
        """Mark *virtual_path* and everything below it as seen by the current run."""

        prefix = f"{virtual_path}/"
        touched = 0
        with self.session() as connection:
            for table in ("folders", "audio_files"):
                cursor = self._execute(
                    connection,
                    f"""
                    UPDATE {table} SET indexed_at = ?
                    WHERE path = ? OR substr(path, 1, ?) = ?
                    """,
                    (indexed_at, virtual_path, len(prefix), prefix),
                    action=f"{table}.refresh_subtree",
                    table=table,
                )
                touched += max(cursor.rowcount, 0)
        LOGGER.debug("Refreshed %s record(s) under %s", touched, virtual_path)
        return touched

    def delete_stale_folders(self, watermark: str) -> int:
        rowcount, _ = self.execute_write(
            "DELETE FROM folders WHERE indexed_at < ?",
            (watermark,),
            action="folders.delete_stale",
            table="folders",
        )
        return max(rowcount, 0)

    def tombstone_stale_audio_files(self, watermark: str) -> int:
        rowcount, _ = self.execute_write(
            "UPDATE audio_files SET deleted = 1 WHERE indexed_at < ? AND deleted = 0",
            (watermark,),
            action="audio_files.tombstone_stale",
            table="audio_files",
        )
        return max(rowcount, 0)

    def recompute_item_counts(self) -> int:
        rowcount, _ = self.execute_write(
            """
            UPDATE folders SET item_count = (
                SELECT COUNT(*) FROM folders AS children WHERE children.parent_path = folders.path
            ) + (
                SELECT COUNT(*) FROM audio_files
                WHERE audio_files.parent_path = folders.path AND audio_files.deleted = 0
            )
            """,
            action="folders.recompute_item_counts",
            table="folders",
        )
        return max(rowcount, 0)

    # ---------------------------------------------------------------------
    # Lookups
    # ---------------------------------------------------------------------
    def get_folder(self, path: str) -> Optional[FolderRecord]:
        row = self.fetch_one(
            f"SELECT {FOLDER_COLUMNS} FROM folders WHERE path = ?",
            (path,),
            action="folders.get",
            table="folders",
        )
        return folder_from_row(row) if row else None

    def get_folder_by_share_key(self, share_key: str) -> Optional[FolderRecord]:
        row = self.fetch_one(
            f"SELECT {FOLDER_COLUMNS} FROM folders WHERE share_key = ?",
            (share_key,),
            action="folders.get_by_share_key",
            table="folders",
        )
        return folder_from_row(row) if row else None

    def get_audio_file(self, path: str) -> Optional[AudioFileRecord]:
        row = self.fetch_one(
            f"SELECT {AUDIO_COLUMNS} FROM audio_files WHERE path = ?",
            (path,),
            action="audio_files.get",
            table="audio_files",
        )
        return audio_from_row(row) if row else None

    def get_audio_file_by_share_key(self, share_key: str) -> Optional[AudioFileRecord]:
        row = self.fetch_one(
            f"SELECT {AUDIO_COLUMNS} FROM audio_files WHERE share_key = ?",
            (share_key,),
            action="audio_files.get_by_share_key",
            table="audio_files",
        )
        return audio_from_row(row) if row else None

    def list_folders_by_parent(self, parent_path: str) -> List[FolderRecord]:
        rows = self.fetch_all(
            f"SELECT {FOLDER_COLUMNS} FROM folders WHERE parent_path = ? ORDER BY name ASC",
            (parent_path,),
            action="folders.list_by_parent",
            table="folders",
        )
        return [folder_from_row(row) for row in rows]

    def list_audio_files_by_parent(self, parent_path: str) -> List[AudioFileRecord]:
        rows = self.fetch_all(
            f"""
            SELECT {AUDIO_COLUMNS} FROM audio_files
            WHERE parent_path = ? AND deleted = 0
            ORDER BY modified_at DESC
            """,
            (parent_path,),
            action="audio_files.list_by_parent",
            table="audio_files",
        )
        return [audio_from_row(row) for row in rows]

    def list_all_folders(self) -> List[FolderRecord]:
        rows = self.fetch_all(
            f"SELECT {FOLDER_COLUMNS} FROM folders ORDER BY path",
            action="folders.list_all",
            table="folders",
        )
        return [folder_from_row(row) for row in rows]

    def list_all_audio_files(self, *, include_deleted: bool = True) -> List[AudioFileRecord]:
        where = "" if include_deleted else "WHERE deleted = 0"
        rows = self.fetch_all(
            f"SELECT {AUDIO_COLUMNS} FROM audio_files {where} ORDER BY path",
            action="audio_files.list_all",
            table="audio_files",
        )
        return [audio_from_row(row) for row in rows]

    def count_folders(self) -> int:
        row = self.fetch_one("SELECT COUNT(*) FROM folders", action="folders.count", table="folders")
        return int(row[0]) if row else 0

    def count_audio_files(self, *, include_deleted: bool = False) -> int:
        where = "" if include_deleted else " WHERE deleted = 0"
        row = self.fetch_one(
            f"SELECT COUNT(*) FROM audio_files{where}",
            action="audio_files.count",
            table="audio_files",
        )
        return int(row[0]) if row else 0


__all__ = [
    "AudioFileRecord",
    "FolderRecord",
    "MediaRepository",
    "ShareKeyCollisionError",
    "UpsertOutcome",
    "audio_from_row",
    "folder_from_row",
]
