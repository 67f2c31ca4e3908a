"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config

LOGGER = logging.getLogger(__name__)


SCHEMA = """
PRAGMA foreign_keys = ON;
CREATE TABLE IF NOT EXISTS folders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    parent_path TEXT,
    folder_name TEXT NOT NULL,
    name TEXT NOT NULL,
    original_url TEXT,
    url_broken INTEGER DEFAULT 0,
    item_count INTEGER DEFAULT 0,
    directory_size TEXT,
    poster_image TEXT,
    modified_at TEXT,
    share_key TEXT,
    indexed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS audio_files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    parent_path TEXT,
    filename TEXT NOT NULL,
    size INTEGER,
    mime_type TEXT,
    modified_at TEXT,
    title TEXT,
    meta_artist TEXT,
    upload_date TEXT,
    webpage_url TEXT,
    description TEXT,
    downloaded_at TEXT,
    source_path TEXT,
    thumbnail TEXT,
    share_key TEXT,
    deleted INTEGER DEFAULT 0,
    indexed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS play_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    audio_file_id INTEGER NOT NULL REFERENCES audio_files(id),
    played_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS source_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    submitted_url TEXT NOT NULL,
    canonical_id TEXT,
    title TEXT NOT NULL,
    image_url TEXT,
    status TEXT NOT NULL DEFAULT 'requested',
    tags TEXT DEFAULT '[]',
    folder_share_key TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS index_locks (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at REAL NOT NULL,
    heartbeat_at REAL NOT NULL
);
"""

# Columns added after the first schema revision; older databases get them via ALTER TABLE.
LATE_COLUMNS = (
    ("audio_files", "downloaded_at", "TEXT"),
    ("audio_files", "source_path", "TEXT"),
    ("audio_files", "thumbnail", "TEXT"),
    ("audio_files", "share_key", "TEXT"),
    ("audio_files", "deleted", "INTEGER DEFAULT 0"),
    ("folders", "share_key", "TEXT"),
)

INDEXES = """
CREATE INDEX IF NOT EXISTS idx_folders_path ON folders(path);
CREATE INDEX IF NOT EXISTS idx_folders_parent_path ON folders(parent_path);
CREATE INDEX IF NOT EXISTS idx_folders_search ON folders(name, folder_name);
CREATE UNIQUE INDEX IF NOT EXISTS idx_folders_share_key ON folders(share_key);

CREATE INDEX IF NOT EXISTS idx_audio_files_path ON audio_files(path);
CREATE INDEX IF NOT EXISTS idx_audio_files_parent_path ON audio_files(parent_path);
CREATE INDEX IF NOT EXISTS idx_audio_files_search
    ON audio_files(filename, title, meta_artist, description);
CREATE INDEX IF NOT EXISTS idx_audio_files_downloaded_at ON audio_files(downloaded_at);
CREATE INDEX IF NOT EXISTS idx_audio_files_source_path ON audio_files(source_path);
CREATE UNIQUE INDEX IF NOT EXISTS idx_audio_files_share_key ON audio_files(share_key);

CREATE INDEX IF NOT EXISTS idx_play_events_audio_file_id ON play_events(audio_file_id);
CREATE INDEX IF NOT EXISTS idx_play_events_played_at ON play_events(played_at);

CREATE INDEX IF NOT EXISTS idx_source_requests_status ON source_requests(status);
"""


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        storage_root = self._config.storage_root
        if not config_module._ensure_writable_directory(storage_root):
            raise BootstrapError(f"Storage directory '{storage_root}' is not writable")
        LOGGER.debug("Ensured directory exists: %s", storage_root)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        try:
            connection = sqlite3.connect(self._config.database_file)
        except sqlite3.Error as error:
            raise BootstrapError(
                f"Could not open database '{self._config.database_file}': {error}"
            ) from error
        try:
            cursor = connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL")
            except sqlite3.OperationalError as error:
                LOGGER.warning("Could not enable WAL mode: %s", error)
            cursor.executescript(SCHEMA)
            connection.commit()

            def _column_exists(table: str, column: str) -> bool:
                cursor.execute(f"PRAGMA table_info({table})")
                return any(row[1] == column for row in cursor.fetchall())

            for table, column, definition in LATE_COLUMNS:
                if not _column_exists(table, column):
                    LOGGER.info("Adding column %s.%s", table, column)
                    cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
            connection.commit()

            cursor.executescript(INDEXES)
            connection.commit()
        except sqlite3.Error as error:
            raise BootstrapError(f"Failed to migrate database schema: {error}") from error
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "initialize_app"]
