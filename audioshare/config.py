"""Configuration loading utilities for the Audio Share application."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".audio_share_write_check"

DEFAULT_DATABASE_FILE = "storage/audio-share.db"
DEFAULT_CACHE_TTL = 300
DEFAULT_LOCK_STALE_SECONDS = 6 * 60 * 60
LOCK_BACKENDS = ("auto", "file", "database")

# Environment variables take precedence over ``config/default.json``.
_ENVIRONMENT_KEYS: Dict[str, str] = {
    "audio_dirs": "AUDIO_DIR",
    "database_file": "DB_PATH",
    "index_schedule": "INDEX_SCHEDULE",
    "cache_ttl": "CACHE_TTL",
    "lock_backend": "LOCK_BACKEND",
    "lock_stale_seconds": "LOCK_STALE_SECONDS",
    "log_level": "LOG_LEVEL",
}


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. When nothing can be prepared the
    original ``preferred`` path is returned so that later steps fail loudly.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def _coerce_int(value: Any, default: int, *, name: str) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        LOGGER.warning("Ignoring invalid %s value %r; using %s.", name, value, default)
        return default


@dataclass(frozen=True)
class AppConfig:
    """Runtime settings for the indexer and the web application."""

    database_file: Path
    audio_dirs: str = ""
    index_schedule: str = ""
    cache_ttl: int = DEFAULT_CACHE_TTL
    lock_backend: str = "auto"
    lock_stale_seconds: int = DEFAULT_LOCK_STALE_SECONDS
    log_level: str = "INFO"

    @property
    def storage_root(self) -> Path:
        """Directory holding the database, its lock file and the log file."""

        return self.database_file.parent

    @property
    def lock_file(self) -> Path:
        """Advisory lock guarding against concurrent reindex runs."""

        return self.database_file.with_name(self.database_file.name + ".reindex.lock")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], *, base_path: Path) -> "AppConfig":
        database_file = (base_path / str(mapping.get("database_file") or DEFAULT_DATABASE_FILE)).resolve()
        storage_root, fallback_used = _select_writable_directory(
            database_file.parent,
            label="storage",
            fallbacks=(Path.home() / ".audio_share",),
        )
        if fallback_used:
            fallback_database = (storage_root / database_file.name).resolve()
            LOGGER.warning(
                "Preferred database location '%s' is not writable; using fallback '%s'.",
                database_file,
                fallback_database,
            )
            database_file = fallback_database

        lock_backend = str(mapping.get("lock_backend") or "auto").strip().lower()
        if lock_backend not in LOCK_BACKENDS:
            LOGGER.warning("Unknown lock backend %r; using 'auto'.", lock_backend)
            lock_backend = "auto"

        return cls(
            database_file=database_file,
            audio_dirs=str(mapping.get("audio_dirs") or "").strip(),
            index_schedule=str(mapping.get("index_schedule") or "").strip(),
            cache_ttl=max(
                0, _coerce_int(mapping.get("cache_ttl"), DEFAULT_CACHE_TTL, name="cache_ttl")
            ),
            lock_backend=lock_backend,
            lock_stale_seconds=max(
                1,
                _coerce_int(
                    mapping.get("lock_stale_seconds"),
                    DEFAULT_LOCK_STALE_SECONDS,
                    name="lock_stale_seconds",
                ),
            ),
            log_level=str(mapping.get("log_level") or "INFO").strip().upper(),
        )


def apply_environment(
    mapping: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """Return a copy of *mapping* with non-empty environment overrides applied."""

    if environ is None:
        environ = os.environ
    merged: Dict[str, Any] = dict(mapping)
    for key, variable in _ENVIRONMENT_KEYS.items():
        value = environ.get(variable, "")
        if value.strip():
            merged[key] = value.strip()
    return merged


def load_config(
    config_path: Path | None = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    raw_config: Dict[str, Any] = {}
    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as config_file:
            raw_config = json.load(config_file)
    else:
        LOGGER.debug("No configuration file at %s; using defaults", config_path)

    return AppConfig.from_mapping(apply_environment(raw_config, environ), base_path=base_path)


__all__ = ["AppConfig", "LOCK_BACKENDS", "apply_environment", "load_config"]
