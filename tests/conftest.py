from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from audioshare.bootstrap import Bootstrapper
from audioshare.config import AppConfig
from audioshare.services.indexer import LibraryIndexer
from audioshare.services.locking import FileReindexLock
from audioshare.services.roots import RootRegistry
from audioshare.services.storage import MediaRepository


@pytest.fixture()
def library_root(tmp_path: Path) -> Path:
    library = tmp_path / "library"
    library.mkdir()
    return library


@pytest.fixture()
def temp_config(tmp_path: Path, library_root: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "database_file": "storage/audio-share.db",
            "audio_dirs": f"{library_root}:Music",
            "cache_ttl": 0,
            "lock_backend": "file",
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def repository(temp_config: AppConfig) -> MediaRepository:
    return MediaRepository(temp_config)


@pytest.fixture()
def registry(temp_config: AppConfig) -> RootRegistry:
    return RootRegistry.from_config_string(temp_config.audio_dirs)


@pytest.fixture()
def indexer(
    temp_config: AppConfig, repository: MediaRepository, registry: RootRegistry
) -> LibraryIndexer:
    return LibraryIndexer(repository, registry, FileReindexLock(temp_config.lock_file))


@pytest.fixture()
def write_file() -> Callable[..., Path]:
    def _write(path: Path, content: bytes | str = b"ID3audio") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            path.write_text(content, encoding="utf-8")
        else:
            path.write_bytes(content)
        return path

    return _write
