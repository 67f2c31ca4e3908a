import json
import os
import sqlite3
from dataclasses import asdict
from pathlib import Path

import pytest

from audioshare.config import AppConfig
from audioshare.services.indexer import IndexingError, IndexRunResult, LibraryIndexer
from audioshare.services.locking import FileReindexLock
from audioshare.services.roots import RootRegistry
from audioshare.services.storage import MediaRepository


def _snapshot(repository: MediaRepository) -> dict:
    folders = {
        folder.path: {k: v for k, v in asdict(folder).items() if k != "indexed_at"}
        for folder in repository.list_all_folders()
    }
    audio = {
        record.path: {k: v for k, v in asdict(record).items() if k != "indexed_at"}
        for record in repository.list_all_audio_files()
    }
    return {"folders": folders, "audio": audio}


def test_indexes_folders_and_audio_with_virtual_paths(
    indexer: LibraryIndexer, repository: MediaRepository, library_root: Path, write_file
) -> None:
    write_file(library_root / "rock" / "song.mp3", b"x" * 10)
    write_file(library_root / "rock" / "notes.txt", "ignored")
    write_file(library_root / "intro.FLAC")
    write_file(library_root / ".hidden" / "secret.mp3")

    result = indexer.rebuild_index()

    assert result.status == "completed"
    assert result.folders == 2
    assert result.audio_files == 2
    assert result.errors == 0

    root = repository.get_folder("music")
    assert root is not None
    assert root.name == "Music"
    assert root.parent_path == ""
    assert root.item_count == 2

    song = repository.get_audio_file("music/rock/song.mp3")
    assert song is not None
    assert song.parent_path == "music/rock"
    assert song.filename == "song.mp3"
    assert song.size == 10
    assert song.mime_type == "audio/mpeg"
    assert song.share_key
    assert song.modified_at.endswith("Z")

    assert repository.get_audio_file("music/intro.FLAC").mime_type == "audio/flac"
    assert repository.get_audio_file("music/rock/notes.txt") is None
    assert repository.get_folder("music/.hidden") is None


def test_reindex_is_idempotent_and_share_keys_are_sticky(
    indexer: LibraryIndexer, repository: MediaRepository, library_root: Path, write_file
) -> None:
    write_file(library_root / "rock" / "song.mp3")
    write_file(library_root / "jazz" / "take-five.mp3")

    indexer.rebuild_index()
    first = _snapshot(repository)
    first_indexed_at = repository.get_folder("music/rock").indexed_at

    indexer.rebuild_index()

    assert _snapshot(repository) == first
    assert repository.get_folder("music/rock").indexed_at > first_indexed_at


def test_existing_share_key_is_never_replaced(
    indexer: LibraryIndexer, repository: MediaRepository, library_root: Path, write_file
) -> None:
    write_file(library_root / "rock" / "song.mp3")
    indexer.rebuild_index()
    repository.execute_write(
        "UPDATE audio_files SET share_key = 'abc123' WHERE path = ?",
        ("music/rock/song.mp3",),
        action="test.force_key",
        table="audio_files",
    )

    indexer.rebuild_index()

    assert repository.get_audio_file("music/rock/song.mp3").share_key == "abc123"
    assert repository.get_audio_file_by_share_key("abc123").path == "music/rock/song.mp3"


def test_index_reflects_additions_and_removals(
    indexer: LibraryIndexer, repository: MediaRepository, library_root: Path, write_file
) -> None:
    write_file(library_root / "rock" / "song.mp3")
    indexer.rebuild_index()

    write_file(library_root / "rock" / "another.ogg")
    write_file(library_root / "pop" / "hit.mp3")
    result = indexer.rebuild_index()

    assert result.audio_files == 3
    assert {folder.path for folder in repository.list_all_folders()} == {
        "music",
        "music/pop",
        "music/rock",
    }
    assert repository.count_audio_files() == 3
    assert repository.count_folders() == 3
    assert repository.get_folder("music/rock").item_count == 2


def test_missing_audio_file_is_tombstoned_and_keeps_history(
    indexer: LibraryIndexer,
    repository: MediaRepository,
    temp_config: AppConfig,
    library_root: Path,
    write_file,
) -> None:
    song = write_file(library_root / "rock" / "song.mp3")
    indexer.rebuild_index()
    record = repository.get_audio_file("music/rock/song.mp3")
    repository.execute_write(
        "INSERT INTO play_events (audio_file_id) VALUES (?)",
        (record.id,),
        action="test.play",
        table="play_events",
    )

    song.unlink()
    result = indexer.rebuild_index()

    assert result.audio_files_deleted == 1
    tombstone = repository.get_audio_file("music/rock/song.mp3")
    assert tombstone is not None
    assert tombstone.deleted is True
    assert tombstone.share_key == record.share_key
    assert repository.get_folder("music/rock").item_count == 0
    assert repository.list_audio_files_by_parent("music/rock") == []

    connection = sqlite3.connect(temp_config.database_file)
    try:
        joined = connection.execute(
            """
            SELECT af.path FROM play_events AS pe
            JOIN audio_files AS af ON af.id = pe.audio_file_id
            """
        ).fetchall()
    finally:
        connection.close()
    assert joined == [("music/rock/song.mp3",)]


def test_reappearing_audio_file_is_restored_with_same_key(
    indexer: LibraryIndexer, repository: MediaRepository, library_root: Path, write_file
) -> None:
    song = write_file(library_root / "song.mp3")
    indexer.rebuild_index()
    share_key = repository.get_audio_file("music/song.mp3").share_key

    song.unlink()
    indexer.rebuild_index()
    write_file(library_root / "song.mp3")
    indexer.rebuild_index()

    record = repository.get_audio_file("music/song.mp3")
    assert record.deleted is False
    assert record.share_key == share_key


def test_missing_folder_is_removed(
    indexer: LibraryIndexer, repository: MediaRepository, library_root: Path, write_file
) -> None:
    write_file(library_root / "rock" / "song.mp3")
    write_file(library_root / "keep" / "stay.mp3")
    indexer.rebuild_index()

    (library_root / "rock" / "song.mp3").unlink()
    (library_root / "rock").rmdir()
    result = indexer.rebuild_index()

    assert result.folders_removed == 1
    assert repository.get_folder("music/rock") is None
    assert repository.get_folder("music/keep") is not None
    assert repository.get_audio_file("music/rock/song.mp3").deleted is True


def test_folder_sidecar_overrides_display_name(
    indexer: LibraryIndexer, repository: MediaRepository, library_root: Path, write_file
) -> None:
    (library_root / "rock").mkdir()
    write_file(
        library_root / "folder.json",
        json.dumps([{"folder_name": "rock", "name": "Rock Hits", "directory_size": "3 GB"}]),
    )

    indexer.rebuild_index()

    folder = repository.get_folder("music/rock")
    assert folder.name == "Rock Hits"
    assert folder.folder_name == "rock"
    assert folder.directory_size == "3 GB"


def test_audio_info_sidecar_sets_metadata(
    indexer: LibraryIndexer, repository: MediaRepository, library_root: Path, write_file
) -> None:
    write_file(library_root / "track.mp3")
    write_file(
        library_root / "track.info.json",
        json.dumps({"title": "X", "meta_artist": "Band", "epoch": 1700000000}),
    )
    write_file(library_root / "track-thumb.jpg", b"jpg")

    indexer.rebuild_index()

    record = repository.get_audio_file("music/track.mp3")
    assert record.title == "X"
    assert record.artist == "Band"
    assert record.downloaded_at == "2023-11-14T22:13:20Z"
    assert record.thumbnail == "track-thumb.jpg"


def test_source_path_and_new_folders(
    indexer: LibraryIndexer, repository: MediaRepository, library_root: Path, write_file
) -> None:
    write_file(library_root / "show" / "season1" / "ep1.mp3")
    write_file(library_root / "show" / "poster.jpg", b"jpg")
    write_file(library_root / "loose.mp3")
    write_file(
        library_root / "folder.json",
        json.dumps(
            [{"folder_name": "show", "name": "The Show", "original_url": "https://example.com/show"}]
        ),
    )

    first = indexer.rebuild_index()

    episode = repository.get_audio_file("music/show/season1/ep1.mp3")
    assert episode.source_path == "music/show"
    assert repository.get_audio_file("music/loose.mp3").source_path is None

    show = repository.get_folder("music/show")
    assert show.poster_image == "poster.jpg"
    assert [(item.path, item.name, item.share_key) for item in first.new_folders] == [
        ("music/show", "The Show", show.share_key)
    ]
    assert first.new_folders[0].original_url == "https://example.com/show"

    second = indexer.rebuild_index()
    assert second.new_folders == []


def test_concurrent_run_is_skipped(
    indexer: LibraryIndexer,
    repository: MediaRepository,
    temp_config: AppConfig,
    library_root: Path,
    write_file,
) -> None:
    write_file(library_root / "song.mp3")
    indexer.rebuild_index()
    before = repository.get_audio_file("music/song.mp3").indexed_at

    other = FileReindexLock(temp_config.lock_file)
    assert other.try_acquire()
    try:
        result = indexer.rebuild_index()
    finally:
        other.release()

    assert result.skipped
    assert result.folders == 0
    assert repository.get_audio_file("music/song.mp3").indexed_at == before

    assert indexer.rebuild_index().status == "completed"


def test_unreadable_subtree_is_preserved(
    indexer: LibraryIndexer,
    repository: MediaRepository,
    library_root: Path,
    write_file,
    monkeypatch,
) -> None:
    write_file(library_root / "rock" / "deep" / "song.mp3")
    write_file(library_root / "pop" / "hit.mp3")
    indexer.rebuild_index()

    blocked = str(library_root / "rock")
    real_scandir = os.scandir

    def fake_scandir(path):
        if str(path) == blocked:
            raise PermissionError(13, "Permission denied", blocked)
        return real_scandir(path)

    monkeypatch.setattr(os, "scandir", fake_scandir)
    result = indexer.rebuild_index()

    assert result.errors == 1
    assert result.folders_removed == 0
    assert result.audio_files_deleted == 0
    assert repository.get_folder("music/rock/deep") is not None
    assert repository.get_audio_file("music/rock/deep/song.mp3").deleted is False


def test_unavailable_root_is_preserved(
    indexer: LibraryIndexer, repository: MediaRepository, library_root: Path, write_file
) -> None:
    write_file(library_root / "song.mp3")
    indexer.rebuild_index()

    library_root.rename(library_root.with_name("moved"))
    result = indexer.rebuild_index()

    assert result.status == "completed"
    assert result.errors == 1
    assert repository.get_folder("music") is not None
    assert repository.get_audio_file("music/song.mp3").deleted is False


def test_symlink_loop_is_not_followed(
    indexer: LibraryIndexer, repository: MediaRepository, library_root: Path, write_file
) -> None:
    write_file(library_root / "rock" / "song.mp3")
    (library_root / "rock" / "again").symlink_to(library_root, target_is_directory=True)

    result = indexer.rebuild_index()

    assert result.status == "completed"
    assert repository.get_folder("music/rock/again/rock") is None


def test_lock_setup_failure_raises(
    repository: MediaRepository, registry: RootRegistry, tmp_path: Path
) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file", encoding="utf-8")
    indexer = LibraryIndexer(repository, registry, FileReindexLock(blocker / "reindex.lock"))

    with pytest.raises(IndexingError):
        indexer.rebuild_index()


def test_unusable_database_raises_and_releases_lock(
    registry: RootRegistry, tmp_path: Path
) -> None:
    broken = MediaRepository(AppConfig(database_file=tmp_path))
    lock = FileReindexLock(tmp_path / "reindex.lock")
    indexer = LibraryIndexer(broken, registry, lock)

    with pytest.raises(IndexingError):
        indexer.rebuild_index()

    assert not lock.held


def test_completion_listeners_receive_result(
    indexer: LibraryIndexer, library_root: Path, write_file
) -> None:
    write_file(library_root / "song.mp3")
    received = []

    def failing_listener(result: IndexRunResult) -> None:
        raise RuntimeError("boom")

    indexer.add_completion_listener(failing_listener)
    indexer.add_completion_listener(received.append)

    result = indexer.rebuild_index()

    assert received == [result]
    assert result.to_dict()["audio_files"] == 1
