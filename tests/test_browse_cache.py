import os
from pathlib import Path

from audioshare.services.browse import BrowseService, DirectoryContents, FileSystemItem
from audioshare.services.cache import CachedBrowseService, DirectoryListingCache
from audioshare.services.indexer import LibraryIndexer
from audioshare.services.roots import RootRegistry
from audioshare.services.storage import MediaRepository


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class CountingBrowser:
    def __init__(self) -> None:
        self.calls = []

    def browse_directory(self, path: str) -> DirectoryContents:
        self.calls.append(path)
        return DirectoryContents(
            current_path=path,
            items=[FileSystemItem(name=f"call-{len(self.calls)}", path=path, type="folder")],
        )


def test_list_roots_omits_missing_and_sorts(
    repository: MediaRepository, tmp_path: Path
) -> None:
    (tmp_path / "b").mkdir()
    (tmp_path / "a").mkdir()
    registry = RootRegistry.from_config_string(
        f"{tmp_path / 'b'}:Zebra,{tmp_path / 'missing'}:Gone,{tmp_path / 'a'}:Alpha"
    )

    listing = BrowseService(repository, registry).browse_directory("")

    assert listing.current_path == ""
    assert [(item.name, item.path, item.type) for item in listing.items] == [
        ("Alpha", "alpha", "folder"),
        ("Zebra", "zebra", "folder"),
    ]


def test_browse_lists_folders_then_newest_audio(
    indexer: LibraryIndexer,
    repository: MediaRepository,
    registry: RootRegistry,
    library_root: Path,
    write_file,
) -> None:
    write_file(library_root / "b-folder" / "x.mp3")
    write_file(library_root / "a-folder" / "y.mp3")
    old = write_file(library_root / "old.mp3")
    new = write_file(library_root / "new.mp3")
    os.utime(old, (1_600_000_000, 1_600_000_000))
    os.utime(new, (1_700_000_000, 1_700_000_000))
    indexer.rebuild_index()

    listing = BrowseService(repository, registry).browse_directory("/music/")
    payload = listing.to_dict()

    assert payload["currentPath"] == "music"
    assert [item["name"] for item in payload["items"]] == [
        "a-folder",
        "b-folder",
        "new.mp3",
        "old.mp3",
    ]
    folder = payload["items"][0]
    assert folder["type"] == "folder"
    assert folder["metadata"]["items"] == 1
    assert folder["shareKey"]
    audio = payload["items"][2]
    assert audio["type"] == "audio"
    assert audio["mimeType"] == "audio/mpeg"
    assert audio["modifiedAt"] == "2023-11-14T22:13:20.000Z"


def test_cache_returns_entries_until_ttl_expires() -> None:
    clock = FakeClock()
    cache = DirectoryListingCache(10, clock=clock, random_source=lambda: 1.0)
    contents = DirectoryContents(current_path="music")

    cache.put("music", contents)
    clock.now = 9.9
    assert cache.get("music") is contents

    clock.now = 10.0
    assert cache.get("music") is None
    assert len(cache) == 1
    assert cache.sweep() == 1
    assert len(cache) == 0


def test_cache_put_occasionally_sweeps_expired_entries() -> None:
    clock = FakeClock()
    cache = DirectoryListingCache(5, clock=clock, random_source=lambda: 0.0)

    cache.put("old", DirectoryContents(current_path="old"))
    clock.now = 6.0
    cache.put("new", DirectoryContents(current_path="new"))

    assert len(cache) == 1
    assert cache.get("new") is not None


def test_zero_ttl_disables_cache() -> None:
    cache = DirectoryListingCache(0)
    cache.put("music", DirectoryContents(current_path="music"))

    assert not cache.enabled
    assert cache.get("music") is None
    assert len(cache) == 0


def test_cached_browser_hits_and_invalidates() -> None:
    browser = CountingBrowser()
    cached = CachedBrowseService(browser, DirectoryListingCache(60, random_source=lambda: 1.0))

    first = cached.browse_directory("music/")
    second = cached.browse_directory("music")
    assert first is second
    assert browser.calls == ["music"]

    cached.invalidate()
    third = cached.browse_directory("music")
    assert third.items[0].name == "call-2"
    assert browser.calls == ["music", "music"]
