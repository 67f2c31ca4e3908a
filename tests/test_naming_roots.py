import re
from pathlib import Path

import pytest

from audioshare.services.naming import (
    format_epoch,
    format_modified_time,
    generate_share_key,
    join_virtual_path,
    parent_path,
    slugify,
    unique_slug,
    utc_timestamp,
)
from audioshare.services.roots import RootDirectory, RootRegistry, parse_root_config


@pytest.mark.parametrize(
    "value, expected",
    [
        ("Music", "music"),
        ("  Audio   Books ", "audio-books"),
        ("Rock & Roll!", "rock-roll"),
        ("Über", "ber"),
        ("!!!", "audio"),
    ],
)
def test_slugify(value: str, expected: str) -> None:
    assert slugify(value) == expected


def test_unique_slug_appends_counter() -> None:
    assert unique_slug("Music", {"music"}) == "music-1"
    assert unique_slug("Music", {"music", "music-1"}) == "music-2"
    assert unique_slug("Podcasts", {"music"}) == "podcasts"


def test_virtual_path_helpers() -> None:
    assert join_virtual_path("", "music") == "music"
    assert join_virtual_path("music", "rock") == "music/rock"
    assert parent_path("music/rock/song.mp3") == "music/rock"
    assert parent_path("music") == ""


def test_share_keys_are_short_and_url_safe() -> None:
    keys = {generate_share_key() for _ in range(50)}

    assert len(keys) == 50
    for key in keys:
        assert len(key) == 8
        assert re.fullmatch(r"[A-Za-z0-9_-]+", key)


def test_timestamp_formats() -> None:
    assert format_epoch(1700000000) == "2023-11-14T22:13:20Z"
    assert format_modified_time(1700000000.25) == "2023-11-14T22:13:20.250Z"
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{6}Z", utc_timestamp())


def test_parse_root_config_disambiguates_duplicate_names() -> None:
    roots = parse_root_config("/data/a:Music,/data/a2:Music")

    assert [root.slug for root in roots] == ["music", "music-1"]
    assert [root.display_name for root in roots] == ["Music", "Music"]
    assert roots[1].path == Path("/data/a2")


def test_parse_root_config_uses_basename_without_name() -> None:
    roots = parse_root_config(" /srv/Podcasts/ , ,/srv/books:Audio Books")

    assert [(root.display_name, root.slug) for root in roots] == [
        ("Podcasts", "podcasts"),
        ("Audio Books", "audio-books"),
    ]


def test_parse_root_config_defaults_when_empty(tmp_path: Path) -> None:
    roots = parse_root_config("", cwd=tmp_path)

    assert roots == [
        RootDirectory(path=tmp_path / "public" / "audio", display_name="Audio", slug="audio")
    ]


def test_registry_resolves_inside_root_only(tmp_path: Path) -> None:
    library = tmp_path / "library"
    (library / "rock").mkdir(parents=True)
    registry = RootRegistry.from_config_string(f"{library}:Music")

    assert registry.resolve("music") == library.resolve()
    assert registry.resolve("music/rock/song.mp3") == (library / "rock" / "song.mp3").resolve()
    assert registry.resolve("music/../secret.txt") is None
    assert registry.resolve("music/rock/../../x") is None
    assert registry.resolve("unknown/song.mp3") is None


def test_registry_rejects_symlink_escape(tmp_path: Path) -> None:
    library = tmp_path / "library"
    library.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()
    (library / "escape").symlink_to(outside, target_is_directory=True)
    registry = RootRegistry.from_config_string(f"{library}:Music")

    assert registry.resolve("music/escape/file.mp3") is None


def test_registry_rejects_duplicate_slugs(tmp_path: Path) -> None:
    roots = [
        RootDirectory(path=tmp_path / "a", display_name="A", slug="a"),
        RootDirectory(path=tmp_path / "b", display_name="B", slug="a"),
    ]

    with pytest.raises(ValueError):
        RootRegistry(roots)
