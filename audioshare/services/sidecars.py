"""Readers for the companion metadata files found next to audio folders."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from .naming import format_epoch

LOGGER = logging.getLogger(__name__)

FOLDER_SIDECAR_NAME = "folder.json"
AUDIO_INFO_SUFFIX = ".info.json"

POSTER_NAMES: Sequence[str] = ("poster.jpg", "artist.jpg", "cover.jpg", "album.jpg")
THUMBNAIL_SUFFIXES: Sequence[str] = (
    "-thumb.jpg",
    "-thumb.webp",
    "-thumb.png",
    ".jpg",
    ".webp",
    ".png",
)


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class FolderMetadataSidecar:
    """One entry of a ``folder.json`` list, describing a child directory."""

    folder_name: str
    name: str
    original_url: Optional[str] = None
    url_broken: bool = False
    directory_size: Optional[str] = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> Optional["FolderMetadataSidecar"]:
        folder_name = _optional_text(payload.get("folder_name"))
        if folder_name is None:
            return None
        return cls(
            folder_name=folder_name,
            name=_optional_text(payload.get("name")) or folder_name,
            original_url=_optional_text(payload.get("original_url")),
            url_broken=payload.get("url_broken") is True,
            directory_size=_optional_text(payload.get("directory_size")),
        )


@dataclass(frozen=True)
class AudioInfoSidecar:
    """Contents of ``<basename>.info.json`` written by the downloader."""

    title: Optional[str] = None
    artist: Optional[str] = None
    upload_date: Optional[str] = None
    webpage_url: Optional[str] = None
    description: Optional[str] = None
    epoch: Optional[float] = None

    @property
    def downloaded_at(self) -> Optional[str]:
        if self.epoch is None or self.epoch <= 0:
            return None
        return format_epoch(self.epoch)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "AudioInfoSidecar":
        epoch: Optional[float]
        try:
            epoch = float(payload["epoch"]) if payload.get("epoch") is not None else None
        except (TypeError, ValueError):
            epoch = None
        return cls(
            title=_optional_text(payload.get("title")),
            artist=_optional_text(payload.get("meta_artist")),
            upload_date=_optional_text(payload.get("upload_date")),
            webpage_url=_optional_text(payload.get("webpage_url")),
            description=_optional_text(payload.get("description")),
            epoch=epoch,
        )


def _read_json(path: Path) -> Any:
    """Return the decoded contents of *path*, or ``None`` when absent or invalid."""

    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as error:
        LOGGER.warning("Could not read sidecar %s: %s", path, error)
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as error:
        LOGGER.warning("Ignoring malformed sidecar %s: %s", path, error)
        return None


def load_folder_metadata(directory: Path) -> Dict[str, FolderMetadataSidecar]:
    """Return ``folder.json`` overrides for the children of *directory*, keyed by name."""

    payload = _read_json(directory / FOLDER_SIDECAR_NAME)
    if not isinstance(payload, list):
        return {}
    entries: Dict[str, FolderMetadataSidecar] = {}
    for item in payload:
        if not isinstance(item, dict):
            continue
        entry = FolderMetadataSidecar.from_mapping(item)
        if entry is not None:
            entries[entry.folder_name] = entry
    return entries


def load_audio_info(directory: Path, base_name: str) -> Optional[AudioInfoSidecar]:
    payload = _read_json(directory / f"{base_name}{AUDIO_INFO_SUFFIX}")
    if not isinstance(payload, dict):
        return None
    return AudioInfoSidecar.from_mapping(payload)


def probe_poster(directory: Path) -> Optional[str]:
    """Return the first conventional poster image present in *directory*."""

    for candidate in POSTER_NAMES:
        if (directory / candidate).exists():
            return candidate
    return None


def probe_thumbnail(directory: Path, base_name: str) -> Optional[str]:
    for suffix in THUMBNAIL_SUFFIXES:
        candidate = f"{base_name}{suffix}"
        if (directory / candidate).exists():
            return candidate
    return None


__all__ = [
    "AUDIO_INFO_SUFFIX",
    "AudioInfoSidecar",
    "FOLDER_SIDECAR_NAME",
    "FolderMetadataSidecar",
    "POSTER_NAMES",
    "THUMBNAIL_SUFFIXES",
    "load_audio_info",
    "load_folder_metadata",
    "probe_poster",
    "probe_thumbnail",
]
