"""Tree navigation over the indexed folders and audio files."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from .naming import format_modified_time
from .roots import RootRegistry
from .storage import AudioFileRecord, FolderRecord, MediaRepository


LOGGER = logging.getLogger(__name__)


@dataclass
class FolderMetadata:
    folder_name: str
    name: str
    original_url: Optional[str] = None
    url_broken: bool = False
    items: int = 0
    directory_size: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"folder_name": self.folder_name, "name": self.name}
        if self.original_url:
            payload["original_url"] = self.original_url
        if self.url_broken:
            payload["url_broken"] = True
        if self.items:
            payload["items"] = self.items
        if self.directory_size:
            payload["directory_size"] = self.directory_size
        return payload


@dataclass
class FileSystemItem:
    """One entry of a directory listing, either a folder or an audio file."""

    name: str
    path: str
    type: str
    modified_at: Optional[str] = None
    size: Optional[int] = None
    mime_type: Optional[str] = None
    metadata: Optional[FolderMetadata] = None
    poster_image: Optional[str] = None
    share_key: Optional[str] = None

    @property
    def is_folder(self) -> bool:
        return self.type == "folder"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "path": self.path,
            "modifiedAt": self.modified_at or "",
            "type": self.type,
        }
        if self.size:
            payload["size"] = self.size
        if self.mime_type:
            payload["mimeType"] = self.mime_type
        if self.metadata is not None:
            payload["metadata"] = self.metadata.to_dict()
        if self.poster_image:
            payload["posterImage"] = self.poster_image
        if self.share_key:
            payload["shareKey"] = self.share_key
        return payload


@dataclass
class DirectoryContents:
    current_path: str
    items: List[FileSystemItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "currentPath": self.current_path,
        }


class DirectoryBrowser(Protocol):
    """Anything able to list the contents of a virtual directory."""

    def browse_directory(self, path: str) -> DirectoryContents:
        """Return the listing for *path* (``""`` lists the roots)."""


def folder_to_item(record: FolderRecord) -> FileSystemItem:
    metadata: Optional[FolderMetadata] = None
    if record.original_url or record.url_broken or record.item_count > 0 or record.directory_size:
        metadata = FolderMetadata(
            folder_name=record.folder_name,
            name=record.name,
            original_url=record.original_url,
            url_broken=record.url_broken,
            items=record.item_count,
            directory_size=record.directory_size,
        )
    return FileSystemItem(
        name=record.name,
        path=record.path,
        type="folder",
        modified_at=record.modified_at,
        metadata=metadata,
        poster_image=record.poster_image,
        share_key=record.share_key,
    )


def audio_to_item(record: AudioFileRecord) -> FileSystemItem:
    return FileSystemItem(
        name=record.filename,
        path=record.path,
        type="audio",
        modified_at=record.modified_at,
        size=record.size,
        mime_type=record.mime_type,
        share_key=record.share_key,
    )


class BrowseService:
    """Answer directory listings from the store rather than the disk."""

    def __init__(self, repository: MediaRepository, registry: RootRegistry) -> None:
        self._repository = repository
        self._registry = registry

    def list_roots(self) -> DirectoryContents:
        items: List[FileSystemItem] = []
        for root in self._registry:
            try:
                info = os.stat(root.path)
            except OSError as error:
                LOGGER.debug("Omitting unavailable root %s: %s", root.path, error)
                continue
            if not os.path.isdir(root.path):
                continue
            items.append(
                FileSystemItem(
                    name=root.display_name,
                    path=root.slug,
                    type="folder",
                    modified_at=format_modified_time(info.st_mtime),
                )
            )
        items.sort(key=lambda item: item.name)
        return DirectoryContents(current_path="", items=items)

    def browse_directory(self, path: str) -> DirectoryContents:
        path = path.strip("/")
        if not path:
            return self.list_roots()

        folders = self._repository.list_folders_by_parent(path)
        audio_files = self._repository.list_audio_files_by_parent(path)
        items = [folder_to_item(folder) for folder in folders]
        items.extend(audio_to_item(audio) for audio in audio_files)
        return DirectoryContents(current_path=path, items=items)


__all__ = [
    "BrowseService",
    "DirectoryBrowser",
    "DirectoryContents",
    "FileSystemItem",
    "FolderMetadata",
    "audio_to_item",
    "folder_to_item",
]
