"""Substring search across folders and audio files."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .storage import MediaRepository


LOGGER = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MIN_QUERY_LENGTH = 2

_FOLDER_MATCH = "(name LIKE :pattern ESCAPE '\\' OR folder_name LIKE :pattern ESCAPE '\\')"
_AUDIO_MATCH = (
    "deleted = 0 AND (filename LIKE :pattern ESCAPE '\\' OR title LIKE :pattern ESCAPE '\\' "
    "OR meta_artist LIKE :pattern ESCAPE '\\' OR description LIKE :pattern ESCAPE '\\')"
)


@dataclass
class SearchResult:
    id: int
    name: str
    path: str
    type: str
    parent_path: Optional[str] = None
    size: Optional[int] = None
    mime_type: Optional[str] = None
    title: Optional[str] = None
    artist: Optional[str] = None
    description: Optional[str] = None
    webpage_url: Optional[str] = None
    original_url: Optional[str] = None
    item_count: Optional[int] = None
    directory_size: Optional[str] = None
    poster_image: Optional[str] = None
    modified_at: Optional[str] = None
    share_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "type": self.type,
        }
        optional = {
            "parentPath": self.parent_path,
            "size": self.size,
            "mimeType": self.mime_type,
            "title": self.title,
            "artist": self.artist,
            "description": self.description,
            "webpageUrl": self.webpage_url,
            "originalUrl": self.original_url,
            "itemCount": self.item_count,
            "directorySize": self.directory_size,
            "posterImage": self.poster_image,
            "modifiedAt": self.modified_at,
            "shareKey": self.share_key,
        }
        payload.update({key: value for key, value in optional.items() if value})
        return payload


@dataclass
class SearchPage:
    query: str
    limit: int
    offset: int
    total: int = 0
    results: List[SearchResult] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [result.to_dict() for result in self.results],
            "query": self.query,
            "count": self.count,
            "total": self.total,
            "offset": self.offset,
            "limit": self.limit,
        }


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def empty_page(query: str) -> SearchPage:
    """Page returned for queries too short to search."""

    return SearchPage(query=query, limit=DEFAULT_LIMIT, offset=0)


class SearchService:
    def __init__(self, repository: MediaRepository) -> None:
        self._repository = repository

    def search(self, query: str, limit: int = DEFAULT_LIMIT, offset: int = 0) -> SearchPage:
        """Return one page of matches plus the total number of matches.

        Folders match on their display or disk name; audio files match on
        filename, title, artist or description and are excluded once deleted.
        """

        if limit <= 0:
            limit = DEFAULT_LIMIT
        if offset < 0:
            offset = 0
        params = {"pattern": f"%{escape_like(query)}%"}

        total_row = self._repository.fetch_one(
            f"""
            SELECT (SELECT COUNT(*) FROM folders WHERE {_FOLDER_MATCH})
                 + (SELECT COUNT(*) FROM audio_files WHERE {_AUDIO_MATCH})
            """,
            params,
            action="search.count",
            table="folders,audio_files",
        )
        total = int(total_row[0]) if total_row else 0

        rows = self._repository.fetch_all(
            f"""
            SELECT id, name, path, 'folder' AS type, parent_path,
                   NULL AS size, NULL AS mime_type, NULL AS title, NULL AS artist,
                   NULL AS description, NULL AS webpage_url,
                   original_url, item_count, directory_size, poster_image,
                   modified_at, share_key
            FROM folders
            WHERE {_FOLDER_MATCH}

            UNION ALL

            SELECT id, COALESCE(NULLIF(title, ''), filename) AS name, path, 'audio' AS type,
                   parent_path, size, mime_type, title, meta_artist AS artist,
                   description, webpage_url,
                   NULL AS original_url, NULL AS item_count, NULL AS directory_size,
                   NULL AS poster_image, modified_at, share_key
            FROM audio_files
            WHERE {_AUDIO_MATCH}

            LIMIT :limit OFFSET :offset
            """,
            {**params, "limit": limit, "offset": offset},
            action="search.page",
            table="folders,audio_files",
        )
        results = [SearchResult(**dict(row)) for row in rows]
        LOGGER.debug("Search %r matched %d (page of %d)", query, total, len(results))
        return SearchPage(query=query, limit=limit, offset=offset, total=total, results=results)


__all__ = [
    "DEFAULT_LIMIT",
    "MIN_QUERY_LENGTH",
    "SearchPage",
    "SearchResult",
    "SearchService",
    "empty_page",
    "escape_like",
]
