"""Tracking of user-submitted requests to add new sources."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .storage import MediaRepository


LOGGER = logging.getLogger(__name__)

REQUEST_STATUSES = ("requested", "downloading", "indexing", "added", "rejected")

_COLUMNS = (
    "id, submitted_url, canonical_id, title, image_url, status, tags, "
    "folder_share_key, created_at, updated_at"
)


class SourceRequestError(RuntimeError):
    """Raised when a source request payload or transition is invalid."""


class SourceRequestNotFoundError(SourceRequestError):
    """Raised when no request exists with the given identifier."""


@dataclass
class Tag:
    name: str
    color: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "color": self.color}


@dataclass
class SourceRequest:
    id: int
    submitted_url: str
    title: str
    status: str
    created_at: str
    updated_at: str
    canonical_id: Optional[str] = None
    image_url: Optional[str] = None
    tags: List[Tag] = field(default_factory=list)
    folder_share_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "submittedUrl": self.submitted_url,
            "title": self.title,
            "status": self.status,
            "tags": [tag.to_dict() for tag in self.tags],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.canonical_id is not None:
            payload["canonicalId"] = self.canonical_id
        if self.image_url is not None:
            payload["imageUrl"] = self.image_url
        if self.folder_share_key is not None:
            payload["folderShareKey"] = self.folder_share_key
        return payload


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def normalize_tags(raw_tags: Optional[Iterable[Any]]) -> List[Tag]:
    """Coerce ``[{"name": ..., "color": ...}]`` into :class:`Tag` objects."""

    tags: List[Tag] = []
    for item in raw_tags or ():
        if isinstance(item, Tag):
            tags.append(item)
            continue
        if not isinstance(item, Mapping):
            raise SourceRequestError("Tags must be objects with a name and a color")
        name = str(item.get("name") or "").strip()
        if not name:
            raise SourceRequestError("Tag name is required")
        tags.append(Tag(name=name, color=str(item.get("color") or "").strip()))
    return tags


def _decode_tags(raw: Optional[str]) -> List[Tag]:
    try:
        payload = json.loads(raw or "[]")
        return normalize_tags(payload if isinstance(payload, list) else [])
    except (json.JSONDecodeError, SourceRequestError):
        return []


def _request_from_row(row: Mapping[str, Any]) -> SourceRequest:
    data = dict(row)
    data["tags"] = _decode_tags(data.get("tags"))
    return SourceRequest(**data)


class SourceRequestService:
    def __init__(self, repository: MediaRepository) -> None:
        self._repository = repository

    def list_requests(self) -> List[SourceRequest]:
        rows = self._repository.fetch_all(
            f"SELECT {_COLUMNS} FROM source_requests ORDER BY created_at DESC, id DESC",
            action="source_requests.list",
            table="source_requests",
        )
        return [_request_from_row(row) for row in rows]

    def list_grouped(self) -> Dict[str, List[SourceRequest]]:
        """Return every request, newest first, bucketed by status."""

        grouped: Dict[str, List[SourceRequest]] = {status: [] for status in REQUEST_STATUSES}
        for request in self.list_requests():
            bucket = grouped.get(request.status)
            if bucket is None:
                LOGGER.warning("Request %s has unknown status %r", request.id, request.status)
                continue
            bucket.append(request)
        return grouped

    def get(self, request_id: int) -> SourceRequest:
        row = self._repository.fetch_one(
            f"SELECT {_COLUMNS} FROM source_requests WHERE id = ?",
            (request_id,),
            action="source_requests.get",
            table="source_requests",
        )
        if row is None:
            raise SourceRequestNotFoundError(f"Request {request_id} does not exist")
        return _request_from_row(row)

    def create(
        self,
        title: str,
        submitted_url: str,
        image_url: Optional[str] = None,
        tags: Optional[Iterable[Any]] = None,
    ) -> SourceRequest:
        title = (title or "").strip()
        submitted_url = (submitted_url or "").strip()
        if not title:
            raise SourceRequestError("Title is required")
        if not submitted_url:
            raise SourceRequestError("Submitted URL is required")
        normalized = normalize_tags(tags)
        now = _now()
        _, request_id = self._repository.execute_write(
            """
            INSERT INTO source_requests (submitted_url, title, image_url, tags, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                submitted_url,
                title,
                image_url,
                json.dumps([tag.to_dict() for tag in normalized]),
                now,
                now,
            ),
            action="source_requests.create",
            table="source_requests",
        )
        LOGGER.info("Created source request %s for %s", request_id, submitted_url)
        return SourceRequest(
            id=int(request_id or 0),
            submitted_url=submitted_url,
            title=title,
            status="requested",
            created_at=now,
            updated_at=now,
            image_url=image_url,
            tags=normalized,
        )

    def update_status(
        self, request_id: int, status: str, folder_share_key: Optional[str] = None
    ) -> None:
        if status not in REQUEST_STATUSES:
            raise SourceRequestError(f"Invalid status '{status}'")
        rowcount, _ = self._repository.execute_write(
            """
            UPDATE source_requests
            SET status = ?, folder_share_key = ?, updated_at = ?
            WHERE id = ?
            """,
            (status, folder_share_key, _now(), request_id),
            action="source_requests.update_status",
            table="source_requests",
        )
        if rowcount == 0:
            raise SourceRequestNotFoundError(f"Request {request_id} does not exist")

    def update(
        self,
        request_id: int,
        title: str,
        image_url: Optional[str] = None,
        tags: Optional[Iterable[Any]] = None,
    ) -> None:
        title = (title or "").strip()
        if not title:
            raise SourceRequestError("Title is required")
        normalized = normalize_tags(tags)
        rowcount, _ = self._repository.execute_write(
            """
            UPDATE source_requests
            SET title = ?, image_url = ?, tags = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                title,
                image_url,
                json.dumps([tag.to_dict() for tag in normalized]),
                _now(),
                request_id,
            ),
            action="source_requests.update",
            table="source_requests",
        )
        if rowcount == 0:
            raise SourceRequestNotFoundError(f"Request {request_id} does not exist")

    def delete(self, request_id: int) -> None:
        rowcount, _ = self._repository.execute_write(
            "DELETE FROM source_requests WHERE id = ?",
            (request_id,),
            action="source_requests.delete",
            table="source_requests",
        )
        if rowcount == 0:
            raise SourceRequestNotFoundError(f"Request {request_id} does not exist")


__all__ = [
    "REQUEST_STATUSES",
    "SourceRequest",
    "SourceRequestError",
    "SourceRequestNotFoundError",
    "SourceRequestService",
    "Tag",
    "normalize_tags",
]
