"""Play-event recording and the aggregates derived from it."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .storage import MediaRepository


LOGGER = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
REPEAT_WINDOW = "-5 minutes"


@dataclass
class PlaybackResult:
    path: str
    filename: str
    share_key: Optional[str] = None
    title: Optional[str] = None
    artist: Optional[str] = None
    parent_path: Optional[str] = None
    parent_folder_name: Optional[str] = None
    audio_image: Optional[str] = None
    poster_image: Optional[str] = None
    play_count: int = 0
    last_played: Optional[str] = None
    downloaded_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "filename": self.filename,
            "shareKey": self.share_key,
            "title": self.title,
            "artist": self.artist,
            "parentPath": self.parent_path,
            "parentFolderName": self.parent_folder_name,
            "audioImage": self.audio_image,
            "posterImage": self.poster_image,
            "playCount": self.play_count,
            "lastPlayed": self.last_played,
            "downloadedAt": self.downloaded_at,
        }


_AGGREGATE_SELECT = """
    SELECT af.path, af.filename, af.share_key, af.title, af.meta_artist AS artist,
           af.parent_path, f.name AS parent_folder_name, af.thumbnail AS audio_image,
           f.poster_image, COUNT(*) AS play_count, MAX(pe.played_at) AS last_played,
           af.downloaded_at
    FROM play_events AS pe
    JOIN audio_files AS af ON af.id = pe.audio_file_id
    LEFT JOIN folders AS f ON f.path = af.parent_path
    GROUP BY pe.audio_file_id
"""


def _clamp_limit(limit: int) -> int:
    return limit if limit > 0 else DEFAULT_LIMIT


class PlaybackService:
    def __init__(self, repository: MediaRepository) -> None:
        self._repository = repository

    def record_play_event(self, share_key: str) -> bool:
        """Append a play event for the file behind *share_key*.

        Unknown keys are ignored, as is a repeat play of the same file within
        five minutes. Returns ``True`` when an event was written.
        """

        with self._repository.session() as connection:
            row = self._repository.execute(
                connection,
                "SELECT id FROM audio_files WHERE share_key = ?",
                (share_key,),
                action="play_events.lookup_audio",
                table="audio_files",
            ).fetchone()
            if row is None:
                LOGGER.debug("Ignoring play event for unknown share key %s", share_key)
                return False
            audio_id = int(row["id"])
            recent = self._repository.execute(
                connection,
                """
                SELECT COUNT(*) FROM play_events
                WHERE audio_file_id = ? AND played_at > datetime('now', ?)
                """,
                (audio_id, REPEAT_WINDOW),
                action="play_events.recent_check",
                table="play_events",
            ).fetchone()
            if recent is not None and int(recent[0]) > 0:
                return False
            self._repository.execute(
                connection,
                "INSERT INTO play_events (audio_file_id) VALUES (?)",
                (audio_id,),
                action="play_events.insert",
                table="play_events",
            )
        return True

    def _aggregate(self, order_by: str, limit: int, action: str) -> List[PlaybackResult]:
        rows = self._repository.fetch_all(
            f"{_AGGREGATE_SELECT} ORDER BY {order_by} LIMIT ?",
            (_clamp_limit(limit),),
            action=action,
            table="play_events",
        )
        return [PlaybackResult(**dict(row)) for row in rows]

    def recently_played(self, limit: int = DEFAULT_LIMIT) -> List[PlaybackResult]:
        return self._aggregate("last_played DESC", limit, "playback.recent")

    def popular(self, limit: int = DEFAULT_LIMIT) -> List[PlaybackResult]:
        return self._aggregate("play_count DESC, last_played DESC", limit, "playback.popular")

    def recently_added(self, limit: int = DEFAULT_LIMIT) -> List[PlaybackResult]:
        rows = self._repository.fetch_all(
            """
            SELECT af.path, af.filename, af.share_key, af.title, af.meta_artist AS artist,
                   af.parent_path, f.name AS parent_folder_name, af.thumbnail AS audio_image,
                   f.poster_image, af.downloaded_at
            FROM audio_files AS af
            LEFT JOIN folders AS f ON f.path = af.parent_path
            WHERE af.downloaded_at IS NOT NULL AND af.deleted = 0
            ORDER BY af.downloaded_at DESC
            LIMIT ?
            """,
            (_clamp_limit(limit),),
            action="playback.new",
            table="audio_files",
        )
        return [PlaybackResult(**dict(row)) for row in rows]


__all__ = ["PlaybackResult", "PlaybackService"]
