"""Day-bucketed aggregates over download timestamps."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .storage import MediaRepository


@dataclass
class AudioDayStat:
    date: str
    count: int


@dataclass
class AudioStats:
    total: int = 0
    days: List[AudioDayStat] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "days": [{"date": day.date, "count": day.count} for day in self.days],
        }


@dataclass
class SourceDayStat:
    date: str
    sources: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.sources)


@dataclass
class SourcesStats:
    total: int = 0
    days: List[SourceDayStat] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "days": [
                {"date": day.date, "count": day.count, "sources": list(day.sources)}
                for day in self.days
            ],
        }


class StatsService:
    def __init__(self, repository: MediaRepository) -> None:
        self._repository = repository

    def audio_stats(self) -> AudioStats:
        """Count audio files per day of ``downloaded_at``."""

        rows = self._repository.fetch_all(
            """
            SELECT DATE(downloaded_at) AS date, COUNT(*) AS count
            FROM audio_files
            WHERE downloaded_at IS NOT NULL
            GROUP BY date
            ORDER BY date
            """,
            action="stats.audio_by_day",
            table="audio_files",
        )
        stats = AudioStats()
        for row in rows:
            if row["date"] is None:
                continue
            day = AudioDayStat(date=row["date"], count=int(row["count"]))
            stats.total += day.count
            stats.days.append(day)
        return stats

    def sources_stats(self) -> SourcesStats:
        """List source folders by the day their first file was downloaded."""

        rows = self._repository.fetch_all(
            """
            SELECT DATE(s.first_seen) AS date, f.name AS source_name
            FROM (
                SELECT source_path, MIN(downloaded_at) AS first_seen
                FROM audio_files
                WHERE downloaded_at IS NOT NULL AND source_path IS NOT NULL
                GROUP BY source_path
            ) AS s
            JOIN folders AS f ON f.path = s.source_path
            ORDER BY date, source_name
            """,
            action="stats.sources_by_day",
            table="audio_files,folders",
        )
        stats = SourcesStats()
        by_date: Dict[str, SourceDayStat] = {}
        for row in rows:
            date = row["date"]
            if date is None:
                continue
            day = by_date.get(date)
            if day is None:
                day = SourceDayStat(date=date)
                by_date[date] = day
                stats.days.append(day)
            day.sources.append(row["source_name"])
            stats.total += 1
        return stats


__all__ = ["AudioDayStat", "AudioStats", "SourceDayStat", "SourcesStats", "StatsService"]
