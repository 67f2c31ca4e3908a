"""Named filesystem roots exposed under stable slugs."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Iterator, List, Optional, Sequence

from .naming import unique_slug

LOGGER = logging.getLogger(__name__)

DEFAULT_ROOT_NAME = "Audio"
DEFAULT_ROOT_SLUG = "audio"


@dataclass(frozen=True)
class RootDirectory:
    path: Path
    display_name: str
    slug: str


def default_root(cwd: Optional[Path] = None) -> RootDirectory:
    base = cwd if cwd is not None else Path.cwd()
    return RootDirectory(
        path=base / "public" / "audio",
        display_name=DEFAULT_ROOT_NAME,
        slug=DEFAULT_ROOT_SLUG,
    )


def _split_entry(entry: str) -> Optional[tuple[str, str]]:
    raw_path, separator, raw_name = entry.partition(":")
    raw_path = raw_path.strip()
    if not raw_path:
        return None
    name = raw_name.strip() if separator else ""
    if not name:
        name = os.path.basename(raw_path.rstrip("/\\")) or raw_path
    return raw_path, name


def parse_root_config(value: str, *, cwd: Optional[Path] = None) -> List[RootDirectory]:
    """Parse ``"path[:Name],path[:Name]"`` into ordered roots with unique slugs.

    Empty entries are skipped. When nothing usable remains a single default
    root at ``./public/audio`` is returned.
    """

    roots: List[RootDirectory] = []
    taken: set[str] = set()
    for entry in (value or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        parsed = _split_entry(entry)
        if parsed is None:
            LOGGER.warning("Ignoring root entry without a path: %r", entry)
            continue
        raw_path, name = parsed
        slug = unique_slug(name, taken)
        taken.add(slug)
        roots.append(RootDirectory(path=Path(raw_path), display_name=name, slug=slug))

    if not roots:
        fallback = default_root(cwd)
        LOGGER.info("No audio roots configured; using default root %s", fallback.path)
        return [fallback]
    return roots


class RootRegistry:
    """Ordered, immutable collection of roots with slug lookups."""

    def __init__(self, roots: Sequence[RootDirectory]) -> None:
        self._roots = tuple(roots)
        self._by_slug: Dict[str, RootDirectory] = {}
        for root in self._roots:
            if root.slug in self._by_slug:
                raise ValueError(f"Duplicate root slug '{root.slug}'")
            self._by_slug[root.slug] = root

    @classmethod
    def from_config_string(cls, value: str, *, cwd: Optional[Path] = None) -> "RootRegistry":
        return cls(parse_root_config(value, cwd=cwd))

    def __iter__(self) -> Iterator[RootDirectory]:
        return iter(self._roots)

    def __len__(self) -> int:
        return len(self._roots)

    @property
    def roots(self) -> tuple[RootDirectory, ...]:
        return self._roots

    def get(self, slug: str) -> Optional[RootDirectory]:
        return self._by_slug.get(slug)

    def resolve(self, virtual_path: str) -> Optional[Path]:
        """Map ``slug/relative/path`` to a physical path inside its root.

        Returns ``None`` for unknown slugs and for paths escaping the root.
        """

        slug, _, relative = virtual_path.strip("/").partition("/")
        root = self._by_slug.get(slug)
        if root is None:
            return None
        relative_path = PurePosixPath(relative) if relative else PurePosixPath()
        if relative_path.is_absolute() or ".." in relative_path.parts:
            return None
        base = root.path.resolve()
        candidate = (base / Path(*relative_path.parts)).resolve() if relative_path.parts else base
        try:
            candidate.relative_to(base)
        except ValueError:
            return None
        return candidate


__all__ = ["RootDirectory", "RootRegistry", "default_root", "parse_root_config"]
