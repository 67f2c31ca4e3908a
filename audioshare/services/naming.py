"""Helpers for slugs, virtual paths, share keys and timestamps."""

from __future__ import annotations

import base64
import re
import secrets
from datetime import datetime, timezone
from typing import Collection

__all__ = [
    "DEFAULT_SLUG",
    "format_epoch",
    "format_modified_time",
    "generate_share_key",
    "join_virtual_path",
    "parent_path",
    "slugify",
    "unique_slug",
    "utc_timestamp",
]

DEFAULT_SLUG = "audio"
SHARE_KEY_BYTES = 6


def slugify(value: str) -> str:
    """Return a URL-friendly representation of *value*."""

    value = value.lower()
    value = re.sub(r"\s+", "-", value)
    value = re.sub(r"[^a-z0-9-]", "", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return value or DEFAULT_SLUG


def unique_slug(name: str, existing: Collection[str]) -> str:
    """Return the slug for *name*, suffixed with ``-1``, ``-2``... when taken."""

    slug = slugify(name)
    candidate = slug
    counter = 1
    while candidate in existing:
        candidate = f"{slug}-{counter}"
        counter += 1
    return candidate


def join_virtual_path(parent: str, name: str) -> str:
    return f"{parent}/{name}" if parent else name


def parent_path(virtual_path: str) -> str:
    """Return *virtual_path* without its last segment (``""`` at the top level)."""

    head, separator, _ = virtual_path.rpartition("/")
    return head if separator else ""


def generate_share_key() -> str:
    """Return a short, URL-safe random token."""

    raw = secrets.token_bytes(SHARE_KEY_BYTES)
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def utc_timestamp(moment: datetime | None = None) -> str:
    """Return a sortable UTC timestamp with microsecond precision."""

    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def format_modified_time(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def format_epoch(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(int(epoch_seconds), tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")
