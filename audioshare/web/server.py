"""FastAPI application serving the audio index and the media it points to."""

from __future__ import annotations

import contextlib
import contextvars
import logging
import sqlite3
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..services.browse import BrowseService, DirectoryContents
from ..services.cache import CachedBrowseService, DirectoryListingCache
from ..services.events import emit_db_event, emit_structured_event, emit_task_event
from ..services.indexer import IndexingError, LibraryIndexer
from ..services.naming import join_virtual_path
from ..services.playback import PlaybackService
from ..services.requests import (
    SourceRequestError,
    SourceRequestNotFoundError,
    SourceRequestService,
)
from ..services.roots import RootRegistry
from ..services.search import DEFAULT_LIMIT, MIN_QUERY_LENGTH, SearchService, empty_page
from ..services.stats import StatsService
from ..services.storage import AudioFileRecord, MediaRepository


LOGGER = logging.getLogger(__name__)

_BROWSE_COLLAPSE_DEPTH = 20
_PLAYBACK_LIMIT = 10
_DB_SLOW_WARNING_MS = 450.0

_MEDIA_TYPES: Dict[str, str] = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
    ".aac": "audio/aac",
    ".m4a": "audio/mp4",
    ".opus": "audio/opus",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "audio_share_request_id",
    default=None,
)
_JOB_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "audio_share_job_id",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    job_id = _JOB_ID_VAR.get()
    if job_id:
        context["job_id"] = str(job_id)
    return context


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        token = _REQUEST_ID_VAR.set(request_id)
        try:
            await self.app(scope, receive, send)
        finally:
            _REQUEST_ID_VAR.reset(token)


def _emit_repository_event(event_type: str, message: str, **kwargs: Any) -> None:
    context = dict(kwargs.pop("context", None) or {})
    context.update(_collect_correlation_context())
    duration_ms = kwargs.get("duration_ms")
    if event_type == "DB_QUERY":
        if duration_ms is not None and duration_ms >= _DB_SLOW_WARNING_MS:
            kwargs["level"] = logging.WARNING
        emit_db_event(message, context=context, **kwargs)
    else:
        emit_structured_event(event_type, message, context=context, **kwargs)


class PlayRecordPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    share_key: str = Field("", alias="shareKey")


class TagPayload(BaseModel):
    name: str
    color: str = ""


class SourceRequestCreatePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = ""
    submitted_url: str = Field("", alias="submittedUrl")
    image_url: Optional[str] = Field(None, alias="imageUrl")
    tags: List[TagPayload] = Field(default_factory=list)


class SourceRequestUpdatePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = ""
    image_url: Optional[str] = Field(None, alias="imageUrl")
    tags: List[TagPayload] = Field(default_factory=list)


class SourceRequestStatusPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    folder_share_key: Optional[str] = Field(None, alias="folderShareKey")


def _parse_int(value: Optional[str], default: int, *, minimum: int) -> int:
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _media_type(path: Path, fallback: str) -> str:
    return _MEDIA_TYPES.get(path.suffix.lower(), fallback)


def create_app(
    repository: MediaRepository,
    *,
    config: AppConfig,
    registry: Optional[RootRegistry] = None,
    indexer: Optional[LibraryIndexer] = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    if registry is None:
        registry = indexer.registry if indexer is not None else RootRegistry.from_config_string(config.audio_dirs)

    background_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="reindex")

    @contextlib.asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            background_executor.shutdown(wait=True, cancel_futures=True)

    app = FastAPI(
        title="Audio Share",
        description="Browse and stream an indexed audio library",
        lifespan=_lifespan,
    )
    configure_emitter = getattr(repository, "configure_event_emitter", None)
    if callable(configure_emitter):
        configure_emitter(_emit_repository_event)

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    listing_cache = DirectoryListingCache(config.cache_ttl)
    browser = CachedBrowseService(BrowseService(repository, registry), listing_cache)
    search_service = SearchService(repository)
    stats_service = StatsService(repository)
    playback_service = PlaybackService(repository)
    request_service = SourceRequestService(repository)
    if indexer is not None:
        indexer.add_completion_listener(browser.invalidate)

    app.state.config = config
    app.state.repository = repository
    app.state.registry = registry
    app.state.indexer = indexer
    app.state.listing_cache = listing_cache

    app.state.background_executor = background_executor
    app.state.reindex_job = None
    app.state.reindex_job_lock = threading.Lock()

    @app.exception_handler(sqlite3.Error)
    async def _database_error_handler(request: Request, error: sqlite3.Error) -> JSONResponse:
        LOGGER.error("Database error while handling %s %s: %s", request.method, request.url.path, error)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    def _lookup_audio(key: str) -> AudioFileRecord:
        record = repository.get_audio_file_by_share_key(key)
        if record is None:
            raise HTTPException(status_code=404, detail="Not found")
        return record

    def _resolve_file(virtual_path: str) -> Path:
        target = registry.resolve(virtual_path)
        if target is None or not target.is_file():
            raise HTTPException(status_code=404, detail="Not found")
        return target

    @app.get("/health")
    def health() -> Dict[str, Any]:
        try:
            repository.check_connection()
        except sqlite3.Error as error:
            LOGGER.error("Health check failed: %s", error)
            raise HTTPException(status_code=503, detail="Database unavailable") from error
        return {"status": "ok", "roots": len(registry)}

    def _browse(path: str) -> Dict[str, Any]:
        contents: DirectoryContents = browser.browse_directory(path)
        for _ in range(_BROWSE_COLLAPSE_DEPTH):
            if len(contents.items) != 1 or not contents.items[0].is_folder:
                break
            contents = browser.browse_directory(contents.items[0].path)
        return contents.to_dict()

    @app.get("/api/browse")
    def browse_roots() -> Dict[str, Any]:
        return _browse("")

    @app.get("/api/browse/{path:path}")
    def browse(path: str) -> Dict[str, Any]:
        return _browse(path)

    @app.get("/api/search")
    def search(
        q: str = "",
        limit: Optional[str] = None,
        offset: Optional[str] = None,
    ) -> Dict[str, Any]:
        if len(q) < MIN_QUERY_LENGTH:
            return empty_page(q).to_dict()
        page = search_service.search(
            q,
            limit=_parse_int(limit, DEFAULT_LIMIT, minimum=1),
            offset=_parse_int(offset, 0, minimum=0),
        )
        return page.to_dict()

    @app.get("/api/stats")
    def stats() -> Dict[str, Any]:
        return {
            "audio": stats_service.audio_stats().to_dict(),
            "sources": stats_service.sources_stats().to_dict(),
        }

    @app.post("/api/playback/record")
    def record_playback(payload: PlayRecordPayload) -> Dict[str, bool]:
        share_key = payload.share_key.strip()
        if not share_key:
            raise HTTPException(status_code=400, detail="shareKey is required")
        playback_service.record_play_event(share_key)
        return {"success": True}

    @app.get("/api/playback/recent")
    def playback_recent() -> Dict[str, Any]:
        tracks = playback_service.recently_played(_PLAYBACK_LIMIT)
        return {"tracks": [track.to_dict() for track in tracks]}

    @app.get("/api/playback/popular")
    def playback_popular() -> Dict[str, Any]:
        tracks = playback_service.popular(_PLAYBACK_LIMIT)
        return {"tracks": [track.to_dict() for track in tracks]}

    @app.get("/api/playback/new")
    def playback_new() -> Dict[str, Any]:
        tracks = playback_service.recently_added(_PLAYBACK_LIMIT)
        return {"tracks": [track.to_dict() for track in tracks]}

    @app.get("/api/audio/key/{key}")
    def stream_audio(key: str) -> FileResponse:
        record = _lookup_audio(key)
        if record.deleted:
            raise HTTPException(status_code=410, detail="Gone")
        target = _resolve_file(record.path)
        return FileResponse(
            target,
            media_type=_media_type(target, "application/octet-stream"),
            headers={"Cache-Control": "public, max-age=3600"},
        )

    @app.get("/api/audio/key/{key}/thumbnail")
    def audio_thumbnail(key: str) -> FileResponse:
        record = _lookup_audio(key)
        if not record.thumbnail:
            raise HTTPException(status_code=404, detail="No thumbnail")
        target = _resolve_file(join_virtual_path(record.parent_path, record.thumbnail))
        return FileResponse(
            target,
            media_type=_media_type(target, "image/jpeg"),
            headers={"Cache-Control": "public, max-age=86400"},
        )

    @app.get("/api/audio/key/{key}/meta")
    def audio_meta(key: str) -> JSONResponse:
        record = _lookup_audio(key)
        meta = {
            "title": record.title or "",
            "artist": record.artist or "",
            "uploadDate": record.upload_date or "",
            "webpageUrl": record.webpage_url or "",
            "description": record.description or "",
            "parentPath": record.parent_path or "",
            "thumbnail": bool(record.thumbnail),
            "deleted": record.deleted,
        }
        return JSONResponse(content=meta, headers={"Cache-Control": "no-cache"})

    @app.get("/api/folder/key/{key}/poster")
    def folder_poster(key: str) -> FileResponse:
        folder = repository.get_folder_by_share_key(key)
        if folder is None:
            raise HTTPException(status_code=404, detail="Not found")
        if not folder.poster_image:
            raise HTTPException(status_code=404, detail="No poster")
        target = _resolve_file(join_virtual_path(folder.path, folder.poster_image))
        return FileResponse(
            target,
            media_type=_media_type(target, "image/jpeg"),
            headers={"Cache-Control": "public, max-age=86400"},
        )

    @app.get("/api/requests")
    def list_requests() -> Dict[str, Any]:
        grouped = request_service.list_grouped()
        return {
            status_name: [request.to_dict() for request in requests]
            for status_name, requests in grouped.items()
        }

    @app.post("/api/requests", status_code=status.HTTP_201_CREATED)
    def create_request(payload: SourceRequestCreatePayload) -> Dict[str, Any]:
        try:
            created = request_service.create(
                payload.title,
                payload.submitted_url,
                image_url=payload.image_url,
                tags=[tag.model_dump() for tag in payload.tags],
            )
        except SourceRequestError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        return created.to_dict()

    @app.patch("/api/requests/{request_id}/status")
    def update_request_status(
        request_id: int, payload: SourceRequestStatusPayload
    ) -> Dict[str, bool]:
        try:
            request_service.update_status(request_id, payload.status, payload.folder_share_key)
        except SourceRequestNotFoundError as error:
            raise HTTPException(status_code=404, detail=str(error)) from error
        except SourceRequestError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        return {"success": True}

    @app.patch("/api/requests/{request_id}")
    def update_request(request_id: int, payload: SourceRequestUpdatePayload) -> Dict[str, bool]:
        try:
            request_service.update(
                request_id,
                payload.title,
                image_url=payload.image_url,
                tags=[tag.model_dump() for tag in payload.tags],
            )
        except SourceRequestNotFoundError as error:
            raise HTTPException(status_code=404, detail=str(error)) from error
        except SourceRequestError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        return {"success": True}

    @app.delete("/api/requests/{request_id}")
    def delete_request(request_id: int) -> Dict[str, bool]:
        try:
            request_service.delete(request_id)
        except SourceRequestNotFoundError as error:
            raise HTTPException(status_code=404, detail=str(error)) from error
        return {"success": True}

    def _run_reindex_job(job_id: str) -> None:
        token = _JOB_ID_VAR.set(job_id)
        try:
            result = indexer.rebuild_index()
        except IndexingError as error:
            LOGGER.error("Background reindex failed: %s", error)
        else:
            emit_task_event(
                result.status,
                "Background reindex finished",
                payload={"folders": result.folders, "audio_files": result.audio_files},
                context=_collect_correlation_context(),
            )
        finally:
            _JOB_ID_VAR.reset(token)

    @app.post("/api/reindex", status_code=status.HTTP_202_ACCEPTED)
    def trigger_reindex() -> Dict[str, Any]:
        if indexer is None:
            raise HTTPException(status_code=503, detail="Indexer is not configured")
        with app.state.reindex_job_lock:
            current: Optional[Tuple[str, Future]] = app.state.reindex_job
            if current is not None and not current[1].done():
                LOGGER.info("Reindex job %s is still running; request ignored", current[0])
                return {"status": "running", "jobId": current[0]}
            job_id = _new_correlation_id()
            future = background_executor.submit(_run_reindex_job, job_id)
            app.state.reindex_job = (job_id, future)
        LOGGER.info("Queued reindex job %s", job_id)
        return {"status": "queued", "jobId": job_id}

    return app


__all__ = ["create_app"]
