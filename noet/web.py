from __future__ import annotations

import logging
import os
import time
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import Body, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import attachments, repo, reorder, trash, versions
from .config import Settings, load_settings
from .errors import NoetError, ValidationError
from .markdown import NoteRenderer
from .middleware import BodySizeLimitMiddleware, RateLimitMiddleware, SecurityHeadersMiddleware
from .schemas import (
    AttachmentUploadOut,
    EntityOut,
    MoveRequest,
    NoteCreate,
    NoteOut,
    NoteSearchPage,
    NoteSummary,
    ReorderRequest,
    StoragePathRequest,
    SuccessOut,
    VersionSummary,
)
from .storage import FileStore

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


def _memory_usage() -> dict:
    usage: dict = {"pid": os.getpid()}
    if os.name == "posix":
        import resource

        usage["maxRss"] = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    return usage


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    store = FileStore(settings.notes_path)
    renderer = NoteRenderer()
    started = time.monotonic()

    app = FastAPI(title="Noet", version=API_VERSION)
    app.state.settings = settings
    app.state.store = store
    app.state.renderer = renderer

    app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_body_bytes)
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.rate_limit_max,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def _startup() -> None:
        store.base_path.mkdir(parents=True, exist_ok=True)
        logger.info("Noet backend ready (environment=%s, notes=%s)", settings.environment, store.base_path)

    # ---- error rendering ----

    @app.exception_handler(NoetError)
    async def _noet_error(request: Request, exc: NoetError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
        return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled %s on %s %s:\n%s",
            type(exc).__name__,
            request.method,
            request.url.path,
            "".join(traceback.format_exception(exc)),
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    def _with_html(user_id: str, note: dict) -> dict:
        attachments_url = f"/api/{user_id}/notes/{note['id']}/attachments/"
        return {**note, "html": renderer.render(note.get("content", ""), attachments_url)}

    # ---- service ----

    @app.get("/api/health")
    def health() -> dict:
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "noet-backend",
            "version": API_VERSION,
            "port": settings.port,
            "host": settings.host,
            "environment": settings.environment,
            "uptime": round(time.monotonic() - started, 3),
            "memory": _memory_usage(),
            "notesPath": str(store.base_path),
        }

    @app.get("/api/config")
    def client_config(request: Request) -> dict:
        server = request.scope.get("server") or (settings.host, settings.port)
        actual_host = request.url.hostname or settings.host
        actual_port = request.url.port or server[1]
        return {
            "notesPath": str(store.base_path),
            "maxFileSize": settings.max_upload_bytes,
            "allowedFileTypes": attachments.ALLOWED_EXTENSIONS,
            "server": {
                "backendUrl": f"http://{actual_host}:{actual_port}",
                "actualPort": actual_port,
                "configuredPort": settings.port,
                "environment": settings.environment,
            },
        }

    @app.post("/api/storage/path")
    def set_storage_path(body: StoragePathRequest) -> dict:
        if not body.path:
            raise ValidationError("Path is required")
        store.set_base_path(Path(body.path))
        return {"success": True, "path": str(store.base_path)}

    @app.post("/api/storage/validate")
    def validate_storage_path(body: StoragePathRequest) -> dict:
        if not body.path:
            raise ValidationError("Path is required")
        path = Path(body.path).expanduser()
        if not path.exists():
            return {"valid": False, "errors": ["Path does not exist"], "path": body.path}
        if not path.is_dir():
            return {"valid": False, "errors": ["Path is not a directory"], "path": body.path}
        if not os.access(path, os.W_OK):
            return {"valid": False, "errors": ["Permission denied - path is not writable"], "path": body.path}
        return {
            "valid": True,
            "path": body.path,
            "writable": True,
            "noteCount": repo.count_notes(FileStore(path)),
        }

    # ---- notes ----

    @app.get("/api/{user_id}/notes", response_model=list[NoteSummary])
    def list_notes(
        user_id: str,
        starred: bool | None = None,
        archived: bool | None = None,
        deleted: bool = False,
        since: str | None = None,
        search: str | None = None,
        notebook: str | None = None,
        folder: str | None = None,
        tag: str | None = None,
    ) -> list[dict]:
        filters = repo.NoteFilters(
            starred=starred,
            archived=archived,
            deleted=deleted,
            since=since,
            search=search,
            notebook=notebook,
            folder=folder,
            tag=tag,
        )
        return repo.list_notes(store, user_id, filters)

    @app.get("/api/{user_id}/notes/search", response_model=NoteSearchPage)
    def search_notes(
        user_id: str,
        search: str | None = None,
        tag: str | None = None,
        notebook: str | None = None,
        folder: str | None = None,
        sortBy: str = "updated",
        sortOrder: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> dict:
        filters = repo.NoteFilters(search=search, tag=tag, notebook=notebook, folder=folder)
        return repo.search_notes(store, user_id, filters, sort_by=sortBy, sort_order=sortOrder, limit=limit, offset=offset)

    @app.post("/api/{user_id}/notes", response_model=NoteOut)
    def create_note(user_id: str, body: NoteCreate) -> dict:
        return _with_html(user_id, repo.create_note(store, user_id, body.model_dump()))

    @app.get("/api/{user_id}/notes/{note_id}", response_model=NoteOut)
    def get_note(user_id: str, note_id: str) -> dict:
        return _with_html(user_id, repo.read_note(store, user_id, note_id))

    @app.put("/api/{user_id}/notes/{note_id}", response_model=NoteOut)
    def update_note(user_id: str, note_id: str, body: dict[str, Any] = Body(...)) -> dict:
        note = repo.update_note(store, user_id, note_id, body, max_versions=settings.max_versions_per_note)
        return _with_html(user_id, note)

    @app.delete("/api/{user_id}/notes/{note_id}", response_model=SuccessOut)
    def delete_note(user_id: str, note_id: str) -> dict:
        trash.soft_delete(store, user_id, note_id)
        return {"success": True, "message": "Note moved to trash"}

    @app.post("/api/{user_id}/notes/{note_id}/restore", response_model=SuccessOut)
    def restore_note(user_id: str, note_id: str) -> dict:
        trash.restore(store, user_id, note_id)
        return {"success": True, "message": "Note restored from trash"}

    @app.delete("/api/{user_id}/notes/{note_id}/permanent", response_model=SuccessOut)
    def purge_note(user_id: str, note_id: str) -> dict:
        trash.purge(store, user_id, note_id)
        return {"success": True, "message": "Note permanently deleted"}

    # ---- attachments ----

    @app.post("/api/{user_id}/notes/{note_id}/attachments", response_model=AttachmentUploadOut)
    def upload_attachment(user_id: str, note_id: str, file: UploadFile = File(...)) -> dict:
        record = attachments.save_attachment(
            store,
            user_id,
            note_id,
            file.filename or "",
            file.content_type,
            file.file,
            settings.max_upload_bytes,
        )
        return {"attachment": record, "relativePath": f"./attachments/{record['filename']}"}

    @app.get("/api/{user_id}/notes/{note_id}/attachments/{filename}")
    def download_attachment(user_id: str, note_id: str, filename: str) -> FileResponse:
        path = attachments.attachment_path(store, user_id, note_id, filename)
        media_type, disposition = attachments.download_headers(filename)
        return FileResponse(
            path,
            media_type=media_type,
            headers={"Content-Disposition": disposition, "X-Content-Type-Options": "nosniff"},
        )

    @app.delete("/api/{user_id}/notes/{note_id}/attachments/{filename}", response_model=SuccessOut, response_model_exclude_none=True)
    def remove_attachment(user_id: str, note_id: str, filename: str) -> dict:
        attachments.delete_attachment(store, user_id, note_id, filename)
        return {"success": True}

    # ---- version history ----

    @app.get("/api/{user_id}/notes/{note_id}/versions", response_model=list[VersionSummary])
    def list_versions(user_id: str, note_id: str) -> list[dict]:
        repo.read_note(store, user_id, note_id)
        return [versions.summarize(v) for v in versions.list_versions(store, user_id, note_id)]

    @app.get("/api/{user_id}/notes/{note_id}/versions/{version_id}")
    def get_version(user_id: str, note_id: str, version_id: str) -> dict:
        return versions.get_version(store, user_id, note_id, version_id)

    @app.delete("/api/{user_id}/notes/{note_id}/versions/{version_id}", response_model=SuccessOut)
    def delete_version(user_id: str, note_id: str, version_id: str) -> dict:
        versions.delete_version(store, user_id, note_id, version_id)
        return {"success": True, "message": "Version deleted successfully"}

    @app.post("/api/{user_id}/notes/{note_id}/restore/{version_id}", response_model=NoteOut)
    def restore_version(user_id: str, note_id: str, version_id: str) -> dict:
        note = versions.restore_version(store, user_id, note_id, version_id, settings.max_versions_per_note)
        return _with_html(user_id, note)

    # ---- tags / notebooks / folders ----

    @app.get("/api/{user_id}/{kind}", response_model=list[EntityOut])
    def list_entities(user_id: str, kind: str) -> list[dict]:
        return repo.list_entities(store, user_id, kind)

    @app.post("/api/{user_id}/{kind}", response_model=EntityOut)
    def create_entity(user_id: str, kind: str, body: dict[str, Any] = Body(...)) -> dict:
        return repo.create_entity(store, user_id, kind, body)

    @app.post("/api/{user_id}/{kind}/reorder")
    def reorder_entities(user_id: str, kind: str, body: ReorderRequest) -> dict:
        reorder.reorder(store, user_id, kind, body.sourceId, body.targetId, body.position)
        return {"success": True}

    @app.post("/api/{user_id}/{kind}/{entity_id}/move", response_model=EntityOut)
    def move_entity(user_id: str, kind: str, entity_id: str, body: MoveRequest) -> dict:
        reorder.move_entity(store, user_id, kind, entity_id, body.parentId)
        return repo.get_entity(store, user_id, kind, entity_id)

    @app.get("/api/{user_id}/{kind}/{entity_id}", response_model=EntityOut)
    def get_entity(user_id: str, kind: str, entity_id: str) -> dict:
        return repo.get_entity(store, user_id, kind, entity_id)

    @app.put("/api/{user_id}/{kind}/{entity_id}", response_model=EntityOut)
    def update_entity(user_id: str, kind: str, entity_id: str, body: dict[str, Any] = Body(...)) -> dict:
        return repo.update_entity(store, user_id, kind, entity_id, body)

    @app.delete("/api/{user_id}/{kind}/{entity_id}", response_model=SuccessOut, response_model_exclude_none=True)
    def delete_entity(user_id: str, kind: str, entity_id: str) -> dict:
        repo.delete_entity(store, user_id, kind, entity_id, policy=settings.delete_policy)
        return {"success": True}

    return app
