"""HTTP surface for the dashboard, built on FastAPI."""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, Form, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from .archive import ArchiveError, export_archive, purge_restore_backups, restore_archive
from .config import Settings
from .filesystem import format_bytes
from .models import BackupOutcome, BackupStatus, RestoreMode
from .storage import report_payload, storage_report
from .store import (
    ConfinedFileStore,
    IOFailureError,
    NotConfirmedError,
    NotFoundError,
    OutOfScopeError,
)
from .watcher import WatcherRegistry, format_sse

ERROR_STATUS = {
    OutOfScopeError: 403,
    NotConfirmedError: 400,
    ArchiveError: 400,
    NotFoundError: 404,
    IOFailureError: 500,
}


class FileWriteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    path: str
    content: str
    create_backup: bool = Field(default=True, alias="createBackup")
    executable: bool = False


class FileDeleteRequest(BaseModel):
    path: str
    confirmed: bool = False


def _backup_payload(outcome: BackupOutcome | None) -> str | None:
    if outcome is None or outcome.status is not BackupStatus.CREATED:
        return None
    return str(outcome.path)


def create_app(settings: Settings, registry: WatcherRegistry | None = None) -> FastAPI:
    """Build the application around one store and one watcher registry."""

    store = ConfinedFileStore(settings.root)
    registry = registry or WatcherRegistry(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        logger.info(f"Serving {store.root}")
        yield
        registry.close_all()

    app = FastAPI(title="claudedir", lifespan=lifespan)
    app.state.store = store
    app.state.registry = registry
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = (time.perf_counter() - started) * 1000
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed:.1f} ms)")
        return response

    for error_type, status in ERROR_STATUS.items():

        async def handle_error(request: Request, exc: Exception, status: int = status) -> JSONResponse:
            if status >= 500:
                logger.error(f"{request.method} {request.url.path} failed: {exc}")
            else:
                logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
            return JSONResponse({"error": str(exc)}, status_code=status)

        app.add_exception_handler(error_type, handle_error)

    app.get("/health")(lambda: {"status": "healthy"})

    @app.get("/api/files")
    def read_file(path: str = Query(...)) -> dict:
        content = store.read(path)
        return {"content": content, "path": path}

    @app.put("/api/files")
    def write_file(body: FileWriteRequest) -> dict:
        outcome = store.write(
            body.path,
            body.content,
            make_backup=body.create_backup,
            executable=body.executable,
        )
        return {"success": True, "path": body.path, "backup": _backup_payload(outcome)}

    @app.delete("/api/files")
    def delete_file(body: FileDeleteRequest) -> dict:
        store.delete(body.path, confirmed=body.confirmed)
        return {"success": True, "path": body.path}

    @app.get("/api/entries")
    def list_entries(
        path: str = Query(...),
        recursive: bool = False,
        suffix: str | None = None,
    ) -> dict:
        entries = store.list_entries(path, recursive=recursive)
        if suffix:
            entries = [entry for entry in entries if entry.name.endswith(suffix)]
        return {"path": path, "entries": [str(entry) for entry in entries]}

    @app.get("/api/stats")
    def file_stats(path: str = Query(...)) -> dict:
        stats = store.stat(path)
        return {
            "path": str(stats.path),
            "size": stats.size,
            "sizeHuman": format_bytes(stats.size),
            "lastModified": stats.modified.isoformat(),
            "isDirectory": stats.is_directory,
            "executable": stats.executable,
        }

    @app.get("/api/storage")
    def storage() -> dict:
        return report_payload(storage_report(store, settings))

    @app.get("/api/backup")
    def download_backup() -> Response:
        filename, data = export_archive(store, settings)
        return Response(
            content=data,
            media_type="application/gzip",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/backup")
    def upload_backup(
        file: UploadFile = File(...),
        mode: RestoreMode = Form(RestoreMode.MERGE),
    ) -> dict:
        data = file.file.read()
        report = restore_archive(store, settings, data, file.filename or "", mode)
        return report.to_payload()

    @app.delete("/api/backup")
    def purge_backups() -> dict:
        return {"success": True, "deleted": purge_restore_backups(store)}

    @app.get("/api/watch")
    async def watch() -> StreamingResponse:
        connection = registry.create_connection()

        async def stream() -> AsyncGenerator[str, None]:
            try:
                async for event in connection.events():
                    yield format_sse(event)
            finally:
                connection.close()

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Connection-Id": connection.id,
            },
        )

    return app
