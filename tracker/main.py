from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from tracker.config import TrackerConfig, load_config, public_config, update_config
from tracker.entities import Document
from tracker.errors import BackendFailure, StorageError
from tracker.maintenance import ArchiveMaintenance
from tracker.storage.base import StorageProvider
from tracker.storage.registry import default_registry, get_active_provider_type, get_provider

logger = logging.getLogger(__name__)


class ConfigPayload(BaseModel):
    provider: str | None = None
    relational: dict[str, Any] | None = None
    embedded_file: dict[str, Any] | None = None
    remote_table: dict[str, Any] | None = None
    default_admin: dict[str, Any] | None = None
    default_staff: dict[str, Any] | None = None
    archive_sweep_interval_seconds: int | None = None
    log_level: str | None = None


class StaffPayload(Document):
    crew: list[str] | None = None
    pilots: list[str] | None = None
    monkey_leads: list[str] | None = None


def start_maintenance(app: FastAPI, config: TrackerConfig) -> None:
    previous = getattr(app.state, "maintenance", None)
    if previous is not None:
        previous.stop()
    maintenance = ArchiveMaintenance(default_registry, config.archive_sweep_interval_seconds)
    maintenance.start()
    app.state.maintenance = maintenance


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = load_config()
    logging.getLogger("tracker").setLevel(config.log_level.upper())
    try:
        default_registry.configure(config)
    except StorageError:
        logger.exception("Storage provider %s failed to start; requests will fail until reconfigured", config.provider)
    start_maintenance(app, config)
    yield
    app.state.maintenance.stop()
    default_registry.dispose()


app = FastAPI(title="Monkey Tracker", lifespan=lifespan)


@app.middleware("http")
async def disable_cache_for_api(request: Request, call_next):
    response = await call_next(request)
    if request.url.path.startswith("/api/"):
        response.headers["Cache-Control"] = "no-store, no-cache, max-age=0, must-revalidate"
        response.headers["Pragma"] = "no-cache"
    return response


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    if isinstance(exc, BackendFailure):
        logger.error("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def get_storage() -> StorageProvider:
    return get_provider()


def found(value: Any, detail: str) -> Any:
    if value is None or value is False:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    return value


@app.get("/api/health")
def health() -> dict[str, Any]:
    provider = get_provider()
    return {"ok": True, "provider": get_active_provider_type(), "storage": provider.describe()}


@app.get("/api/config")
def get_config() -> dict[str, Any]:
    return public_config(load_config())


@app.put("/api/config")
def put_config(request: Request, payload: ConfigPayload) -> dict[str, Any]:
    try:
        config = update_config(payload.model_dump(exclude_unset=True))
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid configuration") from exc
    default_registry.configure(config)
    start_maintenance(request.app, config)
    return public_config(config)


@app.get("/api/shows")
def list_shows(storage: StorageProvider = Depends(get_storage)) -> list[dict[str, Any]]:
    return [show.to_document() for show in storage.list_shows()]


@app.post("/api/shows", status_code=status.HTTP_201_CREATED)
def create_show(
    payload: dict[str, Any] = Body(...),
    storage: StorageProvider = Depends(get_storage),
) -> dict[str, Any]:
    return storage.create_show(payload).to_document()


@app.get("/api/shows/{show_id}")
def get_show(show_id: str, storage: StorageProvider = Depends(get_storage)) -> dict[str, Any]:
    return found(storage.get_show(show_id), "Show not found").to_document()


@app.put("/api/shows/{show_id}")
def update_show(
    show_id: str,
    updates: dict[str, Any] = Body(...),
    storage: StorageProvider = Depends(get_storage),
) -> dict[str, Any]:
    return found(storage.update_show(show_id, updates), "Show not found").to_document()


@app.delete("/api/shows/{show_id}")
def delete_show(show_id: str, storage: StorageProvider = Depends(get_storage)) -> dict[str, bool]:
    storage.delete_show(show_id)
    return {"ok": True}


@app.post("/api/shows/{show_id}/entries", status_code=status.HTTP_201_CREATED)
def add_entry(
    show_id: str,
    payload: dict[str, Any] = Body(...),
    storage: StorageProvider = Depends(get_storage),
) -> dict[str, Any]:
    return found(storage.add_entry(show_id, payload), "Show not found").to_document()


@app.put("/api/shows/{show_id}/entries/{entry_id}")
def update_entry(
    show_id: str,
    entry_id: str,
    updates: dict[str, Any] = Body(...),
    storage: StorageProvider = Depends(get_storage),
) -> dict[str, Any]:
    return found(storage.update_entry(show_id, entry_id, updates), "Entry not found").to_document()


@app.delete("/api/shows/{show_id}/entries/{entry_id}")
def delete_entry(show_id: str, entry_id: str, storage: StorageProvider = Depends(get_storage)) -> dict[str, bool]:
    found(storage.delete_entry(show_id, entry_id), "Entry not found")
    return {"ok": True}


@app.post("/api/shows/{show_id}/archive")
def archive_show(show_id: str, storage: StorageProvider = Depends(get_storage)) -> dict[str, Any]:
    return found(storage.archive_show_now(show_id), "Show not found").to_document()


@app.get("/api/archive")
def list_archived_shows(storage: StorageProvider = Depends(get_storage)) -> list[dict[str, Any]]:
    return [show.to_document() for show in storage.list_archived_shows()]


@app.get("/api/archive/{show_id}")
def get_archived_show(show_id: str, storage: StorageProvider = Depends(get_storage)) -> dict[str, Any]:
    return found(storage.get_archived_show(show_id), "Archived show not found").to_document()


@app.get("/api/staff")
def get_staff(storage: StorageProvider = Depends(get_storage)) -> dict[str, Any]:
    return storage.get_staff().to_document()


@app.put("/api/staff")
def put_staff(
    payload: StaffPayload,
    storage: StorageProvider = Depends(get_storage),
) -> dict[str, Any]:
    return storage.replace_staff(payload.model_dump(by_alias=True, exclude_unset=True)).to_document()
