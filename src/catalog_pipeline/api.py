"""Catalog Pipeline REST API: FastAPI wrapper around search, browsing and refresh scheduling."""

from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parents[2] / ".env")

from fastapi import FastAPI, Header, HTTPException, Query
from pydantic import BaseModel, Field

from .catalog import CatalogService
from .config import (
    DEFAULT_AUDIT_LIMIT,
    DEFAULT_LIST_TAKE,
    DEFAULT_REGION,
    DEFAULT_RELEASE_TAKE,
    DEFAULT_TRACK_TAKE,
    MAX_AUDIT_LIMIT,
    MAX_TAKE,
    get_reindex_service_url,
)
from .db import Database
from .models import SearchParams
from .pipeline import RefreshScheduler
from .reindex_client import ReindexClient
from .search import CatalogSearchService
from .signals import SignalRepository
from .telemetry import AnalyticsService, AuditService, TelemetryEmitter
from .watcher import MutationWatcher

db: Database
audit_service: AuditService
telemetry: TelemetryEmitter
scheduler: RefreshScheduler
watcher: MutationWatcher
search_service: CatalogSearchService
catalog_service: CatalogService


@asynccontextmanager
async def lifespan(app: FastAPI):
    global db, audit_service, telemetry, scheduler, watcher, search_service, catalog_service
    db = Database()
    audit_service = AuditService(db)
    telemetry = TelemetryEmitter(audit_service, AnalyticsService(audit_service))
    scheduler = RefreshScheduler(telemetry)

    dispatcher = ReindexClient().dispatch if get_reindex_service_url() else None
    watcher = MutationWatcher(db.bus, scheduler, db, dispatcher=dispatcher)
    watcher.install()
    watcher.start()

    search_service = CatalogSearchService(db, SignalRepository(db), telemetry)
    catalog_service = CatalogService(db, telemetry)
    yield

    await watcher.stop()
    await telemetry.flush()
    telemetry.close()
    db.close()


app = FastAPI(title="Catalog Pipeline", version="0.1.0", lifespan=lifespan)


# --- Search ---


@app.get("/api/catalog/search")
async def search_catalog(
    query: str,
    take: int = Query(default=DEFAULT_RELEASE_TAKE, ge=1, le=MAX_TAKE),
    track_take: int = Query(default=DEFAULT_TRACK_TAKE, ge=1, le=MAX_TAKE, alias="trackTake"),
    region: str = DEFAULT_REGION,
    personalized: bool = False,
    user_id: str | None = Query(default=None, alias="userId"),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    params = SearchParams(
        query=query,
        release_take=take,
        track_take=track_take,
        region=region,
        personalized=personalized,
        user_id=user_id,
        request_id=request_id,
    )
    results = await search_service.search(params)
    return results.model_dump(mode="json")


# --- Releases ---


@app.get("/api/catalog/releases")
async def list_releases(
    search: str | None = None,
    creator_id: str | None = Query(default=None, alias="creatorId"),
    skip: int = Query(default=0, ge=0),
    take: int = Query(default=DEFAULT_LIST_TAKE, ge=1, le=MAX_TAKE),
    user_id: str | None = Query(default=None, alias="userId"),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    page = catalog_service.list_releases(
        search=search,
        creator_id=creator_id,
        skip=skip,
        take=take,
        user_id=user_id,
        request_id=request_id,
    )
    return {
        "releases": [release.model_dump(mode="json") for release in page["releases"]],
        "pagination": page["pagination"],
    }


@app.get("/api/catalog/releases/{release_id}")
async def get_release(
    release_id: str,
    user_id: str | None = Query(default=None, alias="userId"),
    request_id: str | None = Header(default=None, alias="x-request-id"),
):
    release = catalog_service.get_release(release_id, user_id=user_id, request_id=request_id)
    if release is None:
        raise HTTPException(status_code=404, detail="Release not found")
    return release.model_dump(mode="json")


# --- Audit ---


@app.get("/api/audit/logs")
async def audit_logs(limit: int = Query(default=DEFAULT_AUDIT_LIMIT, ge=1, le=MAX_AUDIT_LIMIT)):
    return {"logs": await audit_service.latest(limit)}


# --- Refresh pipeline ---


class RebuildRequest(BaseModel):
    regions: list[str] = Field(default_factory=list)


@app.post("/api/catalog/rebuild")
async def rebuild_catalog(req: RebuildRequest):
    scheduled = watcher.trigger_full_rebuild(req.regions)
    return {"status": "success", "scheduled": scheduled}


@app.get("/api/catalog/refreshes/pending")
async def pending_refreshes():
    return {"pending": scheduler.pending_count}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
