"""Catalog browsing: paginated release listing and single-release views."""

import logging

from .config import DEFAULT_LIST_TAKE
from .db import Database
from .models import ReleaseDetail
from .telemetry import TelemetryEmitter

logger = logging.getLogger(__name__)


class CatalogService:
    def __init__(self, db: Database, telemetry: TelemetryEmitter):
        self.db = db
        self.telemetry = telemetry

    def list_releases(
        self,
        search: str | None = None,
        creator_id: str | None = None,
        skip: int = 0,
        take: int = DEFAULT_LIST_TAKE,
        user_id: str | None = None,
        request_id: str | None = None,
    ) -> dict:
        """Newest-first page of releases, each with its tracks in running order."""
        page = self.db.list_releases(search=search, creator_id=creator_id, skip=skip, take=take)
        releases = [
            ReleaseDetail(**release.model_dump(), tracks=self.db.list_tracks(release.id))
            for release in page["releases"]
        ]

        summary = {
            "skip": skip,
            "take": take,
            "search": search,
            "creator_id": creator_id,
            "result_count": len(releases),
        }
        self.telemetry.audit(
            "catalog.releases.listed",
            metadata=summary,
            actor_user_id=user_id,
            request_id=request_id,
        )
        self.telemetry.analytics("catalog.releases.listed", summary, user_id=user_id, request_id=request_id)

        return {"releases": releases, "pagination": page["pagination"]}

    def get_release(
        self,
        release_id: str,
        user_id: str | None = None,
        request_id: str | None = None,
    ) -> ReleaseDetail | None:
        """Returns None for an unknown id; nothing is emitted in that case."""
        release = self.db.get_release_detail(release_id)
        if release is None:
            logger.debug(f"Release {release_id} not found")
            return None

        metadata = {"creator_id": release.creator_id, "track_count": len(release.tracks)}
        self.telemetry.audit(
            "catalog.release.viewed",
            metadata=metadata,
            actor_user_id=user_id,
            target=release.id,
            request_id=request_id,
        )
        self.telemetry.analytics(
            "catalog.release.viewed",
            metadata,
            user_id=user_id,
            target=release.id,
            request_id=request_id,
        )
        return release
