"""Turns catalog writes into refresh tasks and periodically dispatches them"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from .config import REFRESH_INTERVAL_SECONDS
from .db import Database
from .events import MutationBus
from .models import MutationEvent, RefreshTask
from .pipeline import RefreshScheduler, normalize_regions

logger = logging.getLogger(__name__)

Dispatcher = Callable[[list[RefreshTask]], Awaitable[Any]]

WATCHED_MODELS = {
    "Release": "release-mutated",
    "ReleaseTrack": "track-mutated",
}


def _field(source: Any, name: str) -> Any:
    if isinstance(source, dict):
        return source.get(name)
    if source is None or isinstance(source, (list, tuple, str)):
        return None
    return getattr(source, name, None)


def _as_id(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def extract_release_ids(event: MutationEvent) -> list[str]:
    """Release ids touched by a write, preferring where, then data, then result."""
    where = event.args.get("where")
    data = event.args.get("data")
    result = event.result

    if event.model == "Release":
        for source in (where, data, result):
            release_id = _as_id(_field(source, "id"))
            if release_id:
                return [release_id]
        return []

    if event.model == "ReleaseTrack":
        for source in (where, data, result):
            release_id = _as_id(_field(source, "release_id"))
            if release_id:
                return [release_id]

        # Bulk writes can span several releases
        ids: dict[str, None] = {}
        if isinstance(result, (list, tuple)):
            for row in result:
                release_id = _as_id(_field(row, "release_id"))
                if release_id:
                    ids[release_id] = None
        return list(ids)

    return []


def extract_actor(event: MutationEvent) -> str | None:
    context = event.args.get("context") or {}
    user_id = _field(context, "user_id") or _field(context, "userId")
    return user_id if isinstance(user_id, str) else None


class MutationWatcher:
    """Subscribes to catalog writes and owns the periodic drain of the refresh queue."""

    def __init__(
        self,
        bus: MutationBus,
        scheduler: RefreshScheduler,
        db: Database,
        dispatcher: Dispatcher | None = None,
        interval_seconds: float = REFRESH_INTERVAL_SECONDS,
    ):
        self.bus = bus
        self.scheduler = scheduler
        self.db = db
        self.dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self._installed = False
        self._poller: asyncio.Task | None = None

    def install(self):
        """Subscribe to the mutation bus; repeated calls are no-ops."""
        if self._installed:
            return
        self.bus.subscribe(self.handle_mutation)
        self._installed = True

    def uninstall(self):
        if self._installed:
            self.bus.unsubscribe(self.handle_mutation)
            self._installed = False

    def handle_mutation(self, event: MutationEvent):
        reason = WATCHED_MODELS.get(event.model)
        if reason is None:
            return

        actor = extract_actor(event)
        for release_id in extract_release_ids(event):
            logger.debug(f"Scheduling index refresh for {release_id} after {event.model} {event.action}")
            self.scheduler.schedule_regional_refresh(
                release_id=release_id,
                reason=reason,
                triggered_by=actor,
            )

    def trigger_full_rebuild(self, regions: list[str] | None = None) -> int:
        """Schedule a manual-rebuild refresh for every release in the catalog."""
        normalized = normalize_regions(regions)
        release_ids = self.db.list_release_ids()
        for release_id in release_ids:
            self.scheduler.schedule_regional_refresh(
                release_id=release_id,
                reason="manual-rebuild",
                regions=normalized,
            )

        logger.info(f"Full rebuild scheduled {len(release_ids)} release(s) for regions {normalized}")
        self.scheduler.telemetry.analytics(
            "catalog.pipeline.rebuild.requested",
            {"regions": normalized, "release_count": len(release_ids)},
        )
        return len(release_ids)

    async def run_once(self) -> list[RefreshTask]:
        """Drain the queue and hand the batch to the dispatcher, if any."""
        tasks = self.scheduler.process_scheduled_refreshes()
        if tasks and self.dispatcher is not None:
            try:
                await self.dispatcher(tasks)
            except Exception as e:
                # Not re-queued; the next full rebuild picks these releases up.
                logger.error(f"Failed to dispatch {len(tasks)} refresh task(s): {e}", exc_info=True)
        return tasks

    async def refresh_loop(self):
        """Background loop that drains the refresh queue every interval"""
        logger.info(f"Starting catalog refresh loop ({self.interval_seconds}s interval)")

        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error(f"Error in catalog refresh loop: {e}", exc_info=True)

        except asyncio.CancelledError:
            logger.info("Catalog refresh loop cancelled")
            raise

    def start(self) -> asyncio.Task:
        if self._poller is None or self._poller.done():
            self._poller = asyncio.create_task(self.refresh_loop())
        return self._poller

    async def stop(self):
        if self._poller is None:
            return
        self._poller.cancel()
        try:
            await self._poller
        except asyncio.CancelledError:
            pass
        self._poller = None
