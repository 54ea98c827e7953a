"""Deduplicated in-memory queue of pending signal refreshes."""

import logging
import threading
from datetime import datetime, timezone

from .config import DEFAULT_REGION
from .models import RefreshReason, RefreshTask
from .telemetry import TelemetryEmitter

logger = logging.getLogger(__name__)


def normalize_regions(regions: list[str] | None) -> list[str]:
    """Deduplicate and sort region codes; an empty selection means global."""
    cleaned = sorted({region for region in regions or [] if region})
    return cleaned or [DEFAULT_REGION]


def refresh_key(release_id: str, regions: list[str], reason: str) -> str:
    return f"{release_id}:{','.join(normalize_regions(regions))}:{reason}"


class RefreshScheduler:
    """Pending refresh tasks keyed by (release, sorted regions, reason).

    Scheduling the same key again replaces the earlier task. The queue is
    process-local and is lost on restart; a full rebuild recovers from that.
    """

    def __init__(self, telemetry: TelemetryEmitter):
        self.telemetry = telemetry
        self._tasks: dict[str, RefreshTask] = {}
        self._lock = threading.Lock()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._tasks)

    def schedule_regional_refresh(
        self,
        release_id: str,
        reason: RefreshReason,
        regions: list[str] | None = None,
        triggered_by: str | None = None,
    ) -> RefreshTask:
        normalized = normalize_regions(regions)
        task = RefreshTask(
            release_id=release_id,
            regions=normalized,
            reason=reason,
            scheduled_at=datetime.now(timezone.utc),
            triggered_by=triggered_by,
        )

        with self._lock:
            self._tasks[refresh_key(release_id, normalized, reason)] = task

        self.telemetry.analytics(
            "catalog.pipeline.refresh.scheduled",
            {"release_id": release_id, "regions": normalized, "reason": reason},
            user_id=triggered_by,
        )
        self.telemetry.audit(
            "catalog.pipeline.refresh.scheduled",
            metadata={"regions": normalized, "reason": reason},
            actor_user_id=triggered_by,
            actor_type="system",
            target=release_id,
        )
        return task

    def drain_scheduled_refreshes(self) -> list[RefreshTask]:
        """Remove and return every pending task in insertion order."""
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
        return tasks

    def process_scheduled_refreshes(self) -> list[RefreshTask]:
        """Drain the queue and report the batch; the caller dispatches it."""
        tasks = self.drain_scheduled_refreshes()
        if not tasks:
            return []

        logger.info(f"Dispatching {len(tasks)} catalog refresh task(s)")
        self.telemetry.analytics("catalog.pipeline.refresh.dispatched", {"count": len(tasks)})
        return tasks
