"""Audit and analytics sinks plus fire-and-forget emission."""

import asyncio
import concurrent.futures
import inspect
import logging
import threading
from typing import Any, Callable

from pydantic import BaseModel

from .db import Database
from .models import AuditEvent

logger = logging.getLogger(__name__)


class AnalyticsContext(BaseModel):
    user_id: str | None = None
    target: str | None = None
    request_id: str | None = None


class AuditService:
    """Durable audit log backed by the audit_log table."""

    def __init__(self, db: Database):
        self.db = db

    async def record_event(self, event: AuditEvent) -> None:
        self.db.insert_audit_event(event)

    async def latest(self, limit: int = 20) -> list[dict]:
        return self.db.latest_audit_events(limit)


class AnalyticsService:
    """Usage events, recorded through the audit log under an analytics.* name."""

    def __init__(self, audit_service: AuditService):
        self.audit_service = audit_service

    async def track(
        self,
        event: str,
        metadata: Any = None,
        context: AnalyticsContext | None = None,
    ) -> None:
        context = context or AnalyticsContext()
        await self.audit_service.record_event(
            AuditEvent(
                actor_user_id=context.user_id,
                actor_type="analytics",
                event=f"analytics.{event}",
                target=context.target,
                metadata=metadata,
                request_id=context.request_id,
            )
        )


class _BackgroundLoop:
    """An event loop on a daemon thread, started on first use."""

    def __init__(self, name: str):
        self.name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def submit(self, coro) -> concurrent.futures.Future:
        with self._lock:
            if self._loop is None:
                self._loop = asyncio.new_event_loop()
                self._thread = threading.Thread(target=self._loop.run_forever, name=self.name, daemon=True)
                self._thread.start()
            return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def close(self):
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = self._thread = None
        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        thread.join()
        loop.close()


class TelemetryEmitter:
    """Sends audit/analytics events without letting them block or fail the caller.

    Inside a running event loop each emission becomes a background task.
    Outside one (a mutation hook in a script, say) it is handed to a worker
    thread with its own loop. Either way failures are logged, never raised.
    """

    def __init__(self, audit_service: AuditService, analytics_service: AnalyticsService):
        self.audit_service = audit_service
        self.analytics_service = analytics_service
        self._pending: set[asyncio.Task] = set()
        self._threaded: set[concurrent.futures.Future] = set()
        self._threaded_lock = threading.Lock()
        self._worker = _BackgroundLoop("telemetry-emitter")

    def audit(
        self,
        event: str,
        *,
        metadata: Any = None,
        actor_user_id: str | None = None,
        actor_type: str = "api",
        target: str | None = None,
        request_id: str | None = None,
    ):
        payload = AuditEvent(
            actor_user_id=actor_user_id,
            actor_type=actor_type,
            event=event,
            target=target,
            metadata=metadata,
            request_id=request_id,
        )
        self._fire(event, lambda: self.audit_service.record_event(payload))

    def analytics(
        self,
        event: str,
        metadata: Any = None,
        *,
        user_id: str | None = None,
        target: str | None = None,
        request_id: str | None = None,
    ):
        context = AnalyticsContext(user_id=user_id, target=target, request_id=request_id)
        self._fire(event, lambda: self.analytics_service.track(event, metadata, context))

    @property
    def pending(self) -> int:
        with self._threaded_lock:
            threaded = len(self._threaded)
        return len(self._pending) + threaded

    async def flush(self):
        """Wait for every in-flight emission to finish, on either loop."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

        futures = self._threaded_snapshot()
        if futures:
            await asyncio.gather(*(asyncio.wrap_future(f) for f in futures), return_exceptions=True)
            self._forget(futures)

    def join(self, timeout: float | None = None):
        """Block until emissions handed to the worker thread have finished."""
        futures = self._threaded_snapshot()
        if futures:
            done, _ = concurrent.futures.wait(futures, timeout=timeout)
            self._forget(done)

    def close(self):
        """Stop the worker thread; emissions still queued on it are dropped."""
        self._worker.close()

    def _fire(self, event: str, send: Callable[[], Any]):
        try:
            result = send()
        except Exception as e:
            logger.warning(f"Telemetry emission failed for {event}: {e}")
            return

        if not inspect.isawaitable(result):
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            future = self._worker.submit(self._await(result))
            with self._threaded_lock:
                self._threaded.add(future)
            future.add_done_callback(lambda f: self._on_threaded_done(f, event))
            return

        task = loop.create_task(self._await(result), name=f"telemetry:{event}")
        self._pending.add(task)
        task.add_done_callback(lambda t: self._on_done(t, event))

    @staticmethod
    async def _await(awaitable):
        return await awaitable

    def _threaded_snapshot(self) -> list[concurrent.futures.Future]:
        with self._threaded_lock:
            return list(self._threaded)

    def _forget(self, futures):
        # wait() can return before done-callbacks have run
        with self._threaded_lock:
            self._threaded.difference_update(f for f in futures if f.done())

    def _on_done(self, task: asyncio.Task, event: str):
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Telemetry emission failed for {event}: {error}")

    def _on_threaded_done(self, future: concurrent.futures.Future, event: str):
        with self._threaded_lock:
            self._threaded.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning(f"Telemetry emission failed for {event}: {error}")
