"""In-process bus carrying catalog write events to their subscribers."""

import logging
from typing import Callable

from .models import MutationEvent

logger = logging.getLogger(__name__)

MutationHandler = Callable[[MutationEvent], None]


class MutationBus:
    """Synchronous publish/subscribe for Release and ReleaseTrack writes.

    Handlers run on the writer's call stack after the write has committed,
    so they must stay cheap (an enqueue, not a reindex).
    """

    def __init__(self):
        self._handlers: list[MutationHandler] = []

    def subscribe(self, handler: MutationHandler):
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: MutationHandler):
        if handler in self._handlers:
            self._handlers.remove(handler)

    def publish(self, event: MutationEvent):
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                # The write already committed; a failing subscriber must not undo it.
                logger.error(
                    f"Mutation handler failed for {event.model} {event.action}: {e}",
                    exc_info=True,
                )
