"""
Progress Tracker — publish/subscribe on top of the Progress Store.

  update()        store update → ProgressEvent → every subscriber callback
  subscribe()     register a callback, returns an unsubscribe function
  create_stream() async iterator of ProgressEvents for one caller:
                    1. current state replayed immediately (if any)
                    2. live events in production order
                    3. ends `close_delay` seconds after a terminal event

A stream holds only a subscription. Closing it (client disconnect,
generator aclose) unsubscribes and never touches the processing task.

Callbacks run synchronously inside update(); a callback that raises is
logged and skipped so the remaining subscribers still get the event.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Optional

from docpipe.core.errors import DocumentNotFoundError
from docpipe.progress.store import ProgressStore
from docpipe.schemas.documents import ProgressEvent, ProgressState, ProgressUpdate

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]

DEFAULT_CLOSE_DELAY = 1.0


class ProgressTracker:

    def __init__(self, store: ProgressStore, close_delay: float = DEFAULT_CLOSE_DELAY) -> None:
        self._store = store
        self._close_delay = close_delay
        self._subscribers: dict[str, list[ProgressCallback]] = {}

    @property
    def store(self) -> ProgressStore:
        return self._store

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def initialize(self, document_id: str, filename: str) -> ProgressState:
        return self._store.initialize(document_id, filename)

    def get_state(self, document_id: str) -> Optional[ProgressState]:
        return self._store.get(document_id)

    def exists(self, document_id: str) -> bool:
        return self._store.exists(document_id)

    def remove(self, document_id: str) -> bool:
        self._subscribers.pop(document_id, None)
        return self._store.remove(document_id)

    def subscriber_count(self, document_id: str) -> int:
        return len(self._subscribers.get(document_id, ()))

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def update(self, document_id: str, update: ProgressUpdate) -> ProgressEvent:
        """
        Update the store and notify every current subscriber.

        Raises:
            DocumentNotFoundError: no live state for document_id.
        """
        state = self._store.update(document_id, update)
        if state is None:
            raise DocumentNotFoundError(document_id)

        event = ProgressEvent.from_state(state)

        # Copy: callbacks may unsubscribe while we iterate
        for callback in list(self._subscribers.get(document_id, ())):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Progress subscriber failed | doc=%s stage=%s",
                    document_id, event.stage.value,
                )

        logger.debug(
            "ProgressTracker | doc=%s stage=%s progress=%d status=%s",
            document_id, event.stage.value, event.progress, event.status.value,
        )
        return event

    # ------------------------------------------------------------------
    # Subscribe
    # ------------------------------------------------------------------

    def subscribe(self, document_id: str, callback: ProgressCallback) -> Callable[[], None]:
        """Register `callback`; the returned function removes exactly that registration."""
        self._subscribers.setdefault(document_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(document_id)
            if callbacks is None:
                return
            try:
                callbacks.remove(callback)
            except ValueError:
                return
            if not callbacks:
                del self._subscribers[document_id]

        return unsubscribe

    async def create_stream(
        self,
        document_id: str,
        keepalive: Optional[float] = None,
    ) -> AsyncIterator[Optional[ProgressEvent]]:
        """
        Yield ProgressEvents for one document until it reaches a terminal state.

        With `keepalive`, None is yielded whenever no event arrived within
        that many seconds so the transport can write a heartbeat.
        """
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        unsubscribe = self.subscribe(document_id, queue.put_nowait)

        try:
            # Replay-last: a late subscriber sees the current state first
            current = self._store.get(document_id)
            if current is not None:
                event = ProgressEvent.from_state(current)
                yield event
                if event.is_terminal:
                    await asyncio.sleep(self._close_delay)
                    return

            while True:
                try:
                    if keepalive:
                        event = await asyncio.wait_for(queue.get(), timeout=keepalive)
                    else:
                        event = await queue.get()
                except asyncio.TimeoutError:
                    yield None
                    continue

                yield event

                if event.is_terminal:
                    # Let the transport flush the final frame before closing
                    await asyncio.sleep(self._close_delay)
                    return
        finally:
            unsubscribe()
            logger.debug("ProgressTracker | stream closed doc=%s", document_id)
