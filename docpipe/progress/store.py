"""
Progress Store — in-memory registry of live processing state.

Maps document_id → ProgressState. Pure state container: no I/O, no
notifications (ProgressTracker adds fan-out on top).

All operations are synchronous, so on the event loop each call is atomic:
two documents never contend, and updates to one document are applied in
call order. States handed out are copies; mutating them does not touch the
registry.

Terminal states (completed / failed) are dropped after `retention_seconds`
so the registry does not grow without bound; the persisted
ProcessingRecord remains the source of truth after that.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from docpipe.schemas.documents import (
    ProcessingStatus,
    ProgressState,
    ProgressUpdate,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 300.0


class ProgressStore:

    def __init__(self, retention_seconds: Optional[float] = DEFAULT_RETENTION_SECONDS) -> None:
        self._states: dict[str, ProgressState] = {}
        self._cleanup_handles: dict[str, asyncio.TimerHandle] = {}
        self._retention_seconds = retention_seconds

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def initialize(self, document_id: str, filename: str) -> ProgressState:
        """Create (or reset) the entry: stage=upload, progress=0, status=pending."""
        self._cancel_cleanup(document_id)
        state = ProgressState(document_id=document_id, filename=filename)
        self._states[document_id] = state
        logger.debug("ProgressStore | initialized doc=%s file=%s", document_id, filename)
        return state.model_copy(deep=True)

    def update(self, document_id: str, update: ProgressUpdate) -> Optional[ProgressState]:
        """
        Merge the explicitly-set fields of `update` into the current state.

        Returns the new state, or None when the document is unknown.
        """
        current = self._states.get(document_id)
        if current is None:
            return None

        changes = update.model_dump(exclude_unset=True)
        status = changes.get("status", current.status)

        if "progress" in changes and changes["progress"] is not None:
            progress = max(0, min(100, int(changes["progress"])))
            if status != ProcessingStatus.FAILED:
                progress = max(progress, current.progress)
            changes["progress"] = progress

        for key in ("stage", "status", "progress"):
            if key in changes and changes[key] is None:
                del changes[key]

        changes["updated_at"] = utcnow()
        new_state = current.model_copy(update=changes, deep=True)
        self._states[document_id] = new_state

        if new_state.is_terminal:
            self._schedule_cleanup(document_id)

        return new_state.model_copy(deep=True)

    def get(self, document_id: str) -> Optional[ProgressState]:
        state = self._states.get(document_id)
        return state.model_copy(deep=True) if state is not None else None

    def exists(self, document_id: str) -> bool:
        return document_id in self._states

    def remove(self, document_id: str) -> bool:
        self._cancel_cleanup(document_id)
        return self._states.pop(document_id, None) is not None

    # ------------------------------------------------------------------
    # Introspection / lifecycle
    # ------------------------------------------------------------------

    def get_all(self) -> list[ProgressState]:
        return [s.model_copy(deep=True) for s in self._states.values()]

    @property
    def size(self) -> int:
        return len(self._states)

    def clear(self) -> None:
        for handle in self._cleanup_handles.values():
            handle.cancel()
        self._cleanup_handles.clear()
        self._states.clear()

    def close(self) -> None:
        """Cancel pending expirations (application shutdown)."""
        for handle in self._cleanup_handles.values():
            handle.cancel()
        self._cleanup_handles.clear()

    # ------------------------------------------------------------------
    # Expiry of terminal states
    # ------------------------------------------------------------------

    def _schedule_cleanup(self, document_id: str) -> None:
        if not self._retention_seconds:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller): entry stays until removed explicitly
            return

        self._cancel_cleanup(document_id)
        self._cleanup_handles[document_id] = loop.call_later(
            self._retention_seconds, self._expire, document_id,
        )

    def _cancel_cleanup(self, document_id: str) -> None:
        handle = self._cleanup_handles.pop(document_id, None)
        if handle is not None:
            handle.cancel()

    def _expire(self, document_id: str) -> None:
        self._cleanup_handles.pop(document_id, None)
        state = self._states.get(document_id)
        if state is not None and state.is_terminal:
            del self._states[document_id]
            logger.debug("ProgressStore | expired doc=%s status=%s", document_id, state.status.value)
