"""Reviewer decisions on uploaded recordings."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Union

from .models import (
    REVIEWABLE_STATUSES,
    InvalidTransitionError,
    RecordingItem,
    UploadStatus,
    utcnow,
)
from .storage import RecordingStore

ItemRef = Union[RecordingItem, str]


class AuditReducer:
    """Apply approve/reject decisions. Each decision is one store update."""

    def __init__(self, store: RecordingStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def begin_review(self, item: ItemRef) -> RecordingItem:
        current = self._current(item)
        if current.status is not UploadStatus.UPLOADED:
            raise InvalidTransitionError(current.status, UploadStatus.AUDITING)
        current.status = UploadStatus.AUDITING
        return self._store.update(current)

    def approve(self, item: ItemRef, reviewer_id: str, notes: Optional[str] = None) -> RecordingItem:
        return self._decide(item, UploadStatus.APPROVED, reviewer_id, notes)

    def reject(self, item: ItemRef, reviewer_id: str, notes: Optional[str] = None) -> RecordingItem:
        return self._decide(item, UploadStatus.REJECTED, reviewer_id, notes)

    def _decide(
        self,
        item: ItemRef,
        decision: UploadStatus,
        reviewer_id: str,
        notes: Optional[str],
    ) -> RecordingItem:
        current = self._current(item)
        if current.status not in REVIEWABLE_STATUSES:
            raise InvalidTransitionError(current.status, decision)
        current.status = decision
        current.audited_by = reviewer_id
        current.audit_date = self._clock()
        current.audit_notes = notes.strip() if notes and notes.strip() else None
        return self._store.update(current)

    def _current(self, item: ItemRef) -> RecordingItem:
        item_id = item.id if isinstance(item, RecordingItem) else item
        return self._store.get(item_id)
