"""JSON backed persistence for recordings and their audio blobs."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .config import APP_DIR
from .models import (
    DIALECTS,
    EDITABLE_STATUSES,
    InvalidTransitionError,
    RecordingItem,
    UploadStatus,
)

RECORDINGS_DIR = APP_DIR / "recordings"
METADATA_FILENAME = "recordings_metadata.json"
INTERRUPTED_ERROR = "interrupted"

_IMMUTABLE_FIELDS = ("filename", "duration", "created_at")
_ANNOTATION_FIELDS = ("text", "dialect")
_AUDIT_FIELDS = ("audited_by", "audit_date", "audit_notes")
_DECISIONS = frozenset({UploadStatus.APPROVED, UploadStatus.REJECTED})


class StoreError(RuntimeError):
    """Raised when something goes wrong while accessing the store."""


class DuplicateIDError(StoreError):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"Recording with id {item_id} already exists")
        self.item_id = item_id


class NotFoundError(StoreError):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"Recording with id {item_id} not found")
        self.item_id = item_id


class RecordingStore:
    """Own the recording metadata file and the audio blobs it points at.

    The whole collection is rewritten on every mutation. Writes go to a
    temporary file that replaces the metadata file in one step, so a reader
    sees either the previous collection or the new one. A single lock
    serialises every mutation together with its write, which keeps concurrent
    uploads of different items from losing each other's updates.
    """

    def __init__(self, root: Optional[Path] = None, metadata_filename: str = METADATA_FILENAME) -> None:
        self.root = Path(root) if root is not None else RECORDINGS_DIR
        self.metadata_path = self.root / metadata_filename
        self._items: Dict[str, RecordingItem] = {}
        self._lock = threading.RLock()
        self.root.mkdir(parents=True, exist_ok=True)
        self._load()

    # -- loading -----------------------------------------------------------------

    def _load(self) -> None:
        if not self.metadata_path.exists():
            return
        try:
            payload = json.loads(self.metadata_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            self._quarantine(exc)
            return
        if not isinstance(payload, list):
            self._quarantine(ValueError("metadata is not a list"))
            return

        for entry in payload:
            try:
                item = RecordingItem.from_dict(entry)
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                logging.warning("Skipping unreadable recording entry %r: %s", entry, exc)
                continue
            if item.id in self._items:
                logging.warning("Skipping duplicate recording entry %s", item.id)
                continue
            self._items[item.id] = item

        self._reconcile()

    def _quarantine(self, exc: Exception) -> None:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        target = self.metadata_path.with_name(f"{self.metadata_path.name}.corrupt-{stamp}")
        try:
            self.metadata_path.replace(target)
        except OSError as move_exc:
            logging.error("Could not quarantine corrupt metadata %s: %s", self.metadata_path, move_exc)
        else:
            logging.error("Metadata file was unreadable (%s); moved it to %s", exc, target)

    def _reconcile(self) -> None:
        stuck = [item for item in self._items.values() if item.status is UploadStatus.UPLOADING]
        if not stuck:
            return
        for item in stuck:
            item.status = UploadStatus.FAILED
            item.last_error = INTERRUPTED_ERROR
            logging.info("Recording %s was left uploading; marked as failed", item.id)
        try:
            self._persist()
        except StoreError as exc:
            logging.warning("Could not save reconciled recordings: %s", exc)

    # -- persistence -------------------------------------------------------------

    def _persist(self) -> None:
        data = json.dumps(
            [item.to_dict() for item in self._items.values()],
            indent=2,
            ensure_ascii=False,
        )
        fd, tmp_name = tempfile.mkstemp(prefix=".recordings-", suffix=".json", dir=self.root)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.metadata_path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise StoreError(f"Failed to write {self.metadata_path}: {exc}") from exc

    def _commit(self, item_id: str, item: Optional[RecordingItem]) -> None:
        """Apply one change and write it, restoring the previous state on failure."""

        previous = dict(self._items)
        if item is None:
            self._items.pop(item_id, None)
        else:
            self._items[item_id] = item
        try:
            self._persist()
        except StoreError:
            self._items = previous
            raise

    # -- public API --------------------------------------------------------------

    def create(self, item: RecordingItem) -> RecordingItem:
        with self._lock:
            if item.id in self._items:
                raise DuplicateIDError(item.id)
            self._commit(item.id, replace(item))
        return replace(item)

    def get(self, item_id: str) -> RecordingItem:
        with self._lock:
            try:
                return replace(self._items[item_id])
            except KeyError:
                raise NotFoundError(item_id) from None

    def update(self, item: RecordingItem) -> RecordingItem:
        with self._lock:
            current = self._items.get(item.id)
            if current is None:
                raise NotFoundError(item.id)
            for name in _IMMUTABLE_FIELDS:
                if getattr(current, name) != getattr(item, name):
                    raise StoreError(f"Field {name!r} of recording {item.id} cannot change")
            if not current.status.can_transition_to(item.status):
                raise InvalidTransitionError(current.status, item.status)
            _check_locked_fields(current, item)
            self._commit(item.id, replace(item))
        return replace(item)

    def edit(
        self,
        item_id: str,
        text: Optional[str] = None,
        dialect: Optional[str] = None,
        phonetic_transcription: Optional[str] = None,
    ) -> RecordingItem:
        """Change the user supplied annotations of a recording.

        Text and dialect are locked once an upload has started; phonetic
        notes stay editable.
        """

        with self._lock:
            item = self.get(item_id)
            if (text is not None or dialect is not None) and item.status not in EDITABLE_STATUSES:
                raise StoreError(
                    f"Recording {item_id} is {item.status.value}; text and dialect can no longer change"
                )
            if dialect is not None and dialect not in DIALECTS:
                raise StoreError(f"Unsupported dialect: {dialect}")
            if text is not None:
                item.text = text
            if dialect is not None:
                item.dialect = dialect
            if phonetic_transcription is not None:
                item.phonetic_transcription = phonetic_transcription
            return self.update(item)

    def delete(self, item_id: str) -> bool:
        """Remove a recording and its blob. Returns False when nothing was stored."""

        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                return False
            self._commit(item_id, None)
            blob = self.resolve_blob_path(item)
            try:
                blob.unlink(missing_ok=True)
            except OSError as exc:
                logging.warning("Failed to remove audio file %s: %s", blob, exc)
        return True

    def list(self) -> List[RecordingItem]:
        with self._lock:
            return [replace(item) for item in self._items.values()]

    def by_status(self, *statuses: UploadStatus) -> List[RecordingItem]:
        wanted = set(statuses)
        return [item for item in self.list() if item.status in wanted]

    def resolve_blob_path(self, item: RecordingItem) -> Path:
        return self.root / item.filename

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items


def count_by_status(items: Iterable[RecordingItem]) -> Dict[UploadStatus, int]:
    counts = {status: 0 for status in UploadStatus}
    for item in items:
        counts[item.status] += 1
    return counts


def _check_locked_fields(current: RecordingItem, item: RecordingItem) -> None:
    """Text and dialect change only while editable; audit fields only with a decision."""

    if current.status not in EDITABLE_STATUSES:
        for name in _ANNOTATION_FIELDS:
            if getattr(current, name) != getattr(item, name):
                raise StoreError(
                    f"Recording {item.id} is {current.status.value}; {name} can no longer change"
                )
    deciding = item.status in _DECISIONS and current.status is not item.status
    if not deciding:
        for name in _AUDIT_FIELDS:
            if getattr(current, name) != getattr(item, name):
                raise StoreError(
                    f"Field {name!r} of recording {item.id} is set only by an audit decision"
                )
