"""Upload state machine and in-flight bookkeeping."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable, List, Optional, Tuple

from . import config as config_mod
from .models import InvalidTransitionError, RecordingItem, UploadStatus
from .storage import NotFoundError, RecordingStore, StoreError
from .upload_client import (
    Endpoint,
    UploadClient,
    UploadError,
    UploadFailure,
    UploadOutcome,
    UploadSuccess,
)

_DISPATCHABLE = frozenset({UploadStatus.PENDING, UploadStatus.FAILED})
OUTCOME_WRITE_ATTEMPTS = 2


class DispatchError(RuntimeError):
    """Raised when a recording cannot be handed to the upload client."""


class EmptyTextError(DispatchError):
    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Recording {item_id} has no text; add a transcription before uploading")


class AlreadyInFlightError(DispatchError):
    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Recording {item_id} is already uploading")


def endpoint_from_config() -> Endpoint:
    return Endpoint.from_config(config_mod.load_config())


class UploadOrchestrator:
    """Move recordings through ``Pending/Failed -> Uploading -> Uploaded/Failed``.

    Each id appears in the in-flight queue at most once. An attempt is
    registered synchronously (status set to ``Uploading`` and id queued)
    before any network activity, and the id leaves the queue only after the
    outcome has been written to the store. There is no automatic retry.
    An item found ``Uploading`` without being queued is treated as an
    abandoned attempt and may be dispatched again.
    """

    def __init__(
        self,
        store: RecordingStore,
        client: Optional[UploadClient] = None,
        endpoint: Optional[Callable[[], Endpoint]] = None,
    ) -> None:
        self._store = store
        self._client = client or UploadClient()
        self._endpoint = endpoint or endpoint_from_config
        self._queue: List[str] = []
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._queue)

    @property
    def is_uploading(self) -> bool:
        with self._lock:
            return bool(self._queue)

    def upload(self, item_id: str) -> UploadOutcome:
        """Run one attempt for ``item_id`` and return its outcome."""

        item = self._dispatch(item_id)
        return self._attempt(item)

    def upload_in_background(self, item_id: str) -> threading.Thread:
        """Register the attempt now and let a daemon thread carry it out."""

        item = self._dispatch(item_id)
        thread = threading.Thread(
            target=self._attempt,
            args=(item,),
            name=f"upload-{item_id}",
            daemon=True,
        )
        thread.start()
        return thread

    def retry(self, item_id: str) -> UploadOutcome:
        """Start over: clear the attempt counter and error, then upload again."""

        item = self._dispatch(item_id, reset=True)
        return self._attempt(item)

    def upload_pending(self) -> List[Tuple[str, UploadOutcome]]:
        results: List[Tuple[str, UploadOutcome]] = []
        for item in self._store.by_status(UploadStatus.PENDING, UploadStatus.FAILED):
            try:
                results.append((item.id, self.upload(item.id)))
            except DispatchError as exc:
                logging.info("Skipping %s: %s", item.id, exc)
        return results

    def _dispatch(self, item_id: str, reset: bool = False) -> RecordingItem:
        with self._lock:
            if item_id in self._queue:
                raise AlreadyInFlightError(item_id)
            item = self._store.get(item_id)
            if item.status is UploadStatus.UPLOADING:
                # Not queued, so a previous outcome never reached the store.
                logging.info("Recording %s was left uploading; dispatching again", item_id)
            elif item.status not in _DISPATCHABLE:
                raise InvalidTransitionError(item.status, UploadStatus.UPLOADING)
            if not item.text.strip():
                logging.warning("Cannot upload recording without text: %s", item.filename)
                raise EmptyTextError(item_id)

            if reset:
                item.upload_attempts = 0
            item.last_error = None
            item.status = UploadStatus.UPLOADING
            item = self._store.update(item)
            self._queue.append(item_id)

        logging.info("Starting upload for %s (%s)", item.filename, item_id)
        return item

    def _attempt(self, item: RecordingItem) -> UploadOutcome:
        try:
            outcome = self._call_client(item)
            self._record(item, outcome)
            return outcome
        finally:
            with self._lock:
                if item.id in self._queue:
                    self._queue.remove(item.id)

    def _call_client(self, item: RecordingItem) -> UploadOutcome:
        try:
            endpoint = self._endpoint()
            return self._client.upload(item, self._store.resolve_blob_path(item), endpoint)
        except Exception as exc:
            logging.exception("Upload client raised for %s", item.id)
            return UploadFailure(UploadError(str(exc) or exc.__class__.__name__))

    def _record(self, item: RecordingItem, outcome: UploadOutcome) -> None:
        try:
            current = self._store.get(item.id)
        except NotFoundError:
            logging.warning("Recording %s was deleted while uploading; dropping outcome", item.id)
            return

        if isinstance(outcome, UploadSuccess):
            updated = replace(current, status=UploadStatus.UPLOADED, last_error=None)
            logging.info(
                "Uploaded %s (server id %s)", item.filename, outcome.response.recording_id or "-"
            )
        else:
            updated = replace(
                current,
                status=UploadStatus.FAILED,
                upload_attempts=current.upload_attempts + 1,
                last_error=outcome.message,
            )
            logging.warning("Upload failed for %s: %s", item.filename, outcome.message)

        for attempt in range(OUTCOME_WRITE_ATTEMPTS):
            try:
                self._store.update(updated)
                return
            except StoreError as exc:
                logging.warning(
                    "Could not record upload outcome for %s (try %d): %s", item.id, attempt + 1, exc
                )
        logging.error("Recording %s stays Uploading; it can be dispatched again", item.id)
