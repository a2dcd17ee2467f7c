import json
import threading

import httpx

from wusutra.models import InvalidTransitionError, UploadStatus
from wusutra.storage import StoreError
from wusutra.upload_client import Endpoint, UploadClient, UploadFailure, UploadSuccess
from wusutra.uploader import AlreadyInFlightError, EmptyTextError, UploadOrchestrator


class Server:
    """Scriptable mock transport handler."""

    def __init__(self, status_code=201, payload=None):
        self.status_code = status_code
        self.payload = payload if payload is not None else {"success": True, "recordingId": "abc"}
        self.calls = 0
        self.observed_status = []
        self.on_request = None

    def __call__(self, request):
        self.calls += 1
        if self.on_request is not None:
            self.on_request(request)
        return httpx.Response(self.status_code, content=json.dumps(self.payload).encode())


def _orchestrator(store, server, endpoint):
    client = UploadClient(transport=httpx.MockTransport(server))
    return UploadOrchestrator(store, client, endpoint=lambda: endpoint)


def test_successful_upload_marks_item_uploaded(store, add_item, endpoint):
    item = add_item(text="啥个物事", dialect="jianghuai")
    server = Server(201, {"success": True, "recordingId": "abc"})
    orchestrator = _orchestrator(store, server, endpoint)

    outcome = orchestrator.upload(item.id)

    assert isinstance(outcome, UploadSuccess)
    assert outcome.response.recording_id == "abc"
    stored = store.get(item.id)
    assert stored.status is UploadStatus.UPLOADED
    assert stored.last_error is None
    assert orchestrator.in_flight == ()
    assert not orchestrator.is_uploading


def test_item_is_uploading_while_request_is_outstanding(store, add_item, endpoint):
    item = add_item()
    server = Server()
    orchestrator = _orchestrator(store, server, endpoint)
    seen = []
    server.on_request = lambda request: seen.append((store.get(item.id).status, orchestrator.in_flight))

    orchestrator.upload(item.id)

    assert seen == [(UploadStatus.UPLOADING, (item.id,))]


def test_server_error_marks_item_failed(store, add_item, endpoint):
    item = add_item()
    orchestrator = _orchestrator(store, Server(500, {"detail": "boom"}), endpoint)

    outcome = orchestrator.upload(item.id)

    assert isinstance(outcome, UploadFailure)
    stored = store.get(item.id)
    assert stored.status is UploadStatus.FAILED
    assert stored.upload_attempts == 1
    assert "Server error (code: 500)" in stored.last_error
    assert orchestrator.in_flight == ()


def test_failed_upload_without_retry_keeps_counting(store, add_item, endpoint):
    item = add_item()
    orchestrator = _orchestrator(store, Server(503), endpoint)
    orchestrator.upload(item.id)
    orchestrator.upload(item.id)
    assert store.get(item.id).upload_attempts == 2


def test_retry_resets_counters_then_uploads(store, add_item, endpoint):
    item = add_item()
    server = Server(500)
    orchestrator = _orchestrator(store, server, endpoint)
    orchestrator.upload(item.id)
    assert store.get(item.id).status is UploadStatus.FAILED

    server.status_code = 200
    seen = []
    server.on_request = lambda request: seen.append(store.get(item.id))
    outcome = orchestrator.retry(item.id)

    assert isinstance(outcome, UploadSuccess)
    assert seen[0].upload_attempts == 0
    assert seen[0].last_error is None
    assert seen[0].status is UploadStatus.UPLOADING
    assert store.get(item.id).status is UploadStatus.UPLOADED


def test_failed_retry_counts_from_zero(store, add_item, endpoint):
    item = add_item()
    orchestrator = _orchestrator(store, Server(500), endpoint)
    orchestrator.upload(item.id)
    orchestrator.upload(item.id)
    orchestrator.retry(item.id)
    assert store.get(item.id).upload_attempts == 1


def test_empty_text_is_refused_before_any_request(store, add_item, endpoint):
    item = add_item(text="   \n")
    server = Server()
    orchestrator = _orchestrator(store, server, endpoint)

    try:
        orchestrator.upload(item.id)
    except EmptyTextError:
        pass
    else:
        raise AssertionError("Expected EmptyTextError")

    stored = store.get(item.id)
    assert stored.status is UploadStatus.PENDING
    assert stored.last_error is None
    assert server.calls == 0
    assert orchestrator.in_flight == ()


def test_uploaded_item_cannot_be_dispatched_again(store, add_item, endpoint):
    item = add_item()
    orchestrator = _orchestrator(store, Server(), endpoint)
    orchestrator.upload(item.id)
    try:
        orchestrator.upload(item.id)
    except InvalidTransitionError:
        pass
    else:
        raise AssertionError("Uploaded items must not be re-dispatched")


def test_duplicate_dispatch_is_rejected_while_in_flight(store, add_item, endpoint):
    item = add_item()
    entered = threading.Event()
    release = threading.Event()
    server = Server(201, {"success": True, "recordingId": "abc"})

    def block(request):
        entered.set()
        release.wait(timeout=5)

    server.on_request = block
    orchestrator = _orchestrator(store, server, endpoint)

    thread = orchestrator.upload_in_background(item.id)
    assert entered.wait(timeout=5)
    try:
        orchestrator.upload(item.id)
    except AlreadyInFlightError:
        pass
    else:
        raise AssertionError("Expected AlreadyInFlightError")
    try:
        orchestrator.retry(item.id)
    except AlreadyInFlightError:
        pass
    else:
        raise AssertionError("Expected AlreadyInFlightError for retry")

    release.set()
    thread.join(timeout=5)

    assert server.calls == 1
    assert store.get(item.id).status is UploadStatus.UPLOADED
    assert orchestrator.in_flight == ()


def test_different_items_upload_concurrently(store, add_item, endpoint):
    items = [add_item(text=f"clip {n}") for n in range(4)]
    orchestrator = _orchestrator(store, Server(), endpoint)

    threads = [orchestrator.upload_in_background(item.id) for item in items]
    for thread in threads:
        thread.join(timeout=5)

    assert {store.get(item.id).status for item in items} == {UploadStatus.UPLOADED}


def test_client_exception_still_resolves_attempt(store, add_item, endpoint):
    item = add_item()

    class ExplodingClient:
        def upload(self, item, blob_path, endpoint):
            raise ValueError("unexpected")

    orchestrator = UploadOrchestrator(store, ExplodingClient(), endpoint=lambda: endpoint)
    outcome = orchestrator.upload(item.id)

    assert isinstance(outcome, UploadFailure)
    assert store.get(item.id).status is UploadStatus.FAILED
    assert store.get(item.id).last_error == "unexpected"
    assert orchestrator.in_flight == ()


def test_item_deleted_mid_flight_drops_outcome(store, add_item, endpoint):
    item = add_item()
    server = Server()
    server.on_request = lambda request: store.delete(item.id)
    orchestrator = _orchestrator(store, server, endpoint)

    orchestrator.upload(item.id)

    assert item.id not in store
    assert orchestrator.in_flight == ()


def test_endpoint_is_read_for_every_dispatch(store, add_item):
    first, second = add_item(text="one"), add_item(text="two")
    urls = []

    def handler(request):
        urls.append(str(request.url))
        return httpx.Response(200, content=b"{}")

    current = {"endpoint": Endpoint("https://a.example.org")}
    client = UploadClient(transport=httpx.MockTransport(handler))
    orchestrator = UploadOrchestrator(store, client, endpoint=lambda: current["endpoint"])

    orchestrator.upload(first.id)
    current["endpoint"] = Endpoint("https://b.example.org")
    orchestrator.upload(second.id)

    assert urls == ["https://a.example.org/v1/records", "https://b.example.org/v1/records"]


def test_upload_pending_skips_items_without_text(store, add_item, endpoint):
    ready = add_item(text="ready")
    blank = add_item(text="")
    failed = add_item(text="again", status=UploadStatus.FAILED, upload_attempts=1)
    orchestrator = _orchestrator(store, Server(), endpoint)

    results = dict(orchestrator.upload_pending())

    assert set(results) == {ready.id, failed.id}
    assert store.get(blank.id).status is UploadStatus.PENDING
    assert store.get(failed.id).status is UploadStatus.UPLOADED


def test_outcome_write_is_retried_after_store_failure(store, add_item, endpoint, monkeypatch):
    item = add_item()
    server = Server()
    persist = store._persist
    failures = []

    def fail_once():
        if not failures:
            failures.append(True)
            raise StoreError("disk full")
        persist()

    server.on_request = lambda request: monkeypatch.setattr(store, "_persist", fail_once)
    orchestrator = _orchestrator(store, server, endpoint)

    outcome = orchestrator.upload(item.id)

    assert isinstance(outcome, UploadSuccess)
    assert failures == [True]
    assert store.get(item.id).status is UploadStatus.UPLOADED
    assert orchestrator.in_flight == ()


def test_item_left_uploading_can_be_dispatched_again(store, add_item, endpoint, monkeypatch):
    item = add_item()
    server = Server()
    persist = store._persist
    broken = []

    def fail_while_broken():
        if broken:
            raise StoreError("disk full")
        persist()

    monkeypatch.setattr(store, "_persist", fail_while_broken)
    server.on_request = lambda request: broken.append(True)
    orchestrator = _orchestrator(store, server, endpoint)

    orchestrator.upload(item.id)

    assert store.get(item.id).status is UploadStatus.UPLOADING
    assert orchestrator.in_flight == ()

    broken.clear()
    server.on_request = None
    outcome = orchestrator.retry(item.id)

    assert isinstance(outcome, UploadSuccess)
    assert server.calls == 2
    assert store.get(item.id).status is UploadStatus.UPLOADED
    assert store.get(item.id).upload_attempts == 0
