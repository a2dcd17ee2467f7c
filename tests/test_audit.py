from datetime import datetime, timezone

from wusutra.audit import AuditReducer
from wusutra.models import InvalidTransitionError, UploadStatus

NOW = datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc)


def _reducer(store):
    return AuditReducer(store, clock=lambda: NOW)


def test_approve_uploaded_item(store, add_item):
    item = add_item(status=UploadStatus.UPLOADED)

    approved = _reducer(store).approve(item, "reviewer1", "good quality")

    assert approved.status is UploadStatus.APPROVED
    assert approved.audited_by == "reviewer1"
    assert approved.audit_notes == "good quality"
    assert approved.audit_date == NOW
    assert store.get(item.id) == approved


def test_reject_item_under_review(store, add_item):
    item = add_item(status=UploadStatus.UPLOADED)
    reducer = _reducer(store)
    reviewing = reducer.begin_review(item.id)
    assert reviewing.status is UploadStatus.AUDITING

    rejected = reducer.reject(item.id, "reviewer2", "   ")
    assert rejected.status is UploadStatus.REJECTED
    assert rejected.audited_by == "reviewer2"
    assert rejected.audit_notes is None


def test_decisions_require_uploaded_or_auditing(store, add_item):
    reducer = _reducer(store)
    for status in (UploadStatus.PENDING, UploadStatus.FAILED):
        item = add_item(status=status)
        for decide in (reducer.approve, reducer.reject):
            try:
                decide(item, "reviewer1", "note")
            except InvalidTransitionError:
                pass
            else:
                raise AssertionError(f"{decide.__name__} must fail from {status.value}")
            assert store.get(item.id) == item


def test_decision_is_final(store, add_item):
    item = add_item(status=UploadStatus.UPLOADED)
    reducer = _reducer(store)
    reducer.approve(item, "reviewer1")
    try:
        reducer.reject(item, "reviewer2")
    except InvalidTransitionError:
        pass
    else:
        raise AssertionError("Approved items cannot be rejected afterwards")
    assert store.get(item.id).status is UploadStatus.APPROVED


def test_begin_review_only_from_uploaded(store, add_item):
    item = add_item()
    try:
        _reducer(store).begin_review(item)
    except InvalidTransitionError:
        pass
    else:
        raise AssertionError("Pending items cannot enter review")
