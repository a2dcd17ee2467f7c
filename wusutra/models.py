"""Dataclasses describing persistent objects for wusutra."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class InvalidTransitionError(RuntimeError):
    """Raised when a status change is not allowed by the upload state machine."""

    def __init__(self, current: "UploadStatus", target: "UploadStatus") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move recording from {current.value} to {target.value}")


class UploadStatus(str, Enum):
    PENDING = "Pending"
    UPLOADING = "Uploading"
    UPLOADED = "Uploaded"
    FAILED = "Failed"
    AUDITING = "Auditing"
    APPROVED = "Approved"
    REJECTED = "Rejected"

    def can_transition_to(self, target: "UploadStatus") -> bool:
        return target is self or target in TRANSITIONS[self]


TRANSITIONS: Dict[UploadStatus, FrozenSet[UploadStatus]] = {
    UploadStatus.PENDING: frozenset({UploadStatus.UPLOADING}),
    UploadStatus.UPLOADING: frozenset({UploadStatus.UPLOADED, UploadStatus.FAILED}),
    UploadStatus.FAILED: frozenset({UploadStatus.UPLOADING}),
    UploadStatus.UPLOADED: frozenset(
        {UploadStatus.AUDITING, UploadStatus.APPROVED, UploadStatus.REJECTED}
    ),
    UploadStatus.AUDITING: frozenset({UploadStatus.APPROVED, UploadStatus.REJECTED}),
    UploadStatus.APPROVED: frozenset(),
    UploadStatus.REJECTED: frozenset(),
}

EDITABLE_STATUSES = frozenset({UploadStatus.PENDING, UploadStatus.FAILED})
REVIEWABLE_STATUSES = frozenset({UploadStatus.UPLOADED, UploadStatus.AUDITING})

# Supported dialect tags and their display names.
DIALECTS: Dict[str, str] = {
    "jiangyin": "江阴话",
    "jianghuai": "江淮官话",
    "wu": "吴语",
    "mandarin": "普通话",
}

ANONYMOUS_USER = "anonymous"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class RecordingItem:
    """One audio contribution and the metadata that travels with it."""

    id: str
    filename: str
    duration: float
    created_at: datetime
    text: str = ""
    dialect: str = ""
    phonetic_transcription: str = ""
    status: UploadStatus = UploadStatus.PENDING
    upload_attempts: int = 0
    last_error: Optional[str] = None
    user_id: str = ANONYMOUS_USER
    audited_by: Optional[str] = None
    audit_date: Optional[datetime] = None
    audit_notes: Optional[str] = None

    @classmethod
    def new(
        cls,
        filename: str,
        duration: float,
        dialect: str = "",
        user_id: str = ANONYMOUS_USER,
        text: str = "",
    ) -> "RecordingItem":
        return cls(
            id=str(uuid.uuid4()).upper(),
            filename=filename,
            duration=duration,
            created_at=utcnow(),
            text=text,
            dialect=dialect,
            user_id=user_id,
        )

    @property
    def formatted_duration(self) -> str:
        minutes, seconds = divmod(int(self.duration), 60)
        return f"{minutes}:{seconds:02d}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "duration": self.duration,
            "createdAt": self.created_at.isoformat(),
            "text": self.text,
            "dialect": self.dialect,
            "phoneticTranscription": self.phonetic_transcription,
            "status": self.status.value,
            "uploadAttempts": self.upload_attempts,
            "lastError": self.last_error,
            "userId": self.user_id,
            "auditedBy": self.audited_by,
            "auditDate": self.audit_date.isoformat() if self.audit_date else None,
            "auditNotes": self.audit_notes,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RecordingItem":
        """Build an item from its persisted form.

        Keys added after a file was written are missing from older files, so
        everything except the identity fields falls back to its default.
        """

        audit_date = payload.get("auditDate")
        return cls(
            id=str(payload["id"]),
            filename=str(payload["filename"]),
            duration=float(payload["duration"]),
            created_at=datetime.fromisoformat(payload["createdAt"]),
            text=payload.get("text") or "",
            dialect=payload.get("dialect") or "",
            phonetic_transcription=payload.get("phoneticTranscription") or "",
            status=UploadStatus(payload.get("status", UploadStatus.PENDING.value)),
            upload_attempts=int(payload.get("uploadAttempts") or 0),
            last_error=payload.get("lastError"),
            user_id=payload.get("userId") or ANONYMOUS_USER,
            audited_by=payload.get("auditedBy"),
            audit_date=datetime.fromisoformat(audit_date) if audit_date else None,
            audit_notes=payload.get("auditNotes"),
        )


@dataclass(slots=True)
class Config:
    """User configuration stored on disk."""

    api_base_url: str = ""
    api_timeout: float = 30.0
    verify_ssl: bool = True
    lenient_responses: bool = True
    default_dialect: str = "jiangyin"
    audio_format: str = "wav"
    data_dir: Optional[str] = None
    user_id: Optional[str] = None
