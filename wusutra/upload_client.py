"""Single-shot multipart upload of a recording to the collection API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .identity import DeviceIdentity
from .models import ANONYMOUS_USER, Config, RecordingItem

RECORDS_PATH = "/v1/records"
QUALITY_SCORE = "1.0"
SAMPLE_RATE = "16000"
APP_NAME = "wusutra"

_CONTENT_TYPES = {
    ".m4a": "audio/m4a",
    ".wav": "audio/wav",
    ".flac": "audio/flac",
    ".ogg": "audio/ogg",
}


class UploadError(RuntimeError):
    """Describes why a single upload attempt failed."""


class FileReadError(UploadError):
    def __init__(self, path: Path, reason: str = "") -> None:
        self.path = path
        super().__init__("Failed to read audio file" + (f": {reason}" if reason else ""))


class InvalidURLError(UploadError):
    def __init__(self, base_url: str) -> None:
        self.base_url = base_url
        super().__init__(f"Invalid upload URL: {base_url!r}")


class NetworkError(UploadError):
    pass


class HTTPStatusError(UploadError):
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"Server error (code: {status_code})")


class InvalidResponseError(UploadError):
    def __init__(self) -> None:
        super().__init__("Invalid server response")


class UploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: Optional[str] = None
    recording_id: Optional[str] = Field(default=None, alias="recordingId")


@dataclass(slots=True, frozen=True)
class UploadSuccess:
    response: UploadResponse
    decoded: bool = True


@dataclass(slots=True, frozen=True)
class UploadFailure:
    error: UploadError

    @property
    def message(self) -> str:
        return str(self.error)


UploadOutcome = Union[UploadSuccess, UploadFailure]


@dataclass(slots=True, frozen=True)
class Endpoint:
    """Where and how to reach the collection API."""

    base_url: str
    timeout: float = 30.0
    verify_ssl: bool = True

    @classmethod
    def from_config(cls, config: Config) -> "Endpoint":
        return cls(base_url=config.api_base_url, timeout=config.api_timeout, verify_ssl=config.verify_ssl)


def records_url(base_url: str) -> httpx.URL:
    """Return ``{base_url}/v1/records`` or raise :class:`InvalidURLError`."""

    base = (base_url or "").strip().rstrip("/")
    try:
        url = httpx.URL(base + RECORDS_PATH)
    except httpx.InvalidURL as exc:
        raise InvalidURLError(base_url) from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidURLError(base_url)
    return url


def content_type_for(filename: str) -> str:
    return _CONTENT_TYPES.get(Path(filename).suffix.lower(), "application/octet-stream")


class UploadClient:
    """Send one recording and classify what came back.

    The client holds no per-item state and never retries. Every call
    returns an :class:`UploadSuccess` or :class:`UploadFailure`; nothing
    about the request is raised to the caller.

    ``lenient_success`` controls 200/201 responses whose body is not a
    valid upload response: when set they count as a success with an empty
    response, otherwise they fail with :class:`InvalidResponseError`.
    """

    def __init__(
        self,
        lenient_success: bool = True,
        identity: Optional[DeviceIdentity] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.lenient_success = lenient_success
        self._identity = identity
        self._transport = transport

    def upload(self, item: RecordingItem, blob_path: Path, endpoint: Endpoint) -> UploadOutcome:
        try:
            url = records_url(endpoint.base_url)
        except InvalidURLError as exc:
            return UploadFailure(exc)

        try:
            audio = Path(blob_path).read_bytes()
        except OSError as exc:
            return UploadFailure(FileReadError(Path(blob_path), exc.strerror or str(exc)))

        files = {"file": (item.filename, audio, content_type_for(item.filename))}
        try:
            with httpx.Client(
                timeout=endpoint.timeout,
                verify=endpoint.verify_ssl,
                transport=self._transport,
            ) as client:
                response = client.post(url, data=self.form_fields(item), files=files)
        except httpx.HTTPError as exc:
            logging.debug("Upload of %s failed in transport: %s", item.id, exc)
            return UploadFailure(NetworkError(f"Network error: {exc}"))

        return self.classify(response)

    def form_fields(self, item: RecordingItem) -> Dict[str, str]:
        user_id = item.user_id
        if (not user_id or user_id == ANONYMOUS_USER) and self._identity is not None:
            user_id = self._identity.user_id
        fields = {
            "text": item.text.strip(),
            "dialect": item.dialect,
            "user_id": user_id or ANONYMOUS_USER,
            "duration_sec": str(item.duration),
            "quality_score": QUALITY_SCORE,
            "filename": item.filename,
            "sample_rate": SAMPLE_RATE,
            "format": Path(item.filename).suffix.lstrip(".").lower(),
            "app": APP_NAME,
        }
        if item.phonetic_transcription.strip():
            fields["phonetic_transcription"] = item.phonetic_transcription.strip()
        return fields

    def classify(self, response: httpx.Response) -> UploadOutcome:
        if response.status_code not in (200, 201):
            return UploadFailure(HTTPStatusError(response.status_code))
        try:
            payload = UploadResponse.model_validate_json(response.content)
        except ValidationError as exc:
            if not self.lenient_success:
                return UploadFailure(InvalidResponseError())
            logging.debug("Accepting undecodable %s response: %s", response.status_code, exc)
            return UploadSuccess(UploadResponse(success=True), decoded=False)
        if not payload.success:
            logging.warning("Server accepted upload but reported: %s", payload.message)
        return UploadSuccess(payload)
