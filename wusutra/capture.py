"""Microphone capture producing one audio file per recording."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

import numpy as np

from .models import ANONYMOUS_USER, RecordingItem

SAMPLE_RATE = 16000
CHANNELS = 1
FILENAME_FORMAT = "%Y%m%d-%H%M%S"


class CaptureError(RuntimeError):
    """Raised when the microphone cannot produce a recording."""


class PermissionDeniedError(CaptureError):
    def __init__(self) -> None:
        super().__init__("Microphone permission was denied")


class AlreadyRecordingError(CaptureError):
    def __init__(self) -> None:
        super().__init__("A recording is already in progress")


class NoActiveRecordingError(CaptureError):
    def __init__(self) -> None:
        super().__init__("No recording is in progress")


class Microphone(Protocol):
    """Device capability used by :class:`CaptureSession`."""

    def request_permission(self) -> bool:
        """Return True when the process may record."""

    def record(self, path: Path, audio_format: str) -> Any:
        """Begin writing audio to ``path`` and return an opaque handle."""

    def stop(self, handle: Any) -> float:
        """Finish the recording behind ``handle`` and return its duration in seconds."""


class CaptureState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"


@dataclass(slots=True, frozen=True)
class CaptureResult:
    path: Path
    duration: float

    @property
    def filename(self) -> str:
        return self.path.name


class CaptureSession:
    """Drive a :class:`Microphone` through ``idle -> recording -> idle``.

    The session never touches the recording store. Callers turn a
    :class:`CaptureResult` into a stored item themselves.
    """

    def __init__(
        self,
        microphone: Microphone,
        output_dir: Path,
        audio_format: str = "wav",
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._microphone = microphone
        self._output_dir = Path(output_dir)
        self._format = audio_format.lstrip(".").lower()
        self._clock = clock
        self._handle: Any = None
        self._path: Optional[Path] = None
        self._state = CaptureState.IDLE

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state is CaptureState.RECORDING

    def start(self) -> Path:
        if self._state is CaptureState.RECORDING:
            raise AlreadyRecordingError()
        if not self._microphone.request_permission():
            raise PermissionDeniedError()

        self._output_dir.mkdir(parents=True, exist_ok=True)
        path = self._next_path()
        try:
            handle = self._microphone.record(path, self._format)
        except Exception as exc:
            path.unlink(missing_ok=True)
            logging.error("Failed to start recording: %s", exc)
            raise CaptureError(f"Failed to start recording: {exc}") from exc

        self._handle = handle
        self._path = path
        self._state = CaptureState.RECORDING
        logging.debug("Recording to %s", path)
        return path

    def stop(self) -> CaptureResult:
        if self._state is not CaptureState.RECORDING or self._path is None:
            raise NoActiveRecordingError()

        handle, path = self._handle, self._path
        self._reset()
        try:
            duration = float(self._microphone.stop(handle))
        except Exception as exc:
            path.unlink(missing_ok=True)
            logging.error("Failed to finish recording: %s", exc)
            raise CaptureError(f"Failed to finish recording: {exc}") from exc
        return CaptureResult(path=path, duration=duration)

    def abort(self) -> None:
        """Drop the active recording, if any, along with its partial file."""

        if self._state is not CaptureState.RECORDING or self._path is None:
            return
        handle, path = self._handle, self._path
        self._reset()
        try:
            self._microphone.stop(handle)
        except Exception as exc:
            logging.debug("Ignoring error while aborting recording: %s", exc)
        path.unlink(missing_ok=True)

    def _reset(self) -> None:
        self._handle = None
        self._path = None
        self._state = CaptureState.IDLE

    def _next_path(self) -> Path:
        stem = self._clock().strftime(FILENAME_FORMAT)
        path = self._output_dir / f"{stem}.{self._format}"
        counter = 1
        while path.exists():
            path = self._output_dir / f"{stem}-{counter}.{self._format}"
            counter += 1
        return path


def new_recording(
    result: CaptureResult,
    dialect: str = "",
    user_id: str = ANONYMOUS_USER,
    text: str = "",
) -> RecordingItem:
    """Build the pending item describing a finished capture."""

    return RecordingItem.new(
        filename=result.filename,
        duration=result.duration,
        dialect=dialect,
        user_id=user_id,
        text=text,
    )


class _StreamHandle:
    def __init__(self, stream: Any, path: Path, audio_format: str) -> None:
        self.stream = stream
        self.path = path
        self.audio_format = audio_format
        self.frames: list[np.ndarray] = []
        self.lock = threading.Lock()


class SoundDeviceMicrophone:
    """Record from the default input device with ``sounddevice``."""

    def __init__(self, samplerate: int = SAMPLE_RATE, channels: int = CHANNELS) -> None:
        try:
            import sounddevice as sd  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "The `sounddevice` package is required for recording. Install wusutra[audio]."
            ) from exc
        try:
            import soundfile as sf  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "The `soundfile` package is required to write audio files. Install wusutra[audio]."
            ) from exc

        self._sd = sd
        self._sf = sf
        self._samplerate = samplerate
        self._channels = channels

    def request_permission(self) -> bool:
        try:
            self._sd.query_devices(kind="input")
        except Exception as exc:
            logging.debug("No usable input device: %s", exc)
            return False
        return True

    def record(self, path: Path, audio_format: str) -> _StreamHandle:
        if audio_format.upper() not in self._sf.available_formats():
            raise CaptureError(f"Unsupported audio format: {audio_format}")

        handle = _StreamHandle(None, path, audio_format)

        def callback(indata, frames, time, status) -> None:  # type: ignore[no-untyped-def]
            if status:
                logging.debug("Recorder status: %s", status)
            with handle.lock:
                handle.frames.append(indata.copy())

        handle.stream = self._sd.InputStream(
            samplerate=self._samplerate,
            channels=self._channels,
            dtype="float32",
            callback=callback,
        )
        handle.stream.start()
        return handle

    def stop(self, handle: _StreamHandle) -> float:
        handle.stream.stop()
        handle.stream.close()

        with handle.lock:
            frames = list(handle.frames)
        if not frames:
            raise CaptureError("No audio was captured.")

        audio = np.concatenate(frames, axis=0)
        self._sf.write(handle.path, audio, self._samplerate, format=handle.audio_format.upper())
        return len(audio) / float(self._samplerate)
