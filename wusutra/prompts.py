"""Example sentences offered to contributors for each dialect."""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from .models import RecordingItem
from .storage import RecordingStore
from .upload_client import Endpoint

PROMPTS_PATH = "/v1/prompts"


class PromptsError(RuntimeError):
    """Raised when prompts cannot be fetched."""


class Prompt(BaseModel):
    id: str
    text: str
    dialect: str
    category: Optional[str] = None
    difficulty: Optional[str] = None
    phonetic: Optional[str] = None


class PromptsResponse(BaseModel):
    prompts: List[Prompt]
    total: int = 0


_PROMPT_LIST = TypeAdapter(List[Prompt])


def parse_prompts(content: bytes) -> List[Prompt]:
    """Accept either a bare JSON array or a ``{"prompts": [...]}`` object."""

    try:
        return _PROMPT_LIST.validate_json(content)
    except ValidationError:
        pass
    try:
        return PromptsResponse.model_validate_json(content).prompts
    except ValidationError as exc:
        raise PromptsError(f"Could not decode prompts: {exc.error_count()} errors") from exc


class PromptsService:
    def __init__(self, transport: Optional[httpx.BaseTransport] = None) -> None:
        self._transport = transport
        self._prompts: Optional[List[Prompt]] = None
        self._lock = threading.Lock()

    @property
    def prompts(self) -> List[Prompt]:
        return list(self._prompts or [])

    def fetch(self, endpoint: Endpoint, dialect: Optional[str] = None) -> List[Prompt]:
        base = (endpoint.base_url or "").strip().rstrip("/")
        try:
            url = httpx.URL(base + PROMPTS_PATH)
        except httpx.InvalidURL as exc:
            raise PromptsError(f"Invalid prompts URL: {base + PROMPTS_PATH}") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise PromptsError(f"Invalid prompts URL: {base + PROMPTS_PATH}")

        logging.debug("Fetching prompts from %s", url)
        try:
            with httpx.Client(
                timeout=endpoint.timeout,
                verify=endpoint.verify_ssl,
                transport=self._transport,
            ) as client:
                response = client.get(url, headers={"ngrok-skip-browser-warning": "1"})
        except httpx.HTTPError as exc:
            raise PromptsError(f"Prompts request failed: {exc}") from exc

        if response.status_code != 200:
            raise PromptsError(f"Prompts server error (code: {response.status_code})")
        if not response.content:
            raise PromptsError("No prompts data received")

        prompts = parse_prompts(response.content)
        if dialect:
            prompts = [p for p in prompts if p.dialect == dialect]
        return prompts

    def load_once(self, endpoint: Endpoint) -> List[Prompt]:
        """Fetch all prompts on first use and serve the cached list afterwards.

        Only a successful load is cached. A failed one is logged, returns an
        empty list and is attempted again on the next call.
        """

        with self._lock:
            if self._prompts is None:
                try:
                    self._prompts = self.fetch(endpoint)
                except PromptsError as exc:
                    logging.warning("Failed to load prompts: %s", exc)
                    return []
            return list(self._prompts)


def apply_prompt(store: RecordingStore, item_id: str, prompt: Prompt) -> RecordingItem:
    return store.edit(
        item_id,
        text=prompt.text,
        phonetic_transcription=prompt.phonetic,
    )
