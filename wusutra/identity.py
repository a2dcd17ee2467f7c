"""Stable pseudonymous identity for this device."""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Callable, Optional

from . import config as config_mod
from .models import Config


def generate_user_id() -> str:
    return f"user_{uuid.uuid4().hex[:8]}"


class DeviceIdentity:
    """Hand out the device ``user_id``, creating and saving it on first use.

    The id lives in the regular configuration file. Loader and saver are
    injectable so tests do not touch the user's home directory.
    """

    def __init__(
        self,
        loader: Optional[Callable[[], Config]] = None,
        saver: Optional[Callable[..., Config]] = None,
    ) -> None:
        self._load = loader or config_mod.load_config
        self._save = saver or config_mod.update_config
        self._user_id: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def user_id(self) -> str:
        if self._user_id is not None:
            return self._user_id
        with self._lock:
            if self._user_id is None:
                stored = self._load().user_id
                if not stored:
                    stored = generate_user_id()
                    self._save(user_id=stored)
                    logging.info("Assigned new device user id %s", stored)
                self._user_id = stored
        return self._user_id
