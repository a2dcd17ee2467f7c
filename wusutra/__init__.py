"""Top-level package for wusutra."""

__version__ = "0.3.0"

from . import audit, capture, config, storage, upload_client, uploader

__all__ = ["audit", "capture", "config", "storage", "upload_client", "uploader", "__version__"]
