import pytest

from wusutra import config
from wusutra.models import RecordingItem
from wusutra.storage import RecordingStore
from wusutra.upload_client import Endpoint

BASE_URL = "https://collect.example.org"


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    cfg_path = tmp_path / "home" / "config.json"
    monkeypatch.setattr(config, "CONFIG_PATH", cfg_path)
    return cfg_path


@pytest.fixture
def store(tmp_path):
    return RecordingStore(tmp_path / "recordings")


@pytest.fixture
def endpoint():
    return Endpoint(base_url=BASE_URL, timeout=5.0)


@pytest.fixture
def add_item(store):
    """Create a stored item together with a small fake audio blob."""

    def _add(text="啥个物事", dialect="jianghuai", duration=3.2, filename=None, **fields):
        item = RecordingItem.new(
            filename=filename or f"clip-{len(store)}.m4a",
            duration=duration,
            dialect=dialect,
            user_id="user_tester1",
            text=text,
        )
        for key, value in fields.items():
            setattr(item, key, value)
        store.resolve_blob_path(item).write_bytes(b"\x00\x01fake-aac")
        return store.create(item)

    return _add
