from __future__ import annotations

import asyncio

import pytest

from timecapsule import db, logic
from timecapsule.crypto import generate_key
from timecapsule.media import MediaStore


@pytest.fixture
def key() -> str:
    return generate_key()


@pytest.fixture
def vault(tmp_path, monkeypatch):
    """Fresh database and config directory under tmp_path."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.delenv("TIMECAPSULE_PASSPHRASE", raising=False)
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "capsules.sqlite3"))
    asyncio.run(logic.init_db())
    return tmp_path


@pytest.fixture
def store(tmp_path) -> MediaStore:
    return MediaStore(tmp_path / "media")
