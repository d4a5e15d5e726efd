"""Tests for capsule workflows (sealing, unlock gating, lifecycle)."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest

from timecapsule import db, logic
from timecapsule.crypto import RandomSourceUnavailable, SealedContentCodec, generate_key
from timecapsule.keystore import KeyUnavailable, WrappedKeyPolicy
from timecapsule.logic import CapsuleLocked, Location, MediaInput
from timecapsule.media import MediaStore

NOW = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
UNLOCK = NOW + timedelta(days=365)
LATER = UNLOCK + timedelta(seconds=1)

PHOTO = bytes(range(256)) * 4


def _create(store, title="Dear future me", **kwargs):
    kwargs.setdefault("now", NOW)
    return asyncio.run(logic.create_capsule(title, kwargs.pop("unlock_at", UNLOCK), store=store, **kwargs))


def _full_capsule(store, **kwargs):
    return _create(
        store,
        description="Read this in a year",
        media=[
            MediaInput(type="text", content="remember the lake"),
            MediaInput(type="photo", content=PHOTO, extension="jpg"),
        ],
        owner="sam",
        location=Location(48.85, 2.35, "Paris"),
        **kwargs,
    )


async def _all_rows(table):
    async with aiosqlite.connect(db.DB_PATH) as conn:
        conn.row_factory = aiosqlite.Row
        cur = await conn.execute(f"SELECT * FROM {table}")
        rows = await cur.fetchall()
        await cur.close()
        return rows


def _blob_files(store: MediaStore):
    return [p for p in store.root.rglob("*") if p.is_file()] if store.root.exists() else []


# ── sealing ──────────────────────────────────────────────────────────


def test_record_holds_only_ciphertext(vault, store) -> None:
    capsule_id = _full_capsule(store)
    row = asyncio.run(db.get_capsule_row(capsule_id))
    media = asyncio.run(db.list_media_rows(capsule_id))

    assert row["title"] != "Dear future me"
    assert "Dear future me" not in json.dumps([row[k] for k in row.keys()])
    assert row["key_policy"] == "inline"
    assert len(row["key_material"]) == 64
    assert row["is_sealed"] == 1 and row["is_unlocked"] == 0

    assert [m["type"] for m in media] == ["text", "photo"]
    assert media[0]["content"] != "remember the lake"
    assert media[1]["content"].startswith("file://")
    blob = store.get(media[1]["content"])
    assert PHOTO not in blob
    assert len(blob) == 16 + (len(PHOTO) // 16 + 1) * 16


def test_each_capsule_gets_its_own_key(vault, store) -> None:
    a = _create(store)
    b = _create(store)
    rows = {r["id"]: r for r in asyncio.run(_all_rows("capsules"))}
    assert rows[a]["key_material"] != rows[b]["key_material"]


@pytest.mark.parametrize("kwargs", [
    {"title": ""},
    {"title": "   "},
    {"unlock_at": NOW},
    {"unlock_at": NOW - timedelta(days=1)},
    {"media": [MediaInput(type="sticker", content=b"x")]},
    {"media": [MediaInput(type="text", content=b"bytes")]},
    {"media": [MediaInput(type="photo", content="str")]},
])
def test_invalid_capsules_rejected(vault, store, kwargs) -> None:
    with pytest.raises(ValueError):
        _create(store, **kwargs)
    assert asyncio.run(_all_rows("capsules")) == []


def test_random_failure_persists_nothing(vault, store, monkeypatch) -> None:
    def no_entropy(n):
        raise OSError("entropy pool unavailable")

    monkeypatch.setattr(logic, "CODEC", SealedContentCodec(random_source=no_entropy))
    with pytest.raises(RandomSourceUnavailable):
        _full_capsule(store)
    assert asyncio.run(_all_rows("capsules")) == []
    assert asyncio.run(_all_rows("media_items")) == []
    assert _blob_files(store) == []


class FlakyStore(MediaStore):
    """Refuses video uploads."""

    def put(self, blob, media_type, extension="dat"):
        if media_type == "video":
            raise OSError("bucket unavailable")
        return super().put(blob, media_type, extension)


def test_upload_failure_discards_blobs(vault, tmp_path) -> None:
    store = FlakyStore(tmp_path / "media")
    with pytest.raises(OSError):
        _create(store, media=[
            MediaInput(type="photo", content=PHOTO),
            MediaInput(type="audio", content=b"ogg"),
            MediaInput(type="video", content=b"mp4"),
        ])
    assert asyncio.run(_all_rows("capsules")) == []
    assert _blob_files(store) == []


# ── unlock gating ────────────────────────────────────────────────────


def test_sealed_before_unlock(vault, store) -> None:
    capsule_id = _full_capsule(store)
    cfg = logic.load_config()
    [view] = asyncio.run(logic.list_capsules(now=NOW + timedelta(days=1)))
    assert view.id == capsule_id
    assert view.state == logic.STATE_SEALED
    assert view.title == cfg["sealed_title"]
    assert view.description == cfg["sealed_description"]
    assert all(m.content is None for m in view.media)
    assert view.location == Location(48.85, 2.35, "Paris")


def test_opened_after_unlock(vault, store) -> None:
    capsule_id = _full_capsule(store)
    [view] = asyncio.run(logic.list_capsules(now=LATER))
    assert view.state == logic.STATE_OPEN
    assert view.title == "Dear future me"
    assert view.description == "Read this in a year"
    text, photo = view.media
    assert text.content == "remember the lake"
    assert photo.content.startswith("file://")

    opened = asyncio.run(logic.open_capsule(capsule_id, now=LATER))
    assert opened.title == "Dear future me"


def test_open_before_unlock_is_refused(vault, store) -> None:
    capsule_id = _full_capsule(store)
    with pytest.raises(CapsuleLocked):
        asyncio.run(logic.open_capsule(capsule_id, now=NOW))
    media_id = asyncio.run(db.list_media_rows(capsule_id))[1]["id"]
    with pytest.raises(CapsuleLocked):
        asyncio.run(logic.read_media(capsule_id, media_id, store=store, now=NOW))


def test_open_missing_capsule(vault) -> None:
    with pytest.raises(ValueError):
        asyncio.run(logic.open_capsule("nope", now=LATER))


def test_read_media(vault, store) -> None:
    capsule_id = _full_capsule(store)
    text_row, photo_row = asyncio.run(db.list_media_rows(capsule_id))
    photo = asyncio.run(logic.read_media(capsule_id, photo_row["id"], store=store, now=LATER))
    text = asyncio.run(logic.read_media(capsule_id, text_row["id"], store=store, now=LATER))
    assert photo == PHOTO
    assert text == "remember the lake".encode("utf-8")
    with pytest.raises(ValueError):
        asyncio.run(logic.read_media(capsule_id, "missing", store=store, now=LATER))


def test_corrupt_capsule_does_not_block_others(vault, store) -> None:
    good = _create(store, title="fine")
    bad = _create(store, title="doomed")

    async def swap_key():
        async with aiosqlite.connect(db.DB_PATH) as conn:
            await conn.execute(
                "UPDATE capsules SET key_material = ? WHERE id = ?",
                (generate_key(), bad),
            )
            await conn.commit()

    asyncio.run(swap_key())
    views = {v.id: v for v in asyncio.run(logic.list_capsules(now=LATER))}
    assert views[good].state == logic.STATE_OPEN
    assert views[good].title == "fine"
    assert views[bad].state == logic.STATE_ERROR
    assert views[bad].title == logic.load_config()["decryption_error_title"]


@pytest.mark.parametrize("column, value", [
    ("key_policy", "bogus"),
    ("unlock_at", "not a date"),
])
def test_damaged_record_does_not_block_others(vault, store, column, value) -> None:
    good = _create(store, title="fine")
    bad = _create(store, title="damaged")

    async def damage():
        async with aiosqlite.connect(db.DB_PATH) as conn:
            await conn.execute(f"UPDATE capsules SET {column} = ? WHERE id = ?", (value, bad))
            await conn.commit()

    asyncio.run(damage())
    views = {v.id: v for v in asyncio.run(logic.list_capsules(now=LATER))}
    assert len(views) == 2
    assert views[good].state == logic.STATE_OPEN
    assert views[good].title == "fine"
    assert views[bad].state == logic.STATE_ERROR
    assert views[bad].title == logic.load_config()["decryption_error_title"]


def test_list_filters_by_owner(vault, store) -> None:
    _create(store, owner="sam")
    _create(store, owner="alex")
    views = asyncio.run(logic.list_capsules("alex", now=LATER))
    assert [v.owner for v in views] == ["alex"]


# ── wrapped keys ─────────────────────────────────────────────────────


def test_wrapped_key_workflow(vault, store) -> None:
    capsule_id = _create(store, policy=WrappedKeyPolicy("vault pass"))
    row = asyncio.run(db.get_capsule_row(capsule_id))
    assert row["key_policy"] == "wrapped"

    [view] = asyncio.run(logic.list_capsules(passphrase="vault pass", now=LATER))
    assert view.title == "Dear future me"

    [view] = asyncio.run(logic.list_capsules(now=LATER))
    assert view.state == logic.STATE_ERROR
    with pytest.raises(KeyUnavailable):
        asyncio.run(logic.open_capsule(capsule_id, passphrase="wrong", now=LATER))


# ── lifecycle ────────────────────────────────────────────────────────


def test_unlock_capsule(vault, store) -> None:
    capsule_id = _create(store)
    with pytest.raises(CapsuleLocked):
        asyncio.run(logic.unlock_capsule(capsule_id, now=NOW))
    asyncio.run(logic.unlock_capsule(capsule_id, now=LATER))
    assert asyncio.run(logic.open_capsule(capsule_id, now=LATER)).is_unlocked


def test_delete_removes_key_and_blobs(vault, store) -> None:
    capsule_id = _full_capsule(store)
    assert len(_blob_files(store)) == 1
    asyncio.run(logic.delete_capsule(capsule_id, store=store))
    assert asyncio.run(db.get_capsule_row(capsule_id)) is None
    assert asyncio.run(_all_rows("media_items")) == []
    assert _blob_files(store) == []
    with pytest.raises(ValueError):
        asyncio.run(logic.delete_capsule(capsule_id, store=store))


# ── config / migrations ──────────────────────────────────────────────


def test_config_defaults_written(vault) -> None:
    cfg = logic.load_config()
    assert cfg == logic.DEFAULT_CONFIG
    assert (vault / "config" / "timecapsule" / "config.json").exists()

    cfg["key_policy"] = "wrapped"
    logic.save_config(cfg)
    assert logic.load_config()["key_policy"] == "wrapped"


def test_media_store_from_config(vault, tmp_path) -> None:
    assert logic.media_store({"media_dir": ""}).root == (vault / "config" / "timecapsule" / "media").resolve()
    assert logic.media_store({"media_dir": str(tmp_path / "blobs")}).root == (tmp_path / "blobs").resolve()


def test_migrate_legacy_db(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "legacy.sqlite3"))

    async def legacy():
        async with aiosqlite.connect(db.DB_PATH) as conn:
            await conn.executescript(
                """
                CREATE TABLE capsules (
                    id TEXT PRIMARY KEY, owner TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL, unlock_at TEXT NOT NULL,
                    is_sealed INTEGER NOT NULL DEFAULT 1,
                    title TEXT NOT NULL, description TEXT,
                    key_material TEXT NOT NULL
                );
                CREATE TABLE media_items (
                    id TEXT PRIMARY KEY, capsule_id TEXT NOT NULL,
                    position INTEGER NOT NULL, type TEXT NOT NULL,
                    content TEXT NOT NULL, timestamp TEXT NOT NULL
                );
                """
            )
            await conn.commit()

    asyncio.run(legacy())
    applied = asyncio.run(db.migrate_db())
    assert any("key_policy" in s for s in applied)
    assert any("is_unlocked" in s for s in applied)
    assert len(applied) == 8
    assert asyncio.run(db.migrate_db()) == []
