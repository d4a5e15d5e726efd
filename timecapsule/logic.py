# -*- coding: utf-8 -*-
"""Capsule workflows that compose the DB, media store and sealing layers.

This module provides the public API used by the CLI. All side effects (DB,
blob and config I/O) are explicit and local. The unlock date is enforced
here; the codec itself will decrypt whenever it is handed a key.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union
import asyncio
import json
import logging
import os
import uuid

from . import db
from .crypto import CapsuleCryptoError, SealedContentCodec
from .keystore import policy_for
from .media import BINARY_TYPES, MediaStore

logger = logging.getLogger(__name__)

CODEC = SealedContentCodec()

MEDIA_TYPES = ("text",) + BINARY_TYPES

STATE_SEALED = "sealed"
STATE_OPEN = "open"
STATE_ERROR = "error"

# ---------------------------------------------------------------------
# Config management (JSON on disk)
# ---------------------------------------------------------------------

APP_NAME = "timecapsule"

DEFAULT_CONFIG: Dict[str, object] = {
    # Empty means "<config dir>/media"
    "media_dir": "",
    "key_policy": "inline",
    "log_level": "WARNING",
    "sealed_title": "\U0001F512 Sealed Capsule",
    "sealed_description": "This capsule is sealed until its unlock date.",
    "decryption_error_title": "\U0001F512 Decryption Error",
}

def _config_dir() -> Path:
    """Return the config directory path for this platform."""
    if os.name == "nt":
        base = os.environ.get("APPDATA", os.path.expanduser("~\\AppData\\Roaming"))
        return Path(base) / APP_NAME
    base = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(base) / APP_NAME

def _config_path() -> Path:
    return _config_dir() / "config.json"

def load_config() -> Dict[str, object]:
    """Load the merged configuration (defaults + file)."""
    path = _config_path()
    if not path.exists():
        save_config(DEFAULT_CONFIG)
        return json.loads(json.dumps(DEFAULT_CONFIG))
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    merged = json.loads(json.dumps(DEFAULT_CONFIG))
    merged.update(data)
    return merged

def save_config(cfg: Dict[str, object]) -> None:
    """Persist *cfg* to the JSON config file."""
    _config_dir().mkdir(parents=True, exist_ok=True)
    with _config_path().open("w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2)

def media_store(cfg: Optional[Dict[str, object]] = None) -> MediaStore:
    """Return the blob store configured in *cfg*."""
    cfg = cfg if cfg is not None else load_config()
    root = str(cfg.get("media_dir") or "") or str(_config_dir() / "media")
    return MediaStore(root)


# ---------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------

class CapsuleLocked(ValueError):
    """The capsule's unlock date has not passed yet."""


@dataclass
class Location:
    latitude: float
    longitude: float
    address: Optional[str] = None


@dataclass
class MediaInput:
    """A media item to seal: a str for ``text``, raw bytes otherwise."""

    type: str
    content: Union[str, bytes]
    extension: str = "dat"
    timestamp: Optional[datetime] = None
    location: Optional[Location] = None


@dataclass
class MediaItem:
    id: str
    type: str
    # Plain text for opened text items, blob URL for binary items,
    # None while the capsule is sealed or unreadable.
    content: Optional[str]
    timestamp: str
    location: Optional[Location] = None


@dataclass
class CapsuleView:
    """A capsule as presented to callers, decrypted only if it may be."""

    id: str
    owner: str
    title: str
    description: Optional[str]
    created_at: str
    unlock_at: str
    is_sealed: bool
    is_unlocked: bool
    state: str
    media: List[MediaItem] = field(default_factory=list)
    location: Optional[Location] = None


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _as_utc(value: datetime) -> datetime:
    """Normalise *value* to an aware UTC datetime (naive means UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def is_unlockable(row, now: Optional[datetime] = None) -> bool:
    """True once the capsule's unlock date has passed."""
    unlock_at = _as_utc(datetime.fromisoformat(row["unlock_at"]))
    return unlock_at <= _as_utc(now or _utcnow())

def _location_from(row) -> Optional[Location]:
    if row["latitude"] is None or row["longitude"] is None:
        return None
    return Location(row["latitude"], row["longitude"], row["address"])

def _location_cols(loc: Optional[Location]) -> Dict[str, object]:
    if loc is None:
        return {"latitude": None, "longitude": None, "address": None}
    return {"latitude": loc.latitude, "longitude": loc.longitude, "address": loc.address}

def _resolve_key(row, passphrase: Optional[str]) -> str:
    """Recover the hex capsule key stored in *row*."""
    return policy_for(row["key_policy"], passphrase).load(row["id"], row["key_material"])


# ---------------------------------------------------------------------
# DB bridge
# ---------------------------------------------------------------------

async def init_db() -> None:
    """Initialize the SQLite database (create tables on first run)."""
    await db.init_db()


# ---------------------------------------------------------------------
# Sealing
# ---------------------------------------------------------------------

def _seal_media(key: str, item: MediaInput, store: MediaStore) -> Tuple[str, Optional[str]]:
    """Seal one media item; return (content, uploaded blob URL or None)."""
    if item.type == "text":
        return CODEC.encrypt_text(item.content, key), None
    blob = CODEC.encrypt_binary(item.content, key)
    url = store.put(blob, item.type, item.extension)
    return url, url


def _discard_blobs(store: MediaStore, urls: Sequence[str]) -> None:
    for url in urls:
        store.delete(url)


async def create_capsule(
    title: str,
    unlock_at: datetime,
    *,
    description: Optional[str] = None,
    media: Sequence[MediaInput] = (),
    owner: str = "",
    location: Optional[Location] = None,
    policy=None,
    passphrase: Optional[str] = None,
    store: Optional[MediaStore] = None,
    now: Optional[datetime] = None,
) -> str:
    """Seal a new capsule under a fresh key; return its id.

    Nothing is persisted unless every field and media item was sealed and
    uploaded; blobs uploaded before a failure are removed again.
    """
    created = _as_utc(now or _utcnow())
    unlock = _as_utc(unlock_at)
    if not title or not title.strip():
        raise ValueError("Title required")
    if unlock <= created:
        raise ValueError("Unlock date must be in the future")
    for item in media:
        if item.type not in MEDIA_TYPES:
            raise ValueError(f"Unsupported media type: {item.type!r}")
        expected = str if item.type == "text" else (bytes, bytearray)
        if not isinstance(item.content, expected):
            raise ValueError(f"Media content does not match type {item.type!r}")

    if policy is None or store is None:
        cfg = load_config()
        if policy is None:
            policy = policy_for(str(cfg["key_policy"]), passphrase)
        if store is None:
            store = media_store(cfg)

    capsule_id = uuid.uuid4().hex
    try:
        key = await asyncio.to_thread(CODEC.generate_key)
    except CapsuleCryptoError as exc:
        logger.error("capsule creation aborted: %s", type(exc).__name__)
        raise

    sealed_title = CODEC.encrypt_text(title, key)
    sealed_description = CODEC.encrypt_text(description, key) if description else None
    key_material = policy.store(capsule_id, key)

    results = await asyncio.gather(
        *(asyncio.to_thread(_seal_media, key, item, store) for item in media),
        return_exceptions=True,
    )
    uploaded = [r[1] for r in results if isinstance(r, tuple) and r[1]]
    failures = [r for r in results if isinstance(r, BaseException)]
    if failures:
        _discard_blobs(store, uploaded)
        logger.error("capsule creation aborted: %s", type(failures[0]).__name__)
        raise failures[0]

    media_rows = []
    for position, (item, (content, _url)) in enumerate(zip(media, results)):
        stamp = _as_utc(item.timestamp or created).isoformat()
        media_rows.append({
            "id": uuid.uuid4().hex,
            "capsule_id": capsule_id,
            "position": position,
            "type": item.type,
            "content": content,
            "timestamp": stamp,
            **_location_cols(item.location),
        })

    capsule_row = {
        "id": capsule_id,
        "owner": owner,
        "created_at": created.isoformat(),
        "unlock_at": unlock.isoformat(),
        "is_sealed": 1,
        "is_unlocked": 0,
        "title": sealed_title,
        "description": sealed_description,
        "key_policy": policy.name,
        "key_material": key_material,
        **_location_cols(location),
    }
    try:
        await db.insert_capsule_row(capsule_row, media_rows)
    except Exception:
        _discard_blobs(store, uploaded)
        raise

    logger.info("sealed capsule %s with %d media item(s)", capsule_id, len(media_rows))
    return capsule_id


# ---------------------------------------------------------------------
# Reading (unlock-gated)
# ---------------------------------------------------------------------

def _decrypt_media(media_rows, key: str) -> List[MediaItem]:
    out: List[MediaItem] = []
    for m in media_rows:
        content = m["content"]
        if m["type"] == "text":
            content = CODEC.decrypt_text(content, key)
        out.append(MediaItem(m["id"], m["type"], content, m["timestamp"], _location_from(m)))
    return out

def _hidden_media(media_rows) -> List[MediaItem]:
    return [MediaItem(m["id"], m["type"], None, m["timestamp"], _location_from(m)) for m in media_rows]

def _view(row, title: str, description: Optional[str], state: str, media: List[MediaItem]) -> CapsuleView:
    return CapsuleView(
        id=row["id"],
        owner=row["owner"],
        title=title,
        description=description,
        created_at=row["created_at"],
        unlock_at=row["unlock_at"],
        is_sealed=bool(row["is_sealed"]),
        is_unlocked=bool(row["is_unlocked"]),
        state=state,
        media=media,
        location=_location_from(row),
    )

def _open_row(row, media_rows, passphrase: Optional[str]) -> CapsuleView:
    key = _resolve_key(row, passphrase)
    title = CODEC.decrypt_text(row["title"], key, require_nonempty=True)
    description = None
    if row["description"]:
        description = CODEC.decrypt_text(row["description"], key)
    return _view(row, title, description, STATE_OPEN, _decrypt_media(media_rows, key))


async def list_capsules(
    owner: Optional[str] = None,
    *,
    passphrase: Optional[str] = None,
    now: Optional[datetime] = None,
    config: Optional[Dict[str, object]] = None,
) -> List[CapsuleView]:
    """Return every capsule, newest first, decrypting those past their date.

    A capsule that fails to decrypt, or whose record is damaged (unknown key
    policy, unreadable unlock date), is shown with an error placeholder; it
    never prevents the others from being listed.
    """
    cfg = config if config is not None else load_config()
    out: List[CapsuleView] = []
    for row in await db.list_capsule_rows(owner):
        media_rows = await db.list_media_rows(row["id"])
        try:
            if not is_unlockable(row, now):
                out.append(_view(
                    row,
                    str(cfg["sealed_title"]),
                    str(cfg["sealed_description"]),
                    STATE_SEALED,
                    _hidden_media(media_rows),
                ))
                continue
            out.append(_open_row(row, media_rows, passphrase))
        except (CapsuleCryptoError, ValueError) as exc:
            logger.warning("failed to open capsule %s: %s", row["id"], type(exc).__name__)
            out.append(_view(
                row,
                str(cfg["decryption_error_title"]),
                None,
                STATE_ERROR,
                _hidden_media(media_rows),
            ))
    return out


async def _unlockable_row(capsule_id: str, now: Optional[datetime]):
    row = await db.get_capsule_row(capsule_id)
    if not row:
        raise ValueError("Capsule not found")
    if not is_unlockable(row, now):
        raise CapsuleLocked(f"Capsule {capsule_id} is sealed until {row['unlock_at']}")
    return row


async def open_capsule(
    capsule_id: str,
    *,
    passphrase: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CapsuleView:
    """Decrypt one capsule whose unlock date has passed."""
    row = await _unlockable_row(capsule_id, now)
    media_rows = await db.list_media_rows(capsule_id)
    return _open_row(row, media_rows, passphrase)


async def read_media(
    capsule_id: str,
    media_id: str,
    *,
    passphrase: Optional[str] = None,
    store: Optional[MediaStore] = None,
    now: Optional[datetime] = None,
) -> bytes:
    """Return the plaintext bytes of one media item of an unlockable capsule."""
    row = await _unlockable_row(capsule_id, now)
    media_rows = await db.list_media_rows(capsule_id)
    item = next((m for m in media_rows if m["id"] == media_id), None)
    if item is None:
        raise ValueError("Media item not found")

    key = _resolve_key(row, passphrase)
    if item["type"] == "text":
        return CODEC.decrypt_text(item["content"], key).encode("utf-8")
    store = store or media_store()
    blob = await asyncio.to_thread(store.get, item["content"])
    return await asyncio.to_thread(CODEC.decrypt_binary, blob, key)


# ---------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------

async def unlock_capsule(capsule_id: str, *, now: Optional[datetime] = None) -> None:
    """Mark a capsule as opened once its unlock date has passed."""
    await _unlockable_row(capsule_id, now)
    await db.mark_unlocked(capsule_id)
    logger.info("unlocked capsule %s", capsule_id)


async def delete_capsule(capsule_id: str, *, store: Optional[MediaStore] = None) -> None:
    """Delete a capsule together with its key and sealed blobs."""
    row = await db.get_capsule_row(capsule_id)
    if not row:
        raise ValueError("Capsule not found")
    media_rows = await db.list_media_rows(capsule_id)
    urls = [m["content"] for m in media_rows if m["type"] != "text"]

    await db.delete_capsule_row(capsule_id)
    if urls:
        _discard_blobs(store or media_store(), urls)
    logger.info("deleted capsule %s", capsule_id)
