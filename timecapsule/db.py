#! /usr/bin/python3
# -*- coding: utf-8 -*-
"""SQLite schema and async data access for TimeCapsule."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence
import os
import aiosqlite

DB_PATH = os.environ.get("TIMECAPSULE_DB", "timecapsules.sqlite3")


# ---------------------------------------------------------------------
# Base schema (new installs)
# ---------------------------------------------------------------------

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS capsules (
    id                  TEXT PRIMARY KEY,
    owner               TEXT NOT NULL DEFAULT '',
    created_at          TEXT NOT NULL,
    unlock_at           TEXT NOT NULL,
    is_sealed           INTEGER NOT NULL DEFAULT 1,
    is_unlocked         INTEGER NOT NULL DEFAULT 0,

    -- Sealed text fields (iv_hex + base64 ciphertext)
    title               TEXT NOT NULL,
    description         TEXT,

    -- Plaintext location metadata
    latitude            REAL,
    longitude           REAL,
    address             TEXT,

    -- Capsule key, in the form chosen by key_policy
    key_policy          TEXT NOT NULL DEFAULT 'inline',
    key_material        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS media_items (
    id              TEXT PRIMARY KEY,
    capsule_id      TEXT NOT NULL,
    position        INTEGER NOT NULL,
    type            TEXT NOT NULL CHECK (type IN ('text', 'photo', 'video', 'audio')),

    -- Sealed text for 'text', blob URL otherwise
    content         TEXT NOT NULL,
    timestamp       TEXT NOT NULL,

    latitude        REAL,
    longitude       REAL,
    address         TEXT,

    FOREIGN KEY (capsule_id) REFERENCES capsules(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_capsules_owner ON capsules(owner);
CREATE INDEX IF NOT EXISTS idx_media_capsule ON media_items(capsule_id);
"""

CAPSULE_COLUMNS = (
    "id", "owner", "created_at", "unlock_at", "is_sealed", "is_unlocked",
    "title", "description", "latitude", "longitude", "address",
    "key_policy", "key_material",
)

MEDIA_COLUMNS = (
    "id", "capsule_id", "position", "type", "content", "timestamp",
    "latitude", "longitude", "address",
)


# ---------------------------------------------------------------------
# Migrations (existing installs)
# ---------------------------------------------------------------------

async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    """Return True if `column` is present in `table`."""
    cur = await db.execute(f"PRAGMA table_info({table})")
    rows = await cur.fetchall()
    await cur.close()
    for r in rows:
        # PRAGMA table_info columns: cid, name, type, notnull, default_value, pk
        if len(r) >= 2 and (r[1] == column or (hasattr(r, "keys") and r["name"] == column)):
            return True
    return False


async def migrate_db() -> List[str]:
    """Idempotent migrations for DBs that predate key policies and locations.

    Returns the statements that were applied.
    """
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("PRAGMA foreign_keys = ON;")
        statements = []
        if not await _column_exists(db, "capsules", "key_policy"):
            statements.append("ALTER TABLE capsules ADD COLUMN key_policy TEXT NOT NULL DEFAULT 'inline';")
        if not await _column_exists(db, "capsules", "is_unlocked"):
            statements.append("ALTER TABLE capsules ADD COLUMN is_unlocked INTEGER NOT NULL DEFAULT 0;")
        for table in ("capsules", "media_items"):
            for column, ddl in (("latitude", "REAL"), ("longitude", "REAL"), ("address", "TEXT")):
                if not await _column_exists(db, table, column):
                    statements.append(f"ALTER TABLE {table} ADD COLUMN {column} {ddl};")

        for stmt in statements:
            await db.execute(stmt)

        if statements:
            await db.commit()
        return statements


# ---------------------------------------------------------------------
# Connection / initialization
# ---------------------------------------------------------------------

async def init_db() -> None:
    """Create tables if they don't exist and run lightweight migrations."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.executescript(SCHEMA_SQL)
        await db.commit()
    await migrate_db()


# ---------------------------------------------------------------------
# Capsules and media items
# ---------------------------------------------------------------------

async def insert_capsule_row(capsule: Dict[str, Any], media: Sequence[Dict[str, Any]]) -> None:
    """Insert a capsule and its media items in a single transaction."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("PRAGMA foreign_keys = ON;")
        await db.execute(
            f"INSERT INTO capsules ({', '.join(CAPSULE_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in CAPSULE_COLUMNS)})",
            tuple(capsule.get(c) for c in CAPSULE_COLUMNS),
        )
        if media:
            await db.executemany(
                f"INSERT INTO media_items ({', '.join(MEDIA_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in MEDIA_COLUMNS)})",
                [tuple(m.get(c) for c in MEDIA_COLUMNS) for m in media],
            )
        await db.commit()


async def list_capsule_rows(owner: Optional[str] = None):
    """Return capsule rows, newest first; all owners when *owner* is None."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        if owner is None:
            cur = await db.execute("SELECT * FROM capsules ORDER BY created_at DESC")
        else:
            cur = await db.execute(
                """
                SELECT *
                  FROM capsules
                 WHERE owner = ?
                 ORDER BY created_at DESC
                """,
                (owner,),
            )
        rows = await cur.fetchall()
        await cur.close()
        return rows


async def get_capsule_row(capsule_id: str):
    """Fetch a capsule row by id; returns Row or None."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        cur = await db.execute("SELECT * FROM capsules WHERE id = ?", (capsule_id,))
        row = await cur.fetchone()
        await cur.close()
        return row


async def list_media_rows(capsule_id: str):
    """Return media rows for a capsule in their original order."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        cur = await db.execute(
            """
            SELECT *
              FROM media_items
             WHERE capsule_id = ?
             ORDER BY position ASC
            """,
            (capsule_id,),
        )
        rows = await cur.fetchall()
        await cur.close()
        return rows


async def mark_unlocked(capsule_id: str) -> None:
    """Record that a capsule has been opened."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            "UPDATE capsules SET is_unlocked = 1 WHERE id = ?",
            (capsule_id,),
        )
        await db.commit()


async def delete_capsule_row(capsule_id: str) -> None:
    """Delete a capsule; its key goes with the row and media rows cascade."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("PRAGMA foreign_keys = ON;")
        await db.execute("DELETE FROM capsules WHERE id = ?", (capsule_id,))
        await db.commit()
