# -*- coding: utf-8 -*-
"""Command line front end for TimeCapsule.

Thin layer over :mod:`timecapsule.logic`; every command runs one coroutine.
"""
from __future__ import annotations

import argparse
import asyncio
import getpass as _getpass
import logging
import os
import sqlite3
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from timecapsule import logic
from timecapsule.crypto import CapsuleCryptoError, generate_key
from timecapsule.keystore import WRAPPED

logger = logging.getLogger(__name__)

PASSPHRASE_ENV = "TIMECAPSULE_PASSPHRASE"


def _configure_logging(cfg) -> None:
    level = getattr(logging, str(cfg.get("log_level", "WARNING")).upper(), logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _passphrase(cfg, *, needed: bool) -> Optional[str]:
    """Return the vault passphrase from the environment or a prompt."""
    value = os.environ.get(PASSPHRASE_ENV)
    if value or not needed:
        return value
    return _getpass.getpass("Vault passphrase: ")


def _parse_when(text: str) -> datetime:
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 date: {text!r}") from exc


def _media_inputs(texts: List[str], files: List[str]) -> List[logic.MediaInput]:
    items = [logic.MediaInput(type="text", content=t) for t in texts]
    for spec in files:
        media_type, _, path = spec.partition(":")
        if not path:
            raise ValueError(f"--file expects TYPE:PATH, got {spec!r}")
        p = Path(path)
        items.append(logic.MediaInput(
            type=media_type,
            content=p.read_bytes(),
            extension=p.suffix.lstrip(".") or "dat",
        ))
    return items


# ---------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------

def cmd_init(cfg) -> bool:
    asyncio.run(logic.init_db())
    print(f"Database ready: {logic.db.DB_PATH}")
    return True


def cmd_keygen(cfg) -> bool:
    print(generate_key())
    return True


def cmd_seal(cfg, args) -> bool:
    media = _media_inputs(args.text or [], args.file or [])
    passphrase = _passphrase(cfg, needed=cfg.get("key_policy") == WRAPPED)
    capsule_id = asyncio.run(logic.create_capsule(
        args.title,
        args.unlock,
        description=args.description,
        media=media,
        owner=args.owner,
        passphrase=passphrase,
    ))
    print(capsule_id)
    return True


def cmd_list(cfg, args) -> bool:
    capsules = asyncio.run(logic.list_capsules(
        args.owner,
        passphrase=_passphrase(cfg, needed=False),
        config=cfg,
    ))
    for c in capsules:
        print(f"{c.id}  {c.unlock_at}  [{c.state}]  {c.title}")
    return True


def cmd_open(cfg, args) -> bool:
    capsule = asyncio.run(logic.open_capsule(
        args.capsule_id,
        passphrase=_passphrase(cfg, needed=False),
    ))
    print(capsule.title)
    if capsule.description:
        print(capsule.description)
    for item in capsule.media:
        shown = item.content if item.type == "text" else "(sealed blob)"
        print(f"- {item.id} {item.type}: {shown}")
    return True


def cmd_export_media(cfg, args) -> bool:
    data = asyncio.run(logic.read_media(
        args.capsule_id,
        args.media_id,
        passphrase=_passphrase(cfg, needed=False),
    ))
    Path(args.output).write_bytes(data)
    print(f"Wrote {len(data)} bytes to {args.output}")
    return True


def cmd_unlock(cfg, args) -> bool:
    asyncio.run(logic.unlock_capsule(args.capsule_id))
    return True


def cmd_delete(cfg, args) -> bool:
    asyncio.run(logic.delete_capsule(args.capsule_id))
    return True


# ---------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        prog="timecapsule",
        description="Seal journal capsules that open on a future date",
        epilog=f"Wrapped key policies read the vault passphrase from ${PASSPHRASE_ENV}.",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init", help="Create the capsule database")
    sub.add_parser("keygen", help="Print a fresh capsule key")

    ap_seal = sub.add_parser("seal", help="Seal a new capsule")
    ap_seal.add_argument("title", help="Capsule title")
    ap_seal.add_argument("--unlock", type=_parse_when, required=True, help="Unlock date (ISO-8601, UTC if naive)")
    ap_seal.add_argument("--description", help="Optional description")
    ap_seal.add_argument("--owner", default="", help="Owner label")
    ap_seal.add_argument("--text", action="append", help="Text media item (repeatable)")
    ap_seal.add_argument("--file", action="append", help="Binary media item as TYPE:PATH, TYPE in photo/video/audio (repeatable)")

    ap_list = sub.add_parser("list", help="List capsules")
    ap_list.add_argument("--owner", help="Only capsules of this owner")

    ap_open = sub.add_parser("open", help="Show a capsule whose unlock date has passed")
    ap_open.add_argument("capsule_id")

    ap_export = sub.add_parser("export-media", help="Decrypt one media item to a file")
    ap_export.add_argument("capsule_id")
    ap_export.add_argument("media_id")
    ap_export.add_argument("output", help="Destination path")

    ap_unlock = sub.add_parser("unlock", help="Mark a capsule as opened")
    ap_unlock.add_argument("capsule_id")

    ap_delete = sub.add_parser("delete", help="Delete a capsule, its key and its media")
    ap_delete.add_argument("capsule_id")

    args = ap.parse_args(argv)
    cfg = logic.load_config()
    _configure_logging(cfg)

    commands = {
        "seal": cmd_seal,
        "list": cmd_list,
        "open": cmd_open,
        "export-media": cmd_export_media,
        "unlock": cmd_unlock,
        "delete": cmd_delete,
    }
    try:
        if args.cmd == "init":
            ok = cmd_init(cfg)
        elif args.cmd == "keygen":
            ok = cmd_keygen(cfg)
        else:
            asyncio.run(logic.init_db())
            ok = commands[args.cmd](cfg, args)
    except (CapsuleCryptoError, ValueError, OSError, sqlite3.Error) as exc:
        logger.debug("command %s failed", args.cmd, exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0 if ok else 1
