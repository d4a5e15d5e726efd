# -*- coding: utf-8 -*-
"""TimeCapsule package.

Modules:
    crypto:    Sealed content codec (per-capsule keys, AES-256-CBC sealing).
    keystore:  Key placement policies (inline / passphrase-wrapped).
    media:     Local store for sealed media blobs.
    db:        SQLite schema + async data access.
    logic:     Capsule workflows that compose db + media + crypto.
    cli:       argparse command line.
"""

__all__ = ["crypto", "keystore", "media", "db", "logic", "cli"]
