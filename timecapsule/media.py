# -*- coding: utf-8 -*-
"""Local object store for sealed media blobs.

Blobs are opaque ``encrypt_binary`` output; this module never sees keys or
plaintext. Each blob is addressed by a ``file://`` URL, which is what the
capsule record stores in a media item's ``content`` field.
"""
from __future__ import annotations

from pathlib import Path
from urllib.parse import unquote, urlparse
from datetime import datetime, timezone
import logging
import re
import uuid

logger = logging.getLogger(__name__)

BINARY_TYPES = ("photo", "video", "audio")

EXT_UNSAFE_RE = re.compile(r"[^0-9A-Za-z]")


class MediaStore:
    """Sealed blob storage rooted at a directory."""

    def __init__(self, root) -> None:
        self.root = Path(root).expanduser().resolve()

    def _path_for(self, url: str) -> Path:
        parsed = urlparse(url)
        if parsed.scheme != "file":
            raise ValueError(f"Unsupported media URL scheme: {parsed.scheme!r}")
        path = Path(unquote(parsed.path)).resolve()
        if self.root != path and self.root not in path.parents:
            raise ValueError("Media URL points outside the media store")
        return path

    def put(self, blob: bytes, media_type: str, extension: str = "dat") -> str:
        """Write *blob* and return its URL."""
        if media_type not in BINARY_TYPES:
            raise ValueError(f"Unsupported media type: {media_type!r}")
        ext = EXT_UNSAFE_RE.sub("", (extension or "").split("?")[0]) or "dat"
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
        target = self.root / f"{media_type}s" / f"{stamp}-{uuid.uuid4().hex}.{ext}"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(blob)
        logger.debug("stored %s blob %s (%d bytes)", media_type, target.name, len(blob))
        return target.as_uri()

    def get(self, url: str) -> bytes:
        """Return the blob stored at *url*."""
        return self._path_for(url).read_bytes()

    def delete(self, url: str) -> None:
        """Remove the blob at *url*; a missing blob is not an error."""
        path = self._path_for(url)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("media blob already gone: %s", path.name)
