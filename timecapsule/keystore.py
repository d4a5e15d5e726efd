# -*- coding: utf-8 -*-
"""Key placement policies for capsule records.

A capsule key always travels with its capsule record. What differs is the
form it is stored in:

    inline:  the 64-char hex key, as generated.
    wrapped: the key wrapped with AES-GCM under a key derived from a vault
             passphrase (scrypt -> HKDF-SHA256), bound to the capsule id.

The capsule key itself is never derived from the passphrase.
"""
from __future__ import annotations

from typing import Optional
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .crypto import KEY_LEN, CapsuleCryptoError, decode_key

# ---------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------

SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1

SALT_LEN = 16
NONCE_LEN = 12
KEK_LEN = 32

HKDF_INFO_WRAP = b"timecapsule/wrap-key"

INLINE = "inline"
WRAPPED = "wrapped"


class KeyUnavailable(CapsuleCryptoError):
    """A stored capsule key could not be recovered."""


# ---------------------------------------------------------------------
# Wrap key derivation
# ---------------------------------------------------------------------

def derive_wrap_key(passphrase: str, salt: bytes) -> bytes:
    """Derive the AES-GCM wrap key: scrypt over *passphrase*, then HKDF-SHA256."""
    kek = Scrypt(salt=salt, length=KEK_LEN, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P).derive(
        passphrase.encode("utf-8")
    )
    return HKDF(algorithm=hashes.SHA256(), length=KEY_LEN, salt=None, info=HKDF_INFO_WRAP).derive(kek)


# ---------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------

class InlineKeyPolicy:
    """Store the capsule key in the record exactly as generated."""

    name = INLINE

    def store(self, capsule_id: str, key_hex: str) -> str:
        decode_key(key_hex)
        return key_hex.lower()

    def load(self, capsule_id: str, material: str) -> str:
        decode_key(material)
        return material


class WrappedKeyPolicy:
    """Wrap the capsule key under a passphrase-derived key."""

    name = WRAPPED

    def __init__(self, passphrase: str) -> None:
        if not passphrase:
            raise ValueError("Vault passphrase required")
        self._passphrase = passphrase

    def store(self, capsule_id: str, key_hex: str) -> str:
        key = decode_key(key_hex)
        salt = secrets.token_bytes(SALT_LEN)
        nonce = secrets.token_bytes(NONCE_LEN)
        wrapped = AESGCM(derive_wrap_key(self._passphrase, salt)).encrypt(nonce, key, capsule_id.encode())
        return (salt + nonce + wrapped).hex()

    def load(self, capsule_id: str, material: str) -> str:
        try:
            raw = bytes.fromhex(material)
        except (TypeError, ValueError) as exc:
            raise KeyUnavailable("wrapped key is not hex") from exc
        if len(raw) <= SALT_LEN + NONCE_LEN:
            raise KeyUnavailable("wrapped key is truncated")
        salt, nonce, wrapped = raw[:SALT_LEN], raw[SALT_LEN:SALT_LEN + NONCE_LEN], raw[SALT_LEN + NONCE_LEN:]
        try:
            key = AESGCM(derive_wrap_key(self._passphrase, salt)).decrypt(nonce, wrapped, capsule_id.encode())
        except InvalidTag as exc:
            raise KeyUnavailable("wrong passphrase or tampered key") from exc
        if len(key) != KEY_LEN:
            raise KeyUnavailable("unwrapped key has the wrong length")
        return key.hex()


def policy_for(name: str, passphrase: Optional[str] = None):
    """Return the key policy called *name*."""
    if name == INLINE:
        return InlineKeyPolicy()
    if name == WRAPPED:
        if not passphrase:
            raise KeyUnavailable("Vault passphrase required for wrapped keys")
        return WrappedKeyPolicy(passphrase)
    raise ValueError(f"Unknown key policy: {name!r}")
