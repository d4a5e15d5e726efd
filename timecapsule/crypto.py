# -*- coding: utf-8 -*-
"""Sealed content codec for TimeCapsule.

This module encapsulates the *stateless* sealing scheme shared by every
capsule field: per-capsule key generation, and AES-256-CBC/PKCS#7 sealing of
UTF-8 text and binary payloads. It does **not** perform any database or file
I/O, and never logs key material or plaintext.

Wire framing (one SealedBlock)::

    iv (16 bytes) || ciphertext (n * 16 bytes)

Text fields carry the same block as ``iv.hex() + base64(ciphertext)``.
"""
from __future__ import annotations

import base64
import binascii
import re
import secrets
from typing import Callable, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

# ---------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------

KEY_LEN = 32
IV_LEN = 16
BLOCK_LEN = 16

KEY_HEX_LEN = KEY_LEN * 2
IV_HEX_LEN = IV_LEN * 2

KEY_HEX_RE = re.compile(r"\A[0-9a-fA-F]{%d}\Z" % KEY_HEX_LEN)
IV_HEX_RE = re.compile(r"\A[0-9a-fA-F]{%d}\Z" % IV_HEX_LEN)

RandomSource = Callable[[int], bytes]


# ---------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------

class CapsuleCryptoError(Exception):
    """Base class for every failure raised by the sealing layer."""


class RandomSourceUnavailable(CapsuleCryptoError, RuntimeError):
    """The platform could not supply cryptographically secure randomness."""


class InvalidKeyFormat(CapsuleCryptoError, ValueError):
    """A key is not 64 hex characters (32 bytes)."""


class MalformedInput(CapsuleCryptoError, ValueError):
    """A sealed payload is too short or badly framed to hold an IV + ciphertext."""


class DecryptionFailed(CapsuleCryptoError):
    """Wrong key, corrupted ciphertext or tampering."""


# ---------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------

def system_random(n: int) -> bytes:
    """Return *n* bytes from the OS CSPRNG."""
    return secrets.token_bytes(n)


class AesCbcCipher:
    """Block-cipher provider: AES-256 in CBC mode with PKCS#7 padding."""

    block_size = BLOCK_LEN

    def encrypt(self, key: bytes, iv: bytes, plaintext: bytes) -> bytes:
        padder = padding.PKCS7(self.block_size * 8).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        return encryptor.update(padded) + encryptor.finalize()

    def decrypt(self, key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
        """Decrypt and strip padding; raises ValueError on bad padding."""
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(self.block_size * 8).unpadder()
        return unpadder.update(padded) + unpadder.finalize()


# ---------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------

def decode_key(key_hex: str) -> bytes:
    """Return the 32 raw key bytes encoded by *key_hex*."""
    if not isinstance(key_hex, str) or not KEY_HEX_RE.match(key_hex):
        raise InvalidKeyFormat(f"key must be {KEY_HEX_LEN} hex characters")
    return bytes.fromhex(key_hex)


# ---------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------

class SealedContentCodec:
    """Seal and unseal capsule content with a per-capsule key.

    Both the text and the binary variants go through :meth:`seal` and
    :meth:`unseal`, so they always share cipher, mode, padding and IV length.
    """

    def __init__(
        self,
        random_source: Optional[RandomSource] = None,
        cipher: Optional[AesCbcCipher] = None,
    ) -> None:
        self._random_source = random_source or system_random
        self._cipher = cipher or AesCbcCipher()

    def _random_bytes(self, n: int) -> bytes:
        try:
            data = self._random_source(n)
        except (OSError, NotImplementedError) as exc:
            raise RandomSourceUnavailable("secure random source failed") from exc
        if not isinstance(data, (bytes, bytearray)) or len(data) != n:
            raise RandomSourceUnavailable(f"random source did not return {n} bytes")
        return bytes(data)

    # -- keys ---------------------------------------------------------

    def generate_key(self) -> str:
        """Return a fresh 256-bit key as 64 lowercase hex characters."""
        return self._random_bytes(KEY_LEN).hex()

    # -- core primitive -----------------------------------------------

    def seal(self, payload: bytes, key_hex: str) -> bytes:
        """Encrypt *payload*; return ``iv || ciphertext``."""
        key = decode_key(key_hex)
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise TypeError(f"payload must be bytes-like, not {type(payload).__name__}")
        iv = self._random_bytes(IV_LEN)
        return iv + self._cipher.encrypt(key, iv, bytes(payload))

    def unseal(self, sealed: bytes, key_hex: str) -> bytes:
        """Decrypt an ``iv || ciphertext`` block produced by :meth:`seal`."""
        key = decode_key(key_hex)
        if len(sealed) < IV_LEN:
            raise MalformedInput(f"sealed block shorter than {IV_LEN} bytes")
        iv, ciphertext = bytes(sealed[:IV_LEN]), bytes(sealed[IV_LEN:])
        if not ciphertext:
            raise MalformedInput("sealed block has no ciphertext")
        if len(ciphertext) % BLOCK_LEN:
            raise DecryptionFailed("ciphertext is not a whole number of blocks")
        try:
            return self._cipher.decrypt(key, iv, ciphertext)
        except ValueError as exc:
            raise DecryptionFailed("data corrupted or wrong key") from exc

    # -- text adapters ------------------------------------------------

    def encrypt_text(self, plaintext: str, key_hex: str) -> str:
        """Seal a UTF-8 string; return ``iv_hex + base64(ciphertext)``."""
        block = self.seal(plaintext.encode("utf-8"), key_hex)
        return block[:IV_LEN].hex() + base64.b64encode(block[IV_LEN:]).decode("ascii")

    def decrypt_text(self, sealed: str, key_hex: str, *, require_nonempty: bool = False) -> str:
        """Reverse :meth:`encrypt_text`.

        With *require_nonempty* an empty plaintext is treated as a failed
        decryption, for fields that can never legitimately be empty.
        """
        decode_key(key_hex)
        if not isinstance(sealed, str) or len(sealed) < IV_HEX_LEN:
            raise MalformedInput(f"sealed text shorter than {IV_HEX_LEN} characters")
        iv_hex, body = sealed[:IV_HEX_LEN], sealed[IV_HEX_LEN:]
        if not body:
            raise MalformedInput("sealed text has no ciphertext")
        if not IV_HEX_RE.match(iv_hex):
            raise MalformedInput("sealed text does not start with a hex IV")
        try:
            ciphertext = base64.b64decode(body.encode("ascii"), validate=True)
        except (UnicodeEncodeError, binascii.Error) as exc:
            raise MalformedInput("sealed text ciphertext is not base64") from exc

        plain = self.unseal(bytes.fromhex(iv_hex) + ciphertext, key_hex)
        try:
            text = plain.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionFailed("data corrupted or wrong key") from exc
        if require_nonempty and not text:
            raise DecryptionFailed("decryption produced an empty string")
        return text

    # -- binary adapters ----------------------------------------------

    def encrypt_binary(self, payload: bytes, key_hex: str) -> bytes:
        """Seal a binary payload; return the raw ``iv || ciphertext`` blob."""
        return self.seal(payload, key_hex)

    def decrypt_binary(self, sealed: bytes, key_hex: str) -> bytes:
        """Reverse :meth:`encrypt_binary`."""
        return self.unseal(sealed, key_hex)


# ---------------------------------------------------------------------
# Module-level API (default system codec)
# ---------------------------------------------------------------------

_DEFAULT = SealedContentCodec()

generate_key = _DEFAULT.generate_key
seal = _DEFAULT.seal
unseal = _DEFAULT.unseal
encrypt_text = _DEFAULT.encrypt_text
decrypt_text = _DEFAULT.decrypt_text
encrypt_binary = _DEFAULT.encrypt_binary
decrypt_binary = _DEFAULT.decrypt_binary
