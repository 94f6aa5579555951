from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
from typing import Any

from cryptography.hazmat.primitives.ciphers.aead import AESGCM


_NONCE_BYTES = 12


def decode_key_material(value: str) -> bytes:
    """Decode base64 or hex key material into raw bytes."""
    stripped = value.strip()
    if not stripped:
        raise ValueError("key material is empty")
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        try:
            return base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("key material must be base64 or hex") from exc


def derive_key(secret: str, *, purpose: str) -> bytes:
    # One secret feeds several keys; the purpose label keeps them distinct.
    return hashlib.sha256(f"tenantshield:{purpose}:{secret}".encode("utf-8")).digest()


def b64encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def b64decode_str(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"))


def seal_text(key: bytes, plaintext: str, *, aad: bytes) -> str:
    """Encrypt a short string with AES-GCM, returning base64(nonce || ciphertext || tag).

    The associated data binds the token to where it is stored, so a token
    copied under another field fails to open.
    """
    nonce = os.urandom(_NONCE_BYTES)
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), aad)
    return b64encode_bytes(nonce + sealed)


def open_text(key: bytes, token: str, *, aad: bytes) -> str:
    # Raises cryptography.exceptions.InvalidTag when the token or its binding was altered.
    raw = b64decode_str(token)
    return AESGCM(key).decrypt(raw[:_NONCE_BYTES], raw[_NONCE_BYTES:], aad).decode("utf-8")


def sha256_hex(value: bytes) -> str:
    return hashlib.sha256(value).hexdigest()


def stable_json(value: Any) -> bytes:
    # Sorted keys and compact separators give one byte representation per value.
    return json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")
