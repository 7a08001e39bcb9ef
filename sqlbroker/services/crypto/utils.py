from __future__ import annotations

import base64
import binascii
import hashlib


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


def hex_encode(value: bytes) -> str:
    return value.hex()


def hex_decode(value: str) -> bytes:
    # Stored envelope fields are lowercase hex; reject anything else outright.
    if value != value.lower():
        raise ValueError("hex value must be lowercase")
    return bytes.fromhex(value)


def sha256_hex(value: bytes) -> str:
    return hashlib.sha256(value).hexdigest()
