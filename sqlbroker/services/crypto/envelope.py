from __future__ import annotations

import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from sqlbroker.core.errors import ConfigurationError, EnvelopeAuthenticationError
from sqlbroker.services.crypto.utils import decode_key_material, hex_decode, hex_encode


KEY_SIZE = 32
NONCE_SIZE = 12


@dataclass(frozen=True)
class Envelope:
    ciphertext_hex: str
    wrapped_key_hex: str


def load_master_key(value: str | None) -> bytes:
    # Decode configured key material; both absence and a wrong length are fatal at startup.
    if not value:
        raise ConfigurationError("master key is not configured")
    try:
        key = decode_key_material(value)
    except ValueError as exc:
        raise ConfigurationError("master key must be hex or base64 encoded") from exc
    if len(key) != KEY_SIZE:
        raise ConfigurationError(f"master key must be exactly {KEY_SIZE * 8} bits")
    return key


def _seal(key: bytes, plaintext: bytes, associated_data: bytes | None = None) -> bytes:
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, associated_data)


def _open(key: bytes, sealed: bytes, associated_data: bytes | None = None) -> bytes:
    if len(sealed) < NONCE_SIZE:
        raise EnvelopeAuthenticationError("ciphertext too short")
    nonce, ciphertext = sealed[:NONCE_SIZE], sealed[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, associated_data)
    except InvalidTag as exc:
        raise EnvelopeAuthenticationError("envelope authentication failed") from exc


def _decode(value: str) -> bytes:
    try:
        return hex_decode(value)
    except ValueError as exc:
        raise EnvelopeAuthenticationError("envelope is not valid hex") from exc


class EnvelopeCipher:
    """Two-layer AES-256-GCM envelope: a fresh data key per secret, wrapped under the master key.

    Each sealed value is ``nonce || ciphertext || tag``. ``associated_data`` binds
    the data layer to its owner (tenant and resource ids); the same bytes must be
    supplied to decrypt. The master key is held in memory only and never appears
    in errors or logs.
    """

    def __init__(self, master_key: bytes) -> None:
        if len(master_key) != KEY_SIZE:
            raise ConfigurationError(f"master key must be exactly {KEY_SIZE * 8} bits")
        self._master_key = bytes(master_key)

    def __repr__(self) -> str:
        return "EnvelopeCipher(master_key=<redacted>)"

    def encrypt(self, plaintext: bytes, *, associated_data: bytes | None = None) -> Envelope:
        data_key = AESGCM.generate_key(bit_length=KEY_SIZE * 8)
        ciphertext = _seal(data_key, plaintext, associated_data)
        wrapped_key = _seal(self._master_key, data_key)
        return Envelope(ciphertext_hex=hex_encode(ciphertext), wrapped_key_hex=hex_encode(wrapped_key))

    def decrypt(self, envelope: Envelope, *, associated_data: bytes | None = None) -> bytes:
        data_key = self._unwrap(envelope)
        return _open(data_key, _decode(envelope.ciphertext_hex), associated_data)

    def rewrap(
        self,
        envelope: Envelope,
        target: EnvelopeCipher,
        *,
        associated_data: bytes | None = None,
    ) -> Envelope:
        # Rotate the master key without touching the data ciphertext.
        data_key = self._unwrap(envelope)
        # Authenticate the payload under the recovered key before handing it to the new master.
        _open(data_key, _decode(envelope.ciphertext_hex), associated_data)
        return Envelope(
            ciphertext_hex=envelope.ciphertext_hex,
            wrapped_key_hex=hex_encode(_seal(target._master_key, data_key)),
        )

    def _unwrap(self, envelope: Envelope) -> bytes:
        data_key = _open(self._master_key, _decode(envelope.wrapped_key_hex))
        if len(data_key) != KEY_SIZE:
            raise EnvelopeAuthenticationError("wrapped key has an invalid length")
        return data_key


def build_cipher(master_key: str | None) -> EnvelopeCipher:
    return EnvelopeCipher(load_master_key(master_key))
