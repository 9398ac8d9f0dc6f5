"""
Payload encryption.

AES-256-GCM with a random 96-bit nonce per call. The wire format is
base64(nonce || ciphertext || tag).
"""

import base64
import os
from typing import Union
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_SIZE = 32
NONCE_SIZE = 12  # GCM standard nonce size


def _key_bytes(key: Union[str, bytes]) -> bytes:
    return key.encode("utf-8") if isinstance(key, str) else bytes(key)


def validate_key(key: Union[str, bytes]) -> None:
    """Raise ValueError unless the key is exactly 32 bytes."""
    if len(_key_bytes(key)) != KEY_SIZE:
        raise ValueError("encryption key must be exactly 32 bytes long")


def encrypt(data: bytes, key: Union[str, bytes]) -> str:
    """Encrypt data and return the base64-encoded nonce and ciphertext."""
    validate_key(key)
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(_key_bytes(key))
    ciphertext = aesgcm.encrypt(nonce, data, None)
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def decrypt(encoded: str, key: Union[str, bytes]) -> bytes:
    """Reverse of ``encrypt``. Raises InvalidTag if the data was tampered with."""
    validate_key(key)
    raw = base64.b64decode(encoded)
    if len(raw) < NONCE_SIZE:
        raise ValueError("encrypted payload is too short")
    aesgcm = AESGCM(_key_bytes(key))
    return aesgcm.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
