"""Tests for payload encryption."""

import base64

import pytest
from cryptography.exceptions import InvalidTag

from conftest import ENCRYPTION_KEY
from monitorly_probe.encryption import NONCE_SIZE, decrypt, encrypt, validate_key


def test_same_plaintext_encrypts_differently():
    plaintext = b'{"metrics": []}'

    first = encrypt(plaintext, ENCRYPTION_KEY)
    second = encrypt(plaintext, ENCRYPTION_KEY)

    assert first != second
    assert base64.b64decode(first)[:NONCE_SIZE] != base64.b64decode(second)[:NONCE_SIZE]
    assert decrypt(first, ENCRYPTION_KEY) == plaintext
    assert decrypt(second, ENCRYPTION_KEY) == plaintext


def test_output_layout():
    raw = base64.b64decode(encrypt(b"abc", ENCRYPTION_KEY))
    # nonce, ciphertext of the same length as the input, 16-byte tag
    assert len(raw) == NONCE_SIZE + 3 + 16


def test_bytes_key_accepted():
    key = bytes(range(32))
    assert decrypt(encrypt(b"data", key), key) == b"data"


@pytest.mark.parametrize("key", ["", "short", "x" * 31, "x" * 33])
def test_key_must_be_32_bytes(key):
    with pytest.raises(ValueError, match="exactly 32 bytes"):
        validate_key(key)
    with pytest.raises(ValueError):
        encrypt(b"data", key)


def test_tampered_ciphertext_rejected():
    raw = bytearray(base64.b64decode(encrypt(b"data", ENCRYPTION_KEY)))
    raw[-1] ^= 0x01

    with pytest.raises(InvalidTag):
        decrypt(base64.b64encode(bytes(raw)).decode(), ENCRYPTION_KEY)


def test_wrong_key_rejected():
    encoded = encrypt(b"data", ENCRYPTION_KEY)
    with pytest.raises(InvalidTag):
        decrypt(encoded, "f" * 32)
