# src/tbw/crypto/keys.py
from __future__ import annotations

"""Passphrase-derived Ed25519 keys.

The delegate is identified by the public key derived from its passphrase; the
same derivation signs transfers in the in-memory host.
"""

import hashlib

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey


def _private_key(passphrase: str) -> Ed25519PrivateKey:
    seed = hashlib.sha256(passphrase.encode("utf-8")).digest()
    return Ed25519PrivateKey.from_private_bytes(seed)


def public_key_from_passphrase(passphrase: str) -> str:
    pub = _private_key(passphrase).public_key()
    raw = pub.public_bytes(encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw)
    return raw.hex()


def sign_message(message: bytes, passphrase: str) -> str:
    return _private_key(passphrase).sign(message).hex()


def verify_message(message: bytes, signature: str, public_key: str) -> bool:
    try:
        key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key))
        key.verify(bytes.fromhex(signature), message)
        return True
    except (InvalidSignature, ValueError):
        return False
