from __future__ import annotations

import base64
import os

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

IV_LENGTH = 16
TAG_LENGTH = 16
SALT = b"marketing-intelligence-platform-salt"
ITERATIONS = 100000


def derive_key(secret: str | None) -> bytes:
    if not secret:
        raise ValueError("TOKEN_ENCRYPTION_KEY is not set")
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=SALT, iterations=ITERATIONS)
    return kdf.derive(secret.encode("utf-8"))


def encrypt(text: str, secret: str | None) -> str:
    """Encrypt to `ciphertext:iv:tag`, each part base64."""
    key = derive_key(secret)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, text.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return ":".join(base64.b64encode(p).decode("ascii") for p in (ciphertext, iv, tag))


def decrypt(data: str, secret: str | None) -> str:
    parts = (data or "").split(":")
    if len(parts) != 3:
        raise ValueError("Invalid encrypted data format")
    try:
        ciphertext, iv, tag = (base64.b64decode(p, validate=True) for p in parts)
    except ValueError as e:
        raise ValueError("Invalid encrypted data format") from e
    key = derive_key(secret)
    plain = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    return plain.decode("utf-8")


def looks_encrypted(data: str | None) -> bool:
    return bool(data) and len(str(data).split(":")) == 3
