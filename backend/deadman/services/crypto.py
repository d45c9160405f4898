"""Envelope encryption for secret payloads: AES-256-GCM with a server-held key."""

import base64
import binascii
import hashlib
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from deadman.config import settings

IV_BYTES = 12
TAG_BYTES = 16


class DecryptionError(Exception):
    """Ciphertext could not be authenticated or decoded with the configured key."""


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: str
    iv: str
    auth_tag: str


def _derive_key(raw: str) -> bytes:
    try:
        decoded = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) == 32:
        return decoded
    return hashlib.sha256(raw.encode("utf-8")).digest()


def get_aesgcm() -> AESGCM:
    if not settings.encryption_key:
        raise RuntimeError("ENCRYPTION_KEY is not configured")
    return AESGCM(_derive_key(settings.encryption_key))


def encrypt(plaintext: str) -> EncryptedPayload:
    iv = os.urandom(IV_BYTES)
    sealed = get_aesgcm().encrypt(iv, plaintext.encode("utf-8"), None)
    # AESGCM appends the tag; store it separately
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return EncryptedPayload(
        ciphertext=base64.b64encode(ciphertext).decode("ascii"),
        iv=base64.b64encode(iv).decode("ascii"),
        auth_tag=base64.b64encode(tag).decode("ascii"),
    )


def decrypt(ciphertext: str, iv: str, auth_tag: str) -> str:
    try:
        nonce = base64.b64decode(iv, validate=True)
        body = base64.b64decode(ciphertext, validate=True)
        tag = base64.b64decode(auth_tag, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"Malformed encrypted payload: {e}") from e
    if len(nonce) != IV_BYTES or len(tag) != TAG_BYTES:
        raise DecryptionError("Malformed encrypted payload: bad iv or auth tag length")
    try:
        plaintext = get_aesgcm().decrypt(nonce, body + tag, None)
    except InvalidTag as e:
        raise DecryptionError("Authentication tag mismatch") from e
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted payload is not valid UTF-8") from e
