"""
auth/email_codec.py -- Email privacy codec: normalize, digest, encrypt, redact.

Storage never holds a plaintext, searchable email column. Each user row
carries two derived fields instead:

  email_digest  HMAC-SHA256(HMAC_SECRET, normalize(email)) as hex. The only
                lookup key. Deterministic, so "User@Example.com " and
                "user@example.com" resolve to the same row; not invertible
                without the key.
  email_enc     AES-256-GCM(CRYPTO_KEY, normalize(email)) as
                "v1:<iv>:<ciphertext>:<tag>" (standard base64 fields). Used
                only to redisplay the address to its owner or to mail it.

redact() produces the only form that may reach a log line or audit row. It
accepts either a known plaintext or, when none is at hand, the digest, so audit
trails never need the plaintext to exist.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_BLOB_VERSION = "v1"
_IV_BYTES = 12  # recommended nonce length for GCM
_TAG_BYTES = 16


class EmailDecryptError(ValueError):
    """The encrypted blob is malformed, was produced under another key, or was tampered with."""


def normalize_email(email: str | None) -> str:
    """Trim and lowercase so equality checks are case-insensitive without case-insensitive storage."""
    return str(email or "").strip().lower()


def redact_email(email: str | None = None, digest: str | None = None) -> str:
    """Return a log-safe representation of an address.

    >>> redact_email("Alice@Example.com")
    'a***@example.com'
    >>> redact_email(None, "9f86d081884c7d659a2feaa0c55ad015")
    'hmac:9f86d081…'
    """
    if email:
        local, _, domain = normalize_email(email).partition("@")
        if not domain:
            return "***"
        shown = f"{local[0]}***" if local else "***"
        return f"{shown}@{domain}"
    if digest:
        return f"hmac:{digest[:8]}…"
    return "***"


class EmailCodec:
    """Keyed digest and authenticated encryption for email addresses."""

    def __init__(self, hmac_key: bytes, crypto_key: bytes) -> None:
        if len(crypto_key) != 32:
            raise ValueError("crypto_key must be exactly 32 bytes for AES-256-GCM")
        self._hmac_key = hmac_key
        self._aead = AESGCM(crypto_key)

    normalize = staticmethod(normalize_email)
    redact = staticmethod(redact_email)

    def digest(self, email: str) -> str:
        return hmac.new(self._hmac_key, normalize_email(email).encode("utf-8"), hashlib.sha256).hexdigest()

    def encrypt(self, email: str) -> str:
        iv = secrets.token_bytes(_IV_BYTES)
        sealed = self._aead.encrypt(iv, normalize_email(email).encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return ":".join((_BLOB_VERSION, _b64e(iv), _b64e(ciphertext), _b64e(tag)))

    def decrypt(self, blob: str) -> str:
        """Return the normalized address sealed in blob. An empty blob decrypts to ""."""
        if not blob:
            return ""
        parts = blob.split(":")
        if len(parts) != 4 or parts[0] != _BLOB_VERSION or not all(parts[1:]):
            raise EmailDecryptError("Invalid encrypted email payload")
        try:
            iv, ciphertext, tag = (_b64d(p) for p in parts[1:])
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except (binascii.Error, ValueError, InvalidTag) as exc:
            raise EmailDecryptError("Encrypted email could not be authenticated") from exc
        return plaintext.decode("utf-8")


def _b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64d(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)
