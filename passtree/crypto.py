"""
passtree - Cryptography Module

This single file contains ALL cryptographic operations for the store:
key derivation, AES-256-GCM encryption and the blob wire format.

Security Architecture:
    1. Username + Password → SHA-256 → Cipher Key (32 bytes)
    2. Cipher Key → AES-256-GCM context (one per store session)
    3. Every record is encrypted with a fresh random 12-byte nonce
    4. Stored blob = nonce || ciphertext (ciphertext carries the 16-byte tag)

Why this works:
    - AES-256-GCM is authenticated: tampering or a wrong key is detected
    - Nonces are generated inside encrypt(), callers can never reuse one
    - The key is never stored; a wrong key is detected through the challenge
      row (see store.py)
"""

import hashlib
import hmac
import os
from typing import NamedTuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailure, MalformedBlob


# =============================================================================
# Configuration
# =============================================================================

KEY_SIZE = 32            # 256-bit key
NONCE_SIZE = 12          # 96-bit nonce for AES-GCM (part of the on-disk format)
TAG_SIZE = 16            # 128-bit authentication tag


# =============================================================================
# Key Derivation
# =============================================================================

def derive_key(user: bytes, password: bytes) -> bytes:
    """
    Derive the cipher key from credential material.

    One SHA-256 pass over user || password, no delimiter. Deterministic and
    total: any byte strings are accepted, including empty ones.

    Args:
        user: Username bytes
        password: Password bytes

    Returns:
        32-byte cipher key
    """
    return hashlib.sha256(user + password).digest()


# =============================================================================
# Encryption (AES-256-GCM)
# =============================================================================

class EncryptedMessage(NamedTuple):
    nonce: bytes
    ciphertext: bytes


def encrypt(key: bytes, plaintext: bytes) -> EncryptedMessage:
    """
    Encrypt data with AES-256-GCM.

    A fresh random nonce is generated for every call. There is deliberately
    no way to pass one in.

    Args:
        key: 32-byte encryption key
        plaintext: Data to encrypt (any length, including empty)

    Returns:
        (nonce, ciphertext) tuple
        - nonce: 12 random bytes
        - ciphertext: encrypted data + 16-byte tag
    """
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
    return EncryptedMessage(nonce, ciphertext)


def decrypt(key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
    """
    Decrypt AES-256-GCM ciphertext.

    All-or-nothing: either the full plaintext is returned or
    AuthenticationFailure is raised.

    Raises:
        AuthenticationFailure: wrong key or nonce, tampered, truncated or
            malformed ciphertext
    """
    return Cipher(key).decrypt(nonce, ciphertext)


class Cipher:
    """
    AES-256-GCM context bound to one key.

    A Store keeps one Cipher for its whole lifetime and never generates
    key material itself.

    Usage:
        cipher = Cipher.from_credentials(Credentials("alice", "pw1"))
        nonce, ct = cipher.encrypt(b"secret")
        cipher.decrypt(nonce, ct)
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValueError(f"Cipher key must be {KEY_SIZE} bytes")
        self._aes = AESGCM(key)

    @classmethod
    def from_credentials(cls, credentials) -> "Cipher":
        """Build a cipher from a model.Credentials instance."""
        return cls(derive_key(
            credentials.user.encode('utf-8'),
            credentials.password.encode('utf-8'),
        ))

    def encrypt(self, plaintext: bytes) -> EncryptedMessage:
        nonce = os.urandom(NONCE_SIZE)
        return EncryptedMessage(nonce, self._aes.encrypt(nonce, plaintext, None))

    def decrypt(self, nonce: bytes, ciphertext: bytes) -> bytes:
        if len(nonce) != NONCE_SIZE:
            raise AuthenticationFailure(f"Nonce must be {NONCE_SIZE} bytes")
        if len(ciphertext) < TAG_SIZE:
            raise AuthenticationFailure("Ciphertext shorter than authentication tag")
        try:
            return self._aes.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise AuthenticationFailure("Decryption failed - wrong key or tampered data") from exc


# =============================================================================
# Blob Codec
# =============================================================================

def seal_blob(cipher: Cipher, plaintext: bytes) -> bytes:
    """
    Encrypt plaintext and return the stored form: nonce || ciphertext.
    """
    nonce, ciphertext = cipher.encrypt(plaintext)
    return nonce + ciphertext


def open_blob(cipher: Cipher, blob: bytes) -> bytes:
    """
    Reverse of seal_blob().

    Raises:
        MalformedBlob: blob is shorter than a nonce
        AuthenticationFailure: propagated from Cipher.decrypt()
    """
    if len(blob) < NONCE_SIZE:
        raise MalformedBlob(f"Blob is {len(blob)} bytes, need at least {NONCE_SIZE}")
    return cipher.decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:])


# =============================================================================
# Helpers
# =============================================================================

def constant_compare(a: bytes, b: bytes) -> bool:
    """
    Compare two byte strings in constant time.

    Used for the challenge check so the comparison time does not depend on
    how many leading bytes matched.
    """
    return hmac.compare_digest(a, b)
