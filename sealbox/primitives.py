"""
Cryptographic Primitives for End-to-End Encryption

This module provides the symmetric building block shared by the vault and
the message envelope, the base64 helpers, the wire-format constants and the
error taxonomy of the cryptographic core.
"""

import base64
import binascii
import os
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


IV_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
SALT_SIZE = 16
PBKDF2_ITERATIONS = 100_000
RSA_KEY_SIZE = 2048
MIN_PACKED_SIZE = IV_SIZE + TAG_SIZE


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class KeyGenerationFailed(CryptoError):
    """The identity key pair could not be generated"""
    pass


class InvalidKey(CryptoError):
    """A key could not be loaded or is too weak for this protocol"""
    pass


class CorruptVault(CryptoError):
    """The packed vault bytes or its salt are malformed"""
    pass


class WrongPasswordOrCorruptVault(CryptoError):
    """
    The vault failed authentication.

    A wrong password and a tampered vault produce the same tag mismatch and
    must stay a single error.
    """
    pass


class SessionKeyUnwrapFailed(CryptoError):
    """The RSA-wrapped session key could not be recovered"""
    pass


class CorruptEnvelope(CryptoError):
    """The packed message content is malformed"""
    pass


class ContentDecryptionFailed(CryptoError):
    """The message content failed authentication"""
    pass


class MalformedPayload(CryptoError):
    """The decrypted payload is not a valid message"""
    pass


class DecryptionError(CryptoError):
    """AES-GCM tag mismatch"""
    pass


class CiphertextTooShort(CryptoError):
    """Packed blob cannot hold an IV and a tag"""
    pass


def generate_key() -> bytes:
    """Generate a random 256-bit AES key."""
    return AESGCM.generate_key(bit_length=KEY_SIZE * 8)


def encrypt(key: bytes, plaintext: bytes,
            associated_data: Optional[bytes] = None) -> Tuple[bytes, bytes, bytes]:
    """
    Encrypt data using AES-256-GCM.

    A fresh nonce is drawn from the OS CSPRNG on every call.

    Args:
        key: 32-byte encryption key
        plaintext: Data to encrypt
        associated_data: Additional authenticated data

    Returns:
        Tuple of (iv, ciphertext, tag)
    """
    iv = os.urandom(IV_SIZE)
    sealed = AESGCM(key).encrypt(iv, plaintext, associated_data)
    return iv, sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]


def decrypt(key: bytes, iv: bytes, ciphertext: bytes, tag: bytes,
            associated_data: Optional[bytes] = None) -> bytes:
    """
    Decrypt data using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        iv: 12-byte nonce used for encryption
        ciphertext: Encrypted data without the tag
        tag: 16-byte authentication tag
        associated_data: Additional authenticated data

    Returns:
        Decrypted plaintext

    Raises:
        DecryptionError: If the tag does not match
    """
    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, associated_data)
    except InvalidTag as e:
        raise DecryptionError("Authentication tag mismatch") from e


def pack(iv: bytes, ciphertext: bytes, tag: bytes) -> bytes:
    """Pack as IV || ciphertext || tag"""
    return iv + ciphertext + tag


def unpack(blob: bytes) -> Tuple[bytes, bytes, bytes]:
    """
    Split a packed blob into (iv, ciphertext, tag) by fixed offsets.

    Raises:
        CiphertextTooShort: If the blob is shorter than IV + tag
    """
    if len(blob) < MIN_PACKED_SIZE:
        raise CiphertextTooShort(
            f"Packed data is {len(blob)} bytes, need at least {MIN_PACKED_SIZE}"
        )
    return blob[:IV_SIZE], blob[IV_SIZE:-TAG_SIZE], blob[-TAG_SIZE:]


def encrypt_packed(key: bytes, plaintext: bytes,
                   associated_data: Optional[bytes] = None) -> bytes:
    """Encrypt and return the packed IV || ciphertext || tag form"""
    return pack(*encrypt(key, plaintext, associated_data))


def decrypt_packed(key: bytes, blob: bytes,
                   associated_data: Optional[bytes] = None) -> bytes:
    """Inverse of encrypt_packed"""
    iv, ciphertext, tag = unpack(blob)
    return decrypt(key, iv, ciphertext, tag, associated_data)


def b64encode(data: bytes) -> str:
    """Standard base64 text"""
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """
    Strict standard base64 decoding.

    Raises:
        ValueError: On characters outside the alphabet or bad padding
    """
    if isinstance(text, str):
        try:
            text = text.encode("ascii")
        except UnicodeEncodeError as e:
            raise ValueError("Base64 text must be ASCII") from e
    try:
        return base64.b64decode(text, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64: {e}") from e
