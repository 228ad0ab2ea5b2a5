"""
Identity key pairs.

Each user owns one long-term RSA-2048 key pair. The public half is published
through the relay; the private half only leaves the client inside a vault.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Union

from cryptography.exceptions import InternalError, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .primitives import RSA_KEY_SIZE, InvalidKey, KeyGenerationFailed


logger = logging.getLogger(__name__)

PUBLIC_EXPONENT = 65537

PublicKeyLike = Union[str, bytes, rsa.RSAPublicKey]
PrivateKeyLike = Union[str, bytes, bytearray, rsa.RSAPrivateKey]


@dataclass(frozen=True)
class IdentityKeyPair:
    """
    Long-term identity key pair.

    Attributes:
        private_key: RSA private key, never transmitted unwrapped
        public_key: RSA public key, published to the relay
    """
    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey

    def public_pem(self) -> str:
        """SubjectPublicKeyInfo PEM text, the form peers fetch from the relay"""
        return serialize_public_key(self.public_key)

    def private_pem(self) -> bytes:
        """Unencrypted PKCS#1 PEM bytes, the input to the vault"""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption()
        )

    def __repr__(self) -> str:
        return f"IdentityKeyPair(key_size={self.public_key.key_size})"


def generate_identity_keypair() -> IdentityKeyPair:
    """
    Generate an RSA-2048 identity key pair.

    This call is CPU heavy; use generate_identity() from async code.

    Returns:
        IdentityKeyPair

    Raises:
        KeyGenerationFailed: If the underlying primitive fails
    """
    try:
        private_key = rsa.generate_private_key(
            public_exponent=PUBLIC_EXPONENT,
            key_size=RSA_KEY_SIZE
        )
    except (ValueError, UnsupportedAlgorithm, InternalError) as e:
        raise KeyGenerationFailed("Identity key generation failed") from e

    logger.debug("Generated %d-bit identity key pair", RSA_KEY_SIZE)
    return IdentityKeyPair(private_key=private_key, public_key=private_key.public_key())


async def generate_identity() -> IdentityKeyPair:
    """
    Generate an identity key pair without blocking the event loop.

    Cancelling the awaiting task simply discards the result.
    """
    return await asyncio.to_thread(generate_identity_keypair)


def serialize_public_key(public_key: rsa.RSAPublicKey) -> str:
    """Serialize an RSA public key to PEM text"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")


def _check_strength(key_size: int):
    if key_size < RSA_KEY_SIZE:
        raise InvalidKey(f"RSA key of {key_size} bits is below {RSA_KEY_SIZE}")


def load_public_key(key: PublicKeyLike) -> rsa.RSAPublicKey:
    """
    Load an RSA public key from PEM, or pass a key object through.

    Raises:
        InvalidKey: If the data is not an RSA public key of at least 2048 bits
    """
    if isinstance(key, rsa.RSAPublicKey):
        public_key = key
    else:
        if isinstance(key, str):
            key = key.encode("ascii", errors="replace")
        try:
            public_key = serialization.load_pem_public_key(bytes(key))
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise InvalidKey("Could not load public key") from e
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise InvalidKey("Public key is not an RSA key")

    _check_strength(public_key.key_size)
    return public_key


def load_private_key(key: PrivateKeyLike) -> rsa.RSAPrivateKey:
    """
    Load an unencrypted RSA private key from PEM, or pass a key object through.

    Raises:
        InvalidKey: If the data is not an RSA private key of at least 2048 bits
    """
    if isinstance(key, rsa.RSAPrivateKey):
        private_key = key
    else:
        if isinstance(key, str):
            key = key.encode("ascii", errors="replace")
        try:
            private_key = serialization.load_pem_private_key(bytes(key), password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise InvalidKey("Could not load private key") from e
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise InvalidKey("Private key is not an RSA key")

    _check_strength(private_key.key_size)
    return private_key
