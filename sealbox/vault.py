"""
Password-protected private key storage.

The private key is encrypted with a key derived from the user's password and
handed to the relay as an opaque blob. The relay returns it at login and the
client recovers the private key in memory only.
"""

import logging
import os
from dataclasses import dataclass
from typing import Dict

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .primitives import (
    KEY_SIZE,
    MIN_PACKED_SIZE,
    PBKDF2_ITERATIONS,
    SALT_SIZE,
    CiphertextTooShort,
    CorruptVault,
    DecryptionError,
    WrongPasswordOrCorruptVault,
    b64decode,
    b64encode,
    decrypt,
    encrypt,
    pack,
    unpack,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VaultedPrivateKey:
    """
    At-rest form of a private key.

    Attributes:
        encrypted_key: base64 of IV || ciphertext || tag
        salt: 16-byte PBKDF2 salt, hex encoded
    """
    encrypted_key: str
    salt: str

    def to_dict(self) -> Dict:
        """Convert to the relay's field names"""
        return {
            'encryptedPrivateKey': self.encrypted_key,
            'keySalt': self.salt
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'VaultedPrivateKey':
        """Create from the relay's field names"""
        return cls(
            encrypted_key=data['encryptedPrivateKey'],
            salt=data['keySalt']
        )


def derive_key(password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """
    Derive a vault key from a password using PBKDF2-HMAC-SHA256.

    Args:
        password: User's password
        salt: 16-byte salt
        iterations: Work factor, never below PBKDF2_ITERATIONS

    Returns:
        32-byte encryption key
    """
    if iterations < PBKDF2_ITERATIONS:
        raise ValueError(f"PBKDF2 needs at least {PBKDF2_ITERATIONS} iterations")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def wrap(private_key_bytes: bytes, password: str,
         iterations: int = PBKDF2_ITERATIONS) -> VaultedPrivateKey:
    """
    Encrypt a private key under a password.

    Args:
        private_key_bytes: Serialized private key (PEM)
        password: User's password
        iterations: PBKDF2 work factor

    Returns:
        VaultedPrivateKey with a fresh salt and nonce
    """
    salt = os.urandom(SALT_SIZE)
    key = derive_key(password, salt, iterations)
    iv, ciphertext, tag = encrypt(key, bytes(private_key_bytes))

    logger.debug("Wrapped %d-byte private key", len(private_key_bytes))
    return VaultedPrivateKey(
        encrypted_key=b64encode(pack(iv, ciphertext, tag)),
        salt=salt.hex()
    )


def unwrap(vault: VaultedPrivateKey, password: str,
           iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """
    Recover a private key from its vault.

    The packed bytes and salt are validated before the KDF runs, so a
    malformed vault fails without paying for key derivation.

    Args:
        vault: Vault as returned by the relay
        password: User's password
        iterations: PBKDF2 work factor used by wrap()

    Returns:
        Serialized private key

    Raises:
        CorruptVault: If the vault is structurally invalid
        WrongPasswordOrCorruptVault: If authentication fails
    """
    try:
        packed = b64decode(vault.encrypted_key)
    except (ValueError, TypeError) as e:
        raise CorruptVault("Vault is not valid base64") from e

    if len(packed) < MIN_PACKED_SIZE:
        raise CorruptVault(f"Vault is {len(packed)} bytes, need at least {MIN_PACKED_SIZE}")

    try:
        salt = bytes.fromhex(vault.salt)
    except (ValueError, TypeError) as e:
        raise CorruptVault("Vault salt is not valid hex") from e
    if len(salt) != SALT_SIZE:
        raise CorruptVault(f"Vault salt must be {SALT_SIZE} bytes")

    try:
        iv, ciphertext, tag = unpack(packed)
    except CiphertextTooShort as e:
        raise CorruptVault(str(e)) from e

    key = derive_key(password, salt, iterations)
    try:
        return decrypt(key, iv, ciphertext, tag)
    except DecryptionError as e:
        raise WrongPasswordOrCorruptVault("Wrong password or corrupt vault") from e
