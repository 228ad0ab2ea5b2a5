"""
Cryptographic core for end-to-end encrypted messaging.

Implements:
- RSA-2048 identity key pairs
- Password-protected private key vaults (PBKDF2 + AES-256-GCM)
- Hybrid message envelopes (RSA-OAEP session key + AES-256-GCM content)
- Signatures over the transmitted ciphertext (RSA PKCS#1 v1.5, SHA-256)
"""

from .envelope import (
    Attachment,
    AttachmentTooLarge,
    PlaintextPayload,
    SealedMessage,
    open_envelope as open_message,
    seal as seal_message,
)
from .keys import IdentityKeyPair, generate_identity, generate_identity_keypair
from .primitives import (
    ContentDecryptionFailed,
    CorruptEnvelope,
    CorruptVault,
    CryptoError,
    InvalidKey,
    KeyGenerationFailed,
    MalformedPayload,
    SessionKeyUnwrapFailed,
    WrongPasswordOrCorruptVault,
)
from .signature import sign as sign_envelope, verify as verify_envelope
from .vault import (
    VaultedPrivateKey,
    unwrap as recover_private_key,
    wrap as protect_private_key,
)

__all__ = [
    'generate_identity',
    'generate_identity_keypair',
    'protect_private_key',
    'recover_private_key',
    'seal_message',
    'sign_envelope',
    'open_message',
    'verify_envelope',
    'IdentityKeyPair',
    'VaultedPrivateKey',
    'PlaintextPayload',
    'Attachment',
    'SealedMessage',
    'AttachmentTooLarge',
    'CryptoError',
    'KeyGenerationFailed',
    'InvalidKey',
    'CorruptVault',
    'WrongPasswordOrCorruptVault',
    'SessionKeyUnwrapFailed',
    'CorruptEnvelope',
    'ContentDecryptionFailed',
    'MalformedPayload',
]
