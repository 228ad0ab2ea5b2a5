"""
Envelope signatures.

The sender signs the transmitted encryptedContent string (the ciphertext, not
the plaintext) with RSASSA-PKCS1-v1_5 over SHA-256. Anyone holding the
sender's public key can check what was actually sent without decrypting it.
"""

import logging

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from .keys import PrivateKeyLike, PublicKeyLike, load_private_key, load_public_key
from .primitives import CryptoError, b64decode, b64encode


logger = logging.getLogger(__name__)


def _signed_bytes(encrypted_content: str) -> bytes:
    return encrypted_content.encode("utf-8")


def sign(encrypted_content: str, sender_private_key: PrivateKeyLike) -> str:
    """
    Sign an envelope's encrypted content.

    Args:
        encrypted_content: base64 content exactly as transmitted
        sender_private_key: Sender's RSA private key (PEM or key object)

    Returns:
        base64 signature
    """
    private_key = load_private_key(sender_private_key)
    signature = private_key.sign(
        _signed_bytes(encrypted_content),
        padding.PKCS1v15(),
        hashes.SHA256()
    )
    return b64encode(signature)


def verify(encrypted_content: str, signature: str, sender_public_key: PublicKeyLike) -> bool:
    """
    Check an envelope signature.

    Never raises: an unparsable key, signature or content is reported the
    same way as a signature that does not match.

    Returns:
        True only if the signature is valid for this content and key
    """
    try:
        public_key = load_public_key(sender_public_key)
        public_key.verify(
            b64decode(signature),
            _signed_bytes(encrypted_content),
            padding.PKCS1v15(),
            hashes.SHA256()
        )
    except (CryptoError, InvalidSignature, ValueError, TypeError,
            AttributeError, UnsupportedAlgorithm):
        logger.debug("Signature verification failed")
        return False
    return True
