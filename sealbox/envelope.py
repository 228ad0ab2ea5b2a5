"""
Hybrid message envelope.

A fresh AES-256 session key encrypts the payload; the session key itself is
encrypted with the recipient's RSA public key using OAEP. Only the holder of
the matching private key can open the envelope.
"""

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from .keys import PrivateKeyLike, PublicKeyLike, load_private_key, load_public_key
from .primitives import (
    KEY_SIZE,
    CiphertextTooShort,
    ContentDecryptionFailed,
    CorruptEnvelope,
    DecryptionError,
    MalformedPayload,
    SessionKeyUnwrapFailed,
    b64decode,
    b64encode,
    decrypt,
    encrypt,
    generate_key,
    pack,
    unpack,
)


logger = logging.getLogger(__name__)

MAX_ATTACHMENT_SIZE = 30 * 1024 * 1024

_DATA_URI = re.compile(r"^data:([^;,]*);base64,(.*)$", re.DOTALL)


class AttachmentTooLarge(ValueError):
    """Attachment exceeds MAX_ATTACHMENT_SIZE"""
    pass


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None
    )


@dataclass(frozen=True)
class Attachment:
    """
    File carried inside a message.

    Attributes:
        name: Original file name
        mime_type: MIME type, e.g. image/png
        data: Raw file bytes
    """
    name: str
    mime_type: str
    data: bytes

    def to_dict(self) -> Dict:
        """Serialize with the file embedded as a data URI"""
        return {
            'name': self.name,
            'type': self.mime_type,
            'data': f"data:{self.mime_type};base64,{b64encode(self.data)}"
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Attachment':
        """Create from the serialized form"""
        name = data.get('name')
        mime_type = data.get('type')
        uri = data.get('data')
        if not isinstance(name, str) or not isinstance(mime_type, str) or not isinstance(uri, str):
            raise MalformedPayload("Attachment fields must be strings")

        match = _DATA_URI.match(uri)
        if not match:
            raise MalformedPayload("Attachment data is not a base64 data URI")
        try:
            raw = base64.b64decode(match.group(2), validate=True)
        except binascii.Error as e:
            raise MalformedPayload("Attachment data is not valid base64") from e

        return cls(name=name, mime_type=mime_type, data=raw)


@dataclass(frozen=True)
class PlaintextPayload:
    """Message content before encryption"""
    text: str
    attachment: Optional[Attachment] = None

    def to_dict(self) -> Dict:
        return {
            'text': self.text,
            'attachment': self.attachment.to_dict() if self.attachment else None
        }


@dataclass(frozen=True)
class SealedMessage:
    """
    Output of seal().

    Attributes:
        encrypted_content: base64 of IV || ciphertext || tag
        encrypted_session_key: base64 of the RSA-OAEP wrapped session key
    """
    encrypted_content: str
    encrypted_session_key: str


def serialize_payload(payload: PlaintextPayload) -> bytes:
    """
    Canonical byte form of a payload.

    Compact UTF-8 JSON with the key order text, attachment and, inside the
    attachment, name, type, data.
    """
    if payload.attachment and len(payload.attachment.data) > MAX_ATTACHMENT_SIZE:
        raise AttachmentTooLarge(
            f"Attachment is {len(payload.attachment.data)} bytes, "
            f"maximum is {MAX_ATTACHMENT_SIZE}"
        )
    return json.dumps(payload.to_dict(), ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def deserialize_payload(data: bytes) -> PlaintextPayload:
    """
    Parse the canonical byte form.

    Raises:
        MalformedPayload: On any structural violation
    """
    try:
        content = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayload("Payload is not UTF-8 JSON") from e

    if not isinstance(content, dict):
        raise MalformedPayload("Payload must be a JSON object")

    text = content.get('text')
    if not isinstance(text, str):
        raise MalformedPayload("Payload text must be a string")

    attachment = content.get('attachment')
    if attachment is None:
        return PlaintextPayload(text=text)
    if not isinstance(attachment, dict):
        raise MalformedPayload("Payload attachment must be an object")
    return PlaintextPayload(text=text, attachment=Attachment.from_dict(attachment))


def seal(payload: PlaintextPayload, recipient_public_key: PublicKeyLike) -> SealedMessage:
    """
    Encrypt a payload for one recipient.

    Args:
        payload: Message content
        recipient_public_key: Recipient's RSA public key (PEM or key object)

    Returns:
        SealedMessage with base64 content and wrapped session key
    """
    public_key = load_public_key(recipient_public_key)
    serialized = serialize_payload(payload)

    session_key = generate_key()
    iv, ciphertext, tag = encrypt(session_key, serialized)
    wrapped_key = public_key.encrypt(session_key, _oaep())

    logger.debug("Sealed %d-byte payload", len(serialized))
    return SealedMessage(
        encrypted_content=b64encode(pack(iv, ciphertext, tag)),
        encrypted_session_key=b64encode(wrapped_key)
    )


def open_envelope(encrypted_content: str, encrypted_session_key: str,
                  own_private_key: PrivateKeyLike) -> PlaintextPayload:
    """
    Decrypt an envelope with the recipient's private key.

    Args:
        encrypted_content: base64 of IV || ciphertext || tag
        encrypted_session_key: base64 of the wrapped session key
        own_private_key: Recipient's RSA private key (PEM or key object)

    Returns:
        Decrypted payload

    Raises:
        SessionKeyUnwrapFailed: If the session key cannot be recovered
        CorruptEnvelope: If the content is not a packed blob
        ContentDecryptionFailed: If the content fails authentication
        MalformedPayload: If the plaintext is not a valid payload
    """
    private_key = load_private_key(own_private_key)

    try:
        wrapped_key = b64decode(encrypted_session_key)
        session_key = private_key.decrypt(wrapped_key, _oaep())
    except (ValueError, TypeError) as e:
        raise SessionKeyUnwrapFailed("Could not unwrap session key") from e
    if len(session_key) != KEY_SIZE:
        raise SessionKeyUnwrapFailed(f"Session key must be {KEY_SIZE} bytes")

    try:
        iv, ciphertext, tag = unpack(b64decode(encrypted_content))
    except (ValueError, TypeError, CiphertextTooShort) as e:
        raise CorruptEnvelope("Encrypted content is malformed") from e

    try:
        serialized = decrypt(session_key, iv, ciphertext, tag)
    except DecryptionError as e:
        raise ContentDecryptionFailed("Encrypted content failed authentication") from e

    logger.debug("Opened %d-byte payload", len(serialized))
    return deserialize_payload(serialized)
