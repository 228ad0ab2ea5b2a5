"""
Client session and per-operation workflows.

A Session owns the unwrapped private key for one login and is torn down
explicitly on logout. SessionOrchestrator sequences the cryptographic core
and the relay for registration, login, sending and reading; it holds no key
material of its own.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.hazmat.primitives.asymmetric import rsa

from sealbox.envelope import PlaintextPayload, open_envelope, seal
from sealbox.keys import PublicKeyLike, generate_identity, load_private_key
from sealbox.primitives import CorruptVault, InvalidKey
from sealbox.signature import sign, verify
from sealbox.vault import VaultedPrivateKey, unwrap, wrap

from .api import (
    ApiError,
    MessageEnvelope,
    RegisterRequest,
    RelayUnavailable,
    SendMessageRequest,
)


logger = logging.getLogger(__name__)


class SessionClosed(RuntimeError):
    """The session was logged out and holds no key anymore"""
    pass


class TwoFactorRequired(ApiError):
    """Login needs a one-time code before the vault is released"""
    pass


@dataclass(frozen=True)
class Registration:
    """What registration sends to the relay besides the account fields"""
    public_key_pem: str
    vault: VaultedPrivateKey


@dataclass(frozen=True)
class OutgoingEnvelope:
    receiver: str
    encrypted_content: str
    encrypted_session_key: str
    signature: str


@dataclass(frozen=True)
class DecryptedMessage:
    """
    A message opened for display.

    Attributes:
        message_id: Relay id of the envelope
        sender: Claimed sender username
        payload: Recovered content
        is_verified: True only if the signature checked out against the
            sender's published key
    """
    message_id: str
    sender: str
    payload: PlaintextPayload
    is_verified: bool


class Session:
    """
    Authenticated user session.

    Holds the private key in memory for as long as the user is logged in,
    plus the cache of messages opened during the session. Nothing here is
    ever written to disk.
    """

    def __init__(self, username: str, private_key_pem: bytes,
                 token: Optional[str] = None, is_two_factor_enabled: bool = False):
        """
        Initialize a session.

        Args:
            username: Logged-in user
            private_key_pem: Unwrapped private key (PEM)
            token: Relay bearer token
            is_two_factor_enabled: Whether the account uses 2FA

        Raises:
            InvalidKey: If private_key_pem is not a usable RSA key
        """
        self.username = username
        self.token = token
        self.is_two_factor_enabled = is_two_factor_enabled
        self._private_pem = bytearray(private_key_pem)
        self._private_key: Optional[rsa.RSAPrivateKey] = load_private_key(self._private_pem)
        self.cache: Dict[str, DecryptedMessage] = {}
        self.closed = False

    @property
    def private_key(self) -> rsa.RSAPrivateKey:
        if self.closed or self._private_key is None:
            raise SessionClosed("Session is closed")
        return self._private_key

    def cache_message(self, message: DecryptedMessage):
        """Store an opened message; re-storing the same id is harmless"""
        if self.closed:
            raise SessionClosed("Session is closed")
        self.cache[message.message_id] = message

    def close(self):
        """Zero the key material and drop the cache. Safe to call twice."""
        for i in range(len(self._private_pem)):
            self._private_pem[i] = 0
        self._private_pem = bytearray()
        self._private_key = None
        self.cache.clear()
        self.token = None
        self.closed = True

    def __enter__(self) -> 'Session':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"Session(username={self.username!r}, {state})"


class SessionOrchestrator:
    """
    Registration, login, send and decrypt-on-read flows.

    Args:
        relay: Collaborator providing the relay operations (see RelayClient)
    """

    def __init__(self, relay):
        self.relay = relay
        self._read_locks: Dict[str, asyncio.Lock] = {}

    async def build_registration(self, password: str) -> Registration:
        """
        Generate an identity and vault its private key.

        The private key object goes out of scope when this returns; only the
        vault survives.
        """
        keypair = await generate_identity()
        vault = await asyncio.to_thread(wrap, keypair.private_pem(), password)
        return Registration(public_key_pem=keypair.public_pem(), vault=vault)

    async def register(self, username: str, email: str, password: str) -> Registration:
        """
        Create a key pair and register it with the relay.

        Nothing is submitted unless key generation and wrapping both
        succeed.
        """
        logger.info("Registering %s", username)
        registration = await self.build_registration(password)
        await self.relay.submit_registration(RegisterRequest(
            username=username,
            email=email,
            password=password,
            public_key=registration.public_key_pem,
            encrypted_private_key=registration.vault.encrypted_key,
            key_salt=registration.vault.salt
        ))
        return registration

    async def unlock(self, username: str, vault: VaultedPrivateKey, password: str,
                     token: Optional[str] = None,
                     is_two_factor_enabled: bool = False) -> Session:
        """
        Recover the private key and open a session.

        Raises:
            CorruptVault: If the vault is malformed or holds no RSA key
            WrongPasswordOrCorruptVault: If the password does not open it
        """
        private_pem = await asyncio.to_thread(unwrap, vault, password)
        try:
            return Session(username, private_pem, token=token,
                           is_two_factor_enabled=is_two_factor_enabled)
        except InvalidKey as e:
            raise CorruptVault("Vault does not contain a usable private key") from e

    async def authenticate(self, login: str, password: str,
                           code: Optional[str] = None) -> Session:
        """
        Log in and unlock the private key.

        Args:
            login: Username or email
            password: Account password, also the vault password
            code: 2FA code, required when the account has 2FA enabled

        Returns:
            Open Session

        Raises:
            InvalidCredentials: If the relay rejects the login or code
            TwoFactorRequired: If 2FA is on and no code was given
            CorruptVault, WrongPasswordOrCorruptVault: From unwrapping
        """
        response = await self.relay.fetch_vaulted_key(login, password)
        if response.is_two_factor_enabled and response.vault() is None:
            if code is None:
                raise TwoFactorRequired("Two-factor code required")
            response = await self.relay.verify_two_factor(login, code)

        vault = response.vault()
        if vault is None or not response.token:
            raise RelayUnavailable("Login response carries no key vault")

        session = await self.unlock(login, vault, password, token=response.token,
                                    is_two_factor_enabled=response.is_two_factor_enabled)
        self.relay.set_token(response.token)
        logger.info("Session opened for %s", login)
        return session

    async def send(self, session: Session, receiver: str,
                   payload: PlaintextPayload) -> OutgoingEnvelope:
        """
        Encrypt, sign and submit a message.

        Raises:
            UserNotFound: If the receiver has no published key
        """
        private_key = session.private_key
        recipient_key = await self.relay.fetch_public_key(receiver)

        sealed = await asyncio.to_thread(seal, payload, recipient_key)
        envelope = OutgoingEnvelope(
            receiver=receiver,
            encrypted_content=sealed.encrypted_content,
            encrypted_session_key=sealed.encrypted_session_key,
            signature=sign(sealed.encrypted_content, private_key)
        )

        await self.relay.submit_envelope(SendMessageRequest(
            receiver_name=receiver,
            encrypted_content=envelope.encrypted_content,
            encrypted_session_key=envelope.encrypted_session_key,
            signature=envelope.signature
        ))
        logger.info("Sent message to %s", receiver)
        return envelope

    def decrypt_envelope(self, session: Session, envelope: MessageEnvelope,
                         sender_public_key: Optional[PublicKeyLike]) -> DecryptedMessage:
        """
        Open an envelope and check its signature.

        A missing sender key counts as a failed verification. The message is
        still returned so the user can see it, flagged as unverified.
        """
        payload = open_envelope(
            envelope.encrypted_content,
            envelope.encrypted_session_key,
            session.private_key
        )
        return DecryptedMessage(
            message_id=envelope.id,
            sender=envelope.sender_username,
            payload=payload,
            is_verified=self._check_signature(envelope, sender_public_key)
        )

    @staticmethod
    def _check_signature(envelope: MessageEnvelope,
                         sender_public_key: Optional[PublicKeyLike]) -> bool:
        is_verified = sender_public_key is not None and verify(
            envelope.encrypted_content, envelope.signature, sender_public_key
        )
        if not is_verified:
            logger.warning("Signature not verified for message %s from %s",
                           envelope.id, envelope.sender_username)
        return is_verified

    async def read(self, session: Session, message_id: str) -> DecryptedMessage:
        """
        Decrypt a message on first read, serve it from the cache afterwards.

        Concurrent reads of one id share a single decryption. A failed open
        leaves nothing in the cache.
        """
        cached = session.cache.get(message_id)
        if cached is not None:
            return cached

        lock = self._read_locks.setdefault(message_id, asyncio.Lock())
        try:
            async with lock:
                cached = session.cache.get(message_id)
                if cached is not None:
                    return cached
                message = await self._read_uncached(session, message_id)
                session.cache_message(message)
                return message
        finally:
            if not lock.locked():
                self._read_locks.pop(message_id, None)

    async def _read_uncached(self, session: Session, message_id: str) -> DecryptedMessage:
        envelope = await self.relay.fetch_envelope(message_id)
        private_key = session.private_key
        payload = await asyncio.to_thread(
            open_envelope,
            envelope.encrypted_content,
            envelope.encrypted_session_key,
            private_key
        )

        sender_key = None
        try:
            sender_key = await self.relay.fetch_public_key(envelope.sender_username)
        except ApiError as e:
            logger.warning("Could not fetch key of %s: %s", envelope.sender_username, e)

        if not envelope.is_read:
            try:
                await self.relay.mark_read(message_id)
            except ApiError as e:
                logger.warning("Could not mark message %s as read: %s", message_id, e)

        return DecryptedMessage(
            message_id=message_id,
            sender=envelope.sender_username,
            payload=payload,
            is_verified=self._check_signature(envelope, sender_key)
        )

    async def delete(self, session: Session, message_id: str):
        """Delete a message on the relay and forget its plaintext"""
        await self.relay.delete_message(message_id)
        session.cache.pop(message_id, None)

    def logout(self, session: Session):
        """Tear down the session and drop the relay token"""
        session.close()
        self.relay.set_token(None)
        self._read_locks.clear()
        logger.info("Session closed for %s", session.username)
