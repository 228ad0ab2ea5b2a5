"""
HTTP client for the relay server.

The relay stores public keys, vaults and envelopes as opaque strings. Every
body that crosses the wire is described by a pydantic model using the relay's
camelCase field names.
"""

import logging
from datetime import datetime
from typing import List, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sealbox import VaultedPrivateKey

from .config import ClientConfig


logger = logging.getLogger(__name__)

# The IV travels inside encryptedContent; the relay still requires the field.
VESTIGIAL_IV = "included_in_content"


class ApiError(Exception):
    """Base exception for relay errors"""
    pass


class UserNotFound(ApiError):
    """No such user, or the user has no public key"""
    pass


class MessageNotFound(ApiError):
    """No such message in this user's inbox"""
    pass


class InvalidCredentials(ApiError):
    """Login or 2FA code rejected"""
    pass


class RegistrationRejected(ApiError):
    """The relay refused the registration (e.g. username taken)"""
    pass


class RelayUnavailable(ApiError):
    """Transport failure or unexpected response"""
    pass


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(WireModel):
    username: str
    email: str
    password: str
    public_key: str = Field(alias="publicKey")
    encrypted_private_key: str = Field(alias="encryptedPrivateKey")
    key_salt: str = Field(alias="keySalt")


class LoginResponse(WireModel):
    token: Optional[str] = None
    is_two_factor_enabled: bool = Field(default=False, alias="isTwoFactorEnabled")
    encrypted_private_key: Optional[str] = Field(default=None, alias="encryptedPrivateKey")
    key_salt: Optional[str] = Field(default=None, alias="keySalt")

    def vault(self) -> Optional[VaultedPrivateKey]:
        """The vaulted private key, if the response carries one"""
        if not self.encrypted_private_key or not self.key_salt:
            return None
        return VaultedPrivateKey(encrypted_key=self.encrypted_private_key, salt=self.key_salt)


class SendMessageRequest(WireModel):
    receiver_name: str = Field(alias="receiverName")
    encrypted_content: str = Field(alias="encryptedContent")
    encrypted_session_key: str = Field(alias="encryptedSessionKey")
    signature: str
    iv: str = VESTIGIAL_IV


class MessageListItem(WireModel):
    id: str
    sender_username: str = Field(alias="senderUsername")
    is_read: bool = Field(default=False, alias="isRead")
    sent_at: datetime = Field(alias="sentAt")


class MessageEnvelope(WireModel):
    id: str
    sender_username: str = Field(alias="senderUsername")
    encrypted_content: str = Field(alias="encryptedContent")
    encrypted_session_key: str = Field(alias="encryptedSessionKey")
    signature: str
    iv: Optional[str] = None
    is_read: bool = Field(default=False, alias="isRead")
    sent_at: datetime = Field(alias="sentAt")


def _relay_message(response: httpx.Response) -> str:
    text = response.text.strip()
    return text or f"HTTP {response.status_code}"


class RelayClient:
    """
    Async client for the relay's REST API.

    Bearer authentication is added once a token has been set with
    set_token().
    """

    def __init__(self, config: Optional[ClientConfig] = None,
                 client: Optional[httpx.AsyncClient] = None):
        """
        Initialize the relay client.

        Args:
            config: Client configuration
            client: Pre-built httpx client (tests inject a mock transport)
        """
        self.config = config or ClientConfig()
        self.http_client = client or httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout
        )

    def set_token(self, token: Optional[str]):
        """Attach or remove the bearer token"""
        if token:
            self.http_client.headers["Authorization"] = f"Bearer {token}"
        else:
            self.http_client.headers.pop("Authorization", None)

    async def aclose(self):
        await self.http_client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http_client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RelayUnavailable(f"Relay request failed: {e}") from e
        logger.debug("%s %s -> %d", method, path, response.status_code)
        return response

    @staticmethod
    def _ensure_ok(response: httpx.Response):
        if response.is_error:
            raise RelayUnavailable(_relay_message(response))

    @staticmethod
    def _parse(model, data):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise RelayUnavailable(f"Unexpected response from relay: {e}") from e

    def _json(self, response: httpx.Response):
        try:
            return response.json()
        except ValueError as e:
            raise RelayUnavailable("Relay returned invalid JSON") from e

    async def fetch_public_key(self, username: str) -> str:
        """
        Get a user's public key.

        Returns:
            PEM encoded public key

        Raises:
            UserNotFound: If the relay does not know the user
        """
        response = await self._request("GET", f"/users/{quote(username, safe='')}/public-key")
        if response.status_code in (400, 404):
            raise UserNotFound(f"User not found: {username}")
        self._ensure_ok(response)

        data = self._json(response)
        public_key = data.get("publicKey") if isinstance(data, dict) else None
        if not public_key:
            raise UserNotFound(f"User has no public key: {username}")
        return public_key

    async def submit_registration(self, request: RegisterRequest):
        """Register a new account with its public key and vault"""
        response = await self._request(
            "POST", "/auth/register", json=request.model_dump(by_alias=True)
        )
        if response.is_error:
            raise RegistrationRejected(_relay_message(response))

    async def fetch_vaulted_key(self, login: str, password: str) -> LoginResponse:
        """
        Log in with username or email.

        Returns:
            LoginResponse; without 2FA it carries the token and vault

        Raises:
            InvalidCredentials: On any login rejection
        """
        response = await self._request(
            "POST", "/auth/login", json={"login": login, "password": password}
        )
        if response.status_code in (400, 401, 403, 404):
            raise InvalidCredentials("Invalid credentials")
        self._ensure_ok(response)
        return self._parse(LoginResponse, self._json(response))

    async def verify_two_factor(self, username: str, code: str) -> LoginResponse:
        """Complete a 2FA login; returns the token and vault"""
        response = await self._request(
            "POST", "/auth/verify-2fa", json={"username": username, "code": code}
        )
        if response.status_code in (400, 401, 403, 404):
            raise InvalidCredentials("Invalid code")
        self._ensure_ok(response)
        return self._parse(LoginResponse, self._json(response))

    async def setup_two_factor(self) -> str:
        """Start 2FA enrolment; returns the TOTP secret"""
        response = await self._request("POST", "/auth/2fa/setup")
        self._ensure_ok(response)
        return response.text.strip()

    async def confirm_two_factor(self, username: str, code: str) -> str:
        """Confirm 2FA enrolment with a first code"""
        response = await self._request(
            "POST", "/auth/2fa/confirm", json={"username": username, "code": code}
        )
        if response.status_code in (400, 401):
            raise InvalidCredentials("Invalid code")
        self._ensure_ok(response)
        return response.text.strip()

    async def disable_two_factor(self) -> str:
        response = await self._request("POST", "/auth/2fa/disable")
        self._ensure_ok(response)
        return response.text.strip()

    async def submit_envelope(self, request: SendMessageRequest):
        """Hand a signed envelope to the relay"""
        response = await self._request(
            "POST", "/message/send", json=request.model_dump(by_alias=True)
        )
        if response.status_code in (400, 404):
            raise UserNotFound(f"Receiver not found: {request.receiver_name}")
        self._ensure_ok(response)

    async def list_inbox(self) -> List[MessageListItem]:
        response = await self._request("GET", "/message/inbox")
        self._ensure_ok(response)
        items = self._json(response)
        if not isinstance(items, list):
            raise RelayUnavailable("Inbox response is not a list")
        return [self._parse(MessageListItem, item) for item in items]

    async def fetch_envelope(self, message_id: str) -> MessageEnvelope:
        """
        Get a full envelope.

        Raises:
            MessageNotFound: If the message is unknown or not addressed to us
        """
        response = await self._request("GET", f"/message/{quote(message_id, safe='')}")
        if response.status_code in (400, 403, 404):
            raise MessageNotFound(f"Message not found: {message_id}")
        self._ensure_ok(response)
        return self._parse(MessageEnvelope, self._json(response))

    async def mark_read(self, message_id: str):
        response = await self._request("PUT", f"/message/{quote(message_id, safe='')}/read")
        if response.status_code in (400, 403, 404):
            raise MessageNotFound(f"Message not found: {message_id}")
        self._ensure_ok(response)

    async def delete_message(self, message_id: str):
        response = await self._request("DELETE", f"/message/{quote(message_id, safe='')}")
        if response.status_code in (400, 403, 404):
            raise MessageNotFound(f"Message not found: {message_id}")
        self._ensure_ok(response)
