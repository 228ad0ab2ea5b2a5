#!/usr/bin/env python3
"""
Tests for the client session and the register / login / send / read flows,
run against an in-memory relay.
"""

import asyncio
import sys
import uuid
from datetime import datetime
from typing import Dict, List, Optional

import pytest

import sealbox_client.session as session_module
from sealbox import (
    Attachment,
    ContentDecryptionFailed,
    CorruptVault,
    KeyGenerationFailed,
    PlaintextPayload,
    WrongPasswordOrCorruptVault,
    generate_identity_keypair,
    recover_private_key,
    verify_envelope,
)
from sealbox.primitives import b64decode, b64encode
from sealbox.vault import VaultedPrivateKey
from sealbox_client.api import (
    InvalidCredentials,
    LoginResponse,
    MessageEnvelope,
    MessageNotFound,
    RegisterRequest,
    SendMessageRequest,
    UserNotFound,
    VESTIGIAL_IV,
)
from sealbox_client.session import (
    Session,
    SessionClosed,
    SessionOrchestrator,
    TwoFactorRequired,
)


ALICE_PASSWORD = "Tr0ub4dor&3!"
BOB_PASSWORD = "C0rrect-H0rse!"


class FakeRelay:
    """In-memory stand-in for the relay server"""

    def __init__(self):
        self.users: Dict[str, RegisterRequest] = {}
        self.two_factor_codes: Dict[str, str] = {}
        self.messages: Dict[str, dict] = {}
        self.token: Optional[str] = None
        self.calls: List[str] = []

    async def submit_registration(self, request: RegisterRequest):
        self.calls.append("submit_registration")
        self.users[request.username] = request

    async def fetch_public_key(self, username: str) -> str:
        self.calls.append(f"fetch_public_key:{username}")
        if username not in self.users:
            raise UserNotFound(f"User not found: {username}")
        return self.users[username].public_key

    def _login_response(self, user: RegisterRequest) -> LoginResponse:
        return LoginResponse(
            token=f"token-{user.username}",
            is_two_factor_enabled=user.username in self.two_factor_codes,
            encrypted_private_key=user.encrypted_private_key,
            key_salt=user.key_salt
        )

    async def fetch_vaulted_key(self, login: str, password: str) -> LoginResponse:
        self.calls.append("fetch_vaulted_key")
        user = self.users.get(login)
        if user is None or user.password != password:
            raise InvalidCredentials("Invalid credentials")
        if login in self.two_factor_codes:
            return LoginResponse(token=None, is_two_factor_enabled=True)
        return self._login_response(user)

    async def verify_two_factor(self, username: str, code: str) -> LoginResponse:
        self.calls.append("verify_two_factor")
        if self.two_factor_codes.get(username) != code:
            raise InvalidCredentials("Invalid code")
        return self._login_response(self.users[username])

    def set_token(self, token: Optional[str]):
        self.token = token

    async def submit_envelope(self, request: SendMessageRequest):
        self.calls.append("submit_envelope")
        if request.receiver_name not in self.users:
            raise UserNotFound(request.receiver_name)
        message_id = str(uuid.uuid4())
        self.messages[message_id] = {
            "id": message_id,
            "senderUsername": self.token.replace("token-", ""),
            "receiver": request.receiver_name,
            "encryptedContent": request.encrypted_content,
            "encryptedSessionKey": request.encrypted_session_key,
            "signature": request.signature,
            "iv": request.iv,
            "isRead": False,
            "sentAt": datetime(2026, 10, 18, 12, 0).isoformat(),
        }

    async def fetch_envelope(self, message_id: str) -> MessageEnvelope:
        self.calls.append(f"fetch_envelope:{message_id}")
        await asyncio.sleep(0)
        if message_id not in self.messages:
            raise MessageNotFound(message_id)
        return MessageEnvelope.model_validate(self.messages[message_id])

    async def mark_read(self, message_id: str):
        self.calls.append(f"mark_read:{message_id}")
        self.messages[message_id]["isRead"] = True

    async def delete_message(self, message_id: str):
        self.calls.append(f"delete_message:{message_id}")
        if self.messages.pop(message_id, None) is None:
            raise MessageNotFound(message_id)

    def only_message_for(self, receiver: str) -> str:
        ids = [m["id"] for m in self.messages.values() if m["receiver"] == receiver]
        assert len(ids) == 1
        return ids[0]


@pytest.fixture(scope="module")
def world():
    """Relay with alice and bob registered, shared by the tests below"""
    relay = FakeRelay()
    orchestrator = SessionOrchestrator(relay)

    async def setup():
        alice = await orchestrator.register("alice", "alice@example.com", ALICE_PASSWORD)
        bob = await orchestrator.register("bob", "bob@example.com", BOB_PASSWORD)
        return alice, bob

    alice, bob = asyncio.run(setup())
    return relay, alice, bob


def _reset(relay: FakeRelay):
    relay.messages.clear()
    relay.calls.clear()
    relay.token = None


async def _send_hello(relay: FakeRelay, text: str = "hello") -> str:
    orchestrator = SessionOrchestrator(relay)
    with await orchestrator.authenticate("alice", ALICE_PASSWORD) as session:
        await orchestrator.send(session, "bob", PlaintextPayload(text=text))
    return relay.only_message_for("bob")


# -- Session ----------------------------------------------------------------


def test_session_close_zeroes_key():
    keypair = generate_identity_keypair()
    session = Session("alice", keypair.private_pem(), token="t")
    key_buffer = session._private_pem

    assert session.private_key.key_size == 2048
    session.close()

    assert all(b == 0 for b in key_buffer), "Key bytes must be zeroed"
    assert session.closed
    assert session.token is None
    with pytest.raises(SessionClosed):
        session.private_key
    session.close()


def test_session_context_manager_clears_cache():
    keypair = generate_identity_keypair()
    with Session("alice", keypair.private_pem()) as session:
        session.cache["m1"] = "cached"
    assert session.cache == {}
    with pytest.raises(SessionClosed):
        session.cache_message(session_module.DecryptedMessage("m2", "bob", PlaintextPayload("x"), True))


# -- Registration and login -------------------------------------------------


def test_register_submits_public_key_and_vault(world):
    relay, alice, _ = world
    stored = relay.users["alice"]

    assert stored.public_key == alice.public_key_pem
    assert stored.encrypted_private_key == alice.vault.encrypted_key
    assert stored.key_salt == alice.vault.salt
    assert "PRIVATE" not in stored.model_dump_json()


def test_registration_is_atomic(monkeypatch):
    relay = FakeRelay()

    async def broken():
        raise KeyGenerationFailed("no entropy")

    monkeypatch.setattr(session_module, "generate_identity", broken)
    with pytest.raises(KeyGenerationFailed):
        asyncio.run(SessionOrchestrator(relay).register("eve", "eve@example.com", "pw"))
    assert relay.users == {}
    assert "submit_registration" not in relay.calls


def test_login_recovers_identical_private_key(world):
    relay, alice, _ = world
    _reset(relay)

    session = asyncio.run(SessionOrchestrator(relay).authenticate("alice", ALICE_PASSWORD))

    recovered = recover_private_key(alice.vault, ALICE_PASSWORD)
    assert bytes(session._private_pem) == recovered
    assert session.private_key.public_key().public_numbers() == \
        session_module.load_private_key(recovered).public_key().public_numbers()
    assert relay.token == "token-alice"
    session.close()


def test_login_wrong_password_opens_nothing(world):
    relay, alice, _ = world
    _reset(relay)
    orchestrator = SessionOrchestrator(relay)

    with pytest.raises(InvalidCredentials):
        asyncio.run(orchestrator.authenticate("alice", "wrong"))
    with pytest.raises(InvalidCredentials):
        asyncio.run(orchestrator.authenticate("mallory", "wrong"))
    with pytest.raises(WrongPasswordOrCorruptVault):
        asyncio.run(orchestrator.unlock("alice", alice.vault, "wrong"))
    assert relay.token is None


def test_unlock_rejects_vault_without_rsa_key():
    vault = session_module.wrap(b"not a key", ALICE_PASSWORD)

    with pytest.raises(CorruptVault):
        asyncio.run(SessionOrchestrator(FakeRelay()).unlock("alice", vault, ALICE_PASSWORD))


def test_two_factor_login(world):
    relay, _, _ = world
    _reset(relay)
    relay.two_factor_codes["bob"] = "123456"
    orchestrator = SessionOrchestrator(relay)

    try:
        with pytest.raises(TwoFactorRequired):
            asyncio.run(orchestrator.authenticate("bob", BOB_PASSWORD))
        with pytest.raises(InvalidCredentials):
            asyncio.run(orchestrator.authenticate("bob", BOB_PASSWORD, code="000000"))

        session = asyncio.run(orchestrator.authenticate("bob", BOB_PASSWORD, code="123456"))
        assert session.is_two_factor_enabled
        session.close()
    finally:
        del relay.two_factor_codes["bob"]


# -- Send and read ----------------------------------------------------------


def test_alice_sends_hello_to_bob(world):
    """Full scenario: Bob reads Alice's message and it verifies"""
    relay, alice, bob = world
    _reset(relay)
    message_id = asyncio.run(_send_hello(relay))

    stored = relay.messages[message_id]
    assert stored["iv"] == VESTIGIAL_IV
    assert "hello" not in stored["encryptedContent"]

    orchestrator = SessionOrchestrator(relay)
    bob_session = asyncio.run(orchestrator.authenticate("bob", BOB_PASSWORD))
    message = asyncio.run(orchestrator.read(bob_session, message_id))

    assert message.payload.text == "hello"
    assert message.sender == "alice"
    assert message.is_verified
    assert relay.messages[message_id]["isRead"]

    carol = generate_identity_keypair()
    assert verify_envelope(stored["encryptedContent"], stored["signature"], alice.public_key_pem)
    assert not verify_envelope(stored["encryptedContent"], stored["signature"], carol.public_pem())
    assert not verify_envelope(stored["encryptedContent"], stored["signature"], bob.public_key_pem)
    orchestrator.logout(bob_session)


def test_read_is_cached(world):
    relay, _, _ = world
    _reset(relay)
    message_id = asyncio.run(_send_hello(relay))

    orchestrator = SessionOrchestrator(relay)
    session = asyncio.run(orchestrator.authenticate("bob", BOB_PASSWORD))
    relay.calls.clear()

    first = asyncio.run(orchestrator.read(session, message_id))
    second = asyncio.run(orchestrator.read(session, message_id))

    assert first is second
    assert relay.calls.count(f"fetch_envelope:{message_id}") == 1
    assert relay.calls.count(f"mark_read:{message_id}") == 1
    session.close()


def test_concurrent_reads_decrypt_once(world):
    relay, _, _ = world
    _reset(relay)
    message_id = asyncio.run(_send_hello(relay))

    async def read_twice():
        orchestrator = SessionOrchestrator(relay)
        session = await orchestrator.authenticate("bob", BOB_PASSWORD)
        relay.calls.clear()
        results = await asyncio.gather(
            orchestrator.read(session, message_id),
            orchestrator.read(session, message_id)
        )
        session.close()
        return results

    first, second = asyncio.run(read_twice())

    assert first == second
    assert relay.calls.count(f"fetch_envelope:{message_id}") == 1


def test_message_with_attachment(world):
    relay, _, _ = world
    _reset(relay)
    attachment = Attachment(name="notes.txt", mime_type="text/plain", data=b"line one\nline two")

    async def scenario():
        orchestrator = SessionOrchestrator(relay)
        with await orchestrator.authenticate("alice", ALICE_PASSWORD) as alice:
            await orchestrator.send(alice, "bob", PlaintextPayload("see file", attachment))
        with await orchestrator.authenticate("bob", BOB_PASSWORD) as bob:
            return await orchestrator.read(bob, relay.only_message_for("bob"))

    message = asyncio.run(scenario())
    assert message.payload.attachment == attachment
    assert message.is_verified


def test_substituted_sender_key_is_unverified(world):
    """A message that decrypts but fails verification is shown, flagged"""
    relay, _, _ = world
    _reset(relay)
    message_id = asyncio.run(_send_hello(relay))
    relay.messages[message_id]["senderUsername"] = "bob"

    orchestrator = SessionOrchestrator(relay)
    session = asyncio.run(orchestrator.authenticate("bob", BOB_PASSWORD))
    message = asyncio.run(orchestrator.read(session, message_id))

    assert message.payload.text == "hello"
    assert not message.is_verified
    session.close()


def test_missing_sender_key_is_unverified(world):
    relay, _, _ = world
    _reset(relay)
    message_id = asyncio.run(_send_hello(relay))
    relay.messages[message_id]["senderUsername"] = "deleted-user"

    orchestrator = SessionOrchestrator(relay)
    session = asyncio.run(orchestrator.authenticate("bob", BOB_PASSWORD))
    message = asyncio.run(orchestrator.read(session, message_id))

    assert message.payload.text == "hello"
    assert not message.is_verified
    session.close()


def test_tampered_message_is_not_cached(world):
    relay, _, _ = world
    _reset(relay)
    message_id = asyncio.run(_send_hello(relay))
    blob = bytearray(b64decode(relay.messages[message_id]["encryptedContent"]))
    blob[20] ^= 0x01
    relay.messages[message_id]["encryptedContent"] = b64encode(bytes(blob))

    orchestrator = SessionOrchestrator(relay)
    session = asyncio.run(orchestrator.authenticate("bob", BOB_PASSWORD))

    with pytest.raises(ContentDecryptionFailed):
        asyncio.run(orchestrator.read(session, message_id))
    assert session.cache == {}
    assert not relay.messages[message_id]["isRead"]
    session.close()


def test_decrypt_envelope_without_network(world):
    relay, alice, _ = world
    _reset(relay)
    message_id = asyncio.run(_send_hello(relay, "offline"))
    envelope = MessageEnvelope.model_validate(relay.messages[message_id])

    orchestrator = SessionOrchestrator(relay)
    session = asyncio.run(orchestrator.authenticate("bob", BOB_PASSWORD))

    verified = orchestrator.decrypt_envelope(session, envelope, alice.public_key_pem)
    unverified = orchestrator.decrypt_envelope(session, envelope, None)

    assert verified.payload.text == unverified.payload.text == "offline"
    assert verified.is_verified
    assert not unverified.is_verified
    session.close()


def test_send_to_unknown_user(world):
    relay, _, _ = world
    _reset(relay)
    orchestrator = SessionOrchestrator(relay)
    session = asyncio.run(orchestrator.authenticate("alice", ALICE_PASSWORD))

    with pytest.raises(UserNotFound):
        asyncio.run(orchestrator.send(session, "nobody", PlaintextPayload("hi")))
    assert "submit_envelope" not in relay.calls
    session.close()


def test_delete_forgets_plaintext(world):
    relay, _, _ = world
    _reset(relay)
    message_id = asyncio.run(_send_hello(relay))

    async def scenario():
        orchestrator = SessionOrchestrator(relay)
        session = await orchestrator.authenticate("bob", BOB_PASSWORD)
        await orchestrator.read(session, message_id)
        await orchestrator.delete(session, message_id)
        return session

    session = asyncio.run(scenario())
    assert message_id not in session.cache
    assert message_id not in relay.messages
    session.close()


def test_logout_tears_down_session(world):
    relay, _, _ = world
    _reset(relay)
    message_id = asyncio.run(_send_hello(relay))
    orchestrator = SessionOrchestrator(relay)

    session = asyncio.run(orchestrator.authenticate("bob", BOB_PASSWORD))
    asyncio.run(orchestrator.read(session, message_id))
    orchestrator.logout(session)

    assert session.closed
    assert session.cache == {}
    assert relay.token is None
    with pytest.raises(SessionClosed):
        asyncio.run(orchestrator.send(session, "alice", PlaintextPayload("hi")))
    with pytest.raises(SessionClosed):
        asyncio.run(orchestrator.read(session, message_id))


def test_vault_from_login_response(world):
    relay, alice, _ = world
    response = LoginResponse.model_validate({
        "token": "t",
        "isTwoFactorEnabled": False,
        "encryptedPrivateKey": alice.vault.encrypted_key,
        "keySalt": alice.vault.salt,
    })

    assert response.vault() == VaultedPrivateKey(alice.vault.encrypted_key, alice.vault.salt)
    assert LoginResponse(token=None, is_two_factor_enabled=True).vault() is None


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
