#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Messaging

Provides a command-line interface for:
- Registration with client-side key generation
- Login that unlocks the private key in memory only
- Sending hybrid-encrypted, signed messages and attachments
- Reading the inbox with signature verification
"""

import asyncio
import getpass
import logging
import mimetypes
import sys
from pathlib import Path
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from sealbox import (
    Attachment,
    AttachmentTooLarge,
    CorruptVault,
    CryptoError,
    InvalidKey,
    PlaintextPayload,
    WrongPasswordOrCorruptVault,
)
from sealbox_client.api import (
    ApiError,
    InvalidCredentials,
    RelayClient,
    UserNotFound,
)
from sealbox_client.config import ClientConfig
from sealbox_client.session import Session, SessionOrchestrator, TwoFactorRequired


logger = logging.getLogger(__name__)

LOGIN_FAILED = "Invalid username or password."
TAMPERED = "Message may be corrupted or tampered with."

HELP_TEXT = """Commands:
  /inbox - List received messages
  /read <id> - Decrypt and show a message
  /send <username> <text> - Send an encrypted message
  /attach <path> - Attach a file to the next message
  /delete <id> - Delete a message
  /2fa setup|confirm <code>|disable - Manage two-factor authentication
  /logout - Log out and return to the menu
  /quit - Quit application"""


class ChatClient:
    """
    End-to-end encrypted messaging client.
    """

    def __init__(self, config: Optional[ClientConfig] = None):
        """
        Initialize chat client.

        Args:
            config: Client configuration
        """
        self.config = config or ClientConfig.from_env()
        self.relay = RelayClient(self.config)
        self.orchestrator = SessionOrchestrator(self.relay)
        self.session: Optional[Session] = None
        self.pending_attachment: Optional[Attachment] = None
        self.running = False

    async def register(self, username: str, email: str, password: str) -> bool:
        """
        Register a new user account.

        Returns:
            True if successful
        """
        print("Generating cryptographic keys... (this may take a moment)")
        try:
            await self.orchestrator.register(username, email, password)
        except CryptoError as e:
            logger.error("Key setup failed: %s", e)
            print("Registration failed: could not create keys.")
            return False
        except ApiError as e:
            print(f"Registration failed: {e}")
            return False

        print("Account created! You can now log in.")
        return True

    async def login(self, login: str, password: str) -> bool:
        """
        Login and unlock the private key.

        Every password-related failure prints the same message.

        Returns:
            True if successful
        """
        try:
            try:
                self.session = await self.orchestrator.authenticate(login, password)
            except TwoFactorRequired:
                code = input("Two-factor code: ").strip()
                self.session = await self.orchestrator.authenticate(login, password, code=code)
        except (InvalidCredentials, WrongPasswordOrCorruptVault, CorruptVault):
            print(LOGIN_FAILED)
            return False
        except ApiError as e:
            print(f"Login error: {e}")
            return False

        print(f"Login successful! Welcome back, {self.session.username}")
        return True

    def logout(self):
        """Drop the session and its key"""
        if self.session:
            self.orchestrator.logout(self.session)
            self.session = None
        self.pending_attachment = None

    def attach(self, path: str):
        """Load a file to send with the next message"""
        file_path = Path(path).expanduser()
        try:
            data = file_path.read_bytes()
        except OSError as e:
            print(f"Cannot read {path}: {e.strerror}")
            return

        mime_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
        self.pending_attachment = Attachment(name=file_path.name, mime_type=mime_type, data=data)
        print(f"Attached {file_path.name} ({len(data) / 1024:.1f} KB)")

    async def send_message(self, receiver: str, text: str):
        """
        Send an encrypted message.

        Args:
            receiver: Recipient username
            text: Message text
        """
        payload = PlaintextPayload(text=text, attachment=self.pending_attachment)
        try:
            await self.orchestrator.send(self.session, receiver, payload)
        except UserNotFound:
            print("User not found.")
            return
        except AttachmentTooLarge as e:
            print(f"File is too large: {e}")
            return
        except InvalidKey:
            print(f"{receiver} has no usable public key.")
            return
        except ApiError as e:
            print(f"Failed to send message: {e}")
            return

        self.pending_attachment = None
        print("Message sent securely!")

    async def show_inbox(self):
        """List received messages"""
        try:
            items = await self.relay.list_inbox()
        except ApiError as e:
            print(f"Failed to fetch messages: {e}")
            return

        print(f"{len(items)} messages")
        for item in items:
            marker = " " if item.is_read else "*"
            print(f" {marker} {item.id}  {item.sent_at:%Y-%m-%d %H:%M}  from {item.sender_username}")

    async def read_message(self, message_id: str):
        """Decrypt and display a message"""
        try:
            message = await self.orchestrator.read(self.session, message_id)
        except CryptoError as e:
            logger.error("Could not open message %s: %s", message_id, e)
            print(TAMPERED)
            return
        except ApiError as e:
            print(f"Failed to fetch message: {e}")
            return

        status = "[verified]" if message.is_verified else "[UNVERIFIED]"
        print(f"{status} from {message.sender}:")
        print(message.payload.text)
        attachment = message.payload.attachment
        if attachment:
            print(f"Attachment: {attachment.name} ({attachment.mime_type}, {len(attachment.data)} bytes)")
            self._offer_save(attachment)

    def _offer_save(self, attachment: Attachment):
        target = input("Save attachment to (empty to skip): ").strip()
        if not target:
            return
        try:
            Path(target).expanduser().write_bytes(attachment.data)
            print(f"Saved {attachment.name}")
        except OSError as e:
            print(f"Cannot write {target}: {e.strerror}")

    async def delete_message(self, message_id: str):
        try:
            await self.orchestrator.delete(self.session, message_id)
            print("Deleted.")
        except ApiError as e:
            print(f"Deletion error: {e}")

    async def two_factor(self, args: str):
        """Handle /2fa subcommands"""
        parts = args.split()
        try:
            if parts[:1] == ["setup"]:
                secret = await self.relay.setup_two_factor()
                print(f"Add this secret to your authenticator app: {secret}")
                print("Then run /2fa confirm <code>")
            elif parts[:1] == ["confirm"] and len(parts) == 2:
                print(await self.relay.confirm_two_factor(self.session.username, parts[1]))
            elif parts[:1] == ["disable"]:
                print(await self.relay.disable_two_factor())
            else:
                print("Usage: /2fa setup|confirm <code>|disable")
        except ApiError as e:
            print(f"2FA error: {e}")

    async def run_interactive(self):
        """Run interactive session until /logout or /quit"""
        self.running = True
        prompt = PromptSession()

        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running and self.session:
                try:
                    with patch_stdout():
                        user_input = await prompt.prompt_async(f"[{self.session.username}] > ")
                except (KeyboardInterrupt, EOFError):
                    self.running = False
                    break

                user_input = user_input.strip()
                if not user_input:
                    continue
                if user_input.startswith("/"):
                    await self._handle_command(user_input)
                else:
                    print("Unknown input. Type /help for help.")
        finally:
            self.logout()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=2)
        cmd = parts[0].lower()

        if cmd == "/inbox":
            await self.show_inbox()
        elif cmd == "/read" and len(parts) == 2:
            await self.read_message(parts[1])
        elif cmd == "/send" and len(parts) == 3:
            await self.send_message(parts[1], parts[2])
        elif cmd == "/attach" and len(parts) >= 2:
            self.attach(command.split(maxsplit=1)[1])
        elif cmd == "/delete" and len(parts) == 2:
            await self.delete_message(parts[1])
        elif cmd == "/2fa":
            await self.two_factor(command.split(maxsplit=1)[1] if len(parts) > 1 else "")
        elif cmd == "/logout":
            self.logout()
            print("Logged out")
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")

    async def aclose(self):
        self.logout()
        await self.relay.aclose()


async def main():
    """Main entry point"""
    config = ClientConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    client = ChatClient(config)

    print("=" * 50)
    print("End-to-End Encrypted Messaging Client")
    print("=" * 50)
    print()

    try:
        while True:
            print("1. Register")
            print("2. Login")
            print("3. Quit")
            choice = input("Choose an option: ").strip()

            if choice == "1":
                username = input("Username: ").strip()
                email = input("Email: ").strip()
                password = getpass.getpass("Password: ")
                await client.register(username, email, password)
            elif choice == "2":
                login = input("Username or email: ").strip()
                password = getpass.getpass("Password: ")
                if await client.login(login, password):
                    await client.run_interactive()
                    if not client.running:
                        break
            elif choice == "3":
                break
            else:
                print("Invalid choice")
    finally:
        await client.aclose()

    print("\nGoodbye!")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
