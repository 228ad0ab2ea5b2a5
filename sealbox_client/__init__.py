"""
Client side of the end-to-end encrypted messenger.

Talks to the relay over HTTP and keeps the unwrapped private key in an
explicit, closable session.
"""
