from __future__ import annotations


class InvalidUserIdError(ValueError):
    """Raised before any store access when a user id is empty or unsafe."""


class NotConnectedError(RuntimeError):
    def __init__(self, message: str = "WhatsApp client is not connected") -> None:
        super().__init__(message)


class CredentialExchangeError(Exception):
    """Raised when a connect request cannot start a credential exchange."""


class ProtocolError(Exception):
    """A command failed at the protocol client."""


class ConnectionLostError(ProtocolError):
    """The protocol link went away while a command was in flight."""


class DuplicateWebhookError(Exception):
    def __init__(self, url: str) -> None:
        super().__init__("Webhook URL already registered")
        self.url = url


class WebhookNotFoundError(LookupError):
    pass


__all__ = [
    "InvalidUserIdError",
    "NotConnectedError",
    "CredentialExchangeError",
    "ProtocolError",
    "ConnectionLostError",
    "DuplicateWebhookError",
    "WebhookNotFoundError",
]
