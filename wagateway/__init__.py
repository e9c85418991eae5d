"""Multi-tenant WhatsApp gateway: per-user sessions, storage and webhook fan-out."""

from .api import create_app
from .registry import SessionRegistry

__all__ = ["create_app", "SessionRegistry"]
