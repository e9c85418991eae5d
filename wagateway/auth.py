"""Token verification against the credential directory.

Account registration, login and password resets are handled elsewhere; the
gateway only needs to map a bearer token to a user identity.
"""
from __future__ import annotations

import abc
import hmac
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Request


LOGGER = logging.getLogger("wagateway.auth")

TOKEN_COOKIE = "wa_token"


@dataclass(frozen=True, slots=True)
class Identity:
    id: str
    email: str = ""

    def to_payload(self) -> Dict[str, str]:
        return {"id": self.id, "email": self.email}


class CredentialDirectory(abc.ABC):
    @abc.abstractmethod
    def verify_token(self, token: str | None) -> Optional[Identity]: ...

    @abc.abstractmethod
    def user_exists_any(self) -> bool: ...


class FileCredentialDirectory(CredentialDirectory):
    """Read-only view over ``auth.json`` (``{"users": [{id, email, token}]}``)."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._cache: Optional[Tuple[float, List[Dict[str, Any]]]] = None

    def _users(self) -> List[Dict[str, Any]]:
        try:
            mtime = self._path.stat().st_mtime
        except FileNotFoundError:
            return []
        if self._cache is not None and self._cache[0] == mtime:
            return self._cache[1]
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.warning("stage=auth_file_unreadable path=%s error=%s", self._path, exc)
            return []
        raw_users = data.get("users") if isinstance(data, dict) else None
        users = [user for user in raw_users or [] if isinstance(user, dict)]
        self._cache = (mtime, users)
        return users

    def verify_token(self, token: str | None) -> Optional[Identity]:
        if not token or not isinstance(token, str):
            return None
        candidate = token.encode("utf-8")
        for user in self._users():
            stored = user.get("token")
            if not isinstance(stored, str) or not stored:
                continue
            if hmac.compare_digest(stored.encode("utf-8"), candidate):
                user_id = str(user.get("id") or "").strip()
                if not user_id:
                    return None
                return Identity(id=user_id, email=str(user.get("email") or ""))
        return None

    def user_exists_any(self) -> bool:
        return bool(self._users())


def extract_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        token = header[7:].strip()
        if token:
            return token
    cookie = (request.cookies.get(TOKEN_COOKIE) or "").strip()
    return cookie or None


__all__ = [
    "Identity",
    "CredentialDirectory",
    "FileCredentialDirectory",
    "extract_token",
    "TOKEN_COOKIE",
]
