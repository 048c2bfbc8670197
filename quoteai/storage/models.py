from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

PROFILES_TABLE = "user_profiles"
CONVERSATIONS_TABLE = "conversations"
SAVED_QUOTES_TABLE = "saved_quotes"

USER_TABLES = (PROFILES_TABLE, CONVERSATIONS_TABLE, SAVED_QUOTES_TABLE)

PROFILE_IMAGE_NAME = "profile.jpg"


@dataclass
class Identity:
    id: str
    is_anonymous: bool = False
    email: str | None = None

    @classmethod
    def from_auth_payload(cls, payload: Dict[str, Any]) -> "Identity":
        # Auth admin responses have used both spellings of the flag
        anonymous = payload.get("is_anonymous")
        if anonymous is None:
            anonymous = payload.get("isAnonymous", False)
        return cls(
            id=str(payload["id"]),
            is_anonymous=bool(anonymous),
            email=payload.get("email") or None,
        )


@dataclass
class StoredObject:
    name: str
    content: bytes = b""
