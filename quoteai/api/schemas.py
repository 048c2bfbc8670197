from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorBody(BaseModel):
    """Error envelope: ``{"error": "<code>", ...}``; extra keys pass through."""

    error: str
    missing: Optional[List[str]] = None

    model_config = ConfigDict(extra="allow")


class SuccessResponse(BaseModel):
    success: bool = True


class MigratedResponse(BaseModel):
    migrated: bool = True

    model_config = ConfigDict(extra="forbid")


class SkippedResponse(BaseModel):
    skipped: bool = True
    reason: Literal["same_user", "target_not_empty"]

    model_config = ConfigDict(extra="forbid")


class MigrateAccountRequest(BaseModel):
    old_user_id: Optional[str] = Field(None, alias="oldUserId")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @classmethod
    def from_payload(cls, payload: Any) -> "MigrateAccountRequest":
        if not isinstance(payload, dict):
            return cls()
        value = payload.get("oldUserId")
        # Anything but a non-empty string counts as missing
        return cls(oldUserId=value if isinstance(value, str) and value else None)


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    version: str
    build: str
    missing: dict[str, List[str]]
