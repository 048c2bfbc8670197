from __future__ import annotations

import os
from typing import Any, Iterable, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from quoteai.logging import get_logger

logger = get_logger(__name__)

DEFAULT_KIMI_ENDPOINT = "https://api.moonshot.cn/v1/chat/completions"
DEFAULT_REVENUECAT_API_BASE = "https://api.revenuecat.com"

# Required values per handler, named by the settings field.
BACKEND_REQUIRED = ("supabase_url", "supabase_service_role_key")
PROXY_REQUIRED = BACKEND_REQUIRED + ("kimi_api_key", "revenuecat_secret_key")

# Sent on every response, preflight included
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the account and completion functions."""

    supabase_url: str | None = env_field(None, "SUPABASE_URL")
    supabase_service_role_key: str | None = env_field(
        None, "SUPABASE_SERVICE_ROLE_KEY"
    )
    kimi_api_key: str | None = env_field(None, "KIMI_API_KEY")
    kimi_api_endpoint: str = env_field(DEFAULT_KIMI_ENDPOINT, "KIMI_API_ENDPOINT")
    revenuecat_secret_key: str | None = env_field(None, "REVENUECAT_SECRET_KEY")
    revenuecat_api_base: str = env_field(
        DEFAULT_REVENUECAT_API_BASE, "REVENUECAT_API_BASE"
    )
    pro_entitlement_id: str = env_field(
        "pro",
        "PRO_ENTITLEMENT_ID",
        description="Entitlement identifier that unlocks the completion proxy",
    )
    profile_images_bucket: str = env_field("profile-images", "PROFILE_IMAGES_BUCKET")
    storage_list_limit: int = env_field(
        100,
        "STORAGE_LIST_LIMIT",
        description="Maximum objects listed under a user's storage prefix",
    )
    http_timeout_seconds: float = env_field(30.0, "HTTP_TIMEOUT_SECONDS")
    use_memory_backend: bool = env_field(
        False,
        "USE_MEMORY_BACKEND",
        description="Serve identities, rows and objects from process memory (tests, local dev)",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            env_name = cls.env_name(name)
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @classmethod
    def env_name(cls, field_name: str) -> str:
        field = cls.model_fields[field_name]
        extra = field.json_schema_extra or {}
        env_key = extra.get("env") if isinstance(extra, dict) else None
        return env_key or field_name.upper()

    @field_validator(
        "supabase_url",
        "supabase_service_role_key",
        "kimi_api_key",
        "revenuecat_secret_key",
    )
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("storage_list_limit")
    @classmethod
    def _validate_list_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("storage_list_limit must be positive")
        return value

    def missing(self, names: Iterable[str]) -> List[str]:
        """Return environment names of required values that are not set."""
        return [self.env_name(name) for name in names if not getattr(self, name)]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
