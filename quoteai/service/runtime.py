from __future__ import annotations

import threading
from typing import Optional

from quoteai.config import Settings, get_settings, reset_settings_cache
from quoteai.logging import get_logger
from quoteai.service.accounts import AccountEraser, AccountMerger
from quoteai.service.completions import CompletionClient
from quoteai.service.entitlements import EntitlementChecker, RevenueCatClient
from quoteai.storage.memory import MemoryBackend
from quoteai.storage.supabase import SupabaseBackend

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        if self.settings.use_memory_backend:
            self.backend = MemoryBackend(base_url=self.settings.supabase_url or "http://memory.local")
        else:
            self.backend = SupabaseBackend(
                self.settings.supabase_url or "",
                self.settings.supabase_service_role_key or "",
                timeout=self.settings.http_timeout_seconds,
            )
        logger.info(
            "runtime_backend_initialized",
            backend_type="memory" if self.settings.use_memory_backend else "supabase",
        )

        self.ledger = RevenueCatClient(
            self.settings.revenuecat_secret_key or "",
            api_base=self.settings.revenuecat_api_base,
            entitlement_id=self.settings.pro_entitlement_id,
            timeout=self.settings.http_timeout_seconds,
        )
        self.entitlements = EntitlementChecker(self.ledger)
        self.completions = CompletionClient(
            self.settings.kimi_api_key or "",
            self.settings.kimi_api_endpoint,
            timeout=self.settings.http_timeout_seconds,
        )
        self.eraser = AccountEraser(
            self.backend,
            bucket=self.settings.profile_images_bucket,
            list_limit=self.settings.storage_list_limit,
        )
        self.merger = AccountMerger(
            self.backend,
            bucket=self.settings.profile_images_bucket,
            list_limit=self.settings.storage_list_limit,
        )

    async def close(self) -> None:
        await self.backend.close()
        await self.ledger.close()
        await self.completions.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the runtime and cached settings so the next request rebuilds both."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = None
