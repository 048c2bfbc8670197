from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional
from urllib.parse import quote

import httpx

from quoteai.logging import get_logger
from quoteai.service.errors import SubscriptionRequiredError
from quoteai.service.identity import candidate_ids

logger = get_logger(__name__)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch-milliseconds number into an aware datetime.

    Returns None for anything else, including strings that do not parse.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def is_entitlement_active(
    entitlement: Optional[Mapping[str, Any]], now: Optional[datetime] = None
) -> bool:
    """Decide whether a ledger entitlement record currently grants access.

    Active when the ledger flags it active, when a grace period runs past
    ``now``, when it carries no expiry at all, or when the expiry is in the
    future. A record without any expiry is treated as non-expiring.
    """
    if entitlement is None:
        return False
    if entitlement.get("is_active") is True:
        return True

    now = now or datetime.now(timezone.utc)
    grace = parse_timestamp(entitlement.get("grace_period_expires_date"))
    if grace is not None and grace > now:
        return True

    expires = parse_timestamp(entitlement.get("expires_date"))
    if expires is None:
        expires = parse_timestamp(entitlement.get("expires_date_ms"))
    if expires is None:
        return True
    return expires > now


class LookupStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass
class LedgerLookup:
    """Outcome of one subscriber fetch.

    ``entitlement`` is only meaningful for FOUND and may still be None when
    the subscriber exists without the requested entitlement.
    """

    status: LookupStatus
    app_user_id: str
    entitlement: Optional[dict] = None
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND


class RevenueCatClient:
    """Reads subscriber entitlements from the billing ledger REST API."""

    def __init__(
        self,
        secret_key: str,
        *,
        api_base: str = "https://api.revenuecat.com",
        entitlement_id: str = "pro",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.entitlement_id = entitlement_id
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(self, app_user_id: str) -> LedgerLookup:
        client = await self._get_client()
        url = f"{self.api_base}/v1/subscribers/{quote(app_user_id, safe='')}"
        try:
            response = await client.get(url)
        except httpx.HTTPError as exc:
            logger.error(
                "ledger_transport_error",
                app_user_id=app_user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return LedgerLookup(LookupStatus.ERROR, app_user_id, error=str(exc))

        if response.status_code == 404:
            return LedgerLookup(LookupStatus.NOT_FOUND, app_user_id, status_code=404)
        if not response.is_success:
            return LedgerLookup(
                LookupStatus.ERROR,
                app_user_id,
                status_code=response.status_code,
                error=response.text[:200],
            )

        try:
            payload = response.json()
        except ValueError:
            return LedgerLookup(
                LookupStatus.ERROR,
                app_user_id,
                status_code=response.status_code,
                error="ledger returned invalid JSON",
            )
        subscriber = payload.get("subscriber") if isinstance(payload, dict) else None
        entitlements = (subscriber or {}).get("entitlements") or {}
        entitlement = entitlements.get(self.entitlement_id)
        return LedgerLookup(
            LookupStatus.FOUND,
            app_user_id,
            entitlement=entitlement if isinstance(entitlement, dict) else None,
            status_code=response.status_code,
        )


class EntitlementChecker:
    """Walks an identity's candidate ids until one holds an active entitlement."""

    def __init__(self, ledger: RevenueCatClient) -> None:
        self.ledger = ledger

    async def find_active(self, user_id: str) -> Optional[LedgerLookup]:
        """Return the first lookup with an active entitlement, or None.

        Raises SubscriptionRequiredError as soon as the ledger errors; a
        not-found variant only moves on to the next one.
        """
        variants = candidate_ids(user_id)
        logger.info("entitlement_check_started", user_id=user_id, candidates=variants)
        for variant in variants:
            lookup = await self.ledger.fetch(variant)
            if lookup.status is LookupStatus.NOT_FOUND:
                logger.info("entitlement_subscriber_not_found", app_user_id=variant)
                continue
            if lookup.status is LookupStatus.ERROR:
                logger.warning(
                    "entitlement_ledger_error",
                    app_user_id=variant,
                    status_code=lookup.status_code,
                    error=lookup.error,
                )
                raise SubscriptionRequiredError("billing ledger lookup failed")
            if is_entitlement_active(lookup.entitlement):
                logger.info("entitlement_active", app_user_id=variant)
                return lookup
            logger.info("entitlement_inactive", app_user_id=variant)
        logger.info("entitlement_missing", user_id=user_id)
        return None

    async def has_active(self, user_id: str) -> bool:
        return await self.find_active(user_id) is not None
