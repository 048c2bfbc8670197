from __future__ import annotations

import json
from typing import Any, Iterable, Optional, Union

from fastapi import APIRouter, Header, Request, Response

from quoteai.api.schemas import (
    MigrateAccountRequest,
    MigratedResponse,
    SkippedResponse,
    SuccessResponse,
)
from quoteai.config import BACKEND_REQUIRED, PROXY_REQUIRED
from quoteai.logging import get_logger
from quoteai.service.errors import (
    AuthRequiredError,
    ConfigurationError,
    InvalidRequestError,
    SubscriptionRequiredError,
)
from quoteai.service.identity import bearer_token
from quoteai.service.runtime import Runtime, get_runtime
from quoteai.storage.models import Identity

logger = get_logger(__name__)

router = APIRouter(prefix="/functions/v1")


def _require_config(runtime: Runtime, names: Iterable[str]) -> None:
    missing = runtime.settings.missing(names)
    if missing:
        logger.error("missing_configuration", missing=missing)
        raise ConfigurationError(missing)


async def _authenticate(runtime: Runtime, authorization: Optional[str]) -> Identity:
    token = bearer_token(authorization)
    if not token:
        raise AuthRequiredError("bearer token required")
    identity = await runtime.backend.get_user_by_token(token)
    if identity is None:
        raise AuthRequiredError("invalid session")
    return identity


def _reject_constant(token: str) -> Any:
    # NaN and Infinity are not JSON
    raise ValueError(f"invalid JSON constant {token}")


def _load_json(raw: bytes) -> Any:
    return json.loads(raw, parse_constant=_reject_constant)


def _parse_json(raw: bytes) -> Any:
    try:
        return _load_json(raw)
    except ValueError as exc:
        raise InvalidRequestError("request body is not valid JSON") from exc


@router.post("/kimi-proxy", tags=["completions"])
async def kimi_proxy(request: Request, authorization: Optional[str] = Header(None)):
    """Relay a completion request upstream for callers with an active pro entitlement."""
    runtime = get_runtime()
    _require_config(runtime, PROXY_REQUIRED)
    identity = await _authenticate(runtime, authorization)

    if not await runtime.entitlements.has_active(identity.id):
        raise SubscriptionRequiredError("active subscription required")

    raw = await request.body()
    _parse_json(raw)

    upstream = await runtime.completions.forward(raw, user_id=identity.id)
    return Response(
        content=upstream.body,
        status_code=upstream.status_code,
        media_type="application/json",
    )


@router.post("/delete-account", response_model=SuccessResponse, tags=["accounts"])
async def delete_account(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    _require_config(runtime, BACKEND_REQUIRED)
    identity = await _authenticate(runtime, authorization)
    result = await runtime.eraser.erase(identity)
    return SuccessResponse(**result)


@router.post(
    "/migrate-account",
    response_model=Union[MigratedResponse, SkippedResponse],
    tags=["accounts"],
)
async def migrate_account(request: Request, authorization: Optional[str] = Header(None)):
    """Move a guest account's data onto the signed-in account.

    Body: ``{"oldUserId": "<guest id>"}``. Returns ``{"migrated": true}`` or
    ``{"skipped": true, "reason": ...}`` when there is nothing safe to do.
    """
    runtime = get_runtime()
    _require_config(runtime, BACKEND_REQUIRED)
    identity = await _authenticate(runtime, authorization)

    raw = await request.body()
    try:
        payload = _load_json(raw)
    except ValueError:
        payload = None
    body = MigrateAccountRequest.from_payload(payload)
    if not body.old_user_id:
        raise InvalidRequestError("oldUserId is required")

    result = await runtime.merger.merge(identity, body.old_user_id)
    if result.get("skipped"):
        return SkippedResponse(**result)
    return MigratedResponse(**result)
