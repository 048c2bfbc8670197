from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Sequence
from urllib.parse import quote

import httpx

from quoteai.logging import get_logger
from quoteai.storage.errors import BackendError
from quoteai.storage.models import Identity

logger = get_logger(__name__)


def _in_filter(values: Sequence[str]) -> str:
    quoted = ",".join(json.dumps(value) for value in values)
    return f"in.({quoted})"


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "msg", "error_description", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return response.reason_phrase


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class SupabaseBackend:
    """Auth, row and object operations against the hosted backend's REST APIs.

    All calls use the service-role key, except token resolution which
    forwards the caller's bearer token so the auth server validates it.
    """

    def __init__(
        self,
        base_url: str,
        service_key: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers={
                    "apikey": self.service_key,
                    "Authorization": f"Bearer {self.service_key}",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error(
                "backend_transport_error",
                operation=operation,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise BackendError(operation, str(exc) or type(exc).__name__) from exc

    @staticmethod
    def _raise_for(operation: str, response: httpx.Response) -> None:
        if response.is_success:
            return
        raise BackendError(
            operation,
            _error_message(response),
            status_code=response.status_code,
        )

    # -- auth --------------------------------------------------------------

    async def get_user_by_token(self, token: str) -> Optional[Identity]:
        try:
            response = await self._request(
                "get_user",
                "GET",
                "/auth/v1/user",
                headers={"Authorization": f"Bearer {token}"},
            )
        except BackendError:
            return None
        if not response.is_success:
            logger.info("auth_token_rejected", status_code=response.status_code)
            return None
        payload = _json_or_none(response)
        if not isinstance(payload, dict) or not payload.get("id"):
            return None
        return Identity.from_auth_payload(payload)

    async def get_user_by_id(self, user_id: str) -> Optional[Identity]:
        try:
            response = await self._request(
                "get_user_by_id", "GET", f"/auth/v1/admin/users/{quote(user_id, safe='')}"
            )
        except BackendError:
            return None
        if not response.is_success:
            logger.info(
                "auth_admin_lookup_failed",
                user_id=user_id,
                status_code=response.status_code,
            )
            return None
        payload = _json_or_none(response)
        # Some auth server versions wrap the user object
        if isinstance(payload, dict) and isinstance(payload.get("user"), dict):
            payload = payload["user"]
        if not isinstance(payload, dict) or not payload.get("id"):
            return None
        return Identity.from_auth_payload(payload)

    async def delete_user(self, user_id: str) -> None:
        response = await self._request(
            "delete_user", "DELETE", f"/auth/v1/admin/users/{quote(user_id, safe='')}"
        )
        if response.status_code == 404:
            logger.info("auth_delete_user_absent", user_id=user_id)
            return
        self._raise_for("delete_user", response)

    # -- rows --------------------------------------------------------------

    async def delete_rows(self, table: str, owner_ids: Sequence[str]) -> None:
        response = await self._request(
            "delete_rows",
            "DELETE",
            f"/rest/v1/{table}",
            params={"user_id": _in_filter(owner_ids)},
            headers={"Prefer": "return=minimal"},
        )
        self._raise_for("delete_rows", response)

    async def update_rows(
        self, table: str, owner_ids: Sequence[str], values: Dict[str, Any]
    ) -> None:
        response = await self._request(
            "update_rows",
            "PATCH",
            f"/rest/v1/{table}",
            params={"user_id": _in_filter(owner_ids)},
            json=values,
            headers={"Prefer": "return=minimal"},
        )
        self._raise_for("update_rows", response)

    async def count_rows(self, table: str, owner_id: str) -> int:
        response = await self._request(
            "count_rows",
            "HEAD",
            f"/rest/v1/{table}",
            params={"select": "id", "user_id": f"eq.{owner_id}"},
            headers={"Prefer": "count=exact"},
        )
        self._raise_for("count_rows", response)
        content_range = response.headers.get("content-range", "")
        _, _, total = content_range.partition("/")
        try:
            return int(total)
        except ValueError:
            raise BackendError(
                "count_rows", f"unexpected content-range {content_range!r}"
            ) from None

    # -- objects -----------------------------------------------------------

    async def list_objects(self, bucket: str, prefix: str, limit: int) -> List[str]:
        response = await self._request(
            "list_objects",
            "POST",
            f"/storage/v1/object/list/{bucket}",
            json={
                "prefix": prefix,
                "limit": limit,
                "offset": 0,
                "sortBy": {"column": "name", "order": "asc"},
            },
        )
        self._raise_for("list_objects", response)
        entries = _json_or_none(response)
        if not isinstance(entries, list):
            raise BackendError(
                "list_objects", "unexpected listing payload", status_code=response.status_code
            )
        return [
            entry["name"] for entry in entries if isinstance(entry, dict) and entry.get("name")
        ]

    async def remove_objects(self, bucket: str, paths: Iterable[str]) -> None:
        response = await self._request(
            "remove_objects",
            "DELETE",
            f"/storage/v1/object/{bucket}",
            json={"prefixes": list(paths)},
        )
        self._raise_for("remove_objects", response)

    async def move_object(self, bucket: str, source: str, destination: str) -> None:
        response = await self._request(
            "move_object",
            "POST",
            "/storage/v1/object/move",
            json={
                "bucketId": bucket,
                "sourceKey": source,
                "destinationKey": destination,
            },
        )
        self._raise_for("move_object", response)

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{quote(path)}"
