from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from quoteai.logging import get_logger
from quoteai.service.errors import UpstreamUnavailableError

logger = get_logger(__name__)


@dataclass
class UpstreamResponse:
    status_code: int
    body: bytes


class CompletionClient:
    """Forwards chat-completion payloads to the upstream model API.

    The payload is sent exactly as the caller encoded it and the upstream
    status and body come back untouched, error statuses included.
    """

    def __init__(
        self,
        api_key: str,
        endpoint: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                # Completions can take a while to generate
                timeout=httpx.Timeout(max(self.timeout, 60.0), connect=10.0),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def forward(self, raw_body: bytes, *, user_id: Optional[str] = None) -> UpstreamResponse:
        client = await self._get_client()
        try:
            response = await client.post(self.endpoint, content=raw_body)
        except httpx.HTTPError as exc:
            logger.error(
                "completion_upstream_unreachable",
                user_id=user_id,
                endpoint=self.endpoint,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UpstreamUnavailableError("completion upstream unreachable") from exc

        logger.info(
            "completion_forwarded",
            user_id=user_id,
            status_code=response.status_code,
            response_bytes=len(response.content),
        )
        return UpstreamResponse(status_code=response.status_code, body=response.content)
