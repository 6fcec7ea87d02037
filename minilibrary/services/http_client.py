import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class AIHTTPClient:
    """Pooled async HTTP client for outbound model calls.

    Created once in the application lifespan and handed to the services that
    need it, then closed on shutdown.
    """

    def __init__(self, timeout: float = 20.0) -> None:
        limits = httpx.Limits(
            max_keepalive_connections=10,
            max_connections=50,
            keepalive_expiry=30.0
        )
        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=httpx.Timeout(timeout, connect=5.0),
            follow_redirects=True,
        )

    async def post_json(self, url: str, payload: Dict[str, Any], *,
                        params: Optional[Dict[str, str]] = None,
                        headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        """Single POST; transport errors propagate to the caller."""
        return await self._client.post(url, json=payload, params=params, headers=headers)

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
