"""
Outbound HTTP capability backed by httpx.
"""

from typing import Any, Dict, Optional
import logging

import httpx

from phaseflow.capabilities.base import HttpResponse
from phaseflow.config import settings


logger = logging.getLogger(__name__)


class HttpxClient:
    """
    Shared async HTTP client.

    One ``httpx.AsyncClient`` is created lazily and reused by every
    instance; call ``aclose()`` on shutdown. A custom transport can be
    passed in (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        kwargs: Dict[str, Any] = {"headers": headers or {}}
        if body is not None:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)
        if timeout is not None:
            kwargs["timeout"] = timeout

        logger.info(f"HTTP {method.upper()} {url}")
        response = await self.client.request(method.upper(), url, **kwargs)
        return HttpResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=response.text,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
