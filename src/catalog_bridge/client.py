"""
Low-level HTTP access to the catalog service.

Every call sends the API key both as the ``X-Api-Key`` header and as the
``apikey`` query parameter, since some reverse proxies strip custom headers.
"""

import json
import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from . import __version__
from .config import CatalogInstanceConfig
from .errors import InvalidResponseError, TransportError, redact_api_key, truncate_body

logger = logging.getLogger(__name__)

USER_AGENT = f"catalog-bridge/{__version__}"


class CatalogClient:
    """Thin async wrapper around the catalog service HTTP API."""

    def __init__(
        self,
        instance: CatalogInstanceConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            instance: Connection settings for one catalog service instance
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.instance = instance
        self.transport = transport

    def build_url(self, path: str, params: dict[str, Any] | None = None) -> str:
        """Join base URL and path, appending params and the apikey."""
        query = dict(params or {})
        query["apikey"] = self.instance.get_api_key()
        url = self.instance.base_url + path
        separator = "&" if "?" in url else "?"
        return url + separator + urlencode(query)

    def headers(self, has_body: bool = False) -> dict[str, str]:
        headers = {
            "X-Api-Key": self.instance.get_api_key(),
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        }
        if has_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        content: bytes | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """
        Issue one request and return the response, whatever its status.

        Raises:
            TransportError: on connection failures and timeouts
        """
        url = self.build_url(path, params)
        safe_url = redact_api_key(url)
        logger.debug(f"{method} {safe_url}")

        async with httpx.AsyncClient(
            timeout=timeout or self.instance.timeout_seconds,
            verify=not self.instance.insecure_skip_verify,
            transport=self.transport,
        ) as client:
            try:
                return await client.request(
                    method,
                    url,
                    headers=self.headers(has_body=content is not None),
                    content=content,
                )
            except httpx.TimeoutException as e:
                raise TransportError(f"{method} {safe_url} timed out", url=url) from e
            except httpx.HTTPError as e:
                raise TransportError(f"{method} {safe_url} failed: {e}", url=url) from e

    async def get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """GET a path and decode its JSON body, raising on non-2xx."""
        response = await self.request("GET", path, params=params, timeout=timeout)
        raise_for_status(response)
        return decode_json(response)


def raise_for_status(response: httpx.Response, action: str | None = None) -> None:
    """Convert a non-2xx response into InvalidResponseError."""
    if response.is_success:
        return
    url = str(response.request.url)
    content_type = response.headers.get("Content-Type", "")
    prefix = f"{action} failed " if action else ""
    raise InvalidResponseError(
        f"{prefix}(HTTP {response.status_code}, ct={content_type}) from {redact_api_key(url)}: "
        f"{truncate_body(response.text)}",
        status_code=response.status_code,
        body=response.text,
        url=url,
    )


def decode_json(response: httpx.Response) -> Any:
    """Decode a response body, converting parse failures into InvalidResponseError."""
    try:
        return json.loads(response.content)
    except ValueError as e:
        url = str(response.request.url)
        content_type = response.headers.get("Content-Type", "")
        raise InvalidResponseError(
            f"invalid JSON (ct={content_type}) (HTTP {response.status_code}) "
            f"from {redact_api_key(url)}: {truncate_body(response.text)}",
            status_code=response.status_code,
            body=response.text,
            url=url,
        ) from e
