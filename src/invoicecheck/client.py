"""Async HTTP client for the invoicing application under test."""

from __future__ import annotations

import logging
import time
from contextlib import suppress
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from invoicecheck.harness.models import RunConfig

logger = logging.getLogger(__name__)


class InvoiceApiClient:
    """Thin wrapper around ``httpx.AsyncClient`` bound to one target deployment.

    Paths passed with ``api=True`` (the default) are resolved under the configured API
    prefix, e.g. ``/invoices`` -> ``{base_url}{api_base_path}/invoices``. Pages, static
    assets and auth routes are requested with ``api=False``.
    """

    def __init__(self, config: RunConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                timeout=self.config.request_timeout_s,
                transport=self._transport,
                headers=dict(self.config.extra_headers),
                follow_redirects=False,
            )
        return self._client

    async def open(self) -> None:
        self.http  # noqa: B018 - instantiate the pooled client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "InvoiceApiClient":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def path(self, path: str, *, api: bool = True) -> str:
        if not api:
            return path
        prefix = "/" + self.config.api_base_path.strip("/") if self.config.api_base_path.strip("/") else ""
        return f"{prefix}{path}"

    def url(self, path: str, *, api: bool = True) -> str:
        return f"{self.config.base_url.rstrip('/')}{self.path(path, api=api)}"

    async def request(
        self,
        method: str,
        path: str,
        *,
        api: bool = True,
        auth: bool = True,
        json: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        files: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        merged: Dict[str, str] = {}
        if auth and self.config.auth_token:
            merged["Authorization"] = f"Bearer {self.config.auth_token}"
        if headers:
            merged.update(headers)
        response = await self.http.request(
            method,
            self.path(path, api=api),
            json=json,
            params=params,
            files=files,
            headers=merged,
        )
        logger.debug("%s %s -> %s", method, path, response.status_code)
        return response

    async def timed(self, method: str, path: str, **kwargs: Any) -> Tuple[httpx.Response, int]:
        start = time.perf_counter()
        response = await self.request(method, path, **kwargs)
        return response, int(round((time.perf_counter() - start) * 1000))

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", path, **kwargs)

    async def upload(
        self,
        path: str,
        filename: str,
        content: bytes,
        content_type: str,
        *,
        api: bool = True,
    ) -> httpx.Response:
        return await self.request("POST", path, api=api, files={"file": (filename, content, content_type)})

    async def create(self, resource: str, payload: Mapping[str, Any], **kwargs: Any) -> Optional[Dict[str, Any]]:
        """POST ``payload`` to ``/{resource}``; return the created record or ``None`` when rejected."""
        response = await self.post(f"/{resource}", json=dict(payload), **kwargs)
        if not response.is_success:
            logger.debug("Create %s rejected with %s", resource, response.status_code)
            return None
        body = json_or_none(response)
        return body if isinstance(body, dict) else {}

    async def delete_idempotent(self, resource: str, record_id: Any) -> Tuple[bool, int]:
        """DELETE a record; 2xx and 404 (already gone) both count as success."""
        response = await self.delete(f"/{resource}/{record_id}")
        return response.is_success or response.status_code == 404, response.status_code

    async def discard(self, resource: str, record_id: Any) -> None:
        """Best-effort cleanup of probe-owned records."""
        if not record_id:
            return
        with suppress(httpx.HTTPError):
            await self.delete(f"/{resource}/{record_id}")


def json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def text_or_empty(response: httpx.Response) -> str:
    try:
        return response.text
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return ""
