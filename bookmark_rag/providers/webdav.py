"""Minimal WebDAV client for storing the bookmark export file."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from bookmark_rag.core.errors import SyncError

logger = logging.getLogger(__name__)

SYNC_FILENAME = "bookmarks.json"
WEBDAV_TIMEOUT = 30.0


def build_folder_url(base_url: str, path: str) -> str:
    base = base_url.rstrip("/")
    path = path.strip("/")
    return f"{base}/{path}/" if path else f"{base}/"


def build_file_url(base_url: str, path: str) -> str:
    return f"{build_folder_url(base_url, path)}{SYNC_FILENAME}"


class WebDAVClient:
    """Async WebDAV client using Basic auth.

    Use as an async context manager, or call `aclose()`.
    """

    def __init__(
        self,
        base_url: str,
        path: str,
        username: str = "",
        password: str = "",
        timeout: float = WEBDAV_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("WebDAV URL is required")
        self.folder_url = build_folder_url(base_url, path)
        self.file_url = build_file_url(base_url, path)
        self._base_url = base_url.rstrip("/")
        self._path = path.strip("/")
        self._client = httpx.AsyncClient(
            auth=(username, password) if username else None,
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> WebDAVClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise SyncError(f"WebDAV {method} timed out: {url}") from e
        except httpx.RequestError as e:
            raise SyncError(f"WebDAV {method} failed: {e}") from e

    @staticmethod
    def _check(response: httpx.Response, action: str) -> None:
        if response.status_code in (401, 403):
            raise SyncError(
                f"{action} failed: authentication rejected ({response.status_code})",
                http_status=response.status_code,
            )
        if response.is_error:
            raise SyncError(
                f"{action} failed: {response.status_code} {response.reason_phrase}",
                http_status=response.status_code,
            )

    async def folder_exists(self, url: str) -> bool:
        response = await self._request("PROPFIND", url, headers={"Depth": "0"})
        return response.status_code == 207 or response.is_success

    async def ensure_folder_exists(self) -> None:
        """Create the sync folder, creating missing parents one by one if needed."""
        if not self._path or await self.folder_exists(self.folder_url):
            return

        response = await self._request("MKCOL", self.folder_url)
        if response.is_success or response.status_code == 405:
            return

        # Parent collections may be missing
        current = self._base_url
        for part in self._path.split("/"):
            current = f"{current}/{part}"
            if await self.folder_exists(f"{current}/"):
                continue
            response = await self._request("MKCOL", f"{current}/")
            if not response.is_success and response.status_code != 405:
                self._check(response, f"Creating folder {current}/")

    async def download(self) -> dict[str, Any] | None:
        """Remote export as a dict, or None if the file does not exist."""
        response = await self._request("GET", self.file_url)
        if response.status_code == 404:
            return None
        self._check(response, "Download")
        try:
            data = response.json()
        except ValueError as e:
            raise SyncError(f"Remote file is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise SyncError("Remote file is not an export object")
        return data

    async def upload(self, data: dict[str, Any]) -> None:
        await self.ensure_folder_exists()
        response = await self._request(
            "PUT",
            self.file_url,
            content=json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        self._check(response, "Upload")
        logger.info(f"Uploaded {data.get('bookmarkCount', 0)} bookmarks to {self.file_url}")

    async def test_connection(self) -> dict[str, Any]:
        """Check the server is reachable and the credentials are accepted."""
        response = await self._request("PROPFIND", f"{self._base_url}/", headers={"Depth": "0"})
        if response.status_code in (401, 403):
            return {"success": False, "error": "Authentication failed"}
        if response.status_code == 207 or response.is_success:
            return {"success": True}
        return {"success": False, "error": f"Server returned {response.status_code}"}
