"""HTTP client for the remote agent service.

Thin async wrapper over the service's REST API (OpenCode server layout,
``http://localhost:4096`` by default). Every call is keyed by session id;
responses carry either a result payload or an ``{"error": ...}`` payload.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from ..errors import BackendError, NotFoundError, TransportUnavailableError

logger = logging.getLogger(__name__)


class RemoteClient:
    """One connection pool per remote backend URL."""

    def __init__(self, base_url: str, timeout_seconds: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._http: aiohttp.ClientSession | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    def _session(self) -> aiohttp.ClientSession:
        # Created lazily: aiohttp sessions must be built inside a running loop.
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(timeout=self._timeout)
        return self._http

    async def close(self) -> None:
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        as_text: bool = False,
    ) -> Any:
        url = f"{self._base_url}{path}"
        try:
            async with self._session().request(
                method, url, params=params, json=json_body,
            ) as resp:
                if resp.status >= 500:
                    body = await resp.text()
                    raise TransportUnavailableError(
                        self._base_url,
                        f"{method} {path} -> HTTP {resp.status}: {body[:200]}",
                    )
                if resp.status == 404:
                    raise NotFoundError("remote resource", path)
                if resp.status >= 400:
                    raise BackendError(
                        self._base_url, resp.status, await _error_message(resp),
                    )
                if as_text:
                    return await resp.text()
                try:
                    payload = await resp.json(content_type=None)
                except ValueError as exc:
                    # Proxies and captive portals answer 2xx with HTML.
                    raise TransportUnavailableError(
                        self._base_url,
                        f"{method} {path}: response is not JSON ({exc})",
                    ) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise TransportUnavailableError(
                self._base_url, f"{method} {path}: {exc or type(exc).__name__}",
            ) from exc

        if isinstance(payload, dict) and payload.get("error"):
            raise BackendError(self._base_url, 200, str(payload["error"]))
        return payload

    # ── Service ──

    async def health(self) -> dict[str, Any]:
        """GET /global/health -> {"healthy": bool, "version": str}."""
        data = await self._request("GET", "/global/health")
        if not isinstance(data, dict):
            raise BackendError(self._base_url, 200, "malformed health response")
        return data

    async def list_agents(self) -> list[dict[str, Any]]:
        return list(await self._request("GET", "/agent") or [])

    # ── Sessions ──

    async def list_sessions(self) -> list[dict[str, Any]]:
        return list(await self._request("GET", "/session") or [])

    async def create_session(self, title: str | None = None) -> dict[str, Any]:
        data = await self._request(
            "POST", "/session", json_body={"title": title or "New Session"},
        )
        if not isinstance(data, dict) or not data.get("id"):
            raise BackendError(self._base_url, 200, "session create returned no id")
        return data

    async def delete_session(self, session_id: str) -> bool:
        return bool(await self._request("DELETE", f"/session/{session_id}"))

    async def abort_session(self, session_id: str) -> bool:
        return bool(await self._request("POST", f"/session/{session_id}/abort"))

    async def send_message(
        self, session_id: str, text: str, model: str | None = None,
    ) -> list[dict[str, Any]]:
        body: dict[str, Any] = {"message": text}
        if model:
            body["model"] = model
        data = await self._request(
            "POST", f"/session/{session_id}/message", json_body=body,
        )
        return data if isinstance(data, list) else [data] if data else []

    async def get_messages(
        self, session_id: str, limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params = {"limit": limit} if limit is not None else None
        data = await self._request(
            "GET", f"/session/{session_id}/message", params=params,
        )
        return list(data or [])

    async def get_diffs(self, session_id: str) -> list[dict[str, Any]]:
        return list(await self._request("GET", f"/session/{session_id}/diff") or [])

    async def respond_permission(
        self, session_id: str, permission_id: str, approved: bool,
    ) -> bool:
        """Answer a gated tool call: ``once`` lets it run, ``reject`` abandons it."""
        return bool(await self._request(
            "POST",
            f"/session/{session_id}/permissions/{permission_id}",
            json_body={"response": "once" if approved else "reject"},
        ))

    # ── Files ──

    async def search_files(self, pattern: str) -> list[str]:
        return [str(p) for p in await self._request(
            "GET", "/find", params={"pattern": pattern},
        ) or []]

    async def read_file(self, path: str) -> str:
        return await self._request(
            "GET", "/file/content", params={"path": path}, as_text=True,
        )

    async def list_files(self, path: str) -> Any:
        return await self._request("GET", "/file", params={"path": path})


async def _error_message(resp: aiohttp.ClientResponse) -> str:
    try:
        payload = await resp.json(content_type=None)
    except (ValueError, aiohttp.ContentTypeError):
        return (await resp.text())[:200]
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return str(payload)[:200]
