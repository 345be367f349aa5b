from __future__ import annotations

import asyncio
import logging
import urllib.parse
from typing import Any, Dict, List, Mapping, Optional

import aiohttp

from .errors import ProtocolError, RemoteRequestError, SettingsError, TransportError
from .models import ApplicationMeta, Message
from .settings import normalize_base_url
from .utils import truncate_message

logger = logging.getLogger(__name__)

AUTH_HEADER = "X-Gotify-Key"
MAX_API_PAGE_LIMIT = 200


def resolve_application_image_url(base_url: str, image_path: str) -> str:
    if not image_path or not image_path.strip():
        return ""
    return urllib.parse.urljoin(base_url.rstrip("/") + "/", image_path.strip())


class GotifyClient:
    """Thin REST client for the message server.

    Owns its ``aiohttp.ClientSession`` unless one is passed in.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_sec: float = 15.0,
    ) -> None:
        self._base_url = normalize_base_url(base_url)
        if not token or not token.strip():
            raise SettingsError("No token found. Save token in settings first.")
        self._token = token.strip()
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_sec)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def fetch_applications(self) -> Dict[int, ApplicationMeta]:
        data = await self._get_json("/application")
        if not isinstance(data, list):
            raise ProtocolError("application list is not an array")
        result: Dict[int, ApplicationMeta] = {}
        for item in data:
            if not isinstance(item, Mapping):
                continue
            app_id = item.get("id")
            if isinstance(app_id, bool) or not isinstance(app_id, int):
                continue
            result[app_id] = ApplicationMeta(
                name=str(item.get("name") or f"app:{app_id}"),
                icon_url=resolve_application_image_url(self._base_url, str(item.get("image") or "")),
            )
        logger.info("applications_fetched count=%s", len(result))
        return result

    async def fetch_recent_messages(
        self,
        limit: int,
        app_meta: Optional[Mapping[int, ApplicationMeta]] = None,
    ) -> List[Message]:
        """Page through ``/message`` newest-first until ``limit`` messages are collected."""
        fresh: List[Message] = []
        since: Optional[int] = None
        while len(fresh) < limit:
            page_limit = min(limit - len(fresh), MAX_API_PAGE_LIMIT)
            params: Dict[str, Any] = {"limit": page_limit}
            if since is not None:
                params["since"] = since
            data = await self._get_json("/message", params=params)
            items = data.get("messages") if isinstance(data, Mapping) else None
            if not isinstance(items, list):
                raise ProtocolError("message list response has no 'messages' array")
            if not items:
                break

            min_id: Optional[int] = None
            for item in items:
                try:
                    message = Message.from_wire(item, app_meta)
                except ProtocolError as exc:
                    logger.warning("message_list_item_skipped err=%s", exc)
                    continue
                min_id = message.id if min_id is None else min(min_id, message.id)
                fresh.append(message)
                if len(fresh) >= limit:
                    break

            if min_id is None or min_id == since:
                break
            since = min_id
            if len(items) < page_limit:
                break
        logger.debug("recent_messages_fetched count=%s limit=%s", len(fresh), limit)
        return fresh

    async def delete_message(self, message_id: int) -> int:
        if message_id <= 0:
            raise SettingsError("Invalid message id")
        url = f"{self._base_url}/message/{message_id}"
        session = self._ensure_session()
        try:
            async with session.delete(url, headers=self._headers(), timeout=self._timeout) as response:
                status = response.status
                if 200 <= status < 300 or status == 404:
                    logger.info("delete_message_ok id=%s http=%s", message_id, status)
                    return status
                body = await response.text(errors="replace")
        except aiohttp.ClientError as exc:
            raise TransportError(f"Failed to delete message {message_id}: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Deleting message {message_id} timed out") from exc
        raise RemoteRequestError(
            f"Delete failed (HTTP {status}): {truncate_message(body, 200)}", status=status
        )

    def _headers(self) -> Dict[str, str]:
        return {AUTH_HEADER: self._token}

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        session = self._ensure_session()
        url = f"{self._base_url}{path}"
        try:
            async with session.get(
                url, params=params, headers=self._headers(), timeout=self._timeout
            ) as response:
                if response.status < 200 or response.status >= 300:
                    body = await response.text(errors="replace")
                    raise RemoteRequestError(
                        f"Request {path} failed with HTTP {response.status}: "
                        f"{truncate_message(body, 200)}",
                        status=response.status,
                    )
                try:
                    return await response.json(content_type=None)
                except ValueError as exc:
                    raise ProtocolError(f"Failed to decode {path} response: {exc}") from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"Request {path} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Request {path} timed out") from exc
