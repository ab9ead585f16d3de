"""Mattermost REST client (API v4) over aiohttp."""
from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiohttp

from threadlink.engine.config import ChatConfig
from threadlink.engine.errors import ChatClientError

logger = logging.getLogger(__name__)

DIRECT_CHANNEL_TYPE = "D"


@dataclass
class Post:
    id: str
    channel_id: str = ""
    message: str = ""
    root_id: str = ""
    user_id: str = ""
    file_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Post:
        return cls(
            id=str(data["id"]),
            channel_id=str(data.get("channel_id") or ""),
            message=str(data.get("message") or ""),
            root_id=str(data.get("root_id") or ""),
            user_id=str(data.get("user_id") or ""),
            file_ids=[str(f) for f in data.get("file_ids") or []],
        )


@dataclass
class Channel:
    id: str
    type: str = ""
    name: str = ""

    @property
    def is_direct(self) -> bool:
        return self.type == DIRECT_CHANNEL_TYPE


@dataclass
class FileInfo:
    id: str
    name: str
    size: int = 0
    extension: str = ""
    mime_type: str = ""


class ChatClient:
    """Thin async wrapper over the endpoints the bridge needs.

    Every failure surfaces as ChatClientError carrying the HTTP status
    when there was one.
    """

    def __init__(
        self,
        config: ChatConfig,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None
        self.bot_user_id: str = ""
        self.bot_username: str = ""

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"Authorization": f"Bearer {self._config.token}"},
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout_seconds),
            )
            self._owns_session = True
        me = await self.get_me()
        self.bot_user_id = str(me.get("id") or "")
        self.bot_username = str(me.get("username") or "")
        logger.info("Chat client connected as @%s (%s)", self.bot_username, self.bot_user_id[:8])

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json: Any = None,
        data: Any = None,
        raw: bool = False,
    ) -> Any:
        if self._session is None:
            raise ChatClientError(operation, "client not started")
        url = self._config.api_url + path
        try:
            async with self._session.request(method, url, json=json, data=data) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise ChatClientError(operation, body[:200] or resp.reason or "", resp.status)
                if raw:
                    return await resp.read()
                if resp.status == 204:
                    return None
                return await resp.json(content_type=None)
        except ChatClientError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ChatClientError(operation, str(exc) or type(exc).__name__) from exc

    async def get_me(self) -> dict[str, Any]:
        return await self._request("GET", "/users/me", "get_me")

    async def get_user(self, user_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/users/{user_id}", "get_user")

    async def get_channel(self, channel_id: str) -> Channel:
        data = await self._request("GET", f"/channels/{channel_id}", "get_channel")
        return Channel(id=data["id"], type=data.get("type", ""), name=data.get("name", ""))

    async def create_direct_channel(self, user_id: str) -> Channel:
        data = await self._request(
            "POST", "/channels/direct", "create_direct_channel",
            json=[self.bot_user_id, user_id],
        )
        return Channel(id=data["id"], type=data.get("type", DIRECT_CHANNEL_TYPE), name=data.get("name", ""))

    async def create_post(
        self,
        channel_id: str,
        message: str,
        root_id: str | None = None,
        file_ids: list[str] | None = None,
    ) -> Post:
        payload: dict[str, Any] = {"channel_id": channel_id, "message": message}
        if root_id:
            payload["root_id"] = root_id
        if file_ids:
            payload["file_ids"] = list(file_ids)
        data = await self._request("POST", "/posts", "create_post", json=payload)
        return Post.from_api(data)

    async def update_post(self, post_id: str, message: str) -> Post:
        data = await self._request(
            "PUT", f"/posts/{post_id}/patch", "update_post", json={"message": message},
        )
        return Post.from_api(data)

    async def get_file_info(self, file_id: str) -> FileInfo:
        data = await self._request("GET", f"/files/{file_id}/info", "get_file_info")
        return FileInfo(
            id=data["id"],
            name=data.get("name", file_id),
            size=int(data.get("size") or 0),
            extension=data.get("extension", ""),
            mime_type=data.get("mime_type", ""),
        )

    async def download_file(self, file_id: str) -> bytes:
        return await self._request("GET", f"/files/{file_id}", "download_file", raw=True)

    async def upload_file(self, channel_id: str, path: Path) -> str:
        """Upload a local file and return its file id."""
        form = aiohttp.FormData()
        form.add_field("channel_id", channel_id)
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        form.add_field("files", path.read_bytes(), filename=path.name, content_type=content_type)
        data = await self._request("POST", "/files", "upload_file", data=form)
        infos = data.get("file_infos") or []
        if not infos:
            raise ChatClientError("upload_file", "no file info returned")
        return str(infos[0]["id"])
