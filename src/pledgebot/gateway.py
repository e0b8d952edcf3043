"""REST client that posts and edits trade announcements on Discord."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
import discord

from .embeds import ANNOUNCEMENT_HOST
from .models import ChannelType

_log = logging.getLogger(__name__)

MISSING_REQUIRED_TAG_CODE = 40067


class GatewayError(Exception):
    """Raised when a Discord REST call fails or cannot be completed."""

    def __init__(self, message: str, *, status: Optional[int] = None, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


@dataclass(frozen=True)
class AnnouncementResult:
    url: Optional[str]
    channel_id: Optional[str]
    message_id: Optional[str]


@dataclass(frozen=True)
class GuildMetadata:
    id: str
    name: str


def _error_code(body: str) -> Optional[int]:
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("code"), int):
        return payload["code"]
    return None


class AnnouncementGateway:
    """Thin wrapper around the channel, thread and guild endpoints we need."""

    def __init__(
        self,
        token: str,
        base_url: str = "https://discord.com/api/v10",
        *,
        request_timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self._session = session
        self._owns_session = session is None

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        headers = {"Authorization": f"Bot {self.token}"}
        try:
            async with self._get_session().request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            ) as resp:
                body = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise GatewayError(f"{method} {path} failed: {exc}") from exc

        if status < 200 or status >= 300:
            raise GatewayError(
                f"{method} {path} returned {status}: {body}",
                status=status,
                code=_error_code(body),
            )
        if not body:
            return None
        try:
            return json.loads(body)
        except ValueError as exc:
            raise GatewayError(f"{method} {path} returned invalid JSON", status=status) from exc

    @staticmethod
    def _message_payload(
        content: Optional[str],
        embed: discord.Embed,
        components: Optional[List[Dict[str, Any]]],
        owner_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"embeds": [embed.to_dict()]}
        if content is not None:
            payload["content"] = content
        if components is not None:
            payload["components"] = components
        if owner_id is not None:
            payload["allowed_mentions"] = {"parse": [], "users": [owner_id]}
        return payload

    async def post_announcement(
        self,
        *,
        guild_id: str,
        channel_id: str,
        channel_type: ChannelType,
        content: str,
        embed: discord.Embed,
        owner_id: str,
        thread_name: str,
        components: Optional[List[Dict[str, Any]]] = None,
        applied_tags: Sequence[str] = (),
    ) -> AnnouncementResult:
        """Post a message into a text channel or open a thread in a forum.

        When a forum rejects the thread because it requires a tag and none
        were supplied, the first available tag is applied and the request is
        retried once.
        """

        message = self._message_payload(content, embed, components, owner_id)
        if ChannelType(channel_type) is ChannelType.TEXT:
            data = await self._request("POST", f"/channels/{channel_id}/messages", message)
            message_id = str(data["id"]) if data and data.get("id") else None
            if message_id is None:
                raise GatewayError(f"POST /channels/{channel_id}/messages returned no message id")
            return AnnouncementResult(
                f"{ANNOUNCEMENT_HOST}/channels/{guild_id}/{channel_id}/{message_id}",
                channel_id,
                message_id,
            )

        tags = list(applied_tags)
        payload: Dict[str, Any] = {"name": thread_name, "message": message}
        if tags:
            payload["applied_tags"] = tags
        try:
            data = await self._request("POST", f"/channels/{channel_id}/threads", payload)
        except GatewayError as exc:
            if tags or exc.status != 400 or exc.code != MISSING_REQUIRED_TAG_CODE:
                raise
            fallback = await self.fetch_forum_tags(channel_id)
            if not fallback:
                raise GatewayError(
                    f"Forum channel {channel_id} requires a tag but none are available",
                    status=exc.status,
                    code=exc.code,
                ) from exc
            _log.info("Retrying forum post in %s with fallback tag %s", channel_id, fallback[0])
            retry = {**payload, "applied_tags": [fallback[0]]}
            data = await self._request("POST", f"/channels/{channel_id}/threads", retry)

        thread_id = str(data["id"]) if data and data.get("id") else None
        if thread_id is None:
            raise GatewayError(f"POST /channels/{channel_id}/threads returned no thread id")
        starter = data.get("message") or {}
        starter_id = str(starter["id"]) if starter.get("id") else None
        return AnnouncementResult(
            f"{ANNOUNCEMENT_HOST}/channels/{guild_id}/{thread_id}",
            thread_id if starter_id else None,
            starter_id,
        )

    async def patch_announcement(
        self,
        channel_id: str,
        message_id: str,
        embed: discord.Embed,
        *,
        content: Optional[str] = None,
        components: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        await self._request(
            "PATCH",
            f"/channels/{channel_id}/messages/{message_id}",
            self._message_payload(content, embed, components),
        )

    async def patch_thread(
        self,
        thread_id: str,
        *,
        name: Optional[str] = None,
        archived: Optional[bool] = None,
        locked: Optional[bool] = None,
    ) -> None:
        payload: Dict[str, Any] = {}
        if name is not None:
            payload["name"] = name
        if archived is not None:
            payload["archived"] = archived
        if locked is not None:
            payload["locked"] = locked
        if not payload:
            return
        await self._request("PATCH", f"/channels/{thread_id}", payload)

    async def fetch_forum_tags(self, channel_id: str) -> List[str]:
        data = await self._request("GET", f"/channels/{channel_id}")
        tags = (data or {}).get("available_tags") or []
        return [str(tag["id"]) for tag in tags if isinstance(tag, dict) and tag.get("id")]

    async def fetch_guild(self, guild_id: str) -> Optional[GuildMetadata]:
        try:
            data = await self._request("GET", f"/guilds/{guild_id}")
        except GatewayError as exc:
            if exc.status == 404:
                return None
            raise
        if not data or not data.get("name"):
            return None
        return GuildMetadata(id=str(data.get("id", guild_id)), name=str(data["name"]))
