"""In-process cache for guild names fetched from Discord."""
from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from .gateway import GatewayError, GuildMetadata

_log = logging.getLogger(__name__)

GuildFetcher = Callable[[str], Awaitable[Optional[GuildMetadata]]]


class GuildMetadataCache:
    """Caches guild lookups per id.

    ``ttl`` is in seconds; ``None`` keeps entries for the life of the process.
    Failed lookups are logged and not cached.
    """

    def __init__(
        self,
        fetcher: GuildFetcher,
        *,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetcher = fetcher
        self._ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Optional[GuildMetadata]]] = {}

    def _fresh(self, stored_at: float) -> bool:
        return self._ttl is None or self._clock() - stored_at < self._ttl

    async def get(self, guild_id: str) -> Optional[GuildMetadata]:
        cached = self._entries.get(guild_id)
        if cached is not None and self._fresh(cached[0]):
            return cached[1]

        try:
            metadata = await self._fetcher(guild_id)
        except GatewayError as exc:
            _log.warning("Failed to fetch guild metadata for %s: %s", guild_id, exc)
            return None

        self._entries[guild_id] = (self._clock(), metadata)
        return metadata

    def invalidate(self, guild_id: Optional[str] = None) -> None:
        if guild_id is None:
            self._entries.clear()
        else:
            self._entries.pop(guild_id, None)
