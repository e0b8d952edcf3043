"""Configuration helpers for the bot."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv


@dataclass
class Settings:
    """Runtime settings loaded from the environment."""

    discord_token: str
    database_path: str = "data/pledgebot.sqlite"
    guild_ids: List[int] = field(default_factory=list)
    allow_offline: bool = False
    api_base_url: str = "https://discord.com/api/v10"
    request_timeout: float = 10.0
    log_level: str = "INFO"


def _parse_guild_ids(raw: str) -> List[int]:
    ids = []
    for value in raw.split(","):
        value = value.strip()
        if value.isdigit():
            ids.append(int(value))
    return ids


def load_settings() -> Settings:
    """Load settings from environment variables.

    The function will read a local `.env` file when present.
    """

    load_dotenv()
    token = os.getenv("DISCORD_TOKEN")
    if not token:
        raise RuntimeError("DISCORD_TOKEN is required to run the bot")

    timeout_raw = os.getenv("DISCORD_REQUEST_TIMEOUT", "10")
    try:
        request_timeout = float(timeout_raw)
    except ValueError as exc:
        raise RuntimeError("DISCORD_REQUEST_TIMEOUT must be a number of seconds") from exc

    return Settings(
        discord_token=token,
        database_path=os.getenv("TRADER_DB_PATH", "data/pledgebot.sqlite"),
        guild_ids=_parse_guild_ids(os.getenv("DISCORD_GUILD_IDS", "")),
        allow_offline=os.getenv("DISCORD_ALLOW_OFFLINE", "").strip().lower() == "true",
        api_base_url=os.getenv("DISCORD_API_BASE_URL", "https://discord.com/api/v10"),
        request_timeout=request_timeout,
        log_level=os.getenv("PLEDGEBOT_LOG_LEVEL", "INFO").upper(),
    )
