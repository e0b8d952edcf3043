"""Caller identity and administrator checks for configuration commands."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from .database import Database

ADMINISTRATOR_BIT = 1 << 3

GUILD_ONLY_MESSAGE = "This command can only be used inside a guild."
ADMIN_REQUIRED_MESSAGE = "You must have the administrator role to use this command."


@dataclass(frozen=True)
class Actor:
    """The member that triggered a command or button."""

    user_id: str
    username: str
    display_name: Optional[str] = None
    discriminator: Optional[str] = None
    role_ids: FrozenSet[str] = field(default_factory=frozenset)
    permissions: int = 0
    is_member: bool = True

    @property
    def is_administrator(self) -> bool:
        return self.permissions & ADMINISTRATOR_BIT == ADMINISTRATOR_BIT

    def has_role(self, role_id: Optional[str]) -> bool:
        return bool(role_id) and role_id in self.role_ids


async def ensure_admin_access(
    db: Database,
    actor: Actor,
    guild_id: Optional[str],
    *,
    allow_moderator_roles: bool = False,
) -> Optional[str]:
    """Return a denial message, or ``None`` when the actor may proceed."""

    if not guild_id or not actor.is_member:
        return GUILD_ONLY_MESSAGE

    if actor.is_administrator:
        return None

    config = await db.get_guild_config(guild_id)
    if actor.has_role(config.admin_role_id):
        return None

    if allow_moderator_roles:
        moderator_roles = await db.list_trade_roles(guild_id)
        if any(actor.has_role(role_id) for role_id in moderator_roles):
            return None

    return ADMIN_REQUIRED_MESSAGE
