"""Discord bot entrypoint and command registration."""
from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiosqlite
import discord
from discord import app_commands
from discord.ext import commands

from .config import Settings, load_settings
from .controls import CUSTOM_ID_PATTERN
from .database import Database
from .embeds import info_embed
from .gateway import AnnouncementGateway
from .guild_cache import GuildMetadataCache
from .lifecycle import Reply, TradeLifecycle
from .models import ChannelType, ForumTagKind, TradeStatus
from .permissions import Actor

_log = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Something went wrong while processing your request. Please try again later."
ALL_RECORDS = "all"

HELP_TEXT = "\n".join(
    [
        "**User commands**",
        "• `/sell create` — Publish a sell listing with price, stock, and optional image.",
        "• `/sell done` — Mark sold items on one of your trades, or `all` of them.",
        "• `/sell discount` — Apply or remove a percentage discount on an open trade.",
        "• `/sell cancel` / `/sell close` — Cancel or close your trades.",
        "• `/buy create` — Publish a buy order with the item, price, and optional quantity.",
        "• `/buy done` / `/buy cancel` — Mark a buy order fulfilled or cancel it.",
        "",
        "**Admin commands**",
        "• `/trade cancel` — Cancel a trade by ID and share the reason.",
        "• `/trade history` — Review trade history with optional page and status filters.",
        "• `/tradeconfig channel` — Set the trade announcement channel (forum or text).",
        "• `/tradeconfig adminrole` — Set or clear the administrator role.",
        "• `/tradeconfig forumtags` — Add, remove, or list forum tags for buy and sell announcements.",
        "• `/tradeconfig roles` — Manage the moderator roles allowed to run trade admin commands.",
    ]
)


def guild_key(interaction: discord.Interaction) -> Optional[str]:
    return str(interaction.guild_id) if interaction.guild_id else None


def actor_from_interaction(interaction: discord.Interaction) -> Actor:
    """Build an :class:`Actor` from the member or user behind an interaction."""

    user = interaction.user
    roles = getattr(user, "roles", None)
    guild_permissions = getattr(user, "guild_permissions", None)
    return Actor(
        user_id=str(user.id),
        username=user.name,
        display_name=getattr(user, "nick", None) or getattr(user, "global_name", None),
        discriminator=getattr(user, "discriminator", None),
        role_ids=frozenset(str(role.id) for role in roles or []),
        permissions=guild_permissions.value if guild_permissions is not None else 0,
        is_member=roles is not None,
    )


def flatten_options(options: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
    """Collapse nested subcommand options into ``{name: value}``."""

    flattened: Dict[str, Any] = {}
    for option in options or []:
        if "options" in option and "value" not in option:
            flattened.update(flatten_options(option["options"]))
        elif "value" in option:
            flattened[option["name"]] = option["value"]
    return flattened


def image_url(attachment: Optional[discord.Attachment]) -> Optional[str]:
    if attachment is None:
        return None
    if attachment.content_type and not attachment.content_type.startswith("image/"):
        return None
    return attachment.url


def parse_record_option(raw: str) -> Optional[int]:
    cleaned = raw.strip().lstrip("#")
    if not cleaned.isdigit():
        return None
    value = int(cleaned)
    return value if value > 0 else None


class AnnouncementButton(discord.ui.DynamicItem[discord.ui.Button], template=CUSTOM_ID_PATTERN):
    """Routes every trade and buy order button back into the lifecycle."""

    def __init__(
        self,
        custom_id: str,
        *,
        label: str = "Manage",
        style: discord.ButtonStyle = discord.ButtonStyle.secondary,
    ) -> None:
        super().__init__(discord.ui.Button(label=label, style=style, custom_id=custom_id))

    @classmethod
    async def from_custom_id(
        cls,
        interaction: discord.Interaction,
        item: discord.ui.Button,
        match: re.Match[str],
    ) -> "AnnouncementButton":
        return cls(item.custom_id, label=item.label or "Manage", style=item.style)

    async def callback(self, interaction: discord.Interaction) -> None:
        lifecycle: TradeLifecycle = interaction.client.lifecycle
        try:
            await interaction.response.defer(ephemeral=True, thinking=True)
            reply = await lifecycle.handle_control(
                actor_from_interaction(interaction), guild_key(interaction), self.custom_id
            )
            await send_reply(interaction, reply)
        except Exception:
            _log.exception("Button %s failed", self.custom_id)
            await send_text(interaction, GENERIC_FAILURE_MESSAGE)


def build_reply_view(reply: Reply) -> Optional[discord.ui.View]:
    if not reply.controls:
        return None
    view = discord.ui.View(timeout=None)
    for control in reply.controls:
        view.add_item(AnnouncementButton(control.custom_id, label=control.label, style=control.style))
    return view


async def send_text(interaction: discord.Interaction, content: str) -> None:
    try:
        if interaction.response.is_done():
            await interaction.followup.send(content, ephemeral=True)
        else:
            await interaction.response.send_message(content, ephemeral=True)
    except discord.HTTPException:
        _log.warning("Failed to deliver reply for interaction %s", interaction.id)


async def send_reply(interaction: discord.Interaction, reply: Reply) -> None:
    kwargs: Dict[str, Any] = {"ephemeral": True}
    view = build_reply_view(reply)
    if view is not None:
        kwargs["view"] = view
    if interaction.response.is_done():
        await interaction.followup.send(reply.content, **kwargs)
    else:
        await interaction.response.send_message(reply.content, **kwargs)


async def respond(interaction: discord.Interaction, action: Callable[[], Awaitable[Reply]]) -> None:
    await interaction.response.defer(ephemeral=True, thinking=True)
    await send_reply(interaction, await action())


class AuditedCommandTree(app_commands.CommandTree):
    """Command tree that records every invocation and answers on failure."""

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if interaction.type is not discord.InteractionType.application_command:
            return True
        command = interaction.command
        name = command.qualified_name if command is not None else str(interaction.data.get("name"))
        try:
            await self.client.lifecycle.record_invocation(
                actor_from_interaction(interaction),
                guild_key(interaction),
                name,
                flatten_options(interaction.data.get("options")),
                guild_name=interaction.guild.name if interaction.guild else None,
            )
        except aiosqlite.Error:
            _log.exception("Failed to record invocation of /%s", name)
        return True

    async def on_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        command = interaction.command
        _log.exception(
            "Command /%s failed",
            command.qualified_name if command is not None else "unknown",
            exc_info=error,
        )
        await send_text(interaction, GENERIC_FAILURE_MESSAGE)


async def _trade_choices(
    lifecycle: TradeLifecycle, interaction: discord.Interaction, current: str, *, with_all: bool
) -> List[app_commands.Choice[str]]:
    choices = []
    if with_all and ALL_RECORDS.startswith(current.strip().lower()):
        choices.append(app_commands.Choice(name="All open trades", value=ALL_RECORDS))
    matches = await lifecycle.autocomplete_trades(
        actor_from_interaction(interaction), guild_key(interaction), current
    )
    choices.extend(app_commands.Choice(name=label, value=str(trade_id)) for label, trade_id in matches)
    return choices[:25]


async def _buy_order_choices(
    lifecycle: TradeLifecycle, interaction: discord.Interaction, current: str, *, with_all: bool
) -> List[app_commands.Choice[str]]:
    choices = []
    if with_all and ALL_RECORDS.startswith(current.strip().lower()):
        choices.append(app_commands.Choice(name="All open buy orders", value=ALL_RECORDS))
    matches = await lifecycle.autocomplete_buy_orders(
        actor_from_interaction(interaction), guild_key(interaction), current
    )
    choices.extend(app_commands.Choice(name=label, value=str(order_id)) for label, order_id in matches)
    return choices[:25]


class SellGroup(app_commands.Group):
    def __init__(self, lifecycle: TradeLifecycle):
        super().__init__(name="sell", description="Publish and manage sell listings", guild_only=True)
        self.lifecycle = lifecycle

    @app_commands.command(name="create", description="Publish a new sell listing")
    @app_commands.describe(
        title="What you are selling",
        price="Price in aUEC",
        stock="How many units are available",
        image="Optional image of the item",
    )
    async def create(
        self,
        interaction: discord.Interaction,
        title: str,
        price: app_commands.Range[int, 1, None],
        stock: app_commands.Range[int, 1, None] = 1,
        image: Optional[discord.Attachment] = None,
    ):
        await respond(
            interaction,
            lambda: self.lifecycle.create_trade(
                actor_from_interaction(interaction),
                guild_key(interaction),
                title,
                price,
                stock,
                image_url(image),
            ),
        )

    @app_commands.command(name="done", description="Mark items of a trade as sold")
    @app_commands.describe(trade="Trade ID, or 'all' for every open trade", amount="Units sold (default 1)")
    async def done(
        self,
        interaction: discord.Interaction,
        trade: str,
        amount: Optional[app_commands.Range[int, 1, None]] = None,
    ):
        actor = actor_from_interaction(interaction)
        guild_id = guild_key(interaction)
        if trade.strip().lower() == ALL_RECORDS:
            await respond(interaction, lambda: self.lifecycle.mark_all_trades_done(actor, guild_id))
            return
        trade_id = parse_record_option(trade)
        if trade_id is None:
            await send_text(interaction, "Provide a valid trade ID or 'all'.")
            return
        await respond(
            interaction,
            lambda: self.lifecycle.mark_trade_done(actor, guild_id, trade_id, amount or 1),
        )

    @app_commands.command(name="discount", description="Apply or remove a discount on a trade")
    @app_commands.describe(trade="Trade ID", percent="Discount percentage (leave empty to remove)")
    async def discount(
        self,
        interaction: discord.Interaction,
        trade: str,
        percent: Optional[app_commands.Range[int, 0, 95]] = None,
    ):
        trade_id = parse_record_option(trade)
        if trade_id is None:
            await send_text(interaction, "Provide a valid trade ID.")
            return
        await respond(
            interaction,
            lambda: self.lifecycle.discount_trade(
                actor_from_interaction(interaction), guild_key(interaction), trade_id, percent
            ),
        )

    @app_commands.command(name="cancel", description="Cancel one of your trades")
    @app_commands.describe(trade="Trade ID")
    async def cancel(self, interaction: discord.Interaction, trade: str):
        trade_id = parse_record_option(trade)
        if trade_id is None:
            await send_text(interaction, "Provide a valid trade ID.")
            return
        await respond(
            interaction,
            lambda: self.lifecycle.cancel_trade(
                actor_from_interaction(interaction), guild_key(interaction), trade_id
            ),
        )

    @app_commands.command(name="close", description="Close a trade, or all of your open trades")
    @app_commands.describe(trade="Trade ID, or 'all' to close every open trade")
    async def close(self, interaction: discord.Interaction, trade: str):
        actor = actor_from_interaction(interaction)
        guild_id = guild_key(interaction)
        if trade.strip().lower() == ALL_RECORDS:
            await respond(interaction, lambda: self.lifecycle.close_all_trades(actor, guild_id))
            return
        trade_id = parse_record_option(trade)
        if trade_id is None:
            await send_text(interaction, "Provide a valid trade ID or 'all'.")
            return
        await respond(interaction, lambda: self.lifecycle.close_trade(actor, guild_id, trade_id))

    @done.autocomplete("trade")
    @close.autocomplete("trade")
    async def trade_or_all_autocomplete(self, interaction: discord.Interaction, current: str):
        return await _trade_choices(self.lifecycle, interaction, current, with_all=True)

    @discount.autocomplete("trade")
    @cancel.autocomplete("trade")
    async def trade_autocomplete(self, interaction: discord.Interaction, current: str):
        return await _trade_choices(self.lifecycle, interaction, current, with_all=False)


class BuyGroup(app_commands.Group):
    def __init__(self, lifecycle: TradeLifecycle):
        super().__init__(name="buy", description="Publish and manage buy orders", guild_only=True)
        self.lifecycle = lifecycle

    @app_commands.command(name="create", description="Publish a buy order")
    @app_commands.describe(
        item="Item or service you want to buy",
        price="Offered price in aUEC",
        amount="Desired quantity",
        attachment="Optional reference image",
    )
    async def create(
        self,
        interaction: discord.Interaction,
        item: str,
        price: app_commands.Range[int, 1, None],
        amount: Optional[app_commands.Range[int, 1, None]] = None,
        attachment: Optional[discord.Attachment] = None,
    ):
        await respond(
            interaction,
            lambda: self.lifecycle.create_buy_order(
                actor_from_interaction(interaction),
                guild_key(interaction),
                item,
                price,
                amount,
                image_url(attachment),
            ),
        )

    @app_commands.command(name="done", description="Mark a buy order as fulfilled")
    @app_commands.describe(order="Buy order ID, or 'all' for every open order")
    async def done(self, interaction: discord.Interaction, order: str):
        actor = actor_from_interaction(interaction)
        guild_id = guild_key(interaction)
        if order.strip().lower() == ALL_RECORDS:
            await respond(interaction, lambda: self.lifecycle.fulfill_all_buy_orders(actor, guild_id))
            return
        order_id = parse_record_option(order)
        if order_id is None:
            await send_text(interaction, "Provide a valid buy order ID or 'all'.")
            return
        await respond(interaction, lambda: self.lifecycle.fulfill_buy_order(actor, guild_id, order_id))

    @app_commands.command(name="cancel", description="Cancel one of your buy orders")
    @app_commands.describe(order="Buy order ID")
    async def cancel(self, interaction: discord.Interaction, order: str):
        order_id = parse_record_option(order)
        if order_id is None:
            await send_text(interaction, "Provide a valid buy order ID.")
            return
        await respond(
            interaction,
            lambda: self.lifecycle.cancel_buy_order(
                actor_from_interaction(interaction), guild_key(interaction), order_id
            ),
        )

    @done.autocomplete("order")
    async def order_or_all_autocomplete(self, interaction: discord.Interaction, current: str):
        return await _buy_order_choices(self.lifecycle, interaction, current, with_all=True)

    @cancel.autocomplete("order")
    async def order_autocomplete(self, interaction: discord.Interaction, current: str):
        return await _buy_order_choices(self.lifecycle, interaction, current, with_all=False)


class TradeAdminGroup(app_commands.Group):
    def __init__(self, lifecycle: TradeLifecycle):
        super().__init__(name="trade", description="Manage trade history", guild_only=True)
        self.lifecycle = lifecycle

    @app_commands.command(name="history", description="Show trade history with optional filters")
    @app_commands.describe(page="Page number (default: 1)", status="Filter by trade status")
    @app_commands.choices(
        status=[app_commands.Choice(name=status.value, value=status.value) for status in TradeStatus]
    )
    async def history(
        self,
        interaction: discord.Interaction,
        page: app_commands.Range[int, 1, None] = 1,
        status: Optional[app_commands.Choice[str]] = None,
    ):
        await respond(
            interaction,
            lambda: self.lifecycle.trade_history(
                actor_from_interaction(interaction),
                guild_key(interaction),
                TradeStatus(status.value) if status else None,
                page,
            ),
        )

    @app_commands.command(name="cancel", description="Cancel an existing trade")
    @app_commands.describe(trade_id="ID of the trade to cancel", reason="Reason for cancelling the trade")
    async def cancel(
        self,
        interaction: discord.Interaction,
        trade_id: app_commands.Range[int, 1, None],
        reason: str,
    ):
        await respond(
            interaction,
            lambda: self.lifecycle.admin_cancel_trade(
                actor_from_interaction(interaction), guild_key(interaction), trade_id, reason
            ),
        )


_TAG_KIND_CHOICES = [
    app_commands.Choice(name="Sell announcements", value=ForumTagKind.SELL.value),
    app_commands.Choice(name="Buy announcements", value=ForumTagKind.BUY.value),
]


class TradeConfigGroup(app_commands.Group):
    def __init__(self, lifecycle: TradeLifecycle):
        super().__init__(name="tradeconfig", description="Configure trade announcements", guild_only=True)
        self.lifecycle = lifecycle

    roles = app_commands.Group(name="roles", description="Manage trade moderator roles")
    forumtags = app_commands.Group(name="forumtags", description="Manage forum tags for announcements")

    @app_commands.command(name="channel", description="Set the channel used for trade announcements")
    @app_commands.describe(channel="Text or forum channel for announcements")
    async def channel(
        self,
        interaction: discord.Interaction,
        channel: Union[discord.TextChannel, discord.ForumChannel],
    ):
        channel_type = (
            ChannelType.FORUM if isinstance(channel, discord.ForumChannel) else ChannelType.TEXT
        )
        await respond(
            interaction,
            lambda: self.lifecycle.configure_channel(
                actor_from_interaction(interaction),
                guild_key(interaction),
                str(channel.id),
                channel_type,
                guild_name=interaction.guild.name if interaction.guild else None,
            ),
        )

    @app_commands.command(name="adminrole", description="Set or clear the trade administrator role")
    @app_commands.describe(role="Role allowed to administer trades (leave empty to clear)")
    async def adminrole(self, interaction: discord.Interaction, role: Optional[discord.Role] = None):
        await respond(
            interaction,
            lambda: self.lifecycle.set_admin_role(
                actor_from_interaction(interaction),
                guild_key(interaction),
                str(role.id) if role else None,
            ),
        )

    @roles.command(name="add", description="Allow a role to run trade admin commands")
    async def roles_add(self, interaction: discord.Interaction, role: discord.Role):
        await respond(
            interaction,
            lambda: self.lifecycle.add_moderator_role(
                actor_from_interaction(interaction), guild_key(interaction), str(role.id)
            ),
        )

    @roles.command(name="remove", description="Remove a trade moderator role")
    async def roles_remove(self, interaction: discord.Interaction, role: discord.Role):
        await respond(
            interaction,
            lambda: self.lifecycle.remove_moderator_role(
                actor_from_interaction(interaction), guild_key(interaction), str(role.id)
            ),
        )

    @roles.command(name="list", description="List trade moderator roles")
    async def roles_list(self, interaction: discord.Interaction):
        await respond(
            interaction,
            lambda: self.lifecycle.list_moderator_roles(
                actor_from_interaction(interaction), guild_key(interaction)
            ),
        )

    @forumtags.command(name="add", description="Apply a forum tag to new announcements")
    @app_commands.describe(kind="Announcement type", tag_id="Forum tag ID")
    @app_commands.choices(kind=_TAG_KIND_CHOICES)
    async def forumtags_add(
        self, interaction: discord.Interaction, kind: app_commands.Choice[str], tag_id: str
    ):
        await respond(
            interaction,
            lambda: self.lifecycle.add_forum_tag(
                actor_from_interaction(interaction),
                guild_key(interaction),
                ForumTagKind(kind.value),
                tag_id,
            ),
        )

    @forumtags.command(name="remove", description="Stop applying a forum tag")
    @app_commands.describe(kind="Announcement type", tag_id="Forum tag ID")
    @app_commands.choices(kind=_TAG_KIND_CHOICES)
    async def forumtags_remove(
        self, interaction: discord.Interaction, kind: app_commands.Choice[str], tag_id: str
    ):
        await respond(
            interaction,
            lambda: self.lifecycle.remove_forum_tag(
                actor_from_interaction(interaction),
                guild_key(interaction),
                ForumTagKind(kind.value),
                tag_id,
            ),
        )

    @forumtags.command(name="list", description="Show the configured forum tags")
    async def forumtags_list(self, interaction: discord.Interaction):
        await respond(
            interaction,
            lambda: self.lifecycle.list_forum_tags(
                actor_from_interaction(interaction), guild_key(interaction)
            ),
        )


class TraderBot(commands.Bot):
    """Discord bot that exposes trade board slash commands."""

    def __init__(
        self,
        settings: Settings,
        db: Database,
        *,
        gateway: AnnouncementGateway | None = None,
    ) -> None:
        intents = discord.Intents.default()
        super().__init__(
            command_prefix=commands.when_mentioned_or("!"),
            intents=intents,
            tree_cls=AuditedCommandTree,
        )
        self.settings = settings
        self.db = db
        self.gateway = gateway or AnnouncementGateway(
            settings.discord_token,
            settings.api_base_url,
            request_timeout=settings.request_timeout,
        )
        self.guild_cache = GuildMetadataCache(self.gateway.fetch_guild)
        self.lifecycle = TradeLifecycle(
            db,
            self.gateway,
            allow_offline=settings.allow_offline,
            guild_cache=self.guild_cache,
        )

    async def setup_hook(self) -> None:
        await self.db.setup()
        self.tree.add_command(SellGroup(self.lifecycle))
        self.tree.add_command(BuyGroup(self.lifecycle))
        self.tree.add_command(TradeAdminGroup(self.lifecycle))
        self.tree.add_command(TradeConfigGroup(self.lifecycle))
        await self.add_misc_commands()
        self.add_dynamic_items(AnnouncementButton)
        await self.sync_commands()
        _log.info("Slash commands synced")

    async def sync_commands(self) -> None:
        if not self.settings.guild_ids:
            await self.tree.sync()
            return
        for guild_id in self.settings.guild_ids:
            guild = discord.Object(id=guild_id)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)

    async def add_misc_commands(self) -> None:
        @self.tree.command(name="help", description="Show a summary of available commands")
        async def help_command(interaction: discord.Interaction):
            await interaction.response.send_message(
                embed=info_embed("Here’s what PledgeBot can do", HELP_TEXT),
                ephemeral=True,
            )

    async def on_ready(self) -> None:
        _log.info("Logged in as %s", self.user)

    async def close(self) -> None:
        await self.gateway.close()
        await super().close()


def run_bot() -> None:
    settings = load_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    if settings.allow_offline:
        _log.warning("Offline mode enabled: announcements will not be posted or updated")
    bot = TraderBot(settings, Database(settings.database_path))
    bot.run(settings.discord_token, log_handler=None)


if __name__ == "__main__":
    run_bot()
