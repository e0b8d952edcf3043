"""Trade and buy order transitions plus announcement synchronisation.

Every operation loads the record, checks ownership and state, applies one
guarded write, then mirrors the new state into the Discord announcement on a
best-effort basis. Rejections and side-effect failures come back as lines in
the returned :class:`Reply`; only unexpected errors raise.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, List, Mapping, Optional, Tuple, TypeVar

import aiosqlite

from .controls import (
    ControlAction,
    RecordKind,
    buy_order_control,
    invalid_identifier_message,
    parse_control_id,
    trade_control,
)
from .database import MAX_DISCOUNT_PERCENT, Database
from .embeds import (
    ControlButton,
    announcement_url,
    build_buy_order_embed,
    build_trade_embed,
    buy_order_announcement_content,
    buy_order_controls,
    buy_status_label,
    buy_thread_name,
    components_payload,
    format_auec,
    resolve_forum_thread_id,
    sell_thread_name,
    should_archive_buy_thread,
    should_archive_sell_thread,
    trade_announcement_content,
    trade_controls,
    trade_status_label,
    user_tag,
)
from .gateway import AnnouncementGateway, GatewayError
from .guild_cache import GuildMetadataCache
from .models import (
    TERMINAL_BUY_ORDER_STATUSES,
    TERMINAL_TRADE_STATUSES,
    AnnouncementPatch,
    BuyOrder,
    BuyOrderStatus,
    ChannelType,
    ForumTagKind,
    GuildConfig,
    Patch,
    SetTo,
    Trade,
    TradeStatus,
)
from .permissions import Actor, ensure_admin_access

_log = logging.getLogger(__name__)

T = TypeVar("T")

NO_CHANNEL_MESSAGE = (
    "No trade channel is configured. Ask an administrator to set one with /tradeconfig channel."
)
AUTOCOMPLETE_LABEL_LIMIT = 100


@dataclass(frozen=True)
class Reply:
    content: str
    controls: Tuple[ControlButton, ...] = ()


@dataclass
class _SyncOutcome:
    url: Optional[str] = None
    offline: bool = False
    missing_announcement: bool = False
    patch_failed: bool = False
    metadata_failed: bool = False
    thread_failed: bool = False

    def lines(self, noun: str) -> List[str]:
        lines = []
        if self.url:
            lines.append(f"Announcement: {self.url}")
        if self.offline:
            lines.append("Offline mode: announcement was not updated.")
        if self.missing_announcement:
            lines.append("No stored announcement message to update.")
        if self.patch_failed:
            lines.append(f"Warning: Failed to update the {noun} announcement.")
        if self.metadata_failed:
            lines.append("Warning: Failed to update stored control metadata.")
        if self.thread_failed:
            lines.append(f"Warning: Failed to update the {noun} forum thread.")
        return lines


@dataclass
class _BulkSummary:
    succeeded: List[int] = field(default_factory=list)
    rejected: List[int] = field(default_factory=list)
    missing_announcement: List[int] = field(default_factory=list)
    patch_failed: List[int] = field(default_factory=list)
    metadata_failed: List[int] = field(default_factory=list)
    thread_failed: List[int] = field(default_factory=list)

    def add(self, record_id: int, outcome: _SyncOutcome) -> None:
        self.succeeded.append(record_id)
        if outcome.missing_announcement:
            self.missing_announcement.append(record_id)
        if outcome.patch_failed:
            self.patch_failed.append(record_id)
        if outcome.metadata_failed:
            self.metadata_failed.append(record_id)
        if outcome.thread_failed:
            self.thread_failed.append(record_id)

    def lines(self, headline: str, noun: str, plural: str, offline: bool) -> List[str]:
        lines = [headline]
        if self.succeeded:
            lines.append(f"{plural.capitalize()}: {_id_list(self.succeeded)}")
        if self.rejected:
            lines.append(f"Unable to update {_id_list(self.rejected)}.")
        if offline:
            lines.append("Offline mode: announcements were not updated.")
        if self.missing_announcement:
            count = len(self.missing_announcement)
            lines.append(
                f"{_pluralize(count, noun, plural)} did not have announcement metadata stored."
            )
        if self.patch_failed:
            lines.append(f"Warning: Failed to update announcements for {_id_list(self.patch_failed)}.")
        if self.metadata_failed:
            lines.append(
                f"Warning: Failed to update stored control metadata for {_id_list(self.metadata_failed)}."
            )
        if self.thread_failed:
            lines.append(f"Warning: Failed to update forum threads for {_id_list(self.thread_failed)}.")
        return lines


def _id_list(ids: List[int]) -> str:
    return ", ".join(f"#{record_id}" for record_id in ids)


def _pluralize(count: int, noun: str, plural: str) -> str:
    return f"{count} {noun if count == 1 else plural}"


def _is_positive_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _items_text(amount: int) -> str:
    return "1 item" if amount == 1 else f"{amount} items"


def _truncate_label(label: str) -> str:
    if len(label) <= AUTOCOMPLETE_LABEL_LIMIT:
        return label
    return label[: AUTOCOMPLETE_LABEL_LIMIT - 1] + "…"


class TradeLifecycle:
    """Handles every trade and buy order action issued from Discord."""

    def __init__(
        self,
        db: Database,
        gateway: Optional[AnnouncementGateway] = None,
        *,
        allow_offline: bool = False,
        guild_cache: Optional[GuildMetadataCache] = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.offline = allow_offline or gateway is None
        self.guild_cache = guild_cache

    @staticmethod
    async def _commit(write: Awaitable[T]) -> T:
        # An issued write finishes even when the interaction task is cancelled.
        return await asyncio.shield(write)

    async def _owner_tag(self, user_id: str) -> str:
        return user_tag(await self.db.get_user(user_id), user_id)

    async def _remember_actor(self, actor: Actor) -> None:
        await self.db.record_user(
            actor.user_id, actor.username, actor.display_name, actor.discriminator
        )

    # Bookkeeping

    async def record_invocation(
        self,
        actor: Actor,
        guild_id: Optional[str],
        command_name: str,
        options: Mapping[str, object],
        *,
        guild_name: Optional[str] = None,
    ) -> None:
        """Refresh the caller's cached identity and append an audit row."""

        await self._remember_actor(actor)
        if guild_id:
            if guild_name is None and not self.offline and self.guild_cache is not None:
                metadata = await self.guild_cache.get(guild_id)
                guild_name = metadata.name if metadata else None
            await self.db.record_guild(guild_id, guild_name)
        await self.db.log_command(guild_id, actor.user_id, command_name, options)

    # Trades

    async def create_trade(
        self,
        actor: Actor,
        guild_id: str,
        title: str,
        price: int,
        stock: int = 1,
        image_url: Optional[str] = None,
    ) -> Reply:
        cleaned_title = (title or "").strip()
        if not cleaned_title:
            return Reply("Title and price are required.")
        if not _is_positive_int(price):
            return Reply("Provide a valid price greater than 0.")
        if not _is_positive_int(stock):
            return Reply("Stock must be a positive integer.")

        await self._remember_actor(actor)
        config = await self.db.get_guild_config(guild_id)
        if not config.has_trade_channel:
            return Reply(NO_CHANNEL_MESSAGE)

        trade = await self._commit(
            self.db.create_trade(guild_id, actor.user_id, cleaned_title, price, stock, image_url)
        )

        control_patch = AnnouncementPatch(
            done=SetTo(trade_control(trade.id, ControlAction.DONE_ONE).encode()),
            done_all=(
                SetTo(trade_control(trade.id, ControlAction.DONE_ALL).encode())
                if stock > 1
                else Patch.UNCHANGED
            ),
            cancel=SetTo(trade_control(trade.id, ControlAction.CANCEL).encode()),
        )
        control_metadata_failed = False
        try:
            stored = await self._commit(self.db.update_trade_announcement(trade.id, control_patch))
            trade = stored or trade
        except aiosqlite.Error as exc:
            _log.warning("Failed to store control metadata for trade #%s: %s", trade.id, exc)
            control_metadata_failed = True

        controls = trade_controls(trade)
        tags = config.forum_tags_for(ForumTagKind.SELL)
        url = None
        announcement_failed = False
        announcement_metadata_failed = False
        if not self.offline:
            embed = build_trade_embed(trade, await self._owner_tag(actor.user_id))
            try:
                result = await self.gateway.post_announcement(
                    guild_id=guild_id,
                    channel_id=config.trade_channel_id,
                    channel_type=config.trade_channel_type,
                    content=trade_announcement_content(trade),
                    embed=embed,
                    owner_id=actor.user_id,
                    thread_name=sell_thread_name(trade),
                    components=components_payload(controls),
                    applied_tags=tags,
                )
            except GatewayError as exc:
                _log.warning("Failed to announce trade #%s: %s", trade.id, exc)
                announcement_failed = True
            else:
                url = result.url
                if result.channel_id and result.message_id:
                    try:
                        await self._commit(
                            self.db.update_trade_announcement(
                                trade.id,
                                AnnouncementPatch(
                                    channel_id=SetTo(result.channel_id),
                                    message_id=SetTo(result.message_id),
                                ),
                            )
                        )
                    except aiosqlite.Error as exc:
                        _log.warning(
                            "Failed to store announcement metadata for trade #%s: %s", trade.id, exc
                        )
                        announcement_metadata_failed = True

        lines = [f"Trade #{trade.id} created successfully."]
        if url:
            lines.append(f"Announcement: {url}")
        if tags and not announcement_failed and not self.offline:
            lines.append(f"Applied forum {'tag' if len(tags) == 1 else 'tags'}: {', '.join(tags)}")
        if controls:
            lines.append("Use the buttons below to manage this trade.")
        if announcement_failed:
            lines.append("Warning: Failed to post the trade announcement.")
        if control_metadata_failed:
            lines.append("Warning: Failed to store trade control metadata.")
        if announcement_metadata_failed:
            lines.append("Warning: Failed to store announcement metadata.")
        if self.offline:
            lines.append("Offline mode: announcement was not sent.")
        return Reply("\n".join(lines), tuple(controls))

    async def _clear_trade_controls(self, trade: Trade) -> Tuple[Trade, bool]:
        try:
            cleared = await self._commit(
                self.db.update_trade_announcement(trade.id, AnnouncementPatch.clear_controls())
            )
        except aiosqlite.Error as exc:
            _log.warning("Failed to clear control metadata for trade #%s: %s", trade.id, exc)
            return trade, True
        return cleared or trade, False

    async def _sync_trade(
        self, trade: Trade, config: GuildConfig, status_label: Optional[str] = None
    ) -> Tuple[Trade, _SyncOutcome]:
        """Clear stale controls and mirror ``trade`` into its announcement."""

        outcome = _SyncOutcome()
        if trade.status is not TradeStatus.OPEN:
            trade, outcome.metadata_failed = await self._clear_trade_controls(trade)
        outcome.url = announcement_url(
            trade.guild_id, trade.announcement_channel_id, trade.announcement_message_id
        )

        if self.offline:
            outcome.offline = True
            return trade, outcome

        if trade.announcement_channel_id and trade.announcement_message_id:
            embed = build_trade_embed(trade, await self._owner_tag(trade.user_id), status_label)
            try:
                await self.gateway.patch_announcement(
                    trade.announcement_channel_id,
                    trade.announcement_message_id,
                    embed,
                    content=trade_announcement_content(trade),
                    components=components_payload(trade_controls(trade)),
                )
            except GatewayError as exc:
                _log.warning("Failed to patch announcement for trade #%s: %s", trade.id, exc)
                outcome.patch_failed = True
        else:
            outcome.missing_announcement = True

        thread_id = resolve_forum_thread_id(
            trade.announcement_channel_id, config.trade_channel_id, config.trade_channel_type
        )
        if thread_id:
            archive = True if should_archive_sell_thread(trade.status) else None
            try:
                await self.gateway.patch_thread(
                    thread_id, name=sell_thread_name(trade), archived=archive, locked=archive
                )
            except GatewayError as exc:
                _log.warning("Failed to update forum thread for trade #%s: %s", trade.id, exc)
                outcome.thread_failed = True
        return trade, outcome

    async def _load_owned_trade(
        self,
        actor: Actor,
        guild_id: str,
        trade_id: int,
        not_owner_message: str = "Only the seller can manage this trade.",
    ) -> Tuple[Optional[Trade], Optional[str]]:
        trade = await self.db.get_trade(trade_id)
        if trade is None or trade.guild_id != guild_id:
            return None, f"Trade #{trade_id} does not exist for this guild."
        if trade.user_id != actor.user_id:
            return None, not_owner_message
        return trade, None

    @staticmethod
    def _already_message(trade: Trade) -> str:
        return f"Trade #{trade.id} is already {trade_status_label(trade.status).lower()}."

    async def mark_trade_done(
        self, actor: Actor, guild_id: str, trade_id: int, amount: Optional[int] = 1
    ) -> Reply:
        """Mark ``amount`` units as sold; ``None`` marks the whole remaining stock."""

        if amount is not None and not _is_positive_int(amount):
            return Reply("Amount must be a positive integer.")

        trade, error = await self._load_owned_trade(actor, guild_id, trade_id)
        if error:
            return Reply(error)
        if trade.status is not TradeStatus.OPEN:
            return Reply(self._already_message(trade))
        if trade.stock <= 0:
            return Reply(f"Trade #{trade.id} has no remaining stock.")

        resolved = trade.stock if amount is None else amount
        updated = await self._commit(self.db.reduce_stock(trade.id, resolved))
        if updated is None:
            return Reply(
                f"Unable to mark {_items_text(resolved)} as done. "
                "Check the available stock and try again."
            )

        config = await self.db.get_guild_config(guild_id)
        updated, outcome = await self._sync_trade(updated, config)
        lines = [
            f"Marked {_items_text(resolved)} as done for trade #{updated.id}.",
            f"Remaining stock: {updated.stock}."
            if updated.status is TradeStatus.OPEN
            else "Trade is now marked as sold out.",
        ]
        lines.extend(outcome.lines("trade"))
        return Reply("\n".join(lines))

    async def mark_all_trades_done(self, actor: Actor, guild_id: str) -> Reply:
        open_trades = await self.db.list_user_trades(guild_id, actor.user_id, TradeStatus.OPEN)
        if not open_trades:
            return Reply("You have no open trades to mark as done.")

        config = await self.db.get_guild_config(guild_id)
        summary = _BulkSummary()
        for trade in open_trades:
            updated = await self._commit(self.db.reduce_stock(trade.id, trade.stock))
            if updated is None:
                _log.warning("Failed to mark trade #%s as done", trade.id)
                summary.rejected.append(trade.id)
                continue
            _, outcome = await self._sync_trade(updated, config)
            summary.add(updated.id, outcome)

        headline = f"Marked {_pluralize(len(summary.succeeded), 'trade', 'trades')} as done."
        return Reply("\n".join(summary.lines(headline, "trade", "trades", self.offline)))

    async def discount_trade(
        self, actor: Actor, guild_id: str, trade_id: int, percent: Optional[int]
    ) -> Reply:
        if percent is not None and (
            isinstance(percent, bool)
            or not isinstance(percent, int)
            or not 0 <= percent <= MAX_DISCOUNT_PERCENT
        ):
            return Reply(f"Discount must be between 0 and {MAX_DISCOUNT_PERCENT} percent.")

        trade, error = await self._load_owned_trade(actor, guild_id, trade_id)
        if error:
            return Reply(error)
        if trade.status is not TradeStatus.OPEN:
            return Reply(self._already_message(trade))

        updated = await self._commit(self.db.update_discount(trade.id, percent))
        if updated is None:
            return Reply(f"Trade #{trade_id} does not exist for this guild.")

        config = await self.db.get_guild_config(guild_id)
        updated, outcome = await self._sync_trade(updated, config)
        if updated.has_discount:
            headline = (
                f"Applied a {updated.discount_percent}% discount to trade #{updated.id}. "
                f"Final price: {format_auec(updated.final_price)}."
            )
        else:
            headline = (
                f"Removed the discount from trade #{updated.id}. "
                f"Price: {format_auec(updated.auec)}."
            )
        return Reply("\n".join([headline, *outcome.lines("trade")]))

    async def cancel_trade(self, actor: Actor, guild_id: str, trade_id: int) -> Reply:
        trade, error = await self._load_owned_trade(actor, guild_id, trade_id)
        if error:
            return Reply(error)
        if trade.status is not TradeStatus.OPEN:
            return Reply(self._already_message(trade))

        updated = await self._commit(self.db.update_trade_status(trade.id, TradeStatus.CANCELLED))
        if updated is None:
            return Reply("Failed to update the trade status. Try again in a moment.")

        config = await self.db.get_guild_config(guild_id)
        updated, outcome = await self._sync_trade(updated, config)
        return Reply("\n".join([f"Trade #{updated.id} has been cancelled.", *outcome.lines("trade")]))

    async def close_trade(self, actor: Actor, guild_id: str, trade_id: int) -> Reply:
        trade, error = await self._load_owned_trade(
            actor, guild_id, trade_id, "You can only close your own trades."
        )
        if error:
            return Reply(error)
        if trade.status is not TradeStatus.OPEN:
            return Reply(self._already_message(trade))

        updated = await self._commit(self.db.update_trade_status(trade.id, TradeStatus.COMPLETE))
        if updated is None:
            return Reply("Failed to update the trade status. Try again in a moment.")

        config = await self.db.get_guild_config(guild_id)
        updated, outcome = await self._sync_trade(updated, config)
        return Reply("\n".join([f"Trade #{updated.id} marked as closed.", *outcome.lines("trade")]))

    async def close_all_trades(self, actor: Actor, guild_id: str) -> Reply:
        open_trades = await self.db.list_user_trades(guild_id, actor.user_id, TradeStatus.OPEN)
        if not open_trades:
            return Reply("You have no open trades to close.")

        config = await self.db.get_guild_config(guild_id)
        summary = _BulkSummary()
        for trade in open_trades:
            updated = await self._commit(
                self.db.update_trade_status(trade.id, TradeStatus.COMPLETE)
            )
            if updated is None:
                _log.warning("Failed to update trade status for trade #%s", trade.id)
                summary.rejected.append(trade.id)
                continue
            _, outcome = await self._sync_trade(updated, config)
            summary.add(updated.id, outcome)

        headline = f"Closed {_pluralize(len(summary.succeeded), 'trade', 'trades')}."
        return Reply("\n".join(summary.lines(headline, "trade", "trades", self.offline)))

    async def admin_cancel_trade(
        self, actor: Actor, guild_id: Optional[str], trade_id: int, reason: str
    ) -> Reply:
        denial = await ensure_admin_access(self.db, actor, guild_id, allow_moderator_roles=True)
        if denial:
            return Reply(denial)

        cleaned_reason = (reason or "").strip()
        if not cleaned_reason:
            return Reply("Trade ID and reason are required.")

        trade = await self.db.get_trade(trade_id)
        if trade is None or trade.guild_id != guild_id:
            return Reply(f"Trade #{trade_id} does not exist for this guild.")
        if trade.status in TERMINAL_TRADE_STATUSES:
            return Reply(self._already_message(trade))

        updated = await self._commit(
            self.db.update_trade_status(trade.id, TradeStatus.CANCELLED, cleaned_reason)
        )
        if updated is None:
            return Reply("Failed to update the trade status. Try again in a moment.")

        config = await self.db.get_guild_config(guild_id)
        updated, outcome = await self._sync_trade(updated, config)
        lines = [f"Trade #{updated.id} has been cancelled.", f"Reason: {cleaned_reason}"]
        lines.extend(outcome.lines("trade"))
        return Reply("\n".join(lines))

    async def trade_history(
        self,
        actor: Actor,
        guild_id: Optional[str],
        status: Optional[TradeStatus] = None,
        page: int = 1,
    ) -> Reply:
        denial = await ensure_admin_access(self.db, actor, guild_id, allow_moderator_roles=True)
        if denial:
            return Reply(denial)

        trades = await self.db.list_trades(guild_id, status=status, page=page)
        if not trades:
            return Reply("No trades found for the provided filters.")

        lines = []
        for trade in trades:
            reason = f" — Reason: {trade.reason}" if trade.reason else ""
            lines.append(
                f"#{trade.id} · {trade.title} · {format_auec(trade.auec)} · "
                f"Stock {trade.stock} · Status: {trade_status_label(trade.status)}{reason}"
            )
        return Reply("\n".join(lines))

    # Buy orders

    async def create_buy_order(
        self,
        actor: Actor,
        guild_id: str,
        item: str,
        price: int,
        amount: Optional[int] = None,
        attachment_url: Optional[str] = None,
    ) -> Reply:
        cleaned_item = (item or "").strip()
        if not cleaned_item:
            return Reply("Provide the item or service you want to buy.")
        if not _is_positive_int(price):
            return Reply("Provide a valid price greater than 0.")
        if amount is not None and not _is_positive_int(amount):
            return Reply("If provided, the amount must be a positive integer.")

        await self._remember_actor(actor)
        order = await self._commit(
            self.db.create_buy_order(
                guild_id, actor.user_id, cleaned_item, price, amount, attachment_url
            )
        )

        control_metadata_failed = False
        try:
            stored = await self._commit(
                self.db.update_buy_order_announcement(
                    order.id,
                    AnnouncementPatch(
                        done=SetTo(buy_order_control(order.id, ControlAction.DONE).encode()),
                        cancel=SetTo(buy_order_control(order.id, ControlAction.CANCEL).encode()),
                    ),
                )
            )
            order = stored or order
        except aiosqlite.Error as exc:
            _log.warning("Failed to store control metadata for buy order #%s: %s", order.id, exc)
            control_metadata_failed = True

        controls = buy_order_controls(order)
        config = await self.db.get_guild_config(guild_id)
        tags = config.forum_tags_for(ForumTagKind.BUY)
        url = None
        announcement_failed = False
        announcement_metadata_failed = False
        if config.has_trade_channel and not self.offline:
            embed = build_buy_order_embed(order, await self._owner_tag(actor.user_id))
            try:
                result = await self.gateway.post_announcement(
                    guild_id=guild_id,
                    channel_id=config.trade_channel_id,
                    channel_type=config.trade_channel_type,
                    content=buy_order_announcement_content(order),
                    embed=embed,
                    owner_id=actor.user_id,
                    thread_name=buy_thread_name(order),
                    components=components_payload(controls),
                    applied_tags=tags,
                )
            except GatewayError as exc:
                _log.warning("Failed to announce buy order #%s: %s", order.id, exc)
                announcement_failed = True
            else:
                url = result.url
                if result.channel_id and result.message_id:
                    try:
                        await self._commit(
                            self.db.update_buy_order_announcement(
                                order.id,
                                AnnouncementPatch(
                                    channel_id=SetTo(result.channel_id),
                                    message_id=SetTo(result.message_id),
                                ),
                            )
                        )
                    except aiosqlite.Error as exc:
                        _log.warning(
                            "Failed to store announcement metadata for buy order #%s: %s",
                            order.id,
                            exc,
                        )
                        announcement_metadata_failed = True

        lines = [f"Buy order #{order.id} created successfully."]
        if not config.has_trade_channel:
            lines.append(NO_CHANNEL_MESSAGE)
        if url:
            lines.append(f"Announcement: {url}")
        if tags and url and not announcement_failed:
            lines.append(f"Applied forum {'tag' if len(tags) == 1 else 'tags'}: {', '.join(tags)}")
        if controls:
            lines.append("Use the buttons below to manage this buy order.")
        if announcement_failed:
            lines.append("Warning: Failed to post the buy order announcement.")
        if control_metadata_failed:
            lines.append("Warning: Failed to store buy order control metadata.")
        if announcement_metadata_failed:
            lines.append("Warning: Failed to store announcement metadata.")
        if self.offline and config.has_trade_channel:
            lines.append("Offline mode: announcement was not sent.")
        return Reply("\n".join(lines), tuple(controls))

    async def _sync_buy_order(
        self, order: BuyOrder, config: GuildConfig
    ) -> Tuple[BuyOrder, _SyncOutcome]:
        outcome = _SyncOutcome()
        if order.status is not BuyOrderStatus.OPEN:
            try:
                cleared = await self._commit(
                    self.db.update_buy_order_announcement(
                        order.id, AnnouncementPatch(done=Patch.CLEAR, cancel=Patch.CLEAR)
                    )
                )
                order = cleared or order
            except aiosqlite.Error as exc:
                _log.warning("Failed to clear control metadata for buy order #%s: %s", order.id, exc)
                outcome.metadata_failed = True
        outcome.url = announcement_url(
            order.guild_id, order.announcement_channel_id, order.announcement_message_id
        )

        if self.offline:
            outcome.offline = True
            return order, outcome

        if order.announcement_channel_id and order.announcement_message_id:
            embed = build_buy_order_embed(order, await self._owner_tag(order.user_id))
            try:
                await self.gateway.patch_announcement(
                    order.announcement_channel_id,
                    order.announcement_message_id,
                    embed,
                    content=buy_order_announcement_content(order),
                    components=components_payload(buy_order_controls(order)),
                )
            except GatewayError as exc:
                _log.warning("Failed to patch announcement for buy order #%s: %s", order.id, exc)
                outcome.patch_failed = True
        else:
            outcome.missing_announcement = True

        thread_id = resolve_forum_thread_id(
            order.announcement_channel_id, config.trade_channel_id, config.trade_channel_type
        )
        if thread_id:
            archive = True if should_archive_buy_thread(order.status) else None
            try:
                await self.gateway.patch_thread(
                    thread_id, name=buy_thread_name(order), archived=archive, locked=archive
                )
            except GatewayError as exc:
                _log.warning("Failed to update forum thread for buy order #%s: %s", order.id, exc)
                outcome.thread_failed = True
        return order, outcome

    async def _load_owned_buy_order(
        self, actor: Actor, guild_id: str, order_id: int
    ) -> Tuple[Optional[BuyOrder], Optional[str]]:
        order = await self.db.get_buy_order(order_id)
        if order is None or order.guild_id != guild_id:
            return None, f"Buy order #{order_id} does not exist for this guild."
        if order.user_id != actor.user_id:
            return None, "Only the buyer can manage this order."
        if order.status in TERMINAL_BUY_ORDER_STATUSES:
            return None, f"Buy order #{order.id} is already {buy_status_label(order.status).lower()}."
        return order, None

    async def _transition_buy_order(
        self, actor: Actor, guild_id: str, order_id: int, status: BuyOrderStatus, confirmation: str
    ) -> Reply:
        order, error = await self._load_owned_buy_order(actor, guild_id, order_id)
        if error:
            return Reply(error)

        updated = await self._commit(self.db.update_buy_order_status(order.id, status))
        if updated is None:
            return Reply("Failed to update the buy order. Try again in a moment.")

        config = await self.db.get_guild_config(guild_id)
        updated, outcome = await self._sync_buy_order(updated, config)
        lines = [confirmation.format(id=updated.id)]
        lines.extend(outcome.lines("buy order"))
        return Reply("\n".join(lines))

    async def fulfill_buy_order(self, actor: Actor, guild_id: str, order_id: int) -> Reply:
        return await self._transition_buy_order(
            actor, guild_id, order_id, BuyOrderStatus.FULFILLED, "Buy order #{id} marked as fulfilled."
        )

    async def cancel_buy_order(self, actor: Actor, guild_id: str, order_id: int) -> Reply:
        return await self._transition_buy_order(
            actor, guild_id, order_id, BuyOrderStatus.CANCELLED, "Buy order #{id} has been cancelled."
        )

    async def fulfill_all_buy_orders(self, actor: Actor, guild_id: str) -> Reply:
        open_orders = await self.db.list_user_buy_orders(
            guild_id, actor.user_id, BuyOrderStatus.OPEN
        )
        if not open_orders:
            return Reply("You have no open buy orders.")

        config = await self.db.get_guild_config(guild_id)
        summary = _BulkSummary()
        for order in open_orders:
            updated = await self._commit(
                self.db.update_buy_order_status(order.id, BuyOrderStatus.FULFILLED)
            )
            if updated is None:
                _log.warning("Failed to fulfill buy order #%s", order.id)
                summary.rejected.append(order.id)
                continue
            _, outcome = await self._sync_buy_order(updated, config)
            summary.add(updated.id, outcome)

        headline = (
            f"Fulfilled {_pluralize(len(summary.succeeded), 'buy order', 'buy orders')}."
        )
        return Reply(
            "\n".join(summary.lines(headline, "buy order", "buy orders", self.offline))
        )

    # Buttons

    async def handle_control(self, actor: Actor, guild_id: Optional[str], custom_id: str) -> Reply:
        """Route a pressed announcement button to its transition."""

        if not guild_id:
            return Reply("Trades can only be managed inside a guild.")

        control = parse_control_id(custom_id)
        if control is None:
            return Reply(invalid_identifier_message(custom_id))

        if control.kind is RecordKind.TRADE:
            trade, error = await self._load_owned_trade(actor, guild_id, control.record_id)
            if error:
                return Reply(error)
            if control.action is ControlAction.DONE_ONE:
                if trade.done_one_button_custom_id != custom_id:
                    return Reply("This trade action is no longer valid.")
                return await self.mark_trade_done(actor, guild_id, trade.id, 1)
            if control.action is ControlAction.DONE_ALL:
                if trade.done_all_button_custom_id != custom_id:
                    return Reply("This trade action is no longer valid.")
                return await self.mark_trade_done(actor, guild_id, trade.id, None)
            if control.action is ControlAction.CANCEL:
                if trade.cancel_button_custom_id and trade.cancel_button_custom_id != custom_id:
                    return Reply("This trade action is no longer valid.")
                return await self.cancel_trade(actor, guild_id, trade.id)
            return Reply("Unsupported trade component action.")

        order = await self.db.get_buy_order(control.record_id)
        if order is None or order.guild_id != guild_id:
            return Reply(f"Buy order #{control.record_id} does not exist for this guild.")
        if order.user_id != actor.user_id:
            return Reply("Only the buyer can manage this order.")
        if control.action is ControlAction.DONE:
            if order.done_button_custom_id and order.done_button_custom_id != custom_id:
                return Reply("This buy order action is no longer valid.")
            return await self.fulfill_buy_order(actor, guild_id, order.id)
        if control.action is ControlAction.CANCEL:
            if order.cancel_button_custom_id and order.cancel_button_custom_id != custom_id:
                return Reply("This buy order action is no longer valid.")
            return await self.cancel_buy_order(actor, guild_id, order.id)
        return Reply("Unsupported buy order component action.")

    # Autocomplete

    async def autocomplete_trades(
        self, actor: Actor, guild_id: Optional[str], term: str
    ) -> List[Tuple[str, int]]:
        if not guild_id:
            return []
        trades = await self.db.search_open_trades(guild_id, actor.user_id, term)
        return [
            (_truncate_label(f"#{trade.id} · {trade.title} · Stock {trade.stock}"), trade.id)
            for trade in trades
        ]

    async def autocomplete_buy_orders(
        self, actor: Actor, guild_id: Optional[str], term: str
    ) -> List[Tuple[str, int]]:
        if not guild_id:
            return []
        orders = await self.db.search_open_buy_orders(guild_id, actor.user_id, term)
        return [
            (_truncate_label(f"#{order.id} · {order.item} · {format_auec(order.price)}"), order.id)
            for order in orders
        ]

    # Configuration

    async def _admin_denial(self, actor: Actor, guild_id: Optional[str]) -> Optional[str]:
        return await ensure_admin_access(self.db, actor, guild_id)

    async def configure_channel(
        self,
        actor: Actor,
        guild_id: Optional[str],
        channel_id: str,
        channel_type: ChannelType,
        *,
        guild_name: Optional[str] = None,
    ) -> Reply:
        denial = await self._admin_denial(actor, guild_id)
        if denial:
            return Reply(denial)
        channel_type = ChannelType(channel_type)
        await self._commit(
            self.db.set_trade_channel(guild_id, channel_id, channel_type, guild_name=guild_name)
        )
        return Reply(f"Trade channel set to <#{channel_id}> ({channel_type.value}).")

    async def set_admin_role(
        self, actor: Actor, guild_id: Optional[str], role_id: Optional[str]
    ) -> Reply:
        denial = await self._admin_denial(actor, guild_id)
        if denial:
            return Reply(denial)
        await self._commit(self.db.set_admin_role(guild_id, role_id))
        if role_id is None:
            return Reply("Administrator role cleared.")
        return Reply(f"Administrator role set to <@&{role_id}>.")

    async def add_moderator_role(self, actor: Actor, guild_id: Optional[str], role_id: str) -> Reply:
        denial = await self._admin_denial(actor, guild_id)
        if denial:
            return Reply(denial)
        await self._commit(self.db.add_trade_role(guild_id, role_id))
        return Reply(f"Role <@&{role_id}> can now manage trades.")

    async def remove_moderator_role(
        self, actor: Actor, guild_id: Optional[str], role_id: str
    ) -> Reply:
        denial = await self._admin_denial(actor, guild_id)
        if denial:
            return Reply(denial)
        await self._commit(self.db.remove_trade_role(guild_id, role_id))
        return Reply(f"Role <@&{role_id}> can no longer manage trades.")

    async def list_moderator_roles(self, actor: Actor, guild_id: Optional[str]) -> Reply:
        denial = await self._admin_denial(actor, guild_id)
        if denial:
            return Reply(denial)
        roles = await self.db.list_trade_roles(guild_id)
        if not roles:
            return Reply("No trade moderator roles configured yet.")
        mentions = "\n".join(f"<@&{role_id}>" for role_id in roles)
        return Reply(f"Configured trade moderator roles:\n{mentions}")

    async def _forum_tag_guard(self, actor: Actor, guild_id: Optional[str]) -> Optional[str]:
        denial = await self._admin_denial(actor, guild_id)
        if denial:
            return denial
        config = await self.db.get_guild_config(guild_id)
        if config.trade_channel_type is not ChannelType.FORUM:
            return "Configure a forum trade channel before managing forum tags."
        return None

    async def add_forum_tag(
        self, actor: Actor, guild_id: Optional[str], kind: ForumTagKind, tag_id: str
    ) -> Reply:
        problem = await self._forum_tag_guard(actor, guild_id)
        if problem:
            return Reply(problem)
        kind = ForumTagKind(kind)
        tag_id = (tag_id or "").strip()
        if not tag_id.isdigit():
            return Reply(f"Provide the forum tag ID to add for {kind.value} announcements.")
        added = await self._commit(self.db.add_forum_tag(guild_id, kind, tag_id))
        if not added:
            return Reply(f"Forum tag {tag_id} is already configured for {kind.value} announcements.")
        return Reply(f"Added forum tag {tag_id} for {kind.value} announcements.")

    async def remove_forum_tag(
        self, actor: Actor, guild_id: Optional[str], kind: ForumTagKind, tag_id: str
    ) -> Reply:
        problem = await self._forum_tag_guard(actor, guild_id)
        if problem:
            return Reply(problem)
        kind = ForumTagKind(kind)
        tag_id = (tag_id or "").strip()
        if not tag_id.isdigit():
            return Reply(f"Provide the forum tag ID to remove from {kind.value} announcements.")
        removed = await self._commit(self.db.remove_forum_tag(guild_id, kind, tag_id))
        if not removed:
            return Reply(f"Forum tag {tag_id} is not configured for {kind.value} announcements.")
        return Reply(f"Removed forum tag {tag_id} from {kind.value} announcements.")

    async def list_forum_tags(self, actor: Actor, guild_id: Optional[str]) -> Reply:
        problem = await self._forum_tag_guard(actor, guild_id)
        if problem:
            return Reply(problem)
        tags = await self.db.list_forum_tags(guild_id)

        def _format(tag_ids: List[str]) -> str:
            if not tag_ids:
                return "• None configured"
            return "\n".join(f"• {tag_id}" for tag_id in tag_ids)

        return Reply(
            "\n\n".join(
                [
                    "Current forum tag configuration:",
                    f"Sell announcements:\n{_format(tags[ForumTagKind.SELL])}",
                    f"Buy announcements:\n{_format(tags[ForumTagKind.BUY])}",
                ]
            )
        )
