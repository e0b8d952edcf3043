"""Embed builder utilities for trade and buy order announcements."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import discord

from .models import (
    BuyOrder,
    BuyOrderStatus,
    ChannelType,
    Trade,
    TradeStatus,
    UserRecord,
)

TRADE_COLOR = 0x00AE86
BUY_ORDER_COLOR = 0x1D4ED8
THREAD_NAME_LIMIT = 100
ANNOUNCEMENT_HOST = "https://discord.com"

_TRADE_STATUS_LABELS = {
    TradeStatus.OPEN: "Open",
    TradeStatus.COMPLETE: "Closed",
    TradeStatus.SOLD_OUT: "Sold",
    TradeStatus.CANCELLED: "Cancelled",
    TradeStatus.MATCHED: "Matched",
    TradeStatus.ESCROW: "In Escrow",
    TradeStatus.EXPIRED: "Expired",
}

_BUY_STATUS_LABELS = {
    BuyOrderStatus.OPEN: "Open",
    BuyOrderStatus.FULFILLED: "Fulfilled",
    BuyOrderStatus.CANCELLED: "Cancelled",
}


@dataclass(frozen=True)
class ControlButton:
    label: str
    style: discord.ButtonStyle
    custom_id: str


def info_embed(title: str, description: str | None = None, *, color: int = 0x2b2d31) -> discord.Embed:
    embed = discord.Embed(title=title, description=description or "", color=color)
    embed.set_footer(text="PledgeBot • Trade board")
    return embed


def trade_status_label(status: TradeStatus) -> str:
    return _TRADE_STATUS_LABELS[TradeStatus(status)]


def buy_status_label(status: BuyOrderStatus) -> str:
    return _BUY_STATUS_LABELS[BuyOrderStatus(status)]


def format_auec(amount: int) -> str:
    return f"{amount:,} aUEC"


def user_tag(user: Optional[UserRecord], fallback_id: str) -> str:
    """Render ``username#discriminator`` or the bare username for a stored user."""

    if user is None or not user.username or not user.username.strip():
        return fallback_id
    if user.discriminator and user.discriminator != "0":
        return f"{user.username}#{user.discriminator}"
    return user.username


def _parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_trade_embed(
    trade: Trade, owner_tag: str, status_label: Optional[str] = None
) -> discord.Embed:
    embed = discord.Embed(
        title=trade.title,
        color=TRADE_COLOR,
        timestamp=_parse_timestamp(trade.created_at),
    )
    if trade.has_discount:
        embed.add_field(name="Original Price", value=format_auec(trade.auec), inline=True)
        embed.add_field(name="Discount", value=f"{trade.discount_percent}%", inline=True)
        embed.add_field(name="Final Price", value=format_auec(trade.final_price), inline=True)
    else:
        embed.add_field(name="Price", value=format_auec(trade.auec), inline=True)

    embed.add_field(name="Stock", value=str(trade.stock), inline=True)
    embed.add_field(name="Trade ID", value=f"#{trade.id}", inline=True)
    embed.add_field(
        name="Status", value=status_label or trade_status_label(trade.status), inline=True
    )
    embed.set_footer(text=f"Seller: {owner_tag}")
    if trade.image_url:
        embed.set_image(url=trade.image_url)
    return embed


def build_buy_order_embed(
    order: BuyOrder, owner_tag: str, status_label: Optional[str] = None
) -> discord.Embed:
    embed = discord.Embed(
        title=f"Looking to buy: {order.item}",
        color=BUY_ORDER_COLOR,
        timestamp=_parse_timestamp(order.created_at),
    )
    embed.add_field(name="Price", value=format_auec(order.price), inline=True)
    if order.amount is not None:
        embed.add_field(name="Desired Amount", value=str(order.amount), inline=True)
    embed.add_field(name="Order ID", value=f"#{order.id}", inline=True)
    embed.add_field(
        name="Status", value=status_label or buy_status_label(order.status), inline=True
    )
    embed.set_footer(text=f"Buyer: {owner_tag}")
    if order.attachment_url:
        embed.set_image(url=order.attachment_url)
    return embed


def trade_announcement_content(trade: Trade) -> str:
    base = f"New trade from <@{trade.user_id}>"
    if trade.has_discount:
        return f"{base} — {trade.final_price:,} aUEC ({trade.discount_percent}% off)"
    return f"{base} — {trade.auec:,} aUEC"


def buy_order_announcement_content(order: BuyOrder) -> str:
    base = f"New buy order from <@{order.user_id}> — Offering {order.price:,} aUEC"
    if order.amount is not None:
        return f"{base} for {order.amount} unit(s)"
    return base


def _truncate(name: str) -> str:
    if len(name) <= THREAD_NAME_LIMIT:
        return name
    return name[: THREAD_NAME_LIMIT - 1] + "…"


def sell_thread_name(trade: Trade) -> str:
    base = f"Sell: {trade.title} - {format_auec(trade.final_price)}"
    if trade.status in (TradeStatus.SOLD_OUT, TradeStatus.COMPLETE):
        return _truncate(f"✅ {base} ({trade_status_label(trade.status)})")
    if trade.status is not TradeStatus.OPEN:
        return _truncate(f"{base} ({trade_status_label(trade.status)})")
    return _truncate(base)


def buy_thread_name(order: BuyOrder) -> str:
    base = f"Buy: {order.item} - {format_auec(order.price)}"
    if order.status is BuyOrderStatus.FULFILLED:
        return _truncate(f"✅ {base} (Fulfilled)")
    if order.status is BuyOrderStatus.CANCELLED:
        return _truncate(f"✖️ {base} (Cancelled)")
    return _truncate(base)


def trade_controls(trade: Trade) -> List[ControlButton]:
    """Buttons for an open trade; empty once it left ``open`` or lost its ids."""

    if trade.status is not TradeStatus.OPEN or trade.stock <= 0:
        return []
    if not trade.done_one_button_custom_id or not trade.cancel_button_custom_id:
        return []

    buttons = [
        ControlButton("Done 1 item", discord.ButtonStyle.success, trade.done_one_button_custom_id)
    ]
    if trade.stock > 1 and trade.done_all_button_custom_id:
        buttons.append(
            ControlButton("Done all", discord.ButtonStyle.primary, trade.done_all_button_custom_id)
        )
    buttons.append(ControlButton("Cancel", discord.ButtonStyle.danger, trade.cancel_button_custom_id))
    return buttons


def buy_order_controls(order: BuyOrder) -> List[ControlButton]:
    if order.status is not BuyOrderStatus.OPEN:
        return []
    if not order.done_button_custom_id or not order.cancel_button_custom_id:
        return []
    return [
        ControlButton("Mark done", discord.ButtonStyle.success, order.done_button_custom_id),
        ControlButton("Cancel", discord.ButtonStyle.danger, order.cancel_button_custom_id),
    ]


def components_payload(buttons: List[ControlButton]) -> List[Dict[str, Any]]:
    """Raw action row JSON for the REST API."""

    if not buttons:
        return []
    return [
        {
            "type": 1,
            "components": [
                {
                    "type": 2,
                    "style": button.style.value,
                    "label": button.label,
                    "custom_id": button.custom_id,
                }
                for button in buttons
            ],
        }
    ]


def announcement_url(
    guild_id: str, channel_id: Optional[str], message_id: Optional[str]
) -> Optional[str]:
    if not channel_id or not message_id:
        return None
    return f"{ANNOUNCEMENT_HOST}/channels/{guild_id}/{channel_id}/{message_id}"


def resolve_forum_thread_id(
    announcement_channel_id: Optional[str],
    trade_channel_id: Optional[str],
    trade_channel_type: Optional[ChannelType],
) -> Optional[str]:
    """Return the announcement thread id when it was posted into a forum."""

    if not announcement_channel_id:
        return None
    if trade_channel_type is not ChannelType.FORUM:
        return None
    if trade_channel_id and announcement_channel_id == trade_channel_id:
        return None
    return announcement_channel_id


def should_archive_sell_thread(status: TradeStatus) -> bool:
    return status in (TradeStatus.SOLD_OUT, TradeStatus.COMPLETE, TradeStatus.CANCELLED)


def should_archive_buy_thread(status: BuyOrderStatus) -> bool:
    return status in (BuyOrderStatus.FULFILLED, BuyOrderStatus.CANCELLED)
