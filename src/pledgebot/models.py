"""Record types shared by the persistence layer and the lifecycle handlers."""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Mapping, Optional, Union


class TradeStatus(str, Enum):
    OPEN = "open"
    MATCHED = "matched"
    ESCROW = "escrow"
    COMPLETE = "complete"
    SOLD_OUT = "sold_out"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BuyOrderStatus(str, Enum):
    OPEN = "open"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class ChannelType(str, Enum):
    FORUM = "forum"
    TEXT = "text"


class ForumTagKind(str, Enum):
    SELL = "sell"
    BUY = "buy"


TERMINAL_TRADE_STATUSES = frozenset(
    {TradeStatus.SOLD_OUT, TradeStatus.COMPLETE, TradeStatus.CANCELLED, TradeStatus.EXPIRED}
)
TERMINAL_BUY_ORDER_STATUSES = frozenset({BuyOrderStatus.FULFILLED, BuyOrderStatus.CANCELLED})


class Patch(Enum):
    """Markers for a column that should be left alone or cleared."""

    UNCHANGED = "unchanged"
    CLEAR = "clear"


@dataclass(frozen=True)
class SetTo:
    value: str


FieldPatch = Union[Patch, SetTo]


@dataclass(frozen=True)
class AnnouncementPatch:
    """Partial update of the announcement pointer and stored control ids.

    ``done`` is the done-one control of a trade or the single done control of
    a buy order. ``done_all`` only exists on trades.
    """

    channel_id: FieldPatch = Patch.UNCHANGED
    message_id: FieldPatch = Patch.UNCHANGED
    done: FieldPatch = Patch.UNCHANGED
    done_all: FieldPatch = Patch.UNCHANGED
    cancel: FieldPatch = Patch.UNCHANGED

    @classmethod
    def clear_controls(cls) -> "AnnouncementPatch":
        return cls(done=Patch.CLEAR, done_all=Patch.CLEAR, cancel=Patch.CLEAR)


@dataclass(frozen=True)
class Trade:
    id: int
    guild_id: str
    user_id: str
    title: str
    auec: int
    discount_percent: Optional[int]
    discounted_auec: Optional[int]
    stock: int
    image_url: Optional[str]
    announcement_channel_id: Optional[str]
    announcement_message_id: Optional[str]
    done_one_button_custom_id: Optional[str]
    done_all_button_custom_id: Optional[str]
    cancel_button_custom_id: Optional[str]
    status: TradeStatus
    reason: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Trade":
        return cls(
            id=row["id"],
            guild_id=row["guild_id"],
            user_id=row["user_id"],
            title=row["title"],
            auec=row["auec"],
            discount_percent=row["discount_percent"],
            discounted_auec=row["discounted_auec"],
            stock=row["stock"],
            image_url=row["image_url"],
            announcement_channel_id=row["announcement_channel_id"],
            announcement_message_id=row["announcement_message_id"],
            done_one_button_custom_id=row["done_one_button_custom_id"],
            done_all_button_custom_id=row["done_all_button_custom_id"],
            cancel_button_custom_id=row["cancel_button_custom_id"],
            status=TradeStatus(row["status"]),
            reason=row["reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def final_price(self) -> int:
        if self.discounted_auec is not None:
            return self.discounted_auec
        return self.auec

    @property
    def has_discount(self) -> bool:
        return self.discount_percent is not None and self.discounted_auec is not None


@dataclass(frozen=True)
class BuyOrder:
    id: int
    guild_id: str
    user_id: str
    item: str
    price: int
    amount: Optional[int]
    attachment_url: Optional[str]
    status: BuyOrderStatus
    announcement_channel_id: Optional[str]
    announcement_message_id: Optional[str]
    done_button_custom_id: Optional[str]
    cancel_button_custom_id: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BuyOrder":
        return cls(
            id=row["id"],
            guild_id=row["guild_id"],
            user_id=row["user_id"],
            item=row["item"],
            price=row["price"],
            amount=row["amount"],
            attachment_url=row["attachment_url"],
            status=BuyOrderStatus(row["status"]),
            announcement_channel_id=row["announcement_channel_id"],
            announcement_message_id=row["announcement_message_id"],
            done_button_custom_id=row["done_button_custom_id"],
            cancel_button_custom_id=row["cancel_button_custom_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _load_tag_ids(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        values = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(values, list):
        return []
    return [str(value) for value in values]


@dataclass(frozen=True)
class GuildConfig:
    guild_id: str
    name: Optional[str] = None
    admin_role_id: Optional[str] = None
    trade_channel_id: Optional[str] = None
    trade_channel_type: Optional[ChannelType] = None
    sell_forum_tag_ids: tuple = ()
    buy_forum_tag_ids: tuple = ()

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "GuildConfig":
        channel_type = row["trade_channel_type"]
        return cls(
            guild_id=row["id"],
            name=row["name"],
            admin_role_id=row["admin_role_id"],
            trade_channel_id=row["trade_channel_id"],
            trade_channel_type=ChannelType(channel_type) if channel_type else None,
            sell_forum_tag_ids=tuple(_load_tag_ids(row["sell_forum_tag_ids"])),
            buy_forum_tag_ids=tuple(_load_tag_ids(row["buy_forum_tag_ids"])),
        )

    @property
    def has_trade_channel(self) -> bool:
        return bool(self.trade_channel_id) and self.trade_channel_type is not None

    def forum_tags_for(self, kind: ForumTagKind) -> List[str]:
        if self.trade_channel_type is not ChannelType.FORUM:
            return []
        if kind is ForumTagKind.SELL:
            return list(self.sell_forum_tag_ids)
        return list(self.buy_forum_tag_ids)


@dataclass(frozen=True)
class UserRecord:
    id: str
    username: str
    display_name: Optional[str]
    discriminator: Optional[str]

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserRecord":
        return cls(
            id=row["id"],
            username=row["username"],
            display_name=row["display_name"],
            discriminator=row["discriminator"],
        )
