import asyncio
from pathlib import Path
from typing import Optional

import aiosqlite
import pytest

from pledgebot.database import Database
from pledgebot.gateway import AnnouncementResult, GatewayError, GuildMetadata
from pledgebot.guild_cache import GuildMetadataCache
from pledgebot.lifecycle import NO_CHANNEL_MESSAGE, TradeLifecycle
from pledgebot.models import (
    AnnouncementPatch,
    BuyOrderStatus,
    ChannelType,
    ForumTagKind,
    TradeStatus,
)
from pledgebot.permissions import ADMIN_REQUIRED_MESSAGE, ADMINISTRATOR_BIT, Actor

pytestmark = pytest.mark.asyncio

GUILD = "1"
TRADE_CHANNEL = "500"
SELLER = Actor(user_id="10", username="seller", display_name="Seller")
STRANGER = Actor(user_id="11", username="stranger")
ADMIN = Actor(user_id="99", username="admin", permissions=ADMINISTRATOR_BIT)


class FakeGateway:
    """Records every REST call instead of talking to Discord."""

    def __init__(self, *, channel_id: str = "900", message_id: str = "901") -> None:
        self.channel_id = channel_id
        self.message_id = message_id
        self.fail_post = False
        self.fail_patch = False
        self.fail_thread = False
        self.posts = []
        self.patches = []
        self.thread_patches = []

    async def post_announcement(self, **kwargs) -> AnnouncementResult:
        self.posts.append(kwargs)
        if self.fail_post:
            raise GatewayError("post failed", status=500)
        url = f"https://discord.com/channels/{kwargs['guild_id']}/{self.channel_id}/{self.message_id}"
        return AnnouncementResult(url=url, channel_id=self.channel_id, message_id=self.message_id)

    async def patch_announcement(self, channel_id, message_id, embed, *, content=None, components=None):
        self.patches.append(
            {
                "channel_id": channel_id,
                "message_id": message_id,
                "embed": embed,
                "content": content,
                "components": components,
            }
        )
        if self.fail_patch:
            raise GatewayError("patch failed", status=500)

    async def patch_thread(self, thread_id, *, name=None, archived=None, locked=None):
        self.thread_patches.append(
            {"thread_id": thread_id, "name": name, "archived": archived, "locked": locked}
        )
        if self.fail_thread:
            raise GatewayError("thread failed", status=403)

    async def fetch_guild(self, guild_id: str) -> Optional[GuildMetadata]:
        return GuildMetadata(id=guild_id, name="Pledge Guild")


class FlakyMetadataDatabase(Database):
    fail_clear = False

    async def update_trade_announcement(self, trade_id, patch):
        if self.fail_clear and patch == AnnouncementPatch.clear_controls():
            raise aiosqlite.OperationalError("disk I/O error")
        return await super().update_trade_announcement(trade_id, patch)


async def make_lifecycle(
    tmp_path: Path,
    gateway: Optional[FakeGateway] = None,
    *,
    channel_type: Optional[ChannelType] = ChannelType.TEXT,
    db_class=Database,
    allow_offline: bool = False,
):
    db = db_class(tmp_path / "test.db")
    await db.setup()
    if channel_type is not None:
        await db.set_trade_channel(GUILD, TRADE_CHANNEL, channel_type)
    gateway = gateway if gateway is not None else FakeGateway()
    lifecycle = TradeLifecycle(db, gateway, allow_offline=allow_offline)
    return db, gateway, lifecycle


async def test_trade_sells_out_after_two_done_presses(tmp_path: Path):
    db, gateway, lifecycle = await make_lifecycle(tmp_path)

    reply = await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000, 2)
    assert reply.content.splitlines() == [
        "Trade #1 created successfully.",
        "Announcement: https://discord.com/channels/1/900/901",
        "Use the buttons below to manage this trade.",
    ]
    assert [button.label for button in reply.controls] == ["Done 1 item", "Done all", "Cancel"]

    post = gateway.posts[0]
    assert post["channel_id"] == TRADE_CHANNEL
    assert post["content"] == "New trade from <@10> — 5,000 aUEC"
    assert post["thread_name"] == "Sell: Ship - 5,000 aUEC"
    assert [c["custom_id"] for c in post["components"][0]["components"]] == [
        "trade:1:done:one",
        "trade:1:done:all",
        "trade:1:cancel",
    ]

    trade = await db.get_trade(1)
    assert trade.announcement_channel_id == "900"
    assert trade.announcement_message_id == "901"
    assert trade.done_one_button_custom_id == "trade:1:done:one"

    first = await lifecycle.mark_trade_done(SELLER, GUILD, 1, 1)
    assert first.content.splitlines()[:2] == [
        "Marked 1 item as done for trade #1.",
        "Remaining stock: 1.",
    ]
    trade = await db.get_trade(1)
    assert trade.stock == 1
    assert trade.status is TradeStatus.OPEN
    assert trade.cancel_button_custom_id == "trade:1:cancel"

    second = await lifecycle.mark_trade_done(SELLER, GUILD, 1, 1)
    assert "Trade is now marked as sold out." in second.content
    trade = await db.get_trade(1)
    assert trade.stock == 0
    assert trade.status is TradeStatus.SOLD_OUT
    assert trade.done_one_button_custom_id is None
    assert trade.done_all_button_custom_id is None
    assert trade.cancel_button_custom_id is None

    final_patch = gateway.patches[-1]
    assert final_patch["components"] == []
    assert final_patch["embed"].fields[-1].value == "Sold"
    assert gateway.thread_patches == []


async def test_single_stock_trade_has_no_done_all_control(tmp_path: Path):
    db, _, lifecycle = await make_lifecycle(tmp_path)

    reply = await lifecycle.create_trade(SELLER, GUILD, "Fighter", 100)
    assert [button.label for button in reply.controls] == ["Done 1 item", "Cancel"]
    trade = await db.get_trade(1)
    assert trade.done_all_button_custom_id is None


async def test_create_trade_validates_input(tmp_path: Path):
    db, gateway, lifecycle = await make_lifecycle(tmp_path)

    assert (await lifecycle.create_trade(SELLER, GUILD, "  ", 100)).content == (
        "Title and price are required."
    )
    assert (await lifecycle.create_trade(SELLER, GUILD, "Ship", 0)).content == (
        "Provide a valid price greater than 0."
    )
    assert (await lifecycle.create_trade(SELLER, GUILD, "Ship", 10, 0)).content == (
        "Stock must be a positive integer."
    )
    assert await db.get_trade(1) is None
    assert gateway.posts == []


async def test_trade_without_channel_is_not_persisted(tmp_path: Path):
    db, gateway, lifecycle = await make_lifecycle(tmp_path, channel_type=None)

    reply = await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000)
    assert reply.content == NO_CHANNEL_MESSAGE
    assert reply.controls == ()
    assert await db.get_trade(1) is None
    assert gateway.posts == []


async def test_buy_order_without_channel_is_persisted(tmp_path: Path):
    db, gateway, lifecycle = await make_lifecycle(tmp_path, channel_type=None)

    reply = await lifecycle.create_buy_order(SELLER, GUILD, "Fighter", 200_000, 2)
    lines = reply.content.splitlines()
    assert lines[0] == "Buy order #1 created successfully."
    assert lines[1] == NO_CHANNEL_MESSAGE
    assert gateway.posts == []

    order = await db.get_buy_order(1)
    assert order.status is BuyOrderStatus.OPEN
    assert order.announcement_channel_id is None
    assert order.done_button_custom_id == "buy:1:done"


async def test_done_rejections_leave_stock_untouched(tmp_path: Path):
    db, _, lifecycle = await make_lifecycle(tmp_path)
    await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000, 2)

    assert (await lifecycle.mark_trade_done(STRANGER, GUILD, 1)).content == (
        "Only the seller can manage this trade."
    )
    assert (await lifecycle.mark_trade_done(SELLER, "2", 1)).content == (
        "Trade #1 does not exist for this guild."
    )
    assert (await lifecycle.mark_trade_done(SELLER, GUILD, 1, 5)).content == (
        "Unable to mark 5 items as done. Check the available stock and try again."
    )
    assert (await lifecycle.mark_trade_done(SELLER, GUILD, 1, 0)).content == (
        "Amount must be a positive integer."
    )
    assert (await db.get_trade(1)).stock == 2


async def test_done_with_no_amount_sells_remaining_stock(tmp_path: Path):
    db, _, lifecycle = await make_lifecycle(tmp_path)
    await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000, 3)

    reply = await lifecycle.mark_trade_done(SELLER, GUILD, 1, None)
    assert reply.content.splitlines()[:2] == [
        "Marked 3 items as done for trade #1.",
        "Trade is now marked as sold out.",
    ]
    assert (await lifecycle.mark_trade_done(SELLER, GUILD, 1)).content == "Trade #1 is already sold."


async def test_cancel_archives_forum_thread(tmp_path: Path):
    gateway = FakeGateway(channel_id="700", message_id="701")
    db, gateway, lifecycle = await make_lifecycle(tmp_path, gateway, channel_type=ChannelType.FORUM)
    await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000)

    reply = await lifecycle.cancel_trade(SELLER, GUILD, 1)
    assert reply.content.splitlines() == [
        "Trade #1 has been cancelled.",
        "Announcement: https://discord.com/channels/1/700/701",
    ]
    assert gateway.thread_patches[-1] == {
        "thread_id": "700",
        "name": "Sell: Ship - 5,000 aUEC (Cancelled)",
        "archived": True,
        "locked": True,
    }
    trade = await db.get_trade(1)
    assert trade.status is TradeStatus.CANCELLED
    assert trade.cancel_button_custom_id is None

    assert (await lifecycle.cancel_trade(SELLER, GUILD, 1)).content == (
        "Trade #1 is already cancelled."
    )


async def test_open_trade_renames_thread_without_archiving(tmp_path: Path):
    gateway = FakeGateway(channel_id="700", message_id="701")
    _, gateway, lifecycle = await make_lifecycle(tmp_path, gateway, channel_type=ChannelType.FORUM)
    await lifecycle.create_trade(SELLER, GUILD, "Ship", 1000, 2)

    await lifecycle.discount_trade(SELLER, GUILD, 1, 10)
    assert gateway.thread_patches[-1] == {
        "thread_id": "700",
        "name": "Sell: Ship - 900 aUEC",
        "archived": None,
        "locked": None,
    }


async def test_sync_failures_are_reported_in_order(tmp_path: Path):
    gateway = FakeGateway(channel_id="700", message_id="701")
    db, gateway, lifecycle = await make_lifecycle(
        tmp_path, gateway, channel_type=ChannelType.FORUM, db_class=FlakyMetadataDatabase
    )
    await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000)
    gateway.fail_patch = True
    gateway.fail_thread = True
    db.fail_clear = True

    reply = await lifecycle.close_trade(SELLER, GUILD, 1)
    assert reply.content.splitlines() == [
        "Trade #1 marked as closed.",
        "Announcement: https://discord.com/channels/1/700/701",
        "Warning: Failed to update the trade announcement.",
        "Warning: Failed to update stored control metadata.",
        "Warning: Failed to update the trade forum thread.",
    ]
    trade = await db.get_trade(1)
    assert trade.status is TradeStatus.COMPLETE
    assert trade.done_one_button_custom_id == "trade:1:done:one"


async def test_close_rejects_other_sellers(tmp_path: Path):
    _, _, lifecycle = await make_lifecycle(tmp_path)
    await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000)

    assert (await lifecycle.close_trade(STRANGER, GUILD, 1)).content == (
        "You can only close your own trades."
    )


async def test_offline_mode_skips_the_gateway(tmp_path: Path):
    db, gateway, lifecycle = await make_lifecycle(tmp_path, allow_offline=True)

    created = await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000, 2)
    assert created.content.splitlines() == [
        "Trade #1 created successfully.",
        "Use the buttons below to manage this trade.",
        "Offline mode: announcement was not sent.",
    ]
    done = await lifecycle.mark_trade_done(SELLER, GUILD, 1)
    assert done.content.splitlines()[-1] == "Offline mode: announcement was not updated."
    assert gateway.posts == []
    assert gateway.patches == []


async def test_lifecycle_without_gateway_is_offline(tmp_path: Path):
    db = Database(tmp_path / "test.db")
    await db.setup()
    await db.set_trade_channel(GUILD, TRADE_CHANNEL, ChannelType.TEXT)
    lifecycle = TradeLifecycle(db)

    reply = await lifecycle.create_buy_order(SELLER, GUILD, "Fighter", 500)
    assert reply.content.splitlines()[-1] == "Offline mode: announcement was not sent."


async def test_missing_announcement_pointer(tmp_path: Path):
    gateway = FakeGateway()
    gateway.fail_post = True
    _, gateway, lifecycle = await make_lifecycle(tmp_path, gateway)

    created = await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000)
    assert "Warning: Failed to post the trade announcement." in created.content

    cancelled = await lifecycle.cancel_trade(SELLER, GUILD, 1)
    assert cancelled.content.splitlines() == [
        "Trade #1 has been cancelled.",
        "No stored announcement message to update.",
    ]
    assert gateway.patches == []


async def test_discount_updates_announcement(tmp_path: Path):
    db, gateway, lifecycle = await make_lifecycle(tmp_path)
    await lifecycle.create_trade(SELLER, GUILD, "Ship", 1000)

    applied = await lifecycle.discount_trade(SELLER, GUILD, 1, 10)
    assert applied.content.splitlines()[0] == (
        "Applied a 10% discount to trade #1. Final price: 900 aUEC."
    )
    assert gateway.patches[-1]["content"] == "New trade from <@10> — 900 aUEC (10% off)"
    assert len(gateway.patches[-1]["components"][0]["components"]) == 2

    removed = await lifecycle.discount_trade(SELLER, GUILD, 1, None)
    assert removed.content.splitlines()[0] == (
        "Removed the discount from trade #1. Price: 1,000 aUEC."
    )
    assert (await db.get_trade(1)).discounted_auec is None

    assert (await lifecycle.discount_trade(SELLER, GUILD, 1, 96)).content == (
        "Discount must be between 0 and 95 percent."
    )


async def test_handle_control_routes_buttons(tmp_path: Path):
    db, _, lifecycle = await make_lifecycle(tmp_path)
    await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000, 3)

    one = await lifecycle.handle_control(SELLER, GUILD, "trade:1:done:one")
    assert one.content.startswith("Marked 1 item as done for trade #1.")
    assert (await db.get_trade(1)).stock == 2

    assert (await lifecycle.handle_control(STRANGER, GUILD, "trade:1:done:all")).content == (
        "Only the seller can manage this trade."
    )

    everything = await lifecycle.handle_control(SELLER, GUILD, "trade:1:done:all")
    assert "Trade is now marked as sold out." in everything.content

    stale = await lifecycle.handle_control(SELLER, GUILD, "trade:1:done:one")
    assert stale.content == "This trade action is no longer valid."
    assert (await lifecycle.handle_control(SELLER, GUILD, "trade:1:cancel")).content == (
        "Trade #1 is already sold."
    )

    assert (await lifecycle.handle_control(SELLER, GUILD, "trade:abc:done")).content == (
        "Invalid trade identifier."
    )
    assert (await lifecycle.handle_control(SELLER, GUILD, "buy:1:done:one")).content == (
        "Invalid buy order identifier."
    )
    assert (await lifecycle.handle_control(SELLER, GUILD, "vote:1")).content == (
        "Unsupported component."
    )
    assert (await lifecycle.handle_control(SELLER, None, "trade:1:cancel")).content == (
        "Trades can only be managed inside a guild."
    )


async def test_buy_order_lifecycle(tmp_path: Path):
    db, gateway, lifecycle = await make_lifecycle(tmp_path)

    created = await lifecycle.create_buy_order(SELLER, GUILD, "Fighter", 200_000, 2)
    assert created.content.splitlines()[:2] == [
        "Buy order #1 created successfully.",
        "Announcement: https://discord.com/channels/1/900/901",
    ]
    assert [button.label for button in created.controls] == ["Mark done", "Cancel"]
    assert gateway.posts[0]["content"] == (
        "New buy order from <@10> — Offering 200,000 aUEC for 2 unit(s)"
    )
    assert gateway.posts[0]["thread_name"] == "Buy: Fighter - 200,000 aUEC"

    assert (await lifecycle.handle_control(STRANGER, GUILD, "buy:1:done")).content == (
        "Only the buyer can manage this order."
    )

    fulfilled = await lifecycle.handle_control(SELLER, GUILD, "buy:1:done")
    assert fulfilled.content.splitlines()[0] == "Buy order #1 marked as fulfilled."
    order = await db.get_buy_order(1)
    assert order.status is BuyOrderStatus.FULFILLED
    assert order.done_button_custom_id is None
    assert order.cancel_button_custom_id is None
    assert gateway.patches[-1]["components"] == []

    assert (await lifecycle.cancel_buy_order(SELLER, GUILD, 1)).content == (
        "Buy order #1 is already fulfilled."
    )


async def test_mark_all_trades_done(tmp_path: Path):
    db, _, lifecycle = await make_lifecycle(tmp_path)
    assert (await lifecycle.mark_all_trades_done(SELLER, GUILD)).content == (
        "You have no open trades to mark as done."
    )

    await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000, 2)
    await lifecycle.create_trade(SELLER, GUILD, "Fighter", 100, 3)
    await lifecycle.create_trade(STRANGER, GUILD, "Other", 100)

    reply = await lifecycle.mark_all_trades_done(SELLER, GUILD)
    assert reply.content.splitlines() == ["Marked 2 trades as done.", "Trades: #1, #2"]
    for trade_id in (1, 2):
        trade = await db.get_trade(trade_id)
        assert trade.status is TradeStatus.SOLD_OUT
        assert trade.stock == 0
    assert (await db.get_trade(3)).status is TradeStatus.OPEN


async def test_close_all_trades_summarises_failures(tmp_path: Path):
    db, gateway, lifecycle = await make_lifecycle(tmp_path)
    await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000)
    await lifecycle.create_trade(SELLER, GUILD, "Fighter", 100)
    gateway.fail_patch = True

    reply = await lifecycle.close_all_trades(SELLER, GUILD)
    assert reply.content.splitlines() == [
        "Closed 2 trades.",
        "Trades: #1, #2",
        "Warning: Failed to update announcements for #1, #2.",
    ]
    assert (await db.get_trade(2)).status is TradeStatus.COMPLETE
    assert (await lifecycle.close_all_trades(SELLER, GUILD)).content == (
        "You have no open trades to close."
    )


async def test_fulfill_all_buy_orders(tmp_path: Path):
    db, _, lifecycle = await make_lifecycle(tmp_path, channel_type=None)
    await lifecycle.create_buy_order(SELLER, GUILD, "Fighter", 500)

    reply = await lifecycle.fulfill_all_buy_orders(SELLER, GUILD)
    assert reply.content.splitlines() == [
        "Fulfilled 1 buy order.",
        "Buy orders: #1",
        "1 buy order did not have announcement metadata stored.",
    ]
    assert (await db.get_buy_order(1)).status is BuyOrderStatus.FULFILLED


async def test_admin_cancel_requires_access_and_reason(tmp_path: Path):
    db, _, lifecycle = await make_lifecycle(tmp_path)
    await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000)

    assert (await lifecycle.admin_cancel_trade(STRANGER, GUILD, 1, "Scam")).content == (
        ADMIN_REQUIRED_MESSAGE
    )
    assert (await lifecycle.admin_cancel_trade(ADMIN, GUILD, 1, "  ")).content == (
        "Trade ID and reason are required."
    )

    await db.add_trade_role(GUILD, "77")
    moderator = Actor(user_id="12", username="mod", role_ids=frozenset({"77"}))
    reply = await lifecycle.admin_cancel_trade(moderator, GUILD, 1, "Scam")
    assert reply.content.splitlines()[:2] == ["Trade #1 has been cancelled.", "Reason: Scam"]

    trade = await db.get_trade(1)
    assert trade.status is TradeStatus.CANCELLED
    assert trade.reason == "Scam"


async def test_trade_history_lists_trades(tmp_path: Path):
    _, _, lifecycle = await make_lifecycle(tmp_path)
    assert (await lifecycle.trade_history(ADMIN, GUILD)).content == (
        "No trades found for the provided filters."
    )

    await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000, 2)
    reply = await lifecycle.trade_history(ADMIN, GUILD)
    assert reply.content == "#1 · Ship · 5,000 aUEC · Stock 2 · Status: Open"
    assert (await lifecycle.trade_history(SELLER, GUILD)).content == ADMIN_REQUIRED_MESSAGE


async def test_configuration_commands(tmp_path: Path):
    db, gateway, lifecycle = await make_lifecycle(tmp_path, channel_type=None)

    assert (
        await lifecycle.configure_channel(STRANGER, GUILD, TRADE_CHANNEL, ChannelType.FORUM)
    ).content == ADMIN_REQUIRED_MESSAGE
    assert (
        await lifecycle.add_forum_tag(ADMIN, GUILD, ForumTagKind.SELL, "123")
    ).content == "Configure a forum trade channel before managing forum tags."

    configured = await lifecycle.configure_channel(ADMIN, GUILD, TRADE_CHANNEL, ChannelType.FORUM)
    assert configured.content == "Trade channel set to <#500> (forum)."

    assert (
        await lifecycle.add_forum_tag(ADMIN, GUILD, ForumTagKind.SELL, "123")
    ).content == "Added forum tag 123 for sell announcements."
    assert (
        await lifecycle.add_forum_tag(ADMIN, GUILD, ForumTagKind.SELL, "123")
    ).content == "Forum tag 123 is already configured for sell announcements."
    assert (
        await lifecycle.add_forum_tag(ADMIN, GUILD, ForumTagKind.BUY, "abc")
    ).content == "Provide the forum tag ID to add for buy announcements."

    listing = await lifecycle.list_forum_tags(ADMIN, GUILD)
    assert listing.content == (
        "Current forum tag configuration:\n\n"
        "Sell announcements:\n• 123\n\n"
        "Buy announcements:\n• None configured"
    )

    created = await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000)
    assert "Applied forum tag: 123" in created.content
    assert list(gateway.posts[-1]["applied_tags"]) == ["123"]

    assert (await lifecycle.list_moderator_roles(ADMIN, GUILD)).content == (
        "No trade moderator roles configured yet."
    )
    await lifecycle.add_moderator_role(ADMIN, GUILD, "77")
    assert (await lifecycle.list_moderator_roles(ADMIN, GUILD)).content == (
        "Configured trade moderator roles:\n<@&77>"
    )
    await lifecycle.remove_moderator_role(ADMIN, GUILD, "77")
    assert await db.list_trade_roles(GUILD) == []

    assert (await lifecycle.set_admin_role(ADMIN, GUILD, "55")).content == (
        "Administrator role set to <@&55>."
    )
    role_admin = Actor(user_id="13", username="lead", role_ids=frozenset({"55"}))
    assert (await lifecycle.list_forum_tags(role_admin, GUILD)).content.startswith(
        "Current forum tag configuration:"
    )


async def test_record_invocation_refreshes_guild_and_user(tmp_path: Path):
    db = Database(tmp_path / "test.db")
    await db.setup()
    gateway = FakeGateway()
    lifecycle = TradeLifecycle(db, gateway, guild_cache=GuildMetadataCache(gateway.fetch_guild))

    await lifecycle.record_invocation(SELLER, GUILD, "sell create", {"title": "Ship"})

    assert (await db.get_guild_config(GUILD)).name == "Pledge Guild"
    assert (await db.get_user("10")).display_name == "Seller"
    async with aiosqlite.connect(db.path) as conn:
        cursor = await conn.execute("SELECT guild_id, user_id, command_name FROM command_history")
        assert await cursor.fetchall() == [("1", "10", "sell create")]


async def test_autocomplete_lists_caller_records(tmp_path: Path):
    _, _, lifecycle = await make_lifecycle(tmp_path)
    await lifecycle.create_trade(SELLER, GUILD, "Carrack", 1000, 2)
    await lifecycle.create_trade(SELLER, GUILD, "Cutlass Black", 500)
    await lifecycle.create_buy_order(SELLER, GUILD, "Medical beacon", 2500)

    trades = await lifecycle.autocomplete_trades(SELLER, GUILD, "carr")
    assert trades[0] == ("#1 · Carrack · Stock 2", 1)
    assert len(await lifecycle.autocomplete_trades(SELLER, GUILD, "")) == 2
    assert await lifecycle.autocomplete_trades(STRANGER, GUILD, "") == []
    assert await lifecycle.autocomplete_trades(SELLER, None, "") == []

    orders = await lifecycle.autocomplete_buy_orders(SELLER, GUILD, "")
    assert orders == [("#1 · Medical beacon · 2,500 aUEC", 1)]


async def test_issued_write_finishes_when_caller_is_cancelled(tmp_path: Path):
    db, _, lifecycle = await make_lifecycle(tmp_path)
    await lifecycle.create_trade(SELLER, GUILD, "Ship", 5000, 3)

    caller = asyncio.create_task(lifecycle._commit(db.reduce_stock(1, 1)))
    await asyncio.sleep(0)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    for _ in range(100):
        if (await db.get_trade(1)).stock == 2:
            break
        await asyncio.sleep(0.01)
    trade = await db.get_trade(1)
    assert trade.stock == 2
    assert trade.status is TradeStatus.OPEN
