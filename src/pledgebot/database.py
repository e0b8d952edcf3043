"""SQLite persistence layer for trades, buy orders and guild configuration."""
from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Mapping, Optional, Sequence

import aiosqlite
from rapidfuzz import fuzz

from .models import (
    AnnouncementPatch,
    BuyOrder,
    BuyOrderStatus,
    ChannelType,
    FieldPatch,
    ForumTagKind,
    GuildConfig,
    Patch,
    SetTo,
    Trade,
    TradeStatus,
    UserRecord,
)

_log = logging.getLogger(__name__)

MAX_DISCOUNT_PERCENT = 95
MAX_PAGE_SIZE = 25
FUZZY_SCORE_CUTOFF = 60
AUTOCOMPLETE_LIMIT = 20

_TRADE_STATUS_SQL = ",".join(f"'{status.value}'" for status in TradeStatus)
_BUY_STATUS_SQL = ",".join(f"'{status.value}'" for status in BuyOrderStatus)

TRADES_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    guild_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    auec INTEGER NOT NULL CHECK (auec > 0),
    discount_percent INTEGER CHECK (discount_percent BETWEEN 0 AND {MAX_DISCOUNT_PERCENT}),
    discounted_auec INTEGER,
    stock INTEGER NOT NULL DEFAULT 1 CHECK (stock >= 0),
    image_url TEXT,
    announcement_channel_id TEXT,
    announcement_message_id TEXT,
    done_one_button_custom_id TEXT,
    done_all_button_custom_id TEXT,
    cancel_button_custom_id TEXT,
    status TEXT NOT NULL CHECK (status IN ({_TRADE_STATUS_SQL})),
    reason TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (guild_id) REFERENCES guilds(id) ON DELETE CASCADE,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
)
"""

BUY_ORDERS_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS buy_orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    guild_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    item TEXT NOT NULL,
    price INTEGER NOT NULL CHECK (price > 0),
    amount INTEGER CHECK (amount IS NULL OR amount > 0),
    attachment_url TEXT,
    status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ({_BUY_STATUS_SQL})),
    announcement_channel_id TEXT,
    announcement_message_id TEXT,
    done_button_custom_id TEXT,
    cancel_button_custom_id TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (guild_id) REFERENCES guilds(id) ON DELETE CASCADE,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
)
"""

TRADE_COLUMNS = (
    "id",
    "guild_id",
    "user_id",
    "title",
    "auec",
    "discount_percent",
    "discounted_auec",
    "stock",
    "image_url",
    "announcement_channel_id",
    "announcement_message_id",
    "done_one_button_custom_id",
    "done_all_button_custom_id",
    "cancel_button_custom_id",
    "status",
    "reason",
    "created_at",
    "updated_at",
)

BUY_ORDER_COLUMNS = (
    "id",
    "guild_id",
    "user_id",
    "item",
    "price",
    "amount",
    "attachment_url",
    "status",
    "announcement_channel_id",
    "announcement_message_id",
    "done_button_custom_id",
    "cancel_button_custom_id",
    "created_at",
    "updated_at",
)

_TRADE_PATCH_COLUMNS = {
    "channel_id": "announcement_channel_id",
    "message_id": "announcement_message_id",
    "done": "done_one_button_custom_id",
    "done_all": "done_all_button_custom_id",
    "cancel": "cancel_button_custom_id",
}

_BUY_ORDER_PATCH_COLUMNS = {
    "channel_id": "announcement_channel_id",
    "message_id": "announcement_message_id",
    "done": "done_button_custom_id",
    "cancel": "cancel_button_custom_id",
}


def _require_positive_int(value: object, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{label} must be a positive integer value")
    return value


def validate_discount(percent: Optional[int]) -> Optional[int]:
    """Return ``percent`` unchanged or raise when it is outside 0-95."""

    if percent is None:
        return None
    if isinstance(percent, bool) or not isinstance(percent, int):
        raise ValueError("Discount percent must be an integer value")
    if percent < 0 or percent > MAX_DISCOUNT_PERCENT:
        raise ValueError(f"Discount percent must be between 0 and {MAX_DISCOUNT_PERCENT}")
    return percent


class Database:
    """Data access helper built on top of SQLite."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = os.fspath(path)
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._lock = asyncio.Lock()

    async def setup(self) -> None:
        async with self._connect() as db:
            await db.executescript(
                """
                CREATE TABLE IF NOT EXISTS guilds (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    admin_role_id TEXT,
                    trade_channel_id TEXT,
                    trade_channel_type TEXT CHECK (trade_channel_type IN ('forum','text')),
                    sell_forum_tag_ids TEXT NOT NULL DEFAULT '[]',
                    buy_forum_tag_ids TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL DEFAULT (datetime('now')),
                    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
                );

                CREATE TABLE IF NOT EXISTS guild_roles (
                    guild_id TEXT NOT NULL,
                    role_id TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (datetime('now')),
                    PRIMARY KEY (guild_id, role_id),
                    FOREIGN KEY (guild_id) REFERENCES guilds(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL,
                    display_name TEXT,
                    discriminator TEXT,
                    created_at TEXT NOT NULL DEFAULT (datetime('now')),
                    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
                );

                CREATE TABLE IF NOT EXISTS command_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    guild_id TEXT,
                    user_id TEXT,
                    command_name TEXT NOT NULL,
                    options_json TEXT,
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                );
                """
            )
            await db.execute(TRADES_TABLE_SQL)
            await db.execute(BUY_ORDERS_TABLE_SQL)
            await db.commit()

            await self._ensure_guild_columns(db)
            await self._migrate_table(
                db,
                "trades",
                TRADES_TABLE_SQL,
                TRADE_COLUMNS,
                required_sql_token="'sold_out'",
                fallbacks=self._trade_fallbacks,
            )
            await self._migrate_table(
                db,
                "buy_orders",
                BUY_ORDERS_TABLE_SQL,
                BUY_ORDER_COLUMNS,
                required_sql_token="'fulfilled'",
                fallbacks=self._buy_order_fallbacks,
            )
            await db.executescript(
                """
                CREATE INDEX IF NOT EXISTS idx_trades_owner
                    ON trades(guild_id, user_id, status);
                CREATE INDEX IF NOT EXISTS idx_buy_orders_owner
                    ON buy_orders(guild_id, user_id, status);
                """
            )
            await db.commit()

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db

    @staticmethod
    async def _table_columns(db: aiosqlite.Connection, table: str) -> List[str]:
        cursor = await db.execute(f"PRAGMA table_info({table})")
        return [row[1] for row in await cursor.fetchall()]

    @staticmethod
    async def _table_sql(db: aiosqlite.Connection, table: str) -> str:
        cursor = await db.execute(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        )
        row = await cursor.fetchone()
        return (row[0] or "") if row else ""

    async def _ensure_guild_columns(self, db: aiosqlite.Connection) -> None:
        """Add new guild columns when upgrading an existing database."""
        columns = set(await self._table_columns(db, "guilds"))
        if "admin_role_id" not in columns:
            await db.execute("ALTER TABLE guilds ADD COLUMN admin_role_id TEXT")
        if "trade_channel_id" not in columns:
            await db.execute("ALTER TABLE guilds ADD COLUMN trade_channel_id TEXT")
        if "trade_channel_type" not in columns:
            await db.execute(
                "ALTER TABLE guilds ADD COLUMN trade_channel_type TEXT "
                "CHECK (trade_channel_type IN ('forum','text'))"
            )
        if "sell_forum_tag_ids" not in columns:
            await db.execute(
                "ALTER TABLE guilds ADD COLUMN sell_forum_tag_ids TEXT NOT NULL DEFAULT '[]'"
            )
        if "buy_forum_tag_ids" not in columns:
            await db.execute(
                "ALTER TABLE guilds ADD COLUMN buy_forum_tag_ids TEXT NOT NULL DEFAULT '[]'"
            )
        await db.commit()

    @staticmethod
    def _trade_fallbacks(column: str, existing: Sequence[str]) -> str:
        if column == "status":
            return "'open'"
        if column == "stock":
            return "1"
        if column == "done_one_button_custom_id" and "close_button_custom_id" in existing:
            return "close_button_custom_id"
        if column in {"created_at", "updated_at"}:
            return "datetime('now')"
        return "NULL"

    @staticmethod
    def _buy_order_fallbacks(column: str, existing: Sequence[str]) -> str:
        if column == "status":
            return "'open'"
        if column in {"created_at", "updated_at"}:
            return "datetime('now')"
        return "NULL"

    async def _migrate_table(
        self,
        db: aiosqlite.Connection,
        table: str,
        create_sql: str,
        columns: Sequence[str],
        *,
        required_sql_token: str,
        fallbacks,
    ) -> bool:
        """Rebuild ``table`` in place when its stored shape is out of date.

        The old table is renamed, recreated with the current definition and
        copied across in a single transaction. Returns ``True`` when a rebuild
        happened.
        """

        existing = await self._table_columns(db, table)
        if not existing:
            return False
        table_sql = await self._table_sql(db, table)
        missing = [column for column in columns if column not in existing]
        if not missing and required_sql_token in table_sql:
            return False

        select_exprs = []
        for column in columns:
            if column in existing:
                expr = column
                if column == "status":
                    expr = "CASE status WHEN 'selled' THEN 'sold_out' ELSE status END"
            else:
                expr = fallbacks(column, existing)
            select_exprs.append(f"{expr} AS {column}")

        _log.info("Migrating %s table (missing columns: %s)", table, ", ".join(missing) or "none")
        await db.execute("BEGIN")
        try:
            await db.execute(f"ALTER TABLE {table} RENAME TO {table}_old")
            await db.execute(create_sql)
            await db.execute(
                f"INSERT INTO {table} ({', '.join(columns)})\n"
                f"SELECT {', '.join(select_exprs)} FROM {table}_old"
            )
            await db.execute(f"DROP TABLE {table}_old")
            await db.commit()
        except aiosqlite.Error:
            await db.rollback()
            raise
        return True

    async def _ensure_owner(self, db: aiosqlite.Connection, guild_id: str, user_id: str) -> None:
        await db.execute(
            "INSERT OR IGNORE INTO guilds(id, name) VALUES (?, ?)", (guild_id, guild_id)
        )
        await db.execute(
            "INSERT OR IGNORE INTO users(id, username) VALUES (?, ?)", (user_id, user_id)
        )

    # Guilds

    async def has_guild(self, guild_id: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute("SELECT 1 FROM guilds WHERE id = ? LIMIT 1", (guild_id,))
            return await cursor.fetchone() is not None

    async def record_guild(
        self, guild_id: str, name: Optional[str], admin_role_id: Optional[str] = None
    ) -> None:
        """Upsert a guild; a missing name keeps the stored one."""
        incoming_name = name.strip() if name and name.strip() else None
        async with self._lock:
            async with self._connect() as db:
                await db.execute(
                    "INSERT INTO guilds(id, name, admin_role_id) VALUES (?, ?, ?)\n"
                    "ON CONFLICT(id) DO UPDATE SET\n"
                    "name = CASE WHEN ? IS NULL THEN guilds.name ELSE excluded.name END,\n"
                    "admin_role_id = COALESCE(excluded.admin_role_id, guilds.admin_role_id),\n"
                    "updated_at = datetime('now')",
                    (guild_id, incoming_name or guild_id, admin_role_id, incoming_name),
                )
                await db.commit()

    async def set_trade_channel(
        self,
        guild_id: str,
        channel_id: str,
        channel_type: ChannelType,
        *,
        guild_name: Optional[str] = None,
    ) -> None:
        """Persist the configured announcement channel for a guild."""

        async with self._lock:
            async with self._connect() as db:
                await db.execute(
                    "INSERT INTO guilds(id, name, trade_channel_id, trade_channel_type)\n"
                    "VALUES (?, ?, ?, ?)\n"
                    "ON CONFLICT(id) DO UPDATE SET trade_channel_id = excluded.trade_channel_id,\n"
                    "trade_channel_type = excluded.trade_channel_type, updated_at = datetime('now')",
                    (guild_id, guild_name or guild_id, channel_id, ChannelType(channel_type).value),
                )
                await db.commit()

    async def set_admin_role(
        self, guild_id: str, role_id: Optional[str], *, guild_name: Optional[str] = None
    ) -> None:
        async with self._lock:
            async with self._connect() as db:
                await db.execute(
                    "INSERT INTO guilds(id, name, admin_role_id) VALUES (?, ?, ?)\n"
                    "ON CONFLICT(id) DO UPDATE SET admin_role_id = excluded.admin_role_id,\n"
                    "updated_at = datetime('now')",
                    (guild_id, guild_name or guild_id, role_id),
                )
                await db.commit()

    async def get_guild_config(self, guild_id: str) -> GuildConfig:
        """Return the stored configuration, or an empty one for unknown guilds."""

        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM guilds WHERE id = ? LIMIT 1", (guild_id,))
            row = await cursor.fetchone()
        if row is None:
            return GuildConfig(guild_id=guild_id)
        return GuildConfig.from_row(row)

    async def add_trade_role(self, guild_id: str, role_id: str) -> bool:
        async with self._lock:
            async with self._connect() as db:
                await db.execute(
                    "INSERT OR IGNORE INTO guilds(id, name) VALUES (?, ?)", (guild_id, guild_id)
                )
                cursor = await db.execute(
                    "INSERT INTO guild_roles(guild_id, role_id) VALUES (?, ?)\n"
                    "ON CONFLICT(guild_id, role_id) DO NOTHING",
                    (guild_id, role_id),
                )
                await db.commit()
                return cursor.rowcount > 0

    async def remove_trade_role(self, guild_id: str, role_id: str) -> bool:
        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    "DELETE FROM guild_roles WHERE guild_id = ? AND role_id = ?",
                    (guild_id, role_id),
                )
                await db.commit()
                return cursor.rowcount > 0

    async def list_trade_roles(self, guild_id: str) -> List[str]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT role_id FROM guild_roles WHERE guild_id = ? ORDER BY rowid",
                (guild_id,),
            )
            return [row["role_id"] for row in await cursor.fetchall()]

    @staticmethod
    def _tag_column(kind: ForumTagKind) -> str:
        return "sell_forum_tag_ids" if ForumTagKind(kind) is ForumTagKind.SELL else "buy_forum_tag_ids"

    async def _rewrite_forum_tags(self, guild_id: str, kind: ForumTagKind, tag_id: str, *, add: bool) -> bool:
        column = self._tag_column(kind)
        async with self._lock:
            async with self._connect() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    await db.execute(
                        "INSERT OR IGNORE INTO guilds(id, name) VALUES (?, ?)", (guild_id, guild_id)
                    )
                    cursor = await db.execute(f"SELECT {column} FROM guilds WHERE id = ?", (guild_id,))
                    row = await cursor.fetchone()
                    tags = json.loads(row[0] or "[]")
                    if add == (tag_id in tags):
                        await db.rollback()
                        return False
                    if add:
                        tags.append(tag_id)
                    else:
                        tags.remove(tag_id)
                    await db.execute(
                        f"UPDATE guilds SET {column} = ?, updated_at = datetime('now') WHERE id = ?",
                        (json.dumps(tags), guild_id),
                    )
                    await db.commit()
                except aiosqlite.Error:
                    await db.rollback()
                    raise
                return True

    async def add_forum_tag(self, guild_id: str, kind: ForumTagKind, tag_id: str) -> bool:
        return await self._rewrite_forum_tags(guild_id, kind, tag_id.strip(), add=True)

    async def remove_forum_tag(self, guild_id: str, kind: ForumTagKind, tag_id: str) -> bool:
        return await self._rewrite_forum_tags(guild_id, kind, tag_id.strip(), add=False)

    async def list_forum_tags(self, guild_id: str) -> Dict[ForumTagKind, List[str]]:
        config = await self.get_guild_config(guild_id)
        return {
            ForumTagKind.SELL: list(config.sell_forum_tag_ids),
            ForumTagKind.BUY: list(config.buy_forum_tag_ids),
        }

    # Users and audit log

    async def record_user(
        self,
        user_id: str,
        username: str,
        display_name: Optional[str] = None,
        discriminator: Optional[str] = None,
    ) -> None:
        async with self._lock:
            async with self._connect() as db:
                await db.execute(
                    "INSERT INTO users(id, username, display_name, discriminator) VALUES (?, ?, ?, ?)\n"
                    "ON CONFLICT(id) DO UPDATE SET username = excluded.username,\n"
                    "display_name = COALESCE(excluded.display_name, users.display_name),\n"
                    "discriminator = COALESCE(excluded.discriminator, users.discriminator),\n"
                    "updated_at = datetime('now')",
                    (user_id, username, display_name, discriminator),
                )
                await db.commit()

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM users WHERE id = ? LIMIT 1", (user_id,))
            row = await cursor.fetchone()
        return UserRecord.from_row(row) if row else None

    async def log_command(
        self,
        guild_id: Optional[str],
        user_id: Optional[str],
        command_name: str,
        options: Mapping[str, object],
    ) -> None:
        async with self._lock:
            async with self._connect() as db:
                await db.execute(
                    "INSERT INTO command_history(guild_id, user_id, command_name, options_json)\n"
                    "VALUES (?, ?, ?, ?)",
                    (guild_id, user_id, command_name, json.dumps(dict(options), default=str)),
                )
                await db.commit()

    # Trades

    async def create_trade(
        self,
        guild_id: str,
        user_id: str,
        title: str,
        price: int,
        stock: int = 1,
        image_url: Optional[str] = None,
    ) -> Trade:
        _require_positive_int(price, "Price")
        _require_positive_int(stock, "Stock")
        async with self._lock:
            async with self._connect() as db:
                await self._ensure_owner(db, guild_id, user_id)
                cursor = await db.execute(
                    "INSERT INTO trades(guild_id, user_id, title, auec, stock, image_url, status)\n"
                    "VALUES (?, ?, ?, ?, ?, ?, 'open') RETURNING *",
                    (guild_id, user_id, title.strip(), price, stock, image_url),
                )
                row = await cursor.fetchone()
                await db.commit()
        return Trade.from_row(row)

    async def get_trade(self, trade_id: int) -> Optional[Trade]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM trades WHERE id = ? LIMIT 1", (trade_id,))
            row = await cursor.fetchone()
        return Trade.from_row(row) if row else None

    async def reduce_stock(self, trade_id: int, amount: int) -> Optional[Trade]:
        """Take ``amount`` units off an open trade.

        Returns ``None`` without touching the row when the trade is not open
        or has less stock than requested. Reaching zero marks it sold out.
        """

        _require_positive_int(amount, "Amount")
        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    "UPDATE trades SET stock = stock - :amount,\n"
                    "status = CASE WHEN stock - :amount <= 0 THEN 'sold_out' ELSE status END,\n"
                    "updated_at = datetime('now')\n"
                    "WHERE id = :trade_id AND status = 'open' AND stock >= :amount\n"
                    "RETURNING *",
                    {"trade_id": trade_id, "amount": amount},
                )
                row = await cursor.fetchone()
                await db.commit()
        return Trade.from_row(row) if row else None

    async def update_trade_status(
        self, trade_id: int, status: TradeStatus, reason: Optional[str] = None
    ) -> Optional[Trade]:
        status = TradeStatus(status)
        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    "UPDATE trades SET status = ?, reason = ?, updated_at = datetime('now')\n"
                    "WHERE id = ? RETURNING *",
                    (status.value, reason, trade_id),
                )
                row = await cursor.fetchone()
                await db.commit()
        return Trade.from_row(row) if row else None

    async def update_discount(self, trade_id: int, percent: Optional[int]) -> Optional[Trade]:
        percent = validate_discount(percent)
        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    "UPDATE trades SET discount_percent = :percent,\n"
                    "discounted_auec = CASE WHEN :percent IS NULL THEN NULL\n"
                    "ELSE CAST(ROUND(auec * (100 - :percent) / 100.0) AS INTEGER) END,\n"
                    "updated_at = datetime('now')\n"
                    "WHERE id = :trade_id RETURNING *",
                    {"trade_id": trade_id, "percent": percent},
                )
                row = await cursor.fetchone()
                await db.commit()
        return Trade.from_row(row) if row else None

    @staticmethod
    def _patch_assignments(
        patch: AnnouncementPatch, columns: Mapping[str, str]
    ) -> tuple[list[str], list[Optional[str]]]:
        assignments: list[str] = []
        values: list[Optional[str]] = []
        for field_name in ("channel_id", "message_id", "done", "done_all", "cancel"):
            value: FieldPatch = getattr(patch, field_name)
            if value is Patch.UNCHANGED:
                continue
            column = columns.get(field_name)
            if column is None:
                raise ValueError(f"{field_name} cannot be updated on this record type")
            assignments.append(f"{column} = ?")
            values.append(value.value if isinstance(value, SetTo) else None)
        return assignments, values

    async def _apply_announcement_patch(
        self, table: str, record_id: int, patch: AnnouncementPatch, columns: Mapping[str, str]
    ) -> Optional[aiosqlite.Row]:
        assignments, values = self._patch_assignments(patch, columns)
        if not assignments:
            async with self._connect() as db:
                cursor = await db.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,))
                return await cursor.fetchone()

        assignments.append("updated_at = datetime('now')")
        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ? RETURNING *",
                    (*values, record_id),
                )
                row = await cursor.fetchone()
                await db.commit()
                return row

    async def update_trade_announcement(
        self, trade_id: int, patch: AnnouncementPatch
    ) -> Optional[Trade]:
        row = await self._apply_announcement_patch("trades", trade_id, patch, _TRADE_PATCH_COLUMNS)
        return Trade.from_row(row) if row else None

    async def list_user_trades(
        self, guild_id: str, user_id: str, status: Optional[TradeStatus] = None
    ) -> List[Trade]:
        query = "SELECT * FROM trades WHERE guild_id = ? AND user_id = ?"
        params: list[object] = [guild_id, user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(TradeStatus(status).value)
        query += " ORDER BY id"
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            return [Trade.from_row(row) for row in await cursor.fetchall()]

    async def list_trades(
        self,
        guild_id: str,
        status: Optional[TradeStatus] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> List[Trade]:
        page = max(1, page)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        query = "SELECT * FROM trades WHERE guild_id = ?"
        params: list[object] = [guild_id]
        if status is not None:
            query += " AND status = ?"
            params.append(TradeStatus(status).value)
        query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([page_size, (page - 1) * page_size])
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            return [Trade.from_row(row) for row in await cursor.fetchall()]

    @staticmethod
    def _normalize_text(value: str) -> str:
        return " ".join(value.lower().split())

    def _fuzzy_filter(self, term: str, entries: List[tuple[int, str]]) -> List[int]:
        term = term.strip()
        if not term:
            return [record_id for record_id, _ in entries[:AUTOCOMPLETE_LIMIT]]

        normalized_term = self._normalize_text(term.lstrip("#"))
        scored = []
        for record_id, label in entries:
            if str(record_id).startswith(normalized_term):
                scored.append((101, record_id))
                continue
            score = fuzz.WRatio(normalized_term, self._normalize_text(label))
            if score >= FUZZY_SCORE_CUTOFF:
                scored.append((score, record_id))

        scored.sort(key=lambda entry: (-entry[0], entry[1]))
        return [record_id for _, record_id in scored[:AUTOCOMPLETE_LIMIT]]

    async def search_open_trades(self, guild_id: str, user_id: str, term: str) -> List[Trade]:
        """Fuzzy match the caller's open trades by title or id prefix."""

        trades = await self.list_user_trades(guild_id, user_id, TradeStatus.OPEN)
        by_id = {trade.id: trade for trade in trades}
        matches = self._fuzzy_filter(term, [(trade.id, trade.title) for trade in trades])
        return [by_id[trade_id] for trade_id in matches]

    # Buy orders

    async def create_buy_order(
        self,
        guild_id: str,
        user_id: str,
        item: str,
        price: int,
        amount: Optional[int] = None,
        attachment_url: Optional[str] = None,
    ) -> BuyOrder:
        _require_positive_int(price, "Price")
        if amount is not None:
            _require_positive_int(amount, "Amount")
        async with self._lock:
            async with self._connect() as db:
                await self._ensure_owner(db, guild_id, user_id)
                cursor = await db.execute(
                    "INSERT INTO buy_orders(guild_id, user_id, item, price, amount, attachment_url, status)\n"
                    "VALUES (?, ?, ?, ?, ?, ?, 'open') RETURNING *",
                    (guild_id, user_id, item.strip(), price, amount, attachment_url),
                )
                row = await cursor.fetchone()
                await db.commit()
        return BuyOrder.from_row(row)

    async def get_buy_order(self, order_id: int) -> Optional[BuyOrder]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM buy_orders WHERE id = ? LIMIT 1", (order_id,))
            row = await cursor.fetchone()
        return BuyOrder.from_row(row) if row else None

    async def update_buy_order_status(
        self, order_id: int, status: BuyOrderStatus
    ) -> Optional[BuyOrder]:
        """Move an open buy order to ``status``; ``None`` when it is not open."""

        status = BuyOrderStatus(status)
        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    "UPDATE buy_orders SET status = ?, updated_at = datetime('now')\n"
                    "WHERE id = ? AND status = 'open' RETURNING *",
                    (status.value, order_id),
                )
                row = await cursor.fetchone()
                await db.commit()
        return BuyOrder.from_row(row) if row else None

    async def update_buy_order_announcement(
        self, order_id: int, patch: AnnouncementPatch
    ) -> Optional[BuyOrder]:
        row = await self._apply_announcement_patch(
            "buy_orders", order_id, patch, _BUY_ORDER_PATCH_COLUMNS
        )
        return BuyOrder.from_row(row) if row else None

    async def list_user_buy_orders(
        self, guild_id: str, user_id: str, status: Optional[BuyOrderStatus] = None
    ) -> List[BuyOrder]:
        query = "SELECT * FROM buy_orders WHERE guild_id = ? AND user_id = ?"
        params: list[object] = [guild_id, user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(BuyOrderStatus(status).value)
        query += " ORDER BY id"
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            return [BuyOrder.from_row(row) for row in await cursor.fetchall()]

    async def list_buy_orders(
        self, guild_id: str, page: int = 1, page_size: int = 10
    ) -> List[BuyOrder]:
        page = max(1, page)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM buy_orders WHERE guild_id = ?\n"
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (guild_id, page_size, (page - 1) * page_size),
            )
            return [BuyOrder.from_row(row) for row in await cursor.fetchall()]

    async def search_open_buy_orders(
        self, guild_id: str, user_id: str, term: str
    ) -> List[BuyOrder]:
        orders = await self.list_user_buy_orders(guild_id, user_id, BuyOrderStatus.OPEN)
        by_id = {order.id: order for order in orders}
        matches = self._fuzzy_filter(term, [(order.id, order.item) for order in orders])
        return [by_id[order_id] for order_id in matches]
