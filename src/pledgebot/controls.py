"""Encoding and parsing of the button custom ids attached to announcements.

Grammar::

    <kind>:<record_id>:<action>[:<scope>]

``kind`` is ``trade`` or ``buy``, ``record_id`` a positive decimal integer and
``action`` either ``done`` or ``cancel``. ``scope`` (``one`` or ``all``) is only
present on ``trade:<id>:done`` ids.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RecordKind(str, Enum):
    TRADE = "trade"
    BUY = "buy"


class ControlAction(str, Enum):
    DONE_ONE = "done_one"
    DONE_ALL = "done_all"
    DONE = "done"
    CANCEL = "cancel"


CUSTOM_ID_PATTERN = r"(?P<kind>trade|buy):(?P<record_id>[0-9]+):(?P<rest>[a-z:]+)"


@dataclass(frozen=True)
class ControlId:
    kind: RecordKind
    record_id: int
    action: ControlAction

    def encode(self) -> str:
        if self.action is ControlAction.DONE_ONE:
            suffix = "done:one"
        elif self.action is ControlAction.DONE_ALL:
            suffix = "done:all"
        else:
            suffix = self.action.value
        return f"{self.kind.value}:{self.record_id}:{suffix}"


def trade_control(trade_id: int, action: ControlAction) -> ControlId:
    if action is ControlAction.DONE:
        raise ValueError("Trades use done_one or done_all controls")
    return ControlId(RecordKind.TRADE, trade_id, action)


def buy_order_control(order_id: int, action: ControlAction) -> ControlId:
    if action not in (ControlAction.DONE, ControlAction.CANCEL):
        raise ValueError("Buy orders only support done and cancel controls")
    return ControlId(RecordKind.BUY, order_id, action)


def _parse_record_id(raw: str) -> Optional[int]:
    if not raw.isdigit():
        return None
    value = int(raw)
    return value if value > 0 else None


def parse_control_id(raw: Optional[str]) -> Optional[ControlId]:
    """Return the decoded control or ``None`` when ``raw`` is malformed."""

    if not raw:
        return None
    parts = raw.split(":")
    if len(parts) not in (3, 4):
        return None

    try:
        kind = RecordKind(parts[0])
    except ValueError:
        return None

    record_id = _parse_record_id(parts[1])
    if record_id is None:
        return None

    action, scope = parts[2], parts[3] if len(parts) == 4 else None
    if kind is RecordKind.TRADE:
        if action == "done" and scope == "one":
            return ControlId(kind, record_id, ControlAction.DONE_ONE)
        if action == "done" and scope == "all":
            return ControlId(kind, record_id, ControlAction.DONE_ALL)
        if action == "cancel" and scope is None:
            return ControlId(kind, record_id, ControlAction.CANCEL)
        return None

    if scope is not None:
        return None
    if action == "done":
        return ControlId(kind, record_id, ControlAction.DONE)
    if action == "cancel":
        return ControlId(kind, record_id, ControlAction.CANCEL)
    return None


def invalid_identifier_message(raw: Optional[str]) -> str:
    """User facing rejection for an id that :func:`parse_control_id` refused."""

    prefix = (raw or "").split(":", 1)[0]
    if prefix == RecordKind.TRADE.value:
        return "Invalid trade identifier."
    if prefix == RecordKind.BUY.value:
        return "Invalid buy order identifier."
    return "Unsupported component."
