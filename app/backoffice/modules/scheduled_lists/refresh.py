"""
Batch refresh of list items from MIS.

Items are processed one at a time (MIS connections are a shared, bounded pool).
A failing item is counted and left as it was; each list is committed once after
all of its items have been processed.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.orm import Session

from app.backoffice.constants import LIST_STATUS_ACTIVE
from app.backoffice.errors import NotFoundError
from app.backoffice.modules.scheduled_lists.mis_source import ItemSnapshot
from app.backoffice.modules.scheduled_lists.models import ListItem, OrderList
from app.backoffice.modules.scheduled_lists.reconcile import reconcile

logger = logging.getLogger(__name__)


class ItemSource(Protocol):
    def fetch(self, item_key: Any) -> ItemSnapshot: ...


@dataclass
class RefreshStats:
    total_lists: int = 0
    total_items: int = 0
    refreshed: int = 0
    failed: int = 0
    changed: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_lists": self.total_lists,
            "total_items": self.total_items,
            "refreshed": self.refreshed,
            "failed": self.failed,
            "changed": self.changed,
            "failures": list(self.failures),
        }


def apply_snapshot(item: ListItem, snapshot: ItemSnapshot) -> tuple[ListItem, bool]:
    item, changed = reconcile(item, snapshot)
    item.last_refreshed_at = datetime.utcnow()
    return item, changed


def refresh_item(source: ItemSource, item: ListItem) -> tuple[ListItem, bool]:
    """Fetch + reconcile one item. Errors propagate; the item is untouched on failure."""
    return apply_snapshot(item, source.fetch(item.item_key))


def _refresh_items(s: Session, source: ItemSource, order_list: OrderList, items: Iterable[ListItem], stats: RefreshStats) -> int:
    ok = 0
    for item in items:
        stats.total_items += 1
        try:
            snapshot = source.fetch(item.item_key)
            # Merge onto the committed row, not the copy loaded before the fetch.
            s.refresh(item)
            _, changed = apply_snapshot(item, snapshot)
        except Exception as e:
            stats.failed += 1
            stats.failures.append({"list_id": order_list.id, "item_id": item.id, "item_key": item.item_key, "error": str(e)})
            logger.warning("REFRESH: item=%s key=%s list=%s failed: %s", item.id, item.item_key, order_list.id, e)
            continue
        ok += 1
        stats.refreshed += 1
        if changed:
            stats.changed += 1
    return ok


def _save_list(s: Session, order_list: OrderList, ok: int, stats: RefreshStats, *, commit: bool) -> None:
    try:
        s.flush()
        if commit:
            s.commit()
    except Exception as e:
        s.rollback()
        # nothing from this list was persisted
        stats.refreshed -= ok
        stats.failed += ok
        stats.failures.append({"list_id": order_list.id, "item_id": None, "error": f"save failed: {e}"})
        logger.error("REFRESH: saving list=%s failed: %s", order_list.id, e)


def active_list_ids(s: Session) -> list[str]:
    rows = (
        s.query(OrderList.id)
        .filter(OrderList.status == LIST_STATUS_ACTIVE)
        .order_by(OrderList.created_at.asc(), OrderList.id.asc())
        .all()
    )
    return [row[0] for row in rows]


def load_list(s: Session, list_id: str) -> OrderList | None:
    """Current committed state of one list and its items, overwriting anything already in the session."""
    return s.get(OrderList, list_id, populate_existing=True)


def refresh_list(s: Session, source: ItemSource, order_list: OrderList, *, commit: bool = True, stats: RefreshStats | None = None) -> RefreshStats:
    stats = stats if stats is not None else RefreshStats()
    stats.total_lists += 1
    ok = _refresh_items(s, source, order_list, list(order_list.items), stats)
    _save_list(s, order_list, ok, stats, commit=commit)
    return stats


def refresh_all(s: Session, source: ItemSource, lists: Iterable[OrderList] | None = None, *, commit: bool = True) -> RefreshStats:
    """
    Refresh every item of every active list (or of `lists`).

    Only ids are collected up front; each list is reloaded right before it is
    processed so edits committed earlier in the sweep are merged, not overwritten.
    """
    stats = RefreshStats()
    list_ids = [l.id for l in lists] if lists is not None else active_list_ids(s)
    for list_id in list_ids:
        order_list = load_list(s, list_id)
        if order_list is None:
            continue
        refresh_list(s, source, order_list, commit=commit, stats=stats)
    logger.info(
        "REFRESH: lists=%s items=%s refreshed=%s failed=%s changed=%s",
        stats.total_lists,
        stats.total_items,
        stats.refreshed,
        stats.failed,
        stats.changed,
    )
    return stats


def refresh_many(s: Session, source: ItemSource, item_ids: Iterable[str], *, commit: bool = True) -> RefreshStats:
    """On-demand refresh of specific items; grouped per list, one save per list."""
    stats = RefreshStats()
    by_list: dict[str, list[ListItem]] = {}
    lists: dict[str, OrderList] = {}
    for item_id in dict.fromkeys(item_ids):
        item = s.get(ListItem, item_id)
        if item is None:
            stats.total_items += 1
            stats.failed += 1
            stats.failures.append({"list_id": None, "item_id": item_id, "error": str(NotFoundError("Item not found"))})
            continue
        lists[item.list_id] = item.order_list
        by_list.setdefault(item.list_id, []).append(item)

    for list_id, items in by_list.items():
        stats.total_lists += 1
        ok = _refresh_items(s, source, lists[list_id], items, stats)
        _save_list(s, lists[list_id], ok, stats, commit=commit)
    return stats


def refresh_one(s: Session, source: ItemSource, item_id: str, *, commit: bool = True) -> RefreshStats:
    return refresh_many(s, source, [item_id], commit=commit)
