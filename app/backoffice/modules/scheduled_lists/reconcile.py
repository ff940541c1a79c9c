"""
Merge an MIS ItemSnapshot into a local ListItem.

MIS owns the descriptive fields and the delivery quantities/cargo facts.
The local record owns quantity, delivery status and delivery remark.
"""
from __future__ import annotations

import logging
from typing import Any

from app.backoffice.modules.scheduled_lists.mis_source import ItemSnapshot
from app.backoffice.modules.scheduled_lists.models import ListItem
from app.backoffice.modules.scheduled_lists.periods import parse_period_key, period_sort_key

logger = logging.getLogger(__name__)

MIRRORED_FIELDS = ("article_name", "article_number", "item_no_de", "image_url")

# Delivery sub-fields the local record keeps across refreshes
LOCAL_DELIVERY_FIELDS = ("status", "remark", "delivered_at")


def _ordered(deliveries: dict[str, Any]) -> dict[str, Any]:
    valid = [k for k in deliveries if parse_period_key(k) is not None]
    odd = [k for k in deliveries if parse_period_key(k) is None]
    keys = sorted(valid, key=period_sort_key) + odd
    return {k: deliveries[k] for k in keys}


def merge_deliveries(local: dict[str, Any] | None, snapshot: ItemSnapshot) -> dict[str, Any]:
    """New deliveries mapping; neither input is mutated."""
    merged: dict[str, Any] = {k: dict(v) for k, v in (local or {}).items()}
    for period, delivery in snapshot.deliveries.items():
        incoming = delivery.to_dict()
        current = merged.get(period) or {}
        for key in LOCAL_DELIVERY_FIELDS:
            if current.get(key):
                incoming[key] = current[key]
        merged[period] = incoming
    return _ordered(merged)


def reconcile(local: ListItem, snapshot: ItemSnapshot) -> tuple[ListItem, bool]:
    """
    Apply `snapshot` to `local`. Returns (local, changed).

    Every new value is computed before anything is assigned, so a failure
    part-way leaves `local` untouched.
    """
    updates: dict[str, Any] = {}
    for name in MIRRORED_FIELDS:
        incoming = getattr(snapshot, name)
        # empty MIS value never blanks a known local value
        new = incoming if incoming is not None else getattr(local, name)
        if new != getattr(local, name):
            updates[name] = new

    if local.quantity is None and snapshot.default_quantity is not None:
        updates["quantity"] = snapshot.default_quantity

    new_deliveries = merge_deliveries(local.deliveries, snapshot)
    if new_deliveries != (local.deliveries or {}):
        updates["deliveries"] = new_deliveries

    for name, value in updates.items():
        setattr(local, name, value)

    if updates:
        logger.debug("REFRESH: item=%s key=%s changed=%s", local.id, local.item_key, sorted(updates))
    return local, bool(updates)
