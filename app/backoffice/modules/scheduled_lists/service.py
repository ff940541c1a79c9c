from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.backoffice.constants import APPROVAL_PENDING, DEFAULT_INTERVAL, LIST_STATUS_ACTIVE, LIST_STATUS_DRAFTED, ROLE_CUSTOMER
from app.backoffice.errors import NotFoundError, PermissionDenied, ValidationError
from app.backoffice.models import User
from app.backoffice.modules.customers.models import Customer
from app.backoffice.modules.customers.service import get_customer
from app.backoffice.modules.scheduled_lists import acknowledgments, tracking
from app.backoffice.modules.scheduled_lists.actors import Actor, CustomerActor, StaffActor
from app.backoffice.modules.scheduled_lists.models import ListActivityLog, ListItem, OrderList
from app.backoffice.modules.scheduled_lists.periods import parse_period_key, period_sort_key
from app.backoffice.modules.scheduled_lists.reconcile import merge_deliveries
from app.backoffice.modules.scheduled_lists.refresh import ItemSource, refresh_item

logger = logging.getLogger(__name__)


def actor_for_user(user: User) -> StaffActor:
    return StaffActor(id=user.id, name=user.name or user.email)


def actor_for_customer(customer: Customer) -> CustomerActor:
    return CustomerActor(id=customer.id, name=customer.company_name)


def _check_owner(order_list: OrderList, actor: Actor | None) -> None:
    if isinstance(actor, CustomerActor) and order_list.customer_id != actor.id:
        raise PermissionDenied("You can only access your own lists")


def get_list(s: Session, list_id: str, actor: Actor | None = None) -> OrderList:
    order_list = s.get(OrderList, list_id)
    if not order_list:
        raise NotFoundError("List not found")
    _check_owner(order_list, actor)
    return order_list


def get_item(s: Session, item_id: str, actor: Actor | None = None) -> ListItem:
    item = s.get(ListItem, item_id)
    if not item:
        raise NotFoundError("List item not found")
    _check_owner(item.order_list, actor)
    return item


def list_lists(s: Session, *, actor: Actor | None = None, customer_id: int | None = None, status: str | None = None) -> list[OrderList]:
    q = s.query(OrderList)
    if isinstance(actor, CustomerActor):
        q = q.filter(OrderList.customer_id == actor.id)
    elif customer_id is not None:
        q = q.filter(OrderList.customer_id == int(customer_id))
    if status:
        q = q.filter(OrderList.status == status)
    return q.order_by(OrderList.created_at.desc()).all()


def next_list_number(s: Session, customer: Customer) -> str:
    prefix = customer.list_number_prefix
    existing = (
        s.query(func.count(OrderList.id))
        .filter(OrderList.customer_id == customer.id, OrderList.list_number.like(f"{prefix}-%"))
        .scalar()
        or 0
    )
    n = existing + 1
    # another customer may share the prefix
    while s.query(OrderList.id).filter(OrderList.list_number == f"{prefix}-{n}").first():
        n += 1
    return f"{prefix}-{n}"


def create_list(
    s: Session,
    *,
    actor: Actor,
    name: str,
    customer_id: int | None = None,
    description: str | None = None,
    status: str | None = None,
) -> OrderList:
    if isinstance(actor, CustomerActor):
        customer_id = actor.id
    if customer_id is None:
        raise ValidationError("customer_id is required")
    customer = get_customer(s, customer_id)

    values = {"name": name, "description": description, "status": status or LIST_STATUS_ACTIVE}
    coerced = {f: tracking.coerce_value(tracking.LIST_FIELDS, f, v) for f, v in values.items()}
    now = datetime.utcnow()
    order_list = OrderList(
        list_number=next_list_number(s, customer),
        customer_id=customer.id,
        created_at=now,
        updated_at=now,
        **coerced,
    )
    order_list.creator = actor
    s.add(order_list)
    s.flush()
    return order_list


def add_item(
    s: Session,
    source: ItemSource,
    order_list: OrderList,
    *,
    item_key: Any,
    actor: Actor,
    quantity: Any = None,
    interval: Any = None,
    comment: Any = None,
) -> ListItem:
    """Create a list item from a fresh MIS snapshot. MIS errors propagate."""
    _check_owner(order_list, actor)
    qty = tracking.coerce_value(tracking.ITEM_FIELDS, "quantity", quantity)
    iv = tracking.coerce_value(tracking.ITEM_FIELDS, "interval", interval or DEFAULT_INTERVAL)
    note = tracking.coerce_value(tracking.ITEM_FIELDS, "comment", comment)

    snapshot = source.fetch(item_key)
    now = datetime.utcnow()
    item = ListItem(
        item_key=snapshot.item_key,
        position=max((i.position for i in order_list.items), default=-1) + 1,
        article_name=snapshot.article_name,
        article_number=snapshot.article_number,
        item_no_de=snapshot.item_no_de,
        image_url=snapshot.image_url,
        quantity=qty if qty is not None else snapshot.default_quantity,
        interval=iv,
        comment=note,
        marked=False,
        deliveries=merge_deliveries({}, snapshot),
        last_refreshed_at=now,
        created_at=now,
        updated_at=now,
    )
    item.creator = actor
    order_list.items.append(item)
    s.flush()
    tracking.log_event(
        order_list,
        actor=actor,
        action="ITEM_ADDED",
        item_id=item.id,
        new_value=item.article_name or item.item_key,
        message=f"Added item {item.article_name or item.item_key} to list",
    )
    return item


def reconcile_item(s: Session, source: ItemSource, item_id: str, actor: Actor | None = None) -> ListItem:
    """User-triggered refresh of one item; failures propagate to the caller."""
    item = get_item(s, item_id, actor)
    item, _ = refresh_item(source, item)
    s.flush()
    return item


def update_list_item_fields(s: Session, item_id: str, values: Mapping[str, Any], actor: Actor) -> dict[str, Any]:
    item = get_item(s, item_id, actor)
    changed = tracking.update_fields(item, values, actor)
    s.flush()
    return {"item": item, "changed_fields": changed}


def update_delivery(s: Session, item_id: str, period: Any, patch: Mapping[str, Any], actor: Actor) -> dict[str, Any]:
    item = get_item(s, item_id, actor)
    delivery = tracking.update_delivery(item, period, patch, actor)
    s.flush()
    return delivery


def update_list(s: Session, list_id: str, values: Mapping[str, Any], actor: Actor) -> dict[str, Any]:
    order_list = get_list(s, list_id, actor)
    changed = tracking.update_list_fields(order_list, values, actor)
    s.flush()
    return {"list": order_list, "changed_fields": changed}


def duplicate_list(s: Session, list_id: str, actor: Actor) -> OrderList:
    source_list = get_list(s, list_id, actor)
    copy = create_list(
        s,
        actor=actor,
        name=f"{source_list.name} (Copy)",
        customer_id=source_list.customer_id,
        description=source_list.description,
        status=LIST_STATUS_DRAFTED,
    )
    now = datetime.utcnow()
    for pos, item in enumerate(source_list.items):
        clone = ListItem(
            item_key=item.item_key,
            position=pos,
            article_name=item.article_name,
            article_number=item.article_number,
            item_no_de=item.item_no_de,
            image_url=item.image_url,
            quantity=item.quantity,
            interval=item.interval,
            comment=item.comment,
            marked=item.marked,
            deliveries={k: dict(v) for k, v in (item.deliveries or {}).items()},
            last_refreshed_at=item.last_refreshed_at,
            created_at=now,
            updated_at=now,
        )
        clone.creator = actor
        copy.items.append(clone)
    tracking.log_event(
        copy,
        actor=actor,
        action="LIST_DUPLICATED",
        new_value=source_list.id,
        message=f"List duplicated from {source_list.list_number or source_list.id}",
    )
    s.flush()
    return copy


def delete_item(s: Session, item_id: str, actor: Actor) -> OrderList:
    item = get_item(s, item_id, actor)
    order_list = item.order_list
    tracking.log_event(
        order_list,
        actor=actor,
        action="ITEM_DELETED",
        item_id=item.id,
        new_value=item.article_name or item.item_key,
        message=f"Removed item {item.article_name or item.item_key} from list",
    )
    order_list.items.remove(item)
    s.flush()
    return order_list


def delete_list(s: Session, list_id: str, actor: Actor) -> None:
    order_list = get_list(s, list_id, actor)
    s.delete(order_list)
    s.flush()


# ---- acknowledgment -----------------------------------------------------------

def list_unacknowledged(s: Session, list_id: str) -> list[ListActivityLog]:
    return acknowledgments.unacknowledged_customer_changes(get_list(s, list_id))


def acknowledge(s: Session, list_id: str, actor: Actor, log_ids: Iterable[str] | None = None) -> dict[str, int]:
    count = acknowledgments.acknowledge(get_list(s, list_id), actor, log_ids)
    s.flush()
    return {"acknowledged_count": count}


def bulk_acknowledge(s: Session, list_ids: Iterable[str], actor: Actor, log_ids: Iterable[str] | None = None) -> list[dict[str, Any]]:
    return acknowledgments.bulk_acknowledge(s, list_ids, actor, log_ids)


def reject_change(s: Session, list_id: str, log_id: str, actor: Actor, reason: str) -> ListActivityLog:
    entry = acknowledgments.reject(get_list(s, list_id), actor, log_id, reason)
    s.flush()
    return entry


# ---- read models --------------------------------------------------------------

def highlighted_fields(order_list: OrderList) -> dict[str, list[str]]:
    """item_id -> fields with pending customer changes (delivery cells at sub-field level)."""
    out: dict[str, set[str]] = {}
    for entry in acknowledgments.unacknowledged_customer_changes(order_list):
        key = entry.item_id or ""
        out.setdefault(key, set()).add(entry.field)
    return {k: sorted(v) for k, v in out.items()}


def list_detail(order_list: OrderList) -> dict[str, Any]:
    d = order_list.to_dict(include_items=True, include_logs=True)
    highlights = highlighted_fields(order_list)
    for item in d["items"]:
        item["highlighted_fields"] = highlights.get(item["id"], [])
        item["has_pending_changes"] = bool(item["highlighted_fields"])
    d["list_highlighted_fields"] = highlights.get("", [])
    d["pending_changes_count"] = len(acknowledgments.unacknowledged_customer_changes(order_list))
    return d


def pending_changes_summary(s: Session) -> list[dict[str, Any]]:
    pending_list_ids = [
        row[0]
        for row in s.query(ListActivityLog.list_id)
        .filter(ListActivityLog.actor_role == ROLE_CUSTOMER, ListActivityLog.approval_state == APPROVAL_PENDING)
        .distinct()
        .all()
    ]
    out: list[dict[str, Any]] = []
    for list_id in pending_list_ids:
        order_list = s.get(OrderList, list_id)
        if order_list is None:
            continue
        entries = acknowledgments.unacknowledged_customer_changes(order_list)
        by_field = Counter(e.field for e in entries)
        out.append(
            {
                "list_id": order_list.id,
                "list_number": order_list.list_number,
                "name": order_list.name,
                "customer_id": order_list.customer_id,
                "pending_count": len(entries),
                "changes_by_field": dict(sorted(by_field.items())),
                "items_needing_attention": sorted({e.item_id for e in entries if e.item_id}),
            }
        )
    out.sort(key=lambda r: (-r["pending_count"], r["list_number"] or ""))
    return out


def customer_deliveries(s: Session, customer_id: int) -> list[dict[str, Any]]:
    """All deliveries across a customer's lists, chronological."""
    get_customer(s, customer_id)
    rows: list[dict[str, Any]] = []
    for order_list in list_lists(s, customer_id=customer_id):
        for item in order_list.items:
            for period, delivery in (item.deliveries or {}).items():
                if parse_period_key(period) is None:
                    continue
                rows.append(
                    {
                        **delivery,
                        "period": period,
                        "list_id": order_list.id,
                        "list_name": order_list.name,
                        "item_id": item.id,
                        "article_name": item.article_name,
                        "article_number": item.article_number,
                    }
                )
    rows.sort(key=lambda r: (period_sort_key(r["period"]), r["list_name"] or "", r["article_name"] or ""))
    return rows
