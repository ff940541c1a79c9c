"""
Role-aware change tracking for lists and list items.

Each edit is: coerce/validate -> compute the diff (pure) -> apply -> append a log
entry. Validation errors are raised before anything is applied or logged.
Staff entries are approved on creation; customer entries start pending.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from app.backoffice.constants import DELIVERY_DELIVERED, DELIVERY_STATUSES, INTERVALS, LIST_STATUSES
from app.backoffice.errors import ValidationError
from app.backoffice.modules.scheduled_lists.actors import Actor, actor_display_name, actor_role, initial_approval_state
from app.backoffice.modules.scheduled_lists.mis_source import json_number
from app.backoffice.modules.scheduled_lists.models import ListActivityLog, ListItem, OrderList
from app.backoffice.modules.scheduled_lists.periods import is_valid_period_key, normalize_shipment_id, parse_period_key, period_sort_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldChange:
    field: str
    old: Any
    new: Any


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float, Decimal)) and not isinstance(v, bool)


def values_equal(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if _is_number(a) and _is_number(b):
        return Decimal(str(a)) == Decimal(str(b))
    return a == b


def compute_field_change(field: str, old: Any, new: Any) -> FieldChange | None:
    if values_equal(old, new):
        return None
    return FieldChange(field=field, old=old, new=new)


def to_json_value(v: Any) -> Any:
    if isinstance(v, Decimal):
        return json_number(v)
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if isinstance(v, (set, frozenset)):
        return sorted(v)
    if isinstance(v, tuple):
        return list(v)
    return v


# ---- coercion ---------------------------------------------------------------

def _quantity(v: Any) -> Decimal | None:
    if v is None or v == "":
        return None
    if isinstance(v, bool):
        raise ValidationError("quantity must be a number")
    try:
        d = Decimal(str(v).strip())
    except InvalidOperation as e:
        raise ValidationError(f"quantity must be a number, got {v!r}") from e
    if not d.is_finite() or d < 0:
        raise ValidationError("quantity must be a non-negative number")
    return d


def _interval(v: Any) -> str:
    s = (str(v) if v is not None else "").strip().lower()
    if s not in INTERVALS:
        raise ValidationError(f"interval must be one of: {', '.join(sorted(INTERVALS))}")
    return s


def _bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, str) and v.strip().lower() in ("1", "true", "yes", "on", "0", "false", "no", "off"):
        return v.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(v, int) and v in (0, 1):
        return bool(v)
    raise ValidationError(f"expected a boolean, got {v!r}")


def _text(v: Any) -> str | None:
    if v is None:
        return None
    if not isinstance(v, (str, int, float, Decimal)) or isinstance(v, bool):
        raise ValidationError(f"expected text, got {v!r}")
    s = str(v).strip()
    return s or None


def _required_text(v: Any) -> str:
    s = _text(v)
    if not s:
        raise ValidationError("value is required")
    return s


def _list_status(v: Any) -> str:
    s = (str(v) if v is not None else "").strip().lower()
    if s not in LIST_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(sorted(LIST_STATUSES))}")
    return s


def _delivery_status(v: Any) -> str | None:
    if v is None or v == "":
        return None
    s = str(v).strip().lower()
    if s not in DELIVERY_STATUSES:
        raise ValidationError(f"delivery status must be one of: {', '.join(sorted(DELIVERY_STATUSES))}")
    return s


def _iso_date(v: Any) -> str | None:
    if v is None or v == "":
        return None
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if isinstance(v, str):
        s = v.strip()
        try:
            datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"expected an ISO date, got {v!r}") from e
        return s
    raise ValidationError(f"expected an ISO date, got {v!r}")


def _delivery_quantity(v: Any) -> int | float | None:
    return json_number(_quantity(v))


def _cargo_numbers(v: Any) -> list[str]:
    if v is None or v == "":
        return []
    parts = v.split(",") if isinstance(v, str) else v
    if not isinstance(parts, (list, tuple)):
        raise ValidationError(f"cargo_numbers must be a list, got {v!r}")
    out: list[str] = []
    for p in parts:
        sid = normalize_shipment_id(p)
        if sid is not None and sid not in out:
            out.append(sid)
    return out


# Declaration order == log order within one call.
ITEM_FIELDS: dict[str, Callable[[Any], Any]] = {
    "article_name": _text,
    "article_number": _text,
    "item_no_de": _text,
    "image_url": _text,
    "quantity": _quantity,
    "interval": _interval,
    "comment": _text,
    "marked": _bool,
}

LIST_FIELDS: dict[str, Callable[[Any], Any]] = {
    "name": _required_text,
    "description": _text,
    "status": _list_status,
}

DELIVERY_FIELDS: dict[str, Callable[[Any], Any]] = {
    "quantity": _delivery_quantity,
    "status": _delivery_status,
    "delivered_at": _iso_date,
    "cargo_numbers": _cargo_numbers,
    "remark": _text,
    "shipped_at": _iso_date,
    "eta": _iso_date,
    "cargo_type": _text,
    "cargo_status": _text,
}


def coerce_value(fields: Mapping[str, Callable[[Any], Any]], field: str, value: Any) -> Any:
    coerce = fields.get(field)
    if coerce is None:
        raise ValidationError(f"Unknown field: {field}")
    try:
        return coerce(value)
    except ValidationError as e:
        raise ValidationError(f"{field}: {e.message}") from e


# ---- log --------------------------------------------------------------------

def _format_value(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, list):
        return ", ".join(str(x) for x in v)
    return str(v)


def append_log(
    order_list: OrderList,
    *,
    actor: Actor,
    change: FieldChange,
    item_id: str | None = None,
    action: str | None = None,
    message: str | None = None,
) -> ListActivityLog:
    old, new = to_json_value(change.old), to_json_value(change.new)
    entry = ListActivityLog(
        seq=max((e.seq for e in order_list.activity_logs), default=0) + 1,
        item_id=item_id,
        field=change.field,
        old_value=old,
        new_value=new,
        action=action or f"{change.field} changed",
        message=message
        or f'{actor_display_name(actor)} changed {change.field} value from "{_format_value(old)}" to "{_format_value(new)}"',
        actor_role=actor_role(actor),
        actor_id=actor.id,
        created_at=datetime.utcnow(),
        approval_state=initial_approval_state(actor),
    )
    order_list.activity_logs.append(entry)
    return entry


def log_event(
    order_list: OrderList,
    *,
    actor: Actor,
    action: str,
    message: str,
    item_id: str | None = None,
    new_value: Any = None,
) -> ListActivityLog:
    """Non-field events (item added/removed, list duplicated)."""
    return append_log(
        order_list,
        actor=actor,
        change=FieldChange(field=action, old=None, new=new_value),
        item_id=item_id,
        action=action,
        message=message,
    )


# ---- entry points -----------------------------------------------------------

def _apply(target: Any, order_list: OrderList, change: FieldChange, actor: Actor, item_id: str | None) -> ListActivityLog:
    setattr(target, change.field, change.new)
    target.updated_at = datetime.utcnow()
    return append_log(order_list, actor=actor, change=change, item_id=item_id)


def update_field(item: ListItem, field: str, value: Any, actor: Actor) -> bool:
    new = coerce_value(ITEM_FIELDS, field, value)
    change = compute_field_change(field, getattr(item, field), new)
    if change is None:
        return False
    _apply(item, item.order_list, change, actor, item.id)
    return True


def update_fields(item: ListItem, values: Mapping[str, Any], actor: Actor) -> list[str]:
    """Validate all values, then apply in field-declaration order. Returns changed field names."""
    unknown = [k for k in values if k not in ITEM_FIELDS]
    if unknown:
        raise ValidationError(f"Unknown field: {', '.join(sorted(unknown))}")
    coerced = {f: coerce_value(ITEM_FIELDS, f, values[f]) for f in ITEM_FIELDS if f in values}

    changes = [c for c in (compute_field_change(f, getattr(item, f), v) for f, v in coerced.items()) if c]
    for change in changes:
        _apply(item, item.order_list, change, actor, item.id)
    return [c.field for c in changes]


def update_list_field(order_list: OrderList, field: str, value: Any, actor: Actor) -> bool:
    new = coerce_value(LIST_FIELDS, field, value)
    change = compute_field_change(field, getattr(order_list, field), new)
    if change is None:
        return False
    _apply(order_list, order_list, change, actor, None)
    return True


def update_list_fields(order_list: OrderList, values: Mapping[str, Any], actor: Actor) -> list[str]:
    unknown = [k for k in values if k not in LIST_FIELDS]
    if unknown:
        raise ValidationError(f"Unknown field: {', '.join(sorted(unknown))}")
    coerced = {f: coerce_value(LIST_FIELDS, f, values[f]) for f in LIST_FIELDS if f in values}
    changes = [c for c in (compute_field_change(f, getattr(order_list, f), v) for f, v in coerced.items()) if c]
    for change in changes:
        _apply(order_list, order_list, change, actor, None)
    return [c.field for c in changes]


def delivery_field_name(period: str, subfield: str) -> str:
    return f"delivery.{period}.{subfield}"


def compute_delivery_changes(current: Mapping[str, Any], patch: Mapping[str, Any]) -> list[FieldChange]:
    """Sub-field changes in declaration order; `field` holds the bare sub-field name."""
    changes: list[FieldChange] = []
    for sub in DELIVERY_FIELDS:
        if sub not in patch:
            continue
        change = compute_field_change(sub, current.get(sub), patch[sub])
        if change is not None:
            changes.append(change)
    return changes


def update_delivery(item: ListItem, period: Any, patch: Mapping[str, Any], actor: Actor) -> dict[str, Any]:
    """
    Patch one period's Delivery. One log entry per changed sub-field, named
    "delivery.<period>.<subfield>". Returns the resulting delivery dict.
    """
    if not is_valid_period_key(period):
        raise ValidationError(f"Invalid period key: {period!r} (expected YYYY-MM)")
    period = period.strip()
    if not isinstance(patch, Mapping) or not patch:
        raise ValidationError("delivery patch must be a non-empty object")
    unknown = [k for k in patch if k not in DELIVERY_FIELDS]
    if unknown:
        raise ValidationError(f"Unknown delivery field: {', '.join(sorted(unknown))}")
    coerced = {sub: coerce_value(DELIVERY_FIELDS, sub, patch[sub]) for sub in DELIVERY_FIELDS if sub in patch}

    current = dict((item.deliveries or {}).get(period) or {"period": period})
    if coerced.get("status") == DELIVERY_DELIVERED and "delivered_at" not in coerced and not current.get("delivered_at"):
        coerced["delivered_at"] = datetime.utcnow().replace(microsecond=0).isoformat()

    changes = compute_delivery_changes(current, coerced)
    if not changes:
        return current

    updated = dict(current)
    for change in changes:
        updated[change.field] = change.new
    deliveries = dict(item.deliveries or {})
    deliveries[period] = updated
    keys = sorted(deliveries, key=lambda k: period_sort_key(k) if parse_period_key(k) else (10**6, 0, k))
    item.deliveries = {k: deliveries[k] for k in keys}
    item.updated_at = datetime.utcnow()

    for change in changes:
        append_log(
            item.order_list,
            actor=actor,
            change=FieldChange(field=delivery_field_name(period, change.field), old=change.old, new=change.new),
            item_id=item.id,
        )
    logger.debug("TRACK: item=%s period=%s changed=%s", item.id, period, [c.field for c in changes])
    return updated
