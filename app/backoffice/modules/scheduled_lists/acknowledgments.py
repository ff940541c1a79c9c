from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.backoffice.constants import APPROVAL_APPROVED, APPROVAL_PENDING, APPROVAL_REJECTED, ROLE_CUSTOMER
from app.backoffice.errors import NotFoundError, PermissionDenied, ValidationError
from app.backoffice.modules.scheduled_lists.actors import Actor, StaffActor
from app.backoffice.modules.scheduled_lists.models import ListActivityLog, OrderList

logger = logging.getLogger(__name__)


def _require_staff(actor: Actor) -> StaffActor:
    if not isinstance(actor, StaffActor):
        raise PermissionDenied("Only staff can acknowledge changes")
    return actor


def is_unacknowledged(entry: ListActivityLog) -> bool:
    return entry.actor_role == ROLE_CUSTOMER and entry.approval_state == APPROVAL_PENDING


def unacknowledged_customer_changes(order_list: OrderList) -> list[ListActivityLog]:
    return [e for e in order_list.activity_logs if is_unacknowledged(e)]


def acknowledge(order_list: OrderList, actor: Actor, log_ids: Iterable[str] | None = None) -> int:
    """
    Approve pending customer entries (all, or only `log_ids`). Returns how many
    moved; already-approved or unknown ids are ignored.
    """
    staff = _require_staff(actor)
    wanted = set(log_ids) if log_ids is not None else None
    now = datetime.utcnow()
    count = 0
    for entry in unacknowledged_customer_changes(order_list):
        if wanted is not None and entry.id not in wanted:
            continue
        entry.approval_state = APPROVAL_APPROVED
        entry.acknowledged_by_id = staff.id
        entry.acknowledged_at = now
        count += 1
    if count:
        logger.info("ACK: list=%s acknowledged=%s by staff=%s", order_list.id, count, staff.id)
    return count


def reject(order_list: OrderList, actor: Actor, log_id: str, reason: str) -> ListActivityLog:
    """
    pending -> rejected. Item values are not reverted; the rejected entry marks
    the cell for staff follow-up.
    """
    staff = _require_staff(actor)
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required")
    entry = next((e for e in order_list.activity_logs if e.id == log_id), None)
    if entry is None:
        raise NotFoundError("Log entry not found")
    if not is_unacknowledged(entry):
        raise ValidationError(f"Only pending customer changes can be rejected (state={entry.approval_state})")
    entry.approval_state = APPROVAL_REJECTED
    entry.rejection_reason = reason
    entry.acknowledged_by_id = staff.id
    entry.acknowledged_at = datetime.utcnow()
    logger.info("ACK: list=%s log=%s rejected by staff=%s", order_list.id, entry.id, staff.id)
    return entry


def bulk_acknowledge(
    s: Session,
    list_ids: Iterable[str],
    actor: Actor,
    log_ids: Iterable[str] | None = None,
) -> list[dict[str, Any]]:
    """
    Acknowledge across many lists. Each list is isolated in a savepoint; a list
    that fails is reported with its error and the rest still run.
    """
    _require_staff(actor)
    wanted = list(log_ids) if log_ids is not None else None
    results: list[dict[str, Any]] = []
    for list_id in list_ids:
        try:
            with s.begin_nested():
                order_list = s.get(OrderList, list_id)
                if order_list is None:
                    raise NotFoundError("List not found")
                count = acknowledge(order_list, actor, wanted)
                s.flush()
            results.append(
                {
                    "list_id": list_id,
                    "acknowledged_count": count,
                    "remaining_pending": len(unacknowledged_customer_changes(order_list)),
                    "ok": True,
                }
            )
        except Exception as e:
            logger.warning("ACK: bulk acknowledge failed for list=%s: %s", list_id, e)
            results.append({"list_id": list_id, "acknowledged_count": 0, "ok": False, "error": str(e)})
    return results
