from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, g, jsonify, request

from app.backoffice.audit import record_event
from app.backoffice.db import db_session
from app.backoffice.errors import PermissionDenied, TransientFetchError, ValidationError
from app.backoffice.rbac import require_actor, require_permission
from app.backoffice.modules.scheduled_lists import service
from app.backoffice.modules.scheduled_lists.actors import Actor, CustomerActor
from app.backoffice.modules.scheduled_lists.models import ListRefreshRun
from app.backoffice.modules.scheduled_lists.refresh import refresh_many

bp = Blueprint("scheduled_lists", __name__)


def _current_actor() -> Actor:
    user = getattr(g, "current_user", None)
    if user is not None:
        return service.actor_for_user(user)
    customer = getattr(g, "current_customer", None)
    if customer is not None:
        return service.actor_for_customer(customer)
    raise PermissionDenied("Login required")


def _audit_actor():
    return getattr(g, "current_user", None) or getattr(g, "current_customer", None)


def _payload() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    payload.pop("csrf_token", None)
    return payload


def _id_list(payload: dict[str, Any], key: str, *, required: bool = False) -> list[str] | None:
    value = payload.get(key)
    if value is None:
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if not isinstance(value, list) or not all(isinstance(v, (str, int)) for v in value):
        raise ValidationError(f"{key} must be a list of ids")
    return [str(v) for v in value]


def _mis_source():
    source = current_app.extensions.get("mis_source")
    if source is None:
        raise TransientFetchError("MIS database is not configured")
    return source


def _scheduler():
    scheduler = current_app.extensions.get("list_refresh_scheduler")
    if scheduler is None:
        raise TransientFetchError("List refresh scheduler is not configured (MIS_DATABASE_URL unset)")
    return scheduler


# ---- lists --------------------------------------------------------------------

@bp.get("/lists")
@require_actor("lists.view")
def lists_index():
    s = db_session()
    lists = service.list_lists(
        s,
        actor=_current_actor(),
        customer_id=request.args.get("customer_id", type=int),
        status=(request.args.get("status") or "").strip() or None,
    )
    return jsonify({"lists": [l.to_dict(include_items=False) for l in lists]})


@bp.post("/lists")
@require_actor("lists.edit")
def lists_create():
    s = db_session()
    payload = _payload()
    order_list = service.create_list(
        s,
        actor=_current_actor(),
        name=payload.get("name"),
        customer_id=payload.get("customer_id"),
        description=payload.get("description"),
        status=payload.get("status"),
    )
    record_event(s, actor=_audit_actor(), action="lists.create", entity_type="OrderList", entity_id=order_list.id,
                 metadata={"list_number": order_list.list_number})
    s.commit()
    return jsonify(service.list_detail(order_list)), 201


@bp.get("/lists/pending-changes")
@require_permission("lists.acknowledge")
def lists_pending_changes():
    s = db_session()
    return jsonify({"lists": service.pending_changes_summary(s)})


@bp.get("/lists/<list_id>")
@require_actor("lists.view")
def lists_detail(list_id: str):
    s = db_session()
    return jsonify(service.list_detail(service.get_list(s, list_id, _current_actor())))


@bp.put("/lists/<list_id>")
@require_actor("lists.edit")
def lists_update(list_id: str):
    s = db_session()
    result = service.update_list(s, list_id, _payload(), _current_actor())
    s.commit()
    return jsonify({"list": service.list_detail(result["list"]), "changed_fields": result["changed_fields"]})


@bp.delete("/lists/<list_id>")
@require_actor("lists.edit")
def lists_delete(list_id: str):
    s = db_session()
    service.delete_list(s, list_id, _current_actor())
    record_event(s, actor=_audit_actor(), action="lists.delete", entity_type="OrderList", entity_id=list_id)
    s.commit()
    return jsonify({"ok": True})


@bp.post("/lists/<list_id>/duplicate")
@require_actor("lists.edit")
def lists_duplicate(list_id: str):
    s = db_session()
    copy = service.duplicate_list(s, list_id, _current_actor())
    record_event(s, actor=_audit_actor(), action="lists.duplicate", entity_type="OrderList", entity_id=copy.id,
                 metadata={"source_list_id": list_id})
    s.commit()
    return jsonify(service.list_detail(copy)), 201


# ---- items --------------------------------------------------------------------

@bp.post("/lists/<list_id>/items")
@require_actor("lists.edit")
def items_create(list_id: str):
    s = db_session()
    actor = _current_actor()
    payload = _payload()
    if not payload.get("item_key"):
        raise ValidationError("item_key is required")
    order_list = service.get_list(s, list_id, actor)
    item = service.add_item(
        s,
        _mis_source(),
        order_list,
        item_key=payload.get("item_key"),
        actor=actor,
        quantity=payload.get("quantity"),
        interval=payload.get("interval"),
        comment=payload.get("comment"),
    )
    s.commit()
    return jsonify({"item": item.to_dict()}), 201


@bp.get("/lists/items/search")
@require_actor("lists.view")
def items_search():
    q = (request.args.get("q") or "").strip()
    if len(q) < 2:
        raise ValidationError("Search query must be at least 2 characters")
    return jsonify({"items": _mis_source().search_items(q)})


@bp.post("/lists/items/refresh")
@require_permission("lists.refresh")
def items_refresh_many():
    s = db_session()
    item_ids = _id_list(_payload(), "item_ids", required=True)
    stats = refresh_many(s, _mis_source(), item_ids)
    return jsonify(stats.to_dict())


@bp.put("/lists/items/<item_id>")
@require_actor("lists.edit")
def items_update(item_id: str):
    s = db_session()
    result = service.update_list_item_fields(s, item_id, _payload(), _current_actor())
    s.commit()
    return jsonify({"item": result["item"].to_dict(), "changed_fields": result["changed_fields"]})


@bp.delete("/lists/items/<item_id>")
@require_actor("lists.edit")
def items_delete(item_id: str):
    s = db_session()
    order_list = service.delete_item(s, item_id, _current_actor())
    s.commit()
    return jsonify({"ok": True, "list_id": order_list.id})


@bp.put("/lists/items/<item_id>/deliveries/<period>")
@require_actor("lists.edit")
def items_update_delivery(item_id: str, period: str):
    s = db_session()
    delivery = service.update_delivery(s, item_id, period, _payload(), _current_actor())
    s.commit()
    return jsonify({"period": period, "delivery": delivery})


@bp.post("/lists/items/<item_id>/refresh")
@require_permission("lists.refresh")
def items_refresh(item_id: str):
    s = db_session()
    item = service.reconcile_item(s, _mis_source(), item_id)
    s.commit()
    return jsonify({"item": item.to_dict()})


# ---- acknowledgment -----------------------------------------------------------

@bp.get("/lists/<list_id>/unacknowledged")
@require_actor("lists.view")
def lists_unacknowledged(list_id: str):
    s = db_session()
    service.get_list(s, list_id, _current_actor())
    entries = service.list_unacknowledged(s, list_id)
    return jsonify({"entries": [e.to_dict() for e in entries], "count": len(entries)})


@bp.put("/lists/<list_id>/acknowledge")
@require_actor("lists.acknowledge")
def lists_acknowledge(list_id: str):
    s = db_session()
    actor = _current_actor()
    service.get_list(s, list_id, actor)
    log_ids = _id_list(_payload(), "log_ids")
    result = service.acknowledge(s, list_id, actor, log_ids)
    if result["acknowledged_count"]:
        record_event(s, actor=_audit_actor(), action="lists.acknowledge", entity_type="OrderList", entity_id=list_id,
                     metadata=result)
    s.commit()
    return jsonify(result)


@bp.put("/lists/bulk-acknowledge")
@require_actor("lists.acknowledge")
def lists_bulk_acknowledge():
    s = db_session()
    actor = _current_actor()
    payload = _payload()
    list_ids = _id_list(payload, "list_ids", required=True)
    results = service.bulk_acknowledge(s, list_ids, actor, _id_list(payload, "log_ids"))
    record_event(s, actor=_audit_actor(), action="lists.bulk_acknowledge", entity_type="OrderList",
                 metadata={"list_ids": list_ids, "total": sum(r["acknowledged_count"] for r in results)})
    s.commit()
    return jsonify({"results": results})


@bp.put("/lists/<list_id>/logs/<log_id>/reject")
@require_actor("lists.acknowledge")
def lists_reject_change(list_id: str, log_id: str):
    s = db_session()
    payload = _payload()
    entry = service.reject_change(s, list_id, log_id, _current_actor(), payload.get("reason") or "")
    record_event(s, actor=_audit_actor(), action="lists.reject_change", entity_type="ListActivityLog",
                 entity_id=log_id, reason=entry.rejection_reason)
    s.commit()
    return jsonify({"entry": entry.to_dict()})


# ---- read models --------------------------------------------------------------

@bp.get("/customers/<int:customer_id>/deliveries")
@require_actor("lists.view")
def customer_deliveries(customer_id: int):
    actor = _current_actor()
    if isinstance(actor, CustomerActor) and actor.id != customer_id:
        raise PermissionDenied("You can only view your own deliveries")
    s = db_session()
    return jsonify({"deliveries": service.customer_deliveries(s, customer_id)})


# ---- scheduled refresh --------------------------------------------------------

@bp.get("/lists/refresh/status")
@require_permission("lists.refresh")
def refresh_status():
    s = db_session()
    recent = s.query(ListRefreshRun).order_by(ListRefreshRun.ran_at.desc()).limit(10).all()
    scheduler = current_app.extensions.get("list_refresh_scheduler")
    return jsonify(
        {
            "scheduler": scheduler.status() if scheduler else None,
            "recent_runs": [
                {
                    "id": r.id,
                    "ran_at": r.ran_at.isoformat(),
                    "trigger": r.trigger,
                    "total_lists": r.total_lists,
                    "total_items": r.total_items,
                    "refreshed": r.refreshed_count,
                    "failed": r.failed_count,
                    "duration_seconds": r.duration_seconds,
                }
                for r in recent
            ],
        }
    )


@bp.post("/lists/refresh/run")
@require_permission("lists.refresh")
def refresh_run():
    result = _scheduler().run_once(trigger="manual")
    if result is None:
        return jsonify({"error": "A refresh is already in progress."}), 409
    return jsonify(result)


@bp.post("/lists/refresh/start")
@require_permission("lists.refresh")
def refresh_start():
    started = _scheduler().start()
    return jsonify({"started": started, **_scheduler().status()})


@bp.post("/lists/refresh/stop")
@require_permission("lists.refresh")
def refresh_stop():
    scheduler = _scheduler()
    scheduler.stop()
    return jsonify(scheduler.status())


@bp.post("/lists/<list_id>/refresh")
@require_permission("lists.refresh")
def refresh_list_now(list_id: str):
    s = db_session()
    service.get_list(s, list_id)
    result = _scheduler().run_once(trigger="manual-list", list_id=list_id)
    if result is None:
        return jsonify({"error": "A refresh is already in progress."}), 409
    return jsonify(result)
