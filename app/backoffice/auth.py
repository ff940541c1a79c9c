from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash

from app.backoffice.audit import record_event
from app.backoffice.db import db_session
from app.backoffice.models import User
from app.backoffice.modules.customers.models import Customer
from app.backoffice.modules.customers.service import find_customer_by_email

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def _credentials() -> tuple[str, str]:
    payload = request.get_json(silent=True) or {}
    email = (payload.get("email") or request.form.get("email") or "").strip().lower()
    password = payload.get("password") or request.form.get("password") or ""
    return email, password


def load_current_actor() -> None:
    """
    Loads g.current_user (staff) or g.current_customer from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    g.current_customer = None
    if request.path.startswith(("/static/", "/health", "/healthz")):
        return

    user_id = session.get("user_id")
    customer_id = session.get("customer_id")
    if not user_id and not customer_id:
        return

    try:
        s = db_session()
        if user_id:
            user = s.get(User, int(user_id))
            if not user or not user.is_active:
                session.pop("user_id", None)
                return
            g.current_user = user
        elif customer_id:
            customer = s.get(Customer, int(customer_id))
            if not customer or not customer.is_active:
                session.pop("customer_id", None)
                return
            g.current_customer = customer
    except Exception as e:
        current_app.logger.error("load_current_actor DB error (clearing session): %s", e)
        session.pop("user_id", None)
        session.pop("customer_id", None)


@bp.post("/login")
def login_post():
    email, password = _credentials()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"error": "Too many login attempts. Please wait 5 minutes."}), 429

    _record_attempt(ip)

    try:
        s = db_session()
        user = s.query(User).filter(User.email == email).one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=email,
                reason="Invalid credentials",
                metadata={"email": email},
            )
            s.commit()
            return jsonify({"error": "Invalid credentials."}), 401

        session.pop("customer_id", None)
        session["user_id"] = user.id
        _login_attempts[ip].clear()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        return jsonify({"ok": True, "role": "staff", "id": user.id})
    except Exception:
        current_app.logger.exception("Login POST crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.post("/customer/login")
def customer_login_post():
    email, password = _credentials()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"error": "Too many login attempts. Please wait 5 minutes."}), 429

    _record_attempt(ip)

    s = db_session()
    customer = find_customer_by_email(s, email)
    if not customer or not customer.is_active or not check_password_hash(customer.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.customer_login_failed",
            entity_type="Customer",
            entity_id=email,
            reason="Invalid credentials",
        )
        s.commit()
        return jsonify({"error": "Invalid credentials."}), 401

    session.pop("user_id", None)
    session["customer_id"] = customer.id
    _login_attempts[ip].clear()
    record_event(s, actor=customer, action="auth.customer_login", entity_type="Customer", entity_id=str(customer.id))
    s.commit()
    return jsonify({"ok": True, "role": "customer", "id": customer.id})


@bp.post("/logout")
def logout():
    s = db_session()
    actor = getattr(g, "current_user", None) or getattr(g, "current_customer", None)
    if actor:
        record_event(s, actor=actor, action="auth.logout", entity_type=type(actor).__name__, entity_id=str(actor.id))
        s.commit()
    session.pop("user_id", None)
    session.pop("customer_id", None)
    return jsonify({"ok": True})
