from flask import Blueprint, jsonify

from app.backoffice.security import ensure_csrf_token

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return jsonify({"service": "backoffice", "ok": True})


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for probes. No DB access, minimal overhead.
    """
    return "ok", 200


@bp.get("/csrf")
def csrf():
    """Hands the session CSRF token to JSON clients (sent back as X-CSRF-Token)."""
    return jsonify({"csrf_token": ensure_csrf_token()})
