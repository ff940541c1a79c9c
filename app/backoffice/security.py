import hmac
import secrets

from flask import Request, session

CSRF_SESSION_KEY = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"

# Endpoints that establish or drop the session; they carry no token yet.
CSRF_EXEMPT_BLUEPRINTS = ("auth.",)


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get(CSRF_SESSION_KEY)
    if not token:
        token = secrets.token_urlsafe(32)
        session[CSRF_SESSION_KEY] = token
    return token


def _submitted_token(req: Request) -> str | None:
    token = req.headers.get(CSRF_HEADER) or req.form.get(CSRF_SESSION_KEY)
    if not token and req.is_json:
        body = req.get_json(silent=True)
        if isinstance(body, dict):
            token = body.get(CSRF_SESSION_KEY)
    return token if isinstance(token, str) else None


def is_csrf_exempt(req: Request) -> bool:
    return (req.endpoint or "").startswith(CSRF_EXEMPT_BLUEPRINTS)


def validate_csrf(req: Request) -> bool:
    """Header first, then form field, then JSON body."""
    expected = session.get(CSRF_SESSION_KEY)
    submitted = _submitted_token(req)
    if not expected or not submitted:
        return False
    return hmac.compare_digest(submitted, expected)
