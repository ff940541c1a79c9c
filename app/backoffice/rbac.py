from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g

from app.backoffice.models import User


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Staff-only route guard. JSON API: 401 when anonymous, 403 when unauthorized."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                abort(401)
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_actor(permission_key: str | None = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Admits a logged-in customer, or a staff user holding `permission_key`.
    Ownership of the list is checked by the service layer.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            customer = getattr(g, "current_customer", None)
            if user and user.is_active:
                if permission_key and not user_has_permission(user, permission_key):
                    g.missing_permission = permission_key
                    abort(403)
                return fn(*args, **kwargs)
            if customer is not None and customer.is_active:
                return fn(*args, **kwargs)
            abort(401)

        return wrapped

    return decorator
