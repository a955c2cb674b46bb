from functools import wraps
from flask import g

from utils.responses import send_error

def require_roles(*role_names: str):
    """
    Usage: @require_roles("SELLER")
    ADMIN passes every role check.
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                return send_error("Authentication required", 401)

            user_roles = {r.name for r in user.roles}
            if "ADMIN" not in user_roles and not user_roles.intersection(role_names):
                return send_error("Forbidden", 403, {"required": list(role_names)})

            return fn(*args, **kwargs)
        return wrapper
    return decorator
