# Overview: Request and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g, current_app

from .services.hierarchy_service import principal_for_node


def _is_authenticated() -> bool:
    return hasattr(g, "principal")


def require_principal(f):
    """
    Resolve the acting principal from the request.

    Authentication happens upstream; the auth layer forwards the node id in
    the PRINCIPAL_HEADER header. Sets:
    - g.principal: Principal(node_id, role, is_super_admin)

    Returns 401 if:
    - Header missing or not an integer
    - Node unknown or deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = request.headers.get(current_app.config["PRINCIPAL_HEADER"])
        if not raw:
            return jsonify({"error": "Authentication required"}), 401

        try:
            node_id = int(raw)
        except ValueError:
            return jsonify({"error": "Invalid principal"}), 401

        principal = principal_for_node(node_id)
        if principal is None:
            return jsonify({"error": "Unknown or inactive principal"}), 401

        g.principal = principal
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """Restrict a route to principals holding one of `roles`."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # Ensure @require_principal was called first
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            if g.principal.role not in roles:
                return jsonify({
                    "error": "Permission denied",
                    "kind": "ScopeViolation",
                    "required_roles": list(roles),
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def require_super_admin(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _is_authenticated():
            return jsonify({"error": "Authentication required"}), 401
        if not g.principal.is_super_admin:
            return jsonify({"error": "Super-admin required", "kind": "ScopeViolation"}), 403
        return f(*args, **kwargs)

    return decorated_function
