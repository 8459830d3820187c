# Overview: Flask API routes for the hierarchy directory; node management and scope lookup.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import hierarchy_service
from ..services.errors import TierflowError, ValidationError
from ..decorators import require_principal, require_super_admin


nodes_bp = Blueprint("nodes", __name__, url_prefix="/api")


def _arg_int(name: str):
    value = request.args.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


@nodes_bp.get("/scope")
@require_principal
def scope_route():
    """The caller's resolved scope (level, node, visible descendants)."""
    try:
        scope = hierarchy_service.resolve_scope(g.principal)
        return jsonify({"scope": scope.to_dict()}), 200
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to resolve scope")
        return jsonify({"error": "Internal server error"}), 500


@nodes_bp.get("/nodes")
@require_principal
def list_nodes_route():
    """
    Nodes in the caller's scope.

    Query params:
    - role: admin | distributor | customer
    - parent_id: direct children of a node
    - include_inactive (default: false)
    """
    try:
        nodes = hierarchy_service.list_nodes(
            g.principal,
            role=request.args.get("role") or None,
            parent_id=_arg_int("parent_id"),
            include_inactive=request.args.get("include_inactive", "false").lower() == "true",
        )
        return jsonify({"nodes": [n.to_dict() for n in nodes]}), 200
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list nodes")
        return jsonify({"error": "Internal server error"}), 500


@nodes_bp.post("/nodes")
@require_principal
def create_node_route():
    """
    Create a node.

    Request body:
    {
        "name": "North Distributor",
        "email": "north@example.com",
        "role": "distributor",
        "parent_id": 2,  (optional, defaults to the caller)
        "is_super_admin": false  (optional)
    }

    Returns:
        201: Node created
        400: Invalid role ordering or duplicate email
        403: Caller may not create this node here
    """
    try:
        data = request.get_json(silent=True) or {}
        node = hierarchy_service.create_node(
            g.principal,
            name=data.get("name"),
            email=data.get("email"),
            role=data.get("role"),
            parent_id=data.get("parent_id"),
            is_super_admin=bool(data.get("is_super_admin", False)),
        )
        return jsonify({"node": node.to_dict()}), 201
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create node")
        return jsonify({"error": "Internal server error"}), 500


@nodes_bp.get("/nodes/<int:node_id>")
@require_principal
def get_node_route(node_id: int):
    try:
        node = hierarchy_service.get_node(g.principal, node_id)
        return jsonify({"node": node.to_dict()}), 200
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get node")
        return jsonify({"error": "Internal server error"}), 500


@nodes_bp.get("/nodes/<int:node_id>/ancestors")
@require_principal
def node_ancestors_route(node_id: int):
    """Ancestor chain, nearest first."""
    try:
        hierarchy_service.get_node(g.principal, node_id)
        ancestors = hierarchy_service.ancestors_of(node_id)
        return jsonify({"node_id": node_id, "ancestors": [a.to_dict() for a in ancestors]}), 200
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list ancestors")
        return jsonify({"error": "Internal server error"}), 500


@nodes_bp.put("/nodes/<int:node_id>/parent")
@require_principal
@require_super_admin
def reassign_parent_route(node_id: int):
    """Request body: {"parent_id": 5}"""
    try:
        data = request.get_json(silent=True) or {}
        parent_id = data.get("parent_id")
        if not isinstance(parent_id, int) or isinstance(parent_id, bool):
            return jsonify({"error": "parent_id must be an integer", "kind": "ValidationError"}), 400

        node = hierarchy_service.reassign_parent(g.principal, node_id, parent_id)
        return jsonify({"node": node.to_dict()}), 200
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to reassign parent")
        return jsonify({"error": "Internal server error"}), 500


@nodes_bp.post("/nodes/<int:node_id>/deactivate")
@require_principal
def deactivate_node_route(node_id: int):
    try:
        node = hierarchy_service.deactivate_node(g.principal, node_id)
        return jsonify({"node": node.to_dict()}), 200
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to deactivate node")
        return jsonify({"error": "Internal server error"}), 500
