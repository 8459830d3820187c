# Overview: Flask API routes for sync sessions; clients open a session and drain its events.

# backend/tierflow/routes/sync.py
"""
Sync Session API Routes

FLOW:
1. POST /api/sync/sessions             -> session_id; polling starts server-side
2. GET  /api/sync/sessions/<id>/events -> drain "increase"/"error" events
3. POST /api/sync/sessions/<id>/actions -> client performed an action; the
                                           next poll reports fetch failures
4. DELETE /api/sync/sessions/<id>      -> polling stops

Sessions belong to the principal that opened them; other principals see 404.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services.errors import TierflowError, ValidationError
from ..decorators import require_principal


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


def _manager():
    return current_app.extensions["sync_manager"]


@sync_bp.post("/sessions")
@require_principal
def start_session_route():
    """
    Open a polling session.

    Request body (optional): {"interval_seconds": 3}
    """
    try:
        data = request.get_json(silent=True) or {}
        interval = data.get("interval_seconds")
        if interval is not None:
            if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
                raise ValidationError("interval_seconds must be a positive number")

        session = _manager().start_session(g.principal, interval=interval)
        return jsonify({"session": session.to_dict()}), 201

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to start sync session")
        return jsonify({"error": "Internal server error"}), 500


@sync_bp.get("/sessions/<session_id>/events")
@require_principal
def drain_events_route(session_id: str):
    try:
        events = _manager().drain_events(session_id, g.principal)
        return jsonify({"session_id": session_id, "events": [e.to_dict() for e in events]}), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to drain sync events")
        return jsonify({"error": "Internal server error"}), 500


@sync_bp.post("/sessions/<session_id>/actions")
@require_principal
def note_action_route(session_id: str):
    try:
        session = _manager().note_user_action(session_id, g.principal)
        return jsonify({"session": session.to_dict()}), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record sync action")
        return jsonify({"error": "Internal server error"}), 500


@sync_bp.delete("/sessions/<session_id>")
@require_principal
def end_session_route(session_id: str):
    try:
        _manager().end_session(session_id, g.principal)
        return jsonify({"session_id": session_id, "ended": True}), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to end sync session")
        return jsonify({"error": "Internal server error"}), 500
