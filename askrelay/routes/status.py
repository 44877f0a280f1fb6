import logging

from flask import Blueprint, current_app, jsonify, request

log = logging.getLogger("askrelay.routes.status")

bp = Blueprint("status", __name__)


@bp.route("/status")
def status():
    return jsonify(current_app.config["RELAY"].status())


@bp.route("/events")
def events():
    try:
        tail = max(1, min(int(request.args.get("tail", 50)), 200))
    except ValueError:
        return jsonify({"error": "tail must be an integer"}), 400
    kind = request.args.get("kind", "")
    return jsonify(current_app.config["RELAY"].events.recent(tail, kind=kind))
