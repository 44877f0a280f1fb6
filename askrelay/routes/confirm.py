"""
Agent-facing calls: ask a human and wait, list and settle pending requests.
"""
import logging

from flask import Blueprint, current_app, jsonify, request

from askrelay.models import Answer

log = logging.getLogger("askrelay.routes.confirm")

bp = Blueprint("confirm", __name__)


def _relay():
    return current_app.config["RELAY"]


@bp.route("/confirm", methods=["POST"])
def confirm():
    """
    Block until a human answers (or the deadline passes).

    Body: {message, predefined_options?, is_markdown?, timeout?, ...extra}
    Extra keys travel with the request untouched.
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({"error": "body must be a JSON object"}), 400
    message = data.get("message")
    if not isinstance(message, str) or not message.strip():
        return jsonify({"error": "message is required"}), 400
    options = data.get("predefined_options") or []
    if not isinstance(options, list) or not all(isinstance(o, str) for o in options):
        return jsonify({"error": "predefined_options must be a list of strings"}), 400

    timeout = data.get("timeout")
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            return jsonify({"error": "timeout must be a number"}), 400

    payload = {k: v for k, v in data.items() if k != "timeout"}
    payload["predefined_options"] = options
    payload["is_markdown"] = bool(data.get("is_markdown", False))

    answer = _relay().ask(payload, timeout)
    return jsonify(answer.to_dict())


@bp.route("/requests")
def list_requests():
    return jsonify([r.to_dict() for r in _relay().pending.list_pending()])


@bp.route("/requests/<request_id>/answer", methods=["POST"])
def answer_request(request_id):
    """Answer a pending request directly, e.g. from a web page or bot webhook."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "answer payload must be a JSON object"}), 400
    source = str(request.args.get("source") or "api")
    if not _relay().resolve(request_id, Answer(request_id, data, source)):
        return jsonify({"error": "request not pending"}), 404
    return jsonify({"ok": True})


@bp.route("/requests/<request_id>", methods=["DELETE"])
def cancel_request(request_id):
    if not _relay().pending.cancel(request_id):
        return jsonify({"error": "request not pending"}), 404
    log.info("Request %s cancelled via API", request_id)
    return jsonify({"ok": True})
