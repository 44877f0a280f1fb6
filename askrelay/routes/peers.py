import logging

from flask import Blueprint, current_app, jsonify, request

from askrelay.models import RelayEndpoint

log = logging.getLogger("askrelay.routes.peers")

bp = Blueprint("peers", __name__)


def _relay():
    return current_app.config["RELAY"]


# ── Inbound peers ─────────────────────────────────────────────

@bp.route("/peers")
def list_peers():
    return jsonify([p.to_dict() for p in _relay().inbound.list_peers()])


@bp.route("/peers/<connection_id>", methods=["DELETE"])
def drop_peer(connection_id):
    if not _relay().inbound.drop_peer(connection_id):
        return jsonify({"error": "peer not found"}), 404
    return jsonify({"ok": True})


@bp.route("/token", methods=["POST"])
def new_token():
    """
    Fresh token. With {"apply": true} it also becomes the listener token;
    otherwise it is only returned, e.g. to paste into an endpoint entry.
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({"error": "body must be a JSON object"}), 400
    relay = _relay()
    if data.get("apply"):
        token = relay.regenerate_token()
    else:
        token = relay.outbound.generate_token()
    return jsonify({"token": token, "applied": bool(data.get("apply"))})


# ── Outbound endpoints ────────────────────────────────────────

def _endpoint_view(endpoint: RelayEndpoint) -> dict:
    out = endpoint.to_dict()
    out["state"] = _relay().outbound.status(endpoint.id).to_dict()
    return out


@bp.route("/endpoints")
def list_endpoints():
    return jsonify([_endpoint_view(e) for e in _relay().outbound.list_endpoints()])


@bp.route("/endpoints", methods=["POST"])
def add_endpoint():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "endpoint must be a JSON object"}), 400
    data.pop("id", None)
    endpoint = _relay().outbound.add(RelayEndpoint.from_dict(data))
    log.info("Endpoint %s added via API", endpoint.display_name)
    return jsonify(_endpoint_view(endpoint)), 201


@bp.route("/endpoints/<endpoint_id>", methods=["PUT"])
def update_endpoint(endpoint_id):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "endpoint changes must be a JSON object"}), 400
    pool = _relay().outbound
    merged = pool.get(endpoint_id).to_dict(include_token=True)
    merged.update(data)
    merged["id"] = endpoint_id
    endpoint = pool.update(RelayEndpoint.from_dict(merged))
    return jsonify(_endpoint_view(endpoint))


@bp.route("/endpoints/<endpoint_id>", methods=["DELETE"])
def remove_endpoint(endpoint_id):
    _relay().outbound.remove(endpoint_id)
    return jsonify({"ok": True})


@bp.route("/endpoints/<endpoint_id>/connect", methods=["POST"])
def connect_endpoint(endpoint_id):
    state = _relay().outbound.connect(endpoint_id)
    return jsonify(state.to_dict())


@bp.route("/endpoints/<endpoint_id>/disconnect", methods=["POST"])
def disconnect_endpoint(endpoint_id):
    pool = _relay().outbound
    pool.disconnect(endpoint_id)
    return jsonify(pool.status(endpoint_id).to_dict())


@bp.route("/endpoints/status")
def endpoint_status():
    return jsonify({eid: s.to_dict() for eid, s in _relay().outbound.status_all().items()})
