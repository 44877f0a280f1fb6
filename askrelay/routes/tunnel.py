import logging

from flask import Blueprint, current_app, jsonify, request

from askrelay.models import TunnelConfig

log = logging.getLogger("askrelay.routes.tunnel")

bp = Blueprint("tunnel", __name__)


def _tunnel():
    return current_app.config["RELAY"].tunnel


def _body_config() -> TunnelConfig | None:
    data = request.get_json(silent=True)
    if not data:
        return None
    if not isinstance(data, dict):
        raise ValueError("tunnel config must be a JSON object")
    return TunnelConfig.from_dict(data)


@bp.route("/tunnel")
def tunnel_status():
    tunnel = _tunnel()
    out = tunnel.status()
    out["config"] = tunnel.config.to_dict() if tunnel.config else None
    return jsonify(out)


@bp.route("/tunnel/command")
def tunnel_command():
    """The ssh command line, for copy/paste or running by hand."""
    tunnel = _tunnel()
    if tunnel.config is None or not tunnel.config.remote_host:
        return jsonify({"error": "tunnel is not configured"}), 404
    return jsonify({"command": tunnel.command_preview()})


@bp.route("/tunnel/start", methods=["POST"])
def tunnel_start():
    tunnel = _tunnel()
    started = tunnel.start(_body_config())
    return jsonify({"started": started, **tunnel.status()})


@bp.route("/tunnel/stop", methods=["POST"])
def tunnel_stop():
    tunnel = _tunnel()
    tunnel.stop()
    return jsonify(tunnel.status())


@bp.route("/tunnel/restart", methods=["POST"])
def tunnel_restart():
    tunnel = _tunnel()
    config = _body_config()
    if config is not None:
        tunnel.update_config(config)
    started = tunnel.restart()
    return jsonify({"started": started, **tunnel.status()})
