"""
askrelay entrypoint.

Reads config from the environment, starts the relay (peer listener, outbound
endpoints, optional tunnel) and serves the HTTP surface on api_host:api_port.
"""
import logging
import signal

from flask import Flask, jsonify
from werkzeug.serving import make_server

from askrelay.config import RelayConfig
from askrelay.errors import (ConfigConflict, RequestCancelled, RequestTimeout,
                             UnknownEndpoint)
from askrelay.relay import Relay
from askrelay.routes import confirm as confirm_bp
from askrelay.routes import peers as peers_bp
from askrelay.routes import status as status_bp
from askrelay.routes import tunnel as tunnel_bp

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
log = logging.getLogger("askrelay.agent")

_ERROR_CODES = (
    (ConfigConflict,   409),
    (UnknownEndpoint,  404),
    (RequestTimeout,   504),
    (RequestCancelled, 409),
    (ValueError,       400),
)


def _json_error(code: int):
    def handler(exc):
        return jsonify({"error": str(exc)}), code
    return handler


def create_app(relay: Relay) -> Flask:
    app = Flask(__name__)
    app.config["RELAY"] = relay

    app.register_blueprint(confirm_bp.bp)
    app.register_blueprint(peers_bp.bp)
    app.register_blueprint(tunnel_bp.bp)
    app.register_blueprint(status_bp.bp)

    for exc_class, code in _ERROR_CODES:
        app.register_error_handler(exc_class, _json_error(code))
    return app


def _interrupt(signum, frame):
    raise KeyboardInterrupt


def main():
    config = RelayConfig.from_env()

    level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.getLogger().setLevel(level)

    relay = Relay(config)
    relay.start()

    app = create_app(relay)
    server = make_server(config.api_host, config.api_port, app, threaded=True)
    signal.signal(signal.SIGTERM, _interrupt)
    log.info("HTTP surface on http://%s:%d", config.api_host, server.server_port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
        relay.stop()


if __name__ == "__main__":
    main()
