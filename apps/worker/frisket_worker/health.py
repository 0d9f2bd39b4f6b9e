"""Liveness endpoint served next to the polling loop."""

import logging
import threading

from flask import Flask
from werkzeug.serving import make_server

logger = logging.getLogger(__name__)

HEALTH_HEADER = "Frisket"


def create_health_app(service_name: str) -> Flask:
    """Build the Flask app exposing ``GET /health``."""
    app = Flask(__name__)

    @app.get("/health")
    def health():
        return "", 200, {HEALTH_HEADER: service_name}

    return app


def serve_health(app: Flask, port: int, host: str = "0.0.0.0") -> threading.Thread:
    """Serve the app on a daemon thread and return the thread."""
    server = make_server(host, port, app)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info("Health endpoint listening on %s:%s", host, port)
    return thread
