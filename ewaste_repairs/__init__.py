from __future__ import annotations

import logging
from pathlib import Path

from flask import Flask

from ewaste_repairs.config import AppConfig
from ewaste_repairs.engine import RepairLifecycle
from ewaste_repairs.realtime import ConnectionRegistry
from ewaste_repairs.routes import bp, sock
from ewaste_repairs.store import SqliteStore

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger("ewaste_repairs").setLevel(level.upper())


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=False)
    app.config.from_object(AppConfig())
    if test_config:
        app.config.update(test_config)
        if "DATA_DIR" in test_config and "DATABASE_PATH" not in test_config:
            app.config["DATABASE_PATH"] = str(Path(app.config["DATA_DIR"]) / "ewaste.db")

    configure_logging(app.config["LOG_LEVEL"])

    store = SqliteStore(app.config["DATABASE_PATH"])
    store.bootstrap()
    registry = ConnectionRegistry()
    app.extensions["store"] = store
    app.extensions["registry"] = registry
    app.extensions["engine"] = RepairLifecycle(
        store,
        registry,
        new_request_scope=app.config["NEW_REQUEST_SCOPE"],
    )

    app.register_blueprint(bp)
    sock.init_app(app)

    return app
