from __future__ import annotations

from flask import Flask

from .config import Config
from .extensions import store_engine


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Selects the backend and applies migrations; a MigrationFailure aborts startup
    store_engine.init_app(app)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
