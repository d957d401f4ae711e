# Overview: Flask extension owning the process-wide StoreEngine.

from __future__ import annotations

import atexit

from flask import current_app

from .engine import StoreEngine

EXTENSION_KEY = "pipeflow"


class StoreEngineExtension:
    """
    Builds the engine once per app (backend selection + migrations) and keeps
    it in ``app.extensions``, the way Flask-SQLAlchemy keeps its state.
    """

    def __init__(self, app=None):
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> StoreEngine:
        engine = StoreEngine.from_config(app.config)
        app.extensions[EXTENSION_KEY] = engine
        atexit.register(engine.close)

        if engine.fallback_reason:
            app.logger.warning("Running on the fallback store: %s", engine.fallback_reason)
        return engine

    @property
    def engine(self) -> StoreEngine:
        return current_app.extensions[EXTENSION_KEY]


store_engine = StoreEngineExtension()
