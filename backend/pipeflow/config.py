# backend/pipeflow/config.py
from __future__ import annotations
import os


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Primary store: SQLite file next to the working directory by default
    DATABASE_URL = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///pipeflow.sqlite3", #default local location
    )

    # Document file used when the relational store cannot be opened
    FALLBACK_STORE_PATH = os.environ.get("FALLBACK_STORE_PATH", "pipeflow-store.json")

    # Skip the relational attempt entirely (diagnostics / locked-down machines)
    FORCE_FALLBACK = _env_flag("FORCE_FALLBACK")

    # Seconds SQLite waits on a locked database before reporting it busy
    SQLITE_BUSY_TIMEOUT = float(os.environ.get("SQLITE_BUSY_TIMEOUT", "5"))

    # Double-submit guard for customer creation
    DUPLICATE_WINDOW_SECONDS = int(os.environ.get("DUPLICATE_WINDOW_SECONDS", "5"))

    # Pending change notifications before new ones are dropped
    EVENT_QUEUE_SIZE = int(os.environ.get("EVENT_QUEUE_SIZE", "1000"))
