"""
Schema versioning.

The store carries one integer schema version (``store_meta.schema_version``).
Each migration step brings the store from the previous version to its
``target_version`` and runs inside its own transaction together with the
version bump, so a step's effects and the new version become durable
together. A failed step is rolled back and the version stays put; the next
startup retries it.

Steps must be safe to re-run: check for tables/columns before creating them
and for already-corrected data before rewriting it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from types import ModuleType
from typing import Callable, Iterable

from pipeflow.errors import MigrationFailure
from pipeflow.storage import StorageBackend
from pipeflow.time_utils import utcnow

logger = logging.getLogger(__name__)

SCHEMA_VERSION_KEY = "schema_version"
MIGRATED_AT_KEY = "migrated_at"


@dataclass(frozen=True)
class MigrationStep:
    target_version: int
    name: str
    apply: Callable[[StorageBackend, datetime], None]

    @classmethod
    def from_module(cls, module: ModuleType) -> "MigrationStep":
        return cls(module.target_version, module.name, module.upgrade)


class SchemaManager:
    def __init__(
        self,
        backend: StorageBackend,
        steps: Iterable[MigrationStep] | None = None,
        *,
        clock=utcnow,
        lock=None,
    ):
        if steps is None:
            from pipeflow.migrations import STEPS
            steps = STEPS
        steps = list(steps)

        versions = [step.target_version for step in steps]
        if any(v <= 0 for v in versions) or versions != sorted(set(versions)):
            raise ValueError(f"migration steps must have unique, ascending, positive versions: {versions}")

        self.backend = backend
        self.steps = steps
        self.clock = clock
        self._lock = lock or threading.RLock()

    @property
    def latest_version(self) -> int:
        return self.steps[-1].target_version if self.steps else 0

    def current_version(self) -> int:
        raw = self.backend.get_meta(SCHEMA_VERSION_KEY)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            raise MigrationFailure(f"schema version marker is corrupt: {raw!r}", operation="current_version") from None

    def pending_steps(self) -> list[MigrationStep]:
        current = self.current_version()
        return [step for step in self.steps if step.target_version > current]

    def apply_pending_migrations(self) -> list[int]:
        """Apply every pending step in order. Returns the versions applied."""
        applied = []
        with self._lock:
            for step in self.steps:
                if self.current_version() >= step.target_version:
                    continue
                self._apply(step)
                applied.append(step.target_version)

        if applied:
            logger.info("Schema migrated to version %d (%d step(s))", applied[-1], len(applied))
        return applied

    def _apply(self, step: MigrationStep) -> None:
        now = self.clock()
        logger.info("Applying migration %d (%s)", step.target_version, step.name)

        try:
            self.backend.begin_transaction()
        except Exception as exc:
            raise MigrationFailure(
                f"Migration {step.target_version} ({step.name}) could not start: {exc}",
                target_version=step.target_version,
                operation="apply_pending_migrations",
            ) from exc

        try:
            step.apply(self.backend, now)
            self.backend.set_meta(SCHEMA_VERSION_KEY, str(step.target_version))
            self.backend.set_meta(MIGRATED_AT_KEY, now.isoformat())
            self.backend.commit()
        except Exception as exc:
            self.backend.rollback()
            logger.error("Migration %d (%s) failed; rolled back: %s", step.target_version, step.name, exc)
            raise MigrationFailure(
                f"Migration {step.target_version} ({step.name}) failed: {exc}",
                target_version=step.target_version,
                operation="apply_pending_migrations",
            ) from exc
        except BaseException:
            self.backend.rollback()
            raise

    def status(self) -> dict:
        current = self.current_version()
        pending = [step for step in self.steps if step.target_version > current]
        return {
            "current_version": current,
            "latest_version": self.latest_version,
            "up_to_date": not pending,
            "pending": [{"target_version": s.target_version, "name": s.name} for s in pending],
            "migrated_at": self.backend.get_meta(MIGRATED_AT_KEY),
        }
