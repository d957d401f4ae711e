from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pipeflow.errors import ValidationError
from pipeflow.storage import StorageBackend, Select, Update

from . import events
from .concurrency import Transactor


@dataclass(frozen=True)
class SettingSpec:
    key: str
    value_type: str  # "string" | "int" | "enum"
    default: Any
    validation: dict = field(default_factory=dict)


SETTINGS_CATALOG = (
    SettingSpec("company_name", "string", "My Shop"),
    SettingSpec("currency", "string", "TZS", {"regex": r"^[A-Z]{3}$"}),
    SettingSpec("currency_symbol", "string", "TSh"),
    SettingSpec("alert_threshold", "int", 10, {"min": 0}),
    SettingSpec("date_format", "enum", "DD/MM/YYYY", {"enum": ["DD/MM/YYYY", "MM/DD/YYYY", "YYYY-MM-DD"]}),
    SettingSpec("language", "enum", "en", {"enum": ["en", "sw"]}),
    SettingSpec("invoice_prefix", "string", "INV", {"regex": r"^[A-Za-z0-9]{1,10}$"}),
    SettingSpec("invoice_start", "int", 1000, {"min": 1}),
)

SETTINGS_BY_KEY = {spec.key: spec for spec in SETTINGS_CATALOG}
DEFAULT_SETTINGS = {spec.key: spec.default for spec in SETTINGS_CATALOG}

_ALL = Select("settings", order_by=(("key", False),))
_BY_KEY = Select("settings", where=("key",))
_UPDATE = Update("settings", where=("key",))


def _coerce_value(spec: SettingSpec, value: Any) -> Any:
    if spec.value_type == "int":
        if isinstance(value, bool):
            raise ValidationError(f"{spec.key}: expected integer")
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return int(value.strip())
        raise ValidationError(f"{spec.key}: expected integer")
    if value is None:
        raise ValidationError(f"{spec.key} cannot be null")
    return str(value).strip()


def _validate_constraints(spec: SettingSpec, value: Any) -> None:
    validation = spec.validation
    if spec.value_type == "enum":
        options = validation.get("enum", [])
        if options and value not in options:
            raise ValidationError(f"{spec.key}: expected one of {options}")
    if spec.value_type == "int":
        if "min" in validation and value < validation["min"]:
            raise ValidationError(f"{spec.key}: must be >= {validation['min']}")
    if "regex" in validation and not re.match(validation["regex"], str(value)):
        raise ValidationError(f"{spec.key}: format is invalid")


def normalize_setting(key: str, value: Any) -> Any:
    spec = SETTINGS_BY_KEY.get(key)
    if spec is None:
        raise ValidationError(f"Unknown setting: {key}", details={"key": key})
    coerced = _coerce_value(spec, value)
    _validate_constraints(spec, coerced)
    return coerced


def read_settings(backend: StorageBackend) -> dict:
    """Defaults overlaid with whatever is persisted."""
    values = dict(DEFAULT_SETTINGS)
    for row in backend.run_query(_ALL):
        if row["key"] in SETTINGS_BY_KEY:
            values[row["key"]] = row["value"]
    return values


def seed_default_settings(backend: StorageBackend, now: datetime) -> int:
    """Insert-if-absent; existing values are never overwritten. Returns rows added."""
    added = 0
    for spec in SETTINGS_CATALOG:
        if backend.query_one(_BY_KEY, {"key": spec.key}) is None:
            backend.insert("settings", {"key": spec.key, "value": spec.default, "updated_at": now})
            added += 1
    return added


class SettingsStore:
    def __init__(self, backend: StorageBackend, tx: Transactor, *, clock):
        self.backend = backend
        self.tx = tx
        self.clock = clock

    def get_all(self) -> dict:
        return read_settings(self.backend)

    def get(self, key: str) -> Any:
        if key not in SETTINGS_BY_KEY:
            raise ValidationError(f"Unknown setting: {key}", details={"key": key})
        return self.get_all()[key]

    def update(self, patch: dict) -> dict:
        if not isinstance(patch, dict) or not patch:
            raise ValidationError("Settings update must be a non-empty object")

        normalized = {key: normalize_setting(key, value) for key, value in patch.items()}

        with self.tx.write("update_settings") as unit:
            now = self.clock()
            for key, value in normalized.items():
                params = {"key": key, "value": value, "updated_at": now}
                if not self.backend.run_mutation(_UPDATE, params):
                    self.backend.insert("settings", params)
            unit.emit(events.SETTINGS_UPDATED, {"keys": sorted(normalized)})

        return self.get_all()
