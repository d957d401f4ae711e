# Overview: Service-layer operations for customers; master data only, aggregates belong to the stats aggregator.

from __future__ import annotations

import logging
import re
import uuid
from datetime import timedelta

from pipeflow.errors import DuplicateItem, DuplicateSubmission, NotFound, ValidationError
from pipeflow.models import AGGREGATE_FIELDS, Customer, customers
from pipeflow.storage import StorageBackend, Select, Update, Delete, Range, by_id
from pipeflow.validation import ModelValidationPolicy, validate_payload

from . import events
from .concurrency import Transactor
from .customer_stats_service import CustomerStatsAggregator

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_ALL = Select("customers", order_by=(("name", False), ("id", False)))
_BY_ID = by_id("customers")
_CREATED_SINCE = Select("customers", ranges=(Range("created_at", ">=", "since"),))
_UPDATE = Update("customers")
_DELETE = Delete("customers")

_EDITABLE = {"name", "business", "email", "phone", "address", "tin", "customer_type", "notes"}
_SYSTEM = set(AGGREGATE_FIELDS) | {"created_at", "updated_at"}

CREATE_POLICY = ModelValidationPolicy(
    writable_fields=_EDITABLE | {"id"},
    required_on_create={"name"},
    ignored_fields=_SYSTEM,
)

UPDATE_POLICY = ModelValidationPolicy(
    writable_fields=_EDITABLE,
    required_on_create={"name"},
    ignored_fields=_SYSTEM | {"id"},
)


def _submission_key(name: str, phone: str) -> tuple[str, str]:
    return (" ".join(name.split()).casefold(), re.sub(r"[^\d+]", "", phone or ""))


def _check_email(patch: dict) -> None:
    email = patch.get("email")
    if email and not EMAIL_RE.match(email):
        raise ValidationError("email is not a valid address", details={"email": email})


class CustomerStore:
    """
    Customer CRUD.

    Creation is guarded against double submission: an identical name+phone
    created within ``duplicate_window`` is rejected. This is a time-window
    check, not an idempotency key.
    """

    def __init__(
        self,
        backend: StorageBackend,
        tx: Transactor,
        *,
        clock,
        stats: CustomerStatsAggregator,
        ledger,
        duplicate_window_seconds: int = 5,
    ):
        self.backend = backend
        self.tx = tx
        self.clock = clock
        self.stats = stats
        self.ledger = ledger
        self.duplicate_window = timedelta(seconds=duplicate_window_seconds)

    def exists(self, customer_id: str) -> bool:
        return self.backend.query_one(_BY_ID, {"id": customer_id}) is not None

    def get(self, customer_id: str) -> Customer:
        row = self.backend.query_one(_BY_ID, {"id": customer_id})
        if row is None:
            raise NotFound(f"Customer {customer_id} not found", operation="get_customer_by_id", entity_id=customer_id)
        healed = self.stats.heal([row])
        return Customer.from_row(healed[0])

    def list(self) -> list[Customer]:
        rows = self.backend.run_query(_ALL)
        return [Customer.from_row(row) for row in self.stats.heal(rows)]

    def create(self, payload: dict) -> Customer:
        patch = validate_payload(table=customers, payload=payload, policy=CREATE_POLICY, partial=False)
        _check_email(patch)

        customer_id = patch.pop("id", None) or uuid.uuid4().hex
        with self.tx.write("add_customer", customer_id) as unit:
            if self.exists(customer_id):
                raise DuplicateItem(
                    f"Customer {customer_id} already exists",
                    operation="add_customer",
                    entity_id=customer_id,
                )

            now = self.clock()
            key = _submission_key(patch["name"], patch.get("phone", ""))
            for recent in self.backend.run_query(_CREATED_SINCE, {"since": now - self.duplicate_window}):
                if _submission_key(recent["name"], recent.get("phone") or "") == key:
                    raise DuplicateSubmission(
                        f"Customer '{patch['name']}' was just created",
                        operation="add_customer",
                        entity_id=recent["id"],
                        details={"existing_id": recent["id"], "window_seconds": self.duplicate_window.total_seconds()},
                    )

            row = {
                "id": customer_id,
                "business": "",
                "email": "",
                "phone": "",
                "address": "",
                "tin": "",
                "customer_type": "regular",
                "notes": "",
                **patch,
                "total_purchases_cents": 0,
                "purchase_count": 0,
                "last_purchase_at": None,
                "created_at": now,
                "updated_at": now,
            }
            self.backend.insert("customers", row)
            customer = Customer.from_row(row)
            unit.emit(events.CUSTOMER_CREATED, customer.to_dict())

        logger.info("Customer %s created", customer_id)
        return customer

    def update(self, customer_id: str, payload: dict) -> Customer:
        patch = validate_payload(table=customers, payload=payload, policy=UPDATE_POLICY, partial=True)
        _check_email(patch)

        with self.tx.write("update_customer", customer_id) as unit:
            current = self.backend.query_one(_BY_ID, {"id": customer_id})
            if current is None:
                raise NotFound(f"Customer {customer_id} not found", operation="update_customer", entity_id=customer_id)

            patch["updated_at"] = self.clock()
            self.backend.run_mutation(_UPDATE, {"id": customer_id, **patch})
            customer = Customer.from_row({**current, **patch})
            unit.emit(events.CUSTOMER_UPDATED, customer.to_dict())

        return customer

    def delete(self, customer_id: str) -> int:
        """
        Delete the customer. Their sales stay in the ledger with the
        customer reference cleared. Returns the number of sales detached.
        """
        with self.tx.write("delete_customer", customer_id) as unit:
            if not self.exists(customer_id):
                raise NotFound(f"Customer {customer_id} not found", operation="delete_customer", entity_id=customer_id)
            detached = self.ledger.detach_customer(customer_id)
            self.backend.run_mutation(_DELETE, {"id": customer_id})
            unit.emit(events.CUSTOMER_DELETED, {"id": customer_id, "detached_sales": detached})

        logger.info("Customer %s deleted (%d sale(s) detached)", customer_id, detached)
        return detached
