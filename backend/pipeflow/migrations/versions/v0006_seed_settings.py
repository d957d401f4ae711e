"""Seed default settings and the invoice sequence

Target version: 6

Insert-if-absent only: values an install already has are kept. The invoice
sequence continues after the highest invoice number already in use.
"""

from pipeflow.services.sequence_service import INVOICE_SEQUENCE, seed_sequence
from pipeflow.services.settings_service import read_settings, seed_default_settings


target_version = 6
name = "seed_settings"


def upgrade(backend, now):
    seed_default_settings(backend, now)
    settings = read_settings(backend)
    seed_sequence(
        backend,
        name=INVOICE_SEQUENCE,
        start=settings["invoice_start"],
        prefix=settings["invoice_prefix"],
    )
