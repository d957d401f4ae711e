"""Create core tables

Target version: 1

Fresh installs get every table in its current shape. Installs that predate
versioning already have some of these tables; those are left alone here and
brought up to date column by column in the following steps.
"""

from pipeflow.models import tables

from ..ops import ensure_index, ensure_table


target_version = 1
name = "core_tables"


def upgrade(backend, now):
    for table in tables.DATA_TABLES:
        ensure_table(backend, table)

    # Legacy tables miss their indexes; columns added later get theirs in later steps
    for table in tables.DATA_TABLES:
        for index in table.indexes:
            columns = [c.name for c in index.columns]
            if all(backend.has_column(table.name, c) for c in columns):
                ensure_index(backend, table.name, index.name, columns)
