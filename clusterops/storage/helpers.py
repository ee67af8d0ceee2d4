from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import Table, update

from .session import DbSession


def occ_update(
    session: DbSession,
    table: Table,
    id_value: Any,
    version_value: int,
    updates: Mapping[str, Any],
    *,
    id_column: str = "id",
    version_column: str = "version",
) -> int:
    """
Execute an optimistic concurrency control (OCC) update using version checking.

The row is only touched when its version column still equals version_value;
the version column is incremented by exactly one as part of the same statement.

⚠️ IMPORTANT USAGE CONTRACT ⚠️
This helper is a *low-level primitive*. It never retries. A return value of 0
means the version no longer matches (or the row is gone); the caller decides
whether to re-read, abandon or escalate. Blindly retrying with a freshly read
version would overwrite whatever the concurrent writer just committed.

Args:
    session: Active DbSession instance
    table: SQLAlchemy Table holding the row
    id_value: Primary key value
    version_value: Expected version value
    updates: Dictionary of column -> value to update
             (version_column is handled automatically and ignored here)
    id_column: Primary key column name
    version_column: Version column name

Returns:
    Affected row count:
    - 1: Update succeeded (version matched)
    - 0: Update failed (version mismatch or missing row)

Raises:
    RuntimeError: If the session is not active
    ValueError: If a column name is not part of the table
"""
    if not session.active:
        raise RuntimeError("occ_update() requires an active DbSession")

    columns = table.c
    for name in (id_column, version_column, *updates.keys()):
        if name not in columns:
            raise ValueError(f"Unknown column {name!r} for table {table.name!r}")

    values = {col: val for col, val in sorted(updates.items()) if col != version_column}
    values[version_column] = columns[version_column] + 1

    stmt = (
        update(table)
        .where(columns[id_column] == id_value)
        .where(columns[version_column] == version_value)
        .values(**values)
    )
    return session.execute(stmt)
