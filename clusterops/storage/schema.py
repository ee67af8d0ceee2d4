from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.dialects import mysql

metadata = MetaData()

# Stored as naive UTC. MySQL DATETIME drops sub-second precision unless fsp is given.
_Timestamp = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")


def build_operations_table(name: str = "operations", meta: MetaData | None = None) -> Table:
    """
    Define the operations table.

    Besides the primary key, the instance_id index serves per-instance history
    lookups and (campaign_id, state) serves fleet status queries.
    """
    meta = meta if meta is not None else metadata
    return Table(
        name,
        meta,
        Column("id", String(64), primary_key=True),
        Column("instance_id", String(64), nullable=False),
        Column("type", String(32), nullable=False),
        Column("state", String(32), nullable=False),
        Column("version", Integer, nullable=False, default=0),
        Column("finished_stages", JSON, nullable=False),
        Column("campaign_id", String(64), nullable=True),
        Column("payload", JSON, nullable=False),
        Column("description", Text, nullable=False, default=""),
        Column("created_at", _Timestamp, nullable=False),
        Column("updated_at", _Timestamp, nullable=False),
        Index(f"ix_{name}_instance_id", "instance_id"),
        Index(f"ix_{name}_campaign_state", "campaign_id", "state"),
        Index(f"ix_{name}_type_state", "type", "state"),
    )


operations = build_operations_table()
