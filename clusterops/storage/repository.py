from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, TypeVar

from sqlalchemy import Table, func, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from ..config import StorageConfig
from ..errors import AlreadyExistsError, ConflictError, NotFoundError
from .base import OperationRepository
from .helpers import occ_update
from .metrics import observe_db_operation
from .models import (
    NOT_FINISHED_STATES,
    Operation,
    OperationFilter,
    OperationPage,
    OperationState,
    OperationType,
    utc_now,
)
from .retry import with_retry
from .schema import operations as default_table
from .session import DbSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

# columns an update may change; id, type, instance_id and created_at are fixed at insert
_MUTABLE_COLUMNS = (
    "state",
    "finished_stages",
    "campaign_id",
    "payload",
    "description",
    "updated_at",
)


def _to_db_time(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_time(value: Any) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_row(op: Operation) -> dict[str, Any]:
    return {
        "id": op.id,
        "instance_id": op.instance_id,
        "type": op.type.value,
        "state": op.state.value,
        "version": op.version,
        "finished_stages": list(op.finished_stages),
        "campaign_id": op.campaign_id,
        "payload": dict(op.payload),
        "description": op.description,
        "created_at": _to_db_time(op.created_at),
        "updated_at": _to_db_time(op.updated_at),
    }


def _from_row(row: Mapping[str, Any]) -> Operation:
    return Operation(
        id=row["id"],
        instance_id=row["instance_id"],
        type=OperationType(row["type"]),
        state=OperationState(row["state"]),
        version=int(row["version"]),
        finished_stages=tuple(row["finished_stages"] or ()),
        campaign_id=row["campaign_id"],
        payload=dict(row["payload"] or {}),
        description=row["description"] or "",
        created_at=_from_db_time(row["created_at"]),
        updated_at=_from_db_time(row["updated_at"]),
    )


def _is_duplicate_key(exc: IntegrityError) -> bool:
    # MySQL error code 1062 is ER_DUP_ENTRY; SQLite and PostgreSQL only say it in the message
    error_msg = str(exc.orig) if getattr(exc, "orig", None) is not None else str(exc)
    error_code = getattr(exc.orig, "args", [None])[0] if getattr(exc, "orig", None) is not None else None
    lowered = error_msg.lower()
    return (
        error_code == 1062
        or "duplicate entry" in lowered
        or "duplicate key" in lowered
        or "unique constraint" in lowered
    )


class SqlOperationRepository(OperationRepository):
    """
    Operation repository backed by a relational database through SQLAlchemy.

    Each call runs in its own short DbSession; retries open a new session per
    attempt. See OperationRepository for the error contract.
    """

    def __init__(
        self,
        engine: Engine,
        config: StorageConfig | None = None,
        *,
        table: Table = default_table,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.engine = engine
        self.config = config or StorageConfig()
        self.table = table
        self._clock = clock
        self._sleep = sleep

    def create_table(self) -> None:
        self.table.create(self.engine, checkfirst=True)

    def _call(self, op: str, fn: Callable[[], T]) -> T:
        start_time = time.monotonic()
        status = "success"
        try:
            return with_retry(
                fn,
                op=op,
                interval=self.config.retry_interval,
                timeout=self.config.retry_timeout,
                sleep=self._sleep,
            )
        except ConflictError:
            status = "conflict"
            raise
        except NotFoundError:
            status = "not_found"
            raise
        except AlreadyExistsError:
            status = "already_exists"
            raise
        except Exception:
            status = "error"
            raise
        finally:
            observe_db_operation(op, status, time.monotonic() - start_time)

    def _fetch_all(self, op: str, stmt) -> list[Operation]:
        def _read() -> list[Operation]:
            with DbSession(self.engine) as session:
                return [_from_row(row) for row in session.fetch_all(stmt)]

        return self._call(op, _read)

    def _fetch_one(self, op: str, stmt, not_found: str) -> Operation:
        def _read() -> Operation:
            with DbSession(self.engine) as session:
                row = session.fetch_one(stmt)
            if row is None:
                raise NotFoundError(not_found)
            return _from_row(row)

        return self._call(op, _read)

    def _oldest_first(self, stmt):
        return stmt.order_by(self.table.c.created_at.asc(), self.table.c.id.asc())

    def _newest_first(self, stmt):
        return stmt.order_by(self.table.c.created_at.desc(), self.table.c.id.desc())

    def insert(self, operation: Operation) -> None:
        row = _to_row(operation)

        def _insert() -> None:
            try:
                with DbSession(self.engine) as session:
                    session.execute(insert(self.table).values(**row))
            except IntegrityError as exc:
                if _is_duplicate_key(exc):
                    raise AlreadyExistsError(
                        f"operation with id {operation.id} already exists"
                    ) from exc
                raise

        self._call("insert", _insert)

    def update(self, operation: Operation) -> Operation:
        updated = operation.evolve(version=operation.version + 1, updated_at=self._clock())
        row = _to_row(updated)
        values = {col: row[col] for col in _MUTABLE_COLUMNS}

        def _update() -> Operation:
            with DbSession(self.engine) as session:
                rc = occ_update(session, self.table, operation.id, operation.version, values)
                if rc == 1:
                    identity = session.fetch_one(
                        select(self.table.c.type, self.table.c.instance_id, self.table.c.created_at)
                        .where(self.table.c.id == operation.id)
                    )
                    # type, instance_id and created_at are fixed at insert
                    return updated.evolve(
                        type=OperationType(identity["type"]),
                        instance_id=identity["instance_id"],
                        created_at=_from_db_time(identity["created_at"]),
                    )
                stored_version = session.execute_scalar(
                    select(self.table.c.version).where(self.table.c.id == operation.id)
                )
            if stored_version is None:
                raise NotFoundError(f"operation with id {operation.id} does not exist")
            # the operation exists but the version is different; surface, never overwrite
            logger.warning(
                "operation update conflict, operation ID: %s (expected version %d, stored %d)",
                operation.id,
                operation.version,
                stored_version,
            )
            raise ConflictError(
                f"operation update conflict, operation ID: {operation.id} "
                f"(expected version {operation.version}, stored {stored_version})"
            )

        return self._call("update", _update)

    def get_by_id(self, operation_id: str) -> Operation:
        stmt = select(self.table).where(self.table.c.id == operation_id)
        return self._fetch_one("get_by_id", stmt, f"operation with id {operation_id} does not exist")

    def get_by_instance_id(self, instance_id: str) -> Operation:
        stmt = self._newest_first(
            select(self.table).where(self.table.c.instance_id == instance_id)
        ).limit(1)
        return self._fetch_one(
            "get_by_instance_id", stmt, f"operation for instance {instance_id} does not exist"
        )

    def get_last_operation(self, instance_id: str) -> Operation:
        stmt = self._newest_first(
            select(self.table)
            .where(self.table.c.instance_id == instance_id)
            .where(self.table.c.state != OperationState.PENDING.value)
        ).limit(1)
        return self._fetch_one(
            "get_last_operation", stmt, f"operation with instance_id {instance_id} does not exist"
        )

    def list_by_instance_id(self, instance_id: str) -> list[Operation]:
        stmt = self._oldest_first(select(self.table).where(self.table.c.instance_id == instance_id))
        return self._fetch_all("list_by_instance_id", stmt)

    def get_by_ids(self, operation_ids: Iterable[str]) -> list[Operation]:
        ids = list(operation_ids)
        if not ids:
            return []
        stmt = self._oldest_first(select(self.table).where(self.table.c.id.in_(ids)))
        return self._fetch_all("get_by_ids", stmt)

    def _conditions(self, filter: OperationFilter) -> list:
        c = self.table.c
        conditions = []
        if filter.states:
            conditions.append(c.state.in_([s.value for s in filter.states]))
        if filter.types:
            conditions.append(c.type.in_([t.value for t in filter.types]))
        if filter.instance_ids:
            conditions.append(c.instance_id.in_(list(filter.instance_ids)))
        if filter.campaign_id is not None:
            conditions.append(c.campaign_id == filter.campaign_id)
        return conditions

    def list_by_filter(self, filter: OperationFilter) -> OperationPage:
        if filter.page_size > self.config.max_page_size:
            raise ValueError(
                f"page_size {filter.page_size} exceeds the maximum of {self.config.max_page_size}"
            )
        conditions = self._conditions(filter)
        count_stmt = select(func.count()).select_from(self.table).where(*conditions)
        page_stmt = (
            self._oldest_first(select(self.table).where(*conditions))
            .offset(filter.offset)
            .limit(filter.page_size)
        )

        def _read() -> OperationPage:
            with DbSession(self.engine) as session:
                total = int(session.execute_scalar(count_stmt) or 0)
                items = [_from_row(row) for row in session.fetch_all(page_stmt)]
            return OperationPage(items=items, count=len(items), total_count=total)

        return self._call("list_by_filter", _read)

    def list_by_campaign_id(self, campaign_id: str) -> list[Operation]:
        stmt = self._oldest_first(select(self.table).where(self.table.c.campaign_id == campaign_id))
        return self._fetch_all("list_by_campaign_id", stmt)

    def list_not_finished_by_type(self, op_type: OperationType) -> list[Operation]:
        stmt = self._oldest_first(
            select(self.table)
            .where(self.table.c.type == OperationType(op_type).value)
            .where(self.table.c.state.in_([s.value for s in NOT_FINISHED_STATES]))
        )
        return self._fetch_all("list_not_finished_by_type", stmt)

    def list_in_time_range(self, start: datetime, end: datetime) -> list[Operation]:
        stmt = self._oldest_first(
            select(self.table).where(
                self.table.c.created_at.between(_to_db_time(start), _to_db_time(end))
            )
        )
        return self._fetch_all("list_in_time_range", stmt)
