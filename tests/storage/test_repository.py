from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from clusterops.config import StorageConfig
from clusterops.errors import AlreadyExistsError, ConflictError, NotFoundError, TransientStorageError
from clusterops.storage.models import OperationFilter, OperationState, OperationType
from clusterops.storage.repository import SqlOperationRepository

from conftest import T0


class TestInsert:
    """Tests for inserting operations."""

    """Tests for insert() and get_by_id()."""

    def test_inserted_operation_reads_back_unchanged(self, repository, make_operation) -> None:
        """Test that an inserted operation reads back equal."""
        op = make_operation(
            campaign_id="campaign-1",
            payload={"region": "eu-west-1", "nodes": 3},
            description="created",
        )
        repository.insert(op)

        assert repository.get_by_id(op.id) == op

    def test_duplicate_id_raises_already_exists(self, repository, make_operation) -> None:
        """Test that inserting a taken ID raises AlreadyExistsError."""
        op = make_operation()
        repository.insert(op)

        with pytest.raises(AlreadyExistsError):
            repository.insert(op.evolve(instance_id="instance-2"))

    def test_get_by_id_missing_raises_not_found(self, repository) -> None:
        """Test that get_by_id() raises NotFoundError for an unknown ID."""
        with pytest.raises(NotFoundError):
            repository.get_by_id("missing")


class TestUpdate:
    """Tests for optimistic updates."""

    """Tests for the compare-and-swap update()."""

    def test_update_increments_version_by_one(self, repository, make_operation) -> None:
        """Test that every successful update bumps the version by exactly one."""
        op = make_operation()
        repository.insert(op)

        first = repository.update(op.evolve(state=OperationState.IN_PROGRESS))
        second = repository.update(first.with_finished_stage("create_runtime"))

        assert (first.version, second.version) == (1, 2)
        stored = repository.get_by_id(op.id)
        assert stored.version == 2
        assert stored.state == OperationState.IN_PROGRESS
        assert stored.finished_stages == ("create_runtime",)
        assert stored.updated_at >= op.updated_at

    def test_stale_version_conflicts_and_leaves_record_unchanged(self, repository, make_operation) -> None:
        """Test that a stale version raises ConflictError and the stored record is unchanged."""
        op = make_operation()
        repository.insert(op)
        current = repository.update(op.evolve(state=OperationState.IN_PROGRESS, description="ahead"))

        with pytest.raises(ConflictError):
            repository.update(op.evolve(state=OperationState.FAILED, description="stale"))

        assert repository.get_by_id(op.id) == current

    def test_update_of_missing_operation_raises_not_found(self, repository, make_operation) -> None:
        """Test that updating an unknown ID raises NotFoundError."""
        with pytest.raises(NotFoundError):
            repository.update(make_operation())

    def test_type_and_instance_are_fixed_at_insert(self, repository, make_operation) -> None:
        """Test that update() keeps and returns the stored type, instance and creation time."""
        op = make_operation("instance-1", OperationType.PROVISION)
        repository.insert(op)

        returned = repository.update(
            op.evolve(instance_id="instance-2", type=OperationType.DEPROVISION, created_at=T0)
        )

        stored = repository.get_by_id(op.id)
        assert returned == stored
        assert returned.created_at == op.created_at
        assert stored.instance_id == "instance-1"
        assert stored.type == OperationType.PROVISION


class TestInstanceReads:
    """Tests for per-instance reads."""

    """Tests for per-instance read paths."""

    def test_get_by_instance_id_returns_newest(self, repository, make_operation) -> None:
        """Test that get_by_instance_id() returns the newest operation."""
        old = make_operation("instance-1", state=OperationState.SUCCEEDED)
        new = make_operation("instance-1", OperationType.UPDATE)
        other = make_operation("instance-2")
        for op in (old, new, other):
            repository.insert(op)

        assert repository.get_by_instance_id("instance-1").id == new.id

    def test_list_by_instance_id_is_oldest_first(self, repository, make_operation) -> None:
        """Test that list_by_instance_id() returns the history oldest first."""
        ops = [make_operation("instance-1") for _ in range(3)]
        for op in reversed(ops):
            repository.insert(op)

        assert [op.id for op in repository.list_by_instance_id("instance-1")] == [op.id for op in ops]
        assert repository.list_by_instance_id("nobody") == []

    def test_get_last_operation_skips_pending(self, repository, make_operation) -> None:
        """Test that get_last_operation() ignores pending operations."""
        done = make_operation("instance-1", state=OperationState.SUCCEEDED)
        queued = make_operation("instance-1", OperationType.UPDATE)
        repository.insert(done)
        repository.insert(queued)

        assert repository.get_last_operation("instance-1").id == done.id

    def test_get_last_operation_without_started_operations_raises(self, repository, make_operation) -> None:
        """Test that instance reads raise NotFoundError when nothing matches."""
        repository.insert(make_operation("instance-1"))

        with pytest.raises(NotFoundError):
            repository.get_last_operation("instance-1")
        with pytest.raises(NotFoundError):
            repository.get_by_instance_id("nobody")


class TestListing:
    """Tests for listing and paging operations."""

    """Tests for bulk reads and paging."""

    def test_get_by_ids_omits_missing(self, repository, make_operation) -> None:
        """Test that get_by_ids() silently skips unknown IDs."""
        a, b = make_operation(), make_operation()
        repository.insert(a)
        repository.insert(b)

        assert [op.id for op in repository.get_by_ids([b.id, "missing", a.id])] == [a.id, b.id]
        assert repository.get_by_ids([]) == []

    def test_list_by_filter_pages_in_creation_order(self, repository, make_operation) -> None:
        """Test that list_by_filter() pages in creation order with counts."""
        ops = [make_operation(f"instance-{i}") for i in range(5)]
        for op in ops:
            repository.insert(op)

        page = repository.list_by_filter(OperationFilter(page=2, page_size=2))

        assert [op.id for op in page.items] == [ops[2].id, ops[3].id]
        assert page.count == 2
        assert page.total_count == 5

    def test_list_by_filter_past_last_page_is_empty(self, repository, make_operation) -> None:
        """Test that a page past the end is empty but still counts."""
        repository.insert(make_operation())

        page = repository.list_by_filter(OperationFilter(page=3, page_size=2))

        assert page.items == []
        assert (page.count, page.total_count) == (0, 1)

    def test_list_by_filter_applies_state_type_and_instance_filters(self, repository, make_operation) -> None:
        """Test that all filter fields are combined."""
        wanted = make_operation("instance-1", OperationType.UPDATE, state=OperationState.FAILED)
        for op in (
            wanted,
            make_operation("instance-1", OperationType.UPDATE, state=OperationState.SUCCEEDED),
            make_operation("instance-1", OperationType.PROVISION, state=OperationState.FAILED),
            make_operation("instance-2", OperationType.UPDATE, state=OperationState.FAILED),
        ):
            repository.insert(op)

        page = repository.list_by_filter(
            OperationFilter(
                states=[OperationState.FAILED],
                types=[OperationType.UPDATE],
                instance_ids=["instance-1"],
            )
        )

        assert [op.id for op in page.items] == [wanted.id]
        assert page.total_count == 1

    def test_page_size_above_maximum_is_rejected(self, repository) -> None:
        """Test that page_size above max_page_size raises ValueError."""
        with pytest.raises(ValueError, match="page_size"):
            repository.list_by_filter(OperationFilter(page_size=11))

    def test_list_by_campaign_id(self, repository, make_operation) -> None:
        """Test that list_by_campaign_id() returns only the campaign's records."""
        a = make_operation("instance-1", campaign_id="campaign-1")
        b = make_operation("instance-2", campaign_id="campaign-1")
        repository.insert(a)
        repository.insert(b)
        repository.insert(make_operation("instance-3", campaign_id="campaign-2"))
        repository.insert(make_operation("instance-4"))

        assert [op.id for op in repository.list_by_campaign_id("campaign-1")] == [a.id, b.id]

    def test_list_not_finished_by_type(self, repository, make_operation) -> None:
        """Test that list_not_finished_by_type() returns pending, in progress and retrying operations of the type."""
        pending = make_operation("instance-1", state=OperationState.PENDING)
        running = make_operation("instance-2", state=OperationState.IN_PROGRESS)
        retrying = make_operation("instance-3", state=OperationState.RETRYING)
        for op in (
            pending,
            running,
            retrying,
            make_operation("instance-4", state=OperationState.SUCCEEDED),
            make_operation("instance-5", state=OperationState.FAILED),
            make_operation("instance-6", OperationType.DEPROVISION, state=OperationState.PENDING),
        ):
            repository.insert(op)

        result = repository.list_not_finished_by_type(OperationType.PROVISION)

        assert [op.id for op in result] == [pending.id, running.id, retrying.id]

    def test_list_in_time_range_is_inclusive(self, repository, make_operation) -> None:
        """Test that list_in_time_range() includes both bounds."""
        ops = [make_operation(minutes=m) for m in (1, 2, 3, 4)]
        for op in ops:
            repository.insert(op)

        result = repository.list_in_time_range(T0 + timedelta(minutes=2), T0 + timedelta(minutes=3))

        assert [op.id for op in result] == [ops[1].id, ops[2].id]


class TestTransientFailures:
    """Tests for storage unavailability."""

    """SQL repository behavior when the database is unreachable."""

    def test_connection_failures_are_retried_then_raised(self) -> None:
        """Test that connection failures are retried and then raised as TransientStorageError."""
        engine = MagicMock()
        engine.connect.side_effect = OperationalError("SELECT 1", {}, Exception("server has gone away"))
        repo = SqlOperationRepository(
            engine,
            StorageConfig(retry_interval=0.01, retry_timeout=0.05),
        )

        with pytest.raises(TransientStorageError) as exc_info:
            repo.get_by_id("op-1")

        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert engine.connect.call_count >= 2

    def test_transient_failure_followed_by_success_is_invisible(self, engine, table_factory, make_operation) -> None:
        """Test that a single transient failure is hidden from the caller."""
        real = SqlOperationRepository(engine, table=table_factory())
        op = make_operation()
        real.insert(op)

        flaky = MagicMock(wraps=engine)
        flaky.connect.side_effect = [
            OperationalError("SELECT 1", {}, Exception("deadlock")),
            engine.connect(),
        ]
        repo = SqlOperationRepository(flaky, table=real.table, sleep=lambda _: None)

        assert repo.get_by_id(op.id) == op
        assert flaky.connect.call_count == 2
