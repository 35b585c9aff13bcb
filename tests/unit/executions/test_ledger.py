"""Unit tests for the in-memory execution ledger."""

from datetime import datetime, timedelta, timezone

import pytest

from file_retrieval.errors import (
    ConflictError,
    ErrorCategory,
    InvalidStatusTransitionError,
    NotFoundError,
    ValidationError,
)
from file_retrieval.executions.ledger import (
    decode_continuation_token,
    encode_continuation_token,
)
from file_retrieval.executions.models import DateRange, Execution, ExecutionStatus


BASE = datetime(2024, 3, 15, 0, 0, tzinfo=timezone.utc)


async def seed_history(ledger, count, configuration_id="config-1", tenant_id="tenant-a"):
    """Create ``count`` executions one minute apart; odd ones failed."""
    created = []
    for index in range(count):
        execution = Execution(
            id=f"exec-{index:03d}",
            tenant_id=tenant_id,
            configuration_id=configuration_id,
            started_at=BASE + timedelta(minutes=index)
        )
        await ledger.create(execution)
        running = await ledger.update(execution.mark_running())
        if index % 2:
            final = running.mark_failed("boom", ErrorCategory.PROTOCOL_ERROR, running.started_at)
        else:
            final = running.mark_completed(index, running.started_at)
        created.append(await ledger.update(final))
    return created


class TestContinuationTokens:

    def test_token_round_trip(self):
        token = encode_continuation_token(BASE, "exec-001")

        assert decode_continuation_token(token) == (BASE, "exec-001")

    @pytest.mark.parametrize("token", ["not-base64!!", "e30=", "bm90IGpzb24="])
    def test_malformed_token(self, token):
        with pytest.raises(ValidationError):
            decode_continuation_token(token)


class TestInMemoryExecutionLedger:
    """Test InMemoryExecutionLedger functionality."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, ledger):
        execution = Execution(tenant_id="tenant-a", configuration_id="config-1")

        await ledger.create(execution)

        assert await ledger.get_by_id("tenant-a", "config-1", execution.id) == execution

    @pytest.mark.asyncio
    async def test_get_is_scoped_to_tenant_and_configuration(self, ledger):
        execution = Execution(tenant_id="tenant-a", configuration_id="config-1")
        await ledger.create(execution)

        assert await ledger.get_by_id("tenant-b", "config-1", execution.id) is None
        assert await ledger.get_by_id("tenant-a", "config-2", execution.id) is None
        assert await ledger.get_by_id("tenant-a", "config-1", "unknown") is None

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, ledger):
        execution = Execution(tenant_id="tenant-a", configuration_id="config-1")
        await ledger.create(execution)

        with pytest.raises(ConflictError):
            await ledger.create(execution)

    @pytest.mark.asyncio
    async def test_update_unknown_execution(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.update(Execution(tenant_id="tenant-a", configuration_id="config-1"))

    @pytest.mark.asyncio
    async def test_status_never_moves_backwards(self, ledger):
        execution = await ledger.create(Execution(tenant_id="tenant-a", configuration_id="config-1"))
        running = await ledger.update(execution.mark_running())
        await ledger.update(running.mark_completed(1))

        with pytest.raises(InvalidStatusTransitionError):
            await ledger.update(running)

        stored = await ledger.get_by_id("tenant-a", "config-1", execution.id)
        assert stored.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_identity_fields_are_immutable(self, ledger):
        execution = await ledger.create(Execution(
            tenant_id="tenant-a",
            configuration_id="config-1",
            idempotency_key="tenant-a:config-1:1"
        ))

        with pytest.raises(ValidationError):
            await ledger.update(execution.model_copy(update={"idempotency_key": "other"}))

    @pytest.mark.asyncio
    async def test_pages_are_most_recent_first_without_overlap(self, ledger):
        await seed_history(ledger, 7)

        seen = []
        token = None
        pages = 0
        while True:
            page = await ledger.list_by_configuration("tenant-a", "config-1", page_size=3, continuation_token=token)
            seen.extend(e.id for e in page.items)
            pages += 1
            if not page.has_more:
                break
            token = page.continuation_token

        assert pages == 3
        assert seen == [f"exec-{i:03d}" for i in range(6, -1, -1)]

    @pytest.mark.asyncio
    async def test_exact_page_has_no_token(self, ledger):
        await seed_history(ledger, 3)

        page = await ledger.list_by_configuration("tenant-a", "config-1", page_size=3)

        assert len(page.items) == 3
        assert page.continuation_token is None

    @pytest.mark.asyncio
    async def test_ties_on_started_at_are_broken_by_id(self, ledger):
        for execution_id in ("b", "a", "c"):
            await ledger.create(Execution(
                id=execution_id, tenant_id="tenant-a", configuration_id="config-1", started_at=BASE
            ))

        first = await ledger.list_by_configuration("tenant-a", "config-1", page_size=2)
        second = await ledger.list_by_configuration(
            "tenant-a", "config-1", page_size=2, continuation_token=first.continuation_token
        )

        assert [e.id for e in first.items] == ["c", "b"]
        assert [e.id for e in second.items] == ["a"]

    @pytest.mark.asyncio
    async def test_status_filter(self, ledger):
        await seed_history(ledger, 6)

        page = await ledger.list_by_configuration(
            "tenant-a", "config-1", status_filter=[ExecutionStatus.FAILED]
        )

        assert [e.id for e in page.items] == ["exec-005", "exec-003", "exec-001"]

    @pytest.mark.asyncio
    async def test_date_range_filter(self, ledger):
        await seed_history(ledger, 6)

        page = await ledger.list_by_configuration(
            "tenant-a",
            "config-1",
            date_range=DateRange(start=BASE + timedelta(minutes=2), end=BASE + timedelta(minutes=4))
        )

        assert [e.id for e in page.items] == ["exec-004", "exec-003", "exec-002"]

    @pytest.mark.asyncio
    async def test_other_configurations_are_excluded(self, ledger):
        await seed_history(ledger, 2)
        await ledger.create(Execution(id="other", tenant_id="tenant-a", configuration_id="config-2"))

        page = await ledger.list_by_configuration("tenant-a", "config-1")

        assert "other" not in [e.id for e in page.items]

    @pytest.mark.asyncio
    async def test_invalid_page_size(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.list_by_configuration("tenant-a", "config-1", page_size=0)
        with pytest.raises(ValidationError):
            await ledger.list_by_configuration("tenant-a", "config-1", page_size=101)

    @pytest.mark.asyncio
    async def test_invalid_continuation_token(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.list_by_configuration("tenant-a", "config-1", continuation_token="garbage")
