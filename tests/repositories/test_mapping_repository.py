"""Tests for the sync mapping repository."""

import pytest

from brdsync.core.exceptions import DuplicateMappingError
from brdsync.repositories.mapping_repository import mapping_repository


@pytest.fixture
async def mapping(test_async_session, connection):
    return await mapping_repository.create(
        test_async_session,
        connection_id=connection.id,
        local_id="brd-1",
        remote_key="PROJ-1",
        remote_id="10001",
        remote_project_key="PROJ",
        base_snapshot={"title": "Checkout"},
    )


class TestCreate:
    @pytest.mark.asyncio
    async def test_defaults(self, mapping):
        assert mapping.sync_enabled is True
        assert mapping.auto_sync is False
        assert mapping.conflict_count == 0
        assert mapping.last_synced_at is not None

    @pytest.mark.asyncio
    async def test_brd_already_mapped(self, test_async_session, connection, mapping):
        with pytest.raises(DuplicateMappingError) as exc_info:
            await mapping_repository.create(
                test_async_session,
                connection_id=connection.id,
                local_id="brd-1",
                remote_key="PROJ-2",
            )

        assert exc_info.value.details["field"] == "local_id"

    @pytest.mark.asyncio
    async def test_issue_already_mapped(self, test_async_session, connection, mapping):
        with pytest.raises(DuplicateMappingError) as exc_info:
            await mapping_repository.create(
                test_async_session,
                connection_id=connection.id,
                local_id="brd-2",
                remote_key="PROJ-1",
            )

        assert exc_info.value.details["field"] == "remote_key"
        assert exc_info.value.status_code == 409


class TestQueries:
    @pytest.mark.asyncio
    async def test_lookups(self, test_async_session, connection, mapping):
        assert (
            await mapping_repository.get_by_local(connection.id, "brd-1", test_async_session)
        ).id == mapping.id
        assert (
            await mapping_repository.get_by_remote(connection.id, "PROJ-1", test_async_session)
        ).id == mapping.id
        assert await mapping_repository.get_by_local("other", "brd-1", test_async_session) is None

    @pytest.mark.asyncio
    async def test_auto_sync_filter_skips_disabled(
        self, test_async_session, connection, mapping
    ):
        second = await mapping_repository.create(
            test_async_session, connection_id=connection.id, local_id="brd-2", remote_key="PROJ-2"
        )
        await mapping_repository.update(mapping, test_async_session, auto_sync=True)
        await mapping_repository.update(
            second, test_async_session, auto_sync=True, sync_enabled=False
        )

        auto = await mapping_repository.list_mappings(test_async_session, auto_sync=True)

        assert [m.id for m in auto] == [mapping.id]
        assert len(await mapping_repository.list_mappings(test_async_session)) == 2


class TestUpdate:
    @pytest.mark.asyncio
    async def test_base_snapshot_replaced(self, test_async_session, mapping):
        snapshot = dict(mapping.base_snapshot)
        snapshot["status"] = "draft"

        updated = await mapping_repository.update(
            mapping, test_async_session, base_snapshot=snapshot
        )

        assert updated.base_snapshot == {"title": "Checkout", "status": "draft"}

    @pytest.mark.asyncio
    async def test_increment_conflicts(self, test_async_session, mapping):
        await mapping_repository.increment_conflicts(mapping, test_async_session)
        await mapping_repository.increment_conflicts(mapping, test_async_session, count=2)

        stored = await mapping_repository.get(mapping.id, test_async_session)
        assert stored.conflict_count == 3
