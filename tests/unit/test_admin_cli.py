"""
Unit tests for the admin CLI operations.
"""

import pytest

from core.fieldvault.config import (
    FieldVaultConfig,
    OfflineConfig,
    SchedulerConfig,
    StorageBackend,
    StorageConfig,
)
from core.fieldvault.errors import NoBackupFoundError, NotFoundError
from core.fieldvault.main import FieldVault
from core.fieldvault.models import OperationKind
from core.fieldvault.provider.memory import InMemoryDataProvider
from core.fieldvault.storage.memory import InMemoryKeyValueStore
from core.fieldvault.tools.admin import AdminCLI
from core.fieldvault.transport.memory import InMemoryTransport


@pytest.fixture
async def vault():
    config = FieldVaultConfig(
        storage=StorageConfig(backend=StorageBackend.MEMORY),
        offline=OfflineConfig(retry_delay_seconds=0),
        scheduler=SchedulerConfig(enabled=False),
    )
    vault = FieldVault(
        config,
        kv=InMemoryKeyValueStore(),
        provider=InMemoryDataProvider(
            {"favorites": [{"id": "f1"}], "detections": {"d1": {}}, "history": [{"id": "h1"}]}
        ),
        transport=InMemoryTransport(),
    )
    await vault.open()
    yield vault
    await vault.scheduler.wait_idle()
    await vault.close()


@pytest.fixture
def cli(vault):
    return AdminCLI(vault)


class TestAdminCLI:
    @pytest.mark.asyncio
    async def test_backup_history_and_metrics(self, cli):
        entry = await cli.backup()
        await cli.backup()

        assert entry["outcome"] == "success"
        assert len(await cli.history(limit=1)) == 1
        assert (await cli.metrics())["total_backups"] == 2

    @pytest.mark.asyncio
    async def test_validate(self, cli):
        assert (await cli.validate())["is_valid"] is False

        await cli.backup()

        assert (await cli.validate())["is_valid"] is True

    @pytest.mark.asyncio
    async def test_versions_and_revert(self, cli):
        await cli.backup()
        versions = await cli.versions()
        assert len(versions) == 1

        record = await cli.revert(versions[0]["id"])

        assert record["reverted_from"] == versions[0]["id"]
        assert len(await cli.versions()) == 2

    @pytest.mark.asyncio
    async def test_revert_unknown_version(self, cli):
        with pytest.raises(NotFoundError):
            await cli.revert("missing")

    @pytest.mark.asyncio
    async def test_sync(self, cli):
        with pytest.raises(NoBackupFoundError):
            await cli.sync()

        await cli.backup()

        assert (await cli.sync())["status"] == "synced"

    @pytest.mark.asyncio
    async def test_restore_falls_back_to_local(self, cli):
        await cli.backup()

        output = await cli.restore()

        assert output["source"] == "local"
        assert output["collections"] == ["detections", "favorites", "history"]

    @pytest.mark.asyncio
    async def test_queue_and_drain(self, cli, vault):
        await vault.queue.enqueue(OperationKind.DELETE, "favorites", {"id": "f1"})

        pending = await cli.queue()
        assert [op["kind"] for op in pending["operations"]] == ["delete"]

        result = await cli.drain()

        assert result["completed"] == 1
        assert (await cli.queue())["operations"] == []
