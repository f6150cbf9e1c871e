"""
FieldVault - Main entry point.

This module starts the durability core with all components:
- Snapshot store (current backup slot + bounded history)
- Version ledger
- Sync coordinator (remote transport)
- Offline queue
- Scheduler loop (backup, sync, validation, drain, connectivity)

Usage:
    python -m core.fieldvault.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Every service is constructed once here and passed by reference; there
      is no module-level singleton
    - Persisted state is loaded before the scheduler starts
    - Graceful shutdown waits briefly for in-flight triggers

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import json_log_formatter

from .config import FieldVaultConfig, StorageBackend
from .errors import ProviderUnavailableError, TransportUnreachableError
from .models import OfflineOperation, OperationKind, SyncStatus
from .notify import LoggingNotificationSink, NotificationSink
from .offline import OfflineQueue, ProviderOperationHandler
from .provider import DataProvider, create_provider
from .scheduler import ConnectivityMonitor, Schedule, Scheduler
from .snapshot import SnapshotStore
from .storage import KeyValueStore, create_kv_store
from .sync import SyncCoordinator
from .transport import SyncTransport, create_transport
from .validate import IntegrityValidator
from .version import VersionLedger

logger = logging.getLogger(__name__)


def setup_logging(config: FieldVaultConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: FieldVault configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


class FieldVault:
    """FieldVault runtime.

    Owns every service of the durability core and their lifecycle.

    Attributes:
        config: FieldVault configuration
        kv: Persisted component state
        provider: Live application collections
        transport: Remote snapshot store
        snapshot_store: Current backup slot and history
        validator: Snapshot integrity checks
        ledger: Version history
        coordinator: Sync state machine
        queue: Offline operation queue
        connectivity: Transport reachability monitor
        scheduler: Periodic triggers

    Example:
        >>> vault = FieldVault(config)
        >>> await vault.open()
        >>> await vault.scheduler.backup_now()
        >>> await vault.close()
    """

    def __init__(
        self,
        config: FieldVaultConfig | None = None,
        kv: KeyValueStore | None = None,
        provider: DataProvider | None = None,
        transport: SyncTransport | None = None,
        notifier: NotificationSink | None = None,
    ) -> None:
        """Construct every service.

        Args:
            config: Optional configuration (loaded from env if not provided)
            kv: Override the key-value store built from config
            provider: Override the data provider built from config
            transport: Override the transport built from config
            notifier: Override the logging notification sink
        """
        self.config = config or FieldVaultConfig.from_env()
        self.notifier = notifier or LoggingNotificationSink()
        self.kv = kv or create_kv_store(self.config)
        self.provider = provider or create_provider(self.config)
        self.transport = transport or create_transport(self.config)

        self.snapshot_store = SnapshotStore(
            self.kv,
            self.provider,
            history_cap=self.config.snapshot.history_cap,
            schema_version=self.config.snapshot.schema_version,
            notifier=self.notifier,
        )
        self.validator = IntegrityValidator(
            self.provider.required_collections,
            size_warning_bytes=self.config.validation.size_warning_bytes,
            collection_warning_count=self.config.validation.collection_warning_count,
        )
        self.ledger = VersionLedger(
            self.kv,
            self.snapshot_store,
            max_versions=self.config.version.max_versions,
            notifier=self.notifier,
        )
        self.coordinator = SyncCoordinator(
            self.kv,
            self.snapshot_store,
            self.transport,
            ledger=self.ledger,
            timeout_seconds=self.config.sync.timeout_seconds,
            notifier=self.notifier,
        )

        self.handler = ProviderOperationHandler(self.provider, self.snapshot_store, self.ledger)
        self.queue = OfflineQueue(
            self.kv,
            handlers={kind: self.handler for kind in OperationKind},
            max_retries=self.config.offline.max_retries,
            retry_delay_seconds=self.config.offline.retry_delay_seconds,
            retry_backoff_max_seconds=self.config.offline.retry_backoff_max_seconds,
            notifier=self.notifier,
        )

        self.connectivity = ConnectivityMonitor(self.transport, notifier=self.notifier)
        self.scheduler = Scheduler(
            self.kv,
            self.snapshot_store,
            self.validator,
            self.ledger,
            self.coordinator,
            self.queue,
            config=self.config.scheduler,
            default_schedule=Schedule.defaults(
                self.config.scheduler, self.config.sync, self.config.offline
            ),
            connectivity=self.connectivity,
            notifier=self.notifier,
        )

        self._opened = False
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def open(self) -> None:
        """Load persisted state into every service."""
        if self._opened:
            return
        if self.config.storage.backend == StorageBackend.SQLITE:
            Path(self.config.storage.data_dir).mkdir(parents=True, exist_ok=True)

        await self.snapshot_store.load()
        await self.ledger.load()
        await self.coordinator.load()
        await self.queue.load()
        await self.scheduler.load()
        await self.ledger.ensure_initial_version()
        self._opened = True
        logger.info("FieldVault state loaded")

    async def close(self) -> None:
        """Release transport and storage resources."""
        await self.transport.close()
        await self.kv.close()
        self._opened = False

    async def start(self) -> None:
        """Open, start the scheduler and wait for a shutdown request."""
        if self._running:
            logger.warning("FieldVault already running")
            return

        logger.info("Starting FieldVault")
        self.config.log_config()

        try:
            await self.open()
            if self.config.scheduler.enabled:
                self._tasks.append(asyncio.create_task(self.scheduler.start()))
            self._running = True
            logger.info("FieldVault started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"FieldVault startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the scheduler and release resources."""
        logger.info("Stopping FieldVault")
        await self.scheduler.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._opened:
            await self.close()
        self._running = False
        logger.info("FieldVault stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    async def submit_mutation(
        self,
        kind: OperationKind,
        target_collection: str,
        payload: dict[str, Any],
    ) -> tuple[str, OfflineOperation]:
        """Apply a mutation now, or queue it while offline or sync is failed.

        Returns:
            ("applied" | "queued", operation)
        """
        op = OfflineOperation(
            id="direct",
            kind=kind,
            target_collection=target_collection,
            payload=dict(payload),
        )
        state = await self.coordinator.get_state()
        if self.connectivity.online and state.status != SyncStatus.FAILED:
            try:
                await self.handler(op)
                return "applied", op
            except (ProviderUnavailableError, TransportUnreachableError) as e:
                logger.warning(
                    "Mutation could not be applied, queueing",
                    extra={"collection": target_collection, "error": str(e)},
                )

        queued = await self.queue.enqueue(kind, target_collection, payload)
        return "queued", queued


def main() -> None:
    """Main entry point."""
    try:
        config = FieldVaultConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    vault = FieldVault(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        vault.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(vault.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(vault.stop())
        loop.close()


if __name__ == "__main__":
    main()
