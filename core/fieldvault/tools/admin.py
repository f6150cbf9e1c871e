"""
Admin CLI for FieldVault.

Usage:
    fieldvault-admin backup
    fieldvault-admin restore [--source remote|local|auto]
    fieldvault-admin history [--limit N]
    fieldvault-admin metrics
    fieldvault-admin validate
    fieldvault-admin versions [--limit N]
    fieldvault-admin revert <version_id>
    fieldvault-admin sync
    fieldvault-admin queue [--failed] [--retry ID] [--clear [ID]]
    fieldvault-admin drain

Configuration comes from the same environment variables as the service.

How to change safely:
    - Keep AdminCLI methods returning plain dicts so they stay testable
      without parsing stdout
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any

from ..config import FieldVaultConfig
from ..errors import FieldVaultError
from ..main import FieldVault, setup_logging

logger = logging.getLogger(__name__)


class AdminCLI:
    """Operations behind the admin CLI.

    Example:
        >>> cli = AdminCLI(vault)
        >>> await cli.backup()
        {'id': '...', 'outcome': 'success', ...}
    """

    def __init__(self, vault: FieldVault) -> None:
        self.vault = vault

    async def backup(self) -> dict[str, Any]:
        entry = await self.vault.scheduler.backup_now()
        return entry.to_dict()

    async def restore(self, source: str = "auto") -> dict[str, Any]:
        if source == "remote":
            snapshot = await self.vault.coordinator.restore_from_remote()
            used = "remote"
        elif source == "local":
            snapshot = await self.vault.snapshot_store.get_snapshot()
            await self.vault.snapshot_store.restore_snapshot(snapshot)
            used = "local"
        else:
            used, snapshot = await self.vault.scheduler.restore_latest()
        return {
            "source": used,
            "timestamp": snapshot.timestamp,
            "schema_version": snapshot.schema_version,
            "collections": sorted(snapshot.payload),
        }

    async def history(self, limit: int | None = None) -> list[dict[str, Any]]:
        return [h.to_dict() for h in await self.vault.snapshot_store.get_history(limit)]

    async def metrics(self) -> dict[str, Any]:
        return (await self.vault.snapshot_store.get_metrics()).to_dict()

    async def validate(self) -> dict[str, Any]:
        result = await self.vault.validator.validate_current(self.vault.snapshot_store)
        return result.to_dict()

    async def versions(self, limit: int | None = None) -> list[dict[str, Any]]:
        records = await self.vault.ledger.get_history(limit)
        return [r.to_dict(include_snapshot=False) for r in records]

    async def revert(self, version_id: str) -> dict[str, Any]:
        record = await self.vault.ledger.revert_to(version_id)
        return record.to_dict(include_snapshot=False)

    async def sync(self) -> dict[str, Any]:
        state = await self.vault.scheduler.sync_now()
        return state.to_dict()

    async def queue(
        self,
        failed: bool = False,
        retry: str | None = None,
        clear: str | None = None,
        clear_all: bool = False,
    ) -> dict[str, Any]:
        queue = self.vault.queue
        result: dict[str, Any] = {}
        if retry:
            result["retried"] = (await queue.retry_failed(retry)).to_dict()
        if clear_all or clear:
            result["cleared"] = await queue.clear_failed(clear)
        ops = await queue.get_failed() if failed else await queue.get_pending()
        result["operations"] = [op.to_dict() for op in ops]
        return result

    async def drain(self) -> dict[str, Any]:
        return (await self.vault.queue.drain()).to_dict()


async def _run(args: argparse.Namespace, config: FieldVaultConfig) -> Any:
    vault = FieldVault(config)
    await vault.open()
    cli = AdminCLI(vault)
    try:
        if args.command == "backup":
            return await cli.backup()
        elif args.command == "restore":
            return await cli.restore(args.source)
        elif args.command == "history":
            return await cli.history(args.limit)
        elif args.command == "metrics":
            return await cli.metrics()
        elif args.command == "validate":
            return await cli.validate()
        elif args.command == "versions":
            return await cli.versions(args.limit)
        elif args.command == "revert":
            return await cli.revert(args.version_id)
        elif args.command == "sync":
            return await cli.sync()
        elif args.command == "queue":
            return await cli.queue(
                failed=args.failed,
                retry=args.retry,
                clear=args.clear or None,
                clear_all=args.clear == "",
            )
        elif args.command == "drain":
            return await cli.drain()
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await vault.close()


def main() -> None:
    """CLI entry point for the admin tool."""
    parser = argparse.ArgumentParser(description="FieldVault administration tool")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("backup", help="Take a snapshot now")

    restore_parser = subparsers.add_parser("restore", help="Restore the latest snapshot")
    restore_parser.add_argument(
        "--source",
        choices=["auto", "remote", "local"],
        default="auto",
        help="Where to restore from (auto: remote, then local)",
    )

    history_parser = subparsers.add_parser("history", help="Show backup history")
    history_parser.add_argument("--limit", type=int, help="Maximum entries")

    subparsers.add_parser("metrics", help="Show backup metrics")
    subparsers.add_parser("validate", help="Validate the current snapshot")

    versions_parser = subparsers.add_parser("versions", help="Show version history")
    versions_parser.add_argument("--limit", type=int, help="Maximum records")

    revert_parser = subparsers.add_parser("revert", help="Revert to a version")
    revert_parser.add_argument("version_id", help="Version ID to revert to")

    subparsers.add_parser("sync", help="Sync with the remote store now")

    queue_parser = subparsers.add_parser("queue", help="Inspect the offline queue")
    queue_parser.add_argument("--failed", action="store_true", help="Show failed operations")
    queue_parser.add_argument("--retry", help="Requeue a failed operation")
    queue_parser.add_argument(
        "--clear",
        nargs="?",
        const="",
        help="Remove a failed operation (all failed if no ID given)",
    )

    subparsers.add_parser("drain", help="Apply pending offline operations now")

    args = parser.parse_args()

    try:
        config = FieldVaultConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.verbose:
        config.observability = dataclasses.replace(config.observability, log_level="DEBUG")
    setup_logging(config)

    try:
        output = asyncio.run(_run(args, config))
    except FieldVaultError as e:
        print(f"{args.command} failed: [{e.code}] {e.message}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
