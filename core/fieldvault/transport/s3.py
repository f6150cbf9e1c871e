"""
S3 transport for FieldVault.

Snapshot layout:
    s3://<bucket>/<prefix>/<device_id>/snapshots/ts=<unix_ms>.json.gz

Each snapshot has a manifest:
    s3://<bucket>/<prefix>/<device_id>/snapshots/ts=<unix_ms>.manifest.json

and the most recent manifest is mirrored to:
    s3://<bucket>/<prefix>/<device_id>/latest.json

Manifest contains RemoteVersionMeta (remote_id, version_id, timestamp,
schema_version, delta, checksum).

Invariants:
    - The manifest is written only after the snapshot object upload succeeds
    - latest.json is written last, so a reader never sees a pointer to a
      snapshot that is not fully uploaded
    - pull() verifies the SHA-256 checksum before decoding

How to change safely:
    - Add new manifest fields, don't remove existing ones
    - Test pull with manifests written by older releases
"""

from __future__ import annotations

import gzip
import hashlib
import json
import logging
import time
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..config import S3Config
from ..errors import NotFoundError, SerializationError, TransportUnreachableError
from ..models import Snapshot, VersionRecord
from .base import RemoteVersionMeta, build_meta

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


def _is_missing(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in _MISSING_CODES


class S3Transport:
    """SyncTransport storing snapshots in an S3 bucket.

    Attributes:
        s3_config: S3 configuration

    Example:
        >>> transport = S3Transport(config.s3)
        >>> remote_id = await transport.push(snapshot, version)
        >>> await transport.close()
    """

    def __init__(self, s3_config: S3Config) -> None:
        self.s3_config = s3_config
        self._session = None
        self._s3_ctx = None
        self._s3_client = None

    @property
    def _base_key(self) -> str:
        return f"{self.s3_config.prefix}/{self.s3_config.device_id}"

    async def _client(self) -> Any:
        if self._s3_client is None:
            self._session = get_session()

            client_kwargs = {
                "region_name": self.s3_config.region,
            }

            if self.s3_config.endpoint_url:
                client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

            if self.s3_config.access_key_id:
                client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
                client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

            self._s3_ctx = self._session.create_client("s3", **client_kwargs)
            self._s3_client = await self._s3_ctx.__aenter__()
        return self._s3_client

    async def close(self) -> None:
        if self._s3_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    async def push(self, snapshot: Snapshot, version: VersionRecord | None = None) -> str:
        body = gzip.compress(
            json.dumps(snapshot.to_dict(), separators=(",", ":")).encode("utf-8")
        )
        checksum = f"sha256:{hashlib.sha256(body).hexdigest()}"
        pushed_at = int(time.time() * 1000)
        snapshot_key = f"{self._base_key}/snapshots/ts={pushed_at}.json.gz"
        manifest_key = snapshot_key.replace(".json.gz", ".manifest.json")
        meta = build_meta(snapshot_key, snapshot, version, checksum=checksum)
        manifest = json.dumps(meta.to_dict(), indent=2).encode("utf-8")

        try:
            s3 = await self._client()
            await s3.put_object(
                Bucket=self.s3_config.bucket,
                Key=snapshot_key,
                Body=body,
                ContentType="application/gzip",
            )
            await s3.put_object(
                Bucket=self.s3_config.bucket,
                Key=manifest_key,
                Body=manifest,
                ContentType="application/json",
            )
            await s3.put_object(
                Bucket=self.s3_config.bucket,
                Key=f"{self._base_key}/latest.json",
                Body=manifest,
                ContentType="application/json",
            )
        except (BotoCoreError, ClientError) as e:
            raise TransportUnreachableError(f"S3 push failed: {e}") from e

        logger.info(
            "Pushed snapshot",
            extra={
                "bucket": self.s3_config.bucket,
                "s3_key": snapshot_key,
                "size_bytes": len(body),
            },
        )
        return snapshot_key

    async def pull(self) -> tuple[Snapshot, RemoteVersionMeta]:
        try:
            s3 = await self._client()
            response = await s3.get_object(
                Bucket=self.s3_config.bucket,
                Key=f"{self._base_key}/latest.json",
            )
            raw_manifest = await response["Body"].read()
        except ClientError as e:
            if _is_missing(e):
                raise NotFoundError("Remote holds no snapshot") from e
            raise TransportUnreachableError(f"S3 pull failed: {e}") from e
        except BotoCoreError as e:
            raise TransportUnreachableError(f"S3 pull failed: {e}") from e

        try:
            meta = RemoteVersionMeta.from_dict(json.loads(raw_manifest.decode("utf-8")))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SerializationError(f"Remote manifest is corrupt: {e}") from e

        try:
            response = await s3.get_object(Bucket=self.s3_config.bucket, Key=meta.remote_id)
            body = await response["Body"].read()
        except ClientError as e:
            if _is_missing(e):
                raise NotFoundError(f"Remote snapshot missing: {meta.remote_id}") from e
            raise TransportUnreachableError(f"S3 pull failed: {e}") from e
        except BotoCoreError as e:
            raise TransportUnreachableError(f"S3 pull failed: {e}") from e

        checksum = f"sha256:{hashlib.sha256(body).hexdigest()}"
        if meta.checksum and checksum != meta.checksum:
            raise SerializationError(
                f"Checksum mismatch for {meta.remote_id}: expected {meta.checksum}, got {checksum}"
            )

        try:
            snapshot = Snapshot.from_dict(json.loads(gzip.decompress(body).decode("utf-8")))
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SerializationError(f"Remote snapshot is corrupt: {e}") from e

        return snapshot, meta

    async def is_reachable(self) -> bool:
        try:
            s3 = await self._client()
            await s3.head_bucket(Bucket=self.s3_config.bucket)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.debug(f"S3 probe failed: {e}")
            return False
