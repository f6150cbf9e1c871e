"""
Integrity validator for FieldVault snapshots.

Checks run independently and never short-circuit, so one call reports the
full defect list:

1. Timestamp and schema version present and parseable (hard errors)
2. Every required collection present with the expected shape (hard error),
   empty or very large collections (warnings)
3. Encoded size above the configured threshold (warning)

A snapshot is valid iff there are zero hard errors. A backup with no
detections is valid but suspicious; a backup without a version is invalid.

The validator accepts either a Snapshot or the raw decoded document, so a
record that fails strict decoding can still be inspected.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from ..errors import NotFoundError
from ..models import Snapshot
from ..provider.base import DEFAULT_COLLECTIONS, CollectionShape

if TYPE_CHECKING:
    from ..snapshot.store import SnapshotStore

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"^\d+\.\d+\.\d+$")


class IssueCode(str, Enum):
    NO_SNAPSHOT = "no_snapshot"
    MISSING_TIMESTAMP = "missing_timestamp"
    INVALID_TIMESTAMP = "invalid_timestamp"
    MISSING_VERSION = "missing_version"
    INVALID_VERSION = "invalid_version"
    VERSION_FORMAT = "version_format"
    MISSING_PAYLOAD = "missing_payload"
    MISSING_COLLECTION = "missing_collection"
    INVALID_COLLECTION_SHAPE = "invalid_collection_shape"
    EMPTY_COLLECTION = "empty_collection"
    LARGE_COLLECTION = "large_collection"
    SIZE_THRESHOLD = "size_threshold"
    UNENCODABLE = "unencodable"


@dataclass(frozen=True)
class ValidationIssue:
    code: IssueCode
    message: str
    collection: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "collection": self.collection}


@dataclass
class PerformanceMetrics:
    load_time_ms: float = 0.0
    size_bytes: int = 0


@dataclass
class ValidationResult:
    """Outcome of validating one snapshot.

    Attributes:
        errors: Hard errors; any entry makes the snapshot invalid
        warnings: Soft findings that never affect validity
        data_integrity: Per collection, True if present, well-formed and non-empty
        performance: Load latency and encoded size
    """

    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    data_integrity: dict[str, bool] = field(default_factory=dict)
    performance: PerformanceMetrics = field(default_factory=PerformanceMetrics)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def error_codes(self) -> set[IssueCode]:
        return {issue.code for issue in self.errors}

    @property
    def warning_codes(self) -> set[IssueCode]:
        return {issue.code for issue in self.warnings}

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "data_integrity": dict(self.data_integrity),
            "performance": {
                "load_time_ms": round(self.performance.load_time_ms, 3),
                "size_bytes": self.performance.size_bytes,
            },
        }


class IntegrityValidator:
    """Inspects snapshots for structural validity.

    Example:
        >>> validator = IntegrityValidator(provider.required_collections)
        >>> result = validator.validate(snapshot)
        >>> result.is_valid
        True
    """

    def __init__(
        self,
        required: Mapping[str, CollectionShape] | None = None,
        size_warning_bytes: int = 1_000_000,
        collection_warning_count: int = 100,
    ) -> None:
        self.required = dict(required if required is not None else DEFAULT_COLLECTIONS)
        self.size_warning_bytes = size_warning_bytes
        self.collection_warning_count = collection_warning_count

    def validate(
        self,
        snapshot: Snapshot | Mapping[str, Any],
        load_time_ms: float | None = None,
    ) -> ValidationResult:
        """Run every check against a snapshot.

        Args:
            snapshot: Snapshot or raw snapshot document
            load_time_ms: Measured load latency; when omitted the decode
                time of the encoded document is measured instead
        """
        doc = snapshot.to_dict() if isinstance(snapshot, Snapshot) else dict(snapshot)
        result = ValidationResult()

        self._check_timestamp(doc, result)
        self._check_version(doc, result)
        self._check_collections(doc, result)
        self._check_size(doc, result, load_time_ms)

        return result

    async def validate_current(self, store: "SnapshotStore") -> ValidationResult:
        """Validate the store's current snapshot, timing how long it takes to load."""
        started = time.perf_counter()
        try:
            snapshot = await store.get_snapshot()
        except NotFoundError:
            result = ValidationResult(
                data_integrity={name: False for name in self.required},
            )
            result.errors.append(ValidationIssue(IssueCode.NO_SNAPSHOT, "No backup data found"))
            result.performance.load_time_ms = (time.perf_counter() - started) * 1000
            return result
        load_time_ms = (time.perf_counter() - started) * 1000
        result = self.validate(snapshot, load_time_ms=load_time_ms)
        logger.debug(
            "Validated current snapshot",
            extra={
                "is_valid": result.is_valid,
                "errors": len(result.errors),
                "warnings": len(result.warnings),
            },
        )
        return result

    def _check_timestamp(self, doc: Mapping[str, Any], result: ValidationResult) -> None:
        value = doc.get("timestamp")
        if value is None or value == "":
            result.errors.append(
                ValidationIssue(IssueCode.MISSING_TIMESTAMP, "Missing timestamp in backup")
            )
            return
        if isinstance(value, bool):
            valid = False
        elif isinstance(value, (int, float)):
            valid = value >= 0
        elif isinstance(value, str):
            try:
                datetime.fromisoformat(value)
                valid = True
            except ValueError:
                valid = False
        else:
            valid = False
        if not valid:
            result.errors.append(
                ValidationIssue(IssueCode.INVALID_TIMESTAMP, f"Invalid timestamp in backup: {value!r}")
            )

    def _check_version(self, doc: Mapping[str, Any], result: ValidationResult) -> None:
        value = doc.get("schema_version")
        if value is None or value == "":
            result.errors.append(
                ValidationIssue(IssueCode.MISSING_VERSION, "Missing version in backup")
            )
            return
        if not isinstance(value, str):
            result.errors.append(
                ValidationIssue(IssueCode.INVALID_VERSION, f"Invalid version in backup: {value!r}")
            )
            return
        if not _VERSION_RE.match(value):
            result.warnings.append(
                ValidationIssue(IssueCode.VERSION_FORMAT, f"Invalid version format: {value}")
            )

    def _check_collections(self, doc: Mapping[str, Any], result: ValidationResult) -> None:
        payload = doc.get("payload")
        if not isinstance(payload, Mapping):
            result.errors.append(
                ValidationIssue(IssueCode.MISSING_PAYLOAD, "Missing payload in backup")
            )
            for name in self.required:
                result.data_integrity[name] = False
            return

        for name, shape in self.required.items():
            if name not in payload:
                result.errors.append(
                    ValidationIssue(
                        IssueCode.MISSING_COLLECTION, f"Missing collection '{name}'", name
                    )
                )
                result.data_integrity[name] = False
                continue

            value = payload[name]
            if not shape.matches(value):
                result.errors.append(
                    ValidationIssue(
                        IssueCode.INVALID_COLLECTION_SHAPE,
                        f"Invalid {name} format: expected {shape.value}",
                        name,
                    )
                )
                result.data_integrity[name] = False
                continue

            count = len(value)
            if count == 0:
                result.warnings.append(
                    ValidationIssue(IssueCode.EMPTY_COLLECTION, f"No {name} in backup", name)
                )
            elif count > self.collection_warning_count:
                result.warnings.append(
                    ValidationIssue(
                        IssueCode.LARGE_COLLECTION,
                        f"Large number of {name} (>{self.collection_warning_count})",
                        name,
                    )
                )
            result.data_integrity[name] = count > 0

    def _check_size(
        self,
        doc: Mapping[str, Any],
        result: ValidationResult,
        load_time_ms: float | None,
    ) -> None:
        try:
            encoded = json.dumps(doc, separators=(",", ":"), sort_keys=True, allow_nan=False)
        except (TypeError, ValueError) as e:
            result.errors.append(
                ValidationIssue(IssueCode.UNENCODABLE, f"Backup cannot be encoded: {e}")
            )
            encoded = repr(doc)
            measured = 0.0
        else:
            started = time.perf_counter()
            json.loads(encoded)
            measured = (time.perf_counter() - started) * 1000

        size = len(encoded.encode("utf-8"))
        result.performance.size_bytes = size
        result.performance.load_time_ms = load_time_ms if load_time_ms is not None else measured

        if size > self.size_warning_bytes:
            result.warnings.append(
                ValidationIssue(
                    IssueCode.SIZE_THRESHOLD,
                    f"Backup size is large (>{self.size_warning_bytes} bytes)",
                )
            )
