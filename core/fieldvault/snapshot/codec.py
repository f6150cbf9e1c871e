"""
Snapshot encoding.

Snapshots are stored as canonical JSON (sorted keys, no whitespace) so
that the encoded size is stable and usable as the backup size metric.
"""

from __future__ import annotations

import json

from ..errors import SerializationError
from ..models import Snapshot


def encode_snapshot(snapshot: Snapshot) -> bytes:
    """Encode a snapshot.

    Raises:
        SerializationError: If the payload holds non-JSON values
    """
    try:
        return json.dumps(
            snapshot.to_dict(), separators=(",", ":"), sort_keys=True, allow_nan=False
        ).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Failed to encode snapshot: {e}") from e


def decode_snapshot(raw: bytes) -> Snapshot:
    """Decode and strictly validate a stored snapshot.

    Raises:
        SerializationError: If the bytes are not a well-formed snapshot
    """
    try:
        data = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise SerializationError(f"Failed to decode snapshot: {e}") from e
    return Snapshot.from_dict(data)
