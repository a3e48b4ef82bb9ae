"""
Integrity checksums for stored payloads.

Payloads are serialized canonically (sorted keys at every depth, compact
separators) before hashing, so two structures with the same content always
produce the same digest regardless of key insertion order.
"""
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "sha256"


class ChecksumError(Exception):
    """Raised when a payload cannot be fingerprinted."""
    pass


@dataclass(frozen=True)
class ChecksumResult:
    checksum: str
    algorithm: str
    computed_at: str

    def to_dict(self) -> dict:
        return {
            "checksum": self.checksum,
            "algorithm": self.algorithm,
            "computed_at": self.computed_at,
        }


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2024-01-01T12:00:00.000Z."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def canonical_json(data: Any) -> str:
    """Serialize data with normalized key order."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def compute_checksum(data: Any, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """
    Compute a lowercase hex digest of the canonical form of data.
    Raises ChecksumError for unsupported algorithms, unserializable data or
    nesting too deep to serialize.
    """
    try:
        digest = hashlib.new(algorithm)
    except (ValueError, TypeError) as e:
        raise ChecksumError(f"Unsupported checksum algorithm: {algorithm}") from e

    try:
        serialized = canonical_json(data)
    except (TypeError, ValueError, RecursionError) as e:
        raise ChecksumError(f"Failed to compute checksum: {e}") from e

    digest.update(serialized.encode("utf-8"))
    return digest.hexdigest()


def compute_checksum_with_metadata(
    data: Any,
    algorithm: str = DEFAULT_ALGORITHM,
) -> ChecksumResult:
    return ChecksumResult(
        checksum=compute_checksum(data, algorithm),
        algorithm=algorithm,
        computed_at=utc_timestamp(),
    )


def verify_checksum(data: Any, expected: Any, algorithm: str = DEFAULT_ALGORITHM) -> bool:
    """Recompute and compare. Returns False instead of raising on bad input."""
    if not isinstance(expected, str) or not expected:
        return False
    try:
        return compute_checksum(data, algorithm) == expected.lower()
    except ChecksumError as e:
        logger.debug("Checksum verification failed: %s", str(e))
        return False


def build_checksum_envelope(data: Any, inbox_message_id: Optional[str] = None) -> dict:
    """
    Wrap data in the metadata envelope persisted alongside stored records.
    The checksum covers the data field only.
    """
    return {
        "metadata": {
            "inbox_message_id": inbox_message_id,
            "create_at": utc_timestamp(),
            "checksum": compute_checksum(data),
        },
        "data": data,
    }
