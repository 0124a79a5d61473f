"""Canonical encoding and hashing of audit records.

The hash of an audit event is::

    SHA256(hex(prev_hash) + ":" + canonical_payload)

where ``hex(None)`` is the empty string and ``canonical_payload`` is the
compact UTF-8 JSON encoding of an object with exactly these keys, in this
order:

    org_id, actor_id, action, entity, entity_id, metadata, created_at

``metadata`` keys are sorted recursively and ``created_at`` is rendered as
``YYYY-MM-DDTHH:MM:SS.ffffffZ`` in UTC. Changing the field order, the
separators or the timestamp format changes every hash in the ledger.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

CANONICAL_FIELDS = (
    "org_id",
    "actor_id",
    "action",
    "entity",
    "entity_id",
    "metadata",
    "created_at",
)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as naive UTC with microseconds."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(TIMESTAMP_FORMAT)


def normalize_metadata(metadata: Optional[Mapping[str, Any]]) -> dict:
    """Return a JSON-safe copy of metadata with keys sorted at every level."""
    return json.loads(json.dumps(metadata or {}, sort_keys=True, default=str))


def canonicalize(record: Mapping[str, Any]) -> bytes:
    """Encode an audit record into its canonical payload bytes."""
    ordered = {
        "org_id": record["org_id"],
        "actor_id": record.get("actor_id"),
        "action": record["action"],
        "entity": record["entity"],
        "entity_id": record["entity_id"],
        "metadata": normalize_metadata(record.get("metadata")),
        "created_at": format_timestamp(record["created_at"]),
    }
    return json.dumps(ordered, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def digest(data: bytes) -> bytes:
    """SHA-256 digest of raw bytes."""
    return hashlib.sha256(data).digest()


def chain_hash(prev_hash: Optional[bytes], payload: bytes) -> bytes:
    """Hash a canonical payload onto the previous hash of its chain."""
    prefix = prev_hash.hex() if prev_hash else ""
    return digest(prefix.encode("ascii") + b":" + payload)


def to_hex(value: Optional[bytes]) -> Optional[str]:
    """Hex-encode a stored hash, keeping None as None."""
    return bytes(value).hex() if value is not None else None
