"""Audit ledger service with per-entity hash chaining."""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from itertools import groupby
from typing import Any, Optional

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from propledger_api.ledger.canonical import canonicalize, chain_hash, normalize_metadata, to_hex
from propledger_api.models import AuditEvent
from propledger_api.utils.metrics import audit_events_appended, audit_verifications

logger = logging.getLogger(__name__)

NULL_HASH = "null"


@dataclass
class BadEvent:
    """First event found to break its chain."""

    id: int
    entity: str
    entity_id: str
    expected_hash: str
    actual_hash: str


@dataclass
class ChainVerification:
    """Result of verifying every chain of an organization."""

    valid: bool
    total_events: int
    first_bad_event: Optional[BadEvent] = None


@dataclass
class AuditTrailEntry:
    """One event of an entity's audit trail."""

    id: int
    action: str
    actor_id: Optional[str]
    metadata: dict
    created_at: datetime
    prev_hash_hex: Optional[str]
    hash_hex: str


def chain_lock_key(org_id: str, entity: str, entity_id: str) -> int:
    """Signed 64-bit advisory lock key for one chain."""
    digest = hashlib.sha256(f"{org_id}|{entity}|{entity_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def chain_lock_statement(org_id: str, entity: str, entity_id: str) -> Select:
    """Transaction-scoped PostgreSQL advisory lock on one chain."""
    return select(func.pg_advisory_xact_lock(chain_lock_key(org_id, entity, entity_id)))


def _record(event: AuditEvent) -> dict:
    return {
        "org_id": event.org_id,
        "actor_id": event.actor_id,
        "action": event.action,
        "entity": event.entity,
        "entity_id": event.entity_id,
        "metadata": event.metadata_json,
        "created_at": event.created_at,
    }


class AuditLedgerService:
    """Tamper-evident audit ledger.

    Events are chained per ``(entity, entity_id)`` within an organization.
    ``append`` only flushes; the caller's transaction decides whether the
    event and the mutation it documents are committed together.
    """

    def __init__(self, db: Session):
        """Initialize ledger service."""
        self.db = db

    def _get_last_event(self, org_id: str, entity: str, entity_id: str) -> Optional[AuditEvent]:
        """Get the most recent event of a chain."""
        return (
            self.db.query(AuditEvent)
            .filter(
                AuditEvent.org_id == org_id,
                AuditEvent.entity == entity,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
            .first()
        )

    def _lock_chain(self, org_id: str, entity: str, entity_id: str) -> None:
        """Serialize appends to one chain until the transaction ends."""
        if self.db.get_bind().dialect.name != "postgresql":
            return
        self.db.execute(chain_lock_statement(org_id, entity, entity_id))

    def append(
        self,
        org_id: str,
        action: str,
        entity: str,
        entity_id: str,
        actor_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> int:
        """Append an event to its chain and return the new audit id."""
        self._lock_chain(org_id, entity, entity_id)
        previous = self._get_last_event(org_id, entity, entity_id)
        prev_hash = bytes(previous.hash) if previous else None

        # Chain order is (created_at, id); never stamp earlier than the tail.
        created_at = datetime.utcnow()
        if previous is not None and previous.created_at > created_at:
            created_at = previous.created_at

        metadata = normalize_metadata(metadata)
        payload = canonicalize(
            {
                "org_id": org_id,
                "actor_id": actor_id,
                "action": action,
                "entity": entity,
                "entity_id": entity_id,
                "metadata": metadata,
                "created_at": created_at,
            }
        )

        event = AuditEvent(
            org_id=org_id,
            entity=entity,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            metadata_json=metadata,
            prev_hash=prev_hash,
            hash=chain_hash(prev_hash, payload),
            created_at=created_at,
        )
        self.db.add(event)
        self.db.flush()

        audit_events_appended.labels(entity=entity, action=action).inc()
        logger.info(
            f"Audit logged: {action} for {entity}:{entity_id} ({event.id})",
            extra={"org_id": org_id, "audit_id": event.id},
        )
        return event.id

    def verify_chain(self, org_id: str) -> ChainVerification:
        """Verify every hash chain of an organization.

        Stops at the first event whose ``prev_hash`` or ``hash`` does not
        match what the chain implies. Nothing is repaired.
        """
        events = (
            self.db.query(AuditEvent)
            .filter(AuditEvent.org_id == org_id)
            .order_by(
                AuditEvent.entity,
                AuditEvent.entity_id,
                AuditEvent.created_at,
                AuditEvent.id,
            )
            .all()
        )
        total = len(events)

        for _, chain in groupby(events, key=lambda e: (e.entity, e.entity_id)):
            previous_hash: Optional[bytes] = None
            for position, event in enumerate(chain):
                stored_prev = bytes(event.prev_hash) if event.prev_hash is not None else None
                stored_hash = bytes(event.hash)

                if position == 0 and stored_prev is not None:
                    return self._invalid(event, total, NULL_HASH, stored_prev.hex())
                if position > 0 and stored_prev != previous_hash:
                    return self._invalid(
                        event, total, previous_hash.hex(), to_hex(stored_prev) or NULL_HASH
                    )

                expected = chain_hash(stored_prev, canonicalize(_record(event)))
                if expected != stored_hash:
                    return self._invalid(event, total, expected.hex(), stored_hash.hex())

                previous_hash = stored_hash

        audit_verifications.labels(result="valid").inc()
        return ChainVerification(valid=True, total_events=total)

    def _invalid(
        self, event: AuditEvent, total: int, expected_hash: str, actual_hash: str
    ) -> ChainVerification:
        audit_verifications.labels(result="invalid").inc()
        logger.warning(
            f"Audit chain broken at event {event.id} ({event.entity}:{event.entity_id})",
            extra={"org_id": event.org_id, "expected_hash": expected_hash, "actual_hash": actual_hash},
        )
        return ChainVerification(
            valid=False,
            total_events=total,
            first_bad_event=BadEvent(
                id=event.id,
                entity=event.entity,
                entity_id=event.entity_id,
                expected_hash=expected_hash,
                actual_hash=actual_hash,
            ),
        )

    def get_trail(self, org_id: str, entity: str, entity_id: str) -> list[AuditTrailEntry]:
        """Get the chronological audit trail of one entity."""
        events = (
            self.db.query(AuditEvent)
            .filter(
                AuditEvent.org_id == org_id,
                AuditEvent.entity == entity,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc())
            .all()
        )
        return [
            AuditTrailEntry(
                id=event.id,
                action=event.action,
                actor_id=event.actor_id,
                metadata=event.metadata_json,
                created_at=event.created_at,
                prev_hash_hex=to_hex(event.prev_hash),
                hash_hex=to_hex(event.hash),
            )
            for event in events
        ]
