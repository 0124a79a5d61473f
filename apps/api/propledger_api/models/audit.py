"""Audit ledger models."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, JSON, LargeBinary, String, event

from propledger_api.db.base import Base
from propledger_api.exceptions import AuditImmutableError


class AuditEvent(Base):
    """Append-only audit log, hash-chained per (org, entity, entity_id)."""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(String(36), nullable=False, index=True)
    entity = Column(String(100), nullable=False)  # payment, charge, dispute, ...
    entity_id = Column(String(255), nullable=False)
    action = Column(String(100), nullable=False, index=True)  # payment_received, allocation_created, ...
    actor_id = Column(String(255), nullable=True)  # NULL for system actions
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    prev_hash = Column(LargeBinary(32), nullable=True)  # NULL for first event in a chain
    hash = Column(LargeBinary(32), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_log_chain", "org_id", "entity", "entity_id", "created_at", "id"),
        {"sqlite_autoincrement": True},
    )


@event.listens_for(AuditEvent, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditImmutableError(f"Audit event {target.id} cannot be updated")


@event.listens_for(AuditEvent, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditImmutableError(f"Audit event {target.id} cannot be deleted")
