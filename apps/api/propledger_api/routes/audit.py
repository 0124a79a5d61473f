"""Audit ledger routes."""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from propledger_api.db.session import get_db
from propledger_api.ledger.service import AuditLedgerService
from propledger_api.middleware.org_context import get_org_id

router = APIRouter(prefix="/audit", tags=["audit"])


class CamelModel(BaseModel):
    """Response model rendered with camelCase keys."""

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class BadEventResponse(CamelModel):
    """First event breaking its chain."""

    id: int
    entity: str
    entity_id: str
    expected_hash: str
    actual_hash: str


class ChainVerificationResponse(CamelModel):
    """Chain verification result."""

    valid: bool
    total_events: int
    first_bad_event: Optional[BadEventResponse] = None


class AuditTrailEntryResponse(CamelModel):
    """One audit event of an entity."""

    id: int
    action: str
    actor_id: Optional[str] = None
    metadata: dict[str, Any]
    created_at: datetime
    prev_hash_hex: Optional[str] = None
    hash_hex: str


@router.get("/verify", response_model=ChainVerificationResponse, response_model_exclude_none=True)
def verify_chains(
    org_id: str = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Verify the integrity of all audit chains for the organization."""
    return AuditLedgerService(db).verify_chain(org_id)


@router.get("/entity/{entity}/{entity_id}", response_model=list[AuditTrailEntryResponse])
def get_entity_audit_trail(
    entity: str,
    entity_id: str,
    org_id: str = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Get the audit trail for a specific entity."""
    return AuditLedgerService(db).get_trail(org_id, entity, entity_id)
