"""Checkout, charge balance and allocation routes."""

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from propledger_api.db.session import get_db
from propledger_api.exceptions import (
    ChargeNotFoundError,
    CheckoutUnavailableError,
    CheckoutValidationError,
    TenantNotFoundError,
)
from propledger_api.middleware.org_context import get_org_id
from propledger_api.payments.checkout import CheckoutService
from propledger_api.payments.service import PaymentService
from propledger_api.settings import Settings, get_settings
from propledger_api.tenants.provider import get_tenant_data_provider

router = APIRouter(prefix="/payments", tags=["payments"])


class ChargeBalanceResponse(BaseModel):
    """Charge with derived balances."""

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    tenant_id: str
    description: Optional[str] = None
    amount_cents: int
    allocated_cents: int
    remaining_cents: int
    currency: str
    due_date: date
    status: str


class AllocationResponse(BaseModel):
    """Allocation of a payment to a charge."""

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    payment_id: str
    charge_id: str
    amount_cents: int
    created_at: datetime


class CheckoutRequest(BaseModel):
    """Checkout for a charge's remaining balance, or for an explicit amount."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tenant_id: str
    charge_id: Optional[str] = None
    amount_cents: Optional[int] = Field(default=None, ge=1)
    currency: str = Field(default="usd", min_length=3, max_length=3)


class CheckoutResponse(BaseModel):
    """Created checkout session."""

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    session_id: str
    url: str
    payment_id: str
    amount_cents: int
    currency: str
    charge_id: Optional[str] = None


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def create_checkout(
    request: CheckoutRequest,
    org_id: str = Depends(get_org_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Open a Stripe Checkout session and record the pending payment."""
    service = CheckoutService(db, org_id, get_tenant_data_provider(settings), settings=settings)
    try:
        result = service.create_checkout(
            tenant_id=request.tenant_id,
            charge_id=request.charge_id,
            amount_cents=request.amount_cents,
            currency=request.currency,
        )
        db.commit()
    except (TenantNotFoundError, ChargeNotFoundError) as e:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except CheckoutValidationError as e:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CheckoutUnavailableError as e:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except Exception:
        db.rollback()
        raise
    return result


@router.get("/charges/{charge_id}", response_model=ChargeBalanceResponse)
def get_charge(
    charge_id: str,
    org_id: str = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Get a charge with its allocated and remaining balance."""
    charge = PaymentService(db, org_id).get_charge_balance(charge_id)
    if not charge:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Charge not found")
    return charge


@router.get("/{payment_id}/allocations", response_model=list[AllocationResponse])
def list_payment_allocations(
    payment_id: str,
    org_id: str = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """List how a payment was allocated."""
    return PaymentService(db, org_id).list_payment_allocations(payment_id)
