"""Payment provider webhook routes."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from propledger_api.db.session import get_session_factory
from propledger_api.exceptions import WebhookProcessingError, WebhookValidationError
from propledger_api.settings import Settings, get_settings
from propledger_api.tenants.provider import get_tenant_data_provider
from propledger_api.webhooks.handlers import build_handler_registry
from propledger_api.webhooks.service import WebhookIngestor

router = APIRouter(tags=["webhooks"])


class WebhookAck(BaseModel):
    """Webhook acknowledgement."""

    received: bool
    duplicate: Optional[bool] = None


class RetryResponse(BaseModel):
    """Retry outcome."""

    success: bool
    message: str


class WebhookFailureResponse(BaseModel):
    """Dead-lettered webhook."""

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    id: int
    provider: str
    event_id: str
    error_message: str
    retry_count: int
    last_retry_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime


def get_webhook_ingestor(
    session_factory: sessionmaker = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> WebhookIngestor:
    """Build the webhook ingestor for a request."""
    handlers = build_handler_registry(get_tenant_data_provider(settings))
    return WebhookIngestor(session_factory, handlers, settings=settings)


@router.post("/webhook", response_model=WebhookAck, response_model_exclude_none=True)
async def receive_webhook(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
):
    """Receive a payment provider event."""
    raw_body = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        receipt = await run_in_threadpool(ingestor.receive, raw_body, signature)
    except WebhookValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except WebhookProcessingError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if receipt.duplicate:
        return WebhookAck(received=True, duplicate=True)
    return WebhookAck(received=True)


@router.post("/webhook/retry/{failure_id}", response_model=RetryResponse)
async def retry_webhook(
    failure_id: int,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
):
    """Retry a dead-lettered webhook."""
    result = await run_in_threadpool(ingestor.retry, failure_id)
    return RetryResponse(success=result.success, message=result.message)


@router.get("/webhook/failures", response_model=list[WebhookFailureResponse])
async def list_webhook_failures(
    include_resolved: bool = False,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
):
    """List dead-lettered webhooks."""
    return await run_in_threadpool(ingestor.list_failures, include_resolved)
