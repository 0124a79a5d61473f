"""Inbound webhook models."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, PrimaryKeyConstraint, String, Text, UniqueConstraint

from propledger_api.db.base import Base


class WebhookEvent(Base):
    """Processed provider event; one row per (provider, event_id)."""

    __tablename__ = "webhook_events"

    provider = Column(String(50), nullable=False)  # stripe
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    payload = Column(Text, nullable=False)  # Raw JSON as received

    __table_args__ = (
        PrimaryKeyConstraint("provider", "event_id", name="pk_webhook_events"),
    )


class WebhookFailure(Base):
    """Dead-lettered event kept for operator-driven retry."""

    __tablename__ = "webhook_failures"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(50), nullable=False)
    event_id = Column(String(255), nullable=False)
    payload = Column(Text, nullable=False)
    error_message = Column(Text, nullable=False)
    error_stack = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    last_retry_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)  # Set once a retry or re-delivery succeeds
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_failures_provider_event"),
        {"sqlite_autoincrement": True},
    )
