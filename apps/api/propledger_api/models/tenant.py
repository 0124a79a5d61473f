"""Organization and tenant (renter) models."""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship

from propledger_api.db.base import Base


def generate_uuid() -> str:
    """Generate a string UUID primary key."""
    return str(uuid.uuid4())


class Organization(Base):
    """Organization model; the isolation boundary for every financial record."""

    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    tenants = relationship("Tenant", back_populates="organization", cascade="all, delete-orphan")


class Tenant(Base):
    """Renter who is billed charges and makes payments."""

    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    org_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    status = Column(String(50), default="active", nullable=False)  # active, moved_out
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    organization = relationship("Organization", back_populates="tenants")
