"""Tenant lookup used by payment handlers.

The real provider reads the ``tenants`` table. The fixture provider serves
a fixed set of demo tenants and is only built when configured with
``TENANT_DATA_PROVIDER=fixture``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from propledger_api.models import Tenant
from propledger_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantRecord:
    """Tenant as seen by financial operations."""

    id: str
    org_id: str
    name: str


class TenantDataProvider(ABC):
    """Resolves a tenant within an organization."""

    @abstractmethod
    def get_tenant(self, db: Session, org_id: str, tenant_id: Optional[str]) -> Optional[TenantRecord]:
        """Return the tenant, or None if it does not exist in the organization."""


class DatabaseTenantDataProvider(TenantDataProvider):
    """Tenant lookup backed by the tenants table."""

    def get_tenant(self, db: Session, org_id: str, tenant_id: Optional[str]) -> Optional[TenantRecord]:
        if not tenant_id:
            return None
        tenant = (
            db.query(Tenant)
            .filter(Tenant.org_id == org_id, Tenant.id == tenant_id)
            .first()
        )
        if not tenant:
            return None
        return TenantRecord(id=tenant.id, org_id=tenant.org_id, name=tenant.name)


class FixtureTenantDataProvider(TenantDataProvider):
    """Tenant lookup over an injected, fixed set of tenants."""

    def __init__(self, tenants: Iterable[TenantRecord]):
        self._tenants = {(t.org_id, t.id): t for t in tenants}

    def get_tenant(self, db: Session, org_id: str, tenant_id: Optional[str]) -> Optional[TenantRecord]:
        return self._tenants.get((org_id, tenant_id))


def get_tenant_data_provider(settings: Optional[Settings] = None) -> TenantDataProvider:
    """Build the tenant provider selected by configuration."""
    settings = settings or get_settings()
    kind = settings.tenant_data_provider.lower()

    if kind == "database":
        return DatabaseTenantDataProvider()
    if kind == "fixture":
        from propledger_api.db.seed import FIXTURE_TENANTS

        logger.warning("Using fixture tenant data provider - not for production use")
        return FixtureTenantDataProvider(FIXTURE_TENANTS)
    raise ValueError(f"Unknown tenant data provider: {settings.tenant_data_provider}")
