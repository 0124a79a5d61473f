"""Tests for configuration guards and tenant data providers."""

import pytest
from pydantic import ValidationError
from sqlalchemy.orm import Session

from propledger_api.db.seed import DEMO_ORG_ID, FIXTURE_TENANTS, seed_all
from propledger_api.models import Charge, Organization, Tenant
from propledger_api.settings import Settings
from propledger_api.tenants.provider import (
    DatabaseTenantDataProvider,
    FixtureTenantDataProvider,
    get_tenant_data_provider,
)


def test_production_requires_webhook_secret():
    """Production refuses to start without a webhook secret."""
    settings = Settings(environment="production", stripe_webhook_secret=None)
    with pytest.raises(ValueError, match="STRIPE_WEBHOOK_SECRET"):
        settings.validate_production_settings()


def test_production_rejects_insecure_webhooks():
    """Insecure webhook mode is refused outside development."""
    settings = Settings(
        environment="production",
        stripe_webhook_secret="whsec_live",
        allow_insecure_webhook_test=True,
    )
    with pytest.raises(ValueError, match="ALLOW_INSECURE_WEBHOOK_TEST"):
        settings.validate_production_settings()


def test_production_rejects_fixture_tenants():
    """Fixture tenant data is refused in production."""
    settings = Settings(
        environment="production",
        stripe_webhook_secret="whsec_live",
        tenant_data_provider="fixture",
    )
    with pytest.raises(ValueError, match="TENANT_DATA_PROVIDER"):
        settings.validate_production_settings()


def test_development_allows_fixture_and_insecure_mode():
    """Development may use fixture tenants and unsigned webhooks."""
    settings = Settings(
        environment="development",
        allow_insecure_webhook_test=True,
        tenant_data_provider="fixture",
    )
    settings.validate_production_settings()


def test_development_environments():
    """Development, dev and test count as development; anything else does not."""
    for environment in ("development", "dev", "test", "Development"):
        assert Settings(environment=environment).is_development
    for environment in ("production", "staging"):
        assert not Settings(environment=environment).is_development


def test_app_db_role_must_be_identifier():
    """The migration role name is restricted to a plain SQL identifier."""
    assert Settings(app_db_role="propledger_app").app_db_role == "propledger_app"
    for role in ("app; DROP TABLE audit_log", "app\"role", "1app", ""):
        with pytest.raises(ValidationError):
            Settings(app_db_role=role)


def test_database_url_computed():
    """Database URL falls back to postgres settings."""
    settings = Settings(database_url=None, postgres_user="u", postgres_password="p", postgres_db="d")
    assert settings.database_url_computed == "postgresql://u:p@localhost:5432/d"


def test_provider_selected_by_configuration():
    """Provider kind comes from settings; unknown kinds fail."""
    assert isinstance(
        get_tenant_data_provider(Settings(tenant_data_provider="database")), DatabaseTenantDataProvider
    )
    assert isinstance(
        get_tenant_data_provider(Settings(tenant_data_provider="fixture")), FixtureTenantDataProvider
    )
    with pytest.raises(ValueError):
        get_tenant_data_provider(Settings(tenant_data_provider="ldap"))


def test_database_provider_scopes_by_org(db: Session, test_org, test_tenant):
    """A tenant is only resolved within its own organization."""
    provider = DatabaseTenantDataProvider()

    record = provider.get_tenant(db, test_org.id, test_tenant.id)
    assert record.id == test_tenant.id
    assert record.name == "Test Renter"

    assert provider.get_tenant(db, "other-org", test_tenant.id) is None
    assert provider.get_tenant(db, test_org.id, None) is None


def test_fixture_provider_serves_injected_tenants(db: Session):
    """Fixture provider answers only for the tenants it was given."""
    provider = FixtureTenantDataProvider(FIXTURE_TENANTS)

    tenant = FIXTURE_TENANTS[0]
    assert provider.get_tenant(db, DEMO_ORG_ID, tenant.id) == tenant
    assert provider.get_tenant(db, "other-org", tenant.id) is None


def test_seed_is_idempotent(db: Session):
    """Seeding twice creates the demo data once."""
    seed_all(db)
    seed_all(db)

    assert db.query(Organization).filter(Organization.id == DEMO_ORG_ID).count() == 1
    assert db.query(Tenant).count() == len(FIXTURE_TENANTS)
    assert db.query(Charge).count() == 3
