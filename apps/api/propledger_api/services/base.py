"""Base service class with organization scoping guardrails."""

from typing import Optional

from sqlalchemy.orm import Session


class BaseService:
    """Base service with organization isolation enforcement.

    The org id is trusted: it is validated upstream before any service is
    called. This class only guarantees that one is present and applied.
    """

    def __init__(self, db: Session, org_id: Optional[str] = None):
        """Initialize service with organization context."""
        self.db = db
        self.org_id = org_id

    def _enforce_org(self, org_id: Optional[str] = None) -> str:
        """Enforce org_id is set and return it."""
        org_id = org_id or self.org_id
        if not org_id:
            raise ValueError("org_id must be provided for organization-scoped operations")
        return org_id

    def _ensure_org_filter(self, query, org_id: Optional[str] = None):
        """Apply the org_id filter of the query's primary entity."""
        org_id = self._enforce_org(org_id)
        return query.filter(getattr(query.column_descriptions[0]["entity"], "org_id") == org_id)
