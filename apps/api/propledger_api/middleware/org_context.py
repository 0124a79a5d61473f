"""Organization context middleware.

The organization id arrives already validated by the upstream gateway in the
``x-org-id`` header; this middleware only carries it into request state.
"""

import logging

from fastapi import HTTPException, Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

ORG_HEADER = "x-org-id"

# Paths that are not organization-scoped
UNSCOPED_PREFIXES = ("/health", "/ready", "/metrics", "/docs", "/openapi.json", "/webhook")


class OrgContextMiddleware(BaseHTTPMiddleware):
    """Attach the caller's organization id to the request."""

    async def dispatch(self, request: Request, call_next):
        """Process request with organization context."""
        path = request.url.path
        if path == "/" or path.startswith(UNSCOPED_PREFIXES):
            return await call_next(request)

        org_id = request.headers.get(ORG_HEADER)
        if not org_id:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"detail": f"Missing organization context. Provide {ORG_HEADER} header."},
            )

        request.state.org_id = org_id
        logger.debug(
            "Organization context set",
            extra={
                "org_id": org_id,
                "correlation_id": getattr(request.state, "correlation_id", None),
                "path": path,
            },
        )
        return await call_next(request)


def get_org_id(request: Request) -> str:
    """Dependency returning the organization id of the current request."""
    org_id = getattr(request.state, "org_id", None)
    if not org_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing organization context. Provide {ORG_HEADER} header.",
        )
    return org_id
