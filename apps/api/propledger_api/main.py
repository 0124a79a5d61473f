"""PropLedger API - Main FastAPI application."""

import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy import text

from propledger_api.middleware.correlation import CorrelationIDMiddleware
from propledger_api.middleware.org_context import OrgContextMiddleware
from propledger_api.routes import audit, payments, webhooks
from propledger_api.settings import get_settings

# Configure logging
logging.basicConfig(
    level=get_settings().log_level,
    format='{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s", "module": "%(name)s"}',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

ALEMBIC_INI_PATH = os.path.join(os.path.dirname(__file__), "..", "alembic.ini")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting PropLedger API...")
    try:
        settings.validate_production_settings()

        from propledger_api.tenants.provider import get_tenant_data_provider
        provider = get_tenant_data_provider(settings)
        logger.info(f"Tenant data provider initialized: {provider.__class__.__name__}")
    except Exception as e:
        logger.error(f"Configuration validation failed: {e}")
        raise ValueError(f"Invalid configuration: {e}") from e

    yield
    logger.info("Shutting down PropLedger API...")


app = FastAPI(
    title="PropLedger API",
    description="Audit ledger, payment allocation and payment webhooks for property management",
    version="0.1.0",
    lifespan=lifespan,
)

settings = get_settings()

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Custom middleware (order matters - last added is first executed)
app.add_middleware(OrgContextMiddleware)
app.add_middleware(CorrelationIDMiddleware)

# Prometheus metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# Register routers
app.include_router(webhooks.router)
app.include_router(audit.router)
app.include_router(payments.router)


@app.get("/health")
async def health_check():
    """Health check endpoint (basic liveness)."""
    return {
        "status": "healthy",
        "service": "propledger-api",
        "version": "0.1.0",
    }


@app.get("/ready")
def readiness_check():
    """Readiness check endpoint (verifies database and migrations)."""
    from propledger_api.db.session import SessionLocal

    checks = {
        "database": False,
        "migrations": False,
    }

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error(f"Database check failed: {e}")
    finally:
        db.close()

    # Check Alembic migrations are at head
    if checks["database"]:
        try:
            from alembic.config import Config
            from alembic.runtime.migration import MigrationContext
            from alembic.script import ScriptDirectory

            db = SessionLocal()
            try:
                context = MigrationContext.configure(db.connection())
                current_rev = context.get_current_revision()

                script = ScriptDirectory.from_config(Config(ALEMBIC_INI_PATH))
                head_rev = script.get_current_head()

                if current_rev == head_rev:
                    checks["migrations"] = True
                else:
                    logger.warning(f"Migrations not at head: current={current_rev}, head={head_rev}")
            finally:
                db.close()
        except Exception as e:
            logger.error(f"Migration check failed: {e}")

    all_ready = all(checks.values())
    return JSONResponse(
        content={
            "status": "ready" if all_ready else "not_ready",
            "checks": checks,
        },
        status_code=200 if all_ready else 503,
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "PropLedger API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }
