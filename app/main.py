from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.api.v1.router import api_router
from app.database import init_db, async_session_factory
from app.jobs.scheduler import start_scheduler, shutdown_scheduler


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create missing tables (Alembic owns production migrations)
    - Start the fiscal retry scheduler when enabled
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    if settings.FISCAL_RETRY_SCHEDULER_ENABLED:
        start_scheduler()

    yield

    # Shutdown
    shutdown_scheduler()
    logger.info("Shutting down...")


# OpenAPI Tags with detailed descriptions
OPENAPI_TAGS = [
    {"name": "Fiscal Invoices", "description": "ARCA/AFIP electronic invoices, credit notes and the pending retry queue"},
    {"name": "Health", "description": "Liveness and database connectivity"},
]

FULL_API_DESCRIPTION = """
## Fiscal Billing API

Electronic invoicing against ARCA/AFIP (WSFE) for completed sales.

### Behaviour

- Billing a sale never fails the sale: when the authority cannot authorize
  the voucher, the invoice is stored as **pending** and retried later.
- Pending invoices are retried by the scheduler (`Bearer <CRON_SECRET>`) or by
  an operator through `/api/v1/fiscal-invoices/retries`.

### Authentication

Operator endpoints require a JWT carrying `tenant_id` and `role` claims.
Include token in Authorization header: `Bearer <token>`

### Error Codes

| Code | Description |
|------|-------------|
| 400 | Bad Request - Sale cannot be billed |
| 401 | Unauthorized - Invalid/expired token |
| 403 | Forbidden - Insufficient role |
| 404 | Not Found - Invoice doesn't exist |
| 409 | Conflict - Invoice state does not allow the operation |
| 502 | Bad Gateway - Fiscal authority error |
| 503 | Service Unavailable - Fiscal settings incomplete |

The `X-Error-Code` header carries the machine-readable error code.
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=FULL_API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    from sqlalchemy import text
    from datetime import datetime, timezone

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
    }
