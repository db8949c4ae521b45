from fastapi import APIRouter

from app.api.v1.endpoints import fiscal_invoices


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Fiscal Invoices (ARCA/AFIP) ====================
api_router.include_router(
    fiscal_invoices.router,
    prefix="/fiscal-invoices",
    tags=["Fiscal Invoices"]
)
