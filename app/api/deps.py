from dataclasses import dataclass
from typing import Annotated, Callable, Optional
import uuid
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.core.security import verify_access_token, verify_cron_secret
from app.services.fiscal_config import FiscalConfig, resolve_fiscal_config
from app.services.invoice_document_service import InvoiceDocumentRenderer
from app.services.invoice_emitter import InvoiceEmitter


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme. Errors are raised by the dependencies below
# so that the retry endpoint can accept either a cron secret or a JWT.
security = HTTPBearer(auto_error=False)

BILLING_ROLES = ("admin", "owner", "reception")
CREDIT_NOTE_ROLES = ("admin", "owner")


@dataclass
class CurrentOperator:
    """Authenticated operator, taken from the JWT claims."""
    id: uuid.UUID
    tenant_id: uuid.UUID
    role: str
    username: Optional[str] = None


@dataclass
class RetryCaller:
    """Caller of the retry endpoint: the scheduler (cron secret) or an operator."""
    is_cron: bool
    operator: Optional[CurrentOperator] = None


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _operator_from_token(token: str) -> Optional[CurrentOperator]:
    claims = verify_access_token(token)
    if claims is None:
        return None
    try:
        return CurrentOperator(
            id=uuid.UUID(claims["sub"]),
            tenant_id=uuid.UUID(claims["tenant_id"]),
            role=str(claims["role"]).lower(),
            username=claims.get("username"),
        )
    except ValueError:
        logger.warning(f"Invalid ids in token for subject {claims.get('sub')}")
        return None


async def get_current_operator(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> CurrentOperator:
    """
    Dependency to get the current authenticated operator.
    Validates the JWT token; the tenant comes from its claims.
    """
    if credentials is None:
        raise _credentials_exception()

    operator = _operator_from_token(credentials.credentials)
    if operator is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise _credentials_exception()
    return operator


def require_roles(*roles: str):
    """
    Dependency factory to require one of the given operator roles.

    Usage:
        @router.post("/", dependencies=[Depends(require_roles("admin", "owner"))])
        async def owner_endpoint():
            ...
    """
    async def role_dependency(
        operator: Annotated[CurrentOperator, Depends(get_current_operator)]
    ) -> CurrentOperator:
        if operator.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied. Required role: {', '.join(roles)}"
            )
        return operator

    return role_dependency


async def get_retry_caller(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> RetryCaller:
    """
    Dependency for the retry endpoint.

    The scheduler authenticates with `Authorization: Bearer <CRON_SECRET>`;
    operators with their JWT and one of the billing roles.
    """
    if credentials is None:
        raise _credentials_exception()

    token = credentials.credentials
    if verify_cron_secret(token):
        return RetryCaller(is_cron=True)

    operator = _operator_from_token(token)
    if operator is None:
        raise _credentials_exception()
    if operator.role not in BILLING_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Permission denied. Required role: {', '.join(BILLING_ROLES)}"
        )
    return RetryCaller(is_cron=False, operator=operator)


# Type aliases for cleaner endpoint signatures
DB = Annotated[AsyncSession, Depends(get_db)]
BillingOperator = Annotated[CurrentOperator, Depends(require_roles(*BILLING_ROLES))]
CreditNoteOperator = Annotated[CurrentOperator, Depends(require_roles(*CREDIT_NOTE_ROLES))]
RetryCallerDep = Annotated[RetryCaller, Depends(get_retry_caller)]


def get_fiscal_config() -> FiscalConfig:
    """Fiscal settings resolved from the application settings."""
    return resolve_fiscal_config()


def get_emitter_factory() -> Callable[[FiscalConfig], InvoiceEmitter]:
    """Builds one InvoiceEmitter per emission attempt."""
    def factory(config: FiscalConfig) -> InvoiceEmitter:
        return InvoiceEmitter(config, renderer=InvoiceDocumentRenderer())
    return factory


FiscalConfigDep = Annotated[FiscalConfig, Depends(get_fiscal_config)]
EmitterFactory = Annotated[Callable[[FiscalConfig], InvoiceEmitter], Depends(get_emitter_factory)]
