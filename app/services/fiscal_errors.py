"""
Fiscal emission error taxonomy.

Every failure raised by the emission engine is a FiscalError. Authority
failures additionally carry a normalized AuthorityError so that callers
branch on its category instead of parsing messages.

    FiscalError
    ├── ConfigurationError          fatal, never retried
    ├── InvalidEmissionRequest      sale data cannot be billed
    ├── InvoiceNotFound
    ├── InvoiceStateConflict        operation not allowed in the current status
    ├── IssuedNotRecordedError      authorized upstream, local write failed
    └── AuthorityCallError
        ├── AuthenticationFailed
        ├── AuthorityRejected
        │   └── DesynchronizationError
        └── AuthorityUnavailable
            └── AmbiguousOutcome
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, Optional


class AuthorityErrorCategory(str, Enum):
    """Recovery class of an authority failure."""
    DESYNCHRONIZATION = "desynchronization"
    REJECTED = "rejected"
    AUTHENTICATION = "authentication"
    UNAVAILABLE = "unavailable"
    AMBIGUOUS = "ambiguous"
    MISSING_CREDENTIALS = "missing_credentials"


@dataclass
class AuthorityError:
    """Normalized view of one failed authority call."""
    code: Optional[str]
    message: str
    category: AuthorityErrorCategory
    status_code: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message


class FiscalError(Exception):
    """Base exception for fiscal emission errors."""
    def __init__(self, message: str, error_code: str = None, details: Dict = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(FiscalError):
    """Fiscal settings are incomplete or invalid. Retrying cannot help."""


class InvalidEmissionRequest(FiscalError):
    """The sale cannot be turned into a voucher (no billable lines, total <= 0)."""


class InvoiceNotFound(FiscalError):
    """The invoice does not exist for the caller's tenant."""


class InvoiceStateConflict(FiscalError):
    """The invoice is not in a state that allows the operation."""


class ClaimLostError(FiscalError):
    """Another caller took over a pending invoice while it was being emitted."""


class IssuedNotRecordedError(FiscalError):
    """The authority issued a CAE but the local invoice row could not be written."""
    def __init__(
        self,
        message: str,
        voucher_number: int,
        cae: str,
        point_of_sale: int = None,
        voucher_type: int = None,
        details: Dict = None,
    ):
        super().__init__(message, error_code="ISSUED_NOT_RECORDED", details=details)
        self.voucher_number = voucher_number
        self.cae = cae
        self.point_of_sale = point_of_sale
        self.voucher_type = voucher_type


class AuthorityCallError(FiscalError):
    """A call to the fiscal authority failed."""
    def __init__(self, error: AuthorityError, context: str = None):
        message = f"{context}: {error.message}" if context else error.message
        super().__init__(message, error_code=error.code, details=error.details)
        self.error = error

    @property
    def category(self) -> AuthorityErrorCategory:
        return self.error.category


class AuthenticationFailed(AuthorityCallError):
    """The gateway refused our credentials (HTTP 401 or missing certificate)."""


class AuthorityRejected(AuthorityCallError):
    """The authority answered with a structured rejection."""


class DesynchronizationError(AuthorityRejected):
    """The submitted number or date is not the one the authority expects next."""


class AuthorityUnavailable(AuthorityCallError):
    """Network failure, timeout or 5xx. The voucher was not authorized."""


class AmbiguousOutcome(AuthorityUnavailable):
    """
    The authorization request was sent but no answer arrived.

    The voucher may or may not exist upstream. It must be resolved by
    querying the authority for ``voucher_number``, never by blind resubmission.
    """
    def __init__(
        self,
        error: AuthorityError,
        voucher_number: int,
        point_of_sale: int,
        voucher_type: int,
        fiscal_date: Optional[date] = None,
        context: str = None,
    ):
        super().__init__(error, context=context)
        self.voucher_number = voucher_number
        self.point_of_sale = point_of_sale
        self.voucher_type = voucher_type
        self.fiscal_date = fiscal_date


_CATEGORY_EXCEPTIONS = {
    AuthorityErrorCategory.DESYNCHRONIZATION: DesynchronizationError,
    AuthorityErrorCategory.REJECTED: AuthorityRejected,
    AuthorityErrorCategory.AUTHENTICATION: AuthenticationFailed,
    AuthorityErrorCategory.MISSING_CREDENTIALS: AuthenticationFailed,
    AuthorityErrorCategory.UNAVAILABLE: AuthorityUnavailable,
}


def authority_exception(error: AuthorityError, context: str = None) -> AuthorityCallError:
    """Build the exception class matching a normalized error's category."""
    exc_class = _CATEGORY_EXCEPTIONS.get(error.category, AuthorityCallError)
    return exc_class(error, context=context)
