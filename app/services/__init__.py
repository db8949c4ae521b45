# Services module
from app.services.fiscal_billing_service import FiscalBillingService, BillingOutcome
from app.services.credit_note_service import CreditNoteService
from app.services.fiscal_retry_service import RetryQueueManager, RetryBatchReport
from app.services.invoice_emitter import InvoiceEmitter
from app.services.fiscal_authority_client import FiscalAuthorityClient
from app.services.fiscal_invoice_repository import FiscalInvoiceRepository

__all__ = [
    "FiscalBillingService",
    "BillingOutcome",
    "CreditNoteService",
    "RetryQueueManager",
    "RetryBatchReport",
    "InvoiceEmitter",
    "FiscalAuthorityClient",
    "FiscalInvoiceRepository",
]
