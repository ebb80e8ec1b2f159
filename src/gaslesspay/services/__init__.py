"""Application services."""

from gaslesspay.services.balances import BalanceService, TokenBalance
from gaslesspay.services.invoices import InvoicePaymentResult, InvoiceSettlement
from gaslesspay.services.orchestrator import TransactionOrchestrator, TransferResult
from gaslesspay.services.reconciliation import ReconciliationOutcome, ReconciliationService
from gaslesspay.services.recipients import RecipientResolver, ResolvedRecipient

__all__ = [
    "BalanceService",
    "InvoicePaymentResult",
    "InvoiceSettlement",
    "ReconciliationOutcome",
    "ReconciliationService",
    "RecipientResolver",
    "ResolvedRecipient",
    "TokenBalance",
    "TransactionOrchestrator",
    "TransferResult",
]
