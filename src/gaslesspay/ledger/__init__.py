"""Durable transfer ledger: models, database and repository."""

from gaslesspay.ledger.database import Database
from gaslesspay.ledger.models import (
    Base,
    Client,
    Invoice,
    InvoiceStatus,
    PaymentStatus,
    TransactionRecord,
    TransactionType,
    User,
)
from gaslesspay.ledger.repository import HistoryFilters, LedgerRepository

__all__ = [
    "Base",
    "Client",
    "Database",
    "HistoryFilters",
    "Invoice",
    "InvoiceStatus",
    "LedgerRepository",
    "PaymentStatus",
    "TransactionRecord",
    "TransactionType",
    "User",
]
