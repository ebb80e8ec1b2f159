"""Exception hierarchy for transfer orchestration."""

from decimal import Decimal
from typing import Optional


class GaslessPayError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(GaslessPayError):
    """Malformed or unsupported input, rejected before anything is persisted."""


class NotFoundError(GaslessPayError):
    """Sender, recipient, invoice or transaction does not exist."""


class RecipientResolutionError(NotFoundError):
    """Recipient identifier matches no account or address."""

    def __init__(self, identifier: str, reason: Optional[str] = None):
        self.identifier = identifier
        super().__init__(reason or f"Recipient not found: {identifier}")


class InsufficientBalanceError(GaslessPayError):
    """Sender balance does not cover the requested amount."""

    def __init__(self, symbol: str, required: Decimal | str, available: Decimal | str):
        self.symbol = symbol
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient {symbol} balance. Required: {required}, Available: {available}"
        )


class InvoiceStateError(ValidationError):
    """Invoice cannot accept a payment (paid, cancelled or expired)."""


class ExecutionError(GaslessPayError):
    """Base for failures inside the sponsored execution path."""


class SigningError(ExecutionError):
    """Key unlock, permit construction or signing failed."""


class SubmissionError(ExecutionError):
    """Relay rejected the operation or broadcast failed."""


class ReceiptTimeoutError(ExecutionError):
    """Relay did not report an inclusion receipt in time."""


class TransactionFailedError(GaslessPayError):
    """A persisted transfer ended in the failed state."""

    def __init__(self, transaction_id: str, reason: str):
        self.transaction_id = transaction_id
        self.reason = reason
        super().__init__(f"Transaction failed: {reason}")


class ConversionError(GaslessPayError):
    """Every applicable rate provider failed."""

    def __init__(self, message: str, errors: Optional[dict[str, str]] = None):
        self.errors = errors or {}
        super().__init__(message)


class InvalidStateTransitionError(GaslessPayError):
    """Ledger refused a non-monotonic status change."""

    def __init__(self, transaction_id: str, current: str, target: str):
        self.transaction_id = transaction_id
        self.current = current
        self.target = target
        super().__init__(
            f"Transaction {transaction_id} cannot move from {current} to {target}"
        )


class LockTimeoutError(GaslessPayError):
    """Raised when a lock cannot be acquired within the timeout period."""
