"""Invoice settlement through the transfer orchestrator."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from gaslesspay.errors import InvoiceStateError, NotFoundError, ValidationError
from gaslesspay.ledger.database import Database
from gaslesspay.ledger.models import Invoice, InvoiceStatus, TransactionRecord, TransactionType
from gaslesspay.ledger.repository import LedgerRepository
from gaslesspay.services.orchestrator import TransactionOrchestrator, TransferResult
from gaslesspay.tokens import round_up_to_decimals

logger = logging.getLogger(__name__)

UNPAYABLE_STATUSES = {InvoiceStatus.PAID, InvoiceStatus.CANCELLED}


def _money(value) -> str:
    return str(Decimal(value or 0))


def invoice_view(invoice: Invoice) -> dict:
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "title": invoice.title,
        "currency": invoice.currency,
        "status": InvoiceStatus(invoice.status).value,
        "total_amount": _money(invoice.total_amount),
        "paid_amount": _money(invoice.paid_amount),
        "remaining_amount": _money(invoice.remaining_amount),
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        "paid_at": invoice.paid_at.isoformat() if invoice.paid_at else None,
    }


@dataclass
class InvoicePaymentResult:
    invoice: dict
    payment: TransferResult

    def to_dict(self) -> dict:
        return {"invoice": self.invoice, "payment": self.payment.to_dict()}


class InvoiceSettlement:
    """Pays invoices in full or in part, and cancels them.

    Payments and cancellation of one invoice are serialized: the invoice is
    re-read and re-validated under its lock, which is held until the payment
    settles. The invoice balance update happens in the same database
    transaction as the payment's confirmation write.
    """

    def __init__(self, db: Database, orchestrator: TransactionOrchestrator):
        self.db = db
        self.orchestrator = orchestrator

    def _invoice_lock(self, invoice_id: int, operation: str):
        return self.orchestrator.locks.lock(
            ("invoice", invoice_id), timeout=self.orchestrator.lock_timeout, operation=operation
        )

    async def pay_in_full(
        self,
        invoice_id: int,
        payer_id: int,
        token_symbol: str,
        signing_password: str,
        description: str = "invoice payment",
        idempotency_key: Optional[str] = None,
    ) -> InvoicePaymentResult:
        """Pay the invoice's entire remaining balance.

        The transfer is the remaining balance rounded up to the token's
        smallest unit; the invoice is credited exactly what it was owed.
        """
        token = self.orchestrator.balances.get_token(token_symbol)

        async with self._invoice_lock(invoice_id, "invoice payment"):
            invoice = await self._load_payable(invoice_id, payer_id)
            remaining = Decimal(invoice.remaining_amount)
            return await self._pay(
                invoice,
                round_up_to_decimals(remaining, token.decimals),
                remaining,
                payer_id,
                token_symbol,
                signing_password,
                description,
                idempotency_key,
            )

    async def pay_partial(
        self,
        invoice_id: int,
        payer_id: int,
        token_symbol: str,
        amount: str,
        signing_password: str,
        description: str = "invoice payment",
        idempotency_key: Optional[str] = None,
    ) -> InvoicePaymentResult:
        """Pay part of the invoice.

        Raises:
            ValidationError: Amount not positive or above the remaining balance
        """
        try:
            payment = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Invalid amount: {amount}")
        if not payment.is_finite() or payment <= 0:
            raise ValidationError("Payment amount must be positive")

        async with self._invoice_lock(invoice_id, "invoice payment"):
            invoice = await self._load_payable(invoice_id, payer_id)
            if payment > Decimal(invoice.remaining_amount):
                raise ValidationError("Payment amount exceeds remaining balance")

            return await self._pay(
                invoice,
                payment,
                payment,
                payer_id,
                token_symbol,
                signing_password,
                description,
                idempotency_key,
            )

    async def _load_payable(self, invoice_id: int, payer_id: int) -> Invoice:
        """Load an invoice that can still take a payment.

        Raises:
            NotFoundError: Unknown invoice, or not issued by the payer
            InvoiceStateError: Paid, cancelled or expired
        """
        async with self.db.session() as session:
            invoice = await LedgerRepository(session).get_invoice(invoice_id)

        if invoice is None or invoice.user_id != payer_id:
            raise NotFoundError("Invoice not found or access denied")

        status = InvoiceStatus(invoice.status)
        if status == InvoiceStatus.PAID:
            raise InvoiceStateError("Invoice already paid in full")
        if status in UNPAYABLE_STATUSES:
            raise InvoiceStateError(f"Invoice is {status.value} and cannot be paid")
        if invoice.is_expired():
            raise InvoiceStateError("Invoice has expired")
        if Decimal(invoice.remaining_amount) <= 0:
            raise InvoiceStateError("Invoice has no remaining balance")
        return invoice

    @staticmethod
    def recipient_identifier(invoice: Invoice) -> str:
        """Registered client user's username or email, else the client's wallet."""
        client = invoice.client
        if client.registered_user is not None:
            return client.registered_user.username or client.registered_user.email
        if client.wallet_address:
            return client.wallet_address
        raise ValidationError("Client does not have a valid payment destination")

    async def _pay(
        self,
        invoice: Invoice,
        amount: Decimal,
        credit: Decimal,
        payer_id: int,
        token_symbol: str,
        signing_password: str,
        description: str,
        idempotency_key: Optional[str],
    ) -> InvoicePaymentResult:
        identifier = self.recipient_identifier(invoice)
        invoice_id = invoice.id

        async def apply_payment(repo: LedgerRepository, record: TransactionRecord) -> None:
            updated = await repo.update_invoice_payment(invoice_id, credit)
            logger.info(
                f"Invoice {updated.invoice_number} paid {credit}; "
                f"remaining {updated.remaining_amount} ({updated.status})"
            )

        payment = await self.orchestrator.create_and_execute(
            sender_id=payer_id,
            recipient_identifier=identifier,
            token_symbol=token_symbol.upper(),
            amount=format(amount, "f"),
            signing_password=signing_password,
            description=f"{description} - Invoice #{invoice.invoice_number}",
            transaction_type=TransactionType.INVOICE,
            invoice_id=invoice_id,
            idempotency_key=idempotency_key,
            after_confirm=apply_payment,
        )

        async with self.db.session() as session:
            refreshed = await LedgerRepository(session).get_invoice(invoice_id)
        return InvoicePaymentResult(invoice=invoice_view(refreshed), payment=payment)

    async def cancel_invoice(self, invoice_id: int, user_id: int) -> dict:
        """Cancel an invoice and every transfer against it that has not started executing.

        Waits for any payment of the invoice in progress to settle first.

        Raises:
            NotFoundError: Unknown invoice, or not issued by the user
            InvoiceStateError: Invoice already paid
        """
        async with self._invoice_lock(invoice_id, "invoice cancellation"):
            async with self.db.session() as session:
                repo = LedgerRepository(session)
                invoice = await repo.get_invoice(invoice_id)
                if invoice is None or invoice.user_id != user_id:
                    raise NotFoundError("Invoice not found or access denied")
                if InvoiceStatus(invoice.status) == InvoiceStatus.PAID:
                    raise InvoiceStateError("Paid invoices cannot be cancelled")

                invoice.status = InvoiceStatus.CANCELLED
                cancelled = await repo.cancel_pending_for_invoice(invoice_id)
                view = invoice_view(invoice)

        logger.info(f"Invoice {invoice_id} cancelled ({cancelled} pending transfers cancelled)")
        return {"invoice": view, "cancelled_transactions": cancelled}

    async def mark_overdue_invoices(self, now: Optional[datetime] = None) -> list[dict]:
        """Flag open invoices whose due date has passed."""
        now = now or datetime.now(timezone.utc)

        results = []
        async with self.db.session() as session:
            for invoice in await LedgerRepository(session).list_overdue_invoices(now):
                invoice.status = InvoiceStatus.OVERDUE
                results.append({"invoice_id": invoice.id, "invoice_number": invoice.invoice_number})

        if results:
            logger.info(f"Marked {len(results)} invoices overdue")
        return results
