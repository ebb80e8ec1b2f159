"""Reconciliation of transfer records left in flight by a crashed process.

A record normally reaches a terminal state within the call that created it.
Records still PENDING or SUBMITTED after the stale threshold were abandoned;
this service settles them against chain state. A second pass brings invoice
balances in line with the confirmed transfers that paid them.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from decimal import Decimal
from itertools import groupby
from typing import Optional

from gaslesspay.chain.rpc import JsonRpcClient
from gaslesspay.gasless.bundler import BundlerClient, to_int
from gaslesspay.ledger.database import Database
from gaslesspay.ledger.models import Invoice, InvoiceStatus, PaymentStatus, TransactionRecord
from gaslesspay.ledger.repository import LedgerRepository, utcnow
from gaslesspay.tokens import format_units

logger = logging.getLogger(__name__)

ABANDONED_REASON = "Abandoned before submission"


@dataclass
class ReconciliationOutcome:
    transaction_id: str
    previous_status: str
    new_status: Optional[str]
    detail: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class InvoiceReconciliationOutcome:
    invoice_id: int
    invoice_number: str
    recorded_paid: str
    ledger_paid: str
    # None in report mode
    new_status: Optional[str]

    def to_dict(self) -> dict:
        return asdict(self)


def ledger_paid_amount(invoice: Invoice, payments: list[TransactionRecord]) -> Decimal:
    """What the invoice's confirmed transfers paid, capped at its total.

    A full payment is rounded up to the token's smallest unit, so the sum may
    exceed the total by less than one unit.
    """
    paid = sum(
        (Decimal(format_units(p.amount_units, p.token_decimals)) for p in payments), Decimal(0)
    )
    return min(paid, Decimal(invoice.total_amount))


class ReconciliationService:
    """Finds stale in-flight records and settles them.

    Records carrying a user operation hash are settled from the bundler's
    receipt. Records with a chain hash are confirmed or failed from their
    on-chain receipt. Records with neither never reached the relay and are
    failed. Records with no receipt yet are left alone.
    """

    def __init__(
        self,
        db: Database,
        rpc: JsonRpcClient,
        stale_after_minutes: int = 30,
        bundler: Optional[BundlerClient] = None,
    ):
        self.db = db
        self.rpc = rpc
        self.bundler = bundler
        self.stale_after = timedelta(minutes=stale_after_minutes)

    async def find_stale(self) -> list[TransactionRecord]:
        cutoff = utcnow() - self.stale_after
        async with self.db.session() as session:
            return await LedgerRepository(session).list_stale_transactions(cutoff)

    async def resolve(self, record: TransactionRecord, fix: bool = True) -> ReconciliationOutcome:
        """Decide a stale record's terminal state; write it only when ``fix``."""
        previous = PaymentStatus(record.status)

        if not record.blockchain_tx_hash:
            user_op_hash = (record.metadata_ or {}).get("user_op_hash")
            if user_op_hash:
                return await self._resolve_user_operation(record, previous, user_op_hash, fix)
            return await self._settle(
                record, previous, PaymentStatus.FAILED, ABANDONED_REASON, fix
            )

        receipt = await self.rpc.get_transaction_receipt(record.blockchain_tx_hash)
        if receipt is None:
            return self._unchanged(record, previous, "No receipt yet")

        if to_int(receipt.get("status")) == 1:
            return await self._settle(
                record,
                previous,
                PaymentStatus.CONFIRMED,
                f"Included in block {to_int(receipt.get('blockNumber'))}",
                fix,
                block_number=to_int(receipt.get("blockNumber")),
                gas_used=to_int(receipt.get("gasUsed")),
            )

        return await self._settle(
            record, previous, PaymentStatus.FAILED, "Transaction reverted on-chain", fix
        )

    async def _resolve_user_operation(
        self,
        record: TransactionRecord,
        previous: PaymentStatus,
        user_op_hash: str,
        fix: bool,
    ) -> ReconciliationOutcome:
        # The relay holds it; only its receipt can settle the record
        if self.bundler is None:
            detail = f"Submitted as {user_op_hash}; no bundler to ask"
            return self._unchanged(record, previous, detail)

        receipt = await self.bundler.get_receipt(user_op_hash)
        if receipt is None:
            return self._unchanged(record, previous, f"No receipt yet for {user_op_hash}")

        if receipt.success:
            return await self._settle(
                record,
                previous,
                PaymentStatus.CONFIRMED,
                f"Included in block {receipt.block_number}",
                fix,
                tx_hash=receipt.transaction_hash,
                block_number=receipt.block_number,
                gas_used=receipt.gas_used,
            )

        return await self._settle(
            record,
            previous,
            PaymentStatus.FAILED,
            receipt.reason or "User operation reverted on-chain",
            fix,
        )

    @staticmethod
    def _unchanged(
        record: TransactionRecord, previous: PaymentStatus, detail: str
    ) -> ReconciliationOutcome:
        return ReconciliationOutcome(
            transaction_id=record.transaction_id,
            previous_status=previous.value,
            new_status=None,
            detail=detail,
        )

    async def _settle(
        self,
        record: TransactionRecord,
        previous: PaymentStatus,
        target: PaymentStatus,
        detail: str,
        fix: bool,
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None,
        gas_used: Optional[int] = None,
    ) -> ReconciliationOutcome:
        if fix:
            async with self.db.session() as session:
                repo = LedgerRepository(session)
                if target == PaymentStatus.FAILED:
                    await repo.mark_failed(record.transaction_id, detail)
                else:
                    if previous == PaymentStatus.PENDING:
                        await repo.mark_submitted(
                            record.transaction_id, tx_hash or record.blockchain_tx_hash
                        )
                    await repo.mark_confirmed(record.transaction_id, block_number, gas_used)
                    if record.invoice_id is not None:
                        await self._credit_invoice(repo, record.invoice_id)
            logger.info(f"Reconciled {record.transaction_id}: {previous.value} -> {target.value}")

        return ReconciliationOutcome(
            transaction_id=record.transaction_id,
            previous_status=previous.value,
            new_status=target.value,
            detail=detail,
        )

    async def _credit_invoice(self, repo: LedgerRepository, invoice_id: int) -> None:
        invoice = await repo.get_invoice(invoice_id)
        payments = await repo.list_confirmed_invoice_payments(invoice_id)
        paid = ledger_paid_amount(invoice, payments)
        if paid > Decimal(invoice.paid_amount or 0):
            await repo.set_invoice_paid_amount(invoice_id, paid)

    async def run(self, fix: bool = False) -> list[ReconciliationOutcome]:
        """Resolve every stale record; a failure on one record does not stop the rest."""
        outcomes = []
        for record in await self.find_stale():
            try:
                outcomes.append(await self.resolve(record, fix=fix))
            except Exception as e:
                logger.error(f"Failed to reconcile {record.transaction_id}: {e}")
                outcomes.append(
                    ReconciliationOutcome(
                        transaction_id=record.transaction_id,
                        previous_status=PaymentStatus(record.status).value,
                        new_status=None,
                        detail=f"Error: {e}",
                    )
                )
        return outcomes

    async def reconcile_invoices(self, fix: bool = False) -> list[InvoiceReconciliationOutcome]:
        """Find invoices credited less than their confirmed transfers paid.

        Covers confirmations whose invoice write failed. Balances are only ever
        raised to match the ledger.
        """
        outcomes = []
        async with self.db.session() as session:
            repo = LedgerRepository(session)
            payments = await repo.list_confirmed_invoice_payments()

            for invoice_id, records in groupby(payments, key=lambda p: p.invoice_id):
                invoice = await repo.get_invoice(invoice_id)
                recorded = Decimal(invoice.paid_amount or 0)
                paid = ledger_paid_amount(invoice, list(records))
                if paid <= recorded:
                    continue

                new_status = None
                if fix:
                    await repo.set_invoice_paid_amount(invoice_id, paid)
                    new_status = InvoiceStatus(invoice.status).value
                    logger.info(
                        f"Reconciled invoice {invoice.invoice_number}: paid {recorded} -> {paid}"
                    )

                outcomes.append(
                    InvoiceReconciliationOutcome(
                        invoice_id=invoice_id,
                        invoice_number=invoice.invoice_number,
                        recorded_paid=str(recorded),
                        ledger_paid=str(paid),
                        new_status=new_status,
                    )
                )
        return outcomes
