"""Repository for ledger operations."""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gaslesspay.errors import InvalidStateTransitionError, InvoiceStateError, NotFoundError
from gaslesspay.ledger.models import (
    ALLOWED_TRANSITIONS,
    Client,
    Invoice,
    InvoiceStatus,
    PaymentStatus,
    TransactionRecord,
    TransactionType,
    User,
)

IN_FLIGHT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.SUBMITTED.value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HistoryFilters:
    """Filters and paging for a user's transaction history."""

    page: int = 1
    limit: int = 20
    status: Optional[str] = None
    transaction_type: Optional[str] = None
    token_symbol: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class LedgerRepository:
    """Repository for all ledger-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # User operations
    async def create_user(
        self,
        username: str,
        email: str,
        smart_account_address: Optional[str] = None,
        wallet_address: Optional[str] = None,
        encrypted_private_key: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        """Create a user account."""
        user = User(
            username=username,
            email=email.lower(),
            smart_account_address=smart_account_address,
            wallet_address=wallet_address,
            encrypted_private_key=encrypted_private_key,
            first_name=first_name,
            last_name=last_name,
        )
        self.session.add(user)
        await self.session.flush()
        return user

    async def get_user(self, user_id: int) -> Optional[User]:
        """Get user by internal ID."""
        return await self.session.get(User, user_id)

    async def find_user_by_login(self, identifier: str) -> Optional[User]:
        """Find a user by username or email."""
        stmt = select(User).where(
            or_(User.username == identifier, User.email == identifier.lower())
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def find_user_by_address(self, address: str) -> Optional[User]:
        """Find the user owning an EOA or smart account address."""
        needle = address.lower()
        stmt = select(User).where(
            or_(
                func.lower(User.wallet_address) == needle,
                func.lower(User.smart_account_address) == needle,
            )
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    # Client and invoice operations
    async def create_client(
        self,
        owner_id: int,
        client_user_id: Optional[int] = None,
        wallet_address: Optional[str] = None,
        business_name: Optional[str] = None,
        contact_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Client:
        """Create an invoice counterparty."""
        client = Client(
            owner_id=owner_id,
            client_user_id=client_user_id,
            wallet_address=wallet_address,
            business_name=business_name,
            contact_name=contact_name,
            email=email,
        )
        self.session.add(client)
        await self.session.flush()
        return client

    async def create_invoice(
        self,
        invoice_number: str,
        user_id: int,
        client_id: int,
        title: str,
        total_amount: Decimal,
        due_date: datetime,
        expiry_date: Optional[datetime] = None,
        status: InvoiceStatus = InvoiceStatus.SENT,
        currency: str = "USD",
    ) -> Invoice:
        """Create an invoice with its full total outstanding."""
        invoice = Invoice(
            invoice_number=invoice_number,
            user_id=user_id,
            client_id=client_id,
            title=title,
            currency=currency,
            total_amount=total_amount,
            paid_amount=Decimal("0"),
            remaining_amount=total_amount,
            status=status,
            due_date=due_date,
            expiry_date=expiry_date,
        )
        self.session.add(invoice)
        await self.session.flush()
        return invoice

    async def get_invoice(self, invoice_id: int) -> Optional[Invoice]:
        """Get invoice with its issuer and client loaded."""
        return await self.session.get(Invoice, invoice_id)

    async def update_invoice_payment(self, invoice_id: int, amount: Decimal) -> Invoice:
        """Add a confirmed payment to an invoice's paid/remaining balance.

        Raises:
            NotFoundError: Unknown invoice
            InvoiceStateError: Payment larger than the remaining balance
        """
        invoice = await self.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")

        remaining = Decimal(invoice.remaining_amount)
        if amount > remaining:
            raise InvoiceStateError(
                f"Payment {amount} exceeds remaining balance {remaining} "
                f"on invoice {invoice.invoice_number}"
            )

        self._apply_paid(invoice, Decimal(invoice.paid_amount or 0) + amount)
        await self.session.flush()
        return invoice

    async def set_invoice_paid_amount(self, invoice_id: int, paid: Decimal) -> Invoice:
        """Overwrite an invoice's paid total, e.g. from confirmed transfers."""
        invoice = await self.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")

        self._apply_paid(invoice, paid)
        await self.session.flush()
        return invoice

    @staticmethod
    def _apply_paid(invoice: Invoice, paid: Decimal) -> None:
        remaining = Decimal(invoice.total_amount) - paid
        invoice.paid_amount = paid
        invoice.remaining_amount = remaining

        if remaining <= 0:
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = invoice.paid_at or utcnow()
        elif InvoiceStatus(invoice.status) != InvoiceStatus.CANCELLED and paid > 0:
            invoice.status = InvoiceStatus.PARTIAL

    async def list_overdue_invoices(self, now: datetime) -> list[Invoice]:
        """Open invoices whose due date has passed."""
        closed = (
            InvoiceStatus.PAID.value,
            InvoiceStatus.CANCELLED.value,
            InvoiceStatus.OVERDUE.value,
        )
        stmt = select(Invoice).where(Invoice.status.not_in(closed), Invoice.due_date < now)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def cancel_pending_for_invoice(self, invoice_id: int) -> int:
        """Move an invoice's PENDING transfers that never started executing to CANCELLED.

        Transfers already signing or waiting on the relay are left to finish.

        Returns:
            Number of transfer records cancelled
        """
        stmt = (
            update(TransactionRecord)
            .where(
                TransactionRecord.invoice_id == invoice_id,
                TransactionRecord.status == PaymentStatus.PENDING.value,
                TransactionRecord.execution_started_at.is_(None),
            )
            .values(status=PaymentStatus.CANCELLED.value, updated_at=utcnow())
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def list_confirmed_invoice_payments(
        self, invoice_id: Optional[int] = None
    ) -> list[TransactionRecord]:
        """Confirmed transfers that paid an invoice (or the given one), oldest first."""
        conditions = [
            TransactionRecord.invoice_id.is_not(None),
            TransactionRecord.status == PaymentStatus.CONFIRMED.value,
        ]
        if invoice_id is not None:
            conditions.append(TransactionRecord.invoice_id == invoice_id)

        stmt = (
            select(TransactionRecord)
            .where(*conditions)
            .order_by(TransactionRecord.invoice_id, TransactionRecord.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Transaction record operations
    async def create_transaction(
        self,
        transaction_id: str,
        sender_id: int,
        recipient_id: Optional[int],
        recipient_address: str,
        recipient_identifier: str,
        token_address: str,
        token_symbol: str,
        amount: int,
        amount_usd: Decimal,
        transaction_type: TransactionType = TransactionType.DIRECT,
        invoice_id: Optional[int] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        platform_fee: Optional[Decimal] = None,
        metadata: Optional[dict] = None,
    ) -> TransactionRecord:
        """Create a transfer record in PENDING."""
        record = TransactionRecord(
            transaction_id=transaction_id,
            idempotency_key=idempotency_key,
            sender_id=sender_id,
            recipient_id=recipient_id,
            recipient_address=recipient_address,
            recipient_identifier=recipient_identifier,
            token_address=token_address,
            token_symbol=token_symbol.upper(),
            amount=Decimal(amount),
            amount_usd=amount_usd,
            platform_fee=platform_fee,
            transaction_type=transaction_type,
            invoice_id=invoice_id,
            description=description,
            status=PaymentStatus.PENDING,
            metadata_=dict(metadata or {}),
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def get_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        """Get a transfer record by its external ID."""
        stmt = select(TransactionRecord).where(TransactionRecord.transaction_id == transaction_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_transaction_by_idempotency_key(
        self, sender_id: int, idempotency_key: str
    ) -> Optional[TransactionRecord]:
        """Get the record a sender already created under an idempotency key."""
        stmt = select(TransactionRecord).where(
            TransactionRecord.sender_id == sender_id,
            TransactionRecord.idempotency_key == idempotency_key,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _load_for_transition(self, transaction_id: str) -> TransactionRecord:
        record = await self.get_transaction(transaction_id)
        if record is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return record

    def transition(self, record: TransactionRecord, target: PaymentStatus) -> None:
        """Set a record's status if the move is allowed.

        Raises:
            InvalidStateTransitionError: Move is not forward in the state machine
        """
        current = PaymentStatus(record.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStateTransitionError(record.transaction_id, current.value, target.value)
        record.status = target

    async def mark_execution_started(self, transaction_id: str) -> bool:
        """Stamp a PENDING record as executing.

        Returns:
            False if the record is no longer PENDING (e.g. cancelled meanwhile)
        """
        stmt = (
            update(TransactionRecord)
            .where(
                TransactionRecord.transaction_id == transaction_id,
                TransactionRecord.status == PaymentStatus.PENDING.value,
            )
            .values(execution_started_at=utcnow(), updated_at=utcnow())
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def record_user_op_hash(
        self, transaction_id: str, user_op_hash: str
    ) -> TransactionRecord:
        """Keep the relay's handle on a submitted operation before its receipt arrives."""
        record = await self._load_for_transition(transaction_id)
        record.metadata_ = {**(record.metadata_ or {}), "user_op_hash": user_op_hash}

        await self.session.flush()
        return record

    async def mark_submitted(
        self,
        transaction_id: str,
        tx_hash: str,
        metadata: Optional[dict] = None,
    ) -> TransactionRecord:
        """Move PENDING -> SUBMITTED, recording the chain hash."""
        record = await self._load_for_transition(transaction_id)
        self.transition(record, PaymentStatus.SUBMITTED)
        record.blockchain_tx_hash = tx_hash
        record.submitted_at = utcnow()
        if metadata:
            record.metadata_ = {**(record.metadata_ or {}), **metadata}

        await self.session.flush()
        return record

    async def mark_confirmed(
        self,
        transaction_id: str,
        block_number: Optional[int],
        gas_used: Optional[int],
    ) -> TransactionRecord:
        """Move SUBMITTED -> CONFIRMED, recording inclusion details."""
        record = await self._load_for_transition(transaction_id)
        self.transition(record, PaymentStatus.CONFIRMED)
        record.block_number = block_number
        record.gas_used = gas_used
        record.confirmed_at = utcnow()

        await self.session.flush()
        return record

    async def mark_failed(
        self,
        transaction_id: str,
        reason: str,
        metadata: Optional[dict] = None,
    ) -> TransactionRecord:
        """Move PENDING or SUBMITTED -> FAILED."""
        record = await self._load_for_transition(transaction_id)
        self.transition(record, PaymentStatus.FAILED)
        record.failure_reason = reason
        if metadata:
            record.metadata_ = {**(record.metadata_ or {}), **metadata}

        await self.session.flush()
        return record

    async def list_user_transactions(
        self, user_id: int, filters: HistoryFilters
    ) -> tuple[list[TransactionRecord], int]:
        """List records where the user is sender or recipient, newest first.

        Returns:
            Tuple of (page of records, total matching count)
        """
        conditions = [
            or_(TransactionRecord.sender_id == user_id, TransactionRecord.recipient_id == user_id)
        ]
        if filters.status:
            conditions.append(TransactionRecord.status == filters.status)
        if filters.transaction_type:
            conditions.append(TransactionRecord.transaction_type == filters.transaction_type)
        if filters.token_symbol:
            conditions.append(TransactionRecord.token_symbol == filters.token_symbol.upper())
        if filters.start_date:
            conditions.append(TransactionRecord.created_at >= filters.start_date)
        if filters.end_date:
            conditions.append(TransactionRecord.created_at <= filters.end_date)

        count_stmt = select(func.count(TransactionRecord.id)).where(*conditions)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(TransactionRecord)
            .where(*conditions)
            .order_by(TransactionRecord.created_at.desc(), TransactionRecord.id.desc())
            .limit(filters.limit)
            .offset((filters.page - 1) * filters.limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all()), total

    async def total_sent_usd(self, user_id: int) -> Decimal:
        """Sum of confirmed outgoing transfers in USD."""
        stmt = select(func.coalesce(func.sum(TransactionRecord.amount_usd), 0)).where(
            TransactionRecord.sender_id == user_id,
            TransactionRecord.status == PaymentStatus.CONFIRMED.value,
        )
        return Decimal(str((await self.session.execute(stmt)).scalar_one()))

    async def total_received_usd(self, user_id: int) -> Decimal:
        """Sum of confirmed incoming transfers in USD."""
        stmt = select(func.coalesce(func.sum(TransactionRecord.amount_usd), 0)).where(
            TransactionRecord.recipient_id == user_id,
            TransactionRecord.status == PaymentStatus.CONFIRMED.value,
        )
        return Decimal(str((await self.session.execute(stmt)).scalar_one()))

    async def count_in_flight(self, user_id: int) -> int:
        """Count the user's records still pending or submitted."""
        stmt = select(func.count(TransactionRecord.id)).where(
            or_(TransactionRecord.sender_id == user_id, TransactionRecord.recipient_id == user_id),
            TransactionRecord.status.in_(IN_FLIGHT_STATUSES),
        )
        return (await self.session.execute(stmt)).scalar_one()

    async def list_stale_transactions(self, older_than: datetime) -> list[TransactionRecord]:
        """Records stuck in PENDING or SUBMITTED since before a cutoff."""
        stmt = (
            select(TransactionRecord)
            .where(
                TransactionRecord.status.in_(IN_FLIGHT_STATUSES),
                TransactionRecord.created_at < older_than,
            )
            .order_by(TransactionRecord.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
