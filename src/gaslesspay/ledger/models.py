"""SQLAlchemy models for the transfer ledger."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class PaymentStatus(str, Enum):
    """Status of a transfer record."""

    PENDING = "pending"          # Persisted; executing once execution_started_at is set
    SUBMITTED = "submitted"      # Accepted by the relay, hash known
    CONFIRMED = "confirmed"      # Included on chain
    FAILED = "failed"            # Terminal failure at any stage
    CANCELLED = "cancelled"      # Invoice cancelled before execution


class TransactionType(str, Enum):
    """Why a transfer was made."""

    DIRECT = "direct"
    INVOICE = "invoice"


class InvoiceStatus(str, Enum):
    """Status of an invoice."""

    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class User(Base):
    """Platform account holding an encrypted signing key and a smart account."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Owner EOA and the ERC-4337 account it controls
    wallet_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True, index=True)
    smart_account_address: Mapped[Optional[str]] = mapped_column(
        String(42), nullable=True, index=True
    )
    encrypted_private_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class Client(Base):
    """Invoice counterparty, optionally linked to a registered user."""

    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    client_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )
    business_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    contact_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    # Relationships
    owner: Mapped["User"] = relationship(foreign_keys=[owner_id], lazy="selectin")
    registered_user: Mapped[Optional["User"]] = relationship(
        foreign_keys=[client_user_id], lazy="selectin"
    )


class Invoice(Base):
    """Request for payment issued by a user to a client."""

    __tablename__ = "invoices"
    __table_args__ = (Index("ix_invoices_status_due", "status", "due_date"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    invoice_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="USD")
    total_amount: Mapped[Decimal] = mapped_column(Numeric(20, 9), nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(20, 9), default=Decimal("0"))
    remaining_amount: Mapped[Decimal] = mapped_column(Numeric(20, 9), nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        String(20), default=InvoiceStatus.SENT, nullable=False
    )
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expiry_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    # Relationships
    issuer: Mapped["User"] = relationship(foreign_keys=[user_id], lazy="selectin")
    client: Mapped["Client"] = relationship(lazy="selectin")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the invoice's expiry date has passed."""
        if self.expiry_date is None:
            return False
        now = now or datetime.now(timezone.utc)
        expiry = self.expiry_date
        # SQLite hands back naive datetimes
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return now > expiry


class TransactionRecord(Base):
    """Durable record of one attempted transfer.

    Created in PENDING before any external call and never deleted.
    Amount is the smallest-unit integer; amount_usd is fixed at creation.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_sender_idempotency", "sender_id", "idempotency_key", unique=True),
        Index("ix_transactions_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Parties
    sender_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    recipient_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id"), nullable=True, index=True
    )
    recipient_address: Mapped[str] = mapped_column(String(42), nullable=False)
    recipient_identifier: Mapped[str] = mapped_column(String(255), nullable=False)

    # Asset
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    token_symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(20, 9), nullable=False)
    platform_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 9), nullable=True)

    # Chain outcome
    blockchain_tx_hash: Mapped[Optional[str]] = mapped_column(
        String(66), nullable=True, index=True
    )
    block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    gas_used: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    # Classification
    transaction_type: Mapped[TransactionType] = mapped_column(
        String(20), default=TransactionType.DIRECT, nullable=False
    )
    invoice_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("invoices.id"), nullable=True, index=True
    )
    status: Mapped[PaymentStatus] = mapped_column(
        String(20), default=PaymentStatus.PENDING, nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow
    )
    # Set once signing begins; from then on the transfer may reach the relay
    execution_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    sender: Mapped["User"] = relationship(foreign_keys=[sender_id], lazy="selectin")
    recipient: Mapped[Optional["User"]] = relationship(
        foreign_keys=[recipient_id], lazy="selectin"
    )

    @property
    def amount_units(self) -> int:
        return int(self.amount)

    @property
    def token_decimals(self) -> int:
        return int((self.metadata_ or {}).get("token_decimals", 6))

    @property
    def is_terminal(self) -> bool:
        # Column comes back as a plain str; Enum hashes by name, so coerce first
        return PaymentStatus(self.status) in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {PaymentStatus.CONFIRMED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
)

# Allowed moves; anything else is rejected by the repository
ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.SUBMITTED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.SUBMITTED: frozenset({PaymentStatus.CONFIRMED, PaymentStatus.FAILED}),
    PaymentStatus.CONFIRMED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}
