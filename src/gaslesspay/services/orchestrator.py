"""Transfer orchestration.

Owns the durable TransactionRecord and its state machine:

    pending -> submitted -> confirmed
    pending | submitted -> failed

A record is written in PENDING before any external call. Every failure after
that point ends the record in FAILED (or CANCELLED, if its invoice was
cancelled before execution began) within the same call and surfaces as
InsufficientBalanceError or TransactionFailedError.
"""

import logging
import math
import secrets
import time
from dataclasses import asdict, dataclass, field, replace
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import IntegrityError

from gaslesspay.conversion.pricing import FixedUsdPriceTable
from gaslesspay.crypto import KeyVault
from gaslesspay.errors import (
    GaslessPayError,
    InsufficientBalanceError,
    NotFoundError,
    TransactionFailedError,
    ValidationError,
)
from gaslesspay.gasless.engine import ExecutionResult, GaslessExecutionEngine
from gaslesspay.ledger.database import Database
from gaslesspay.ledger.models import PaymentStatus, TransactionRecord, TransactionType, User
from gaslesspay.ledger.repository import HistoryFilters, LedgerRepository
from gaslesspay.services.balances import BalanceService
from gaslesspay.services.recipients import RecipientResolver, ResolvedRecipient
from gaslesspay.tokens import format_units, parse_units
from gaslesspay.utils.locks import KeyedLockRegistry

logger = logging.getLogger(__name__)

# Runs inside the confirmation write; raising rolls that write back
AfterConfirm = Callable[[LedgerRepository, TransactionRecord], Awaitable[None]]

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_transaction_id() -> str:
    """``TXN-<base36 ms timestamp>-<12 random hex>``, uppercased."""
    return f"TXN-{_base36(int(time.time() * 1000))}-{secrets.token_hex(6)}".upper()


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _user_view(user: Optional[User]) -> Optional[dict]:
    if user is None:
        return None
    return {
        "id": user.id,
        "username": user.username,
        "full_name": user.full_name,
        "smart_account_address": user.smart_account_address,
    }


@dataclass
class TransferResult:
    """Outcome of create_and_execute."""

    success: bool
    transaction_id: str
    status: str
    amount: str
    token_symbol: str
    recipient: dict = field(default_factory=dict)
    transaction_hash: Optional[str] = None
    user_op_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    replayed: bool = False
    # Set when the transfer confirmed but its bookkeeping write (e.g. invoice) did not
    follow_up_error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class TransactionOrchestrator:
    """Sequences resolution, persistence, balance check and sponsored execution.

    Transfers by the same sender are serialized from the idempotency check
    through the final ledger write.
    """

    def __init__(
        self,
        db: Database,
        resolver: RecipientResolver,
        balances: BalanceService,
        engine: GaslessExecutionEngine,
        vault: KeyVault,
        prices: Optional[FixedUsdPriceTable] = None,
        locks: Optional[KeyedLockRegistry] = None,
        lock_timeout: float = 180.0,
        max_page_size: int = 100,
    ):
        self.db = db
        self.resolver = resolver
        self.balances = balances
        self.engine = engine
        self.vault = vault
        self.prices = prices or FixedUsdPriceTable()
        self.locks = locks or KeyedLockRegistry(default_timeout=lock_timeout)
        self.lock_timeout = lock_timeout
        self.max_page_size = max_page_size

    generate_transaction_id = staticmethod(generate_transaction_id)

    async def create_and_execute(
        self,
        sender_id: int,
        recipient_identifier: str,
        token_symbol: str,
        amount: str,
        signing_password: str,
        description: Optional[str] = None,
        transaction_type: TransactionType = TransactionType.DIRECT,
        invoice_id: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        after_confirm: Optional[AfterConfirm] = None,
    ) -> TransferResult:
        """Create a transfer record and execute it end to end.

        Raises:
            ValidationError: Bad amount, unsupported token, sender without smart account
            NotFoundError: Unknown sender
            RecipientResolutionError: Recipient identifier matches nothing
            InsufficientBalanceError: Balance check failed (record left FAILED)
            TransactionFailedError: Execution failed (record left FAILED), or the
                record was cancelled with its invoice before execution began
            LockTimeoutError: Another transfer by this sender held the lock too long
        """
        transaction_id = self.generate_transaction_id()

        async with self.db.session() as session:
            sender = await LedgerRepository(session).get_user(sender_id)
        if sender is None:
            raise NotFoundError(f"Sender {sender_id} not found")
        if not sender.smart_account_address:
            raise ValidationError(f"Sender {sender.username} has no smart account")

        recipient = await self.resolver.resolve(recipient_identifier)
        token = self.balances.get_token(token_symbol)
        amount_units = parse_units(amount, token.decimals)
        human_amount = format_units(amount_units, token.decimals)

        async with self.locks.lock(sender_id, timeout=self.lock_timeout, operation="transfer"):
            if idempotency_key:
                existing = await self._find_replay(sender_id, idempotency_key)
                if existing is not None:
                    return existing

            try:
                await self._persist_pending(
                    transaction_id=transaction_id,
                    sender=sender,
                    recipient=recipient,
                    recipient_identifier=recipient_identifier,
                    token_symbol=token.symbol,
                    token_address=token.address,
                    token_decimals=token.decimals,
                    amount_units=amount_units,
                    human_amount=human_amount,
                    transaction_type=transaction_type,
                    invoice_id=invoice_id,
                    description=description,
                    idempotency_key=idempotency_key,
                )
            except IntegrityError:
                # Same key committed by another process between check and insert
                if not idempotency_key:
                    raise
                existing = await self._find_replay(sender_id, idempotency_key)
                if existing is None:
                    raise
                return existing

            try:
                await self._check_balance(sender, token.symbol, amount_units, amount)
            except InsufficientBalanceError as e:
                await self._mark_failed(transaction_id, e.message)
                raise
            except Exception as e:
                reason = e.message if isinstance(e, GaslessPayError) else str(e)
                await self._mark_failed(transaction_id, reason)
                raise TransactionFailedError(transaction_id, reason) from e

            if not await self._mark_execution_started(transaction_id):
                logger.warning(f"Transaction {transaction_id} was cancelled before execution")
                raise TransactionFailedError(
                    transaction_id, "Transfer was cancelled before execution"
                )

            try:
                result = await self._execute(
                    transaction_id, sender, recipient, token.symbol, amount_units, signing_password
                )
            except Exception as e:
                reason = e.message if isinstance(e, GaslessPayError) else str(e)
                await self._mark_failed(transaction_id, reason)
                raise TransactionFailedError(transaction_id, reason) from e

            if not result.success:
                reason = result.error or "Unknown execution error"
                await self._mark_failed(transaction_id, reason, result.user_op_hash)
                raise TransactionFailedError(transaction_id, reason)

            follow_up_error = await self._record_success(transaction_id, result, after_confirm)

        return TransferResult(
            success=True,
            transaction_id=transaction_id,
            status=PaymentStatus.CONFIRMED.value,
            amount=human_amount,
            token_symbol=token.symbol,
            recipient=recipient.to_dict(),
            transaction_hash=result.transaction_hash,
            user_op_hash=result.user_op_hash,
            block_number=result.block_number,
            gas_used=result.gas_used,
            follow_up_error=follow_up_error,
        )

    async def _find_replay(self, sender_id: int, idempotency_key: str) -> Optional[TransferResult]:
        async with self.db.session() as session:
            record = await LedgerRepository(session).get_transaction_by_idempotency_key(
                sender_id, idempotency_key
            )
        if record is None:
            return None

        logger.info(
            f"Replaying {record.transaction_id} for idempotency key {idempotency_key!r}"
        )
        status = PaymentStatus(record.status)
        return TransferResult(
            success=status == PaymentStatus.CONFIRMED,
            transaction_id=record.transaction_id,
            status=status.value,
            amount=format_units(record.amount_units, record.token_decimals),
            token_symbol=record.token_symbol,
            recipient=ResolvedRecipient(
                address=record.recipient_address,
                internal=record.recipient_id is not None,
                user_id=record.recipient_id,
                username=record.recipient.username if record.recipient else None,
            ).to_dict(),
            transaction_hash=record.blockchain_tx_hash,
            user_op_hash=(record.metadata_ or {}).get("user_op_hash"),
            block_number=record.block_number,
            gas_used=record.gas_used,
            replayed=True,
        )

    async def _persist_pending(
        self,
        transaction_id: str,
        sender: User,
        recipient: ResolvedRecipient,
        recipient_identifier: str,
        token_symbol: str,
        token_address: str,
        token_decimals: int,
        amount_units: int,
        human_amount: str,
        transaction_type: TransactionType,
        invoice_id: Optional[int],
        description: Optional[str],
        idempotency_key: Optional[str],
    ) -> None:
        value = Decimal(human_amount)
        async with self.db.session() as session:
            await LedgerRepository(session).create_transaction(
                transaction_id=transaction_id,
                sender_id=sender.id,
                recipient_id=recipient.user_id,
                recipient_address=recipient.address,
                recipient_identifier=recipient_identifier,
                token_address=token_address,
                token_symbol=token_symbol,
                amount=amount_units,
                amount_usd=self.prices.usd_value(token_symbol, value),
                platform_fee=self.engine.estimate_fees(token_symbol, value).platform_fee,
                transaction_type=transaction_type,
                invoice_id=invoice_id,
                description=description,
                idempotency_key=idempotency_key,
                metadata={
                    "token_decimals": token_decimals,
                    "network": self.engine.network.name,
                    "sender_address": sender.smart_account_address,
                    "recipient_internal": recipient.internal,
                },
            )
        logger.info(
            f"Transaction {transaction_id} created: {human_amount} {token_symbol} "
            f"from user {sender.id} to {recipient.address}"
        )

    async def _check_balance(
        self, sender: User, token_symbol: str, amount_units: int, requested: str
    ) -> None:
        balance = await self.balances.check_balance(sender.smart_account_address, token_symbol)
        if balance.raw < amount_units:
            raise InsufficientBalanceError(token_symbol, requested, balance.formatted)

    async def _mark_execution_started(self, transaction_id: str) -> bool:
        async with self.db.session() as session:
            return await LedgerRepository(session).mark_execution_started(transaction_id)

    async def _execute(
        self,
        transaction_id: str,
        sender: User,
        recipient: ResolvedRecipient,
        token_symbol: str,
        amount_units: int,
        signing_password: str,
    ) -> ExecutionResult:
        async def remember_user_op(user_op_hash: str) -> None:
            async with self.db.session() as session:
                await LedgerRepository(session).record_user_op_hash(transaction_id, user_op_hash)

        async with self.vault.unlock(
            sender.encrypted_private_key, str(sender.id), signing_password
        ) as signer:
            return await self.engine.execute(
                signer=signer,
                smart_account_address=sender.smart_account_address,
                recipient_address=recipient.address,
                token_symbol=token_symbol,
                amount=amount_units,
                on_submitted=remember_user_op,
            )

    async def _record_success(
        self,
        transaction_id: str,
        result: ExecutionResult,
        after_confirm: Optional[AfterConfirm],
    ) -> Optional[str]:
        """Write SUBMITTED then CONFIRMED.

        Returns:
            The follow-up error if ``after_confirm`` failed; the record is then
            confirmed on its own, since the funds have already moved
        """
        async with self.db.session() as session:
            await LedgerRepository(session).mark_submitted(
                transaction_id,
                result.transaction_hash,
                metadata={"user_op_hash": result.user_op_hash},
            )
        logger.info(f"Transaction {transaction_id} submitted: {result.transaction_hash}")

        follow_up_error = None
        try:
            async with self.db.session() as session:
                repo = LedgerRepository(session)
                record = await repo.mark_confirmed(
                    transaction_id, result.block_number, result.gas_used
                )
                if after_confirm is not None:
                    await after_confirm(repo, record)
        except Exception as e:
            follow_up_error = e.message if isinstance(e, GaslessPayError) else str(e)
            logger.error(
                f"Follow-up write failed for included transfer {transaction_id}: "
                f"{follow_up_error}; confirming record alone"
            )
            async with self.db.session() as session:
                await LedgerRepository(session).mark_confirmed(
                    transaction_id, result.block_number, result.gas_used
                )

        logger.info(f"Transaction {transaction_id} confirmed in block {result.block_number}")
        return follow_up_error

    async def _mark_failed(
        self, transaction_id: str, reason: str, user_op_hash: Optional[str] = None
    ) -> None:
        metadata = {"user_op_hash": user_op_hash} if user_op_hash else None
        async with self.db.session() as session:
            await LedgerRepository(session).mark_failed(transaction_id, reason, metadata)
        logger.error(f"Transaction {transaction_id} failed: {reason}")

    async def get_transaction_status(self, transaction_id: str) -> dict:
        """Read-only view of one record.

        Raises:
            NotFoundError: Unknown transaction ID
        """
        async with self.db.session() as session:
            record = await LedgerRepository(session).get_transaction(transaction_id)
        if record is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        explorer_url = None
        if record.blockchain_tx_hash:
            explorer_url = f"{self.engine.network.explorer_url}/tx/{record.blockchain_tx_hash}"

        return {
            "transaction_id": record.transaction_id,
            "status": PaymentStatus(record.status).value,
            "transaction_type": TransactionType(record.transaction_type).value,
            "amount": format_units(record.amount_units, record.token_decimals),
            "amount_units": str(record.amount_units),
            "amount_usd": str(record.amount_usd),
            "token_symbol": record.token_symbol,
            "token_address": record.token_address,
            "sender": _user_view(record.sender),
            "recipient": _user_view(record.recipient),
            "recipient_address": record.recipient_address,
            "blockchain_tx_hash": record.blockchain_tx_hash,
            "block_number": record.block_number,
            "gas_used": record.gas_used,
            "description": record.description,
            "failure_reason": record.failure_reason,
            "invoice_id": record.invoice_id,
            "explorer_url": explorer_url,
            "created_at": _iso(record.created_at),
            "submitted_at": _iso(record.submitted_at),
            "confirmed_at": _iso(record.confirmed_at),
            "network": self.engine.network_info(),
        }

    async def get_user_transaction_history(
        self, user_id: int, filters: Optional[HistoryFilters] = None
    ) -> dict:
        """Paginated history of transfers sent or received by a user, newest first."""
        filters = filters or HistoryFilters()
        filters = replace(
            filters,
            page=max(1, filters.page),
            limit=max(1, min(filters.limit, self.max_page_size)),
        )

        async with self.db.session() as session:
            repo = LedgerRepository(session)
            records, total = await repo.list_user_transactions(user_id, filters)
            total_sent = await repo.total_sent_usd(user_id)
            total_received = await repo.total_received_usd(user_id)
            in_flight = await repo.count_in_flight(user_id)

        transactions = []
        for record in records:
            outgoing = record.sender_id == user_id
            if outgoing:
                counterparty = _user_view(record.recipient) or {"address": record.recipient_address}
            else:
                counterparty = _user_view(record.sender)
            transactions.append(
                {
                    "transaction_id": record.transaction_id,
                    "direction": "outgoing" if outgoing else "incoming",
                    "status": PaymentStatus(record.status).value,
                    "transaction_type": TransactionType(record.transaction_type).value,
                    "amount": format_units(record.amount_units, record.token_decimals),
                    "amount_usd": str(record.amount_usd),
                    "token_symbol": record.token_symbol,
                    "counterparty": counterparty,
                    "description": record.description,
                    "blockchain_tx_hash": record.blockchain_tx_hash,
                    "created_at": _iso(record.created_at),
                }
            )

        total_pages = math.ceil(total / filters.limit) if total else 0
        return {
            "transactions": transactions,
            "pagination": {
                "current_page": filters.page,
                "total_pages": total_pages,
                "total": total,
                "limit": filters.limit,
                "has_next": filters.page < total_pages,
                "has_prev": filters.page > 1,
            },
            "summary": {
                "total_sent_usd": str(total_sent),
                "total_received_usd": str(total_received),
                "pending_count": in_flight,
            },
        }

    async def check_sufficient_balance(self, address: str, token_symbol: str, amount: str) -> bool:
        """Compare an on-chain balance to an amount; read failures count as insufficient."""
        token = self.balances.get_token(token_symbol)
        required = parse_units(amount, token.decimals)
        try:
            balance = await self.balances.check_balance(address, token.symbol)
        except Exception as e:
            logger.warning(f"Balance check failed for {address} ({token.symbol}): {e}")
            return False
        return balance.raw >= required

    async def estimate_transaction_cost(
        self, sender_id: int, token_symbol: str, amount: str
    ) -> dict:
        """Fee estimate plus whether the sender can cover the amount."""
        user = await self._get_wallet_user(sender_id)
        estimate = self.engine.estimate_fees(token_symbol, amount).to_dict()
        estimate["user_address"] = user.smart_account_address
        estimate["sufficient_balance"] = await self.check_sufficient_balance(
            user.smart_account_address, token_symbol, amount
        )
        return estimate

    async def resolve_recipient(self, identifier: str) -> ResolvedRecipient:
        return await self.resolver.resolve(identifier)

    async def get_user_token_balances(self, user_id: int) -> dict:
        """Every supported token balance for the user's smart account."""
        user = await self._get_wallet_user(user_id)
        balances = await self.balances.get_all_balances(user.smart_account_address)

        total_usd = sum(
            (self.prices.usd_value(b.symbol, Decimal(b.formatted)) for b in balances),
            Decimal("0"),
        )
        return {
            "smart_account_address": user.smart_account_address,
            "balances": [b.to_dict() for b in balances],
            "total_usd": str(total_usd),
            "network": self.engine.network_info(),
        }

    async def _get_wallet_user(self, user_id: int) -> User:
        async with self.db.session() as session:
            user = await LedgerRepository(session).get_user(user_id)
        if user is None or not user.smart_account_address:
            raise NotFoundError("User or smart account not found")
        return user
