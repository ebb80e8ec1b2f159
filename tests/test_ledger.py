"""Tests for the transfer ledger repository."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from gaslesspay.errors import InvalidStateTransitionError, InvoiceStateError, NotFoundError
from gaslesspay.ledger.models import InvoiceStatus, PaymentStatus, TransactionType
from gaslesspay.ledger.repository import HistoryFilters, LedgerRepository

from conftest import ALICE_SMART_ACCOUNT, ALICE_WALLET, USDC


async def _record(repo: LedgerRepository, sender_id: int, transaction_id: str = "TXN-1", **kwargs):
    defaults = dict(
        transaction_id=transaction_id,
        sender_id=sender_id,
        recipient_id=None,
        recipient_address=ALICE_SMART_ACCOUNT,
        recipient_identifier="alice",
        token_address=USDC.address,
        token_symbol="usdc",
        amount=40_000_000,
        amount_usd=Decimal("40"),
        metadata={"token_decimals": 6},
    )
    defaults.update(kwargs)
    return await repo.create_transaction(**defaults)


class TestUsers:
    """Tests for user lookups."""

    @pytest.mark.asyncio
    async def test_find_by_username_and_email(self, ledger_repo, users):
        """Usernames match exactly, emails case-insensitively."""
        by_name = await ledger_repo.find_user_by_login("alice")
        by_email = await ledger_repo.find_user_by_login("ALICE@example.com")

        assert by_name.id == users["alice"]
        assert by_email.id == users["alice"]
        assert await ledger_repo.find_user_by_login("nobody") is None

    @pytest.mark.asyncio
    async def test_find_by_address_matches_wallet_or_smart_account(self, ledger_repo, users):
        """Either address a user owns resolves to them, whatever the case."""
        assert (await ledger_repo.find_user_by_address(ALICE_WALLET)).id == users["alice"]
        assert (await ledger_repo.find_user_by_address(ALICE_SMART_ACCOUNT)).id == users["alice"]
        assert await ledger_repo.find_user_by_address("0x" + "77" * 20) is None


class TestTransactionRecords:
    """Tests for transfer record persistence and the status machine."""

    @pytest.mark.asyncio
    async def test_create_starts_pending(self, ledger_repo, users):
        """New records are PENDING with the symbol uppercased."""
        record = await _record(ledger_repo, users["bob"])

        assert PaymentStatus(record.status) == PaymentStatus.PENDING
        assert record.token_symbol == "USDC"
        assert record.amount_units == 40_000_000
        assert record.token_decimals == 6
        assert TransactionType(record.transaction_type) == TransactionType.DIRECT

    @pytest.mark.asyncio
    async def test_forward_transitions(self, ledger_repo, users):
        """pending -> submitted -> confirmed records hash and inclusion details."""
        await _record(ledger_repo, users["bob"])

        submitted = await ledger_repo.mark_submitted(
            "TXN-1", "0xabc", metadata={"user_op_hash": "0xdef"}
        )
        assert PaymentStatus(submitted.status) == PaymentStatus.SUBMITTED
        assert submitted.blockchain_tx_hash == "0xabc"
        assert submitted.submitted_at is not None
        assert submitted.metadata_["user_op_hash"] == "0xdef"
        assert submitted.metadata_["token_decimals"] == 6

        confirmed = await ledger_repo.mark_confirmed("TXN-1", block_number=10, gas_used=21000)
        assert PaymentStatus(confirmed.status) == PaymentStatus.CONFIRMED
        assert confirmed.block_number == 10
        assert confirmed.confirmed_at is not None
        assert confirmed.is_terminal

    @pytest.mark.asyncio
    async def test_pending_can_fail(self, ledger_repo, users):
        """A pending record can fail directly, keeping the reason."""
        await _record(ledger_repo, users["bob"])

        failed = await ledger_repo.mark_failed("TXN-1", "boom")

        assert PaymentStatus(failed.status) == PaymentStatus.FAILED
        assert failed.failure_reason == "boom"

    @pytest.mark.asyncio
    async def test_pending_cannot_confirm(self, ledger_repo, users):
        """Confirmation requires a prior submission."""
        await _record(ledger_repo, users["bob"])

        with pytest.raises(InvalidStateTransitionError) as exc:
            await ledger_repo.mark_confirmed("TXN-1", 1, 1)

        assert exc.value.current == "pending"
        assert exc.value.target == "confirmed"

    @pytest.mark.asyncio
    async def test_terminal_states_are_final(self, ledger_repo, users):
        """Confirmed and failed records never move again."""
        await _record(ledger_repo, users["bob"], "TXN-OK")
        await ledger_repo.mark_submitted("TXN-OK", "0x1")
        await ledger_repo.mark_confirmed("TXN-OK", 1, 1)

        await _record(ledger_repo, users["bob"], "TXN-BAD")
        await ledger_repo.mark_failed("TXN-BAD", "nope")

        with pytest.raises(InvalidStateTransitionError):
            await ledger_repo.mark_failed("TXN-OK", "late failure")
        with pytest.raises(InvalidStateTransitionError):
            await ledger_repo.mark_submitted("TXN-BAD", "0x2")

    @pytest.mark.asyncio
    async def test_transition_unknown_record(self, ledger_repo):
        """Transitions on a missing ID raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await ledger_repo.mark_failed("TXN-MISSING", "x")

    @pytest.mark.asyncio
    async def test_idempotency_key_unique_per_sender(self, db, users):
        """The same key cannot be stored twice for one sender."""
        async with db.session() as session:
            await _record(LedgerRepository(session), users["bob"], "TXN-A", idempotency_key="k1")

        with pytest.raises(IntegrityError):
            async with db.session() as session:
                await _record(
                    LedgerRepository(session), users["bob"], "TXN-B", idempotency_key="k1"
                )

        # Another sender may reuse it
        async with db.session() as session:
            repo = LedgerRepository(session)
            await _record(repo, users["alice"], "TXN-C", idempotency_key="k1")
            found = await repo.get_transaction_by_idempotency_key(users["bob"], "k1")
            assert found.transaction_id == "TXN-A"

    @pytest.mark.asyncio
    async def test_list_stale_transactions(self, ledger_repo, users):
        """Only in-flight records older than the cutoff are stale."""
        old = datetime.now(timezone.utc) - timedelta(hours=2)

        stuck = await _record(ledger_repo, users["bob"], "TXN-STUCK")
        stuck.created_at = old
        done = await _record(ledger_repo, users["bob"], "TXN-DONE")
        done.created_at = old
        await _record(ledger_repo, users["bob"], "TXN-FRESH")
        await ledger_repo.session.flush()
        await ledger_repo.mark_failed("TXN-DONE", "x")

        stale = await ledger_repo.list_stale_transactions(
            datetime.now(timezone.utc) - timedelta(minutes=30)
        )

        assert [r.transaction_id for r in stale] == ["TXN-STUCK"]


class TestHistory:
    """Tests for history listing and USD totals."""

    @pytest.mark.asyncio
    async def test_history_includes_both_directions(self, ledger_repo, users):
        """Records sent or received by the user are listed, newest first."""
        await _record(ledger_repo, users["bob"], "TXN-1", recipient_id=users["alice"])
        await _record(ledger_repo, users["alice"], "TXN-2", recipient_id=users["bob"])
        await _record(ledger_repo, users["carol"], "TXN-3")

        records, total = await ledger_repo.list_user_transactions(users["bob"], HistoryFilters())

        assert total == 2
        assert [r.transaction_id for r in records] == ["TXN-2", "TXN-1"]

    @pytest.mark.asyncio
    async def test_history_filters(self, ledger_repo, users):
        """Status and type filters narrow the result."""
        await _record(ledger_repo, users["bob"], "TXN-1")
        await _record(
            ledger_repo, users["bob"], "TXN-2", transaction_type=TransactionType.INVOICE
        )
        await ledger_repo.mark_failed("TXN-1", "x")

        failed, total = await ledger_repo.list_user_transactions(
            users["bob"], HistoryFilters(status="failed")
        )
        assert total == 1
        assert failed[0].transaction_id == "TXN-1"

        invoices, total = await ledger_repo.list_user_transactions(
            users["bob"], HistoryFilters(transaction_type="invoice")
        )
        assert total == 1
        assert invoices[0].transaction_id == "TXN-2"

    @pytest.mark.asyncio
    async def test_usd_totals_count_confirmed_only(self, ledger_repo, users):
        """Sent/received totals ignore records that never confirmed."""
        await _record(ledger_repo, users["bob"], "TXN-1", recipient_id=users["alice"])
        await ledger_repo.mark_submitted("TXN-1", "0x1")
        await ledger_repo.mark_confirmed("TXN-1", 1, 1)
        await _record(ledger_repo, users["bob"], "TXN-2", recipient_id=users["alice"])

        assert await ledger_repo.total_sent_usd(users["bob"]) == Decimal("40")
        assert await ledger_repo.total_received_usd(users["alice"]) == Decimal("40")
        assert await ledger_repo.count_in_flight(users["bob"]) == 1


class TestInvoices:
    """Tests for invoice balance bookkeeping."""

    async def _invoice(self, repo, users, total="100", **kwargs):
        client = await repo.create_client(owner_id=users["bob"], client_user_id=users["alice"])
        return await repo.create_invoice(
            invoice_number=kwargs.pop("number", "INV-1"),
            user_id=users["bob"],
            client_id=client.id,
            title="Design work",
            total_amount=Decimal(total),
            due_date=kwargs.pop("due_date", datetime.now(timezone.utc) + timedelta(days=7)),
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_partial_then_full_payment(self, ledger_repo, users):
        """Payments accumulate until the invoice is paid."""
        invoice = await self._invoice(ledger_repo, users)

        partial = await ledger_repo.update_invoice_payment(invoice.id, Decimal("40"))
        assert InvoiceStatus(partial.status) == InvoiceStatus.PARTIAL
        assert partial.remaining_amount == Decimal("60")

        paid = await ledger_repo.update_invoice_payment(invoice.id, Decimal("60"))
        assert InvoiceStatus(paid.status) == InvoiceStatus.PAID
        assert paid.remaining_amount == Decimal("0")
        assert paid.paid_at is not None

    @pytest.mark.asyncio
    async def test_cancel_pending_for_invoice(self, ledger_repo, users):
        """Only PENDING transfers against the invoice are cancelled."""
        invoice = await self._invoice(ledger_repo, users)
        await _record(ledger_repo, users["bob"], "TXN-1", invoice_id=invoice.id)
        await _record(ledger_repo, users["bob"], "TXN-2", invoice_id=invoice.id)
        await _record(ledger_repo, users["bob"], "TXN-3")
        await ledger_repo.mark_submitted("TXN-2", "0x2")

        cancelled = await ledger_repo.cancel_pending_for_invoice(invoice.id)

        assert cancelled == 1
        ledger_repo.session.expire_all()
        assert PaymentStatus((await ledger_repo.get_transaction("TXN-1")).status) == (
            PaymentStatus.CANCELLED
        )
        assert PaymentStatus((await ledger_repo.get_transaction("TXN-2")).status) == (
            PaymentStatus.SUBMITTED
        )
        assert PaymentStatus((await ledger_repo.get_transaction("TXN-3")).status) == (
            PaymentStatus.PENDING
        )

    @pytest.mark.asyncio
    async def test_payment_above_remaining_refused(self, ledger_repo, users):
        invoice = await self._invoice(ledger_repo, users)
        await ledger_repo.update_invoice_payment(invoice.id, Decimal("70"))

        with pytest.raises(InvoiceStateError, match="exceeds remaining balance"):
            await ledger_repo.update_invoice_payment(invoice.id, Decimal("70"))

        assert invoice.paid_amount == Decimal("70")
        assert invoice.remaining_amount == Decimal("30")

    @pytest.mark.asyncio
    async def test_cancel_skips_executing_transfers(self, ledger_repo, users):
        """A PENDING transfer that has started signing is left to finish."""
        invoice = await self._invoice(ledger_repo, users)
        await _record(ledger_repo, users["bob"], "TXN-1", invoice_id=invoice.id)
        await _record(ledger_repo, users["bob"], "TXN-2", invoice_id=invoice.id)
        assert await ledger_repo.mark_execution_started("TXN-2")

        assert await ledger_repo.cancel_pending_for_invoice(invoice.id) == 1

        ledger_repo.session.expire_all()
        assert PaymentStatus((await ledger_repo.get_transaction("TXN-1")).status) == (
            PaymentStatus.CANCELLED
        )
        executing = await ledger_repo.get_transaction("TXN-2")
        assert PaymentStatus(executing.status) == PaymentStatus.PENDING
        assert executing.execution_started_at is not None

    @pytest.mark.asyncio
    async def test_cancelled_transfer_cannot_start(self, ledger_repo, users):
        invoice = await self._invoice(ledger_repo, users)
        await _record(ledger_repo, users["bob"], "TXN-1", invoice_id=invoice.id)
        await ledger_repo.cancel_pending_for_invoice(invoice.id)

        assert not await ledger_repo.mark_execution_started("TXN-1")

    @pytest.mark.asyncio
    async def test_list_overdue_invoices(self, ledger_repo, users):
        """Open invoices past due are listed; paid ones are not."""
        past = datetime.now(timezone.utc) - timedelta(days=1)
        late = await self._invoice(ledger_repo, users, number="INV-LATE", due_date=past)
        await self._invoice(
            ledger_repo, users, number="INV-PAID", due_date=past, status=InvoiceStatus.PAID
        )
        await self._invoice(ledger_repo, users, number="INV-FUTURE")

        overdue = await ledger_repo.list_overdue_invoices(datetime.now(timezone.utc))

        assert [i.id for i in overdue] == [late.id]
