"""Tests for sponsored execution: permits, user operations, bundler and engine."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from web3 import Web3

from gaslesspay.chain.rpc import RpcError
from gaslesspay.config import Settings
from gaslesspay.errors import ReceiptTimeoutError, SubmissionError
from gaslesspay.gasless.bundler import BundlerClient, GasEstimate, GasPrice, UserOperationReceipt
from gaslesspay.gasless.engine import GaslessExecutionEngine
from gaslesspay.gasless.permit import (
    FALLBACK_TOKEN_NAME,
    PERMIT_VALIDITY_SECONDS,
    build_permit_message,
    encode_paymaster_data,
    sign_permit,
)
from gaslesspay.gasless.user_operation import (
    DUMMY_SIGNATURE,
    EXECUTE_SELECTOR,
    UserOperation,
    encode_execute,
    pack_uint128_pair,
)

from conftest import (
    ALICE_SMART_ACCOUNT,
    BOB_SMART_ACCOUNT,
    NETWORK,
    PAYMASTER,
    SIGNING_KEY,
    TX_HASH,
    USDC,
    USER_OP_HASH,
)

ENTRY_POINT = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"


@pytest.fixture
def signer():
    return Account.from_key(SIGNING_KEY)


class TestPermit:
    """Tests for EIP-2612 permit signing and paymaster data."""

    @pytest.mark.asyncio
    async def test_sign_permit_recovers_to_signer(self, signer, chain):
        """The permit signature recovers to the signing key over the typed data."""
        permit = await sign_permit(
            signer=signer,
            reader=chain,
            token_address=USDC.address,
            chain_id=NETWORK.chain_id,
            owner=BOB_SMART_ACCOUNT,
            spender=PAYMASTER,
            value=10_000_000,
            clock=lambda: 1_000,
        )

        assert permit.deadline == 1_000 + PERMIT_VALIDITY_SECONDS
        message = build_permit_message(
            "USD Coin",
            USDC.address,
            NETWORK.chain_id,
            BOB_SMART_ACCOUNT,
            PAYMASTER,
            10_000_000,
            0,
            permit.deadline,
        )
        recovered = Account.recover_message(
            encode_typed_data(full_message=message), vrs=(permit.v, permit.r, permit.s)
        )
        assert recovered == signer.address

    @pytest.mark.asyncio
    async def test_name_and_nonce_fallbacks(self, signer, chain):
        """Tokens without name() or nonces() sign with "Token" and nonce 0."""
        chain.name = AsyncMock(side_effect=RpcError("eth_call", "execution reverted"))
        chain.nonces = AsyncMock(side_effect=RpcError("eth_call", "execution reverted"))

        permit = await sign_permit(
            signer=signer,
            reader=chain,
            token_address=USDC.address,
            chain_id=NETWORK.chain_id,
            owner=BOB_SMART_ACCOUNT,
            spender=PAYMASTER,
            value=1,
            deadline=5_000,
        )

        message = build_permit_message(
            FALLBACK_TOKEN_NAME, USDC.address, NETWORK.chain_id, BOB_SMART_ACCOUNT, PAYMASTER, 1, 0, 5_000
        )
        recovered = Account.recover_message(
            encode_typed_data(full_message=message), vrs=(permit.v, permit.r, permit.s)
        )
        assert recovered == signer.address

    @pytest.mark.asyncio
    async def test_paymaster_data_layout(self, signer, chain):
        """mode byte, token address, permit amount, then the 129-byte permit blob."""
        permit = await sign_permit(
            signer, chain, USDC.address, NETWORK.chain_id, BOB_SMART_ACCOUNT, PAYMASTER, 42, deadline=99
        )
        blob = permit.packed()
        data = encode_paymaster_data(USDC.address, 42, permit)

        assert len(blob) == 129
        assert int.from_bytes(blob[:32], "big") == 42
        assert int.from_bytes(blob[32:64], "big") == 99
        assert blob[64] == permit.v

        assert data[0] == 0
        assert data[1:21] == bytes.fromhex(USDC.address[2:])
        assert int.from_bytes(data[21:53], "big") == 42
        assert data[53:] == blob


class TestUserOperation:
    """Tests for v0.7 packing, hashing and signing."""

    def make_op(self, **kwargs):
        defaults = dict(
            sender=BOB_SMART_ACCOUNT,
            nonce=3,
            call_data=encode_execute(USDC.address, 0, b"\x01\x02"),
            call_gas_limit=120_000,
            verification_gas_limit=300_000,
            pre_verification_gas=60_000,
            max_fee_per_gas=2_000_000_000,
            max_priority_fee_per_gas=1_000_000,
            paymaster=PAYMASTER,
            paymaster_verification_gas_limit=200_000,
            paymaster_post_op_gas_limit=15_000,
            paymaster_data=b"\xaa\xbb",
        )
        defaults.update(kwargs)
        return UserOperation(**defaults)

    def test_gas_packing(self):
        """Verification/priority values sit in the high 128 bits."""
        op = self.make_op()

        assert int.from_bytes(op.account_gas_limits, "big") == (300_000 << 128) | 120_000
        assert int.from_bytes(op.gas_fees, "big") == (1_000_000 << 128) | 2_000_000_000

    def test_pack_rejects_overflow(self):
        with pytest.raises(ValueError):
            pack_uint128_pair(2**128, 0)

    def test_paymaster_and_data(self):
        """paymaster | 16-byte verification gas | 16-byte postOp gas | data."""
        data = self.make_op().paymaster_and_data

        assert len(data) == 20 + 16 + 16 + 2
        assert data[:20] == bytes.fromhex(PAYMASTER[2:])
        assert int.from_bytes(data[20:36], "big") == 200_000
        assert int.from_bytes(data[36:52], "big") == 15_000
        assert data[52:] == b"\xaa\xbb"

    def test_no_paymaster_or_factory(self):
        op = self.make_op(paymaster=None)

        assert op.paymaster_and_data == b""
        assert op.init_code == b""
        assert "paymaster" not in op.to_rpc()

    def test_execute_calldata(self):
        """Calldata wraps the inner call in execute(address,uint256,bytes)."""
        call_data = encode_execute(USDC.address, 0, b"\x01\x02")

        assert call_data[:4] == EXECUTE_SELECTOR
        assert call_data[4:36] == bytes(12) + bytes.fromhex(USDC.address[2:])

    def test_sign_recovers_to_owner(self, signer):
        """The signature is an EIP-191 signature over the userOpHash."""
        op = self.make_op()
        assert op.signature == DUMMY_SIGNATURE

        op_hash = op.sign(signer, ENTRY_POINT, NETWORK.chain_id)

        assert len(op.signature) == 65
        recovered = Account.recover_message(
            encode_defunct(primitive=op_hash), signature=op.signature
        )
        assert recovered == signer.address

    def test_hash_binds_chain_and_entry_point(self):
        op = self.make_op()
        base = op.hash(ENTRY_POINT, NETWORK.chain_id)

        assert op.hash(ENTRY_POINT, 1) != base
        assert op.hash(PAYMASTER, NETWORK.chain_id) != base
        assert self.make_op(nonce=4).hash(ENTRY_POINT, NETWORK.chain_id) != base

    def test_to_rpc(self):
        rpc = self.make_op().to_rpc()

        assert rpc["sender"] == Web3.to_checksum_address(BOB_SMART_ACCOUNT)
        assert rpc["nonce"] == "0x3"
        assert rpc["callGasLimit"] == hex(120_000)
        assert rpc["paymasterVerificationGasLimit"] == hex(200_000)
        assert rpc["paymasterData"] == "0xaabb"


class FakeTime:
    """Clock advanced by the sleep it hands out."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def receipt_payload(success=True):
    return {
        "userOpHash": USER_OP_HASH,
        "success": success,
        "actualGasUsed": "0x100",
        "reason": None if success else "AA23 reverted",
        "receipt": {"transactionHash": TX_HASH, "blockNumber": "0x10", "gasUsed": "0x5208"},
    }


class TestBundlerClient:
    """Tests for bundler JSON-RPC handling."""

    def make_client(self, call, time=None):
        rpc = MagicMock()
        rpc.call = call
        time = time or FakeTime()
        return BundlerClient(
            rpc, ENTRY_POINT, receipt_timeout=5, poll_interval=2, sleep=time.sleep, clock=time.clock
        )

    @pytest.mark.asyncio
    async def test_gas_price_standard_tier(self):
        client = self.make_client(
            AsyncMock(
                return_value={"standard": {"maxFeePerGas": "0x10", "maxPriorityFeePerGas": "0x1"}}
            )
        )

        price = await client.get_gas_price(GasPrice(100, 10))

        assert price == GasPrice(max_fee_per_gas=16, max_priority_fee_per_gas=1)

    @pytest.mark.asyncio
    async def test_gas_price_fallback(self):
        """Quote failures return the configured ceiling."""
        client = self.make_client(AsyncMock(side_effect=RpcError("pimlico", "down")))

        assert await client.get_gas_price(GasPrice(100, 10)) == GasPrice(100, 10)

    @pytest.mark.asyncio
    async def test_estimate_fallback(self):
        """Estimation failures return the fixed limits."""
        client = self.make_client(AsyncMock(side_effect=RpcError("estimate", "AA21")))
        fallback = GasEstimate(150_000, 500_000, 100_000)

        op = UserOperation(sender=BOB_SMART_ACCOUNT, nonce=0, call_data=b"")
        assert await client.estimate_gas(op, fallback) == fallback

    @pytest.mark.asyncio
    async def test_estimate_parses_hex(self):
        call = AsyncMock(
            return_value={
                "callGasLimit": "0x1",
                "verificationGasLimit": "0x2",
                "preVerificationGas": "0x3",
            }
        )
        client = self.make_client(call)

        op = UserOperation(sender=BOB_SMART_ACCOUNT, nonce=0, call_data=b"")
        gas = await client.estimate_gas(op, GasEstimate(0, 0, 0))

        assert gas == GasEstimate(1, 2, 3)
        method, params = call.call_args.args
        assert method == "eth_estimateUserOperationGas"
        assert params[1] == ENTRY_POINT

    @pytest.mark.asyncio
    async def test_send_rejected(self):
        """Bundler errors surface as SubmissionError."""
        client = self.make_client(AsyncMock(side_effect=RpcError("send", "AA25 invalid nonce")))
        op = UserOperation(sender=BOB_SMART_ACCOUNT, nonce=0, call_data=b"")

        with pytest.raises(SubmissionError, match="AA25"):
            await client.send_user_operation(op)

    @pytest.mark.asyncio
    async def test_send_without_hash(self):
        client = self.make_client(AsyncMock(return_value=None))
        op = UserOperation(sender=BOB_SMART_ACCOUNT, nonce=0, call_data=b"")

        with pytest.raises(SubmissionError):
            await client.send_user_operation(op)

    @pytest.mark.asyncio
    async def test_wait_for_receipt_polls(self):
        """Polls until the receipt appears, sleeping between attempts."""
        time = FakeTime()
        call = AsyncMock(side_effect=[None, RpcError("receipt", "busy"), receipt_payload()])
        client = self.make_client(call, time)

        receipt = await client.wait_for_receipt(USER_OP_HASH)

        assert receipt.success
        assert receipt.transaction_hash == TX_HASH
        assert receipt.block_number == 16
        assert receipt.gas_used == 21000
        assert time.sleeps == [2, 2]

    @pytest.mark.asyncio
    async def test_wait_for_receipt_timeout(self):
        """No receipt before the deadline raises ReceiptTimeoutError."""
        time = FakeTime()
        call = AsyncMock(return_value=None)
        client = self.make_client(call, time)

        with pytest.raises(ReceiptTimeoutError):
            await client.wait_for_receipt(USER_OP_HASH)

        # Polled at t=0, 2, 4 and 6
        assert call.await_count == 4

    def test_receipt_from_rpc_failure(self):
        receipt = UserOperationReceipt.from_rpc(receipt_payload(success=False))

        assert not receipt.success
        assert receipt.reason == "AA23 reverted"


class TestGaslessExecutionEngine:
    """Tests for end-to-end sponsored execution against a relay spy."""

    @pytest.fixture(autouse=True)
    def funded(self, chain):
        chain.set_balance(USDC.address, BOB_SMART_ACCOUNT, 100_000_000)

    async def execute(self, engine, signer, amount=40_000_000):
        return await engine.execute(
            signer=signer,
            smart_account_address=BOB_SMART_ACCOUNT,
            recipient_address=ALICE_SMART_ACCOUNT,
            token_symbol="USDC",
            amount=amount,
        )

    @pytest.mark.asyncio
    async def test_success(self, engine, bundler, signer):
        """A sponsored transfer is built, signed, sent and confirmed."""
        result = await self.execute(engine, signer)

        assert result.success
        assert result.transaction_hash == TX_HASH
        assert result.user_op_hash == USER_OP_HASH
        assert result.block_number == 1234
        assert result.sender == BOB_SMART_ACCOUNT

        (op,) = bundler.send_user_operation.call_args.args
        assert op.paymaster == PAYMASTER
        assert op.call_data[:4] == EXECUTE_SELECTOR
        assert op.call_gas_limit == 120_000
        assert op.max_fee_per_gas == 2_000_000_000
        assert op.signature != DUMMY_SIGNATURE
        # Sponsor allowance of 10 USDC, permit valid for an hour
        assert int.from_bytes(op.paymaster_data[21:53], "big") == 10_000_000
        assert int.from_bytes(op.paymaster_data[85:117], "big") == 1_700_000_000 + 3600

        recovered = Account.recover_message(
            encode_defunct(primitive=op.hash(ENTRY_POINT, NETWORK.chain_id)),
            signature=op.signature,
        )
        assert recovered == signer.address

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, engine, bundler, signer):
        """Balance shortfall fails before anything is sent."""
        result = await self.execute(engine, signer, amount=200_000_000)

        assert not result.success
        assert result.error_type == "InsufficientBalanceError"
        assert "Required: 200, Available: 100" in result.error
        bundler.send_user_operation.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_paymaster(self, chain, bundler, signer):
        """Without a paymaster there is no sponsorship; nothing is sent."""
        settings = Settings(_env_file=None, paymaster_address=None)
        engine = GaslessExecutionEngine(NETWORK, chain, bundler, settings)

        result = await self.execute(engine, signer)

        assert not result.success
        assert result.error_type == "SigningError"
        assert "Paymaster" in result.error
        bundler.send_user_operation.assert_not_called()

    @pytest.mark.asyncio
    async def test_submission_rejected(self, engine, bundler, signer):
        bundler.send_user_operation.side_effect = SubmissionError("Bundler rejected: AA33")

        result = await self.execute(engine, signer)

        assert not result.success
        assert result.error_type == "SubmissionError"
        assert result.user_op_hash is None

    @pytest.mark.asyncio
    async def test_receipt_timeout(self, engine, bundler, signer):
        """A missing receipt keeps the user operation hash for follow-up."""
        bundler.wait_for_receipt.side_effect = ReceiptTimeoutError("No receipt")

        result = await self.execute(engine, signer)

        assert not result.success
        assert result.error_type == "ReceiptTimeoutError"
        assert result.user_op_hash == USER_OP_HASH

    @pytest.mark.asyncio
    async def test_reverted_operation(self, engine, bundler, signer):
        bundler.wait_for_receipt.return_value = UserOperationReceipt(
            user_op_hash=USER_OP_HASH,
            success=False,
            transaction_hash=TX_HASH,
            block_number=1,
            gas_used=1,
            reason="transfer amount exceeds balance",
        )

        result = await self.execute(engine, signer)

        assert result.error_type == "SubmissionError"
        assert "exceeds balance" in result.error

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_submission_error(self, engine, bundler, signer):
        bundler.estimate_gas.side_effect = RuntimeError("socket closed")

        result = await self.execute(engine, signer)

        assert result.error_type == "SubmissionError"
        assert result.error == "socket closed"

    def test_estimate_fees(self, engine):
        """Network fee is sponsored; platform fee is 1% of the amount."""
        estimate = engine.estimate_fees("usdc", "100")

        assert estimate.platform_fee == Decimal("1.000000")
        assert estimate.platform_fee_percentage == "1.0%"
        assert estimate.gasless
        data = estimate.to_dict()
        assert data["network_fee"] == "0"
        assert data["chain_id"] == NETWORK.chain_id
