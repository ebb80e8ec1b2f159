"""ERC-4337 bundler client.

Gas quoting degrades to configured ceilings when the bundler cannot answer;
submission and receipt errors are raised as execution errors.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from gaslesspay.chain.rpc import JsonRpcClient, RpcError
from gaslesspay.errors import ReceiptTimeoutError, SubmissionError
from gaslesspay.gasless.user_operation import UserOperation

logger = logging.getLogger(__name__)


def to_int(value: Any) -> int:
    """Parse a JSON-RPC quantity (hex string or number)."""
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


@dataclass
class GasPrice:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int


@dataclass
class GasEstimate:
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int


@dataclass
class UserOperationReceipt:
    """Inclusion result reported by the bundler."""

    user_op_hash: str
    success: bool
    transaction_hash: Optional[str]
    block_number: Optional[int]
    gas_used: Optional[int]
    reason: Optional[str] = None

    @classmethod
    def from_rpc(cls, data: dict) -> "UserOperationReceipt":
        receipt = data.get("receipt") or {}
        gas_used = receipt.get("gasUsed", data.get("actualGasUsed"))
        return cls(
            user_op_hash=data.get("userOpHash", ""),
            success=bool(data.get("success", True)),
            transaction_hash=receipt.get("transactionHash"),
            block_number=to_int(receipt["blockNumber"]) if receipt.get("blockNumber") else None,
            gas_used=to_int(gas_used) if gas_used is not None else None,
            reason=data.get("reason"),
        )


class BundlerClient:
    """Talks to a Pimlico-compatible bundler over JSON-RPC."""

    def __init__(
        self,
        rpc: JsonRpcClient,
        entry_point: str,
        receipt_timeout: float = 120.0,
        poll_interval: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rpc = rpc
        self.entry_point = entry_point
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    async def get_gas_price(self, fallback: GasPrice) -> GasPrice:
        """Bundler's standard-tier fee quote, or ``fallback`` if unavailable."""
        try:
            result = await self.rpc.call("pimlico_getUserOperationGasPrice")
            fees = result["standard"]
            return GasPrice(
                max_fee_per_gas=to_int(fees["maxFeePerGas"]),
                max_priority_fee_per_gas=to_int(fees["maxPriorityFeePerGas"]),
            )
        except Exception as e:
            logger.warning(f"Gas price quote failed, using fallback ceiling: {e}")
            return fallback

    async def estimate_gas(self, user_op: UserOperation, fallback: GasEstimate) -> GasEstimate:
        """Bundler's gas limits for an operation, or ``fallback`` if estimation fails."""
        try:
            result = await self.rpc.call(
                "eth_estimateUserOperationGas", [user_op.to_rpc(), self.entry_point]
            )
            return GasEstimate(
                call_gas_limit=to_int(result["callGasLimit"]),
                verification_gas_limit=to_int(result["verificationGasLimit"]),
                pre_verification_gas=to_int(result["preVerificationGas"]),
            )
        except Exception as e:
            logger.warning(f"Gas estimation failed, using fallback limits: {e}")
            return fallback

    async def send_user_operation(self, user_op: UserOperation) -> str:
        """Submit a signed operation.

        Returns:
            userOpHash assigned by the bundler

        Raises:
            SubmissionError: Bundler rejected the operation
        """
        try:
            user_op_hash = await self.rpc.call(
                "eth_sendUserOperation", [user_op.to_rpc(), self.entry_point]
            )
        except RpcError as e:
            raise SubmissionError(f"Bundler rejected user operation: {e.message}") from e

        if not user_op_hash:
            raise SubmissionError("Bundler returned no user operation hash")

        logger.info(f"User operation submitted: {user_op_hash}")
        return user_op_hash

    async def get_receipt(self, user_op_hash: str) -> Optional[UserOperationReceipt]:
        result = await self.rpc.call("eth_getUserOperationReceipt", [user_op_hash])
        if not result:
            return None
        return UserOperationReceipt.from_rpc(result)

    async def wait_for_receipt(
        self, user_op_hash: str, timeout: Optional[float] = None
    ) -> UserOperationReceipt:
        """Poll until the operation is included.

        Transient lookup errors are retried until the deadline.

        Raises:
            ReceiptTimeoutError: No receipt before the deadline
        """
        timeout = self.receipt_timeout if timeout is None else timeout
        deadline = self._clock() + timeout
        last_error: Optional[str] = None

        while True:
            try:
                receipt = await self.get_receipt(user_op_hash)
            except RpcError as e:
                last_error = e.message
                logger.warning(f"Receipt lookup failed for {user_op_hash}: {e.message}")
                receipt = None

            if receipt is not None:
                return receipt

            if self._clock() >= deadline:
                detail = f" (last error: {last_error})" if last_error else ""
                raise ReceiptTimeoutError(
                    f"No receipt for user operation {user_op_hash} after {timeout}s{detail}"
                )

            await self._sleep(self.poll_interval)
