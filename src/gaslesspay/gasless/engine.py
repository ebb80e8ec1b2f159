"""Sponsored (gasless) token transfer execution.

Execution flow:
1. Re-check the smart account's token balance
2. Build the ERC-20 transfer wrapped in the account's ``execute`` call
3. Sign a permit so the paymaster can take its fee in the same token
4. Quote gas (falling back to fixed ceilings), sign and submit the user operation
5. Wait for the bundler's inclusion receipt

``execute`` never raises for chain, relay or signing failures; it returns an
ExecutionResult describing the failure so the caller can settle its ledger.
"""

import logging
import time
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Awaitable, Callable, Optional

from eth_account.signers.local import LocalAccount

from gaslesspay.chain.erc20 import ERC20Reader, encode_transfer
from gaslesspay.chain.rpc import RpcError
from gaslesspay.config import Settings
from gaslesspay.errors import (
    ExecutionError,
    SigningError,
    SubmissionError,
    ValidationError,
)
from gaslesspay.gasless.bundler import BundlerClient, GasEstimate, GasPrice
from gaslesspay.gasless.permit import encode_paymaster_data, sign_permit
from gaslesspay.gasless.user_operation import UserOperation, encode_execute, get_account_nonce
from gaslesspay.tokens import NetworkConfig, TokenConfig, format_units, parse_units

logger = logging.getLogger(__name__)

# Called with the user operation hash as soon as the bundler accepts it
OnSubmitted = Callable[[str], Awaitable[None]]

ESTIMATED_TIME = "30-90 seconds"


@dataclass
class ExecutionResult:
    """Outcome of one sponsored transfer attempt."""

    success: bool
    transaction_hash: Optional[str] = None
    user_op_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    sender: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @classmethod
    def failure(cls, error: Exception, user_op_hash: Optional[str] = None) -> "ExecutionResult":
        message = error.message if isinstance(error, ExecutionError) else str(error)
        return cls(
            success=False,
            user_op_hash=user_op_hash,
            error=message,
            error_type=type(error).__name__,
        )


@dataclass
class FeeEstimate:
    """User-visible cost of a sponsored transfer."""

    token_symbol: str
    network_fee: Decimal
    network_fee_symbol: str
    platform_fee: Decimal
    platform_fee_percentage: str
    total_cost: Decimal
    estimated_time: str
    network: str
    chain_id: int
    gasless: bool = True

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("network_fee", "platform_fee", "total_cost"):
            data[key] = str(data[key])
        return data


class GaslessExecutionEngine:
    """Builds, sponsors and submits ERC-4337 token transfers."""

    def __init__(
        self,
        network: NetworkConfig,
        reader: ERC20Reader,
        bundler: BundlerClient,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.network = network
        self.reader = reader
        self.bundler = bundler
        self.settings = settings
        self._clock = clock

    @property
    def entry_point(self) -> str:
        return self.settings.entry_point_address

    def get_token(self, symbol: str) -> TokenConfig:
        token = self.network.get_token(symbol)
        if token is None:
            raise ValidationError(f"Unsupported token: {symbol}")
        return token

    def network_info(self) -> dict:
        return {
            "name": self.network.name,
            "chain_id": self.network.chain_id,
            "is_testnet": self.network.is_testnet,
            "supported_tokens": self.network.supported_tokens,
            "explorer_url": self.network.explorer_url,
        }

    def estimate_fees(self, token_symbol: str, amount: Decimal | str) -> FeeEstimate:
        """Fee model: network fee is sponsored, platform fee is 1% in-kind."""
        token = self.get_token(token_symbol)
        try:
            value = Decimal(str(amount))
        except ArithmeticError:
            raise ValidationError(f"Invalid amount: {amount}")

        rate = self.settings.platform_fee_rate
        platform_fee = (value * rate).quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)

        return FeeEstimate(
            token_symbol=token.symbol,
            network_fee=Decimal("0"),
            network_fee_symbol=self.network.native_symbol,
            platform_fee=platform_fee,
            platform_fee_percentage=f"{rate * 100:.1f}%",
            total_cost=Decimal("0.00"),
            estimated_time=ESTIMATED_TIME,
            network=self.network.name,
            chain_id=self.network.chain_id,
        )

    async def execute(
        self,
        signer: LocalAccount,
        smart_account_address: str,
        recipient_address: str,
        token_symbol: str,
        amount: int,
        on_submitted: Optional[OnSubmitted] = None,
    ) -> ExecutionResult:
        """Transfer ``amount`` smallest units from the smart account.

        ``on_submitted`` lets the caller persist the operation hash before the
        receipt wait; an error there is logged and does not stop the wait.

        Returns:
            ExecutionResult; on failure ``error_type`` is one of SigningError,
            SubmissionError, ReceiptTimeoutError, InsufficientBalanceError or
            ValidationError
        """
        user_op_hash: Optional[str] = None
        try:
            token = self.get_token(token_symbol)

            balance = await self.reader.balance_of(token.address, smart_account_address)
            if balance < amount:
                return ExecutionResult(
                    success=False,
                    sender=smart_account_address,
                    error=(
                        f"Insufficient {token.symbol} balance. "
                        f"Required: {format_units(amount, token.decimals)}, "
                        f"Available: {format_units(balance, token.decimals)}"
                    ),
                    error_type="InsufficientBalanceError",
                )

            user_op = await self._build_user_operation(
                signer, smart_account_address, recipient_address, token, amount
            )

            try:
                user_op.sign(signer, self.entry_point, self.network.chain_id)
            except Exception as e:
                raise SigningError(f"Failed to sign user operation: {e}") from e

            user_op_hash = await self.bundler.send_user_operation(user_op)
            if on_submitted is not None:
                try:
                    await on_submitted(user_op_hash)
                except Exception as e:
                    logger.error(f"Could not record submitted operation {user_op_hash}: {e}")

            receipt = await self.bundler.wait_for_receipt(user_op_hash)

            if not receipt.success:
                raise SubmissionError(
                    f"User operation reverted on-chain: {receipt.reason or 'no reason given'}"
                )

            logger.info(
                f"Gasless transfer included: {receipt.transaction_hash} "
                f"(block {receipt.block_number})"
            )
            return ExecutionResult(
                success=True,
                transaction_hash=receipt.transaction_hash,
                user_op_hash=user_op_hash,
                block_number=receipt.block_number,
                gas_used=receipt.gas_used,
                sender=smart_account_address,
            )

        except (ExecutionError, ValidationError) as e:
            logger.error(f"Gasless execution failed ({type(e).__name__}): {e.message}")
            return ExecutionResult.failure(e, user_op_hash)
        except RpcError as e:
            logger.error(f"Gasless execution failed on RPC: {e.message}")
            return ExecutionResult.failure(SubmissionError(e.message), user_op_hash)
        except Exception as e:
            logger.error(f"Gasless execution failed: {e}")
            return ExecutionResult.failure(SubmissionError(str(e)), user_op_hash)

    async def _build_user_operation(
        self,
        signer: LocalAccount,
        smart_account_address: str,
        recipient_address: str,
        token: TokenConfig,
        amount: int,
    ) -> UserOperation:
        paymaster_data = await self._paymaster_data(signer, smart_account_address, token)

        call_data = encode_execute(token.address, 0, encode_transfer(recipient_address, amount))
        nonce = await get_account_nonce(self.reader.rpc, self.entry_point, smart_account_address)

        gas_price = await self.bundler.get_gas_price(
            GasPrice(
                max_fee_per_gas=self.settings.fallback_max_fee_per_gas,
                max_priority_fee_per_gas=self.settings.fallback_max_priority_fee_per_gas,
            )
        )

        user_op = UserOperation(
            sender=smart_account_address,
            nonce=nonce,
            call_data=call_data,
            max_fee_per_gas=gas_price.max_fee_per_gas,
            max_priority_fee_per_gas=gas_price.max_priority_fee_per_gas,
            paymaster=self.settings.paymaster_address,
            paymaster_verification_gas_limit=self.settings.paymaster_verification_gas_limit,
            paymaster_post_op_gas_limit=self.settings.paymaster_post_op_gas_limit,
            paymaster_data=paymaster_data,
        )

        gas = await self.bundler.estimate_gas(
            user_op,
            GasEstimate(
                call_gas_limit=self.settings.fallback_call_gas_limit,
                verification_gas_limit=self.settings.fallback_verification_gas_limit,
                pre_verification_gas=self.settings.fallback_pre_verification_gas,
            ),
        )
        user_op.call_gas_limit = gas.call_gas_limit
        user_op.verification_gas_limit = gas.verification_gas_limit
        user_op.pre_verification_gas = gas.pre_verification_gas
        return user_op

    async def _paymaster_data(
        self, signer: LocalAccount, smart_account_address: str, token: TokenConfig
    ) -> bytes:
        """Permit-backed paymaster data.

        Raises:
            SigningError: Paymaster not configured or permit signing failed
        """
        paymaster = self.settings.paymaster_address
        if not paymaster:
            raise SigningError(
                f"Paymaster setup failed: no paymaster configured for {self.network.name}"
            )

        permit_amount = parse_units(self.settings.sponsor_allowance, token.decimals)
        try:
            permit = await sign_permit(
                signer=signer,
                reader=self.reader,
                token_address=token.address,
                chain_id=self.network.chain_id,
                owner=smart_account_address,
                spender=paymaster,
                value=permit_amount,
                clock=self._clock,
            )
        except Exception as e:
            raise SigningError(f"Paymaster setup failed: {e}") from e

        return encode_paymaster_data(token.address, permit_amount, permit)
