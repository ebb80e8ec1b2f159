"""Sponsored ERC-4337 execution."""

from gaslesspay.gasless.bundler import BundlerClient, GasEstimate, GasPrice, UserOperationReceipt
from gaslesspay.gasless.engine import ExecutionResult, FeeEstimate, GaslessExecutionEngine
from gaslesspay.gasless.permit import PermitSignature, sign_permit
from gaslesspay.gasless.user_operation import UserOperation

__all__ = [
    "BundlerClient",
    "ExecutionResult",
    "FeeEstimate",
    "GasEstimate",
    "GasPrice",
    "GaslessExecutionEngine",
    "PermitSignature",
    "UserOperation",
    "UserOperationReceipt",
    "sign_permit",
]
