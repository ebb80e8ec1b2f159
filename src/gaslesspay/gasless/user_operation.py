"""ERC-4337 v0.7 user operations.

Field packing follows EntryPoint v0.7's PackedUserOperation:
- accountGasLimits = verificationGasLimit (high 128 bits) | callGasLimit
- gasFees = maxPriorityFeePerGas (high 128 bits) | maxFeePerGas
- paymasterAndData = paymaster | pmVerificationGas (16 bytes) | pmPostOpGas (16 bytes) | data
"""

from dataclasses import dataclass
from typing import Optional

from eth_abi import decode, encode
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_utils import function_signature_to_4byte_selector, keccak
from web3 import Web3

from gaslesspay.chain.rpc import JsonRpcClient

EXECUTE_SELECTOR = function_signature_to_4byte_selector("execute(address,uint256,bytes)")
GET_NONCE_SELECTOR = function_signature_to_4byte_selector("getNonce(address,uint192)")

# Well-formed ECDSA signature used only for gas estimation
DUMMY_SIGNATURE = bytes.fromhex("f" * 31 + "0" * 33 + "7" + "a" * 63 + "1c")

UINT128_MAX = 2**128 - 1


def encode_execute(target: str, value: int, data: bytes) -> bytes:
    """Smart account calldata for a single call (SimpleAccount ``execute``)."""
    return EXECUTE_SELECTOR + encode(
        ["address", "uint256", "bytes"], [Web3.to_checksum_address(target), value, data]
    )


def pack_uint128_pair(high: int, low: int) -> bytes:
    if not (0 <= high <= UINT128_MAX and 0 <= low <= UINT128_MAX):
        raise ValueError("Gas values must fit in 128 bits")
    return ((high << 128) | low).to_bytes(32, "big")


def _hex(value: int) -> str:
    return hex(value)


def _bytes_hex(value: bytes) -> str:
    return "0x" + value.hex()


@dataclass
class UserOperation:
    """Unpacked v0.7 user operation."""

    sender: str
    nonce: int
    call_data: bytes
    call_gas_limit: int = 0
    verification_gas_limit: int = 0
    pre_verification_gas: int = 0
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    paymaster: Optional[str] = None
    paymaster_verification_gas_limit: int = 0
    paymaster_post_op_gas_limit: int = 0
    paymaster_data: bytes = b""
    factory: Optional[str] = None
    factory_data: bytes = b""
    signature: bytes = DUMMY_SIGNATURE

    @property
    def init_code(self) -> bytes:
        if not self.factory:
            return b""
        return bytes.fromhex(Web3.to_checksum_address(self.factory)[2:]) + self.factory_data

    @property
    def account_gas_limits(self) -> bytes:
        return pack_uint128_pair(self.verification_gas_limit, self.call_gas_limit)

    @property
    def gas_fees(self) -> bytes:
        return pack_uint128_pair(self.max_priority_fee_per_gas, self.max_fee_per_gas)

    @property
    def paymaster_and_data(self) -> bytes:
        if not self.paymaster:
            return b""
        return (
            bytes.fromhex(Web3.to_checksum_address(self.paymaster)[2:])
            + self.paymaster_verification_gas_limit.to_bytes(16, "big")
            + self.paymaster_post_op_gas_limit.to_bytes(16, "big")
            + self.paymaster_data
        )

    def hash(self, entry_point: str, chain_id: int) -> bytes:
        """userOpHash as computed by ``EntryPoint.getUserOpHash``."""
        packed = encode(
            [
                "address",
                "uint256",
                "bytes32",
                "bytes32",
                "bytes32",
                "uint256",
                "bytes32",
                "bytes32",
            ],
            [
                Web3.to_checksum_address(self.sender),
                self.nonce,
                keccak(self.init_code),
                keccak(self.call_data),
                self.account_gas_limits,
                self.pre_verification_gas,
                self.gas_fees,
                keccak(self.paymaster_and_data),
            ],
        )
        return keccak(
            encode(
                ["bytes32", "address", "uint256"],
                [keccak(packed), Web3.to_checksum_address(entry_point), chain_id],
            )
        )

    def sign(self, signer: LocalAccount, entry_point: str, chain_id: int) -> bytes:
        """Sign the userOpHash (EIP-191 personal message) and attach the signature."""
        op_hash = self.hash(entry_point, chain_id)
        signed = signer.sign_message(encode_defunct(primitive=op_hash))
        self.signature = bytes(signed.signature)
        return op_hash

    def to_rpc(self) -> dict:
        """JSON form accepted by ``eth_sendUserOperation`` (v0.7)."""
        data = {
            "sender": Web3.to_checksum_address(self.sender),
            "nonce": _hex(self.nonce),
            "callData": _bytes_hex(self.call_data),
            "callGasLimit": _hex(self.call_gas_limit),
            "verificationGasLimit": _hex(self.verification_gas_limit),
            "preVerificationGas": _hex(self.pre_verification_gas),
            "maxFeePerGas": _hex(self.max_fee_per_gas),
            "maxPriorityFeePerGas": _hex(self.max_priority_fee_per_gas),
            "signature": _bytes_hex(self.signature),
        }
        if self.factory:
            data["factory"] = Web3.to_checksum_address(self.factory)
            data["factoryData"] = _bytes_hex(self.factory_data)
        if self.paymaster:
            data["paymaster"] = Web3.to_checksum_address(self.paymaster)
            data["paymasterVerificationGasLimit"] = _hex(self.paymaster_verification_gas_limit)
            data["paymasterPostOpGasLimit"] = _hex(self.paymaster_post_op_gas_limit)
            data["paymasterData"] = _bytes_hex(self.paymaster_data)
        return data


async def get_account_nonce(
    rpc: JsonRpcClient, entry_point: str, sender: str, key: int = 0
) -> int:
    """Read the smart account's nonce from the entry point."""
    call_data = GET_NONCE_SELECTOR + encode(
        ["address", "uint192"], [Web3.to_checksum_address(sender), key]
    )
    result = await rpc.eth_call(entry_point, _bytes_hex(call_data))
    (nonce,) = decode(["uint256"], bytes.fromhex(result[2:] if result.startswith("0x") else result))
    return nonce
