"""ERC-20 call encoding and read helpers."""

import logging

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector
from web3 import Web3

from gaslesspay.chain.rpc import JsonRpcClient

logger = logging.getLogger(__name__)

BALANCE_OF_SELECTOR = function_signature_to_4byte_selector("balanceOf(address)")
TRANSFER_SELECTOR = function_signature_to_4byte_selector("transfer(address,uint256)")
NAME_SELECTOR = function_signature_to_4byte_selector("name()")
NONCES_SELECTOR = function_signature_to_4byte_selector("nonces(address)")


def encode_transfer(recipient: str, amount: int) -> bytes:
    """Calldata for ``transfer(recipient, amount)``."""
    return TRANSFER_SELECTOR + encode(
        ["address", "uint256"], [Web3.to_checksum_address(recipient), amount]
    )


def encode_balance_of(owner: str) -> bytes:
    return BALANCE_OF_SELECTOR + encode(["address"], [Web3.to_checksum_address(owner)])


def encode_nonces(owner: str) -> bytes:
    return NONCES_SELECTOR + encode(["address"], [Web3.to_checksum_address(owner)])


def _to_bytes(result: str) -> bytes:
    return bytes.fromhex(result[2:] if result.startswith("0x") else result)


class ERC20Reader:
    """Read-only ERC-20 state over JSON-RPC."""

    def __init__(self, rpc: JsonRpcClient):
        self.rpc = rpc

    async def balance_of(self, token: str, owner: str) -> int:
        """Raw balance in the token's smallest unit."""
        result = await self.rpc.eth_call(token, "0x" + encode_balance_of(owner).hex())
        (balance,) = decode(["uint256"], _to_bytes(result))
        return balance

    async def name(self, token: str) -> str:
        result = await self.rpc.eth_call(token, "0x" + NAME_SELECTOR.hex())
        (name,) = decode(["string"], _to_bytes(result))
        return name

    async def nonces(self, token: str, owner: str) -> int:
        """EIP-2612 permit nonce for an owner."""
        result = await self.rpc.eth_call(token, "0x" + encode_nonces(owner).hex())
        (nonce,) = decode(["uint256"], _to_bytes(result))
        return nonce
