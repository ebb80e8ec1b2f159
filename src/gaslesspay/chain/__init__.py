"""EVM chain access: JSON-RPC transport and ERC-20 helpers."""

from gaslesspay.chain.erc20 import ERC20Reader, encode_transfer
from gaslesspay.chain.rpc import JsonRpcClient, RpcError

__all__ = ["ERC20Reader", "JsonRpcClient", "RpcError", "encode_transfer"]
