"""EIP-2612 permit authorizations for the token paymaster.

The paymaster is paid in the transferred token. A signed permit lets it pull
a bounded amount from the sender's account to cover network fees, so the
sender never needs native gas currency.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from eth_abi.packed import encode_packed
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount
from web3 import Web3

from gaslesspay.chain.erc20 import ERC20Reader

logger = logging.getLogger(__name__)

PERMIT_VALIDITY_SECONDS = 3600
FALLBACK_TOKEN_NAME = "Token"
PERMIT_VERSION = "1"

# Paymaster mode byte: 0 = pay with permit
PAYMASTER_MODE_PERMIT = 0

PERMIT_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Permit": [
        {"name": "owner", "type": "address"},
        {"name": "spender", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
}


@dataclass(frozen=True)
class PermitSignature:
    """Signed permit parameters."""

    value: int
    deadline: int
    v: int
    r: int
    s: int

    def packed(self) -> bytes:
        """``abi.encodePacked(value, deadline, v, r, s)``."""
        return encode_packed(
            ["uint256", "uint256", "uint8", "bytes32", "bytes32"],
            [
                self.value,
                self.deadline,
                self.v,
                self.r.to_bytes(32, "big"),
                self.s.to_bytes(32, "big"),
            ],
        )


def build_permit_message(
    token_name: str,
    token_address: str,
    chain_id: int,
    owner: str,
    spender: str,
    value: int,
    nonce: int,
    deadline: int,
) -> dict:
    """Full EIP-712 structure for a Permit."""
    return {
        "types": PERMIT_TYPES,
        "primaryType": "Permit",
        "domain": {
            "name": token_name,
            "version": PERMIT_VERSION,
            "chainId": chain_id,
            "verifyingContract": Web3.to_checksum_address(token_address),
        },
        "message": {
            "owner": Web3.to_checksum_address(owner),
            "spender": Web3.to_checksum_address(spender),
            "value": value,
            "nonce": nonce,
            "deadline": deadline,
        },
    }


async def sign_permit(
    signer: LocalAccount,
    reader: ERC20Reader,
    token_address: str,
    chain_id: int,
    owner: str,
    spender: str,
    value: int,
    deadline: Optional[int] = None,
    clock: Callable[[], float] = time.time,
) -> PermitSignature:
    """Sign a permit letting ``spender`` claim ``value`` of the owner's tokens.

    The token's on-chain name and the owner's permit nonce are read first;
    tokens that do not expose them get "Token" and 0 respectively.
    """
    if deadline is None:
        deadline = int(clock()) + PERMIT_VALIDITY_SECONDS

    try:
        token_name = await reader.name(token_address)
    except Exception as e:
        logger.debug(f"Token {token_address} has no readable name, using default: {e}")
        token_name = FALLBACK_TOKEN_NAME

    try:
        nonce = await reader.nonces(token_address, owner)
    except Exception as e:
        logger.debug(f"Token {token_address} has no permit nonces, using 0: {e}")
        nonce = 0

    message = build_permit_message(
        token_name, token_address, chain_id, owner, spender, value, nonce, deadline
    )
    signed = signer.sign_message(encode_typed_data(full_message=message))

    logger.info(f"Permit signed for {value} units of {token_address} to {spender}")
    return PermitSignature(value=value, deadline=deadline, v=signed.v, r=signed.r, s=signed.s)


def encode_paymaster_data(token_address: str, permit_amount: int, permit: PermitSignature) -> bytes:
    """Paymaster-specific data: ``mode | token | permitAmount | permit blob``."""
    return encode_packed(
        ["uint8", "address", "uint256", "bytes"],
        [
            PAYMASTER_MODE_PERMIT,
            Web3.to_checksum_address(token_address),
            permit_amount,
            permit.packed(),
        ],
    )
