"""
Redemption calldata for resolved Limitless markets.

After a market resolves, winning outcome tokens are redeemed on the
Conditional Tokens contract to get the collateral back. The holder calls
redeemPositions directly, so no approval is involved.
"""

from typing import List

from eth_abi import encode
from eth_utils import keccak

from src.mirror.models import Outcome

ZERO_BYTES32 = bytes(32)

REDEEM_SIGNATURE = "redeemPositions(address,bytes32,bytes32,uint256[])"


def _function_selector(signature: str) -> bytes:
    """First 4 bytes of Keccak-256 of the function signature."""
    return keccak(text=signature)[:4]


def condition_bytes(condition_id: str) -> bytes:
    if condition_id.startswith("0x"):
        condition_id = condition_id[2:]
    raw = bytes.fromhex(condition_id)
    if len(raw) != 32:
        raise ValueError(f"condition id must be 32 bytes, got {len(raw)}")
    return raw


def index_set(outcome: Outcome) -> int:
    """Index set bitmask for a single outcome slot of a binary condition."""
    return 1 << int(outcome)


def encode_redeem_positions(
    collateral_token: str,
    parent_collection_id: bytes,
    condition_id: str,
    index_sets: List[int],
) -> str:
    """Encode the redeemPositions call for the CTF contract."""
    selector = _function_selector(REDEEM_SIGNATURE)
    encoded_args = encode(
        ["address", "bytes32", "bytes32", "uint256[]"],
        [collateral_token, parent_collection_id, condition_bytes(condition_id), index_sets],
    )
    return "0x" + (selector + encoded_args).hex()


def redeem_calldata(collateral_token: str, condition_id: str) -> str:
    """
    Calldata redeeming both outcome slots of a binary market.

    The losing slot pays zero, so redeeming both is safe and also sweeps
    any dust left on the losing side.
    """
    return encode_redeem_positions(
        collateral_token=collateral_token,
        parent_collection_id=ZERO_BYTES32,
        condition_id=condition_id,
        index_sets=[index_set(Outcome.NO), index_set(Outcome.YES)],
    )
