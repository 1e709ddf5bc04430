"""Pure ABI helpers for ERC-20 balance reads — no I/O."""
from __future__ import annotations

# keccak256("balanceOf(address)")[:4]
BALANCE_OF_SELECTOR = "0x70a08231"


def encode_address(address: str) -> str:
    """Left-pad a 20-byte hex address to a 32-byte ABI word."""
    body = address.lower()
    if body.startswith("0x"):
        body = body[2:]
    if len(body) != 40 or any(c not in "0123456789abcdef" for c in body):
        raise ValueError(f"Invalid EVM address: {address}")
    return body.rjust(64, "0")


def encode_balance_of(address: str) -> str:
    """Build call data for ``balanceOf(address)``."""
    return BALANCE_OF_SELECTOR + encode_address(address)


def decode_uint(result: str | None) -> int:
    """Decode a hex quantity or uint256 return value.

    Examples:
        "0x0" → 0
        "0x" → 0
        "0x0de0b6b3a7640000" → 10**18
    """
    if not result or result == "0x":
        return 0
    return int(result, 16)


def scale_amount(raw: int, decimals: int) -> float:
    """Convert a raw integer balance into token units."""
    return raw / (10**decimals)
