"""Pure Starknet encoding helpers: selectors, felts, u256 / i257, token scaling."""
from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal, localcontext

from eth_utils import keccak

MASK_250 = 2**250 - 1
U128 = 2**128
FIELD_PRIME = 2**251 + 17 * 2**192 + 1


def get_selector_from_name(name: str) -> int:
    """Starknet keccak of an entry point or event name (keccak256 masked to 250 bits)."""
    return int.from_bytes(keccak(text=name), "big") & MASK_250


def selector_hex(name: str) -> str:
    return hex(get_selector_from_name(name))


def to_felt(value: str | int) -> int:
    """Parse a hex string (or pass an int) into a field element."""
    felt = int(value, 16) if isinstance(value, str) else int(value)
    if not 0 <= felt < FIELD_PRIME:
        raise ValueError(f"Value out of felt range: {value}")
    return felt


def encode_short_string(text: str) -> int:
    """Cairo short string: up to 31 ASCII characters packed big-endian."""
    data = text.encode("ascii")
    if len(data) > 31:
        raise ValueError(f"Short string too long: {text!r}")
    return int.from_bytes(data, "big")


def to_u256(value: int) -> list[int]:
    if value < 0 or value >= 2**256:
        raise ValueError(f"Value out of u256 range: {value}")
    return [value % U128, value // U128]


def from_u256(low: int, high: int) -> int:
    return low + high * U128


def from_i257(abs_low: int, abs_high: int, is_negative: int) -> int:
    """Cairo i257 is serialized as (abs: u256, is_negative: bool)."""
    magnitude = from_u256(abs_low, abs_high)
    return -magnitude if is_negative else magnitude


def from_raw(raw: int, decimals: int) -> Decimal:
    """Raw integer token amount to whole-token Decimal."""
    return Decimal(raw).scaleb(-decimals)


def to_raw(amount: Decimal, decimals: int, rounding: str = ROUND_FLOOR) -> int:
    """Whole-token Decimal to raw integer amount."""
    with localcontext() as ctx:
        ctx.prec = 78
        return int(amount.scaleb(decimals).to_integral_value(rounding=rounding))
