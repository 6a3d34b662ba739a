"""Fixed-point conversion between native gas cost and fee-token amounts."""

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR


NATIVE_DECIMALS = 18
WEI_PER_NATIVE = 10 ** NATIVE_DECIMALS
UINT256_MAX = 2 ** 256 - 1


def price_to_exchange_rate(price: Decimal | float | int | str, token_decimals: int = 18) -> int:
    """Convert a human price (tokens per 1 native unit) to a base-unit rate.

    ``price_to_exchange_rate("0.0016", 18)`` returns ``1_600_000_000_000_000``.
    Rounds down so the attested rate never exceeds the quoted one.
    """
    if token_decimals < 0:
        raise ValueError("token_decimals must be >= 0")
    dec = Decimal(str(price))
    if dec <= 0:
        raise ValueError(f"Price must be positive: {price}")
    rate = int((dec * (Decimal(10) ** token_decimals)).to_integral_value(rounding=ROUND_FLOOR))
    if rate == 0 or rate > UINT256_MAX:
        raise ValueError(f"Price {price} does not fit a uint256 rate at {token_decimals} decimals")
    return rate


def token_cost(actual_gas_cost: int, exchange_rate: int) -> int:
    """Token base units owed for ``actual_gas_cost`` wei at ``exchange_rate``."""
    if actual_gas_cost < 0:
        raise ValueError("actual_gas_cost must be >= 0")
    if exchange_rate < 0:
        raise ValueError("exchange_rate must be >= 0")
    return actual_gas_cost * exchange_rate // WEI_PER_NATIVE


def format_token_amount(amount: int, decimals: int = 18) -> str:
    """Format integer base units as a decimal string."""
    value = Decimal(amount) / (Decimal(10) ** decimals)
    return f"{value.normalize():f}"
