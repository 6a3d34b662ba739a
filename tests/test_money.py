"""Tests for exchange-rate and token-amount conversion."""

from decimal import Decimal

import pytest

from paymaster.money import format_token_amount, price_to_exchange_rate, token_cost


def test_price_to_exchange_rate_18_decimals():
    assert price_to_exchange_rate("0.0016") == 1_600_000_000_000_000
    assert price_to_exchange_rate(Decimal("2500")) == 2500 * 10 ** 18


def test_price_to_exchange_rate_6_decimals():
    # 2500 USDC per native unit.
    assert price_to_exchange_rate("2500", token_decimals=6) == 2_500_000_000


def test_price_rounds_down():
    assert price_to_exchange_rate("0.0000019", token_decimals=6) == 1


@pytest.mark.parametrize("price", ["0", "-1", "0.0000000000000000001"])
def test_unusable_prices_rejected(price):
    with pytest.raises(ValueError):
        price_to_exchange_rate(price)


def test_token_cost_floors():
    assert token_cost(5 * 10 ** 14, 1_600_000_000_000_000) == 800_000_000_000
    assert token_cost(1, 10 ** 17) == 0
    assert token_cost(10 ** 18, 2_500_000_000) == 2_500_000_000


def test_token_cost_rejects_negative_inputs():
    with pytest.raises(ValueError):
        token_cost(-1, 1)


def test_format_token_amount():
    assert format_token_amount(800_000_000_000) == "0.0000008"
    assert format_token_amount(2_500_000_000, decimals=6) == "2500"
