"""
Authoritative booking price.

Checkout and settlement both call :func:`resolve_price`; an amount is never
priced any other way.
"""
from decimal import Decimal
from typing import Optional

from pilgrim_pay.config import CommissionType
from pilgrim_pay.errors import InvalidPrice
from pilgrim_pay.helpers import quantize_money
from pilgrim_pay.models import Agent, Package

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def _decimal(value) -> Decimal:
    return Decimal(str(value)) if value is not None else ZERO


def resolve_price(package: Package, agent: Optional[Agent] = None) -> Decimal:
    if package is None or package.price is None:
        raise InvalidPrice("package price is missing")
    price = _decimal(package.price)
    if price <= 0:
        raise InvalidPrice("package price must be positive")

    if agent is None:
        amount = price
    else:
        rate = _decimal(agent.commission_rate)
        if rate > 0 and agent.commission_type == CommissionType.FIXED.value:
            amount = max(ZERO, price - rate)
        elif rate > 0 and agent.commission_type == CommissionType.PERCENTAGE.value:
            amount = price * (1 - rate / HUNDRED)
        elif rate > 0:
            raise InvalidPrice(f"unknown commission type {agent.commission_type!r}")
        else:
            amount = max(ZERO, price - _decimal(package.agent_discount))

    amount = quantize_money(amount)
    if amount <= 0:
        raise InvalidPrice("resolved amount must be positive")
    return amount
