"""Pre-submission checks on order parameters and available balance."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from algotrader.config import (
    MARKET_ORDER_SLIPPAGE,
    MARKET_PRICE_CEILING,
    MARKET_PRICE_FLOOR,
    MAX_ORDER_SIZE,
    MAX_PRICE,
    MIN_ORDER_SIZE,
    MIN_ORDER_VALUE,
    MIN_PRICE,
)
from algotrader.models import OrderSide


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def add(self, fld: str, message: str) -> None:
        self.errors.append(f"{fld}: {message}")


def validate_order(token_id: str, side: OrderSide, size: float, price: float) -> ValidationResult:
    """Check size, price and minimum notional against exchange limits."""
    result = ValidationResult()

    if not token_id or not token_id.strip():
        result.add("token_id", "Token ID is required")

    if not math.isfinite(size) or size <= 0:
        result.add("size", "Order size must be a positive number")
    elif size < MIN_ORDER_SIZE:
        result.add("size", f"Order size must be at least {MIN_ORDER_SIZE} shares")
    elif size > MAX_ORDER_SIZE:
        result.add("size", f"Order size cannot exceed {MAX_ORDER_SIZE} shares")

    if not math.isfinite(price) or price <= 0:
        result.add("price", "Price must be a positive number")
    elif price < MIN_PRICE:
        result.add("price", f"Price must be at least {MIN_PRICE}")
    elif price > MAX_PRICE:
        result.add("price", f"Price cannot exceed {MAX_PRICE}")

    if result.is_valid:
        order_value = size * price
        if order_value < MIN_ORDER_VALUE:
            result.add(
                "size",
                f"Order value must be at least ${MIN_ORDER_VALUE:g} "
                f"({size:g} x ${price:.4f} = ${order_value:.2f})",
            )

    return result


def validate_balance(side: OrderSide, size: float, price: float, available: float) -> ValidationResult:
    """BUY needs USDC for size x price; SELL needs the shares themselves."""
    result = ValidationResult()
    if side == OrderSide.BUY:
        required = size * price
        if required > available:
            result.add(
                "balance",
                f"Insufficient USDC balance. Required: ${required:.2f}, Available: ${available:.2f}",
            )
    elif size > available:
        result.add("balance", f"Insufficient shares. Required: {size:g}, Available: {available:g}")
    return result


def marketable_price(side: OrderSide, current_price: float) -> float:
    """Limit price that crosses the spread: mid +/- slippage, clamped."""
    if side == OrderSide.BUY:
        return min(current_price * (1 + MARKET_ORDER_SLIPPAGE), MARKET_PRICE_CEILING)
    return max(current_price * (1 - MARKET_ORDER_SLIPPAGE), MARKET_PRICE_FLOOR)
