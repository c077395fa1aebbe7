"""Domain errors raised by the engine and translated at the command boundary."""

from __future__ import annotations


class AlgoTraderError(Exception):
    """Base class for errors that become a failed CommandResult."""


class OrderNotFoundError(AlgoTraderError):
    def __init__(self, kind: str, order_id: str) -> None:
        super().__init__(f"{kind} {order_id} not found")
        self.kind = kind
        self.order_id = order_id


class InvalidTransitionError(AlgoTraderError):
    def __init__(self, order_id: str, current: str, target: str) -> None:
        super().__init__(f"Cannot move order {order_id} from {current} to {target}")
        self.order_id = order_id
        self.current = current
        self.target = target


class NoTradingSessionError(AlgoTraderError):
    def __init__(self, message: str = "No active trading session") -> None:
        super().__init__(message)


class OrderValidationError(AlgoTraderError):
    """Order parameters, balance or risk limits rejected the order."""

    def __init__(self, errors: list[str], warnings: list[str] | None = None) -> None:
        super().__init__("; ".join(errors) if errors else "Order rejected")
        self.errors = list(errors)
        self.warnings = list(warnings or [])


class StoreError(AlgoTraderError):
    """The key-value store could not be read or written."""
