"""Bot trade errors.

Every error carries a stable ``code`` (used by the API and the event journal)
and a human-readable message for the UI.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional


class BotTradeError(Exception):
    """Base class for all bot trade errors."""

    code = "bot_trade_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TradingSuspended(BotTradeError):
    code = "trading_suspended"

    def __init__(self, reason: str = "") -> None:
        msg = "Bot trading is temporarily suspended"
        super().__init__(f"{msg}: {reason}" if reason else msg)
        self.reason = reason


class InvalidTradeTimer(BotTradeError):
    code = "invalid_trade_timer"

    def __init__(self, timer_hours: object) -> None:
        super().__init__(f"Trade timer must be a positive number of hours, got {timer_hours!r}")


class InsufficientFunds(BotTradeError):
    code = "insufficient_funds"

    def __init__(self, available: Decimal, required: Decimal) -> None:
        super().__init__(f"Insufficient main balance: {available} available, {required} required")
        self.available = available
        self.required = required


class DailyLimitReached(BotTradeError):
    code = "daily_limit_reached"

    def __init__(self, limit: int) -> None:
        super().__init__(f"Daily trade limit reached! Maximum {limit} trades per day.")
        self.limit = limit


class InsufficientCoinSelection(BotTradeError):
    code = "insufficient_coin_selection"

    def __init__(self, selected: int, required: int) -> None:
        super().__init__(f"Please select at least {required} tokens ({selected} selected)")
        self.selected = selected
        self.required = required


class AmountOutOfRange(BotTradeError):
    code = "amount_out_of_range"

    def __init__(self, amount: Decimal, minimum: Optional[Decimal] = None, maximum: Optional[Decimal] = None) -> None:
        if minimum is None or maximum is None:
            msg = f"Please enter a valid investment amount (got {amount})"
        else:
            msg = f"Investment amount must be between {minimum} and {maximum} (got {amount})"
        super().__init__(msg)
        self.amount = amount


class TradeNotFound(BotTradeError):
    code = "trade_not_found"

    def __init__(self, trade_id: str) -> None:
        super().__init__(f"Bot trade {trade_id} not found")
        self.trade_id = trade_id


class TradeNotEligibleForSettlement(BotTradeError):
    code = "trade_not_eligible"

    def __init__(self, trade_id: str, remaining_seconds: int) -> None:
        super().__init__(f"Trade {trade_id} is not ready to close yet ({remaining_seconds}s remaining)")
        self.trade_id = trade_id
        self.remaining_seconds = remaining_seconds


class PersistenceFailure(BotTradeError):
    """Wraps an underlying store error."""

    code = "persistence_failure"

    def __init__(self, operation: str, cause: BaseException) -> None:
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


class UnknownCoin(BotTradeError):
    """Selected symbols that are not active in the token catalog."""

    code = "unknown_coin"

    def __init__(self, symbols: Iterable[str]) -> None:
        self.symbols = tuple(symbols)
        super().__init__(f"These tokens are not available for bot trading: {', '.join(self.symbols)}")


class InvalidSettings(BotTradeError):
    code = "invalid_settings"

    def __init__(self, detail: str) -> None:
        super().__init__(f"Invalid bot trade settings: {detail}")


class InvalidRequest(BotTradeError):
    """Request body or query did not match the expected shape."""

    code = "invalid_request"
