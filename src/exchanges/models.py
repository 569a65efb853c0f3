"""
Unified exchange data contract.

Every exchange normalizer produces these records; the position
reconstruction engine consumes nothing else.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Tuple


FIXED_POINT_SCALE = 10 ** 8


class Exchange(Enum):
    BITMEX = "bitmex"
    BINANCE = "binance"
    OKX = "okx"
    BYBIT = "bybit"


class Side(Enum):
    BUY = "Buy"
    SELL = "Sell"

    @property
    def sign(self) -> int:
        return 1 if self is Side.BUY else -1


class ExecType(Enum):
    TRADE = "Trade"
    FUNDING = "Funding"
    SETTLEMENT = "Settlement"
    LIQUIDATION = "Liquidation"
    BANKRUPTCY = "Bankruptcy"

    @property
    def moves_quantity(self) -> bool:
        """Whether fills of this type change position size."""
        return self in (ExecType.TRADE, ExecType.LIQUIDATION, ExecType.BANKRUPTCY)


class TransactType(Enum):
    REALISED_PNL = "RealisedPNL"
    FUNDING = "Funding"
    COMMISSION = "Commission"
    TRANSFER = "Transfer"
    DEPOSIT = "Deposit"
    WITHDRAWAL = "Withdrawal"
    AFFILIATE_PAYOUT = "AffiliatePayout"


def to_decimal(value, default: str = "0") -> Decimal:
    """
    Safely convert a value to Decimal, avoiding float precision issues.

    Always converts through string representation to preserve precision.
    """
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


def to_fixed_point(value) -> int:
    """Scale a quote-currency amount into integer 1e-8 units."""
    scaled = to_decimal(value) * FIXED_POINT_SCALE
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_fixed_point(units: int) -> Decimal:
    return Decimal(units) / FIXED_POINT_SCALE


def parse_timestamp(value) -> datetime:
    """
    Parse an exchange timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (with or without a trailing ``Z``), epoch
    milliseconds, or datetimes.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    if not value:
        raise ValueError("timestamp is required")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


_QUOTE_ASSETS = ("USDT", "USDC", "BUSD", "FDUSD", "TUSD", "USD", "BTC", "ETH", "EUR")
# BitMEX has no TUSD or BTC quoted contracts; XBTUSD must not match TUSD
_BITMEX_QUOTE_ASSETS = ("USDT", "USDC", "USD", "EUR", "XBT")


def format_symbol(symbol: str, exchange: Exchange) -> str:
    """
    Human-readable symbol, e.g. ``BTCUSDT`` -> ``BTC/USDT``.

    BitMEX quotes bitcoin as XBT; it is shown as BTC.
    """
    if not symbol:
        return symbol

    if "-" in symbol:
        # OKX instrument ids: BTC-USDT-SWAP, BTC-USD-240329
        parts = symbol.split("-")
        base, quote = parts[0], parts[1]
    else:
        base, quote = symbol, ""
        quotes = _BITMEX_QUOTE_ASSETS if exchange is Exchange.BITMEX else _QUOTE_ASSETS
        for candidate in quotes:
            if symbol.endswith(candidate) and len(symbol) > len(candidate):
                base, quote = symbol[:-len(candidate)], candidate
                break
        if not quote:
            return symbol

    if exchange is Exchange.BITMEX:
        base = "BTC" if base == "XBT" else base
        quote = "BTC" if quote == "XBT" else quote
    return f"{base}/{quote}"


@dataclass(frozen=True)
class ExecutionExtras:
    """
    Exchange-specific extras decoded once by the normalizers.

    All fields are optional; the reconstruction engine only reads
    ``exchange_realized_pnl`` as a diagnostic.
    """
    exchange_realized_pnl: Optional[Decimal] = None
    position_side: Optional[str] = None  # LONG / SHORT / BOTH (hedge vs one-way mode)
    is_buyer: Optional[bool] = None
    is_maker: Optional[bool] = None

    def to_dict(self) -> dict:
        return {
            "exchange_realized_pnl": (
                str(self.exchange_realized_pnl)
                if self.exchange_realized_pnl is not None else None
            ),
            "position_side": self.position_side,
            "is_buyer": self.is_buyer,
            "is_maker": self.is_maker,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ExecutionExtras":
        if not data:
            return cls()
        pnl = data.get("exchange_realized_pnl")
        return cls(
            exchange_realized_pnl=to_decimal(pnl) if pnl is not None else None,
            position_side=data.get("position_side"),
            is_buyer=data.get("is_buyer"),
            is_maker=data.get("is_maker"),
        )


@dataclass(frozen=True)
class UnifiedExecution:
    """One fill, normalized across exchanges."""

    exec_id: str
    order_id: str
    symbol: str
    side: Side
    quantity: Decimal
    price: Optional[Decimal]
    timestamp: datetime
    exchange: Exchange
    exec_type: ExecType = ExecType.TRADE
    display_symbol: str = ""
    order_type: str = ""
    order_status: str = ""
    cost: int = 0          # fixed-point, 1e-8 units
    commission: int = 0    # fixed-point, 1e-8 units; negative for rebates
    text: str = ""
    extras: ExecutionExtras = field(default_factory=ExecutionExtras)

    @property
    def signed_quantity(self) -> Decimal:
        return self.quantity * self.side.sign

    @property
    def fee(self) -> Decimal:
        return from_fixed_point(self.commission)

    @property
    def is_trade(self) -> bool:
        return self.exec_type.moves_quantity


@dataclass(frozen=True)
class WalletTransaction:
    """One wallet-history entry (funding, realized PnL, transfer...)."""

    transact_id: str
    transact_type: TransactType
    amount: int            # fixed-point
    timestamp: datetime
    exchange: Exchange
    currency: str = ""
    account: str = ""
    fee: int = 0           # fixed-point
    status: str = "Completed"
    text: str = ""


@dataclass(frozen=True)
class BalancedTransaction:
    """A wallet transaction annotated with the running balance after it."""

    transaction: WalletTransaction
    wallet_balance: int    # fixed-point


@dataclass(frozen=True)
class UnifiedOrder:
    """One order from the exchange's order history, normalized across exchanges."""

    order_id: str
    symbol: str
    side: Side
    quantity: Decimal
    timestamp: datetime
    exchange: Exchange
    display_symbol: str = ""
    order_type: str = ""
    status: str = ""
    price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    avg_price: Optional[Decimal] = None
    filled_quantity: Decimal = Decimal("0")
    text: str = ""


@dataclass(frozen=True)
class ExchangePosition:
    """An open position as the exchange reports it. Quantity is signed."""

    symbol: str
    quantity: Decimal
    avg_entry_price: Optional[Decimal] = None
    display_symbol: str = ""
    unrealized_pnl: Optional[Decimal] = None
    liquidation_price: Optional[Decimal] = None

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "display_symbol": self.display_symbol,
            "quantity": str(self.quantity),
            "avg_entry_price": _optional_str(self.avg_entry_price),
            "unrealized_pnl": _optional_str(self.unrealized_pnl),
            "liquidation_price": _optional_str(self.liquidation_price),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExchangePosition":
        return cls(
            symbol=data["symbol"],
            display_symbol=data.get("display_symbol") or "",
            quantity=to_decimal(data.get("quantity")),
            avg_entry_price=_optional_decimal(data.get("avg_entry_price")),
            unrealized_pnl=_optional_decimal(data.get("unrealized_pnl")),
            liquidation_price=_optional_decimal(data.get("liquidation_price")),
        )


@dataclass(frozen=True)
class AccountSummary:
    """Exchange-reported balances and open positions at one moment."""

    exchange: Exchange
    captured_at: datetime
    currency: str
    wallet_balance: Decimal
    margin_balance: Optional[Decimal] = None
    available_margin: Optional[Decimal] = None
    unrealized_pnl: Optional[Decimal] = None
    realized_pnl: Optional[Decimal] = None
    positions: Tuple[ExchangePosition, ...] = ()


def _optional_decimal(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_decimal(value)


def _optional_str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None
