"""
Normalizers from exchange-native payloads to the unified contract.

Each function takes one already-fetched record (a dict as returned by the
exchange's REST API) and returns a UnifiedExecution, UnifiedOrder or
WalletTransaction; account-state payloads become an AccountSummary.
Exchange-specific extras are decoded here, once, into ExecutionExtras.
Invalid payloads raise ValueError; callers decide whether to skip them.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List

from src.exchanges.models import (
    AccountSummary,
    Exchange,
    ExecType,
    ExchangePosition,
    ExecutionExtras,
    Side,
    TransactType,
    UnifiedExecution,
    UnifiedOrder,
    WalletTransaction,
    format_symbol,
    from_fixed_point,
    parse_timestamp,
    to_decimal,
    to_fixed_point,
)

logger = logging.getLogger(__name__)


_EXEC_TYPES = {
    "trade": ExecType.TRADE,
    "funding": ExecType.FUNDING,
    "settlement": ExecType.SETTLEMENT,
    "settle": ExecType.SETTLEMENT,
    "liquidation": ExecType.LIQUIDATION,
    "busttrade": ExecType.BANKRUPTCY,
    "bankruptcy": ExecType.BANKRUPTCY,
    "adltrade": ExecType.TRADE,
}

_BINANCE_INCOME_TYPES = {
    "REALIZED_PNL": TransactType.REALISED_PNL,
    "FUNDING_FEE": TransactType.FUNDING,
    "COMMISSION": TransactType.COMMISSION,
    "TRANSFER": TransactType.TRANSFER,
    "WELCOME_BONUS": TransactType.TRANSFER,
    "INSURANCE_CLEAR": TransactType.REALISED_PNL,
    "REFERRAL_KICKBACK": TransactType.AFFILIATE_PAYOUT,
    "COMMISSION_REBATE": TransactType.COMMISSION,
}


def _parse_side(value, exec_type: ExecType) -> Side:
    text = (value or "").strip().lower()
    if text == "buy":
        return Side.BUY
    if text == "sell":
        return Side.SELL
    if not exec_type.moves_quantity:
        # Funding rows carry no side on some exchanges
        return Side.BUY
    raise ValueError(f"unknown side {value!r}")


def _parse_exec_type(value) -> ExecType:
    key = (value or "Trade").replace("_", "").lower()
    try:
        return _EXEC_TYPES[key]
    except KeyError:
        raise ValueError(f"unknown execution type {value!r}")


def _optional_price(value):
    if value is None or value == "":
        return None
    return to_decimal(value)


def normalize_bitmex_execution(data: dict) -> UnifiedExecution:
    """BitMEX /execution/tradeHistory row. Cost and commission are already satoshis."""
    exec_type = _parse_exec_type(data.get("execType"))
    symbol = data.get("symbol", "")
    return UnifiedExecution(
        exec_id=str(data["execID"]),
        order_id=str(data.get("orderID", "")),
        symbol=symbol,
        display_symbol=format_symbol(symbol, Exchange.BITMEX),
        side=_parse_side(data.get("side"), exec_type),
        quantity=to_decimal(data.get("lastQty")),
        price=_optional_price(data.get("lastPx")),
        exec_type=exec_type,
        order_type=data.get("ordType") or "",
        order_status=data.get("ordStatus") or "",
        cost=int(data.get("execCost") or 0),
        commission=int(data.get("execComm") or 0),
        timestamp=parse_timestamp(data.get("timestamp")),
        text=data.get("text") or "",
        exchange=Exchange.BITMEX,
    )


def normalize_binance_trade(data: dict) -> UnifiedExecution:
    """Binance USDⓈ-M futures /fapi/v1/userTrades row."""
    qty = to_decimal(data.get("qty"))
    price = to_decimal(data.get("price"))
    commission = to_decimal(data.get("commission"))
    if data.get("commissionAsset", "USDT") != "USDT":
        # Commission charged in the base asset; value it at the fill price
        commission = commission * price
    symbol = data.get("symbol", "")
    return UnifiedExecution(
        exec_id=str(data["id"]),
        order_id=str(data.get("orderId", "")),
        symbol=symbol,
        display_symbol=format_symbol(symbol, Exchange.BINANCE),
        side=_parse_side(data.get("side"), ExecType.TRADE),
        quantity=qty,
        price=price,
        exec_type=ExecType.TRADE,
        order_type="Limit" if data.get("maker") else "Market",
        order_status="Filled",
        cost=to_fixed_point(qty * price),
        commission=to_fixed_point(commission),
        timestamp=parse_timestamp(data.get("time")),
        exchange=Exchange.BINANCE,
        extras=ExecutionExtras(
            exchange_realized_pnl=to_decimal(data.get("realizedPnl")),
            position_side=data.get("positionSide") or "BOTH",
            is_buyer=data.get("buyer"),
            is_maker=data.get("maker"),
        ),
    )


def normalize_okx_fill(data: dict) -> UnifiedExecution:
    """OKX /api/v5/trade/fills-history row. OKX reports fees as negative numbers."""
    qty = to_decimal(data.get("fillSz"))
    price = to_decimal(data.get("fillPx"))
    symbol = data.get("instId", "")
    pnl = data.get("fillPnl", data.get("pnl"))
    return UnifiedExecution(
        exec_id=str(data["tradeId"]),
        order_id=str(data.get("ordId", "")),
        symbol=symbol,
        display_symbol=format_symbol(symbol, Exchange.OKX),
        side=_parse_side(data.get("side"), ExecType.TRADE),
        quantity=qty,
        price=price,
        exec_type=ExecType.TRADE,
        order_type="Limit" if data.get("execType") == "M" else "Market",
        order_status="Filled",
        cost=to_fixed_point(qty * price),
        commission=-to_fixed_point(data.get("fee")),
        timestamp=parse_timestamp(data.get("ts")),
        exchange=Exchange.OKX,
        extras=ExecutionExtras(
            exchange_realized_pnl=to_decimal(pnl) if pnl not in (None, "") else None,
            position_side=(data.get("posSide") or "net").upper(),
            is_maker=data.get("execType") == "M",
        ),
    )


def normalize_bybit_execution(data: dict) -> UnifiedExecution:
    """Bybit v5 /v5/execution/list row."""
    exec_type = _parse_exec_type(data.get("execType"))
    symbol = data.get("symbol", "")
    qty = to_decimal(data.get("execQty"))
    price = _optional_price(data.get("execPrice"))
    value = data.get("execValue")
    if value in (None, ""):
        value = qty * price if price is not None else 0
    return UnifiedExecution(
        exec_id=str(data["execId"]),
        order_id=str(data.get("orderId", "")),
        symbol=symbol,
        display_symbol=format_symbol(symbol, Exchange.BYBIT),
        side=_parse_side(data.get("side"), exec_type),
        quantity=qty,
        price=price,
        exec_type=exec_type,
        order_type=data.get("orderType") or "",
        order_status="Filled",
        cost=to_fixed_point(value),
        commission=to_fixed_point(data.get("execFee")),
        timestamp=parse_timestamp(data.get("execTime")),
        exchange=Exchange.BYBIT,
        extras=ExecutionExtras(is_maker=data.get("isMaker")),
    )


NORMALIZERS = {
    Exchange.BITMEX: normalize_bitmex_execution,
    Exchange.BINANCE: normalize_binance_trade,
    Exchange.OKX: normalize_okx_fill,
    Exchange.BYBIT: normalize_bybit_execution,
}


def normalize_executions(exchange: Exchange, rows: Iterable[dict]) -> List[UnifiedExecution]:
    """
    Normalize a batch of raw rows, skipping (and logging) invalid ones.

    Returns executions in exchange-delivered order; use sort_executions
    before handing them to the reconstruction engine.
    """
    normalizer = NORMALIZERS[exchange]
    executions = []
    for row in rows:
        try:
            executions.append(normalizer(row))
        except (KeyError, ValueError, ArithmeticError) as e:
            logger.warning(f"Skipped invalid {exchange.value} execution {row!r}: {e}")
    return executions


def _exec_id_key(exec_id: str):
    # Numeric ids (Binance, OKX) must compare numerically, not lexically
    if exec_id.isdigit():
        return (0, int(exec_id), "")
    return (1, 0, exec_id)


def sort_executions(executions: Iterable[UnifiedExecution]) -> List[UnifiedExecution]:
    """Order by timestamp, ties broken by execution id."""
    return sorted(executions, key=lambda e: (e.timestamp, _exec_id_key(e.exec_id)))


def normalize_binance_income(data: dict) -> WalletTransaction:
    """Binance /fapi/v1/income row."""
    income_type = data.get("incomeType", "")
    return WalletTransaction(
        transact_id=str(data.get("tranId") or f"{data.get('time')}-{income_type}"),
        transact_type=_BINANCE_INCOME_TYPES.get(income_type, TransactType.TRANSFER),
        amount=to_fixed_point(data.get("income")),
        currency=data.get("asset") or "USDT",
        account=data.get("symbol") or "USDT",
        timestamp=parse_timestamp(data.get("time")),
        text=data.get("info") or "",
        exchange=Exchange.BINANCE,
    )


def normalize_bitmex_wallet_transaction(data: dict) -> WalletTransaction:
    """BitMEX /user/walletHistory row (amounts already in satoshis)."""
    raw_type = data.get("transactType", "Transfer")
    try:
        transact_type = TransactType(raw_type)
    except ValueError:
        transact_type = TransactType.TRANSFER
    return WalletTransaction(
        transact_id=str(data["transactID"]),
        transact_type=transact_type,
        amount=int(data.get("amount") or 0),
        fee=int(data.get("fee") or 0),
        currency=data.get("currency") or "XBt",
        account=str(data.get("account") or ""),
        status=data.get("transactStatus") or "Completed",
        timestamp=parse_timestamp(data.get("timestamp")),
        text=data.get("text") or "",
        exchange=Exchange.BITMEX,
    )


# -- Orders --

_ORDER_STATUSES = {
    "new": "New",
    "live": "New",
    "untriggered": "New",
    "partiallyfilled": "PartiallyFilled",
    "filled": "Filled",
    "canceled": "Canceled",
    "cancelled": "Canceled",
    "mmpcanceled": "Canceled",
    "partiallyfilledcanceled": "Canceled",
    "deactivated": "Canceled",
    "rejected": "Rejected",
    "expired": "Expired",
}


def _order_status(value) -> str:
    text = value or ""
    return _ORDER_STATUSES.get(text.replace("_", "").lower(), text)


def _order_type(value) -> str:
    """LIMIT / post_only / StopLimit -> Limit / PostOnly / StopLimit."""
    text = value or ""
    if text.isupper() or text.islower():
        return "".join(part.capitalize() for part in text.lower().split("_"))
    return text


def _nonzero_price(value):
    # Market orders report a price of "0" on Binance and Bybit
    price = _optional_price(value)
    if price is None or price == 0:
        return None
    return price


def normalize_bitmex_order(data: dict) -> UnifiedOrder:
    """BitMEX /order row."""
    symbol = data.get("symbol", "")
    return UnifiedOrder(
        order_id=str(data["orderID"]),
        symbol=symbol,
        display_symbol=format_symbol(symbol, Exchange.BITMEX),
        side=_parse_side(data.get("side"), ExecType.TRADE),
        order_type=_order_type(data.get("ordType")),
        status=_order_status(data.get("ordStatus")),
        quantity=to_decimal(data.get("orderQty")),
        price=_nonzero_price(data.get("price")),
        stop_price=_nonzero_price(data.get("stopPx")),
        avg_price=_nonzero_price(data.get("avgPx")),
        filled_quantity=to_decimal(data.get("cumQty")),
        timestamp=parse_timestamp(data.get("timestamp")),
        text=data.get("text") or "",
        exchange=Exchange.BITMEX,
    )


def normalize_binance_order(data: dict) -> UnifiedOrder:
    """Binance USDⓈ-M futures /fapi/v1/allOrders row."""
    symbol = data.get("symbol", "")
    return UnifiedOrder(
        order_id=str(data["orderId"]),
        symbol=symbol,
        display_symbol=format_symbol(symbol, Exchange.BINANCE),
        side=_parse_side(data.get("side"), ExecType.TRADE),
        order_type=_order_type(data.get("type")),
        status=_order_status(data.get("status")),
        quantity=to_decimal(data.get("origQty")),
        price=_nonzero_price(data.get("price")),
        stop_price=_nonzero_price(data.get("stopPrice")),
        avg_price=_nonzero_price(data.get("avgPrice")),
        filled_quantity=to_decimal(data.get("executedQty")),
        timestamp=parse_timestamp(data.get("time")),
        text=data.get("clientOrderId") or "",
        exchange=Exchange.BINANCE,
    )


def normalize_okx_order(data: dict) -> UnifiedOrder:
    """OKX /api/v5/trade/orders-history row."""
    symbol = data.get("instId", "")
    return UnifiedOrder(
        order_id=str(data["ordId"]),
        symbol=symbol,
        display_symbol=format_symbol(symbol, Exchange.OKX),
        side=_parse_side(data.get("side"), ExecType.TRADE),
        order_type=_order_type(data.get("ordType")),
        status=_order_status(data.get("state")),
        quantity=to_decimal(data.get("sz")),
        price=_nonzero_price(data.get("px")),
        stop_price=_nonzero_price(data.get("slTriggerPx") or data.get("tpTriggerPx")),
        avg_price=_nonzero_price(data.get("avgPx")),
        filled_quantity=to_decimal(data.get("accFillSz")),
        timestamp=parse_timestamp(data.get("cTime")),
        text=data.get("clOrdId") or "",
        exchange=Exchange.OKX,
    )


def normalize_bybit_order(data: dict) -> UnifiedOrder:
    """Bybit v5 /v5/order/history row."""
    symbol = data.get("symbol", "")
    return UnifiedOrder(
        order_id=str(data["orderId"]),
        symbol=symbol,
        display_symbol=format_symbol(symbol, Exchange.BYBIT),
        side=_parse_side(data.get("side"), ExecType.TRADE),
        order_type=_order_type(data.get("orderType")),
        status=_order_status(data.get("orderStatus")),
        quantity=to_decimal(data.get("qty")),
        price=_nonzero_price(data.get("price")),
        stop_price=_nonzero_price(data.get("triggerPrice")),
        avg_price=_nonzero_price(data.get("avgPrice")),
        filled_quantity=to_decimal(data.get("cumExecQty")),
        timestamp=parse_timestamp(data.get("createdTime")),
        text=data.get("orderLinkId") or "",
        exchange=Exchange.BYBIT,
    )


ORDER_NORMALIZERS = {
    Exchange.BITMEX: normalize_bitmex_order,
    Exchange.BINANCE: normalize_binance_order,
    Exchange.OKX: normalize_okx_order,
    Exchange.BYBIT: normalize_bybit_order,
}


def normalize_orders(exchange: Exchange, rows: Iterable[dict]) -> List[UnifiedOrder]:
    """Normalize a batch of raw order rows, skipping (and logging) invalid ones."""
    normalizer = ORDER_NORMALIZERS[exchange]
    orders = []
    for row in rows:
        try:
            orders.append(normalizer(row))
        except (KeyError, ValueError, ArithmeticError) as e:
            logger.warning(f"Skipped invalid {exchange.value} order {row!r}: {e}")
    return orders


# -- Account summaries --

def _captured_at(value) -> datetime:
    if value in (None, "", 0, "0"):
        return datetime.now(timezone.utc)
    return parse_timestamp(value)


def normalize_bitmex_account_summary(data: dict) -> AccountSummary:
    """
    BitMEX account state: ``{"wallet": /user/wallet, "margin": /user/margin,
    "positions": /position}``. Balances are satoshis and reported in XBT.
    """
    wallet = data.get("wallet") or {}
    margin = data.get("margin") or {}

    def satoshis(value):
        return from_fixed_point(int(value)) if value not in (None, "") else None

    positions = []
    for row in data.get("positions") or []:
        if not row.get("isOpen"):
            continue
        symbol = row["symbol"]
        positions.append(ExchangePosition(
            symbol=symbol,
            display_symbol=format_symbol(symbol, Exchange.BITMEX),
            quantity=to_decimal(row.get("currentQty")),
            avg_entry_price=_nonzero_price(row.get("avgEntryPrice")),
            unrealized_pnl=satoshis(row.get("unrealisedPnl")),
            liquidation_price=_nonzero_price(row.get("liquidationPrice")),
        ))

    balance = wallet.get("walletBalance", margin.get("walletBalance"))
    return AccountSummary(
        exchange=Exchange.BITMEX,
        captured_at=_captured_at(data.get("timestamp") or margin.get("timestamp")),
        currency="XBT",
        wallet_balance=satoshis(balance) or Decimal("0"),
        margin_balance=satoshis(margin.get("marginBalance")),
        available_margin=satoshis(margin.get("availableMargin")),
        unrealized_pnl=satoshis(margin.get("unrealisedPnl")),
        realized_pnl=satoshis(margin.get("realisedPnl")),
        positions=tuple(positions),
    )


def normalize_binance_account(data: dict) -> AccountSummary:
    """Binance USDⓈ-M futures /fapi/v2/account payload."""
    positions = []
    for row in data.get("positions") or []:
        quantity = to_decimal(row.get("positionAmt"))
        if quantity == 0:
            continue
        symbol = row["symbol"]
        positions.append(ExchangePosition(
            symbol=symbol,
            display_symbol=format_symbol(symbol, Exchange.BINANCE),
            quantity=quantity,
            avg_entry_price=_nonzero_price(row.get("entryPrice")),
            unrealized_pnl=_optional_price(row.get("unrealizedProfit")),
            liquidation_price=_nonzero_price(row.get("liquidationPrice")),
        ))

    return AccountSummary(
        exchange=Exchange.BINANCE,
        captured_at=_captured_at(data.get("updateTime")),
        currency="USDT",
        wallet_balance=to_decimal(data.get("totalWalletBalance")),
        margin_balance=_optional_price(data.get("totalMarginBalance")),
        available_margin=_optional_price(data.get("availableBalance")),
        unrealized_pnl=_optional_price(data.get("totalUnrealizedProfit")),
        positions=tuple(positions),
    )


SUMMARY_NORMALIZERS = {
    Exchange.BITMEX: normalize_bitmex_account_summary,
    Exchange.BINANCE: normalize_binance_account,
}


def normalize_account_summary(exchange: Exchange, data: dict) -> AccountSummary:
    """Raises ValueError for malformed payloads or unsupported exchanges."""
    try:
        normalizer = SUMMARY_NORMALIZERS[exchange]
    except KeyError:
        raise ValueError(f"account summaries are not supported for {exchange.value}")
    try:
        return normalizer(data)
    except (AttributeError, KeyError, TypeError, ArithmeticError) as e:
        raise ValueError(f"invalid {exchange.value} account summary: {e}") from e
