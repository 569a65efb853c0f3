from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from io import StringIO
from unittest.mock import MagicMock, patch

from django.core.management import call_command
from django.db import OperationalError
from django.test import TestCase
from rest_framework.test import APIClient

from src.exchanges.models import (
    AccountSummary, Exchange, ExchangePosition, ExecType, ExecutionExtras, Side, TransactType,
    UnifiedExecution, UnifiedOrder, WalletTransaction as WalletTransactionDTO,
    format_symbol, parse_timestamp, to_fixed_point,
)
from src.exchanges.normalizers import (
    normalize_account_summary,
    normalize_binance_account,
    normalize_binance_income,
    normalize_binance_order,
    normalize_binance_trade,
    normalize_bitmex_account_summary,
    normalize_bitmex_execution,
    normalize_bitmex_order,
    normalize_bitmex_wallet_transaction,
    normalize_bybit_execution,
    normalize_bybit_order,
    normalize_executions,
    normalize_okx_fill,
    normalize_okx_order,
    normalize_orders,
    sort_executions,
)
from src.interfaces.execution_source import IExecutionSource

from trade_analysis.calculators import (
    Direction,
    FillRole,
    IPositionTracker,
    PositionTracker,
    StateInvariantError,
    SymbolAggregator,
    annotate_running_balance,
    build_equity_curve,
    calculate_position_metrics,
    monthly_buckets,
    reconcile_open_positions,
    reconstruct_positions,
    replay_position,
    summarize,
)
from trade_analysis.calculators.aggregators import max_drawdown, profit_factor
from trade_analysis.calculators.pnl_calculator import split_commission
from trade_analysis.models import (
    AccountSnapshot, AnalysisRun, ExchangeAccount, Execution, Order, WalletTransaction,
)
from trade_analysis.services import (
    ImportService,
    ReconstructionInProgress,
    ReconstructionService,
    _quantize,
    account_lock,
)


# -- Test helpers --

T0 = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def ts(minutes):
    return T0 + timedelta(minutes=minutes)


def make_exec(exec_id, side, qty, price, minutes=0, symbol='XBTUSD',
              fee='0', exec_type=ExecType.TRADE, exchange=Exchange.BITMEX,
              timestamp=None, reported_pnl=None):
    """Build a UnifiedExecution with readable defaults."""
    return UnifiedExecution(
        exec_id=str(exec_id),
        order_id=f'order-{exec_id}',
        symbol=symbol,
        display_symbol=format_symbol(symbol, exchange),
        side=Side.BUY if side == 'Buy' else Side.SELL,
        quantity=Decimal(str(qty)),
        price=Decimal(str(price)) if price is not None else None,
        exec_type=exec_type,
        commission=to_fixed_point(fee),
        timestamp=timestamp if timestamp is not None else ts(minutes),
        exchange=exchange,
        extras=ExecutionExtras(
            exchange_realized_pnl=Decimal(str(reported_pnl)) if reported_pnl is not None else None
        ),
    )


def make_funding(exec_id, fee, minutes, symbol='XBTUSD'):
    return make_exec(exec_id, 'Buy', 0, None, minutes, symbol=symbol, fee=fee,
                     exec_type=ExecType.FUNDING)


def bitmex_row(exec_id, side, qty, price, minutes, comm=0, symbol='XBTUSD', exec_type='Trade'):
    """Raw BitMEX tradeHistory row."""
    return {
        'execID': exec_id,
        'orderID': f'o-{exec_id}',
        'symbol': symbol,
        'side': side,
        'lastQty': qty,
        'lastPx': price,
        'execType': exec_type,
        'ordType': 'Limit',
        'ordStatus': 'Filled',
        'execCost': 0,
        'execComm': comm,
        'timestamp': ts(minutes).isoformat().replace('+00:00', 'Z'),
        'text': 'Submitted via API.',
    }


def bitmex_order_row(order_id, side, qty, minutes, status='Filled', cum_qty=None, price=100):
    """Raw BitMEX /order row."""
    return {
        'orderID': order_id,
        'symbol': 'XBTUSD',
        'side': side,
        'orderQty': qty,
        'price': price,
        'stopPx': None,
        'avgPx': price if status == 'Filled' else None,
        'cumQty': qty if cum_qty is None else cum_qty,
        'ordType': 'Limit',
        'ordStatus': status,
        'timestamp': ts(minutes).isoformat().replace('+00:00', 'Z'),
        'text': 'Submitted via API.',
    }


def bitmex_account_payload(positions):
    """BitMEX wallet, margin and position rows; balances in satoshis."""
    return {
        'wallet': {'walletBalance': 1000000},
        'margin': {
            'walletBalance': 1000000, 'marginBalance': 995000, 'availableMargin': 900000,
            'unrealisedPnl': -5000, 'realisedPnl': 20000,
            'timestamp': '2024-01-15T12:00:00.000Z',
        },
        'positions': positions,
    }


def bitmex_position_row(symbol, qty, entry, is_open=True):
    return {
        'symbol': symbol, 'currentQty': qty, 'avgEntryPrice': entry,
        'unrealisedPnl': -5000, 'liquidationPrice': 150, 'isOpen': is_open,
    }


class FakeSource(IExecutionSource):
    """Execution source with canned data that counts fetches."""

    def __init__(self, executions=None, transactions=None, orders=None, summary=None):
        self._executions = executions or []
        self._transactions = transactions or []
        self._orders = orders or []
        self._summary = summary
        self.fetch_count = 0

    def fetch_executions(self, account):
        self.fetch_count += 1
        return self._executions

    def fetch_wallet_transactions(self, account):
        return self._transactions

    def fetch_orders(self, account):
        return self._orders

    def fetch_account_summary(self, account):
        return self._summary


class BrokenTracker(IPositionTracker):
    def process_executions(self, executions):
        raise StateInvariantError('XBTUSD position cannot close with 1 still open')


# -- Tests: reconstruction scenarios --

class TestPositionReconstruction(TestCase):
    """Flat-to-flat position boundaries and weighted average prices."""

    def test_round_trip_long(self):
        """Buy 1@100, Sell 1@110: one closed long, realized +10."""
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 1, 100, 0),
            make_exec(2, 'Sell', 1, 110, 5),
        ])

        self.assertEqual(len(result.positions), 1)
        position = result.positions[0]
        self.assertEqual(position.direction, Direction.LONG)
        self.assertFalse(position.is_open)
        self.assertEqual(position.realized_pnl, Decimal('10'))
        self.assertEqual(position.entry_price, Decimal('100'))
        self.assertEqual(position.exit_price, Decimal('110'))
        self.assertEqual(position.closed_at, ts(5))
        self.assertEqual(position.quantity, Decimal('0'))

    def test_scale_in_weighted_average(self):
        """Buy 1@100, Buy 1@120: open long, entry 110, quantity 2."""
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 1, 100, 0),
            make_exec(2, 'Buy', 1, 120, 5),
        ])

        self.assertEqual(len(result.positions), 1)
        position = result.positions[0]
        self.assertTrue(position.is_open)
        self.assertEqual(position.entry_price, Decimal('110'))
        self.assertEqual(position.quantity, Decimal('2'))
        self.assertEqual(position.peak_quantity, Decimal('2'))
        self.assertIsNone(position.closed_at)
        self.assertEqual([f.role for f in position.fills], [FillRole.OPEN, FillRole.INCREASE])

    def test_flip_through_zero(self):
        """Long 2@100 then Sell 3@90: long closes at -20, short 1@90 opens."""
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 2, 100, 0),
            make_exec(2, 'Sell', 3, 90, 5, fee='0.03'),
        ])

        self.assertEqual(len(result.positions), 2)
        long, short = result.positions
        self.assertEqual(long.direction, Direction.LONG)
        self.assertFalse(long.is_open)
        self.assertEqual(long.realized_pnl, Decimal('-20'))
        self.assertEqual(long.closed_at, ts(5))

        self.assertEqual(short.direction, Direction.SHORT)
        self.assertTrue(short.is_open)
        self.assertEqual(short.quantity, Decimal('1'))
        self.assertEqual(short.entry_price, Decimal('90'))
        self.assertEqual(short.opened_at, ts(5))

        # Commission split 2:1 across the two positions
        self.assertEqual(long.fills[-1].commission, 2000000)
        self.assertEqual(short.fills[0].commission, 1000000)
        self.assertTrue(long.fills[-1].is_partial)
        self.assertTrue(short.fills[0].is_partial)

    def test_partial_reduce_keeps_entry(self):
        """Reducing a position leaves the entry price unchanged."""
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 4, 100, 0),
            make_exec(2, 'Sell', 1, 120, 5),
            make_exec(3, 'Sell', 1, 80, 10),
        ])

        position = result.positions[0]
        self.assertTrue(position.is_open)
        self.assertEqual(position.entry_price, Decimal('100'))
        self.assertEqual(position.quantity, Decimal('2'))
        self.assertEqual(position.realized_pnl, Decimal('0'))
        self.assertEqual(position.exit_price, Decimal('100'))
        self.assertEqual([f.role for f in position.fills],
                         [FillRole.OPEN, FillRole.REDUCE, FillRole.REDUCE])

    def test_short_round_trip(self):
        """Sell 2@50, Buy 2@40: short closes at +20."""
        result = PositionTracker().process_executions([
            make_exec(1, 'Sell', 2, 50, 0),
            make_exec(2, 'Buy', 2, 40, 5),
        ])

        position = result.positions[0]
        self.assertEqual(position.direction, Direction.SHORT)
        self.assertEqual(position.realized_pnl, Decimal('20'))
        self.assertEqual(position.signed_quantity, Decimal('0'))

    def test_fees_accumulated(self):
        """Commission of every fill lands in the position's fees."""
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 1, 100, 0, fee='0.05'),
            make_exec(2, 'Sell', 1, 110, 5, fee='0.055'),
        ])

        position = result.positions[0]
        self.assertEqual(position.total_fees, Decimal('0.105'))
        self.assertEqual(position.net_pnl, Decimal('9.895'))

    def test_exchange_reported_pnl_is_diagnostic(self):
        """Exchange-reported PnL is summed but does not replace the computed one."""
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 1, 100, 0, reported_pnl=0),
            make_exec(2, 'Sell', 1, 110, 5, reported_pnl='9.5'),
        ])

        position = result.positions[0]
        self.assertEqual(position.realized_pnl, Decimal('10'))
        self.assertEqual(position.exchange_reported_pnl, Decimal('9.5'))

    def test_equal_timestamps_processed_in_input_order(self):
        result = PositionTracker().process_executions([
            make_exec('b', 'Buy', 1, 100, 0),
            make_exec('a', 'Sell', 1, 105, 0),
            make_exec('c', 'Sell', 1, 104, 0),
        ])

        self.assertEqual(len(result.positions), 2)
        self.assertEqual(result.positions[0].realized_pnl, Decimal('5'))
        self.assertEqual(result.positions[1].direction, Direction.SHORT)
        self.assertFalse(result.has_warnings)

    def test_symbols_reconstructed_independently(self):
        result = reconstruct_positions([
            make_exec(1, 'Buy', 1, 100, 0, symbol='XBTUSD'),
            make_exec(1, 'Sell', 10, 2000, 1, symbol='ETHUSD'),
            make_exec(2, 'Sell', 1, 110, 2, symbol='XBTUSD'),
        ])

        self.assertEqual(len(result.positions), 2)
        self.assertFalse(result.has_warnings)
        by_symbol = {p.symbol: p for p in result.positions}
        self.assertFalse(by_symbol['XBTUSD'].is_open)
        self.assertTrue(by_symbol['ETHUSD'].is_open)
        self.assertEqual(by_symbol['ETHUSD'].direction, Direction.SHORT)


class TestFundingAttribution(TestCase):
    """Funding rows carry fees only."""

    def test_funding_attaches_to_open_position(self):
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 1, 100, 0, fee='0.01'),
            make_funding('f1', '0.02', 60),
            make_exec(2, 'Sell', 1, 100, 120),
        ])

        position = result.positions[0]
        self.assertEqual(position.quantity, Decimal('0'))
        self.assertFalse(position.is_open)
        self.assertEqual(position.funding_fees, Decimal('0.02'))
        self.assertEqual(position.total_fees, Decimal('0.03'))
        self.assertEqual(position.realized_pnl, Decimal('0'))
        self.assertIn(FillRole.FUNDING, [f.role for f in position.fills])

    def test_funding_while_flat_is_unattributed(self):
        result = PositionTracker().process_executions([
            make_funding('f1', '0.02', 0),
            make_exec(1, 'Buy', 1, 100, 5),
        ])

        self.assertEqual(len(result.unattributed), 1)
        self.assertEqual(result.unattributed[0].exec_id, 'f1')
        self.assertEqual(result.positions[0].total_fees, Decimal('0'))
        self.assertFalse(result.has_warnings)


class TestMalformedExecutions(TestCase):
    """Bad executions are skipped with warnings, the rest is reconstructed."""

    def test_out_of_order_execution_skipped(self):
        with self.assertLogs('trade_analysis.calculators.position_tracker', level='WARNING'):
            result = PositionTracker().process_executions([
                make_exec(1, 'Buy', 1, 100, 10),
                make_exec(2, 'Sell', 1, 90, 0),
                make_exec(3, 'Sell', 1, 110, 20),
            ])

        self.assertEqual(len(result.warnings), 1)
        self.assertEqual(result.warnings[0].exec_id, '2')
        self.assertIn('out of order', result.warnings[0].reason)
        self.assertEqual(result.positions[0].realized_pnl, Decimal('10'))

    def test_zero_quantity_and_missing_price_skipped(self):
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 0, 100, 0),
            make_exec(2, 'Buy', 1, None, 1),
            make_exec(3, 'Buy', 1, 100, 2),
        ])

        self.assertEqual([w.exec_id for w in result.warnings], ['1', '2'])
        self.assertEqual(len(result.positions), 1)
        self.assertEqual(result.positions[0].execution_ids, ['3'])

    def test_duplicate_execution_id_skipped(self):
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 1, 100, 0),
            make_exec(1, 'Buy', 1, 100, 0),
        ])

        self.assertEqual(len(result.warnings), 1)
        self.assertIn('duplicate', result.warnings[0].reason)
        self.assertEqual(result.positions[0].quantity, Decimal('1'))

    def test_foreign_symbol_skipped(self):
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 1, 100, 0, symbol='XBTUSD'),
            make_exec(2, 'Buy', 1, 100, 1, symbol='ETHUSD'),
        ])

        self.assertEqual(len(result.warnings), 1)
        self.assertEqual(result.warnings[0].symbol, 'ETHUSD')

    def test_missing_timestamp_skipped(self):
        missing = replace(make_exec(2, 'Buy', 1, 100, 1), timestamp=None)
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 1, 100, 0),
            missing,
        ])

        self.assertEqual(len(result.warnings), 1)
        self.assertEqual(result.warnings[0].reason, 'missing timestamp')


class TestStateInvariants(TestCase):

    def test_double_finalize_raises(self):
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 1, 100, 0),
            make_exec(2, 'Sell', 1, 110, 5),
        ])
        position = result.positions[0]

        with self.assertRaises(StateInvariantError):
            position.finalize(ts(10))

    def test_finalize_with_open_quantity_raises(self):
        result = PositionTracker().process_executions([make_exec(1, 'Buy', 1, 100, 0)])

        with self.assertRaises(StateInvariantError):
            result.positions[0].finalize(ts(10))

    def test_mutating_finalized_position_raises(self):
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 1, 100, 0),
            make_exec(2, 'Sell', 1, 110, 5),
        ])

        with self.assertRaises(StateInvariantError):
            result.positions[0].ensure_mutable()


# -- Tests: properties --

class TestReconstructionProperties(TestCase):
    """Properties that hold for any execution stream."""

    def setUp(self):
        self.executions = [
            make_exec(1, 'Buy', 2, 100, 0, fee='0.02'),
            make_exec(2, 'Buy', 1, 106, 1, fee='0.01'),
            make_exec(3, 'Sell', 4, 110, 2, fee='0.07'),
            make_funding('f1', '0.004', 3),
            make_exec(4, 'Buy', 3, 105, 4, fee='0.03'),
            make_exec(5, 'Buy', 2, 100, 5, fee='0.01'),
            make_exec(6, 'Sell', 2, 95, 6, fee='0.011'),
            make_exec(7, 'Sell', 1, 99, 7, symbol='ETHUSD'),
        ]
        self.result = reconstruct_positions(self.executions)

    def test_conservation_of_quantity(self):
        """Final net exposure equals the signed sum of trade quantities."""
        for symbol in ('XBTUSD', 'ETHUSD'):
            expected = sum(
                (e.signed_quantity for e in self.executions if e.symbol == symbol and e.is_trade),
                Decimal('0'),
            )
            open_qty = sum(
                (p.signed_quantity for p in self.result.open_positions if p.symbol == symbol),
                Decimal('0'),
            )
            self.assertEqual(open_qty, expected)

    def test_every_execution_covered_exactly_once(self):
        """Absorbed quantity per trade execution adds up to its quantity."""
        absorbed = {}
        for position in self.result.positions:
            for fill in position.fills:
                key = (fill.execution.symbol, fill.execution.exec_id)
                absorbed[key] = absorbed.get(key, Decimal('0')) + fill.quantity

        for execution in self.executions:
            if execution.is_trade:
                self.assertEqual(absorbed[(execution.symbol, execution.exec_id)], execution.quantity)

    def test_positions_do_not_overlap(self):
        for symbol in ('XBTUSD', 'ETHUSD'):
            positions = [p for p in self.result.positions if p.symbol == symbol]
            for current, following in zip(positions, positions[1:]):
                self.assertIsNotNone(current.closed_at)
                self.assertLessEqual(current.closed_at, following.opened_at)
            self.assertLessEqual(sum(1 for p in positions if p.is_open), 1)

    def test_commission_split_is_lossless(self):
        total = sum(e.commission for e in self.executions)
        attributed = sum(f.commission for p in self.result.positions for f in p.fills)
        self.assertEqual(attributed, total)

    def test_split_commission_remainder(self):
        share = split_commission(100000001, Decimal('1'), Decimal('3'))
        self.assertEqual(share, 33333334)
        self.assertEqual(share + (100000001 - share), 100000001)

    def test_idempotent(self):
        again = reconstruct_positions(self.executions)
        self.assertEqual(
            [(p.symbol, p.realized_pnl, p.total_fees, p.quantity) for p in again.positions],
            [(p.symbol, p.realized_pnl, p.total_fees, p.quantity) for p in self.result.positions],
        )
        self.assertEqual(summarize(again.positions).to_dict(),
                         summarize(self.result.positions).to_dict())

    def test_replay_reproduces_position(self):
        for position in self.result.positions:
            replayed = replay_position(position)
            self.assertEqual(replayed.direction, position.direction)
            self.assertEqual(replayed.entry_price, position.entry_price)
            self.assertEqual(replayed.exit_price, position.exit_price)
            self.assertEqual(replayed.quantity, position.quantity)
            self.assertEqual(replayed.peak_quantity, position.peak_quantity)
            self.assertEqual(replayed.realized_pnl, position.realized_pnl)
            self.assertEqual(replayed.total_fees, position.total_fees)
            self.assertEqual(replayed.closed_at, position.closed_at)

    def test_realized_pnl_of_flip_stream(self):
        long, short, long2, eth = (
            sorted([p for p in self.result.positions if p.symbol == 'XBTUSD'],
                   key=lambda p: p.opened_at)
            + [p for p in self.result.positions if p.symbol == 'ETHUSD']
        )
        # Long 3 @ 102 closed at 110
        self.assertEqual(long.entry_price, Decimal('102'))
        self.assertEqual(long.realized_pnl, Decimal('24'))
        # Short 1 @ 110 closed at 105
        self.assertEqual(short.realized_pnl, Decimal('5'))
        self.assertEqual(short.funding_fees, Decimal('0.004'))
        # Long 2 @ 105 + 2 @ 100 = 4 @ 102.5, 2 sold at 95
        self.assertEqual(long2.entry_price, Decimal('102.5'))
        self.assertEqual(long2.realized_pnl, Decimal('-15'))
        self.assertTrue(long2.is_open)
        self.assertTrue(eth.is_open)


# -- Tests: metrics and aggregation --

class TestPositionMetrics(TestCase):

    def test_metrics_for_closed_position(self):
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 2, 100, 0, fee='0.5'),
            make_exec(2, 'Sell', 2, 110, 90, fee='0.5'),
        ])

        metrics = calculate_position_metrics(result.positions[0])
        self.assertEqual(metrics.realized_pnl, Decimal('20'))
        self.assertEqual(metrics.net_pnl, Decimal('19'))
        self.assertEqual(metrics.return_on_notional, Decimal('0.1'))
        self.assertEqual(metrics.holding_duration, timedelta(minutes=90))
        self.assertEqual(metrics.fee_drag, Decimal('0.05'))

    def test_metrics_for_open_position(self):
        result = PositionTracker().process_executions([make_exec(1, 'Buy', 1, 100, 0)])

        metrics = calculate_position_metrics(result.positions[0])
        self.assertIsNone(metrics.holding_duration)
        self.assertIsNone(metrics.fee_drag)
        self.assertIsNone(metrics.to_dict()['holding_seconds'])


class TestStatsSummary(TestCase):

    def _closed(self, pnls):
        executions = []
        for i, pnl in enumerate(pnls):
            executions.append(make_exec(f'{i}o', 'Buy', 1, 100, i * 10))
            executions.append(make_exec(f'{i}c', 'Sell', 1, 100 + pnl, i * 10 + 5))
        return reconstruct_positions(executions).positions

    def test_profit_factor_and_win_rate(self):
        """PnL +30 and -10: profit factor 3, win rate 50%."""
        stats = summarize(self._closed([30, -10]))

        self.assertEqual(stats.profit_factor, Decimal('3'))
        self.assertEqual(stats.win_rate, Decimal('0.5'))
        self.assertEqual(stats.gross_profit, Decimal('30'))
        self.assertEqual(stats.gross_loss, Decimal('10'))
        self.assertEqual(stats.largest_win, Decimal('30'))
        self.assertEqual(stats.largest_loss, Decimal('10'))
        self.assertEqual(stats.total_realized_pnl, Decimal('20'))
        self.assertEqual(stats.max_drawdown, Decimal('10'))
        self.assertAlmostEqual(stats.to_dict()['win_rate_percent'], 50.0)

    def test_no_closed_positions(self):
        stats = summarize(reconstruct_positions([make_exec(1, 'Buy', 1, 100, 0)]).positions)

        self.assertEqual(stats.win_rate, Decimal('0'))
        self.assertEqual(stats.profit_factor, Decimal('0'))
        self.assertEqual(stats.open_positions, 1)
        self.assertEqual(stats.closed_positions, 0)

    def test_breakeven_positions_not_decided(self):
        stats = summarize(self._closed([0, 0]))

        self.assertEqual(stats.breakeven, 2)
        self.assertEqual(stats.win_rate, Decimal('0'))
        self.assertEqual(stats.profit_factor, Decimal('0'))

    def test_profit_factor_without_losses_is_infinite(self):
        stats = summarize(self._closed([5, 7]))

        self.assertTrue(stats.profit_factor.is_infinite())
        self.assertEqual(stats.to_dict()['profit_factor'], 'Infinity')
        self.assertEqual(profit_factor(Decimal('0'), Decimal('0')), Decimal('0'))

    def test_symbol_breakdown_sorted_by_abs_pnl(self):
        positions = reconstruct_positions([
            make_exec(1, 'Buy', 1, 100, 0, symbol='XBTUSD'),
            make_exec(2, 'Sell', 1, 105, 1, symbol='XBTUSD'),
            make_exec(1, 'Sell', 1, 100, 2, symbol='ETHUSD'),
            make_exec(2, 'Buy', 1, 130, 3, symbol='ETHUSD'),
        ]).positions
        aggregator = SymbolAggregator()
        for position in positions:
            aggregator.add_position(position)

        rows = aggregator.get_results()
        self.assertEqual([r['symbol'] for r in rows], ['ETH/USD', 'BTC/USD'])
        self.assertAlmostEqual(rows[0]['realized_pnl'], -30.0)
        self.assertEqual(rows[0]['losses'], 1)


class TestMonthlyAndEquity(TestCase):

    def test_monthly_buckets_by_close_month(self):
        jan = datetime(2024, 1, 31, 23, 0, tzinfo=timezone.utc)
        feb = datetime(2024, 2, 1, 1, 0, tzinfo=timezone.utc)
        positions = reconstruct_positions([
            make_exec(1, 'Buy', 1, 100, timestamp=jan - timedelta(days=3)),
            make_exec(2, 'Sell', 1, 110, timestamp=jan),
            make_exec(3, 'Buy', 1, 100, timestamp=jan + timedelta(minutes=30)),
            make_exec(4, 'Sell', 1, 95, timestamp=feb),
            make_exec(5, 'Buy', 1, 100, timestamp=feb + timedelta(hours=1)),
        ]).positions

        buckets = monthly_buckets(positions)
        self.assertEqual([b.month for b in buckets], ['2024-01', '2024-02'])
        self.assertEqual(buckets[0].realized_pnl, Decimal('10'))
        self.assertEqual(buckets[0].wins, 1)
        self.assertEqual(buckets[1].realized_pnl, Decimal('-5'))
        self.assertEqual(buckets[1].losses, 1)
        self.assertEqual(sum(b.positions_closed for b in buckets), 2)

    def test_equity_curve_cumulative_with_provisional_marks(self):
        positions = reconstruct_positions([
            make_exec(1, 'Buy', 1, 100, 0),
            make_exec(2, 'Sell', 1, 110, 5),
            make_exec(3, 'Buy', 1, 100, 10),
            make_exec(4, 'Sell', 1, 95, 15),
            make_exec(5, 'Sell', 2, 50, 20),
        ]).positions

        curve = build_equity_curve(positions, mark_prices={'XBTUSD': Decimal('45')})
        self.assertEqual([p.value for p in curve.points], [Decimal('10'), Decimal('5')])
        self.assertEqual([p.timestamp for p in curve.points], [ts(5), ts(15)])
        self.assertEqual(curve.final_value, Decimal('5'))
        self.assertEqual(len(curve.provisional), 1)
        self.assertTrue(curve.provisional[0].provisional)
        # Short 2 @ 50 marked at 45: +10 unrealized
        self.assertEqual(curve.provisional[0].value, Decimal('15'))
        self.assertEqual(max_drawdown(curve.points), Decimal('5'))

    def test_equity_points_at_same_close_time_share_total(self):
        positions = reconstruct_positions([
            make_exec(1, 'Buy', 1, 100, 0),
            make_exec(2, 'Buy', 1, 100, 0, symbol='ETHUSD'),
            make_exec(3, 'Sell', 1, 110, 5),
            make_exec(4, 'Sell', 1, 90, 5, symbol='ETHUSD'),
        ]).positions

        curve = build_equity_curve(positions)
        self.assertEqual([p.timestamp for p in curve.points], [ts(5), ts(5)])
        self.assertEqual([p.value for p in curve.points], [Decimal('0'), Decimal('0')])
        self.assertEqual(max_drawdown(curve.points), Decimal('0'))

    def test_equity_curve_without_marks_has_no_provisional_points(self):
        positions = reconstruct_positions([make_exec(1, 'Buy', 1, 100, 0)]).positions

        curve = build_equity_curve(positions)
        self.assertEqual(curve.points, [])
        self.assertEqual(curve.provisional, [])
        self.assertEqual(curve.final_value, Decimal('0'))


class TestWalletLedger(TestCase):

    def _tx(self, transact_id, amount, minutes, fee=0, transact_type=TransactType.TRANSFER):
        return WalletTransactionDTO(
            transact_id=transact_id,
            transact_type=transact_type,
            amount=amount,
            fee=fee,
            timestamp=ts(minutes),
            exchange=Exchange.BITMEX,
        )

    def test_running_balance_in_timestamp_order(self):
        transactions = [
            self._tx('b', -2000, 10, transact_type=TransactType.FUNDING),
            self._tx('a', 100000, 0, transact_type=TransactType.DEPOSIT),
            self._tx('c', 5000, 20, fee=100, transact_type=TransactType.REALISED_PNL),
        ]

        balanced = annotate_running_balance(transactions)
        self.assertEqual([b.transaction.transact_id for b in balanced], ['a', 'b', 'c'])
        self.assertEqual([b.wallet_balance for b in balanced], [100000, 98000, 102900])
        # Input untouched
        self.assertEqual(transactions[0].transact_id, 'b')

    def test_opening_balance(self):
        balanced = annotate_running_balance([self._tx('a', 10, 0)], opening_balance=90)
        self.assertEqual(balanced[0].wallet_balance, 100)


# -- Tests: normalizers --

class TestNormalizers(TestCase):

    def test_bitmex_execution(self):
        execution = normalize_bitmex_execution(bitmex_row('abc-1', 'Buy', 100, 42000.5, 0, comm=1500))

        self.assertEqual(execution.exchange, Exchange.BITMEX)
        self.assertEqual(execution.display_symbol, 'BTC/USD')
        self.assertEqual(execution.side, Side.BUY)
        self.assertEqual(execution.quantity, Decimal('100'))
        self.assertEqual(execution.price, Decimal('42000.5'))
        self.assertEqual(execution.commission, 1500)
        self.assertEqual(execution.timestamp, ts(0))
        self.assertEqual(execution.text, 'Submitted via API.')

    def test_bitmex_funding_row(self):
        row = bitmex_row('fund-1', '', 0, 42000, 0, comm=250, exec_type='Funding')
        execution = normalize_bitmex_execution(row)

        self.assertEqual(execution.exec_type, ExecType.FUNDING)
        self.assertFalse(execution.is_trade)

    def test_binance_trade(self):
        execution = normalize_binance_trade({
            'id': 698759, 'orderId': 25851813, 'symbol': 'BTCUSDT', 'side': 'SELL',
            'qty': '0.002', 'price': '42000', 'commission': '0.0336',
            'commissionAsset': 'USDT', 'realizedPnl': '1.25', 'positionSide': 'BOTH',
            'buyer': False, 'maker': True, 'time': 1705320000000,
        })

        self.assertEqual(execution.display_symbol, 'BTC/USDT')
        self.assertEqual(execution.side, Side.SELL)
        self.assertEqual(execution.commission, 3360000)
        self.assertEqual(execution.cost, 8400000000)
        self.assertEqual(execution.extras.exchange_realized_pnl, Decimal('1.25'))
        self.assertTrue(execution.extras.is_maker)
        self.assertEqual(execution.timestamp, T0)

    def test_okx_fee_sign_inverted(self):
        execution = normalize_okx_fill({
            'tradeId': '123', 'ordId': '9', 'instId': 'BTC-USDT-SWAP', 'side': 'buy',
            'fillSz': '1', 'fillPx': '42000', 'fee': '-0.02', 'ts': '1705320000000',
            'execType': 'T',
        })

        self.assertEqual(execution.display_symbol, 'BTC/USDT')
        self.assertEqual(execution.commission, 2000000)
        self.assertIsNone(execution.extras.exchange_realized_pnl)

    def test_bybit_execution(self):
        execution = normalize_bybit_execution({
            'execId': 'e-1', 'orderId': 'o-1', 'symbol': 'ETHUSDT', 'side': 'Buy',
            'execQty': '0.5', 'execPrice': '2500', 'execFee': '0.75',
            'execType': 'Trade', 'execTime': '1705320000000', 'isMaker': False,
        })

        self.assertEqual(execution.display_symbol, 'ETH/USDT')
        self.assertEqual(execution.cost, to_fixed_point('1250'))
        self.assertEqual(execution.commission, 75000000)

    def test_invalid_rows_skipped_with_warning(self):
        rows = [
            bitmex_row('ok-1', 'Buy', 1, 100, 0),
            {'symbol': 'XBTUSD', 'side': 'Buy'},
            bitmex_row('bad-side', 'Hold', 1, 100, 1),
        ]
        with self.assertLogs('src.exchanges.normalizers', level='WARNING') as logs:
            executions = normalize_executions(Exchange.BITMEX, rows)

        self.assertEqual([e.exec_id for e in executions], ['ok-1'])
        self.assertEqual(len(logs.output), 2)

    def test_sort_executions_numeric_ids(self):
        executions = sort_executions([
            make_exec('10', 'Buy', 1, 100, 0),
            make_exec('9', 'Buy', 1, 100, 0),
            make_exec('1', 'Buy', 1, 100, -1),
        ])
        self.assertEqual([e.exec_id for e in executions], ['1', '9', '10'])

    def test_wallet_normalizers(self):
        income = normalize_binance_income({
            'symbol': 'BTCUSDT', 'incomeType': 'FUNDING_FEE', 'income': '-0.0123',
            'asset': 'USDT', 'time': 1705320000000, 'tranId': 9689322392, 'info': '',
        })
        self.assertEqual(income.transact_type, TransactType.FUNDING)
        self.assertEqual(income.amount, -1230000)

        bitmex = normalize_bitmex_wallet_transaction({
            'transactID': 'tx-1', 'account': 1, 'currency': 'XBt',
            'transactType': 'RealisedPNL', 'amount': -5000, 'fee': 0,
            'transactStatus': 'Completed', 'timestamp': '2024-01-15T12:00:00.000Z',
        })
        self.assertEqual(bitmex.transact_type, TransactType.REALISED_PNL)
        self.assertEqual(bitmex.timestamp, T0)

    def test_format_symbol(self):
        self.assertEqual(format_symbol('ETHBUSD', Exchange.BINANCE), 'ETH/BUSD')
        self.assertEqual(format_symbol('XBTUSD', Exchange.BITMEX), 'BTC/USD')
        self.assertEqual(format_symbol('WEIRD', Exchange.BYBIT), 'WEIRD')

    def test_parse_timestamp_variants(self):
        self.assertEqual(parse_timestamp('2024-01-15T12:00:00Z'), T0)
        self.assertEqual(parse_timestamp(1705320000000), T0)
        self.assertEqual(parse_timestamp(datetime(2024, 1, 15, 12, 0)), T0)

    def test_bitmex_order(self):
        order = normalize_bitmex_order(bitmex_order_row('o-1', 'Sell', 100, 0, status='PartiallyFilled', cum_qty=40))

        self.assertEqual(order.side, Side.SELL)
        self.assertEqual(order.order_type, 'Limit')
        self.assertEqual(order.status, 'PartiallyFilled')
        self.assertEqual(order.quantity, Decimal('100'))
        self.assertEqual(order.filled_quantity, Decimal('40'))
        self.assertIsNone(order.avg_price)
        self.assertEqual(order.display_symbol, 'BTC/USD')
        self.assertEqual(order.timestamp, T0)

    def test_binance_market_order_has_no_limit_price(self):
        order = normalize_binance_order({
            'orderId': 283194212, 'symbol': 'BTCUSDT', 'status': 'FILLED',
            'clientOrderId': 'web_abc', 'price': '0', 'avgPrice': '42000.10',
            'origQty': '0.010', 'executedQty': '0.010', 'type': 'MARKET', 'side': 'BUY',
            'stopPrice': '0', 'time': 1705320000000,
        })

        self.assertEqual(order.order_id, '283194212')
        self.assertEqual(order.order_type, 'Market')
        self.assertEqual(order.status, 'Filled')
        self.assertIsNone(order.price)
        self.assertIsNone(order.stop_price)
        self.assertEqual(order.avg_price, Decimal('42000.10'))
        self.assertEqual(order.text, 'web_abc')

    def test_binance_stop_market_order_type(self):
        order = normalize_binance_order({
            'orderId': 1, 'symbol': 'ETHUSDT', 'status': 'CANCELED', 'price': '0',
            'origQty': '1', 'executedQty': '0', 'type': 'STOP_MARKET', 'side': 'SELL',
            'stopPrice': '2400', 'time': 1705320000000,
        })

        self.assertEqual(order.order_type, 'StopMarket')
        self.assertEqual(order.status, 'Canceled')
        self.assertEqual(order.stop_price, Decimal('2400'))

    def test_okx_live_order(self):
        order = normalize_okx_order({
            'ordId': '5123', 'instId': 'BTC-USDT-SWAP', 'side': 'buy', 'ordType': 'post_only',
            'state': 'live', 'sz': '2', 'px': '41000', 'avgPx': '', 'accFillSz': '0',
            'slTriggerPx': '', 'tpTriggerPx': '', 'cTime': '1705320000000', 'clOrdId': '',
        })

        self.assertEqual(order.status, 'New')
        self.assertEqual(order.order_type, 'PostOnly')
        self.assertEqual(order.price, Decimal('41000'))
        self.assertIsNone(order.avg_price)
        self.assertEqual(order.display_symbol, 'BTC/USDT')

    def test_bybit_order(self):
        order = normalize_bybit_order({
            'orderId': 'b-1', 'symbol': 'ETHUSDT', 'side': 'Sell', 'orderType': 'Limit',
            'orderStatus': 'PartiallyFilledCanceled', 'qty': '1', 'price': '2600',
            'avgPrice': '2600', 'cumExecQty': '0.4', 'triggerPrice': '0',
            'createdTime': '1705320000000', 'orderLinkId': 'bot-7',
        })

        self.assertEqual(order.status, 'Canceled')
        self.assertEqual(order.filled_quantity, Decimal('0.4'))
        self.assertIsNone(order.stop_price)
        self.assertEqual(order.text, 'bot-7')

    def test_invalid_order_rows_skipped(self):
        rows = [bitmex_order_row('o-1', 'Buy', 1, 0), {'symbol': 'XBTUSD', 'side': 'Buy'}]
        with self.assertLogs('src.exchanges.normalizers', level='WARNING'):
            orders = normalize_orders(Exchange.BITMEX, rows)

        self.assertEqual([o.order_id for o in orders], ['o-1'])

    def test_bitmex_account_summary(self):
        summary = normalize_bitmex_account_summary(bitmex_account_payload([
            bitmex_position_row('ETHUSD', -1, 90),
            bitmex_position_row('XBTUSD', 0, 0, is_open=False),
        ]))

        self.assertEqual(summary.currency, 'XBT')
        self.assertEqual(summary.wallet_balance, Decimal('0.01'))
        self.assertEqual(summary.margin_balance, Decimal('0.00995'))
        self.assertEqual(summary.unrealized_pnl, Decimal('-0.00005'))
        self.assertEqual(summary.captured_at, T0)
        self.assertEqual(len(summary.positions), 1)
        position = summary.positions[0]
        self.assertEqual(position.quantity, Decimal('-1'))
        self.assertEqual(position.avg_entry_price, Decimal('90'))
        self.assertEqual(position.display_symbol, 'ETH/USD')

    def test_binance_account_skips_flat_positions(self):
        summary = normalize_binance_account({
            'totalWalletBalance': '1500.25', 'totalMarginBalance': '1490.00',
            'availableBalance': '1200.00', 'totalUnrealizedProfit': '-10.25',
            'updateTime': 1705320000000,
            'positions': [
                {'symbol': 'BTCUSDT', 'positionAmt': '0.010', 'entryPrice': '42000.0',
                 'unrealizedProfit': '-10.25', 'liquidationPrice': '0'},
                {'symbol': 'ETHUSDT', 'positionAmt': '0.000', 'entryPrice': '0.0',
                 'unrealizedProfit': '0.00000000'},
            ],
        })

        self.assertEqual(summary.currency, 'USDT')
        self.assertEqual(summary.wallet_balance, Decimal('1500.25'))
        self.assertEqual([p.symbol for p in summary.positions], ['BTCUSDT'])
        self.assertIsNone(summary.positions[0].liquidation_price)

    def test_account_summary_errors(self):
        with self.assertRaises(ValueError):
            normalize_account_summary(Exchange.OKX, {})
        with self.assertRaises(ValueError):
            normalize_account_summary(Exchange.BITMEX, {'positions': [{'isOpen': True}]})

    def test_exchange_position_dict_round_trip(self):
        position = ExchangePosition(symbol='XBTUSD', quantity=Decimal('-5'), avg_entry_price=Decimal('42000.5'))
        self.assertEqual(ExchangePosition.from_dict(position.to_dict()), position)


class TestReconciliation(TestCase):

    def setUp(self):
        result = PositionTracker().process_executions([
            make_exec(1, 'Buy', 2, 100, 0),
            make_exec(2, 'Sell', 1, 90, 1, symbol='ETHUSD'),
        ])
        self.positions = result.positions

    def test_matching_positions(self):
        rows = reconcile_open_positions(self.positions, [
            ExchangePosition(symbol='XBTUSD', quantity=Decimal('2'), avg_entry_price=Decimal('100')),
            ExchangePosition(symbol='ETHUSD', quantity=Decimal('-1'), avg_entry_price=Decimal('90')),
        ])

        self.assertEqual([r.symbol for r in rows], ['ETHUSD', 'XBTUSD'])
        self.assertTrue(all(r.matched for r in rows))
        self.assertEqual(rows[1].reconstructed_entry_price, Decimal('100'))

    def test_missing_and_unknown_positions(self):
        rows = reconcile_open_positions(self.positions, [
            ExchangePosition(symbol='XBTUSD', quantity=Decimal('3')),
            ExchangePosition(symbol='SOLUSD', quantity=Decimal('10'), display_symbol='SOL/USD'),
        ])

        by_symbol = {r.symbol: r for r in rows}
        self.assertEqual(by_symbol['XBTUSD'].quantity_difference, Decimal('1'))
        self.assertEqual(by_symbol['ETHUSD'].exchange_quantity, Decimal('0'))
        self.assertEqual(by_symbol['ETHUSD'].quantity_difference, Decimal('1'))
        self.assertEqual(by_symbol['SOLUSD'].reconstructed_quantity, Decimal('0'))
        self.assertFalse(any(r.matched for r in rows))

    def test_hedge_mode_positions_are_netted(self):
        rows = reconcile_open_positions(self.positions, [
            ExchangePosition(symbol='XBTUSD', quantity=Decimal('5'), avg_entry_price=Decimal('100')),
            ExchangePosition(symbol='XBTUSD', quantity=Decimal('-3'), avg_entry_price=Decimal('120')),
            ExchangePosition(symbol='ETHUSD', quantity=Decimal('-1')),
        ])

        xbt = [r for r in rows if r.symbol == 'XBTUSD'][0]
        self.assertTrue(xbt.matched)
        self.assertIsNone(xbt.exchange_entry_price)

    def test_closed_positions_ignored(self):
        closed = PositionTracker().process_executions([
            make_exec(1, 'Buy', 1, 100, 0),
            make_exec(2, 'Sell', 1, 110, 5),
        ]).positions

        self.assertEqual(reconcile_open_positions(closed, []), [])


# -- Tests: services (database) --

class AccountTestCase(TestCase):
    """Account with a closed long and an open short on XBTUSD."""

    def setUp(self):
        self.account = ExchangeAccount.objects.create(exchange='bitmex', name='main')
        self.rows = [
            bitmex_row('e1', 'Buy', 2, 100, 0, comm=200000),
            bitmex_row('e2', 'Sell', 3, 110, 5, comm=300000),
            bitmex_row('e3', 'Buy', 1, 100, 40 * 24 * 60),
            bitmex_row('e4', 'Sell', 1, 90, 0, symbol='ETHUSD'),
        ]


class TestImportService(AccountTestCase):

    def test_import_is_idempotent(self):
        service = ImportService()

        first = service.import_raw_executions(self.account, self.rows)
        second = service.import_raw_executions(self.account, self.rows)

        self.assertEqual(first, 4)
        self.assertEqual(second, 0)
        self.assertEqual(self.account.executions.count(), 4)
        self.account.refresh_from_db()
        self.assertEqual(self.account.data_start_date, T0.date())

    def test_same_exec_id_on_different_symbols(self):
        rows = [
            bitmex_row('same', 'Buy', 1, 100, 0, symbol='XBTUSD'),
            bitmex_row('same', 'Buy', 1, 100, 0, symbol='ETHUSD'),
        ]
        inserted = ImportService().import_raw_executions(self.account, rows)
        self.assertEqual(inserted, 2)

    def test_refresh_uses_stored_data_unless_forced(self):
        source = FakeSource(
            executions=[make_exec(1, 'Buy', 1, 100, 0)],
            transactions=[WalletTransactionDTO(
                transact_id='tx1', transact_type=TransactType.DEPOSIT, amount=100000000,
                timestamp=ts(0), exchange=Exchange.BITMEX,
            )],
        )
        service = ImportService()

        first = service.refresh(self.account, source)
        second = service.refresh(self.account, source)
        forced = service.refresh(self.account, source, force_refresh=True)

        self.assertTrue(first['fetched'])
        self.assertEqual(first['executions'], 1)
        self.assertEqual(first['wallet_transactions'], 1)
        self.assertFalse(second['fetched'])
        self.assertTrue(forced['fetched'])
        self.assertEqual(forced['executions'], 0)
        self.assertEqual(source.fetch_count, 2)

    def test_stored_execution_round_trip(self):
        ImportService().import_raw_executions(self.account, self.rows[:1])
        execution = Execution.objects.get(exec_id='e1').to_unified()

        self.assertEqual(execution.exchange, Exchange.BITMEX)
        self.assertEqual(execution.quantity, Decimal('2'))
        self.assertEqual(execution.commission, 200000)
        self.assertEqual(execution.timestamp, ts(0))

    def test_import_orders_is_idempotent(self):
        rows = [
            bitmex_order_row('o-1', 'Buy', 2, 0),
            bitmex_order_row('o-2', 'Sell', 3, 5, status='Canceled', cum_qty=0),
        ]
        service = ImportService()

        self.assertEqual(service.import_raw_orders(self.account, rows), 2)
        self.assertEqual(service.import_raw_orders(self.account, rows), 0)
        order = Order.objects.get(order_id='o-2')
        self.assertEqual(order.status, 'Canceled')
        self.assertEqual(order.filled_quantity, Decimal('0'))
        self.assertIsNone(order.avg_price)

    def test_refresh_stores_orders_and_snapshot(self):
        source = FakeSource(
            executions=[make_exec(1, 'Buy', 1, 100, 0)],
            orders=[UnifiedOrder(
                order_id='o-1', symbol='XBTUSD', side=Side.BUY, quantity=Decimal('1'),
                timestamp=ts(0), exchange=Exchange.BITMEX, status='Filled',
            )],
            summary=AccountSummary(
                exchange=Exchange.BITMEX, captured_at=ts(1), currency='XBT',
                wallet_balance=Decimal('0.01'),
                positions=(ExchangePosition(symbol='XBTUSD', quantity=Decimal('1')),),
            ),
        )

        result = ImportService().refresh(self.account, source)

        self.assertEqual(result['orders'], 1)
        self.assertEqual(self.account.orders.count(), 1)
        snapshot = self.account.snapshots.get()
        self.assertEqual(snapshot.captured_at, ts(1))
        self.assertEqual(snapshot.exchange_positions()[0].quantity, Decimal('1'))

    def test_refresh_without_summary_stores_no_snapshot(self):
        ImportService().refresh(self.account, FakeSource(executions=[make_exec(1, 'Buy', 1, 100, 0)]))
        self.assertFalse(AccountSnapshot.objects.exists())


class TestReconstructionService(AccountTestCase):

    def setUp(self):
        super().setUp()
        ImportService().import_raw_executions(self.account, self.rows)

    def test_run_analysis_success(self):
        run = ReconstructionService().run_analysis(self.account)

        self.assertEqual(run.status, AnalysisRun.STATUS_SUCCESS)
        self.assertEqual(run.executions_count, 4)
        self.assertEqual(run.positions_count, 3)
        self.assertEqual(run.open_positions_count, 1)
        self.assertEqual(run.realized_pnl, Decimal('30'))
        self.assertEqual(run.warnings, [])
        self.assertEqual(len(run.positions), 3)
        self.assertEqual(run.summary['wins'], 2)
        self.account.refresh_from_db()
        self.assertEqual(self.account.realized_pnl, Decimal('30'))

    def test_run_analysis_partial_with_warnings(self):
        ImportService().import_raw_executions(self.account, [
            bitmex_row('zero', 'Buy', 0, 100, 1),
        ])

        run = ReconstructionService().run_analysis(self.account)

        self.assertEqual(run.status, AnalysisRun.STATUS_PARTIAL)
        self.assertEqual(len(run.warnings), 1)
        self.assertEqual(run.warnings[0]['exec_id'], 'zero')
        self.assertEqual(run.realized_pnl, Decimal('30'))

    def test_run_analysis_failure_recorded_and_raised(self):
        service = ReconstructionService(tracker=BrokenTracker())

        with self.assertRaises(StateInvariantError):
            service.run_analysis(self.account)

        run = AnalysisRun.objects.get(account=self.account)
        self.assertEqual(run.status, AnalysisRun.STATUS_FAILED)
        self.assertIn('cannot close', run.error)
        self.assertEqual(run.positions, [])

    def test_busy_account_rejects_non_blocking_run(self):
        with account_lock(self.account.pk):
            with self.assertRaises(ReconstructionInProgress):
                ReconstructionService().reconstruct(self.account, blocking=False)

    def test_run_analysis_locks_account_row(self):
        manager = ExchangeAccount.objects
        with patch.object(manager, 'select_for_update', wraps=manager.select_for_update) as locked:
            run = ReconstructionService().run_analysis(self.account)

        locked.assert_called_once_with(nowait=False)
        self.assertEqual(run.status, AnalysisRun.STATUS_SUCCESS)

    def test_row_locked_elsewhere_rejects_non_blocking_run(self):
        busy = MagicMock()
        busy.get.side_effect = OperationalError('could not obtain lock on row')
        with patch.object(ExchangeAccount.objects, 'select_for_update', return_value=busy) as locked:
            with self.assertRaises(ReconstructionInProgress):
                ReconstructionService().run_analysis(self.account, blocking=False)

        locked.assert_called_once_with(nowait=True)
        self.assertFalse(AnalysisRun.objects.filter(account=self.account).exists())

    def test_oversized_profit_factor_is_clamped(self):
        account = ExchangeAccount.objects.create(exchange='bitmex', name='lopsided')
        ImportService().save_executions(account, [
            make_exec(1, 'Buy', 1, 100, 0),
            make_exec(2, 'Sell', 1, '10000000100', 5),
            make_exec(3, 'Buy', 1, 100, 10),
            make_exec(4, 'Sell', 1, '99.99999999', 15),
        ])

        run = ReconstructionService().run_analysis(account)
        self.assertEqual(run.status, AnalysisRun.STATUS_SUCCESS)
        self.assertEqual(run.profit_factor, Decimal('9999999999999999.9999'))
        self.assertEqual(run.realized_pnl, Decimal('9999999999.99999999'))

    def test_quantize_bounds(self):
        self.assertEqual(_quantize(Decimal('-1e9'), '0.01', max_digits=6), Decimal('-9999.99'))
        self.assertEqual(_quantize(Decimal('12.345'), '0.01', max_digits=6), Decimal('12.35'))
        self.assertIsNone(_quantize(Decimal('Infinity'), '0.0001', max_digits=20))

    def test_load_breaks_timestamp_ties_by_exec_id(self):
        account = ExchangeAccount.objects.create(exchange='binance', name='ties')
        service = ImportService()
        service.save_executions(account, [make_exec(1, 'Buy', 1, 100, 0, exchange=Exchange.BINANCE)])
        service.save_executions(account, [make_exec(3, 'Buy', 1, 100, 5, exchange=Exchange.BINANCE)])
        service.save_executions(account, [make_exec(2, 'Sell', 1, 110, 5, exchange=Exchange.BINANCE)])

        executions = ReconstructionService().load_executions(account)
        self.assertEqual([e.exec_id for e in executions], ['1', '2', '3'])

        result = ReconstructionService().reconstruct(account)
        self.assertEqual(len(result.closed_positions), 1)
        self.assertEqual(result.closed_positions[0].realized_pnl, Decimal('10'))
        self.assertEqual(result.open_positions[0].quantity, Decimal('1'))

    def test_reconstruction_matches_between_runs(self):
        service = ReconstructionService()
        first = service.reconstruct(self.account)
        second = service.reconstruct(self.account)

        self.assertEqual(
            [(p.symbol, p.realized_pnl, p.quantity) for p in first.positions],
            [(p.symbol, p.realized_pnl, p.quantity) for p in second.positions],
        )


class TestTasks(AccountTestCase):

    def setUp(self):
        super().setUp()
        ImportService().import_raw_executions(self.account, self.rows)

    def test_recompute_task(self):
        from trade_analysis.tasks import recompute_account_positions

        result = recompute_account_positions(self.account.id)

        self.assertEqual(result['status'], 'success')
        self.assertEqual(result['run_status'], AnalysisRun.STATUS_SUCCESS)
        self.assertEqual(result['positions_count'], 3)
        self.assertAlmostEqual(result['realized_pnl'], 30.0)

    def test_recompute_task_missing_account(self):
        from trade_analysis.tasks import recompute_account_positions

        result = recompute_account_positions(999999)
        self.assertEqual(result['status'], 'error')

    def test_recompute_task_invariant_failure_not_retried(self):
        from trade_analysis.tasks import recompute_account_positions

        with patch('trade_analysis.services.ReconstructionService.run_analysis',
                   side_effect=StateInvariantError('broken')):
            result = recompute_account_positions(self.account.id)

        self.assertEqual(result['status'], 'error')
        self.assertEqual(result['message'], 'broken')

    def test_import_task_stores_orders_without_recompute(self):
        from trade_analysis.tasks import import_account_executions

        with patch('trade_analysis.tasks.recompute_account_positions.delay') as delay:
            result = import_account_executions(
                self.account.id, [], orders=[bitmex_order_row('o-1', 'Buy', 2, 0)]
            )

        self.assertEqual(result['status'], 'success')
        self.assertEqual(result['inserted'], 0)
        self.assertEqual(result['orders_inserted'], 1)
        self.assertNotIn('recompute_task_id', result)
        delay.assert_not_called()

    def test_import_task_queues_recompute_for_new_executions(self):
        from trade_analysis.tasks import import_account_executions

        with patch('trade_analysis.tasks.recompute_account_positions.delay',
                   return_value=MagicMock(id='task-789')) as delay:
            result = import_account_executions(self.account.id, [bitmex_row('e9', 'Buy', 1, 100, 60)])

        self.assertEqual(result['inserted'], 1)
        self.assertEqual(result['orders_inserted'], 0)
        self.assertEqual(result['recompute_task_id'], 'task-789')
        delay.assert_called_once_with(self.account.id)

    def test_cleanup_old_analyses(self):
        from trade_analysis.tasks import cleanup_old_analyses

        old = AnalysisRun.objects.create(account=self.account)
        AnalysisRun.objects.filter(pk=old.pk).update(started_at=T0 - timedelta(days=365))
        AnalysisRun.objects.create(account=self.account)

        result = cleanup_old_analyses(days=30)
        self.assertEqual(result['deleted'], 1)
        self.assertEqual(AnalysisRun.objects.count(), 1)


class TestManagementCommand(AccountTestCase):

    def test_recompute_positions_command(self):
        ImportService().import_raw_executions(self.account, self.rows)
        out = StringIO()

        call_command('recompute_positions', account_id=self.account.id, stdout=out)

        self.assertIn('SUCCESS', out.getvalue())
        self.assertEqual(self.account.analysis_runs.count(), 1)


# -- Tests: API --

class TestAccountAPI(AccountTestCase):

    def setUp(self):
        super().setUp()
        ImportService().import_raw_executions(self.account, self.rows)
        self.client = APIClient()

    def test_list_accounts(self):
        response = self.client.get('/api/accounts/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data[0]['executions_count'], 4)

    def test_positions(self):
        response = self.client.get(f'/api/accounts/{self.account.id}/positions/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['status'], AnalysisRun.STATUS_SUCCESS)
        self.assertEqual(len(response.data['positions']), 3)
        first = response.data['positions'][0]
        self.assertEqual(first['direction'], 'Long')
        self.assertEqual(first['status'], 'closed')
        self.assertNotIn('fills', first)

    def test_positions_filtered_with_fills(self):
        response = self.client.get(
            f'/api/accounts/{self.account.id}/positions/',
            {'status': 'open', 'include_fills': '1'}
        )

        self.assertEqual(response.status_code, 200)
        positions = response.data['positions']
        self.assertEqual(len(positions), 1)
        self.assertEqual(positions[0]['symbol'], 'ETHUSD')
        self.assertEqual(positions[0]['fills'][0]['role'], 'OPEN')

    def test_positions_invalid_status(self):
        response = self.client.get(f'/api/accounts/{self.account.id}/positions/', {'status': 'maybe'})
        self.assertEqual(response.status_code, 400)

    def test_positions_report_skipped_executions(self):
        ImportService().import_raw_executions(self.account, [bitmex_row('zero', 'Buy', 0, 100, 1)])

        response = self.client.get(f'/api/accounts/{self.account.id}/positions/')

        self.assertEqual(response.data['status'], AnalysisRun.STATUS_PARTIAL)
        self.assertEqual(response.data['warnings'][0]['exec_id'], 'zero')

    def test_positions_failed_reconstruction(self):
        with patch('trade_analysis.views.ReconstructionService.reconstruct',
                   side_effect=StateInvariantError('broken')):
            response = self.client.get(f'/api/accounts/{self.account.id}/positions/')

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data['status'], AnalysisRun.STATUS_FAILED)
        self.assertNotIn('positions', response.data)

    def test_stats(self):
        response = self.client.get(f'/api/accounts/{self.account.id}/stats/')

        self.assertEqual(response.status_code, 200)
        summary = response.data['summary']
        self.assertEqual(summary['wins'], 2)
        self.assertEqual(summary['open_positions'], 1)
        self.assertEqual(summary['profit_factor'], 'Infinity')
        self.assertAlmostEqual(summary['total_realized_pnl'], 30.0)

    def test_monthly(self):
        response = self.client.get(f'/api/accounts/{self.account.id}/monthly/')

        self.assertEqual(response.status_code, 200)
        months = response.data['months']
        self.assertEqual([m['month'] for m in months], ['2024-01', '2024-02'])
        self.assertAlmostEqual(months[0]['realized_pnl'], 20.0)
        self.assertAlmostEqual(months[1]['realized_pnl'], 10.0)

    def test_equity_with_mark(self):
        response = self.client.get(f'/api/accounts/{self.account.id}/equity/', {'mark': 'ETHUSD:80'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([p['value'] for p in response.data['points']], [20.0, 30.0])
        self.assertEqual(len(response.data['provisional']), 1)
        self.assertAlmostEqual(response.data['provisional'][0]['value'], 40.0)

    def test_equity_invalid_mark(self):
        response = self.client.get(f'/api/accounts/{self.account.id}/equity/', {'mark': 'ETHUSD'})
        self.assertEqual(response.status_code, 400)

    def test_executions(self):
        response = self.client.get(f'/api/accounts/{self.account.id}/executions/', {'symbol': 'ETHUSD'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]['exec_id'], 'e4')

    def test_execution_fee_in_quote_units(self):
        response = self.client.get(f'/api/accounts/{self.account.id}/executions/', {'symbol': 'XBTUSD'})

        fees = {row['exec_id']: row['fee'] for row in response.data}
        self.assertAlmostEqual(fees['e1'], 0.002)
        self.assertAlmostEqual(fees['e2'], 0.003)

    def test_wallet_running_balance(self):
        WalletTransaction.objects.create(
            account=self.account, transact_id='t1', transact_type='Deposit',
            amount=100000000, timestamp=ts(0))
        WalletTransaction.objects.create(
            account=self.account, transact_id='t2', transact_type='Funding',
            amount=-2500000, timestamp=ts(60))

        response = self.client.get(f'/api/accounts/{self.account.id}/wallet/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual([r['wallet_balance'] for r in response.data], [1.0, 0.975])

    def test_recompute_queues_task(self):
        with patch('trade_analysis.tasks.recompute_account_positions.delay',
                   return_value=MagicMock(id='task-123')) as delay:
            response = self.client.post(f'/api/accounts/{self.account.id}/recompute/')

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.data['task_id'], 'task-123')
        delay.assert_called_once_with(self.account.id)

    def test_recompute_unknown_account(self):
        response = self.client.post('/api/accounts/999999/recompute/')
        self.assertEqual(response.status_code, 404)

    def test_import_queues_task(self):
        rows = [bitmex_row('e9', 'Buy', 1, 100, 1)]
        with patch('trade_analysis.tasks.import_account_executions.delay',
                   return_value=MagicMock(id='task-456')) as delay:
            response = self.client.post(
                f'/api/accounts/{self.account.id}/import/', {'executions': rows}, format='json'
            )

        self.assertEqual(response.status_code, 202)
        delay.assert_called_once_with(self.account.id, rows, orders=[])

    def test_import_with_orders(self):
        orders = [bitmex_order_row('o-9', 'Buy', 1, 1)]
        with patch('trade_analysis.tasks.import_account_executions.delay',
                   return_value=MagicMock(id='task-457')) as delay:
            response = self.client.post(
                f'/api/accounts/{self.account.id}/import/', {'orders': orders}, format='json'
            )

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.data['orders'], 1)
        delay.assert_called_once_with(self.account.id, [], orders=orders)

    def test_import_rejects_empty_body(self):
        response = self.client.post(f'/api/accounts/{self.account.id}/import/', {}, format='json')
        self.assertEqual(response.status_code, 400)

    def test_orders_filtered_by_status(self):
        ImportService().import_raw_orders(self.account, [
            bitmex_order_row('o-1', 'Buy', 2, 0, status='PartiallyFilled', cum_qty=1),
            bitmex_order_row('o-2', 'Sell', 3, 5, status='Canceled', cum_qty=0),
        ])

        response = self.client.get(f'/api/accounts/{self.account.id}/orders/', {'status': 'partiallyfilled'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]['order_id'], 'o-1')
        self.assertAlmostEqual(response.data[0]['remaining_quantity'], 1.0)

    def test_record_snapshot(self):
        payload = bitmex_account_payload([bitmex_position_row('ETHUSD', -1, 90)])

        response = self.client.post(f'/api/accounts/{self.account.id}/snapshot/', payload, format='json')

        self.assertEqual(response.status_code, 201)
        self.assertEqual(Decimal(response.data['wallet_balance']), Decimal('0.01'))
        self.assertEqual(response.data['positions'][0]['symbol'], 'ETHUSD')
        self.assertEqual(self.account.snapshots.count(), 1)

    def test_record_snapshot_rejects_invalid_payload(self):
        malformed = self.client.post(
            f'/api/accounts/{self.account.id}/snapshot/', {'positions': [{'isOpen': True}]}, format='json'
        )
        okx = ExchangeAccount.objects.create(exchange='okx', name='okx')
        unsupported = self.client.post(f'/api/accounts/{okx.id}/snapshot/', {}, format='json')
        missing = self.client.post('/api/accounts/999999/snapshot/', {}, format='json')

        self.assertEqual(malformed.status_code, 400)
        self.assertEqual(unsupported.status_code, 400)
        self.assertEqual(missing.status_code, 404)
        self.assertFalse(AccountSnapshot.objects.exists())

    def test_reconciliation_requires_snapshot(self):
        response = self.client.get(f'/api/accounts/{self.account.id}/reconciliation/')
        self.assertEqual(response.status_code, 404)

    def test_reconciliation_matches_latest_snapshot(self):
        service = ImportService()
        service.import_account_summary(self.account, bitmex_account_payload([
            bitmex_position_row('XBTUSD', 5, 100),
        ]))
        latest = bitmex_account_payload([bitmex_position_row('ETHUSD', -1, 90)])
        latest['margin']['timestamp'] = '2024-01-16T12:00:00.000Z'
        service.import_account_summary(self.account, latest)

        response = self.client.get(f'/api/accounts/{self.account.id}/reconciliation/')

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data['matched'])
        self.assertEqual([r['symbol'] for r in response.data['positions']], ['ETHUSD'])
        self.assertAlmostEqual(response.data['positions'][0]['exchange_entry_price'], 90.0)

    def test_reconciliation_reports_mismatch(self):
        ImportService().import_account_summary(self.account, bitmex_account_payload([
            bitmex_position_row('XBTUSD', 5, 100),
        ]))

        response = self.client.get(f'/api/accounts/{self.account.id}/reconciliation/')

        self.assertFalse(response.data['matched'])
        rows = {r['symbol']: r for r in response.data['positions']}
        self.assertAlmostEqual(rows['ETHUSD']['quantity_difference'], 1.0)
        self.assertAlmostEqual(rows['XBTUSD']['quantity_difference'], 5.0)

    def test_add_account(self):
        response = self.client.post('/api/accounts/add/', {'exchange': 'binance', 'name': 'alt'}, format='json')
        self.assertEqual(response.status_code, 201)

        again = self.client.post('/api/accounts/add/', {'exchange': 'binance', 'name': 'alt'}, format='json')
        self.assertEqual(again.data['status'], 'exists')

        invalid = self.client.post('/api/accounts/add/', {'exchange': 'kraken', 'name': 'x'}, format='json')
        self.assertEqual(invalid.status_code, 400)

    def test_analyses_history(self):
        ReconstructionService().run_analysis(self.account)

        response = self.client.get(f'/api/accounts/{self.account.id}/analyses/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data[0]['status'], AnalysisRun.STATUS_SUCCESS)
        self.assertEqual(response.data[0]['positions_count'], 3)
