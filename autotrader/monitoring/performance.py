# autotrader/monitoring/performance.py - Execution and PnL performance tracking
"""Read-only performance tracking for engine runs.

The tracker subscribes to ledger snapshots and terminal orders. It never
mutates engine state, and a failure inside it is logged and swallowed so a
metrics problem cannot abort a run.
"""

import logging
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from autotrader.models.trading import EPSILON, AccountSnapshot, Order, OrderState
from autotrader.monitoring.sinks import LoggingMetricsSink, MetricsSink
from autotrader.utils.exceptions import fault_event

logger = logging.getLogger(__name__)

PERIODS = frozenset({'day', 'week', 'month'})


@dataclass(frozen=True)
class OrderMetrics:
    """Execution quality of one terminal order.

    Slippage compares the average fill price to the intent's reference price;
    positive values are a cost to the account.
    """
    order_id: int
    strategy_id: str
    symbol: str
    side: str
    state: str
    requested_quantity: float
    quantity: float
    filled_quantity: float
    reference_price: Optional[float]
    avg_fill_price: Optional[float]
    latency_seconds: Optional[float]
    slippage: Optional[float]
    slippage_bps: Optional[float]
    terminal_reason: Optional[str]

    @classmethod
    def from_order(cls, order: Order) -> 'OrderMetrics':
        latency = None
        if order.submitted_at is not None and order.first_fill_at is not None:
            latency = (order.first_fill_at - order.submitted_at).total_seconds()

        slippage = slippage_bps = None
        reference = order.intent.reference_price
        if reference and order.avg_fill_price is not None and order.filled_quantity > 0:
            slippage = (order.avg_fill_price - reference) * order.side.sign
            slippage_bps = slippage / reference * 10000.0

        return cls(
            order_id=order.order_id,
            strategy_id=order.strategy_id,
            symbol=order.symbol,
            side=order.side.value,
            state=order.state.value,
            requested_quantity=order.intent.quantity,
            quantity=order.quantity,
            filled_quantity=order.filled_quantity,
            reference_price=reference,
            avg_fill_price=order.avg_fill_price,
            latency_seconds=latency,
            slippage=slippage,
            slippage_bps=slippage_bps,
            terminal_reason=order.terminal_reason,
        )


@dataclass(frozen=True)
class EquityPoint:
    timestamp: Optional[datetime]
    equity: float
    cash: float
    realized_pnl: float
    unrealized_pnl: float
    version: int

    @classmethod
    def from_snapshot(cls, snapshot: AccountSnapshot) -> 'EquityPoint':
        return cls(
            timestamp=snapshot.as_of,
            equity=snapshot.equity,
            cash=snapshot.cash,
            realized_pnl=snapshot.realized_pnl,
            unrealized_pnl=snapshot.unrealized_pnl,
            version=snapshot.version,
        )


@dataclass(frozen=True)
class RealizedTrade:
    """A closed (or partly closed) position, entry against exit.

    ``direction`` is ``long`` or ``short``; profit is signed so a short that
    covered below its entry is a gain.
    """
    symbol: str
    strategy_id: str
    direction: str
    entry_price: float
    exit_price: float
    quantity: float
    profit: float
    profit_pct: float
    timestamp: Optional[datetime]

    @classmethod
    def close(cls, order: Order, entry_price: float, quantity: float, sign: int) -> 'RealizedTrade':
        exit_price = order.avg_fill_price
        return cls(
            symbol=order.symbol,
            strategy_id=order.strategy_id,
            direction='long' if sign > 0 else 'short',
            entry_price=entry_price,
            exit_price=exit_price,
            quantity=quantity,
            profit=(exit_price - entry_price) * quantity * sign,
            profit_pct=(exit_price / entry_price - 1.0) * 100.0 * sign if entry_price else 0.0,
            timestamp=order.terminal_at or order.first_fill_at,
        )


class PerformanceTracker:
    """Collects latency, slippage and equity metrics during a run."""

    def __init__(self, initial_equity: float, sink: Optional[MetricsSink] = None):
        self.initial_equity = initial_equity
        self.sink = sink or LoggingMetricsSink()
        self.order_metrics: List[OrderMetrics] = []
        self.equity_curve: List[EquityPoint] = []
        self.faults: List[Dict] = []
        self.realized_trades: List[RealizedTrade] = []
        self._open: Dict[str, Tuple[float, float]] = {}  # symbol -> (signed quantity, avg entry)

    def on_order(self, order: Order) -> None:
        """Terminal order listener."""
        try:
            metrics = OrderMetrics.from_order(order)
            self.order_metrics.append(metrics)
            self.sink.record_order(metrics)
            self._record_realized(order)
        except Exception as e:
            logger.error(f"Performance tracking failed for order {order.order_id}: {e}", exc_info=True)

    def _record_realized(self, order: Order) -> None:
        """Match the order's fills against the open position of its symbol.

        Average-cost matching: fills that reduce the position close a trade at
        the average entry price, any excess opens the opposite side.
        """
        if order.filled_quantity <= EPSILON or order.avg_fill_price is None:
            return
        held, entry = self._open.get(order.symbol, (0.0, 0.0))
        signed = order.side.sign * order.filled_quantity
        price = order.avg_fill_price

        if abs(held) <= EPSILON or held * signed > 0:
            total = held + signed
            entry = (abs(held) * entry + abs(signed) * price) / abs(total)
            self._open[order.symbol] = (total, entry)
            return

        sign = 1 if held > 0 else -1
        closed = min(abs(signed), abs(held))
        trade = RealizedTrade.close(order, entry, closed, sign)
        self.realized_trades.append(trade)
        logger.debug(
            f"Realized {trade.direction} {trade.symbol}: {closed} @ {entry:.4f} -> {price:.4f}, "
            f"profit {trade.profit:.2f}"
        )

        remaining = held + signed
        if abs(remaining) <= EPSILON:
            self._open.pop(order.symbol, None)
        elif remaining * held > 0:
            self._open[order.symbol] = (remaining, entry)
        else:
            self._open[order.symbol] = (remaining, price)

    def on_snapshot(self, snapshot: AccountSnapshot) -> None:
        """Ledger snapshot listener."""
        try:
            point = EquityPoint.from_snapshot(snapshot)
            self.equity_curve.append(point)
            self.sink.record_equity(point)
        except Exception as e:
            logger.error(f"Performance tracking failed for snapshot {snapshot.version}: {e}", exc_info=True)

    def on_fault(self, error: Exception, timestamp: Optional[datetime] = None) -> None:
        """Fault handler shared by the engine components."""
        try:
            event = fault_event(error, timestamp)
            self.faults.append(event)
            self.sink.record_fault(event)
        except Exception as e:
            logger.error(f"Fault reporting failed: {e}", exc_info=True)

    def equity_frame(self) -> pd.DataFrame:
        """Equity curve as a DataFrame indexed by timestamp."""
        if not self.equity_curve:
            return pd.DataFrame(columns=['timestamp', 'equity', 'cash', 'realized_pnl',
                                         'unrealized_pnl', 'version'])
        return pd.DataFrame([asdict(p) for p in self.equity_curve])

    def orders_frame(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(m) for m in self.order_metrics])

    def realized_frame(self) -> pd.DataFrame:
        """Realized trades, one row per closing order."""
        columns = [f.name for f in fields(RealizedTrade)]
        if not self.realized_trades:
            return pd.DataFrame(columns=columns)
        frame = pd.DataFrame([asdict(t) for t in self.realized_trades], columns=columns)
        frame['timestamp'] = pd.to_datetime(frame['timestamp'])
        return frame

    def realized_summary(self, period: str = 'day') -> pd.DataFrame:
        """Realized profit and traded quantity grouped by ``day``, ``week`` or ``month``.

        Weeks are ISO weeks labelled ``YYYY-Www``; days ``YYYY-MM-DD``;
        months ``YYYY-MM``.
        """
        if period not in PERIODS:
            raise ValueError(f"Unknown period {period!r}, expected one of {sorted(PERIODS)}")

        frame = self.realized_frame().dropna(subset=['timestamp'])
        if frame.empty:
            return pd.DataFrame(columns=['profit', 'quantity', 'trades']).rename_axis(period)

        stamps = frame['timestamp']
        if period == 'day':
            keys = stamps.dt.strftime('%Y-%m-%d')
        elif period == 'week':
            iso = stamps.dt.isocalendar()
            keys = iso['year'].astype(str) + '-W' + iso['week'].astype(int).map('{:02d}'.format)
        else:
            keys = stamps.dt.strftime('%Y-%m')

        grouped = frame.groupby(keys.rename(period))
        return pd.DataFrame({
            'profit': grouped['profit'].sum(),
            'quantity': grouped['quantity'].sum(),
            'trades': grouped['profit'].count(),
        }).sort_index()

    def realized_report(self) -> Dict:
        """Realized profit per symbol with the best and worst symbol and the win ratio."""
        frame = self.realized_frame()
        if frame.empty:
            return {'realized_trades': 0, 'realized_profit': 0.0, 'by_symbol': {},
                    'best_symbol': None, 'worst_symbol': None, 'symbol_win_ratio': None}

        by_symbol = frame.groupby('symbol')['profit'].sum()
        return {
            'realized_trades': len(frame),
            'realized_profit': float(frame['profit'].sum()),
            'by_symbol': {symbol: float(profit) for symbol, profit in by_symbol.items()},
            'best_symbol': by_symbol.idxmax(),
            'worst_symbol': by_symbol.idxmin(),
            'symbol_win_ratio': float((by_symbol >= 0).mean()),
        }

    def summary(self) -> Dict:
        """Summary statistics for the run so far."""
        try:
            return self._summary()
        except Exception as e:
            logger.error(f"Performance summary failed: {e}", exc_info=True)
            return {}

    def _summary(self) -> Dict:
        orders = self.order_metrics
        filled = [m for m in orders if m.state == OrderState.FILLED.value]
        latencies = [m.latency_seconds for m in orders if m.latency_seconds is not None]
        slippages = [m.slippage_bps for m in orders if m.slippage_bps is not None]

        final_equity = self.equity_curve[-1].equity if self.equity_curve else self.initial_equity
        realized = self.equity_curve[-1].realized_pnl if self.equity_curve else 0.0
        total_pnl = final_equity - self.initial_equity
        dd = self._calculate_drawdowns(np.array([p.equity for p in self.equity_curve], dtype=float))

        return {
            'initial_equity': self.initial_equity,
            'final_equity': final_equity,
            'total_pnl': total_pnl,
            'realized_pnl': realized,
            'total_return': total_pnl / self.initial_equity if self.initial_equity else 0.0,
            'max_drawdown': dd['max_drawdown'],
            'max_drawdown_duration': dd['max_dd_duration'],
            'total_orders': len(orders),
            'filled_orders': len(filled),
            'fill_rate': len(filled) / len(orders) if orders else 0.0,
            'mean_latency_seconds': float(np.mean(latencies)) if latencies else None,
            'mean_slippage_bps': float(np.mean(slippages)) if slippages else None,
            'realized_trades': len(self.realized_trades),
            'faults': len(self.faults),
        }

    def _calculate_drawdowns(self, equity: np.ndarray) -> Dict:
        """Calculate drawdown metrics."""
        if len(equity) == 0:
            return {'max_drawdown': 0.0, 'max_dd_duration': 0}

        running_max = np.maximum.accumulate(equity)
        with np.errstate(divide='ignore', invalid='ignore'):
            drawdowns = np.where(running_max > 0, (equity - running_max) / running_max, 0.0)

        max_duration = 0
        current_duration = 0
        for is_dd in drawdowns < 0:
            if is_dd:
                current_duration += 1
                max_duration = max(max_duration, current_duration)
            else:
                current_duration = 0

        return {
            'max_drawdown': float(abs(drawdowns.min())),
            'max_dd_duration': max_duration,
        }
