# autotrader/backtest/runner.py - Backtest runner and parameter sweeps
import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Type

import pandas as pd

from autotrader.backtest.simulated_backend import FillModel, SimulatedExecutionBackend
from autotrader.config.settings import Settings, get_settings
from autotrader.data_sources.base import HistoricalDataSource
from autotrader.data_sources.event_bus import PacingMode, ReplayEventBus
from autotrader.database.persistence import InMemoryPersistence
from autotrader.models.trading import AccountSnapshot, RiskLimits
from autotrader.monitoring.sinks import MetricsSink
from autotrader.strategies.base import Strategy
from autotrader.trading.engine import TradingEngine

logger = logging.getLogger(__name__)


@dataclass
class BacktestResult:
    """Everything a backtest produced."""
    orders: List[Dict]
    snapshots: List[Dict]
    equity_curve: pd.DataFrame
    summary: Dict
    final_snapshot: AccountSnapshot
    faults: List[Dict] = field(default_factory=list)
    params: Dict = field(default_factory=dict)
    realized_trades: pd.DataFrame = field(default_factory=pd.DataFrame)

    def to_json(self) -> str:
        """Orders and snapshots as canonical JSON, stable across identical runs."""
        return json.dumps(
            {'orders': self.orders, 'snapshots': self.snapshots},
            sort_keys=True, default=str,
        )


class BacktestRunner:
    """Replays a historical source through a fresh engine per run."""

    def __init__(
        self,
        source: HistoricalDataSource,
        settings: Optional[Settings] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limits: Optional[RiskLimits] = None,
        fill_model: Optional[FillModel] = None,
        sink_factory: Optional[Callable[[], MetricsSink]] = None,
        symbols: Optional[Iterable[str]] = None,
    ):
        self.source = source
        self.settings = settings or get_settings()
        self.start = start
        self.end = end
        self.limits = limits
        self.fill_model = fill_model
        self.sink_factory = sink_factory
        self.symbols = list(symbols) if symbols is not None else None

    def build_engine(self, strategies: Iterable[Strategy]) -> TradingEngine:
        settings = self.settings
        bus = ReplayEventBus(
            self.source, self.start, self.end,
            pacing=PacingMode(settings.REPLAY_PACING), speed=settings.REPLAY_SPEED,
        )
        backend = SimulatedExecutionBackend.from_settings(settings)
        if self.fill_model is not None:
            backend.fill_model = self.fill_model

        engine = TradingEngine(
            bus, backend, strategies,
            limits=self.limits,
            settings=settings,
            persistence=InMemoryPersistence(),
            sink=self.sink_factory() if self.sink_factory else None,
            symbols=self.symbols,
        )
        backend.cash_provider = lambda: engine.ledger.account.cash
        return engine

    async def run(self, strategies: Iterable[Strategy], params: Optional[Dict] = None) -> BacktestResult:
        """Run one backtest to completion.

        Args:
            strategies: Fresh strategy instances, not shared with other runs
            params: Parameters recorded on the result

        Returns:
            BacktestResult

        Raises:
            LedgerInvariantViolation: Accounting broke during the run
        """
        engine = self.build_engine(strategies)
        final = await engine.run()
        persistence = engine.persistence

        result = BacktestResult(
            orders=list(persistence.orders),
            snapshots=list(persistence.snapshots),
            equity_curve=engine.tracker.equity_frame(),
            summary=engine.tracker.summary(),
            final_snapshot=final,
            faults=list(engine.tracker.faults),
            params=dict(params or {}),
            realized_trades=engine.tracker.realized_frame(),
        )
        logger.info(
            f"Backtest finished: {len(result.orders)} orders, "
            f"equity {final.equity:.2f}, return {result.summary.get('total_return', 0.0):.2%}"
        )
        return result

    def run_sync(self, strategies: Iterable[Strategy], params: Optional[Dict] = None) -> BacktestResult:
        return asyncio.run(self.run(strategies, params))

    async def sweep(
        self,
        strategy_class: Type[Strategy],
        param_grid: Dict[str, List[Any]],
        base_config: Optional[Dict] = None,
    ) -> pd.DataFrame:
        """Run one backtest per combination in ``param_grid``.

        Example:
            await runner.sweep(TrailingStop, {'stop_loss_pct': [0.02, 0.05, 0.1]})

        Returns:
            DataFrame with one row per combination: the parameters followed by
            the performance summary
        """
        names = sorted(param_grid)
        rows = []
        for values in itertools.product(*(param_grid[name] for name in names)):
            params = dict(zip(names, values))
            config = {**(base_config or {}), **params}
            strategy = strategy_class(config=config)
            result = await self.run([strategy], params)
            rows.append({**params, **result.summary})
            logger.info(f"Sweep run {params}: total_return={result.summary.get('total_return', 0.0):.4f}")

        if not rows:
            return pd.DataFrame(columns=names)
        return pd.DataFrame(rows)
