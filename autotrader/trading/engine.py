# autotrader/trading/engine.py - Strategy execution engine for backtest and live runs
import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from autotrader.config.settings import Settings, get_settings
from autotrader.data_sources.base import HistoricalDataSource, LiveFeedSource
from autotrader.data_sources.event_bus import LiveEventBus, MarketEventBus, PacingMode, ReplayEventBus
from autotrader.database.persistence import PersistenceSink, SqlAlchemyPersistence
from autotrader.database.session import DatabaseManager
from autotrader.models.trading import Account, AccountSnapshot, MarketEvent, RiskLimits, TradeIntent
from autotrader.monitoring.performance import PerformanceTracker
from autotrader.monitoring.sinks import MetricsSink
from autotrader.risk.risk_manager import RiskDecision, RiskManager
from autotrader.strategies.base import Strategy
from autotrader.trading.clock import EngineClock
from autotrader.trading.execution_backend import ExecutionBackend
from autotrader.trading.ledger import Ledger
from autotrader.trading.order_manager import OrderManager
from autotrader.trading.paper_backend import PaperBrokerBackend
from autotrader.trading.runtime import StrategyRuntime
from autotrader.utils.exceptions import DataGapFault, ExecutionFault, LedgerInvariantViolation

logger = logging.getLogger(__name__)


class TradingEngine:
    """Turns a market event stream into orders and account state.

    The same engine runs backtests (replay bus, simulated backend, event-time
    clock) and live sessions (live bus, paper or venue backend, wall clock).

    Per event, in order:
    1. mark the ledger at the event price
    2. let the backend match resting orders
    3. dispatch the event to strategies
    4. pass each intent through risk and order submission under one lock

    Shutdown closes the bus, then resolves or cancels every open order. Only
    LedgerInvariantViolation propagates out of ``run``.
    """

    def __init__(
        self,
        bus: MarketEventBus,
        backend: ExecutionBackend,
        strategies: Iterable[Strategy] = (),
        account: Optional[Account] = None,
        limits: Optional[RiskLimits] = None,
        settings: Optional[Settings] = None,
        persistence: Optional[PersistenceSink] = None,
        sink: Optional[MetricsSink] = None,
        symbols: Optional[Iterable[str]] = None,
    ):
        self.settings = settings or get_settings()
        self.bus = bus
        self.backend = backend
        self.persistence = persistence
        self._symbols = list(symbols) if symbols is not None else None

        account = account or Account(cash=self.settings.INITIAL_CASH, account_id=self.settings.ACCOUNT_ID)
        self.clock = EngineClock(replay=isinstance(bus, ReplayEventBus))
        self.tracker = PerformanceTracker(account.equity, sink)

        # Core components
        self.ledger = Ledger(account)
        self.runtime = StrategyRuntime(fault_handler=self._on_fault)
        self.order_manager = OrderManager(
            backend, self.ledger, clock=self.clock.now, fault_handler=self._on_fault)
        self.risk = RiskManager(
            limits or self.settings.risk_limits(),
            snapshot_provider=self.ledger.snapshot,
            working_provider=self.order_manager.working_quantities,
        )

        # Wiring
        self.order_manager.set_strategy_notifier(self.runtime.notify)
        self.order_manager.add_listener(self.tracker.on_order)
        self.ledger.add_listener(self.tracker.on_snapshot)
        if persistence is not None:
            self.order_manager.add_listener(persistence.save_order)
            self.ledger.add_listener(persistence.save_snapshot)
        self.bus.fault_handler = self._on_fault
        if isinstance(backend, PaperBrokerBackend):
            # Paper fills share the engine time base
            backend.clock = self.clock.now

        for strategy in strategies:
            self.runtime.add_strategy(strategy)

        # State
        self.is_running = False
        self.events_processed = 0
        self.events_skipped = 0
        self.decisions: List[RiskDecision] = []
        self._decision_lock = asyncio.Lock()
        self._stop_requested = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        strategies: Iterable[Strategy],
        source: Optional[HistoricalDataSource] = None,
        feeds: Optional[Iterable[LiveFeedSource]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        persistence: Optional[PersistenceSink] = None,
        sink: Optional[MetricsSink] = None,
        symbols: Optional[Iterable[str]] = None,
    ) -> 'TradingEngine':
        """Build an engine for ``settings.RUN_MODE``.

        Backtests replay ``source`` through the simulated backend. Live runs
        multiplex ``feeds`` and paper trade, resuming the account from
        ``persistence`` when a snapshot is stored. Without one, live runs
        persist to ``settings.DATABASE_URL``.
        """
        from autotrader.backtest.simulated_backend import SimulatedExecutionBackend

        account = None
        if settings.is_backtest():
            if source is None:
                raise ValueError("Backtest mode needs a historical data source")
            bus = ReplayEventBus(
                source, start, end,
                pacing=PacingMode(settings.REPLAY_PACING), speed=settings.REPLAY_SPEED,
            )
            backend = SimulatedExecutionBackend.from_settings(settings)
        else:
            if not feeds:
                raise ValueError("Live mode needs at least one live feed")
            bus = LiveEventBus(feeds, horizon=settings.OUT_OF_ORDER_HORIZON)
            backend = PaperBrokerBackend({
                'slippage_bps': settings.SLIPPAGE_BPS,
                'commission_bps': settings.COMMISSION_BPS,
            })
            if persistence is None:
                persistence = SqlAlchemyPersistence(
                    DatabaseManager(settings.DATABASE_URL, echo=settings.DEBUG), settings.ACCOUNT_ID)
            account = persistence.load_account()

        engine = cls(
            bus, backend, strategies,
            account=account, settings=settings, persistence=persistence, sink=sink, symbols=symbols,
        )
        if isinstance(backend, SimulatedExecutionBackend):
            backend.cash_provider = lambda: engine.ledger.account.cash
        return engine

    def add_strategy(self, strategy: Strategy) -> None:
        self.runtime.add_strategy(strategy)

    def _subscription_symbols(self) -> List[str]:
        if self._symbols is not None:
            return self._symbols
        symbols = self.runtime.symbols()
        if symbols is not None:
            return symbols
        if isinstance(self.bus, ReplayEventBus):
            return list(self.bus.source.symbols())
        return []  # live feeds: every symbol

    async def run(self) -> AccountSnapshot:
        """Run until the stream ends or ``stop()`` is called.

        Returns:
            Final ledger snapshot

        Raises:
            LedgerInvariantViolation: Order or ledger accounting is broken
        """
        logger.info(f"Starting trading engine ({'backtest' if self.clock.replay else 'live'})...")
        if not await self.backend.connect():
            self._on_fault(ExecutionFault("Execution backend failed to connect"))
            return self.ledger.snapshot()

        symbols = self._subscription_symbols()
        subscription = self.bus.subscribe(symbols)
        self.is_running = True
        logger.info(f"Trading engine started: {len(self.runtime.strategies)} strategies, symbols={symbols or 'all'}")

        halted = False
        try:
            async for event in subscription:
                await self._process(event)
                if self._stop_requested:
                    break
        except LedgerInvariantViolation as e:
            halted = True
            logger.critical(f"Engine halted: {e.message}")
            self._on_fault(e)
            raise
        finally:
            await subscription.close()
            await self._shutdown(drain=not halted)

        return self.ledger.snapshot()

    async def stop(self) -> None:
        """Request shutdown. The current event finishes, then the engine drains."""
        logger.info("Stopping trading engine...")
        self._stop_requested = True
        await self.bus.close()

    async def _process(self, event: MarketEvent) -> None:
        if event.out_of_order:
            # Stale price, never shown to strategies
            self.events_skipped += 1
            self._on_fault(DataGapFault(
                f"Out-of-order event dropped: {event.symbol} @ {event.timestamp.isoformat()}",
                details={'symbol': event.symbol, 'sequence': event.sequence},
            ), event.timestamp)
            return

        self.clock.advance(event.timestamp)
        await self.ledger.mark_price(event.symbol, event.price, event.timestamp)

        try:
            await self.backend.on_market_event(event)
        except LedgerInvariantViolation:
            raise
        except Exception as e:
            logger.error(f"Backend failed on market event: {e}", exc_info=True)
            self._on_fault(ExecutionFault(f"Backend market event handling failed: {e}"), event.timestamp)
        self._check_fatal()

        intents = await self.runtime.dispatch(event)
        for intent in intents:
            await self._decide(intent)
        self._check_fatal()

        self.events_processed += 1
        self.tracker.on_snapshot(self.ledger.snapshot())

    async def _decide(self, intent: TradeIntent) -> None:
        """Risk evaluation and order submission as one critical section."""
        async with self._decision_lock:
            decision = await self.risk.evaluate(intent)
            self.decisions.append(decision)
            if not decision.approved:
                self._on_fault(decision.to_exception(), intent.timestamp)
                return
            await self.order_manager.submit(intent, decision.quantity)

    def _check_fatal(self) -> None:
        if self.order_manager.fatal is not None:
            raise self.order_manager.fatal

    async def _shutdown(self, drain: bool = True) -> None:
        try:
            if drain:
                timestamp = self.clock.last_event_time if self.clock.replay else self.clock.now()
                if timestamp is not None:
                    await self.backend.flush(timestamp, reason="end_of_data" if self.clock.replay else "shutdown")
                await self.order_manager.drain(self.settings.DRAIN_TIMEOUT)
                self._check_fatal()
        finally:
            self.is_running = False
            await self.backend.close()
            await self.bus.close()
            if drain and self.persistence is not None:
                try:
                    self.persistence.save_snapshot(self.ledger.snapshot())
                except Exception as e:
                    logger.error(f"Final snapshot persistence failed: {e}", exc_info=True)
            logger.info(
                f"Trading engine stopped: {self.events_processed} events, "
                f"{len(self.order_manager.archive)} orders"
            )

    def _on_fault(self, error: Exception, timestamp: Optional[datetime] = None) -> None:
        if timestamp is None:
            timestamp = self.clock.last_event_time
        self.tracker.on_fault(error, timestamp)

    def get_status(self) -> Dict:
        """Get engine status."""
        snapshot = self.ledger.snapshot()
        return {
            'is_running': self.is_running,
            'events_processed': self.events_processed,
            'events_skipped': self.events_skipped,
            'open_orders': len(self.order_manager.orders),
            'archived_orders': len(self.order_manager.archive),
            'strategies': self.runtime.get_status(),
            'risk': dict(self.risk.stats),
            'equity': snapshot.equity,
            'cash': snapshot.cash,
            'positions': len(snapshot.positions),
        }
