# autotrader/trading/runtime.py - Strategy hosting and event dispatch
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from autotrader.models.trading import MarketEvent, Order, TradeIntent
from autotrader.strategies.base import Strategy
from autotrader.utils.exceptions import ConfigurationError, StrategyFault

logger = logging.getLogger(__name__)

FaultHandler = Callable[[Exception], None]


@dataclass
class StrategySlot:
    """Runtime state kept for one hosted strategy."""
    strategy: Strategy
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    enabled: bool = True
    suspended_reason: Optional[str] = None
    last_key: Optional[Tuple[datetime, int]] = None
    events: int = 0
    intents: int = 0

    @property
    def active(self) -> bool:
        return self.enabled and self.suspended_reason is None


class StrategyRuntime:
    """Hosts strategies and feeds them market events.

    Each strategy sees events strictly one at a time under its own lock, in
    increasing (timestamp, sequence) order. For one event all strategies run
    concurrently; their intents come back in registration order.
    """

    def __init__(self, fault_handler: Optional[FaultHandler] = None):
        self._slots: Dict[str, StrategySlot] = {}
        self._fault_handler = fault_handler

    def add_strategy(self, strategy: Strategy) -> None:
        """Add strategy to runtime."""
        if strategy.strategy_id in self._slots:
            raise ConfigurationError(
                f"Duplicate strategy id: {strategy.strategy_id}",
                details={'strategy_id': strategy.strategy_id},
            )
        self._slots[strategy.strategy_id] = StrategySlot(strategy)
        logger.info(f"Strategy added: {strategy.strategy_id}")

    def remove_strategy(self, strategy_id: str) -> None:
        if self._slots.pop(strategy_id, None) is not None:
            logger.info(f"Strategy removed: {strategy_id}")

    def enable_strategy(self, strategy_id: str, enabled: bool = True) -> None:
        """Enable/disable strategy."""
        slot = self._slots.get(strategy_id)
        if slot is not None:
            slot.enabled = enabled
            logger.info(f"Strategy {'enabled' if enabled else 'disabled'}: {strategy_id}")

    @property
    def strategies(self) -> List[Strategy]:
        return [slot.strategy for slot in self._slots.values()]

    def is_suspended(self, strategy_id: str) -> bool:
        slot = self._slots.get(strategy_id)
        return slot is not None and slot.suspended_reason is not None

    def symbols(self) -> Optional[List[str]]:
        """Union of strategy symbol sets, None if any strategy takes every symbol."""
        union = set()
        for slot in self._slots.values():
            if slot.strategy.symbols is None:
                return None
            union |= slot.strategy.symbols
        return sorted(union)

    async def dispatch(self, event: MarketEvent) -> List[TradeIntent]:
        """Deliver one event to every interested strategy.

        Returns:
            Collected intents in strategy registration order
        """
        slots = [
            slot for slot in self._slots.values()
            if slot.active and slot.strategy.accepts(event.symbol)
        ]
        if not slots:
            return []

        results = await asyncio.gather(*(self._deliver(slot, event) for slot in slots))
        return [intent for intents in results for intent in intents]

    async def _deliver(self, slot: StrategySlot, event: MarketEvent) -> List[TradeIntent]:
        async with slot.lock:
            if not slot.active:
                return []
            key = event.sort_key
            if slot.last_key is not None and key <= slot.last_key:
                logger.debug(
                    f"Skipping stale event for {slot.strategy.strategy_id}: "
                    f"{event.symbol} @ {event.timestamp.isoformat()}"
                )
                return []
            slot.last_key = key
            slot.events += 1

            try:
                intents = await slot.strategy.on_event(event) or []
            except Exception as e:
                self._suspend(slot, f"on_event failed: {e}", e, event)
                return []

            try:
                self._validate(slot.strategy, intents)
            except StrategyFault as fault:
                self._suspend(slot, fault.message, fault, event)
                return []

            slot.intents += len(intents)
            return list(intents)

    def _validate(self, strategy: Strategy, intents) -> None:
        for intent in intents:
            if not isinstance(intent, TradeIntent):
                raise StrategyFault(
                    f"Strategy returned {type(intent).__name__} instead of TradeIntent",
                    strategy_id=strategy.strategy_id,
                )
            if intent.strategy_id != strategy.strategy_id:
                raise StrategyFault(
                    f"Intent carries strategy id {intent.strategy_id!r}",
                    strategy_id=strategy.strategy_id,
                )
            if not strategy.accepts(intent.symbol):
                raise StrategyFault(
                    f"Intent for unsubscribed symbol {intent.symbol}",
                    strategy_id=strategy.strategy_id,
                    details={'intent': intent.to_dict()},
                )
            if not intent.quantity > 0:
                raise StrategyFault(
                    f"Intent with non-positive quantity {intent.quantity}",
                    strategy_id=strategy.strategy_id,
                    details={'intent': intent.to_dict()},
                )

    async def notify(self, order: Order) -> None:
        """Tell the originating strategy about a terminal order."""
        slot = self._slots.get(order.strategy_id)
        if slot is None or slot.suspended_reason is not None:
            return
        async with slot.lock:
            try:
                if order.filled_quantity > 0:
                    await slot.strategy.on_fill(order)
                else:
                    await slot.strategy.on_order_update(order)
            except Exception as e:
                self._suspend(slot, f"order callback failed: {e}", e)

    def _suspend(self, slot: StrategySlot, reason: str, error: Exception,
                 event: Optional[MarketEvent] = None) -> None:
        strategy_id = slot.strategy.strategy_id
        slot.suspended_reason = reason
        if isinstance(error, StrategyFault):
            fault = error
        else:
            details = {'exception': type(error).__name__}
            if event is not None:
                details.update(symbol=event.symbol, timestamp=event.timestamp.isoformat())
            fault = StrategyFault(reason, strategy_id=strategy_id, details=details)
        logger.error(f"Strategy {strategy_id} suspended: {reason}", exc_info=error is not fault)
        if self._fault_handler is not None:
            try:
                self._fault_handler(fault)
            except Exception as e:
                logger.error(f"Fault handler error: {e}", exc_info=True)

    def get_status(self) -> Dict:
        return {
            strategy_id: {
                'enabled': slot.enabled,
                'suspended': slot.suspended_reason,
                'events': slot.events,
                'intents': slot.intents,
            }
            for strategy_id, slot in self._slots.items()
        }
