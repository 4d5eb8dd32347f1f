# autotrader/risk/risk_manager.py - Pre-trade risk evaluation
import asyncio
import logging
import math
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Mapping, Optional, Union

from autotrader.models.trading import (
    EPSILON, AccountSnapshot, OrderSide, OrderType, RiskLimits, TradeIntent,
)
from autotrader.utils.exceptions import RiskRejection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Approval:
    """Intent approved for ``quantity`` (equal to or less than requested)."""
    intent: TradeIntent
    quantity: float
    requested: float
    reduced: bool = False
    rule: Optional[str] = None  # rule that reduced the quantity

    approved = True


@dataclass(frozen=True)
class Rejection:
    """Intent refused. Retryable rejections may succeed on a later event."""
    intent: TradeIntent
    reason: str
    rule: str
    retryable: bool = False

    approved = False

    def to_exception(self) -> RiskRejection:
        return RiskRejection(
            self.reason,
            rule=self.rule,
            retryable=self.retryable,
            details={'intent': self.intent.to_dict()},
        )


RiskDecision = Union[Approval, Rejection]


def _effective_quantity(snapshot: AccountSnapshot, working: Mapping[str, float], symbol: str) -> float:
    position = snapshot.position(symbol)
    held = position.quantity if position else 0.0
    return held + working.get(symbol, 0.0)


def _feasible(side: OrderSide, current: float, bound: float) -> float:
    """Largest quantity on ``side`` keeping |current + signed qty| within bound."""
    if side is OrderSide.BUY:
        return bound - current
    return current + bound


def _floor_to_step(quantity: float, step: Optional[float]) -> float:
    if not step:
        return quantity
    return math.floor(quantity / step + EPSILON) * step


def resolve_price(intent: TradeIntent, snapshot: AccountSnapshot) -> Optional[float]:
    """Limit price, else latest mark, else the intent's reference price."""
    if intent.limit_price is not None:
        return intent.limit_price
    price = snapshot.price_of(intent.symbol)
    if price is not None:
        return price
    return intent.reference_price


def exposure_excluding(snapshot: AccountSnapshot, working: Mapping[str, float], symbol: str) -> float:
    """Aggregate |qty * price| over every symbol except ``symbol``."""
    total = 0.0
    for other in set(snapshot.positions) | set(working):
        if other == symbol:
            continue
        quantity = _effective_quantity(snapshot, working, other)
        price = snapshot.price_of(other)
        if price is None:
            position = snapshot.position(other)
            price = position.market_price if position else 0.0
        total += abs(quantity * price)
    return total


def assess(intent: TradeIntent, snapshot: AccountSnapshot, limits: RiskLimits,
           working: Optional[Mapping[str, float]] = None,
           recent_approvals: int = 0) -> RiskDecision:
    """Apply the risk rules to one intent without side effects.

    Rules run in order and the first failure wins:
    position size, aggregate exposure, stop-loss override, max open positions,
    order rate. Size and exposure reduce the quantity when part of it fits.
    Neither blocks an intent that does not increase |position|.

    Args:
        intent: Intent to evaluate
        snapshot: Ledger state
        limits: Risk limits
        working: Signed unfilled quantity of open orders per symbol
        recent_approvals: Approvals inside the trailing rate window

    Returns:
        Approval or Rejection
    """
    working = working or {}
    requested = intent.quantity

    if not requested > 0 or math.isnan(requested):
        return Rejection(intent, f"Invalid quantity {requested}", 'invalid_intent')
    if intent.kind is OrderType.LIMIT and (intent.limit_price is None or intent.limit_price <= 0):
        return Rejection(intent, "Limit intent without a valid limit price", 'invalid_intent')

    price = resolve_price(intent, snapshot)
    if price is None or price <= 0:
        return Rejection(intent, f"No price available for {intent.symbol}", 'no_price')

    current = _effective_quantity(snapshot, working, intent.symbol)
    sign = intent.side.sign

    def increases(quantity: float) -> bool:
        return abs(current + sign * quantity) > abs(current) + EPSILON

    quantity = requested
    reduced_by = None

    # 1. Position size
    if increases(quantity):
        feasible = _feasible(intent.side, current, limits.max_position_size)
        if feasible <= EPSILON:
            return Rejection(
                intent,
                f"Position limit {limits.max_position_size} reached for {intent.symbol} "
                f"(current {current})",
                'position_size',
            )
        if feasible < quantity:
            quantity, reduced_by = feasible, 'position_size'

    # 2. Aggregate exposure
    if increases(quantity) and not math.isinf(limits.max_exposure):
        room = limits.max_exposure - exposure_excluding(snapshot, working, intent.symbol)
        bound = max(room, 0.0) / price
        feasible = _feasible(intent.side, current, bound)
        if feasible <= EPSILON:
            return Rejection(
                intent,
                f"Exposure cap {limits.max_exposure} reached (room {room:.2f})",
                'exposure',
            )
        if feasible < quantity:
            quantity, reduced_by = feasible, 'exposure'

    if reduced_by is not None and limits.quantity_step:
        quantity = _floor_to_step(quantity, limits.quantity_step)
        if quantity <= EPSILON:
            return Rejection(
                intent,
                f"Reduced quantity below quantity step {limits.quantity_step}",
                reduced_by,
            )

    # 3. Stop-loss override
    position = snapshot.position(intent.symbol)
    if position is not None and increases(quantity):
        if position.unrealized_pnl_pct < -limits.stop_loss_pct:
            return Rejection(
                intent,
                f"{intent.symbol} is beyond its stop-loss "
                f"({position.unrealized_pnl_pct:.2%} < -{limits.stop_loss_pct:.2%}), "
                f"only reducing intents allowed",
                'stop_loss',
            )

    # Max open positions
    if limits.max_open_positions is not None and abs(current) <= EPSILON:
        open_symbols = {
            s for s in set(snapshot.positions) | set(working)
            if abs(_effective_quantity(snapshot, working, s)) > EPSILON
        }
        if len(open_symbols) >= limits.max_open_positions:
            return Rejection(
                intent,
                f"Max open positions {limits.max_open_positions} reached",
                'max_open_positions',
            )

    # 4. Order rate
    if recent_approvals >= limits.max_order_rate:
        return Rejection(
            intent,
            f"Order rate {limits.max_order_rate} per {limits.order_rate_window}s reached",
            'order_rate',
            retryable=True,
        )

    reduced = quantity < requested - EPSILON
    return Approval(intent, quantity, requested, reduced, reduced_by if reduced else None)


SnapshotProvider = Callable[[], AccountSnapshot]
WorkingProvider = Callable[[], Dict[str, float]]


class RiskManager:
    """Serialises risk evaluation and keeps the order-rate window.

    The rate window is measured in event time (intent timestamps), so backtests
    and live runs count the same way.
    """

    def __init__(self, limits: RiskLimits, snapshot_provider: Optional[SnapshotProvider] = None,
                 working_provider: Optional[WorkingProvider] = None):
        self.limits = limits
        self._snapshot_provider = snapshot_provider
        self._working_provider = working_provider
        self._lock = asyncio.Lock()
        self._approvals: Deque[datetime] = deque()
        self.stats = {'approved': 0, 'reduced': 0, 'rejected': 0, 'retryable': 0}

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    async def evaluate(self, intent: TradeIntent, snapshot: Optional[AccountSnapshot] = None,
                       limits: Optional[RiskLimits] = None) -> RiskDecision:
        """Evaluate one intent under the risk lock.

        Args:
            intent: Intent from a strategy
            snapshot: Ledger snapshot, read inside the lock when omitted
            limits: Overrides the configured limits for this call

        Returns:
            Approval or Rejection
        """
        async with self._lock:
            return self.evaluate_locked(intent, snapshot, limits)

    def evaluate_locked(self, intent: TradeIntent, snapshot: Optional[AccountSnapshot] = None,
                        limits: Optional[RiskLimits] = None) -> RiskDecision:
        """Evaluate with the caller already holding the decision lock."""
        limits = limits or self.limits
        if snapshot is None:
            if self._snapshot_provider is None:
                raise ValueError("No snapshot given and no snapshot provider configured")
            snapshot = self._snapshot_provider()
        working = self._working_provider() if self._working_provider else {}

        recent = self._recent_approvals(intent.timestamp, limits.order_rate_window)
        decision = assess(intent, snapshot, limits, working, recent)
        self._record(decision)
        return decision

    def _recent_approvals(self, now: datetime, window: float) -> int:
        cutoff = now - timedelta(seconds=window)
        while self._approvals and self._approvals[0] <= cutoff:
            self._approvals.popleft()
        return len(self._approvals)

    def _record(self, decision: RiskDecision) -> None:
        intent = decision.intent
        if decision.approved:
            self._approvals.append(intent.timestamp)
            self.stats['approved'] += 1
            if decision.reduced:
                self.stats['reduced'] += 1
                logger.info(
                    f"Risk reduced {intent.strategy_id} {intent.side.value} {intent.symbol} "
                    f"{decision.requested} -> {decision.quantity} ({decision.rule})"
                )
            return

        self.stats['rejected'] += 1
        if decision.retryable:
            self.stats['retryable'] += 1
        logger.warning(
            f"Risk rejected {intent.strategy_id} {intent.side.value} {intent.quantity} "
            f"{intent.symbol}: [{decision.rule}] {decision.reason}"
        )

    def reset(self) -> None:
        self._approvals.clear()
        self.stats = {key: 0 for key in self.stats}
