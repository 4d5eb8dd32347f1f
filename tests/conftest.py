# tests/conftest.py
from datetime import datetime, timedelta

import pytest

from autotrader.config.settings import load_settings
from autotrader.models.trading import (
    MarketEvent, Order, OrderSide, OrderState, OrderType, TradeIntent,
)
from autotrader.trading.execution_backend import (
    CancelAck, ExecutionBackend, ExecutionReport, ReportKind, SubmitAck,
)

T0 = datetime(2024, 1, 2, 9, 30)


class ManualBackend(ExecutionBackend):
    """Backend double: accepts everything, reports only when told to."""

    def __init__(self, accept: bool = True, accept_cancel: bool = True):
        super().__init__()
        self.accept = accept
        self.accept_cancel = accept_cancel
        self.submitted = []
        self.cancelled = []

    async def submit(self, order):
        self.submitted.append(order)
        if not self.accept:
            return SubmitAck(order.order_id, False, reason="insufficient funds")
        return SubmitAck(order.order_id, True, broker_order_id=f"MANUAL_{order.order_id}")

    async def cancel(self, order_id):
        if not self.accept_cancel:
            return CancelAck(order_id, False, reason="too_late")
        self.cancelled.append(order_id)
        await self._emit(ExecutionReport(order_id, ReportKind.CANCEL, T0, reason="cancel_requested"))
        return CancelAck(order_id, True)

    async def fill(self, order_id, quantity, price, timestamp=T0, commission=0.0):
        await self._emit(ExecutionReport(
            order_id, ReportKind.FILL, timestamp, quantity=quantity, price=price, commission=commission))

    async def reject(self, order_id, reason="venue_reject", timestamp=T0):
        await self._emit(ExecutionReport(order_id, ReportKind.REJECT, timestamp, reason=reason))


@pytest.fixture
def settings():
    """Settings isolated from the environment defaults that matter in tests"""
    return load_settings(
        SLIPPAGE_BPS=0.0,
        COMMISSION_BPS=0.0,
        INITIAL_CASH=100000.0,
        DRAIN_TIMEOUT=0.5,
        LIMIT_ORDER_EXPIRY=60.0,
    )


@pytest.fixture
def at():
    """Timestamp ``seconds`` after the test epoch"""
    def _at(seconds: float) -> datetime:
        return T0 + timedelta(seconds=seconds)
    return _at


@pytest.fixture
def make_event(at):
    def _make(symbol="X", seconds=0.0, price=10.0, volume=0.0, sequence=-1):
        return MarketEvent(symbol=symbol, timestamp=at(seconds), price=price,
                           volume=volume, sequence=sequence)
    return _make


@pytest.fixture
def make_intent(at):
    def _make(symbol="X", side=OrderSide.BUY, quantity=100.0, seconds=0.0, price=10.0,
              limit_price=None, strategy_id="test_strategy"):
        return TradeIntent(
            strategy_id=strategy_id,
            symbol=symbol,
            side=side,
            quantity=quantity,
            timestamp=at(seconds),
            kind=OrderType.LIMIT if limit_price is not None else OrderType.MARKET,
            limit_price=limit_price,
            reference_price=price,
        )
    return _make


@pytest.fixture
def make_order(make_intent):
    def _make(order_id=1, quantity=100.0, state=OrderState.SUBMITTED, **intent_kwargs):
        intent_kwargs.setdefault('quantity', quantity)
        return Order(order_id=order_id, intent=make_intent(**intent_kwargs),
                     quantity=quantity, state=state)
    return _make


@pytest.fixture
def manual_backend():
    return ManualBackend()
