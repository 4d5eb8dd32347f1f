# tests/test_paper_backend.py - Paper broker tests
import asyncio

import pytest

from autotrader.models.trading import Account, OrderSide, OrderState
from autotrader.trading.ledger import Ledger
from autotrader.trading.order_manager import OrderManager
from autotrader.trading.paper_backend import PaperBrokerBackend

from conftest import T0


class TestPaperBrokerBackend:
    """Test paper broker order handling."""

    async def build(self, config=None, connect=True):
        self.backend = PaperBrokerBackend({'fill_delay': 0.01, 'slippage_bps': 10, **(config or {})},
                                          clock=lambda: T0)
        if connect:
            await self.backend.connect()
        self.ledger = Ledger(Account(cash=10000.0))
        self.manager = OrderManager(self.backend, self.ledger, clock=lambda: T0)

    @pytest.mark.asyncio
    async def test_market_fill_after_delay(self, make_event, make_intent):
        await self.build()
        await self.backend.on_market_event(make_event(price=20.0))

        order = await self.manager.submit(make_intent(quantity=10), 10)
        assert order.state is OrderState.SUBMITTED
        assert order.broker_order_id == "PAPER_000001"

        await asyncio.sleep(0.1)

        assert order.state is OrderState.FILLED
        assert order.avg_fill_price == pytest.approx(20.02)
        assert self.ledger.snapshot().position("X").quantity == 10
        assert self.backend.open_order_count == 0

    @pytest.mark.asyncio
    async def test_rejects_when_not_connected(self, make_intent):
        await self.build(connect=False)

        order = await self.manager.submit(make_intent(), 10)

        assert order.state is OrderState.REJECTED
        assert order.terminal_reason == "broker_not_connected"

    @pytest.mark.asyncio
    async def test_rejection_rate(self, make_intent):
        await self.build({'rejection_rate': 1.0})

        order = await self.manager.submit(make_intent(), 10)

        assert order.state is OrderState.REJECTED

    @pytest.mark.asyncio
    async def test_market_order_without_quote(self, make_intent):
        await self.build()

        order = await self.manager.submit(make_intent(price=None), 10)

        assert order.state is OrderState.REJECTED
        assert order.terminal_reason.startswith("no_quote")

    @pytest.mark.asyncio
    async def test_limit_order_fills_when_crossed(self, make_event, make_intent):
        await self.build()
        order = await self.manager.submit(make_intent(side=OrderSide.SELL, limit_price=21.0), 10)

        await self.backend.on_market_event(make_event(price=20.5))
        await asyncio.sleep(0.05)
        assert order.state is OrderState.SUBMITTED

        await self.backend.on_market_event(make_event(price=21.5))
        await asyncio.sleep(0.05)

        assert order.state is OrderState.FILLED
        assert order.avg_fill_price == 21.5
        assert self.ledger.snapshot().position("X").quantity == -10

    @pytest.mark.asyncio
    async def test_cancel_pending_fill(self, make_event, make_intent):
        await self.build({'fill_delay': 1.0})
        await self.backend.on_market_event(make_event(price=20.0))
        order = await self.manager.submit(make_intent(), 10)

        assert await self.manager.cancel(order.order_id) is True
        await asyncio.sleep(0)

        assert order.state is OrderState.CANCELLED
        assert (await self.backend.cancel(order.order_id)).accepted is False
        assert self.ledger.version == 0

    @pytest.mark.asyncio
    async def test_flush_keeps_in_flight_market_fill(self, make_event, make_intent, at):
        await self.build()
        await self.backend.on_market_event(make_event(price=20.0))
        market = await self.manager.submit(make_intent(), 10)
        resting = await self.manager.submit(make_intent(limit_price=5.0), 10)

        await self.backend.flush(at(1))
        await asyncio.sleep(0.05)

        assert resting.state is OrderState.CANCELLED
        assert resting.terminal_reason == "shutdown"
        assert market.state is OrderState.FILLED

    @pytest.mark.asyncio
    async def test_close_abandons_pending_fills(self, make_event, make_intent):
        await self.build({'fill_delay': 1.0})
        await self.backend.on_market_event(make_event(price=20.0))
        order = await self.manager.submit(make_intent(), 10)

        await self.backend.close()

        assert order.state is OrderState.SUBMITTED
        assert (await self.manager.submit(make_intent(), 10)).state is OrderState.REJECTED
