# autotrader/trading/execution_backend.py - Abstract execution backend interface
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

from autotrader.models.trading import MarketEvent, Order

logger = logging.getLogger(__name__)


class ReportKind(Enum):
    """Execution report kinds."""
    FILL = "fill"
    CANCEL = "cancel"
    REJECT = "reject"


@dataclass(frozen=True)
class ExecutionReport:
    """Asynchronous outcome reported by a backend for one order."""
    order_id: int
    kind: ReportKind
    timestamp: datetime
    quantity: float = 0.0
    price: Optional[float] = None
    commission: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class SubmitAck:
    order_id: int
    accepted: bool
    broker_order_id: Optional[str] = None
    reason: str = ""


@dataclass(frozen=True)
class CancelAck:
    order_id: int
    accepted: bool
    reason: str = ""


ReportListener = Callable[[ExecutionReport], Awaitable[None]]


class ExecutionBackend(ABC):
    """Interface between the order manager and a venue, real or simulated.

    Implementations should handle:
    - Order acceptance or rejection at submission
    - Fills, cancels and late rejections as ExecutionReports
    - Cancellation of resting orders
    """

    def __init__(self):
        self._listener: Optional[ReportListener] = None

    def bind(self, listener: ReportListener) -> None:
        """Register the coroutine that receives execution reports."""
        self._listener = listener

    async def _emit(self, report: ExecutionReport) -> None:
        if self._listener is None:
            logger.warning(f"Execution report dropped, no listener bound: {report}")
            return
        await self._listener(report)

    async def connect(self) -> bool:
        """Establish connection to the venue.

        Returns:
            True if connection successful
        """
        return True

    async def close(self) -> None:
        """Release venue resources."""
        pass

    @abstractmethod
    async def submit(self, order: Order) -> SubmitAck:
        """Hand an order to the venue.

        Args:
            order: Pending order

        Returns:
            SubmitAck, ``accepted`` False if the venue refused the order
        """
        pass

    @abstractmethod
    async def cancel(self, order_id: int) -> CancelAck:
        """Request cancellation of an open order.

        Args:
            order_id: Engine order ID

        Returns:
            CancelAck. An accepted cancel is followed by a CANCEL report.
        """
        pass

    async def on_market_event(self, event: MarketEvent) -> None:
        """Observe a market event before strategies see it."""
        pass

    async def flush(self, timestamp: datetime, reason: str = "end_of_data") -> None:
        """Resolve every open order, cancelling what cannot be filled."""
        pass

    @property
    def open_order_count(self) -> int:
        return 0
