# autotrader/database/persistence.py - Order and ledger snapshot persistence
import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from autotrader.database.session import DatabaseManager
from autotrader.models.records import LedgerSnapshotRecord, OrderRecord
from autotrader.models.trading import Account, AccountSnapshot, Order, Position

logger = logging.getLogger(__name__)


class PersistenceSink(ABC):
    """Durable storage for terminal orders and ledger snapshots."""

    @abstractmethod
    def save_order(self, order: Order) -> None:
        """Persist a terminal order."""
        pass

    @abstractmethod
    def save_snapshot(self, snapshot: AccountSnapshot) -> None:
        """Persist a ledger snapshot."""
        pass

    @abstractmethod
    def load_account(self) -> Optional[Account]:
        """Rebuild the account from the latest stored snapshot.

        Returns:
            Account, or None when nothing has been stored
        """
        pass


def account_from_snapshot_dict(data: Dict) -> Account:
    """Build an Account from ``AccountSnapshot.to_dict()`` output."""
    positions = {}
    for symbol, pos in (data.get('positions') or {}).items():
        positions[symbol] = Position(
            symbol=symbol,
            quantity=pos['quantity'],
            avg_entry_price=pos['avg_entry_price'],
            realized_pnl=pos.get('realized_pnl', 0.0),
            unrealized_pnl=pos.get('unrealized_pnl', 0.0),
            last_price=pos.get('last_price'),
        )
    return Account(
        cash=data['cash'],
        positions=positions,
        realized_pnl=data.get('realized_pnl', 0.0),
        account_id=data.get('account_id', 'default'),
    )


class InMemoryPersistence(PersistenceSink):
    """Keeps serialized orders and snapshots in lists."""

    def __init__(self):
        self.orders: List[Dict] = []
        self.snapshots: List[Dict] = []

    def save_order(self, order: Order) -> None:
        self.orders.append(order.to_dict())

    def save_snapshot(self, snapshot: AccountSnapshot) -> None:
        self.snapshots.append(snapshot.to_dict())

    def load_account(self) -> Optional[Account]:
        if not self.snapshots:
            return None
        return account_from_snapshot_dict(self.snapshots[-1])


class SqlAlchemyPersistence(PersistenceSink):
    """Stores orders and snapshots through SQLAlchemy."""

    def __init__(self, db: DatabaseManager, account_id: str = "default"):
        self.db = db
        self.account_id = account_id

    def save_order(self, order: Order) -> None:
        intent = order.intent
        with self.db.get_session() as session:
            session.add(OrderRecord(
                order_id=order.order_id,
                account_id=self.account_id,
                strategy_id=intent.strategy_id,
                symbol=intent.symbol,
                side=intent.side.value,
                order_type=intent.kind.value,
                quantity=order.quantity,
                limit_price=intent.limit_price,
                reference_price=intent.reference_price,
                state=order.state.value,
                filled_quantity=order.filled_quantity,
                avg_fill_price=order.avg_fill_price,
                submitted_at=order.submitted_at,
                first_fill_at=order.first_fill_at,
                terminal_at=order.terminal_at,
                terminal_reason=order.terminal_reason,
            ))
        logger.debug(f"Order {order.order_id} persisted ({order.state.value})")

    def save_snapshot(self, snapshot: AccountSnapshot) -> None:
        data = snapshot.to_dict()
        with self.db.get_session() as session:
            session.add(LedgerSnapshotRecord(
                account_id=snapshot.account_id,
                version=snapshot.version,
                as_of=snapshot.as_of,
                cash=snapshot.cash,
                realized_pnl=snapshot.realized_pnl,
                equity=snapshot.equity,
                positions=json.dumps(data['positions']),
            ))

    def load_account(self) -> Optional[Account]:
        with self.db.get_session() as session:
            record = (
                session.query(LedgerSnapshotRecord)
                .filter(LedgerSnapshotRecord.account_id == self.account_id)
                .order_by(LedgerSnapshotRecord.version.desc(), LedgerSnapshotRecord.id.desc())
                .first()
            )
            if record is None:
                logger.info(f"No stored snapshot for account {self.account_id}")
                return None
            data = {
                'account_id': record.account_id,
                'cash': record.cash,
                'realized_pnl': record.realized_pnl,
                'positions': json.loads(record.positions),
            }

        account = account_from_snapshot_dict(data)
        logger.info(
            f"Account {self.account_id} restored: cash={account.cash:.2f}, "
            f"{len(account.positions)} positions"
        )
        return account

    def list_orders(self, strategy_id: Optional[str] = None) -> List[Dict]:
        with self.db.get_session() as session:
            query = session.query(OrderRecord).filter(OrderRecord.account_id == self.account_id)
            if strategy_id:
                query = query.filter(OrderRecord.strategy_id == strategy_id)
            return [
                {
                    'order_id': r.order_id,
                    'strategy_id': r.strategy_id,
                    'symbol': r.symbol,
                    'side': r.side,
                    'state': r.state,
                    'quantity': r.quantity,
                    'filled_quantity': r.filled_quantity,
                    'avg_fill_price': r.avg_fill_price,
                    'terminal_reason': r.terminal_reason,
                }
                for r in query.order_by(OrderRecord.order_id).all()
            ]
