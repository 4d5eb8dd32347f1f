# autotrader/models/records.py - Persistence records for orders and ledger snapshots

from sqlalchemy import Column, String, Float, DateTime, Integer, Text, Index, desc

from autotrader.models.base import Base
from autotrader.utils.timestamps import utc_now


class OrderRecord(Base):
    __tablename__ = 'orders'
    __table_args__ = (
        Index('idx_orders_symbol_state', 'symbol', 'state'),
        Index('idx_orders_strategy', 'strategy_id'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, nullable=False, index=True)
    account_id = Column(String(50), nullable=False, default='default')
    strategy_id = Column(String(100), nullable=False)
    symbol = Column(String(30), nullable=False)
    side = Column(String(4), nullable=False)
    order_type = Column(String(10), nullable=False)
    quantity = Column(Float, nullable=False)
    limit_price = Column(Float)
    reference_price = Column(Float)
    state = Column(String(20), nullable=False)
    filled_quantity = Column(Float, nullable=False, default=0.0)
    avg_fill_price = Column(Float)
    submitted_at = Column(DateTime)
    first_fill_at = Column(DateTime)
    terminal_at = Column(DateTime)
    terminal_reason = Column(String(200))
    recorded_at = Column(DateTime, default=utc_now)


class LedgerSnapshotRecord(Base):
    __tablename__ = 'ledger_snapshots'
    __table_args__ = (
        Index('idx_snapshots_account_version_desc', 'account_id', desc('version')),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(50), nullable=False, default='default')
    version = Column(Integer, nullable=False)
    as_of = Column(DateTime)
    cash = Column(Float, nullable=False)
    realized_pnl = Column(Float, nullable=False, default=0.0)
    equity = Column(Float, nullable=False)
    positions = Column(Text, nullable=False)  # JSON string of positions
    recorded_at = Column(DateTime, default=utc_now)
