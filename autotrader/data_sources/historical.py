# autotrader/data_sources/historical.py - Historical data sources for replay
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Union

import pandas as pd

from autotrader.data_sources.base import HistoricalDataSource
from autotrader.models.trading import EventKind, MarketEvent
from autotrader.utils.exceptions import DataGapFault
from autotrader.utils.timestamps import to_engine_time

logger = logging.getLogger(__name__)


class InMemoryHistoricalSource(HistoricalDataSource):
    """Historical source backed by lists of events."""

    def __init__(self, events: Iterable[MarketEvent] = ()):
        self._events: Dict[str, List[MarketEvent]] = {}
        for event in events:
            self.add(event)

    def add(self, event: MarketEvent) -> None:
        self._events.setdefault(event.symbol, []).append(event)

    def read(self, symbol: str, start: Optional[datetime] = None,
             end: Optional[datetime] = None) -> Iterator[MarketEvent]:
        events = sorted(self._events.get(symbol, []), key=lambda e: to_engine_time(e.timestamp))
        for event in events:
            if start is not None and to_engine_time(event.timestamp) < to_engine_time(start):
                continue
            if end is not None and to_engine_time(event.timestamp) > to_engine_time(end):
                break
            yield event

    def symbols(self) -> Iterable[str]:
        return list(self._events)


class DataFrameHistoricalSource(HistoricalDataSource):
    """Historical source backed by one pandas DataFrame per symbol.

    Expected columns: a timestamp column (``timestamp`` or ``date``), a price
    column (``price`` or ``close``) and an optional ``volume`` column. A
    DatetimeIndex is accepted in place of the timestamp column.
    """

    TIMESTAMP_COLUMNS = ('timestamp', 'date', 'datetime', 'time')
    PRICE_COLUMNS = ('price', 'close', 'last')

    def __init__(self, frames: Dict[str, pd.DataFrame] = None, kind: EventKind = EventKind.TRADE):
        self.kind = kind
        self.frames: Dict[str, pd.DataFrame] = {}
        for symbol, frame in (frames or {}).items():
            self.load(symbol, frame)

    def load(self, symbol: str, data: pd.DataFrame) -> None:
        """Normalize and store market data for a symbol."""
        frame = data.copy()
        if isinstance(frame.index, pd.DatetimeIndex):
            frame = frame.rename_axis('timestamp').reset_index()

        ts_col = next((c for c in self.TIMESTAMP_COLUMNS if c in frame.columns), None)
        price_col = next((c for c in self.PRICE_COLUMNS if c in frame.columns), None)
        if ts_col is None or price_col is None:
            raise DataGapFault(
                f"Market data for {symbol} lacks timestamp/price columns",
                details={'symbol': symbol, 'columns': list(frame.columns)},
            )

        normalized = pd.DataFrame({
            'timestamp': pd.to_datetime(frame[ts_col], utc=True).dt.tz_localize(None),
            'price': frame[price_col].astype(float),
            'volume': frame['volume'].astype(float) if 'volume' in frame.columns else 0.0,
        })
        dropped = normalized['price'].isna().sum()
        if dropped:
            logger.warning(f"Dropping {dropped} rows without price for {symbol}")
            normalized = normalized.dropna(subset=['price'])

        # Stable sort keeps source order for equal timestamps
        self.frames[symbol] = normalized.sort_values('timestamp', kind='mergesort').reset_index(drop=True)
        logger.info(f"Loaded {len(normalized)} records for {symbol}")

    def read(self, symbol: str, start: Optional[datetime] = None,
             end: Optional[datetime] = None) -> Iterator[MarketEvent]:
        frame = self.frames.get(symbol)
        if frame is None:
            logger.debug(f"No data for {symbol}")
            return
        if start is not None:
            frame = frame[frame['timestamp'] >= pd.Timestamp(to_engine_time(start))]
        if end is not None:
            frame = frame[frame['timestamp'] <= pd.Timestamp(to_engine_time(end))]

        for row in frame.itertuples(index=False):
            yield MarketEvent(
                symbol=symbol,
                timestamp=row.timestamp.to_pydatetime(),
                price=float(row.price),
                volume=float(row.volume),
                kind=self.kind,
            )

    def symbols(self) -> Iterable[str]:
        return list(self.frames)


class CsvHistoricalSource(DataFrameHistoricalSource):
    """Historical source reading ``<symbol>.csv`` files lazily from a directory."""

    def __init__(self, paths: Union[str, Path, Dict[str, Union[str, Path]]],
                 kind: EventKind = EventKind.TRADE):
        super().__init__(kind=kind)
        if isinstance(paths, dict):
            self.paths = {symbol: Path(p) for symbol, p in paths.items()}
        else:
            directory = Path(paths)
            self.paths = {p.stem: p for p in sorted(directory.glob('*.csv'))}

    def read(self, symbol: str, start: Optional[datetime] = None,
             end: Optional[datetime] = None) -> Iterator[MarketEvent]:
        if symbol not in self.frames and symbol in self.paths:
            try:
                self.load(symbol, pd.read_csv(self.paths[symbol]))
            except (OSError, pd.errors.ParserError) as e:
                raise DataGapFault(
                    f"Failed to read history for {symbol}: {e}",
                    details={'symbol': symbol, 'path': str(self.paths[symbol])},
                ) from e
        return super().read(symbol, start, end)

    def symbols(self) -> Iterable[str]:
        return list(self.paths)
