# autotrader/backtest/__init__.py
from autotrader.backtest.simulated_backend import FillModel, SimulatedExecutionBackend
from autotrader.backtest.runner import BacktestResult, BacktestRunner

__all__ = [
    'FillModel',
    'SimulatedExecutionBackend',
    'BacktestResult',
    'BacktestRunner',
]
