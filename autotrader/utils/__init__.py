# autotrader/utils/__init__.py
from autotrader.utils.exceptions import (
    TradingEngineException,
    DataGapFault,
    StrategyFault,
    RiskRejection,
    ExecutionFault,
    LedgerInvariantViolation,
    ConfigurationError,
    fault_event,
)

__all__ = [
    'TradingEngineException',
    'DataGapFault',
    'StrategyFault',
    'RiskRejection',
    'ExecutionFault',
    'LedgerInvariantViolation',
    'ConfigurationError',
    'fault_event',
]
