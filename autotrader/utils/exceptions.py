# autotrader/utils/exceptions.py - Engine fault taxonomy
from typing import Optional, Dict, Any


class TradingEngineException(Exception):
    """Base exception for the trading engine"""
    fatal = False

    def __init__(self, message: str, error_code: str = None, details: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}


class DataGapFault(TradingEngineException):
    """Feed disconnect or missing data; recovered at the collaborator layer"""
    pass


class StrategyFault(TradingEngineException):
    """Exception raised inside strategy logic; suspends only that strategy"""

    def __init__(self, message: str, strategy_id: str, error_code: str = None,
                 details: Dict[str, Any] = None):
        details = dict(details or {})
        details.setdefault('strategy_id', strategy_id)
        super().__init__(message, error_code, details)
        self.strategy_id = strategy_id


class RiskRejection(TradingEngineException):
    """Trade intent rejected by the risk manager"""

    def __init__(self, message: str, rule: str, retryable: bool = False,
                 details: Dict[str, Any] = None):
        details = dict(details or {})
        details.setdefault('rule', rule)
        details.setdefault('retryable', retryable)
        super().__init__(message, 'risk_rejection_retryable' if retryable else 'risk_rejection', details)
        self.rule = rule
        self.retryable = retryable


class ExecutionFault(TradingEngineException):
    """Execution backend rejected or failed an order"""
    pass


class LedgerInvariantViolation(TradingEngineException):
    """Correctness bug in order/ledger accounting; halts the engine"""
    fatal = True


class ConfigurationError(TradingEngineException):
    """Configuration error"""
    pass


def fault_event(error: Exception, timestamp=None) -> Dict[str, Any]:
    """Render an exception as a structured fault event for sinks."""
    if isinstance(error, TradingEngineException):
        event = {
            'type': type(error).__name__,
            'error_code': error.error_code,
            'message': error.message,
            'details': dict(error.details),
            'fatal': error.fatal,
        }
    else:
        event = {
            'type': type(error).__name__,
            'error_code': 'unexpected_error',
            'message': str(error),
            'details': {},
            'fatal': False,
        }
    if timestamp is not None:
        event['timestamp'] = timestamp.isoformat()
    return event
