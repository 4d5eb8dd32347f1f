# autotrader/risk/__init__.py - Risk management module
from autotrader.risk.risk_manager import (
    Approval, Rejection, RiskDecision, RiskManager, assess, resolve_price,
)
from autotrader.risk.risk_config_loader import RiskConfigLoader, validate_risk_limits

__all__ = [
    "Approval",
    "Rejection",
    "RiskDecision",
    "RiskManager",
    "assess",
    "resolve_price",
    "RiskConfigLoader",
    "validate_risk_limits",
]
