# autotrader/risk/risk_config_loader.py - Risk configuration loader
import logging
from dataclasses import fields, replace
from pathlib import Path
from typing import Dict, Optional

import yaml

from autotrader.models.trading import RiskLimits
from autotrader.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

RISK_LIMIT_FIELDS = frozenset(f.name for f in fields(RiskLimits))


class RiskConfigLoader:
    """Load risk limit profiles from YAML.

    Top-level ``risk_limits`` holds the defaults; ``profiles.<name>.risk_limits``
    overrides them field by field.
    """

    def __init__(self, config_path: str = None):
        """Initialize risk config loader.

        Args:
            config_path: Path to risk_rules.yaml config file
        """
        self.config_path = config_path or self._get_default_config_path()
        self.config = self._load_config()

    def _get_default_config_path(self) -> str:
        """Get default configuration path."""
        project_root = Path(__file__).parent.parent.parent
        return str(project_root / "config" / "risk_rules.yaml")

    def _load_config(self) -> Dict:
        """Load configuration from YAML file."""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
        except FileNotFoundError:
            logger.warning(f"Config file not found: {self.config_path}")
            return {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid risk config: {self.config_path}",
                details={'path': self.config_path, 'error': str(e)},
            ) from e
        logger.info(f"Loaded risk config from {self.config_path}")
        return config or {}

    def get_profile(self, profile_name: str) -> Dict:
        """Get complete risk profile configuration."""
        return self.config.get('profiles', {}).get(profile_name, {})

    def list_profiles(self) -> list:
        """List available risk profiles."""
        return list(self.config.get('profiles', {}).keys())

    def get_risk_limits(self, profile: str = None, base: Optional[RiskLimits] = None) -> RiskLimits:
        """Build risk limits from the defaults plus an optional profile.

        Args:
            profile: Risk profile name ('conservative', 'moderate', 'aggressive')
            base: Limits to start from, defaults to ``RiskLimits()``

        Returns:
            RiskLimits instance

        Raises:
            ConfigurationError: Unknown profile, unknown field or invalid value
        """
        values = dict(self.config.get('risk_limits') or {})
        if profile:
            if profile not in self.config.get('profiles', {}):
                raise ConfigurationError(
                    f"Unknown risk profile: {profile}",
                    details={'available': self.list_profiles()},
                )
            values.update(self.get_profile(profile).get('risk_limits') or {})

        unknown = set(values) - RISK_LIMIT_FIELDS
        if unknown:
            raise ConfigurationError(
                f"Unknown risk limit fields: {sorted(unknown)}",
                details={'fields': sorted(unknown)},
            )

        limits = replace(base or RiskLimits(), **values)
        validate_risk_limits(limits)
        logger.info(f"Risk limits ({profile or 'default'}): {limits}")
        return limits


def validate_risk_limits(limits: RiskLimits) -> None:
    """Raise ConfigurationError if any limit is out of range."""
    errors = []
    if not limits.max_position_size > 0:
        errors.append('max_position_size must be positive')
    if not limits.max_exposure > 0:
        errors.append('max_exposure must be positive')
    if not 0 <= limits.stop_loss_pct:
        errors.append('stop_loss_pct must not be negative')
    if not limits.max_order_rate >= 1:
        errors.append('max_order_rate must be at least 1')
    if not limits.order_rate_window > 0:
        errors.append('order_rate_window must be positive')
    if limits.quantity_step is not None and not limits.quantity_step > 0:
        errors.append('quantity_step must be positive')
    if limits.max_open_positions is not None and limits.max_open_positions < 1:
        errors.append('max_open_positions must be at least 1')
    if errors:
        raise ConfigurationError("Invalid risk limits", details={'errors': errors})
