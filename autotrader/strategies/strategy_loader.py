# autotrader/strategies/strategy_loader.py - Strategy configuration loader
import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from autotrader.strategies import STRATEGY_REGISTRY
from autotrader.strategies.base import Strategy
from autotrader.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class StrategyLoader:
    """Load and instantiate strategies from configuration.

    Each top-level entry names a strategy instance. ``type`` selects the class
    from the registry and defaults to the entry name, so the same class can be
    configured more than once under different names::

        ma_fast:
          type: moving_average
          fast_period: 3
          slow_period: 10
        combinations:
          default: [ma_fast]
    """

    def __init__(self, config_path: str = None, config: Dict = None):
        """Initialize strategy loader.

        Args:
            config_path: Path to strategies.yaml config file
            config: Already-parsed configuration, takes precedence over the file
        """
        self.config_path = config_path or self._get_default_config_path()
        self.config = config if config is not None else self._load_config()

    def _get_default_config_path(self) -> str:
        project_root = Path(__file__).parent.parent.parent
        return str(project_root / "config" / "strategies.yaml")

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
                f"Invalid strategy config: {self.config_path}",
                details={'path': self.config_path, 'error': str(e)},
            ) from e

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigurationError(
                f"Strategy config must be a mapping: {self.config_path}",
                details={'path': self.config_path},
            )
        logger.info(f"Loaded strategy config from {self.config_path}")
        return config

    def _entries(self) -> Dict[str, Dict]:
        return {
            name: entry for name, entry in self.config.items()
            if name != 'combinations' and isinstance(entry, dict)
        }

    def load_strategy(self, strategy_name: str) -> Optional[Strategy]:
        """Load a single strategy by name.

        Args:
            strategy_name: Entry name in the config (e.g., 'moving_average')

        Returns:
            Strategy instance or None if not found/disabled

        Raises:
            ConfigurationError: If the entry's parameters are invalid
        """
        entries = self._entries()
        if strategy_name not in entries:
            logger.error(f"Strategy config not found: {strategy_name}")
            return None

        strategy_config = dict(entries[strategy_name])
        if not strategy_config.get('enabled', True):
            logger.info(f"Strategy disabled: {strategy_name}")
            return None

        type_name = strategy_config.get('type', strategy_name)
        strategy_class = STRATEGY_REGISTRY.get(type_name)
        if not strategy_class:
            logger.error(f"Strategy class not found: {type_name}")
            return None

        strategy_config.setdefault('id', strategy_name)
        try:
            strategy = strategy_class(config=strategy_config)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Invalid parameters for strategy {strategy_name}: {e}",
                details={'strategy': strategy_name, 'type': type_name},
            ) from e

        logger.info(f"Loaded strategy: {strategy_name} ({type_name})")
        return strategy

    def load_strategies(self, strategy_names: List[str] = None) -> List[Strategy]:
        """Load multiple strategies.

        Args:
            strategy_names: List of strategy names. If None, load all enabled strategies.

        Returns:
            List of strategy instances, in the order requested
        """
        if strategy_names is None:
            strategy_names = self.list_enabled_strategies()

        strategies = []
        for name in strategy_names:
            strategy = self.load_strategy(name)
            if strategy:
                strategies.append(strategy)

        logger.info(f"Loaded {len(strategies)} strategies")
        return strategies

    def load_combination(self, combination_name: str) -> List[Strategy]:
        """Load a predefined strategy combination."""
        combinations = self.config.get('combinations', {})

        if combination_name not in combinations:
            logger.error(f"Combination not found: {combination_name}")
            return []

        strategy_names = combinations[combination_name]
        logger.info(f"Loading combination '{combination_name}': {strategy_names}")
        return self.load_strategies(strategy_names)

    def get_strategy_config(self, strategy_name: str) -> Dict:
        return self._entries().get(strategy_name, {})

    def list_available_strategies(self) -> List[str]:
        """List all registered strategy types."""
        return list(STRATEGY_REGISTRY.keys())

    def list_enabled_strategies(self) -> List[str]:
        """List enabled strategy names from config."""
        return [
            name for name, entry in self._entries().items()
            if entry.get('enabled', True)
            and entry.get('type', name) in STRATEGY_REGISTRY
        ]

    def list_combinations(self) -> List[str]:
        return list(self.config.get('combinations', {}).keys())
