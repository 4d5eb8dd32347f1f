# autotrader/config/__init__.py
from autotrader.config.settings import Settings, load_settings, get_settings

__all__ = ['Settings', 'load_settings', 'get_settings']
