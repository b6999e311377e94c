from .config_loader import Config, config
from .trading_config import LiveSettings, TradingConfig, load_live_settings, load_trading_config

__all__ = [
    'Config',
    'config',
    'LiveSettings',
    'TradingConfig',
    'load_live_settings',
    'load_trading_config',
]
