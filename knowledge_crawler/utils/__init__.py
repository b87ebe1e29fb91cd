"""
Utility modules for the knowledge crawler.
"""

from .config import Config, ConfigManager, ConfigError, load_config
from .logger import setup_logging, get_crawler_logger

__all__ = ['Config', 'ConfigManager', 'ConfigError', 'load_config',
           'setup_logging', 'get_crawler_logger']
