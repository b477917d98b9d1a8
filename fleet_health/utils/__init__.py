"""工具模块"""

from .exceptions import (FleetMonitorError, ConfigError, ProbeError, CredentialError,
                         AlertError)
from .log_manager import LogManager, LogLevel, get_logger, configure_logging, log_manager

__all__ = [
    'FleetMonitorError', 'ConfigError', 'ProbeError', 'CredentialError', 'AlertError',
    'LogManager', 'LogLevel', 'get_logger', 'configure_logging', 'log_manager'
]
