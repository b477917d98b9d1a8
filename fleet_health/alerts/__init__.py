"""告警模块"""

from .base import BaseAlerter
from .http_alerter import HTTPAlerter
from .audit_alerter import AuditLogAlerter
from .hysteresis import AlertHysteresisEngine
from .manager import AlertManager, create_alerter

__all__ = ['BaseAlerter', 'HTTPAlerter', 'AuditLogAlerter', 'AlertHysteresisEngine',
           'AlertManager', 'create_alerter']
