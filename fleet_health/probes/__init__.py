"""连通性探测模块"""

from .base import BaseProbe
from .factory import ProbeFactory, probe_factory, register_probe
from .api_probe import HypervisorProbe, classify_error, apportion_timing

__all__ = ['BaseProbe', 'ProbeFactory', 'probe_factory', 'register_probe',
           'HypervisorProbe', 'classify_error', 'apportion_timing']
