"""数据模型模块"""

from .endpoint import Endpoint, TimeoutPolicy, ConnectionType, utc_now
from .health_check import (ErrorStage, HealthState, ProbeTiming, ProbeResult, ProbeRecord,
                           EndpointStatus, StateTransition, StatusUpdate, AlertKind,
                           AlertEventType, AlertEpisode, AlertEvent, parse_timestamp)

__all__ = ['Endpoint', 'TimeoutPolicy', 'ConnectionType', 'utc_now', 'ErrorStage',
           'HealthState', 'ProbeTiming', 'ProbeResult', 'ProbeRecord', 'EndpointStatus',
           'StateTransition', 'StatusUpdate', 'AlertKind', 'AlertEventType',
           'AlertEpisode', 'AlertEvent', 'parse_timestamp']
