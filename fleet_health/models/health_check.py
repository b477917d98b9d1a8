"""探测结果、节点状态与告警相关的数据模型"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional

from .endpoint import ConnectionType, utc_now


def parse_timestamp(value: Any) -> Optional[datetime]:
    """解析ISO格式时间戳，无时区信息时按UTC处理"""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ErrorStage(Enum):
    """探测失败所处阶段"""
    NONE = "none"
    DNS = "dns"
    TCP = "tcp"
    TLS = "tls"
    API = "api"


class HealthState(Enum):
    """节点健康状态"""
    UNKNOWN = "unknown"
    CHECKING = "checking"
    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"

    @property
    def is_settled(self) -> bool:
        """是否为探测得出的确定状态"""
        return self in (HealthState.ONLINE, HealthState.DEGRADED, HealthState.OFFLINE)


@dataclass
class ProbeTiming:
    """探测耗时分解（毫秒）"""
    dns_ms: int = 0
    tcp_ms: int = 0
    tls_ms: int = 0
    api_ms: int = 0
    total_ms: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'dns_ms': self.dns_ms,
            'tcp_ms': self.tcp_ms,
            'tls_ms': self.tls_ms,
            'api_ms': self.api_ms,
            'total_ms': self.total_ms,
        }


@dataclass
class ProbeResult:
    """单次探测结果，只在内存中短暂存在"""
    endpoint_id: str
    success: bool
    timing: ProbeTiming = field(default_factory=ProbeTiming)
    resolved_address: str = ''
    connection_type: ConnectionType = ConnectionType.DIRECT
    error_stage: ErrorStage = ErrorStage.NONE
    error_message: Optional[str] = None
    tunnel_info: Optional[Dict[str, Any]] = None
    remote_version: Optional[str] = None
    node_count: Optional[int] = None
    timeout_used_ms: int = 0
    retry_count: int = 0
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def latency_ms(self) -> int:
        return self.timing.total_ms

    @classmethod
    def failure(cls, endpoint_id: str, stage: ErrorStage, message: str,
                **kwargs) -> 'ProbeResult':
        """构造一个失败结果"""
        return cls(endpoint_id=endpoint_id, success=False, error_stage=stage,
                   error_message=message, **kwargs)

    def to_response(self, recommended_timeout_ms: int,
                    current_timeout_ms: int) -> Dict[str, Any]:
        """生成对外返回的探测响应"""
        response = {
            'endpoint_id': self.endpoint_id,
            'success': self.success,
            'timing': self.timing.to_dict(),
            'resolved_address': self.resolved_address,
            'connection_type': self.connection_type.value,
            'recommended_timeout_ms': recommended_timeout_ms,
            'current_timeout_ms': current_timeout_ms,
        }
        if self.tunnel_info:
            response['tunnel_info'] = dict(self.tunnel_info)
        if self.remote_version is not None:
            response['remote_version'] = self.remote_version
        if self.node_count is not None:
            response['node_count'] = self.node_count
        if not self.success:
            response['error'] = self.error_message
            response['error_stage'] = self.error_stage.value
        return response


@dataclass
class ProbeRecord:
    """持久化的探测记录（只追加，不修改）"""
    endpoint_id: str
    success: bool
    response_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    used_tunnel: bool = False
    timeout_used_ms: int = 0
    retry_count: int = 0
    timestamp: datetime = field(default_factory=utc_now)

    @classmethod
    def from_result(cls, result: ProbeResult) -> 'ProbeRecord':
        return cls(
            endpoint_id=result.endpoint_id,
            success=result.success,
            response_time_ms=result.timing.total_ms if result.success else None,
            error_message=result.error_message,
            used_tunnel=result.connection_type == ConnectionType.TUNNEL,
            timeout_used_ms=result.timeout_used_ms,
            retry_count=result.retry_count,
            timestamp=result.timestamp,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'endpoint_id': self.endpoint_id,
            'success': self.success,
            'response_time_ms': self.response_time_ms,
            'error_message': self.error_message,
            'used_tunnel': self.used_tunnel,
            'timeout_used_ms': self.timeout_used_ms,
            'retry_count': self.retry_count,
            'timestamp': self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProbeRecord':
        return cls(
            endpoint_id=data['endpoint_id'],
            success=bool(data['success']),
            response_time_ms=data.get('response_time_ms'),
            error_message=data.get('error_message'),
            used_tunnel=data.get('used_tunnel', False),
            timeout_used_ms=data.get('timeout_used_ms', 0),
            retry_count=data.get('retry_count', 0),
            timestamp=parse_timestamp(data['timestamp']),
        )


@dataclass
class EndpointStatus:
    """节点健康状态记录

    settled_state 保存最近一次确定的状态（不含 checking），
    状态迁移事件以它作为旧状态
    """
    endpoint_id: str
    state: HealthState = HealthState.UNKNOWN
    success_rate: Optional[float] = None
    latency_ms: Optional[int] = None
    last_checked_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_stage: Optional[ErrorStage] = None
    settled_state: HealthState = HealthState.UNKNOWN
    checking_since: Optional[datetime] = None
    checking_cycle: Optional[int] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'endpoint_id': self.endpoint_id,
            'state': self.state.value,
            'success_rate': self.success_rate,
            'latency_ms': self.latency_ms,
            'last_checked_at': _iso(self.last_checked_at),
            'last_error': self.last_error,
            'last_error_stage': self.last_error_stage.value if self.last_error_stage else None,
            'settled_state': self.settled_state.value,
            'updated_at': _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EndpointStatus':
        stage = data.get('last_error_stage')
        return cls(
            endpoint_id=data['endpoint_id'],
            state=HealthState(data.get('state', 'unknown')),
            success_rate=data.get('success_rate'),
            latency_ms=data.get('latency_ms'),
            last_checked_at=parse_timestamp(data.get('last_checked_at')),
            last_error=data.get('last_error'),
            last_error_stage=ErrorStage(stage) if stage else None,
            settled_state=HealthState(data.get('settled_state', 'unknown')),
            updated_at=parse_timestamp(data.get('updated_at')),
        )


@dataclass
class StateTransition:
    """状态迁移事件，由状态机产生，交给告警滞回引擎处理"""
    endpoint_id: str
    old_state: HealthState
    new_state: HealthState
    success_rate: float
    latency_ms: Optional[int] = None
    error_message: Optional[str] = None
    endpoint_name: str = ''
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def changed(self) -> bool:
        return self.old_state != self.new_state


@dataclass
class StatusUpdate:
    """外部推送的部分状态更新"""
    endpoint_id: str
    updated_at: datetime
    state: Optional[HealthState] = None
    previous_state: Optional[HealthState] = None
    success_rate: Optional[float] = None
    latency_ms: Optional[int] = None
    last_checked_at: Optional[datetime] = None
    last_error: Optional[str] = None
    current_timeout_ms: Optional[int] = None
    recommended_timeout_ms: Optional[int] = None

    @property
    def status_timestamp(self) -> datetime:
        """状态字段组使用的时间戳"""
        return self.last_checked_at or self.updated_at

    def has_status_fields(self) -> bool:
        return any(value is not None for value in (
            self.state, self.success_rate, self.latency_ms,
            self.last_checked_at, self.last_error))

    def has_timeout_fields(self) -> bool:
        return self.current_timeout_ms is not None or self.recommended_timeout_ms is not None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'StatusUpdate':
        """解析行变更通知

        支持 {'new': {...}, 'old': {...}} 形式的变更负载，也支持直接传入行数据
        """
        if not isinstance(payload, dict):
            raise ValueError("状态更新负载必须是字典")
        record = payload.get('new') if 'new' in payload else payload
        if not isinstance(record, dict) or not record:
            raise ValueError("变更通知不包含新行数据")
        old = payload.get('old')
        if not isinstance(old, dict):
            old = {}

        endpoint_id = record.get('endpoint_id') or record.get('id')
        if not endpoint_id:
            raise ValueError("状态更新缺少节点ID")

        stamp = parse_timestamp(record.get('updated_at')) or parse_timestamp(
            record.get('last_health_check_at'))
        if stamp is None:
            raise ValueError(f"节点 {endpoint_id} 的状态更新缺少时间戳")

        state = record.get('connection_status', record.get('state'))
        previous = old.get('connection_status', old.get('state'))
        recommended = record.get('recommended_timeout_ms', record.get('learned_timeout_ms'))
        latency = record.get('avg_response_time_ms', record.get('latency_ms'))

        return cls(
            endpoint_id=str(endpoint_id),
            updated_at=stamp,
            state=HealthState(state) if state else None,
            previous_state=HealthState(previous) if previous else None,
            success_rate=record.get('success_rate'),
            latency_ms=latency,
            last_checked_at=parse_timestamp(record.get('last_health_check_at')),
            last_error=record.get('health_check_error', record.get('last_error')),
            current_timeout_ms=record.get('connection_timeout', record.get('current_timeout_ms')),
            recommended_timeout_ms=recommended,
        )


class AlertKind(Enum):
    """告警类型，与 endpoint_id 一起构成去重键"""
    OFFLINE = "offline"
    DEGRADED = "degraded"


class AlertEventType(Enum):
    """告警事件类型"""
    OFFLINE = "offline"
    DEGRADED = "degraded"
    RECOVERED = "recovered"


@dataclass
class AlertEpisode:
    """告警周期：某节点某类告警持续生效的一段时间"""
    endpoint_id: str
    kind: AlertKind
    active: bool = True
    opened_at: datetime = field(default_factory=utc_now)
    threshold_at_trigger: float = 0.0
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'endpoint_id': self.endpoint_id,
            'kind': self.kind.value,
            'active': self.active,
            'opened_at': self.opened_at.isoformat(),
            'threshold_at_trigger': self.threshold_at_trigger,
            'closed_at': _iso(self.closed_at),
            'close_reason': self.close_reason,
        }


@dataclass
class AlertEvent:
    """告警通知事件"""
    endpoint_id: str
    event_type: AlertEventType
    success_rate: float
    threshold: float
    endpoint_name: str = ''
    latency_ms: Optional[int] = None
    message: str = ''
    error_message: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return {
            AlertEventType.OFFLINE: '节点离线',
            AlertEventType.DEGRADED: '节点性能下降',
            AlertEventType.RECOVERED: '节点已恢复',
        }[self.event_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'endpoint_id': self.endpoint_id,
            'endpoint_name': self.endpoint_name,
            'event_type': self.event_type.value,
            'title': self.title,
            'message': self.message,
            'success_rate': self.success_rate,
            'threshold': self.threshold,
            'latency_ms': self.latency_ms,
            'error_message': self.error_message,
            'timestamp': self.timestamp.isoformat(),
            'metadata': self.metadata,
        }
