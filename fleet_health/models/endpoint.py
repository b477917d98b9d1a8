"""被监控节点与超时策略数据模型"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, Tuple

DEFAULT_TIMEOUT_MS = 10000
TIMEOUT_FLOOR_MS = 5000
TIMEOUT_CEILING_MS = 120000


def utc_now() -> datetime:
    """当前UTC时间（带时区）"""
    return datetime.now(timezone.utc)


class ConnectionType(Enum):
    """连接方式"""
    DIRECT = "direct"
    TUNNEL = "tunnel"


@dataclass
class Endpoint:
    """被监控的虚拟化管理接口

    由外部的节点管理模块创建和修改，监控引擎只读取
    """
    id: str
    host: str
    port: int = 8006
    name: str = ''
    endpoint_type: str = 'proxmox'
    scheme: str = 'https'
    use_tunnel: bool = False
    tunnel_host: Optional[str] = None
    tunnel_port: Optional[int] = None
    verify_tls: bool = True
    active: bool = True
    tenant_id: Optional[str] = None
    timeout_ms: Optional[int] = None

    def __post_init__(self):
        if not self.name:
            self.name = self.id

    @property
    def tunnel_enabled(self) -> bool:
        """配置了隧道地址时优先走隧道"""
        return bool(self.use_tunnel and self.tunnel_host)

    def resolve_target(self) -> Tuple[str, int, ConnectionType]:
        """解析实际连接目标

        Returns:
            (主机, 端口, 连接方式)
        """
        if self.tunnel_enabled:
            return self.tunnel_host, self.tunnel_port or self.port, ConnectionType.TUNNEL
        return self.host, self.port, ConnectionType.DIRECT

    @classmethod
    def from_config(cls, endpoint_id: str, config: Dict[str, Any]) -> 'Endpoint':
        """根据YAML中的节点配置创建实例"""
        return cls(
            id=endpoint_id,
            host=config['host'],
            port=config.get('port', 8006),
            name=config.get('name', endpoint_id),
            endpoint_type=config.get('type', 'proxmox'),
            scheme=config.get('scheme', 'https'),
            use_tunnel=config.get('use_tunnel', False),
            tunnel_host=config.get('tunnel_host'),
            tunnel_port=config.get('tunnel_port'),
            verify_tls=config.get('verify_tls', True),
            active=config.get('active', True),
            tenant_id=config.get('tenant_id'),
            timeout_ms=config.get('timeout_ms'),
        )


@dataclass
class TimeoutPolicy:
    """单个节点的请求超时策略

    current_ms 只能通过显式的"应用推荐值"操作修改，
    recommended_ms 由超时校准器在每次探测后更新
    """
    current_ms: int = DEFAULT_TIMEOUT_MS
    recommended_ms: int = DEFAULT_TIMEOUT_MS
    floor_ms: int = TIMEOUT_FLOOR_MS
    ceiling_ms: int = TIMEOUT_CEILING_MS
    updated_at: Optional[datetime] = None

    def clamp(self, value: float) -> int:
        """将数值限制在 [floor_ms, ceiling_ms] 区间内"""
        return int(max(self.floor_ms, min(self.ceiling_ms, round(value))))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'current_ms': self.current_ms,
            'recommended_ms': self.recommended_ms,
            'floor_ms': self.floor_ms,
            'ceiling_ms': self.ceiling_ms,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TimeoutPolicy':
        updated_at = data.get('updated_at')
        return cls(
            current_ms=data.get('current_ms', DEFAULT_TIMEOUT_MS),
            recommended_ms=data.get('recommended_ms', DEFAULT_TIMEOUT_MS),
            floor_ms=data.get('floor_ms', TIMEOUT_FLOOR_MS),
            ceiling_ms=data.get('ceiling_ms', TIMEOUT_CEILING_MS),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )
