"""探测器基类"""

from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

from ..models.endpoint import Endpoint
from ..models.health_check import ProbeResult
from ..utils.log_manager import get_logger


class BaseProbe(ABC):
    """连通性探测器抽象基类"""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        初始化探测器

        Args:
            config: 探测器配置参数
        """
        self.config = config or {}
        self.probe_type = self.__class__.__name__.replace('Probe', '').lower()
        self.logger = get_logger(f'probe.{self.probe_type}')

    @abstractmethod
    async def probe(self, endpoint: Endpoint, credential: str, timeout_ms: int) -> ProbeResult:
        """
        对节点执行一次连通性探测

        实现必须在 timeout_ms 内返回，任何失败都以失败结果返回而不是抛出异常

        Args:
            endpoint: 被探测的节点
            credential: 已解析的访问凭据
            timeout_ms: 硬性截止时间（毫秒）

        Returns:
            ProbeResult: 探测结果
        """
        pass
