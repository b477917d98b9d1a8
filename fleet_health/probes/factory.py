"""探测器工厂"""

from typing import Dict, Type, Any, Optional, List

from .base import BaseProbe
from ..utils.exceptions import ProbeError, ErrorCode


class ProbeFactory:
    """探测器工厂类，按节点类型创建探测器"""

    def __init__(self):
        self._probes: Dict[str, Type[BaseProbe]] = {}

    def register_probe(self, endpoint_type: str, probe_class: Type[BaseProbe]):
        """
        注册探测器类

        Args:
            endpoint_type: 节点类型名称
            probe_class: 探测器类

        Raises:
            ProbeError: 注册失败
        """
        if not issubclass(probe_class, BaseProbe):
            raise ProbeError(f"探测器类 {probe_class.__name__} 必须继承自 BaseProbe",
                             ErrorCode.PROBE_ERROR)

        if endpoint_type in self._probes:
            raise ProbeError(f"节点类型 '{endpoint_type}' 已经注册了探测器", ErrorCode.PROBE_ERROR)

        self._probes[endpoint_type] = probe_class

    def create_probe(self, endpoint_type: str,
                     config: Optional[Dict[str, Any]] = None) -> BaseProbe:
        """
        创建探测器实例

        Args:
            endpoint_type: 节点类型
            config: 探测器配置

        Returns:
            BaseProbe: 探测器实例

        Raises:
            ProbeError: 类型不受支持
        """
        if endpoint_type not in self._probes:
            raise ProbeError(f"不支持的节点类型: '{endpoint_type}'", ErrorCode.PROBE_ERROR)

        return self._probes[endpoint_type](config)

    def get_supported_types(self) -> List[str]:
        return list(self._probes.keys())

    def is_type_supported(self, endpoint_type: str) -> bool:
        return endpoint_type in self._probes


# 全局工厂实例
probe_factory = ProbeFactory()


def register_probe(endpoint_type: str):
    """
    装饰器：注册探测器类

    Args:
        endpoint_type: 节点类型名称
    """
    def decorator(probe_class: Type[BaseProbe]):
        probe_factory.register_probe(endpoint_type, probe_class)
        return probe_class

    return decorator
