"""审计日志告警器：把告警写入 JSON Lines 审计文件"""

import asyncio
import json
from pathlib import Path
from typing import Dict, Any, Optional

from .base import BaseAlerter
from ..models.health_check import AlertEvent, AlertEventType
from ..utils.exceptions import AlertConfigError, AlertSendError
from ..utils.log_manager import get_logger


class AuditLogAlerter(BaseAlerter):
    """审计日志告警器"""

    RESOURCE_TYPE = 'hypervisor_endpoint'

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)
        self.logger = get_logger(f'alerter.audit.{self.name}')
        self.path = config.get('path', '')
        self.tenant_id: Optional[str] = config.get('tenant_id')
        self.actor = config.get('actor', 'fleet-health')
        self._write_lock = asyncio.Lock()

        if not self.validate_config():
            raise AlertConfigError(f"审计告警器配置无效: {name}", alert_name=name)

    def validate_config(self) -> bool:
        if not self.path:
            self.logger.error(f"审计告警器 {self.name} 缺少 path 配置")
            return False
        return True

    def build_entry(self, event: AlertEvent) -> Dict[str, Any]:
        """构造审计日志条目"""
        recovered = event.event_type == AlertEventType.RECOVERED
        return {
            'user_id': self.actor,
            'tenant_id': self.tenant_id,
            'action_type': 'server_recovered' if recovered else 'server_alert',
            'resource_type': self.RESOURCE_TYPE,
            'resource_id': event.endpoint_id,
            'resource_name': event.endpoint_name,
            'details': {
                'alert_type': event.event_type.value,
                'success_rate': event.success_rate,
                'threshold': event.threshold,
                'latency_ms': event.latency_ms,
                'message': event.message,
                'timestamp': event.timestamp.isoformat(),
            },
            'created_at': event.timestamp.isoformat(),
        }

    def _append(self, line: str) -> None:
        path = Path(self.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'a', encoding='utf-8') as f:
            f.write(line + '\n')

    async def send_alert(self, event: AlertEvent) -> bool:
        """追加一条审计记录"""
        line = json.dumps(self.build_entry(event), ensure_ascii=False)
        try:
            async with self._write_lock:
                await asyncio.get_running_loop().run_in_executor(None, self._append, line)
        except OSError as e:
            raise AlertSendError(f"写入审计日志失败: {e}", alert_name=self.name, cause=e)

        self.logger.debug(f"审计日志已记录: {event.endpoint_id} {event.event_type.value}")
        return True
