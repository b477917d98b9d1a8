"""告警管理器"""

import asyncio
from functools import partial
from typing import Dict, List, Any, Optional, Set

from .base import BaseAlerter
from .http_alerter import HTTPAlerter
from .audit_alerter import AuditLogAlerter
from ..models.health_check import AlertEvent
from ..utils.exceptions import AlertConfigError
from ..utils.log_manager import get_logger

ALERTER_TYPES = {
    'http': HTTPAlerter,
    'audit': AuditLogAlerter,
}


def create_alerter(config: Dict[str, Any]) -> BaseAlerter:
    """
    根据配置创建告警器

    Raises:
        AlertConfigError: 类型不受支持或配置无效
    """
    alerter_type = config.get('type')
    alerter_class = ALERTER_TYPES.get(alerter_type)
    if alerter_class is None:
        raise AlertConfigError(f"不支持的告警器类型: {alerter_type}", alert_name=config.get('name'))
    return alerter_class(config['name'], config)


class AlertManager:
    """
    告警管理器，负责把告警事件并发分发到所有告警器

    告警器失败只记录日志，不向调用方传播。同一节点的告警按分发顺序送达
    """

    def __init__(self, alert_configs: Optional[List[Dict[str, Any]]] = None):
        self.alerters: List[BaseAlerter] = []
        self.logger = get_logger('alert.manager')
        self._pending: Set[asyncio.Task] = set()
        self._tails: Dict[str, asyncio.Task] = {}
        self.sent_count = 0
        self.failed_count = 0

        for config in alert_configs or []:
            self.add_alerter(create_alerter(config))

    def add_alerter(self, alerter: BaseAlerter):
        if not isinstance(alerter, BaseAlerter):
            raise AlertConfigError(f"告警器必须继承自BaseAlerter: {type(alerter)}")

        self.alerters.append(alerter)
        self.logger.info(f"已添加告警器: {alerter.name} ({alerter.alerter_type})")

    def remove_alerter(self, name: str) -> bool:
        for i, alerter in enumerate(self.alerters):
            if alerter.name == name:
                self.alerters.pop(i)
                self.logger.info(f"已移除告警器: {name}")
                return True
        return False

    def reload(self, alert_configs: List[Dict[str, Any]]) -> None:
        """按新配置重建告警器列表"""
        alerters = [create_alerter(config) for config in alert_configs]
        self.alerters = alerters
        self.logger.info(f"告警器已重新加载，共 {len(alerters)} 个")

    def dispatch(self, event: AlertEvent) -> None:
        """后台发送告警，不等待结果

        同一节点的告警排在该节点上一条告警之后送达，不同节点之间互不等待
        """
        previous = self._tails.get(event.endpoint_id)
        task = asyncio.create_task(self._send_after(previous, event))
        self._tails[event.endpoint_id] = task
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        task.add_done_callback(partial(self._release_tail, event.endpoint_id))

    async def _send_after(self, previous: Optional[asyncio.Task], event: AlertEvent):
        if previous is not None and not previous.done():
            # asyncio.wait 不会把本任务的取消传递给前一条告警
            await asyncio.wait([previous])
        return await self.send_alert(event)

    def _release_tail(self, endpoint_id: str, task: asyncio.Task):
        if self._tails.get(endpoint_id) is task:
            del self._tails[endpoint_id]

    async def send_alert(self, event: AlertEvent) -> Dict[str, bool]:
        """
        并发发送告警到所有告警器

        Args:
            event: 告警事件

        Returns:
            Dict[str, bool]: 每个告警器的发送结果
        """
        if not self.alerters:
            self.logger.warning("没有配置告警器，跳过告警发送")
            return {}

        results = await asyncio.gather(
            *(self._send_to_alerter(alerter, event) for alerter in self.alerters))
        outcome = dict(results)
        self._log_send_results(outcome, event)
        return outcome

    async def _send_to_alerter(self, alerter: BaseAlerter, event: AlertEvent):
        try:
            return alerter.name, bool(await alerter.send_alert(event))
        except Exception as e:
            self.logger.error(f"告警器 {alerter.name} 发送失败: {e}")
            return alerter.name, False

    def _log_send_results(self, outcome: Dict[str, bool], event: AlertEvent):
        succeeded = [name for name, ok in outcome.items() if ok]
        failed = [name for name, ok in outcome.items() if not ok]
        self.sent_count += len(succeeded)
        self.failed_count += len(failed)

        if succeeded:
            self.logger.info(
                f"告警发送成功 {len(succeeded)}/{len(outcome)} 个告警器 "
                f"(节点: {event.endpoint_name}, 类型: {event.event_type.value})")
        if failed:
            self.logger.warning(
                f"以下告警器发送失败: {', '.join(failed)} (节点: {event.endpoint_name})")

    async def drain(self) -> None:
        """等待所有后台发送任务完成"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_alerter_names(self) -> List[str]:
        return [alerter.name for alerter in self.alerters]

    def get_stats(self) -> Dict[str, Any]:
        return {
            'alerters': self.get_alerter_names(),
            'sent_count': self.sent_count,
            'failed_count': self.failed_count,
            'pending_count': self.pending_count,
        }
