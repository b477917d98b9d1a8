"""实时消息总线"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List

from ..utils.log_manager import get_logger

UpdateHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class BaseRealtimeBus(ABC):
    """实时总线抽象基类，按租户投递行变更通知"""

    @abstractmethod
    def subscribe(self, tenant_id: str, on_update: UpdateHandler) -> Callable[[], None]:
        """
        订阅租户的变更通知

        Args:
            tenant_id: 租户ID
            on_update: 收到通知时调用的协程函数

        Returns:
            取消订阅的函数
        """
        pass


class InMemoryRealtimeBus(BaseRealtimeBus):
    """进程内实时总线"""

    def __init__(self):
        self._subscribers: Dict[str, List[UpdateHandler]] = defaultdict(list)
        self.logger = get_logger('service.realtime_bus')

    def subscribe(self, tenant_id: str, on_update: UpdateHandler) -> Callable[[], None]:
        self._subscribers[tenant_id].append(on_update)

        def unsubscribe():
            handlers = self._subscribers.get(tenant_id, [])
            if on_update in handlers:
                handlers.remove(on_update)

        return unsubscribe

    def subscriber_count(self, tenant_id: str) -> int:
        return len(self._subscribers.get(tenant_id, []))

    async def publish(self, tenant_id: str, payload: Dict[str, Any]) -> int:
        """
        向租户的所有订阅者投递通知

        Returns:
            int: 成功处理的订阅者数量
        """
        handlers = list(self._subscribers.get(tenant_id, []))
        if not handlers:
            return 0

        results = await asyncio.gather(*(handler(payload) for handler in handlers),
                                       return_exceptions=True)
        delivered = 0
        for result in results:
            if isinstance(result, Exception):
                self.logger.error(f"租户 {tenant_id} 的订阅者处理通知失败: {result}")
            else:
                delivered += 1
        return delivered
