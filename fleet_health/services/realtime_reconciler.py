"""实时同步器：把外部推送的状态更新合并到本地状态存储"""

from dataclasses import replace
from typing import Any, Callable, Dict, Optional

from ..models.health_check import StatusUpdate, HealthState
from ..utils.log_manager import get_logger
from .realtime_bus import BaseRealtimeBus
from .status_store import StatusStore


class RealtimeReconciler:
    """
    实时同步器

    合并规则：状态字段组和超时字段组各自比较时间戳，
    只有严格更新的推送才会被应用，旧的回显被丢弃
    """

    def __init__(self, store: StatusStore):
        self.store = store
        self.applied_count = 0
        self.rejected_count = 0
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.logger = get_logger('service.realtime_reconciler')

    def subscribe(self, bus: BaseRealtimeBus, tenant_id: str) -> None:
        """订阅租户的变更通知"""
        self.unsubscribe()
        self._unsubscribe = bus.subscribe(tenant_id, self.handle_payload)
        self.logger.info(f"已订阅租户 {tenant_id} 的实时更新")

    def unsubscribe(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    async def handle_payload(self, payload: Dict[str, Any]) -> None:
        """总线回调：解析并合并通知，无法解析的通知只记录日志"""
        try:
            update = StatusUpdate.from_payload(payload)
        except (ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"忽略无法解析的实时通知: {e}")
            return
        await self.apply_update(update)

    async def apply_update(self, update: StatusUpdate) -> bool:
        """
        合并一条外部更新

        Args:
            update: 外部推送的部分更新

        Returns:
            bool: 是否有任何字段被应用
        """
        endpoint_id = update.endpoint_id
        if not self.store.has_endpoint(endpoint_id):
            self.logger.debug(f"忽略未知节点 {endpoint_id} 的实时更新")
            return False

        async with self.store.lock(endpoint_id):
            status_applied = self._merge_status(update)
            timeout_applied = self._merge_timeout(update)

        if status_applied or timeout_applied:
            self.applied_count += 1
            return True

        self.rejected_count += 1
        return False

    def _merge_status(self, update: StatusUpdate) -> bool:
        if not update.has_status_fields():
            return False

        status = self.store.get_status(update.endpoint_id)
        incoming_at = update.status_timestamp
        local_at = status.updated_at
        if local_at is not None and incoming_at <= local_at:
            self.logger.debug(
                f"节点 {update.endpoint_id} 的状态更新已过期 "
                f"({incoming_at.isoformat()} <= {local_at.isoformat()})，已丢弃")
            return False

        changes: Dict[str, Any] = {'updated_at': incoming_at}
        state_changed = False
        if update.state is not None and update.state != HealthState.CHECKING:
            state_changed = update.state not in (status.state, status.settled_state)
            if update.state.is_settled:
                changes['settled_state'] = update.state
            # 本地探测进行中时保持 checking，由探测结果最终落定
            if status.state != HealthState.CHECKING:
                changes['state'] = update.state
        if update.success_rate is not None:
            changes['success_rate'] = max(0.0, min(100.0, float(update.success_rate)))
        if update.latency_ms is not None:
            changes['latency_ms'] = update.latency_ms
        if update.last_checked_at is not None:
            changes['last_checked_at'] = update.last_checked_at
        if update.last_error is not None:
            changes['last_error'] = update.last_error or None

        merged = replace(status, **changes)
        self.store.set_status(merged)

        if state_changed:
            self.logger.info(
                f"节点 {update.endpoint_id} 外部状态更新: {status.settled_state.value} -> "
                f"{update.state.value}")
            self.store.invalidate_aggregates()
        return True

    def _merge_timeout(self, update: StatusUpdate) -> bool:
        if not update.has_timeout_fields():
            return False

        policy = self.store.get_policy(update.endpoint_id)
        if policy.updated_at is not None and update.updated_at <= policy.updated_at:
            self.logger.debug(f"节点 {update.endpoint_id} 的超时更新已过期，已丢弃")
            return False

        changes: Dict[str, Any] = {'updated_at': update.updated_at}
        if update.current_timeout_ms is not None:
            changes['current_ms'] = policy.clamp(update.current_timeout_ms)
        if update.recommended_timeout_ms is not None:
            changes['recommended_ms'] = policy.clamp(update.recommended_timeout_ms)
        self.store.set_policy(update.endpoint_id, replace(policy, **changes))
        return True
