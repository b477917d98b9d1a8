"""状态存储模块

保存节点定义、健康状态和超时策略，是调度器与实时同步器共享的唯一可变状态。
每个节点有一把 asyncio.Lock，所有写入方都必须持有该锁。
"""

import asyncio
import json
import os
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Any

from ..models.endpoint import (Endpoint, TimeoutPolicy, DEFAULT_TIMEOUT_MS, TIMEOUT_FLOOR_MS,
                               TIMEOUT_CEILING_MS, utc_now)
from ..models.health_check import EndpointStatus, HealthState
from ..utils.exceptions import StateStoreError, ErrorCode
from ..utils.log_manager import get_logger


class StatusStore:
    """节点状态存储"""

    def __init__(self, state_file: Optional[str] = None,
                 default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
                 floor_ms: int = TIMEOUT_FLOOR_MS, ceiling_ms: int = TIMEOUT_CEILING_MS):
        """
        初始化状态存储

        Args:
            state_file: 状态快照文件，为 None 时不持久化
            default_timeout_ms: 默认请求超时
            floor_ms: 超时下限
            ceiling_ms: 超时上限
        """
        self.state_file = state_file
        self.default_timeout_ms = default_timeout_ms
        self.floor_ms = floor_ms
        self.ceiling_ms = ceiling_ms

        self._endpoints: Dict[str, Endpoint] = {}
        self._statuses: Dict[str, EndpointStatus] = {}
        self._policies: Dict[str, TimeoutPolicy] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._live_stats: Optional[Dict[str, Any]] = None
        self._listeners: List[Callable[[], None]] = []
        self.logger = get_logger('service.status_store')

        if self.state_file:
            self.load()

    # 节点

    def default_policy(self, endpoint: Optional[Endpoint] = None) -> TimeoutPolicy:
        policy = TimeoutPolicy(floor_ms=self.floor_ms, ceiling_ms=self.ceiling_ms)
        current = endpoint.timeout_ms if endpoint and endpoint.timeout_ms else self.default_timeout_ms
        current = policy.clamp(current)
        return replace(policy, current_ms=current, recommended_ms=current)

    def register(self, endpoint: Endpoint) -> None:
        """注册或更新节点定义"""
        is_new = endpoint.id not in self._endpoints
        self._endpoints[endpoint.id] = endpoint
        self._statuses.setdefault(endpoint.id, EndpointStatus(endpoint_id=endpoint.id))
        if endpoint.id not in self._policies:
            self._policies[endpoint.id] = self.default_policy(endpoint)
        if is_new:
            self.logger.info(f"已注册节点: {endpoint.name} ({endpoint.id})")
            self.invalidate_aggregates()

    def deactivate(self, endpoint_id: str) -> None:
        """停用节点：状态重置为 unknown，超时策略恢复默认"""
        endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None:
            return
        if endpoint.active:
            self._endpoints[endpoint_id] = replace(endpoint, active=False)
        self._statuses[endpoint_id] = EndpointStatus(endpoint_id=endpoint_id, updated_at=utc_now())
        self._policies[endpoint_id] = replace(self.default_policy(endpoint), updated_at=utc_now())
        self.logger.info(f"节点 {endpoint_id} 已停用，状态已重置")
        self.invalidate_aggregates()
        self.save()

    def remove(self, endpoint_id: str) -> None:
        self._endpoints.pop(endpoint_id, None)
        self._statuses.pop(endpoint_id, None)
        self._policies.pop(endpoint_id, None)
        self._locks.pop(endpoint_id, None)
        self.invalidate_aggregates()

    def get_endpoint(self, endpoint_id: str) -> Optional[Endpoint]:
        return self._endpoints.get(endpoint_id)

    def has_endpoint(self, endpoint_id: str) -> bool:
        return endpoint_id in self._endpoints

    def all_endpoints(self) -> List[Endpoint]:
        return list(self._endpoints.values())

    def active_endpoints(self) -> List[Endpoint]:
        return [e for e in self._endpoints.values() if e.active]

    def lock(self, endpoint_id: str) -> asyncio.Lock:
        """获取节点的写锁"""
        if endpoint_id not in self._locks:
            self._locks[endpoint_id] = asyncio.Lock()
        return self._locks[endpoint_id]

    # 状态与超时策略

    def get_status(self, endpoint_id: str) -> EndpointStatus:
        status = self._statuses.get(endpoint_id)
        if status is None:
            raise StateStoreError(f"节点 {endpoint_id} 不存在", details={'endpoint_id': endpoint_id})
        return status

    def set_status(self, status: EndpointStatus) -> None:
        previous = self._statuses.get(status.endpoint_id)
        self._statuses[status.endpoint_id] = status
        if previous is None or previous.state != status.state:
            self.invalidate_aggregates()
        if status.state != HealthState.CHECKING:
            self.save()

    def all_statuses(self) -> Dict[str, EndpointStatus]:
        return dict(self._statuses)

    def get_policy(self, endpoint_id: str) -> TimeoutPolicy:
        policy = self._policies.get(endpoint_id)
        if policy is None:
            raise StateStoreError(f"节点 {endpoint_id} 不存在", details={'endpoint_id': endpoint_id})
        return policy

    def set_policy(self, endpoint_id: str, policy: TimeoutPolicy) -> None:
        self._policies[endpoint_id] = policy

    async def apply_recommended_timeout(self, endpoint_id: str,
                                        recommended_ms: Optional[int] = None) -> TimeoutPolicy:
        """
        应用推荐超时：current_ms = recommended_ms

        Args:
            endpoint_id: 节点ID
            recommended_ms: 要应用的值，默认使用当前推荐值

        Returns:
            TimeoutPolicy: 更新后的策略
        """
        async with self.lock(endpoint_id):
            policy = self.get_policy(endpoint_id)
            value = policy.recommended_ms if recommended_ms is None else recommended_ms
            updated = replace(policy, current_ms=policy.clamp(value), updated_at=utc_now())
            self._policies[endpoint_id] = updated
            self.logger.info(
                f"节点 {endpoint_id} 超时已更新: {policy.current_ms}ms -> {updated.current_ms}ms")
            self.save()
            return updated

    def update_bounds(self, default_timeout_ms: int, floor_ms: int, ceiling_ms: int) -> None:
        """热更新超时上下限，已有策略同步调整"""
        self.default_timeout_ms = default_timeout_ms
        self.floor_ms = floor_ms
        self.ceiling_ms = ceiling_ms
        for endpoint_id, policy in self._policies.items():
            bounded = replace(policy, floor_ms=floor_ms, ceiling_ms=ceiling_ms)
            self._policies[endpoint_id] = replace(
                bounded, current_ms=bounded.clamp(policy.current_ms),
                recommended_ms=bounded.clamp(policy.recommended_ms))

    # 聚合统计

    def add_invalidation_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def invalidate_aggregates(self) -> None:
        """丢弃缓存的聚合统计并通知监听者"""
        self._live_stats = None
        for listener in self._listeners:
            try:
                listener()
            except Exception as e:
                self.logger.error(f"聚合失效监听器执行失败: {e}")

    def live_stats(self) -> Dict[str, Any]:
        """节点整体在线情况（带缓存）"""
        if self._live_stats is not None:
            return self._live_stats

        counts = {state.value: 0 for state in HealthState}
        rates = []
        active = self.active_endpoints()
        for endpoint in active:
            status = self._statuses.get(endpoint.id)
            if status is None:
                continue
            counts[status.state.value] += 1
            if status.success_rate is not None:
                rates.append(status.success_rate)

        self._live_stats = {
            'total_endpoints': len(self._endpoints),
            'active_endpoints': len(active),
            'states': counts,
            'avg_success_rate': round(sum(rates) / len(rates), 1) if rates else None,
            'computed_at': utc_now().isoformat(),
        }
        return self._live_stats

    # 持久化

    def save(self) -> None:
        """保存状态快照"""
        if not self.state_file:
            return

        data = {
            'statuses': {eid: status.to_dict() for eid, status in self._statuses.items()},
            'policies': {eid: policy.to_dict() for eid, policy in self._policies.items()},
            'saved_at': utc_now().isoformat(),
        }
        try:
            Path(self.state_file).parent.mkdir(parents=True, exist_ok=True)
            tmp_file = f'{self.state_file}.tmp'
            with open(tmp_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_file, self.state_file)
        except OSError as e:
            self.logger.error(f"保存状态快照失败: {e}")

    def load(self) -> None:
        """
        加载状态快照，checking 状态恢复为 unknown

        Raises:
            StateStoreError: 快照文件损坏
        """
        if not self.state_file or not os.path.exists(self.state_file):
            return

        try:
            with open(self.state_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            statuses = {eid: EndpointStatus.from_dict(item)
                        for eid, item in data.get('statuses', {}).items()}
            policies = {eid: TimeoutPolicy.from_dict(item)
                        for eid, item in data.get('policies', {}).items()}
        except (OSError, ValueError, KeyError) as e:
            raise StateStoreError(f"加载状态快照失败: {e}",
                                  ErrorCode.STATE_PERSISTENCE_ERROR, cause=e)

        for endpoint_id, status in statuses.items():
            if status.state == HealthState.CHECKING:
                status = replace(status, state=HealthState.UNKNOWN)
            self._statuses[endpoint_id] = status
        self._policies.update(policies)
        self.invalidate_aggregates()
        self.logger.info(f"从 {self.state_file} 加载了 {len(statuses)} 个节点的状态")
