"""节点状态机：把探测结果序列转换为健康状态"""

from collections import deque
from dataclasses import replace
from typing import Dict, Deque, Iterable, Optional, Tuple

from ..models.endpoint import utc_now
from ..models.health_check import (EndpointStatus, HealthState, ProbeResult, StateTransition)
from ..utils.log_manager import get_logger


class RollingSuccessRate:
    """最近 N 次探测结果的滑动窗口成功率

    窗口未满时用 prior 次虚拟成功填补空位，虚拟样本随真实样本填满窗口逐步退出，
    新节点的一次偶发失败不会把成功率直接拉到 0
    """

    def __init__(self, window: int = 20, prior: int = 3):
        self.window = window
        self.prior = prior
        self._outcomes: Deque[bool] = deque(maxlen=window)

    def add(self, success: bool) -> float:
        self._outcomes.append(bool(success))
        return self.rate

    def resize(self, window: int) -> None:
        self.window = window
        self._outcomes = deque(self._outcomes, maxlen=window)

    @property
    def rate(self) -> float:
        phantom = max(0, min(self.prior, self.window - len(self._outcomes)))
        total = len(self._outcomes) + phantom
        if not total:
            return 100.0
        return round((sum(self._outcomes) + phantom) * 100.0 / total, 1)

    def __len__(self) -> int:
        return len(self._outcomes)


class StatusStateMachine:
    """
    节点健康状态机

    unknown -> checking -> online / degraded / offline，
    调度层异常时从 checking 回退到 unknown
    """

    def __init__(self, degraded_threshold: float = 80.0, latency_threshold_ms: int = 500,
                 window: int = 20):
        self.degraded_threshold = degraded_threshold
        self.latency_threshold_ms = latency_threshold_ms
        self.window = window
        self._rates: Dict[str, RollingSuccessRate] = {}
        self.logger = get_logger('service.status_machine')

    def update_thresholds(self, degraded_threshold: Optional[float] = None,
                          latency_threshold_ms: Optional[int] = None,
                          window: Optional[int] = None) -> None:
        """热更新阈值"""
        if degraded_threshold is not None:
            self.degraded_threshold = degraded_threshold
        if latency_threshold_ms is not None:
            self.latency_threshold_ms = latency_threshold_ms
        if window is not None and window != self.window:
            self.window = window
            for rate in self._rates.values():
                rate.resize(window)

    def _rate_for(self, endpoint_id: str) -> RollingSuccessRate:
        if endpoint_id not in self._rates:
            self._rates[endpoint_id] = RollingSuccessRate(self.window)
        return self._rates[endpoint_id]

    def seed(self, endpoint_id: str, outcomes: Iterable[bool]) -> float:
        """用历史探测结果（从旧到新）初始化成功率窗口"""
        rate = self._rate_for(endpoint_id)
        for outcome in outcomes:
            rate.add(outcome)
        return rate.rate

    def success_rate(self, endpoint_id: str) -> float:
        return self._rate_for(endpoint_id).rate

    def reset(self, endpoint_id: str) -> None:
        self._rates.pop(endpoint_id, None)

    @staticmethod
    def mark_checking(status: EndpointStatus, cycle: Optional[int] = None) -> EndpointStatus:
        """探测下发时立即进入 checking"""
        now = utc_now()
        return replace(status, state=HealthState.CHECKING, checking_since=now,
                       checking_cycle=cycle, updated_at=now)

    @staticmethod
    def rollback(status: EndpointStatus) -> EndpointStatus:
        """探测未能返回结果时回退到 unknown，保留最近一次确定状态"""
        return replace(status, state=HealthState.UNKNOWN,
                       checking_since=None, checking_cycle=None, updated_at=utc_now())

    def classify(self, success: bool, success_rate: float, latency_ms: int) -> HealthState:
        if not success:
            return HealthState.OFFLINE
        if success_rate >= self.degraded_threshold and latency_ms < self.latency_threshold_ms:
            return HealthState.ONLINE
        return HealthState.DEGRADED

    def record_result(self, status: EndpointStatus, result: ProbeResult,
                      success_rate: Optional[float] = None
                      ) -> Tuple[EndpointStatus, StateTransition]:
        """
        根据探测结果计算新状态

        Args:
            status: 当前状态记录
            result: 探测结果
            success_rate: 外部提供的成功率，默认使用内部滑动窗口

        Returns:
            (新状态记录, 状态迁移事件)，迁移事件的旧状态取最近一次确定状态
        """
        window_rate = self._rate_for(status.endpoint_id).add(result.success)
        rate = window_rate if success_rate is None else max(0.0, min(100.0, success_rate))
        new_state = self.classify(result.success, rate, result.latency_ms)
        now = utc_now()

        new_status = replace(
            status,
            state=new_state,
            settled_state=new_state,
            success_rate=rate,
            latency_ms=result.latency_ms if result.success else status.latency_ms,
            last_checked_at=result.timestamp,
            last_error=None if result.success else result.error_message,
            last_error_stage=None if result.success else result.error_stage,
            checking_since=None,
            checking_cycle=None,
            updated_at=now,
        )

        transition = StateTransition(
            endpoint_id=status.endpoint_id,
            old_state=status.settled_state,
            new_state=new_state,
            success_rate=rate,
            latency_ms=result.latency_ms if result.success else None,
            error_message=result.error_message,
            timestamp=now,
        )

        if transition.changed:
            self.logger.info(
                f"节点 {status.endpoint_id} 状态变化: {transition.old_state.value} -> "
                f"{new_state.value}（成功率 {rate}%）")

        return new_status, transition
