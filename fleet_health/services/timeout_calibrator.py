"""超时校准器：根据探测结果推导推荐的请求超时"""

import math
from dataclasses import replace
from typing import Optional, Sequence

from ..models.endpoint import TimeoutPolicy, utc_now
from ..models.health_check import ProbeResult
from ..utils.log_manager import get_logger

# 历史学习所需的最少成功样本数
MIN_LEARNING_SAMPLES = 10


def percentile(values: Sequence[float], pct: float) -> Optional[float]:
    """最近秩法计算百分位数"""
    if not values:
        return None
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


class TimeoutCalibrator:
    """
    超时校准器

    - 探测成功：推荐值 = clamp(总耗时 × success_multiplier)
    - 探测失败：推荐值 = clamp(当前超时 × failure_multiplier)

    校准只修改 recommended_ms，current_ms 仅由 apply() 改变
    """

    def __init__(self, success_multiplier: float = 3.0, failure_multiplier: float = 1.5,
                 learning_multiplier: float = 1.5):
        self.success_multiplier = success_multiplier
        self.failure_multiplier = failure_multiplier
        self.learning_multiplier = learning_multiplier
        self.logger = get_logger('service.timeout_calibrator')

    def recommend(self, prev: TimeoutPolicy, result: ProbeResult) -> TimeoutPolicy:
        """
        根据一次探测结果计算新的超时策略

        Args:
            prev: 探测前的超时策略
            result: 探测结果

        Returns:
            TimeoutPolicy: 新的策略对象（不修改传入的对象）
        """
        if result.success:
            recommended = prev.clamp(result.timing.total_ms * self.success_multiplier)
        else:
            recommended = prev.clamp(prev.current_ms * self.failure_multiplier)

        if recommended != prev.recommended_ms:
            self.logger.debug(
                f"节点 {result.endpoint_id} 推荐超时 {prev.recommended_ms}ms -> {recommended}ms")

        return replace(prev, recommended_ms=recommended, updated_at=utc_now())

    @staticmethod
    def apply(policy: TimeoutPolicy, recommended_ms: Optional[int] = None) -> TimeoutPolicy:
        """
        应用推荐值：current_ms = recommended_ms

        Args:
            policy: 当前策略
            recommended_ms: 指定要应用的值，默认使用策略中的推荐值
        """
        value = policy.recommended_ms if recommended_ms is None else recommended_ms
        return replace(policy, current_ms=policy.clamp(value), updated_at=utc_now())

    def learn_from_history(self, policy: TimeoutPolicy,
                           response_times: Sequence[float]) -> Optional[int]:
        """
        根据历史成功响应时间学习超时：P95 × learning_multiplier

        Args:
            policy: 提供上下限的策略
            response_times: 成功探测的响应时间（毫秒）

        Returns:
            Optional[int]: 样本不足时返回 None
        """
        if len(response_times) < MIN_LEARNING_SAMPLES:
            return None
        p95 = percentile(response_times, 95)
        return policy.clamp(p95 * self.learning_multiplier)
