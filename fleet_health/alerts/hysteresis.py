"""
告警滞回引擎

只在状态边沿触发告警：同一节点同一类告警（offline / degraded）
在一个告警周期内最多通知一次，周期结束时最多发出一次恢复通知。
"""

import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from ..models.endpoint import utc_now
from ..models.health_check import (AlertEpisode, AlertEvent, AlertEventType, AlertKind,
                                   HealthState, StateTransition)
from ..utils.log_manager import get_logger

EpisodeKey = Tuple[str, AlertKind]

# 进入对应告警类型前必须已经观察到的状态
_OFFLINE_BASELINE = (HealthState.ONLINE, HealthState.DEGRADED)
_DEGRADED_BASELINE = (HealthState.ONLINE, HealthState.OFFLINE)


class AlertHysteresisEngine:
    """
    告警滞回引擎

    告警周期以 (endpoint_id, kind) 为键保存，同一节点的迁移事件串行处理。
    process() 是纯同步计算，不做任何IO，返回需要发送的告警事件。
    """

    def __init__(self, degraded_threshold: float = 80.0, latency_threshold_ms: int = 500,
                 history_size: int = 1000):
        self.degraded_threshold = degraded_threshold
        self.latency_threshold_ms = latency_threshold_ms
        self._episodes: Dict[EpisodeKey, AlertEpisode] = {}
        self._closed: Deque[AlertEpisode] = deque(maxlen=history_size)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.logger = get_logger('alert.hysteresis')

    def update_thresholds(self, degraded_threshold: Optional[float] = None,
                          latency_threshold_ms: Optional[int] = None) -> None:
        if degraded_threshold is not None:
            self.degraded_threshold = degraded_threshold
        if latency_threshold_ms is not None:
            self.latency_threshold_ms = latency_threshold_ms

    def _lock_for(self, endpoint_id: str) -> threading.Lock:
        with self._locks_guard:
            if endpoint_id not in self._locks:
                self._locks[endpoint_id] = threading.Lock()
            return self._locks[endpoint_id]

    def get_episode(self, endpoint_id: str, kind: AlertKind) -> Optional[AlertEpisode]:
        """获取生效中的告警周期"""
        episode = self._episodes.get((endpoint_id, kind))
        return episode if episode and episode.active else None

    def active_episodes(self, endpoint_id: Optional[str] = None) -> List[AlertEpisode]:
        return [episode for (eid, _), episode in self._episodes.items()
                if episode.active and (endpoint_id is None or eid == endpoint_id)]

    def closed_episodes(self, endpoint_id: Optional[str] = None) -> List[AlertEpisode]:
        return [episode for episode in self._closed
                if endpoint_id is None or episode.endpoint_id == endpoint_id]

    def process(self, transition: StateTransition) -> List[AlertEvent]:
        """
        处理一次状态迁移

        Args:
            transition: 状态机产生的迁移事件

        Returns:
            List[AlertEvent]: 需要发送的告警事件，可能为空
        """
        with self._lock_for(transition.endpoint_id):
            events: List[AlertEvent] = []
            new_state = transition.new_state

            if new_state in (HealthState.ONLINE, HealthState.DEGRADED):
                if self._close(transition.endpoint_id, AlertKind.OFFLINE, 'recovered'):
                    events.append(self._build_event(transition, AlertEventType.RECOVERED))

            if new_state == HealthState.ONLINE:
                if self._close(transition.endpoint_id, AlertKind.DEGRADED, 'recovered'):
                    self.logger.info(f"节点 {transition.endpoint_id} 性能已恢复，降级告警已关闭")

            if new_state == HealthState.OFFLINE and transition.old_state in _OFFLINE_BASELINE:
                if self._open(transition.endpoint_id, AlertKind.OFFLINE):
                    events.append(self._build_event(transition, AlertEventType.OFFLINE))

            if new_state == HealthState.DEGRADED and transition.old_state in _DEGRADED_BASELINE:
                if self._open(transition.endpoint_id, AlertKind.DEGRADED):
                    events.append(self._build_event(transition, AlertEventType.DEGRADED))

            return events

    def close_all(self, endpoint_id: str, reason: str = 'deactivated') -> List[AlertEpisode]:
        """节点停用时静默关闭其全部告警周期"""
        with self._lock_for(endpoint_id):
            closed = []
            for kind in AlertKind:
                episode = self._close(endpoint_id, kind, reason)
                if episode:
                    closed.append(episode)
            if closed:
                self.logger.info(f"节点 {endpoint_id} 的 {len(closed)} 个告警周期已关闭（{reason}）")
            return closed

    def _open(self, endpoint_id: str, kind: AlertKind) -> Optional[AlertEpisode]:
        if self.get_episode(endpoint_id, kind):
            self.logger.debug(f"节点 {endpoint_id} 的 {kind.value} 告警周期已存在，跳过")
            return None

        episode = AlertEpisode(endpoint_id=endpoint_id, kind=kind,
                               threshold_at_trigger=self.degraded_threshold)
        self._episodes[(endpoint_id, kind)] = episode
        self.logger.warning(f"节点 {endpoint_id} 开启 {kind.value} 告警周期")
        return episode

    def _close(self, endpoint_id: str, kind: AlertKind, reason: str) -> Optional[AlertEpisode]:
        episode = self._episodes.pop((endpoint_id, kind), None)
        if episode is None or not episode.active:
            return None

        episode.active = False
        episode.closed_at = utc_now()
        episode.close_reason = reason
        self._closed.append(episode)
        return episode

    def _build_event(self, transition: StateTransition,
                     event_type: AlertEventType) -> AlertEvent:
        name = transition.endpoint_name or transition.endpoint_id

        if event_type == AlertEventType.OFFLINE:
            message = f"{name} 已离线"
            if transition.error_message:
                message += f": {transition.error_message}"
        elif event_type == AlertEventType.DEGRADED:
            if transition.success_rate < self.degraded_threshold:
                reason = f"成功率下降至 {transition.success_rate:.1f}%"
            else:
                reason = f"延迟升高至 {transition.latency_ms}ms"
            message = f"{name} 性能下降: {reason}"
        else:
            message = f"{name} 已恢复连接"

        return AlertEvent(
            endpoint_id=transition.endpoint_id,
            endpoint_name=name,
            event_type=event_type,
            success_rate=transition.success_rate,
            threshold=self.degraded_threshold,
            latency_ms=transition.latency_ms,
            message=message,
            error_message=transition.error_message,
            metadata={
                'old_state': transition.old_state.value,
                'new_state': transition.new_state.value,
                'latency_threshold_ms': self.latency_threshold_ms,
            },
        )
