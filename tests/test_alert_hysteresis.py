"""告警滞回引擎测试"""

from fleet_health.alerts.hysteresis import AlertHysteresisEngine
from fleet_health.models.health_check import (AlertEventType, AlertKind, EndpointStatus,
                                              ErrorStage, HealthState, ProbeResult,
                                              ProbeTiming, StateTransition)
from fleet_health.services.status_machine import StatusStateMachine


def _transition(old, new, rate=100.0, latency=100, error=None):
    return StateTransition(endpoint_id='pve-01', old_state=old, new_state=new,
                           success_rate=rate, latency_ms=latency, error_message=error,
                           endpoint_name='节点1')


class TestAlertHysteresisEngine:
    """告警滞回引擎测试类"""

    def setup_method(self):
        self.engine = AlertHysteresisEngine()
        self.machine = StatusStateMachine()

    def _run(self, results, rates=None):
        """依次把探测结果交给状态机和滞回引擎，返回全部告警事件"""
        status = EndpointStatus(endpoint_id='pve-01')
        events = []
        for index, result in enumerate(results):
            rate = rates[index] if rates else None
            status, transition = self.machine.record_result(status, result, success_rate=rate)
            transition.endpoint_name = '节点1'
            events.extend(self.engine.process(transition))
        return events

    def test_outage_alerts_once(self):
        """测试持续离线只产生一次离线告警"""
        ok = ProbeResult(endpoint_id='pve-01', success=True, timing=ProbeTiming(total_ms=100))
        fail = ProbeResult.failure('pve-01', ErrorStage.TCP, '连接被拒绝')

        events = self._run([ok] + [fail] * 6)

        assert [e.event_type for e in events] == [AlertEventType.OFFLINE]
        assert events[0].message == '节点1 已离线: 连接被拒绝'
        assert self.engine.get_episode('pve-01', AlertKind.OFFLINE) is not None

    def test_recovery_alerts_once(self):
        """测试恢复只产生一次恢复告警"""
        ok = ProbeResult(endpoint_id='pve-01', success=True, timing=ProbeTiming(total_ms=100))
        fail = ProbeResult.failure('pve-01', ErrorStage.TCP, '连接被拒绝')

        events = self._run([ok, fail, fail, ok, ok], rates=[100, 0, 0, 100, 100])

        types = [e.event_type for e in events]
        assert types == [AlertEventType.OFFLINE, AlertEventType.RECOVERED]
        assert events[1].message == '节点1 已恢复连接'
        assert self.engine.get_episode('pve-01', AlertKind.OFFLINE) is None
        assert len(self.engine.closed_episodes('pve-01')) == 1

    def test_new_outage_after_recovery_opens_new_episode(self):
        """测试恢复之后的再次离线会开启新的告警周期"""
        ok = ProbeResult(endpoint_id='pve-01', success=True, timing=ProbeTiming(total_ms=100))
        fail = ProbeResult.failure('pve-01', ErrorStage.DNS, '域名解析失败')

        events = self._run([ok, fail, ok, fail, fail], rates=[100, 0, 100, 0, 0])

        assert [e.event_type for e in events] == [AlertEventType.OFFLINE,
                                                  AlertEventType.RECOVERED,
                                                  AlertEventType.OFFLINE]
        closed = self.engine.closed_episodes('pve-01')
        assert len(closed) == 1
        assert closed[0].kind == AlertKind.OFFLINE
        active = self.engine.get_episode('pve-01', AlertKind.OFFLINE)
        assert active is not None
        assert active is not closed[0]
        assert active.opened_at >= closed[0].closed_at

    def test_degraded_episode_sequence(self):
        """测试成功率 95 -> 70 -> 85 只产生一次降级告警，恢复时静默关闭"""
        ok = ProbeResult(endpoint_id='pve-01', success=True, timing=ProbeTiming(total_ms=100))

        events = self._run([ok, ok, ok], rates=[95.0, 70.0, 85.0])

        assert [e.event_type for e in events] == [AlertEventType.DEGRADED]
        assert events[0].message == '节点1 性能下降: 成功率下降至 70.0%'
        assert self.engine.active_episodes('pve-01') == []

    def test_degraded_repeated_is_deduplicated(self):
        self.engine.process(_transition(HealthState.ONLINE, HealthState.DEGRADED, rate=70))
        events = self.engine.process(_transition(HealthState.OFFLINE, HealthState.DEGRADED,
                                                 rate=70))
        assert events == []

    def test_latency_degraded_message(self):
        """测试延迟导致的降级告警文案"""
        events = self.engine.process(_transition(HealthState.ONLINE, HealthState.DEGRADED,
                                                 rate=100, latency=900))
        assert events[0].message == '节点1 性能下降: 延迟升高至 900ms'
        assert events[0].metadata['latency_threshold_ms'] == 500

    def test_first_observation_offline_is_baseline(self):
        """测试首次观测为离线时不告警"""
        events = self.engine.process(_transition(HealthState.UNKNOWN, HealthState.OFFLINE,
                                                 rate=0, error='超时'))
        assert events == []
        assert self.engine.active_episodes() == []

    def test_degraded_recovers_offline_episode(self):
        """测试离线后恢复为降级时关闭离线告警并开启降级告警"""
        self.engine.process(_transition(HealthState.ONLINE, HealthState.OFFLINE, rate=50))
        events = self.engine.process(_transition(HealthState.OFFLINE, HealthState.DEGRADED,
                                                 rate=60))
        assert [e.event_type for e in events] == [AlertEventType.RECOVERED,
                                                  AlertEventType.DEGRADED]

    def test_degraded_stays_open_while_offline(self):
        """测试降级告警在离线期间保持"""
        self.engine.process(_transition(HealthState.ONLINE, HealthState.DEGRADED, rate=70))
        self.engine.process(_transition(HealthState.DEGRADED, HealthState.OFFLINE, rate=50))
        assert self.engine.get_episode('pve-01', AlertKind.DEGRADED) is not None
        assert self.engine.get_episode('pve-01', AlertKind.OFFLINE) is not None

    def test_close_all_is_silent(self):
        """测试停用节点时静默关闭全部告警周期"""
        self.engine.process(_transition(HealthState.ONLINE, HealthState.OFFLINE, rate=50))
        closed = self.engine.close_all('pve-01')

        assert len(closed) == 1
        assert closed[0].close_reason == 'deactivated'
        assert self.engine.active_episodes() == []
        events = self.engine.process(_transition(HealthState.UNKNOWN, HealthState.ONLINE))
        assert events == []

    def test_episode_records_threshold(self):
        self.engine.update_thresholds(degraded_threshold=90.0)
        self.engine.process(_transition(HealthState.ONLINE, HealthState.OFFLINE, rate=50))
        episode = self.engine.get_episode('pve-01', AlertKind.OFFLINE)
        assert episode.threshold_at_trigger == 90.0
