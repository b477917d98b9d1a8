"""节点状态机测试"""

from fleet_health.models.health_check import (EndpointStatus, ErrorStage, HealthState,
                                              ProbeResult, ProbeTiming)
from fleet_health.services.status_machine import StatusStateMachine, RollingSuccessRate


def _success(latency_ms=100):
    return ProbeResult(endpoint_id='pve-01', success=True,
                       timing=ProbeTiming(total_ms=latency_ms))


def _failure(message='连接被拒绝'):
    return ProbeResult.failure('pve-01', ErrorStage.TCP, message)


class TestRollingSuccessRate:
    """滑动窗口成功率测试"""

    def test_empty_window_is_full_rate(self):
        assert RollingSuccessRate().rate == 100.0

    def test_rate(self):
        window = RollingSuccessRate(4)
        for outcome in (True, True, False, True):
            window.add(outcome)
        assert window.rate == 75.0

    def test_window_drops_oldest(self):
        window = RollingSuccessRate(2)
        window.add(False)
        window.add(True)
        window.add(True)
        assert window.rate == 100.0
        assert len(window) == 2

    def test_resize_keeps_latest(self):
        window = RollingSuccessRate(4)
        for outcome in (False, False, True, True):
            window.add(outcome)
        window.resize(2)
        assert window.rate == 100.0

    def test_single_failure_does_not_hit_zero(self):
        """测试新窗口的一次偶发失败不会把成功率拉到 0"""
        window = RollingSuccessRate(20)
        assert window.add(False) == 75.0
        assert window.add(True) == 80.0

    def test_prior_fades_as_window_fills(self):
        """测试虚拟成功样本随窗口填满退出"""
        window = RollingSuccessRate(4)
        window.add(False)
        window.add(False)
        assert window.rate == 50.0
        window.add(False)
        window.add(False)
        assert window.rate == 0.0

    def test_rate_stays_bounded(self):
        window = RollingSuccessRate(5)
        for index in range(40):
            window.add(index % 3 == 0)
            assert 0.0 <= window.rate <= 100.0



class TestStatusStateMachine:
    """状态机测试类"""

    def setup_method(self):
        self.machine = StatusStateMachine()
        self.status = EndpointStatus(endpoint_id='pve-01')

    def test_classify(self):
        """测试状态判定规则"""
        assert self.machine.classify(True, 100.0, 120) == HealthState.ONLINE
        assert self.machine.classify(True, 100.0, 500) == HealthState.DEGRADED
        assert self.machine.classify(True, 79.9, 100) == HealthState.DEGRADED
        assert self.machine.classify(True, 80.0, 499) == HealthState.ONLINE
        assert self.machine.classify(False, 100.0, 0) == HealthState.OFFLINE

    def test_first_success_goes_online(self):
        status, transition = self.machine.record_result(self.status, _success())
        assert status.state == HealthState.ONLINE
        assert status.settled_state == HealthState.ONLINE
        assert status.success_rate == 100.0
        assert status.latency_ms == 100
        assert transition.old_state == HealthState.UNKNOWN
        assert transition.changed

    def test_failure_keeps_last_latency_and_records_error(self):
        """测试失败保留上次延迟并记录错误阶段"""
        status, _ = self.machine.record_result(self.status, _success(150))
        status, transition = self.machine.record_result(status, _failure())

        assert status.state == HealthState.OFFLINE
        assert status.latency_ms == 150
        assert status.last_error == '连接被拒绝'
        assert status.last_error_stage == ErrorStage.TCP
        assert status.success_rate == 80.0
        assert transition.latency_ms is None

    def test_transition_uses_settled_state_not_checking(self):
        """测试 checking 期间的迁移以最近确定状态为旧状态"""
        status, _ = self.machine.record_result(self.status, _success())
        checking = StatusStateMachine.mark_checking(status, cycle=2)
        assert checking.state == HealthState.CHECKING
        assert checking.checking_cycle == 2

        _, transition = self.machine.record_result(checking, _success())
        assert transition.old_state == HealthState.ONLINE
        assert not transition.changed

    def test_rollback_keeps_settled_state(self):
        """测试回退到 unknown 时保留最近确定状态"""
        status, _ = self.machine.record_result(self.status, _success())
        rolled = StatusStateMachine.rollback(StatusStateMachine.mark_checking(status, 1))
        assert rolled.state == HealthState.UNKNOWN
        assert rolled.settled_state == HealthState.ONLINE
        assert rolled.checking_cycle is None

    def test_explicit_success_rate(self):
        """测试使用外部提供的成功率"""
        status, _ = self.machine.record_result(self.status, _success(), success_rate=70.0)
        assert status.state == HealthState.DEGRADED
        assert status.success_rate == 70.0

    def test_window_rate_degrades(self):
        """测试窗口成功率低于阈值时成功探测也判为性能下降"""
        self.machine.seed('pve-01', [True] * 7 + [False] * 3)
        status, _ = self.machine.record_result(self.status, _success())
        assert status.success_rate == 78.6
        assert status.state == HealthState.DEGRADED

    def test_update_thresholds(self):
        self.machine.update_thresholds(degraded_threshold=50.0, latency_threshold_ms=1000,
                                       window=5)
        assert self.machine.classify(True, 60.0, 800) == HealthState.ONLINE
        assert self.machine.window == 5

    def test_reset(self):
        self.machine.seed('pve-01', [False] * 5)
        self.machine.reset('pve-01')
        assert self.machine.success_rate('pve-01') == 100.0
