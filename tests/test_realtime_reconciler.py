"""实时同步器测试"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from fleet_health.models.endpoint import Endpoint
from fleet_health.models.health_check import EndpointStatus, HealthState, StatusUpdate
from fleet_health.services.realtime_bus import InMemoryRealtimeBus
from fleet_health.services.realtime_reconciler import RealtimeReconciler
from fleet_health.services.status_machine import StatusStateMachine
from fleet_health.services.status_store import StatusStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _row(minutes=0, **fields):
    row = {'id': 'pve-01', 'updated_at': (T0 + timedelta(minutes=minutes)).isoformat()}
    row.update(fields)
    return row


class TestRealtimeReconciler:
    """实时同步器测试类"""

    def setup_method(self):
        self.store = StatusStore()
        self.store.register(Endpoint(id='pve-01', host='10.0.0.1'))
        self.reconciler = RealtimeReconciler(self.store)

    @pytest.mark.asyncio
    async def test_newer_update_applied(self):
        """测试更新的推送被应用"""
        applied = await self.reconciler.apply_update(StatusUpdate.from_payload(
            _row(connection_status='degraded', success_rate=72.5, avg_response_time_ms=640)))

        status = self.store.get_status('pve-01')
        assert applied is True
        assert status.state == HealthState.DEGRADED
        assert status.settled_state == HealthState.DEGRADED
        assert status.success_rate == 72.5
        assert status.latency_ms == 640
        assert status.updated_at == T0
        assert self.reconciler.applied_count == 1

    @pytest.mark.asyncio
    async def test_stale_update_rejected(self):
        """测试时间戳不新于本地的推送被丢弃"""
        await self.reconciler.apply_update(StatusUpdate.from_payload(
            _row(minutes=5, connection_status='online')))

        for minutes in (5, 1):
            applied = await self.reconciler.apply_update(StatusUpdate.from_payload(
                _row(minutes=minutes, connection_status='offline')))
            assert applied is False

        assert self.store.get_status('pve-01').state == HealthState.ONLINE
        assert self.reconciler.rejected_count == 2

    @pytest.mark.asyncio
    async def test_timeout_group_compared_separately(self):
        """测试超时字段组独立比较时间戳"""
        self.store.set_status(replace(self.store.get_status('pve-01'),
                                      updated_at=T0 + timedelta(hours=1)))

        applied = await self.reconciler.apply_update(StatusUpdate.from_payload(
            _row(connection_status='offline', connection_timeout=30000,
                 learned_timeout_ms=500000)))

        policy = self.store.get_policy('pve-01')
        assert applied is True
        assert self.store.get_status('pve-01').state == HealthState.UNKNOWN
        assert policy.current_ms == 30000
        assert policy.recommended_ms == 120000
        assert policy.updated_at == T0

    @pytest.mark.asyncio
    async def test_checking_kept_while_probe_in_flight(self):
        """测试本地探测进行中时不覆盖 checking"""
        status = self.store.get_status('pve-01')
        self.store.set_status(StatusStateMachine.mark_checking(
            replace(status, settled_state=HealthState.ONLINE)))
        future = datetime.now(timezone.utc) + timedelta(minutes=1)

        await self.reconciler.apply_update(StatusUpdate(
            endpoint_id='pve-01', updated_at=future, state=HealthState.OFFLINE,
            last_error='连接被拒绝'))

        status = self.store.get_status('pve-01')
        assert status.state == HealthState.CHECKING
        assert status.settled_state == HealthState.OFFLINE
        assert status.last_error == '连接被拒绝'

    @pytest.mark.asyncio
    async def test_external_checking_ignored(self):
        await self.reconciler.apply_update(StatusUpdate.from_payload(
            _row(connection_status='checking')))
        assert self.store.get_status('pve-01').state == HealthState.UNKNOWN

    @pytest.mark.asyncio
    async def test_success_rate_clamped(self):
        await self.reconciler.apply_update(StatusUpdate.from_payload(_row(success_rate=140)))
        assert self.store.get_status('pve-01').success_rate == 100.0

    @pytest.mark.asyncio
    async def test_unknown_endpoint_ignored(self):
        applied = await self.reconciler.apply_update(StatusUpdate.from_payload(
            _row(id='pve-99', connection_status='offline')))
        assert applied is False
        assert not self.store.has_endpoint('pve-99')

    @pytest.mark.asyncio
    async def test_unparseable_payload_is_logged_and_dropped(self):
        """测试无法解析的通知不会抛出异常"""
        await self.reconciler.handle_payload({'new': {'connection_status': 'online'}})
        await self.reconciler.handle_payload({'id': 'pve-01', 'updated_at': 'garbage'})
        await self.reconciler.handle_payload(_row(connection_status='rebooting'))
        await self.reconciler.handle_payload({'new': None, 'old': {'id': 'pve-01'}})

        assert self.store.get_status('pve-01').state == HealthState.UNKNOWN
        assert self.reconciler.applied_count == 0

    @pytest.mark.asyncio
    async def test_state_change_invalidates_aggregates(self):
        calls = []
        self.store.add_invalidation_listener(lambda: calls.append(1))

        await self.reconciler.apply_update(StatusUpdate.from_payload(
            _row(connection_status='offline')))

        assert calls
        assert self.store.live_stats()['states']['offline'] == 1


class TestRealtimeBus:
    """进程内总线测试"""

    def setup_method(self):
        self.store = StatusStore()
        self.store.register(Endpoint(id='pve-01', host='10.0.0.1'))
        self.bus = InMemoryRealtimeBus()
        self.reconciler = RealtimeReconciler(self.store)

    @pytest.mark.asyncio
    async def test_publish_reaches_subscriber(self):
        """测试发布的变更负载经总线合并到状态存储"""
        self.reconciler.subscribe(self.bus, 'tenant-a')

        delivered = await self.bus.publish('tenant-a', {
            'new': _row(connection_status='offline'),
            'old': {'connection_status': 'online'},
        })

        assert delivered == 1
        assert self.store.get_status('pve-01').state == HealthState.OFFLINE

    @pytest.mark.asyncio
    async def test_other_tenant_not_delivered(self):
        self.reconciler.subscribe(self.bus, 'tenant-a')
        assert await self.bus.publish('tenant-b', _row(connection_status='offline')) == 0

    @pytest.mark.asyncio
    async def test_own_echo_rejected(self):
        """测试本地写入后收到的回显不会被重复应用"""
        self.reconciler.subscribe(self.bus, 'tenant-a')
        local = EndpointStatus(endpoint_id='pve-01', state=HealthState.ONLINE,
                               settled_state=HealthState.ONLINE, updated_at=T0)
        self.store.set_status(local)

        await self.bus.publish('tenant-a', _row(connection_status='online'))

        assert self.reconciler.rejected_count == 1
        assert self.store.get_status('pve-01') == local

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        self.reconciler.subscribe(self.bus, 'tenant-a')
        assert self.bus.subscriber_count('tenant-a') == 1

        self.reconciler.unsubscribe()

        assert self.bus.subscriber_count('tenant-a') == 0

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_block_others(self):
        received = []

        async def broken(payload):
            raise RuntimeError('订阅者异常')

        async def healthy(payload):
            received.append(payload)

        self.bus.subscribe('tenant-a', broken)
        self.bus.subscribe('tenant-a', healthy)

        assert await self.bus.publish('tenant-a', {'id': 'x'}) == 1
        assert received == [{'id': 'x'}]
