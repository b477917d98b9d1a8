"""数据模型测试"""

import pytest
from datetime import datetime, timezone, timedelta

from fleet_health.models.endpoint import Endpoint, TimeoutPolicy, ConnectionType
from fleet_health.models.health_check import (
    parse_timestamp, ErrorStage, HealthState, ProbeTiming, ProbeResult, ProbeRecord,
    EndpointStatus, StatusUpdate, AlertEvent, AlertEventType
)


class TestEndpoint:
    """节点模型测试"""

    def test_name_defaults_to_id(self):
        """测试名称默认使用节点ID"""
        endpoint = Endpoint(id='pve-01', host='10.0.0.1')
        assert endpoint.name == 'pve-01'

    def test_resolve_target_direct(self):
        """测试直连目标解析"""
        endpoint = Endpoint(id='pve-01', host='10.0.0.1', port=8006)
        assert endpoint.resolve_target() == ('10.0.0.1', 8006, ConnectionType.DIRECT)

    def test_resolve_target_prefers_tunnel(self):
        """测试配置隧道时优先走隧道"""
        endpoint = Endpoint(id='pve-01', host='10.0.0.1', use_tunnel=True,
                            tunnel_host='t.example.com', tunnel_port=443)
        assert endpoint.resolve_target() == ('t.example.com', 443, ConnectionType.TUNNEL)

    def test_tunnel_without_host_falls_back_to_direct(self):
        """测试启用隧道但未配置隧道地址时直连"""
        endpoint = Endpoint(id='pve-01', host='10.0.0.1', use_tunnel=True)
        assert endpoint.tunnel_enabled is False
        assert endpoint.resolve_target()[2] == ConnectionType.DIRECT

    def test_tunnel_port_defaults_to_endpoint_port(self):
        """测试隧道端口缺省时沿用节点端口"""
        endpoint = Endpoint(id='pve-01', host='10.0.0.1', port=8443, use_tunnel=True,
                            tunnel_host='t.example.com')
        assert endpoint.resolve_target()[1] == 8443

    def test_from_config(self):
        """测试从配置创建节点"""
        endpoint = Endpoint.from_config('pve-02', {
            'host': '192.168.1.5',
            'name': '分支节点',
            'verify_tls': False,
            'active': False,
            'timeout_ms': 20000,
        })
        assert endpoint.host == '192.168.1.5'
        assert endpoint.port == 8006
        assert endpoint.name == '分支节点'
        assert endpoint.endpoint_type == 'proxmox'
        assert endpoint.verify_tls is False
        assert endpoint.active is False
        assert endpoint.timeout_ms == 20000


class TestTimeoutPolicy:
    """超时策略测试"""

    def test_clamp(self):
        """测试上下限限制"""
        policy = TimeoutPolicy()
        assert policy.clamp(240) == 5000
        assert policy.clamp(150000) == 120000
        assert policy.clamp(15000.4) == 15000

    def test_dict_roundtrip_keeps_timestamp(self):
        """测试序列化保留更新时间"""
        stamp = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
        policy = TimeoutPolicy(current_ms=15000, recommended_ms=30000, updated_at=stamp)
        restored = TimeoutPolicy.from_dict(policy.to_dict())
        assert restored == policy


class TestParseTimestamp:
    """时间戳解析测试"""

    def test_zulu_suffix(self):
        parsed = parse_timestamp('2024-05-01T08:00:00Z')
        assert parsed == datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        parsed = parse_timestamp('2024-05-01T08:00:00')
        assert parsed.tzinfo == timezone.utc

    def test_offset_preserved(self):
        parsed = parse_timestamp('2024-05-01T16:00:00+08:00')
        assert parsed == datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

    def test_empty(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp('') is None


class TestProbeResult:
    """探测结果测试"""

    def test_success_response(self):
        """测试成功响应只包含必要字段"""
        result = ProbeResult(
            endpoint_id='pve-01', success=True,
            timing=ProbeTiming(dns_ms=5, tcp_ms=15, tls_ms=25, api_ms=55, total_ms=100),
            resolved_address='10.0.0.1:8006', remote_version='8.1.4', node_count=3)

        response = result.to_response(recommended_timeout_ms=5000, current_timeout_ms=10000)

        assert response['success'] is True
        assert response['timing']['total_ms'] == 100
        assert response['connection_type'] == 'direct'
        assert response['remote_version'] == '8.1.4'
        assert response['node_count'] == 3
        assert response['recommended_timeout_ms'] == 5000
        assert response['current_timeout_ms'] == 10000
        assert 'error' not in response
        assert 'tunnel_info' not in response

    def test_failure_response(self):
        """测试失败响应包含错误阶段"""
        result = ProbeResult.failure('pve-01', ErrorStage.DNS, '域名解析失败',
                                     connection_type=ConnectionType.TUNNEL,
                                     tunnel_info={'hostname': 't.example.com', 'port': 443})

        response = result.to_response(15000, 10000)

        assert response['success'] is False
        assert response['error'] == '域名解析失败'
        assert response['error_stage'] == 'dns'
        assert response['tunnel_info'] == {'hostname': 't.example.com', 'port': 443}
        assert 'remote_version' not in response


class TestProbeRecord:
    """探测记录测试"""

    def test_from_failed_result_has_no_response_time(self):
        """测试失败记录不保存响应时间"""
        result = ProbeResult.failure('pve-01', ErrorStage.TCP, '连接被拒绝',
                                     timing=ProbeTiming(total_ms=30),
                                     connection_type=ConnectionType.TUNNEL,
                                     timeout_used_ms=10000)
        record = ProbeRecord.from_result(result)

        assert record.success is False
        assert record.response_time_ms is None
        assert record.used_tunnel is True
        assert record.timeout_used_ms == 10000

    def test_dict_roundtrip(self):
        record = ProbeRecord(endpoint_id='pve-01', success=True, response_time_ms=120)
        assert ProbeRecord.from_dict(record.to_dict()) == record


class TestEndpointStatus:
    """节点状态测试"""

    def test_checking_fields_not_serialized(self):
        """测试 checking 相关的瞬时字段不写入快照"""
        status = EndpointStatus(endpoint_id='pve-01', state=HealthState.ONLINE,
                                settled_state=HealthState.ONLINE, checking_cycle=3)
        data = status.to_dict()
        assert 'checking_cycle' not in data
        restored = EndpointStatus.from_dict(data)
        assert restored.state == HealthState.ONLINE
        assert restored.checking_cycle is None

    def test_is_settled(self):
        assert HealthState.ONLINE.is_settled
        assert HealthState.OFFLINE.is_settled
        assert not HealthState.CHECKING.is_settled
        assert not HealthState.UNKNOWN.is_settled


class TestStatusUpdate:
    """外部状态更新解析测试"""

    def test_parse_change_payload(self):
        """测试解析 new/old 形式的行变更"""
        update = StatusUpdate.from_payload({
            'new': {
                'id': 'pve-01',
                'connection_status': 'offline',
                'last_health_check_at': '2024-05-01T08:00:00Z',
                'health_check_error': '连接超时',
                'success_rate': 65,
                'avg_response_time_ms': 320,
                'connection_timeout': 15000,
                'learned_timeout_ms': 9000,
                'updated_at': '2024-05-01T08:00:01Z',
            },
            'old': {'connection_status': 'online'},
        })

        assert update.endpoint_id == 'pve-01'
        assert update.state == HealthState.OFFLINE
        assert update.previous_state == HealthState.ONLINE
        assert update.last_error == '连接超时'
        assert update.latency_ms == 320
        assert update.current_timeout_ms == 15000
        assert update.recommended_timeout_ms == 9000
        assert update.status_timestamp == datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
        assert update.updated_at == datetime(2024, 5, 1, 8, 0, 1, tzinfo=timezone.utc)

    def test_timeout_only_payload(self):
        """测试只包含超时字段的更新"""
        update = StatusUpdate.from_payload({'id': 'pve-01', 'connection_timeout': 20000,
                                            'updated_at': '2024-05-01T08:00:00Z'})
        assert update.has_timeout_fields()
        assert not update.has_status_fields()

    def test_missing_id(self):
        with pytest.raises(ValueError):
            StatusUpdate.from_payload({'updated_at': '2024-05-01T08:00:00Z'})

    def test_missing_timestamp(self):
        with pytest.raises(ValueError):
            StatusUpdate.from_payload({'id': 'pve-01', 'connection_status': 'online'})

    def test_delete_notice_rejected(self):
        """测试没有新行数据的删除通知被拒绝"""
        with pytest.raises(ValueError, match="不包含新行数据"):
            StatusUpdate.from_payload({'new': None, 'old': {'id': 'pve-01'}})
        with pytest.raises(ValueError, match="不包含新行数据"):
            StatusUpdate.from_payload({'new': {}})
        with pytest.raises(ValueError):
            StatusUpdate.from_payload(None)

    def test_non_dict_old_row_ignored(self):
        update = StatusUpdate.from_payload({
            'new': {'id': 'pve-01', 'connection_status': 'online',
                    'updated_at': '2024-05-01T08:00:00Z'},
            'old': None,
        })
        assert update.previous_state is None



class TestAlertEvent:
    """告警事件测试"""

    def test_title_and_dict(self):
        stamp = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc) + timedelta(seconds=1)
        event = AlertEvent(endpoint_id='pve-01', event_type=AlertEventType.RECOVERED,
                           success_rate=90.0, threshold=80.0, endpoint_name='节点1',
                           timestamp=stamp)
        assert event.title == '节点已恢复'
        data = event.to_dict()
        assert data['event_type'] == 'recovered'
        assert data['timestamp'] == stamp.isoformat()
