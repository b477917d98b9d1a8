"""测试配置管理器"""

import os
import tempfile

import pytest

from fleet_health.models.endpoint import ConnectionType
from fleet_health.services.config_manager import ConfigManager
from fleet_health.utils.exceptions import ConfigError, ErrorCode

VALID_CONFIG = """
global:
  check_interval: 60
  tenant_id: tenant-a

thresholds:
  degraded_success_rate: 90

timeouts:
  auto_apply: true

endpoints:
  pve-01:
    name: 机房A-01
    host: 10.0.0.1
    token: root@pam!monitor=abc
  pve-02:
    host: 10.0.0.2
    use_tunnel: true
    tunnel_host: 127.0.0.1
    tunnel_port: 18006
    token_encrypted: c2VjcmV0
    active: false

alerts:
  - name: webhook
    type: http
    url: https://example.com/webhook
"""


def _write_temp(content: str) -> str:
    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False,
                                     encoding='utf-8') as f:
        f.write(content)
        return f.name


class TestConfigManager:
    """测试ConfigManager类"""

    def setup_method(self):
        self.config_path = _write_temp(VALID_CONFIG)
        self.manager = ConfigManager(self.config_path)

    def teardown_method(self):
        if os.path.exists(self.config_path):
            os.unlink(self.config_path)

    def test_load_valid_config(self):
        """测试加载有效配置"""
        config = self.manager.load_config()

        assert config['global']['check_interval'] == 60
        assert set(config['endpoints']) == {'pve-01', 'pve-02'}
        assert self.manager.last_modified == os.path.getmtime(self.config_path)

    def test_defaults_merged(self):
        """测试各配置段合并默认值"""
        self.manager.load_config()

        global_config = self.manager.get_global_config()
        assert global_config['check_interval'] == 60
        assert global_config['max_concurrent_probes'] == 10

        thresholds = self.manager.get_thresholds_config()
        assert thresholds['degraded_success_rate'] == 90
        assert thresholds['latency_ms'] == 500

        timeouts = self.manager.get_timeouts_config()
        assert timeouts['auto_apply'] is True
        assert timeouts['floor_ms'] == 5000
        assert timeouts['ceiling_ms'] == 120000

        assert self.manager.get_credentials_config()['encryption_key_env'] == \
            'FLEET_ENCRYPTION_KEY'

    def test_get_endpoints(self):
        """测试根据配置创建节点"""
        self.manager.load_config()
        endpoints = {e.id: e for e in self.manager.get_endpoints()}

        assert endpoints['pve-01'].name == '机房A-01'
        assert endpoints['pve-01'].port == 8006
        assert endpoints['pve-01'].tenant_id == 'tenant-a'
        assert endpoints['pve-02'].resolve_target() == ('127.0.0.1', 18006,
                                                        ConnectionType.TUNNEL)
        assert endpoints['pve-02'].active is False
        assert self.manager.get_endpoint_config('pve-02')['tunnel_port'] == 18006
        assert self.manager.get_endpoint_config('missing') is None

    def test_load_nonexistent_file(self):
        manager = ConfigManager('/nonexistent/config.yaml')

        with pytest.raises(ConfigError, match="配置文件不存在") as exc_info:
            manager.load_config()
        assert exc_info.value.error_code == ErrorCode.CONFIG_FILE_NOT_FOUND

    def test_load_invalid_yaml(self):
        """测试加载无效的YAML文件"""
        path = _write_temp("global:\n  check_interval: 30\n  broken: [\n")
        try:
            with pytest.raises(ConfigError, match="YAML格式错误") as exc_info:
                ConfigManager(path).load_config()
            assert exc_info.value.error_code == ErrorCode.CONFIG_PARSE_ERROR
        finally:
            os.unlink(path)

    def test_load_empty_config(self):
        path = _write_temp("")
        try:
            with pytest.raises(ConfigError, match="配置文件为空"):
                ConfigManager(path).load_config()
        finally:
            os.unlink(path)

    def test_endpoints_must_be_mapping(self):
        path = _write_temp("endpoints:\n  - host: 10.0.0.1\n")
        try:
            with pytest.raises(ConfigError, match="endpoints配置必须是字典类型"):
                ConfigManager(path).load_config()
        finally:
            os.unlink(path)

    def test_duplicate_alert_names(self):
        """测试告警器名称重复"""
        path = _write_temp(
            "alerts:\n"
            "  - {name: a, type: audit, path: /tmp/a.jsonl}\n"
            "  - {name: a, type: audit, path: /tmp/b.jsonl}\n")
        try:
            with pytest.raises(ConfigError, match="告警器名称重复"):
                ConfigManager(path).load_config()
        finally:
            os.unlink(path)

    def test_invalid_endpoint_rejected(self):
        path = _write_temp("endpoints:\n  pve-01:\n    host: 10.0.0.1\n")
        try:
            with pytest.raises(ConfigError, match="缺少凭据配置"):
                ConfigManager(path).load_config()
        finally:
            os.unlink(path)

    def test_is_config_changed(self):
        """测试根据修改时间判断配置变化"""
        assert self.manager.is_config_changed() is True
        self.manager.load_config()
        assert self.manager.is_config_changed() is False

        mtime = self.manager.last_modified + 10
        os.utime(self.config_path, (mtime, mtime))
        assert self.manager.is_config_changed() is True

    def test_reload_keeps_old_config_on_error(self):
        """测试重新加载失败时保留原配置"""
        self.manager.load_config()
        with open(self.config_path, 'w', encoding='utf-8') as f:
            f.write("global:\n  check_interval: -5\n")

        with pytest.raises(ConfigError):
            self.manager.reload_config()

        assert self.manager.get_global_config()['check_interval'] == 60

    def test_reload_applies_new_config(self):
        self.manager.load_config()
        with open(self.config_path, 'w', encoding='utf-8') as f:
            f.write(VALID_CONFIG.replace('check_interval: 60', 'check_interval: 90'))

        self.manager.reload_config()

        assert self.manager.get_global_config()['check_interval'] == 90
