"""CLI接口功能测试"""

import os
import tempfile

import pytest
import yaml
from aiohttp import web
from aiohttp.test_utils import TestServer
from unittest.mock import patch

from fleet_health.services.credential_store import decrypt_token
from fleet_health.utils.log_manager import log_manager
from main import (
    create_argument_parser,
    validate_config_file,
    encrypt_credential,
    run_alert_test,
    check_once,
    get_log_overrides,
    __version__
)


def _write_config(config_data) -> str:
    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False,
                                     encoding='utf-8') as f:
        yaml.dump(config_data, f, allow_unicode=True)
        return f.name


def _hypervisor_app(version_status=200) -> web.Application:
    async def version(request):
        return web.json_response({'data': {'version': '8.1.4'}}, status=version_status)

    async def nodes(request):
        return web.json_response({'data': [{'node': 'pve1'}]})

    app = web.Application()
    app.router.add_get('/api2/json/version', version)
    app.router.add_get('/api2/json/nodes', nodes)
    return app


class TestArgumentParser:
    """命令行参数解析器测试"""

    def test_create_argument_parser(self):
        parser = create_argument_parser()
        assert parser.prog == 'fleet-health'
        assert '节点群健康监控系统' in parser.description

    def test_parse_basic_args(self):
        args = create_argument_parser().parse_args(['config.yaml'])
        assert args.config_file == 'config.yaml'
        assert not args.validate
        assert not args.test_alerts
        assert not args.check_once
        assert args.encrypt_token is None

    def test_parse_flags(self):
        """测试各个功能标志"""
        parser = create_argument_parser()

        assert parser.parse_args(['--validate', 'c.yaml']).validate
        assert parser.parse_args(['--test-alerts', 'c.yaml']).test_alerts
        assert parser.parse_args(['--check-once', 'c.yaml']).check_once
        assert parser.parse_args(['--encrypt-token', 'secret']).encrypt_token == 'secret'

    def test_parse_log_overrides(self):
        args = create_argument_parser().parse_args(
            ['--log-level', 'DEBUG', '--log-file', '/tmp/fleet.log', 'c.yaml'])
        assert args.log_level == 'DEBUG'
        assert args.log_file == '/tmp/fleet.log'

    def test_invalid_log_level(self):
        with pytest.raises(SystemExit):
            create_argument_parser().parse_args(['--log-level', 'VERBOSE', 'c.yaml'])

    def test_get_log_overrides(self):
        """测试只收集命令行显式给出的日志设置"""
        parser = create_argument_parser()
        assert get_log_overrides(parser.parse_args(['c.yaml'])) == {}
        args = parser.parse_args(['--check-once', '--log-level', 'ERROR', 'c.yaml'])
        assert get_log_overrides(args) == {'log_level': 'ERROR'}

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            create_argument_parser().parse_args(['--version'])
        assert exc_info.value.code == 0
        assert __version__ in capsys.readouterr().out


class TestValidateConfigFile:
    """配置验证命令测试"""

    def test_valid_config(self, capsys):
        path = _write_config({
            'endpoints': {
                'pve-01': {'name': '机房A-01', 'host': '10.0.0.1', 'token': 'abc'},
                'pve-02': {'host': '10.0.0.2', 'token': 'abc', 'active': False},
            },
            'alerts': [{'name': 'hook', 'type': 'http', 'url': 'https://example.com'}],
        })
        try:
            assert validate_config_file(path) is True
        finally:
            os.unlink(path)

        output = capsys.readouterr().out
        assert '配置文件验证成功' in output
        assert '节点数量: 2' in output
        assert '机房A-01 (proxmox, direct 10.0.0.1:8006)' in output
        assert '[已停用]' in output

    def test_invalid_config(self, capsys):
        path = _write_config({'global': {'check_interval': -1}})
        try:
            assert validate_config_file(path) is False
        finally:
            os.unlink(path)
        assert '配置文件验证失败' in capsys.readouterr().out

    def test_missing_file(self):
        assert validate_config_file('/nonexistent/config.yaml') is False


class TestEncryptCredential:
    """凭据加密命令测试"""

    def test_encrypt_with_default_env(self, capsys):
        with patch.dict('os.environ', {'FLEET_ENCRYPTION_KEY': 'cli-key'}):
            assert encrypt_credential('root@pam!monitor=abc', None) is True

        ciphertext = capsys.readouterr().out.strip()
        assert decrypt_token(ciphertext, 'cli-key') == 'root@pam!monitor=abc'

    def test_encrypt_with_configured_env(self, capsys):
        path = _write_config({'credentials': {'encryption_key_env': 'CUSTOM_KEY'}})
        try:
            with patch.dict('os.environ', {'CUSTOM_KEY': 'custom'}, clear=True):
                assert encrypt_credential('token', path) is True
        finally:
            os.unlink(path)
        assert decrypt_token(capsys.readouterr().out.strip(), 'custom') == 'token'

    def test_missing_key(self, capsys):
        with patch.dict('os.environ', {}, clear=True):
            assert encrypt_credential('token', None) is False
        assert 'FLEET_ENCRYPTION_KEY' in capsys.readouterr().err


class TestCheckOnce:
    """单次检查命令测试"""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        for name in os.listdir(self.temp_dir):
            os.unlink(os.path.join(self.temp_dir, name))
        os.rmdir(self.temp_dir)

    def _config(self, port: int) -> str:
        return _write_config({
            'global': {'state_file': os.path.join(self.temp_dir, 'state.json'),
                       'records_file': os.path.join(self.temp_dir, 'records.jsonl')},
            'endpoints': {
                'pve-01': {'host': '127.0.0.1', 'port': port, 'scheme': 'http',
                           'token': 'root@pam!monitor=abc'},
            },
        })

    @pytest.mark.asyncio
    async def test_all_online(self, capsys):
        """测试节点在线时返回成功并输出延迟与超时"""
        async with TestServer(_hypervisor_app()) as server:
            path = self._config(server.port)
            try:
                assert await check_once(path) is True
            finally:
                os.unlink(path)

        output = capsys.readouterr().out
        assert '共检查 1 个节点' in output
        assert 'pve-01: 在线' in output
        assert '超时 10000ms / 推荐 5000ms' in output
        assert os.path.exists(os.path.join(self.temp_dir, 'state.json'))

    @pytest.mark.asyncio
    async def test_api_failure_reported(self, capsys):
        async with TestServer(_hypervisor_app(version_status=401)) as server:
            path = self._config(server.port)
            try:
                assert await check_once(path) is False
            finally:
                os.unlink(path)

        assert 'pve-01: 离线 [api]' in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_log_overrides_applied(self, tmp_path):
        """测试单次检查也使用命令行日志设置"""
        log_file = str(tmp_path / 'check.log')
        async with TestServer(_hypervisor_app()) as server:
            path = self._config(server.port)
            try:
                with patch.object(log_manager, 'configure') as configure:
                    assert await check_once(path, {'log_level': 'DEBUG',
                                                   'log_file': log_file}) is True
            finally:
                os.unlink(path)

        log_config = configure.call_args[0][0]
        assert log_config['log_level'] == 'DEBUG'
        assert log_config['log_file'] == log_file
        assert log_config['enable_file'] is True


class TestRunAlertTest:
    """告警测试命令"""

    @pytest.mark.asyncio
    async def test_audit_sink(self, tmp_path):
        audit_path = tmp_path / 'audit.jsonl'
        path = _write_config({'global': {'audit_file': str(audit_path)}})
        try:
            assert await run_alert_test(path) is True
        finally:
            os.unlink(path)

        assert '告警测试节点' in audit_path.read_text(encoding='utf-8')

    @pytest.mark.asyncio
    async def test_log_overrides_applied(self, tmp_path):
        path = _write_config({'global': {'audit_file': str(tmp_path / 'audit.jsonl'),
                                         'log_level': 'WARNING'}})
        try:
            with patch.object(log_manager, 'configure') as configure:
                assert await run_alert_test(path, {'log_level': 'DEBUG'}) is True
        finally:
            os.unlink(path)

        assert configure.call_args[0][0]['log_level'] == 'DEBUG'

    @pytest.mark.asyncio
    async def test_no_alerters(self, capsys):
        path = _write_config({'global': {'check_interval': 60}})
        try:
            assert await run_alert_test(path) is False
        finally:
            os.unlink(path)
        assert '没有配置任何告警器' in capsys.readouterr().out
