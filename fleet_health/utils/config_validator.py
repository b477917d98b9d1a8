"""配置验证工具"""

from typing import Dict, Any

from .exceptions import ConfigError

SUPPORTED_ENDPOINT_TYPES = ['proxmox']
SUPPORTED_ALERT_TYPES = ['http', 'audit']
VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ConfigValidator:
    """配置验证器"""

    @staticmethod
    def validate_endpoint_config(endpoint_id: str, config: Dict[str, Any]) -> None:
        """
        验证节点配置

        Args:
            endpoint_id: 节点ID
            config: 节点配置

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(config, dict):
            raise ConfigError(f"节点 '{endpoint_id}' 的配置必须是字典类型")

        if not config.get('host'):
            raise ConfigError(f"节点 '{endpoint_id}' 缺少必需的配置项: host")

        endpoint_type = config.get('type', 'proxmox')
        if endpoint_type not in SUPPORTED_ENDPOINT_TYPES:
            raise ConfigError(
                f"节点 '{endpoint_id}' 的类型 '{endpoint_type}' 不受支持。"
                f"支持的类型: {SUPPORTED_ENDPOINT_TYPES}")

        for port_key in ('port', 'tunnel_port'):
            port = config.get(port_key)
            if port is not None and (not _is_positive_int(port) or port > 65535):
                raise ConfigError(f"节点 '{endpoint_id}' 的 {port_key} 必须是 1-65535 之间的整数")

        if config.get('use_tunnel') and not config.get('tunnel_host'):
            raise ConfigError(f"节点 '{endpoint_id}' 启用了隧道但缺少 tunnel_host")

        scheme = config.get('scheme', 'https')
        if scheme not in ('http', 'https'):
            raise ConfigError(f"节点 '{endpoint_id}' 的 scheme 只能是 http 或 https")

        if 'token' not in config and 'token_encrypted' not in config:
            raise ConfigError(f"节点 '{endpoint_id}' 缺少凭据配置: token 或 token_encrypted")

        timeout_ms = config.get('timeout_ms')
        if timeout_ms is not None and not _is_positive_int(timeout_ms):
            raise ConfigError(f"节点 '{endpoint_id}' 的 timeout_ms 必须是正整数")

    @staticmethod
    def validate_alert_config(alert_config: Dict[str, Any]) -> None:
        """
        验证告警配置

        Args:
            alert_config: 告警配置

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(alert_config, dict):
            raise ConfigError("告警配置必须是字典类型")

        for field in ('name', 'type'):
            if field not in alert_config:
                raise ConfigError(f"告警配置缺少必需的配置项: {field}")

        alert_type = alert_config['type']
        if alert_type not in SUPPORTED_ALERT_TYPES:
            raise ConfigError(
                f"告警器 '{alert_config['name']}' 的类型 '{alert_type}' 不受支持。"
                f"支持的类型: {SUPPORTED_ALERT_TYPES}")

        if alert_type == 'http' and 'url' not in alert_config:
            raise ConfigError(f"HTTP告警器 '{alert_config['name']}' 缺少 url")
        if alert_type == 'audit' and 'path' not in alert_config:
            raise ConfigError(f"审计告警器 '{alert_config['name']}' 缺少 path")

    @staticmethod
    def validate_global_config(global_config: Dict[str, Any]) -> None:
        """
        验证全局配置

        Args:
            global_config: 全局配置

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(global_config, dict):
            raise ConfigError("全局配置必须是字典类型")

        for key in ('check_interval', 'max_concurrent_probes', 'record_retention_days',
                    'max_records_per_endpoint'):
            value = global_config.get(key)
            if value is not None and not _is_positive_int(value):
                raise ConfigError(f"{key} 必须是正整数")

        log_level = global_config.get('log_level')
        if log_level is not None and log_level not in VALID_LOG_LEVELS:
            raise ConfigError(f"log_level 必须是以下值之一: {VALID_LOG_LEVELS}")

    @staticmethod
    def validate_thresholds_config(thresholds: Dict[str, Any]) -> None:
        """验证健康阈值配置"""
        if not isinstance(thresholds, dict):
            raise ConfigError("thresholds配置必须是字典类型")

        rate = thresholds.get('degraded_success_rate')
        if rate is not None and (not _is_number(rate) or not 0 <= rate <= 100):
            raise ConfigError("degraded_success_rate 必须在 0-100 之间")

        latency = thresholds.get('latency_ms')
        if latency is not None and (not _is_number(latency) or latency <= 0):
            raise ConfigError("latency_ms 必须是正数")

        window = thresholds.get('success_rate_window')
        if window is not None and not _is_positive_int(window):
            raise ConfigError("success_rate_window 必须是正整数")

    @staticmethod
    def validate_timeouts_config(timeouts: Dict[str, Any]) -> None:
        """验证超时校准配置"""
        if not isinstance(timeouts, dict):
            raise ConfigError("timeouts配置必须是字典类型")

        for key in ('default_ms', 'floor_ms', 'ceiling_ms'):
            value = timeouts.get(key)
            if value is not None and not _is_positive_int(value):
                raise ConfigError(f"{key} 必须是正整数")

        floor_ms = timeouts.get('floor_ms', 5000)
        ceiling_ms = timeouts.get('ceiling_ms', 120000)
        if floor_ms > ceiling_ms:
            raise ConfigError("floor_ms 不能大于 ceiling_ms")

        for key in ('success_multiplier', 'failure_multiplier'):
            value = timeouts.get(key)
            if value is not None and (not _is_number(value) or value <= 0):
                raise ConfigError(f"{key} 必须是正数")
