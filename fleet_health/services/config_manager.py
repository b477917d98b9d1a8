"""配置管理器"""

import os
from typing import Dict, Any, List, Optional

import yaml

from ..models.endpoint import Endpoint
from ..utils.config_validator import ConfigValidator
from ..utils.exceptions import ConfigError, ErrorCode
from ..utils.log_manager import get_logger

DEFAULT_GLOBAL = {
    'check_interval': 120,
    'max_concurrent_probes': 10,
    'log_level': 'INFO',
    'record_retention_days': 30,
    'max_records_per_endpoint': 1000,
}

DEFAULT_THRESHOLDS = {
    'degraded_success_rate': 80,
    'latency_ms': 500,
    'success_rate_window': 20,
}

DEFAULT_TIMEOUTS = {
    'default_ms': 10000,
    'floor_ms': 5000,
    'ceiling_ms': 120000,
    'success_multiplier': 3.0,
    'failure_multiplier': 1.5,
    'auto_apply': False,
}

DEFAULT_CREDENTIALS = {
    'encryption_key_env': 'FLEET_ENCRYPTION_KEY',
}


class ConfigManager:
    """配置管理器，负责YAML配置文件的加载、解析和验证"""

    def __init__(self, config_path: str):
        """
        初始化配置管理器

        Args:
            config_path: 配置文件路径
        """
        self.config_path = config_path
        self.config: Dict[str, Any] = {}
        self.last_modified: Optional[float] = None
        self.logger = get_logger('config_manager')

    def load_config(self) -> Dict[str, Any]:
        """
        加载YAML配置文件

        Returns:
            Dict[str, Any]: 配置字典

        Raises:
            ConfigError: 配置加载或验证失败
        """
        self.logger.info(f"开始加载配置文件: {self.config_path}")

        try:
            with open(self.config_path, 'r', encoding='utf-8') as file:
                config = yaml.safe_load(file)
        except FileNotFoundError:
            self.logger.error(f"配置文件不存在: {self.config_path}")
            raise ConfigError(f"配置文件不存在: {self.config_path}",
                              ErrorCode.CONFIG_FILE_NOT_FOUND, config_path=self.config_path)
        except PermissionError:
            self.logger.error(f"没有权限读取配置文件: {self.config_path}")
            raise ConfigError(f"没有权限读取配置文件: {self.config_path}",
                              config_path=self.config_path)
        except yaml.YAMLError as e:
            self.logger.error(f"YAML格式错误: {e}")
            raise ConfigError(f"YAML格式错误: {e}", ErrorCode.CONFIG_PARSE_ERROR,
                              config_path=self.config_path, cause=e)

        if config is None:
            self.logger.error("配置文件为空")
            raise ConfigError("配置文件为空", config_path=self.config_path)

        self._validate_config(config)

        endpoints_count = len(config.get('endpoints', {}))
        alerts_count = len(config.get('alerts', []))
        self.logger.info(f"配置验证成功，包含 {endpoints_count} 个节点和 {alerts_count} 个告警配置")

        old_config = self.config.copy() if self.config else {}
        self.config = config
        self.last_modified = os.path.getmtime(self.config_path)

        if old_config:
            self._log_config_changes(old_config, config)
        else:
            self.logger.info("首次加载配置文件")

        return self.config

    def _validate_config(self, config: Dict[str, Any]) -> None:
        """
        验证配置文件内容

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(config, dict):
            raise ConfigError("配置文件根节点必须是字典类型")

        if 'global' in config:
            ConfigValidator.validate_global_config(config['global'])
        if 'thresholds' in config:
            ConfigValidator.validate_thresholds_config(config['thresholds'])
        if 'timeouts' in config:
            ConfigValidator.validate_timeouts_config(config['timeouts'])

        endpoints = config.get('endpoints', {})
        if not isinstance(endpoints, dict):
            raise ConfigError("endpoints配置必须是字典类型")
        for endpoint_id, endpoint_config in endpoints.items():
            ConfigValidator.validate_endpoint_config(endpoint_id, endpoint_config)

        alerts = config.get('alerts', [])
        if not isinstance(alerts, list):
            raise ConfigError("alerts配置必须是列表类型")
        names = set()
        for alert_config in alerts:
            ConfigValidator.validate_alert_config(alert_config)
            if alert_config['name'] in names:
                raise ConfigError(f"告警器名称重复: {alert_config['name']}")
            names.add(alert_config['name'])

    def get_global_config(self) -> Dict[str, Any]:
        """全局配置（已合并默认值）"""
        return {**DEFAULT_GLOBAL, **self.config.get('global', {})}

    def get_thresholds_config(self) -> Dict[str, Any]:
        return {**DEFAULT_THRESHOLDS, **self.config.get('thresholds', {})}

    def get_timeouts_config(self) -> Dict[str, Any]:
        return {**DEFAULT_TIMEOUTS, **self.config.get('timeouts', {})}

    def get_credentials_config(self) -> Dict[str, Any]:
        return {**DEFAULT_CREDENTIALS, **self.config.get('credentials', {})}

    def get_endpoints_config(self) -> Dict[str, Dict[str, Any]]:
        return self.config.get('endpoints', {}) or {}

    def get_alerts_config(self) -> List[Dict[str, Any]]:
        return self.config.get('alerts', []) or []

    def get_endpoint_config(self, endpoint_id: str) -> Optional[Dict[str, Any]]:
        return self.get_endpoints_config().get(endpoint_id)

    def get_endpoints(self) -> List[Endpoint]:
        """根据配置创建节点对象"""
        tenant_id = self.get_global_config().get('tenant_id')
        endpoints = []
        for endpoint_id, config in self.get_endpoints_config().items():
            endpoint = Endpoint.from_config(str(endpoint_id), config)
            if endpoint.tenant_id is None:
                endpoint.tenant_id = tenant_id
            endpoints.append(endpoint)
        return endpoints

    def is_config_changed(self) -> bool:
        """检查配置文件是否已修改"""
        try:
            current_modified = os.path.getmtime(self.config_path)
        except OSError:
            return False
        return self.last_modified is None or current_modified > self.last_modified

    def reload_config(self) -> Dict[str, Any]:
        """
        重新加载配置文件

        Raises:
            ConfigError: 配置重新加载失败，原配置保持不变
        """
        self.logger.info("重新加载配置文件")
        return self.load_config()

    def _log_config_changes(self, old_config: Dict[str, Any], new_config: Dict[str, Any]) -> None:
        """记录配置变更"""
        old_endpoints = old_config.get('endpoints', {}) or {}
        new_endpoints = new_config.get('endpoints', {}) or {}

        added = set(new_endpoints) - set(old_endpoints)
        if added:
            self.logger.info(f"新增节点: {', '.join(sorted(map(str, added)))}")

        removed = set(old_endpoints) - set(new_endpoints)
        if removed:
            self.logger.info(f"删除节点: {', '.join(sorted(map(str, removed)))}")

        for endpoint_id in set(old_endpoints) & set(new_endpoints):
            if old_endpoints[endpoint_id] != new_endpoints[endpoint_id]:
                self.logger.info(f"节点配置已修改: {endpoint_id}")

        old_alerts = old_config.get('alerts', [])
        new_alerts = new_config.get('alerts', [])
        if len(old_alerts) != len(new_alerts):
            self.logger.info(f"告警配置数量变更: {len(old_alerts)} -> {len(new_alerts)}")
        elif old_alerts != new_alerts:
            self.logger.info("告警配置已修改")

        for section in ('global', 'thresholds', 'timeouts'):
            if old_config.get(section, {}) != new_config.get(section, {}):
                self.logger.info(f"{section} 配置已修改")
