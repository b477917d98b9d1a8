"""HTTP告警器实现"""

import asyncio
import json
from typing import Dict, Any
from urllib.parse import urlparse

import aiohttp

from .base import BaseAlerter
from ..models.health_check import AlertEvent
from ..utils.exceptions import AlertConfigError, AlertSendError
from ..utils.log_manager import get_logger

_JSON_ESCAPES = (
    ('\\', '\\\\'),
    ('"', '\\"'),
    ('\n', '\\n'),
    ('\r', '\\r'),
    ('\t', '\\t'),
    ('\b', '\\b'),
    ('\f', '\\f'),
)


class HTTPAlerter(BaseAlerter):
    """HTTP告警器，通过Webhook发送告警事件"""

    VALID_METHODS = ['GET', 'POST', 'PUT', 'PATCH']

    def __init__(self, name: str, config: Dict[str, Any]):
        """
        初始化HTTP告警器

        Args:
            name: 告警器名称
            config: 告警器配置

        Raises:
            AlertConfigError: 配置无效
        """
        super().__init__(name, config)
        self.logger = get_logger(f'alerter.http.{self.name}')

        # 重试配置
        self.max_retries = config.get('max_retries', 3)
        self.retry_delay = config.get('retry_delay', 1.0)  # 秒
        self.retry_backoff = config.get('retry_backoff', 2.0)  # 指数退避倍数

        self.url = config.get('url', '')
        self.method = config.get('method', 'POST').upper()
        self.headers = config.get('headers', {})
        self.template = config.get('template', '')
        self.ssl_verify = config.get('ssl_verify', True)

        if not self.validate_config():
            raise AlertConfigError(f"HTTP告警器配置无效: {name}", alert_name=name)

    def validate_config(self) -> bool:
        """
        验证配置参数是否有效

        Returns:
            bool: 配置是否有效
        """
        if not self.url:
            self.logger.error(f"HTTP告警器 {self.name} 缺少URL配置")
            return False

        parsed_url = urlparse(self.url)
        if not parsed_url.scheme or not parsed_url.netloc:
            self.logger.error(f"HTTP告警器 {self.name} URL格式无效: {self.url}")
            return False

        if self.method not in self.VALID_METHODS:
            self.logger.error(
                f"HTTP告警器 {self.name} 不支持的HTTP方法: {self.method}, "
                f"支持的方法: {self.VALID_METHODS}")
            return False

        if self.max_retries < 0 or self.retry_delay < 0:
            self.logger.error(f"HTTP告警器 {self.name} 重试次数和重试延迟不能为负数")
            return False

        if self.template and not self.template.strip():
            self.logger.error(f"HTTP告警器 {self.name} 模板不能为空")
            return False

        return True

    async def send_alert(self, event: AlertEvent) -> bool:
        """
        发送告警事件，失败时按指数退避重试

        Args:
            event: 告警事件

        Returns:
            bool: 发送是否成功

        Raises:
            AlertSendError: 所有重试均失败
        """
        self.logger.info(
            f"开始发送告警: 节点={event.endpoint_name}, 类型={event.event_type.value}")

        last_error = None
        for attempt in range(self.max_retries + 1):
            try:
                if await self._send_request(event):
                    if attempt > 0:
                        self.logger.info(f"HTTP告警器 {self.name} 重试第 {attempt} 次后发送成功")
                    return True
                last_error = "服务端返回错误响应"
            except AlertSendError as e:
                last_error = e.message
                self.logger.warning(
                    f"HTTP告警器 {self.name} 发送失败 "
                    f"(尝试 {attempt + 1}/{self.max_retries + 1}): {e.message}")

            if attempt < self.max_retries:
                delay = self.retry_delay * (self.retry_backoff ** attempt)
                self.logger.debug(f"等待 {delay:.2f} 秒后重试")
                await asyncio.sleep(delay)

        self.logger.error(f"HTTP告警器 {self.name} 所有重试均失败，放弃发送告警")
        raise AlertSendError(f"HTTP告警发送失败: {last_error}", alert_name=self.name)

    async def _send_request(self, event: AlertEvent) -> bool:
        """发送一次HTTP请求"""
        request_data = self._prepare_request_data(event)
        timeout = aiohttp.ClientTimeout(total=self.get_timeout())

        if not self.ssl_verify:
            self.logger.warning(f"HTTP告警器 {self.name} 已禁用SSL验证")
            connector = aiohttp.TCPConnector(ssl=False)
        else:
            connector = aiohttp.TCPConnector()

        try:
            async with aiohttp.ClientSession(timeout=timeout, connector=connector) as session:
                async with session.request(method=self.method, url=self.url,
                                           headers=self.headers, **request_data) as response:
                    body = await response.text()
                    if not 200 <= response.status < 300:
                        self.logger.warning(
                            f"HTTP告警器 {self.name} 收到错误响应 "
                            f"(状态码: {response.status}, 响应: {body[:200]})")
                        return False

                    try:
                        payload = json.loads(body) if body else None
                    except json.JSONDecodeError:
                        payload = None

                    # 钉钉等机器人以 errcode 表示业务错误
                    if isinstance(payload, dict) and payload.get('errcode', 0) != 0:
                        self.logger.error(
                            f"HTTP告警器 {self.name} 机器人返回错误: "
                            f"errcode={payload.get('errcode')}, errmsg={payload.get('errmsg')}")
                        return False

                    self.logger.debug(f"HTTP告警器 {self.name} 发送成功 (状态码: {response.status})")
                    return True

        except aiohttp.ClientError as e:
            raise AlertSendError(f"HTTP请求失败: {e}", alert_name=self.name, cause=e)
        except asyncio.TimeoutError as e:
            raise AlertSendError("HTTP请求超时", alert_name=self.name, cause=e)

    def _template_vars(self, event: AlertEvent) -> Dict[str, str]:
        template_vars = {
            'endpoint_id': event.endpoint_id,
            'endpoint_name': event.endpoint_name,
            'event_type': event.event_type.value,
            'title': event.title,
            'message': event.message,
            'success_rate': f"{event.success_rate:.1f}",
            'threshold': f"{event.threshold:.1f}",
            'latency_ms': str(event.latency_ms) if event.latency_ms is not None else '未知',
            'error_message': event.error_message or '无',
            'timestamp': event.timestamp.strftime('%Y-%m-%d %H:%M:%S'),
        }
        for key, value in event.metadata.items():
            template_vars[f'metadata_{key}'] = str(value)
        return template_vars

    def _render_template(self, template_str: str, event: AlertEvent) -> str:
        """
        渲染 {{variable}} 模板，JSON模板中的变量值会被转义

        Raises:
            AlertSendError: 渲染后的JSON无效
        """
        stripped = template_str.strip()
        is_json_template = stripped.startswith('{') and stripped.endswith('}')

        rendered = template_str
        for key, value in self._template_vars(event).items():
            if is_json_template:
                for raw, escaped in _JSON_ESCAPES:
                    value = value.replace(raw, escaped)
            rendered = rendered.replace(f'{{{{{key}}}}}', value)

        if is_json_template:
            try:
                json.loads(rendered)
            except json.JSONDecodeError as e:
                self.logger.error(f"渲染后的JSON格式无效: {e}")
                raise AlertSendError(f"渲染后的JSON格式无效: {e}", alert_name=self.name)

        return rendered

    def _prepare_request_data(self, event: AlertEvent) -> Dict[str, Any]:
        """准备请求参数：GET 使用查询参数，其余方法使用请求体"""
        if self.method == 'GET':
            params = {
                'endpoint_id': event.endpoint_id,
                'event_type': event.event_type.value,
                'success_rate': f"{event.success_rate:.1f}",
                'timestamp': event.timestamp.isoformat(),
            }
            if event.error_message:
                params['error_message'] = event.error_message
            return {'params': params}

        if not self.template:
            return {'json': event.to_dict()}

        rendered = self._render_template(self.template, event)
        try:
            return {'json': json.loads(rendered)}
        except json.JSONDecodeError:
            return {'data': rendered}

    def get_config_summary(self) -> Dict[str, Any]:
        """获取配置摘要"""
        return {
            'name': self.name,
            'type': 'http',
            'url': self.url,
            'method': self.method,
            'timeout': self.get_timeout(),
            'max_retries': self.max_retries,
            'retry_delay': self.retry_delay,
            'has_template': bool(self.template),
            'ssl_verify': self.ssl_verify,
        }
