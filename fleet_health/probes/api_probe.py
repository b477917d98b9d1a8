"""虚拟化管理接口连通性探测器"""

import asyncio
import socket
import ssl
import time
from typing import Dict, Any, Optional, Iterator

import aiohttp

from .base import BaseProbe
from .factory import register_probe
from ..models.endpoint import Endpoint, ConnectionType
from ..models.health_check import ProbeResult, ProbeTiming, ErrorStage
from ..utils.exceptions import ProbeError

# 无法单独测量时 TCP/TLS 占用的时间比例
TCP_SHARE = 0.15
TLS_SHARE = 0.25

_DNS_MARKERS = ('getaddrinfo', 'enotfound', 'name or service not known',
                'temporary failure in name resolution', 'nodename nor servname')
# aiohttp 的连接错误信息带有 "ssl:default" 字样，不能简单匹配 "ssl"
_TLS_MARKERS = ('certificate', '[ssl', 'ssl handshake', 'tls handshake',
                'wrong version number', 'ssl error')


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """遍历异常及其原因链（包括 aiohttp 包装的 os_error）"""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        os_error = getattr(current, 'os_error', None)
        if isinstance(os_error, BaseException) and id(os_error) not in seen:
            yield os_error
            seen.add(id(os_error))
        current = current.__cause__ or current.__context__


def classify_error(exc: BaseException, response_received: bool = False) -> ErrorStage:
    """
    按优先级判定失败所处阶段：TLS > DNS > 超时 > 应用层 > TCP

    Args:
        exc: 探测过程中出现的异常
        response_received: 是否已经收到响应

    Returns:
        ErrorStage: 失败阶段
    """
    chain = list(_exception_chain(exc))
    text = ' '.join(str(item) for item in chain).lower()

    if any(isinstance(item, (ssl.SSLError, ssl.CertificateError, aiohttp.ClientSSLError))
           for item in chain) or any(marker in text for marker in _TLS_MARKERS):
        return ErrorStage.TLS

    if any(isinstance(item, socket.gaierror) for item in chain) or \
            any(marker in text for marker in _DNS_MARKERS):
        return ErrorStage.DNS

    if any(isinstance(item, asyncio.TimeoutError) for item in chain) or \
            'timeout' in text or 'timed out' in text:
        return ErrorStage.TCP

    if response_received or isinstance(exc, ProbeError):
        return ErrorStage.API

    return ErrorStage.TCP


def apportion_timing(total_ms: float, headers_ms: float, api_ms: float,
                     dns_ms: float = 0, connect_ms: Optional[float] = None,
                     secure: bool = True) -> ProbeTiming:
    """
    计算各阶段耗时

    connect_ms 为实测的建连耗时（TCP+TLS），按 15:25 拆分；
    未测得时按请求到响应头耗时的固定比例估算

    Args:
        total_ms: 整次请求耗时
        headers_ms: 请求开始到收到响应头的耗时
        api_ms: 收到响应头到解析完响应体的耗时
        dns_ms: 实测DNS解析耗时
        connect_ms: 实测建连耗时
        secure: 是否使用TLS
    """
    if connect_ms is None:
        tcp_ms = headers_ms * TCP_SHARE
        tls_ms = headers_ms * TLS_SHARE if secure else 0
    elif secure:
        tcp_ms = connect_ms * TCP_SHARE / (TCP_SHARE + TLS_SHARE)
        tls_ms = connect_ms - tcp_ms
    else:
        tcp_ms = connect_ms
        tls_ms = 0

    return ProbeTiming(
        dns_ms=max(0, round(dns_ms)),
        tcp_ms=max(0, round(tcp_ms)),
        tls_ms=max(0, round(tls_ms)),
        api_ms=max(0, round(api_ms)),
        total_ms=max(0, round(total_ms)),
    )


class _StageClock:
    """通过 aiohttp 请求跟踪记录各阶段时间点（只记录首次连接）"""

    def __init__(self):
        self.started = time.monotonic()
        self.dns_start: Optional[float] = None
        self.dns_end: Optional[float] = None
        self.connect_start: Optional[float] = None
        self.connect_end: Optional[float] = None
        self.headers_at: Optional[float] = None
        self.parsed_at: Optional[float] = None

    def trace_config(self) -> aiohttp.TraceConfig:
        trace_config = aiohttp.TraceConfig()
        trace_config.on_dns_resolvehost_start.append(self._mark('dns_start'))
        trace_config.on_dns_resolvehost_end.append(self._mark('dns_end'))
        trace_config.on_connection_create_start.append(self._mark('connect_start'))
        trace_config.on_connection_create_end.append(self._mark('connect_end'))
        return trace_config

    def _mark(self, attr: str):
        async def handler(session, trace_config_ctx, params):
            if getattr(self, attr) is None:
                setattr(self, attr, time.monotonic())
        return handler

    @staticmethod
    def _span(start: Optional[float], end: Optional[float]) -> Optional[float]:
        if start is None or end is None:
            return None
        return (end - start) * 1000

    def dns_ms(self) -> float:
        return self._span(self.dns_start, self.dns_end) or 0

    def elapsed_ms(self, until: Optional[float] = None) -> float:
        return ((until or time.monotonic()) - self.started) * 1000

    def timing(self, secure: bool) -> ProbeTiming:
        dns_ms = self.dns_ms()
        connect_ms = self._span(self.connect_start, self.connect_end)
        if connect_ms is not None:
            connect_ms = max(0.0, connect_ms - dns_ms)
        return apportion_timing(
            total_ms=self.elapsed_ms(self.parsed_at),
            headers_ms=self.elapsed_ms(self.headers_at),
            api_ms=self._span(self.headers_at, self.parsed_at) or 0,
            dns_ms=dns_ms,
            connect_ms=connect_ms,
            secure=secure,
        )


@register_probe('proxmox')
class HypervisorProbe(BaseProbe):
    """
    虚拟化管理接口探测器

    请求轻量的版本接口判断连通性，成功后在剩余时间预算内
    额外查询节点数量，该查询失败不影响探测结果
    """

    DEFAULT_STATUS_PATH = '/api2/json/version'
    DEFAULT_INFO_PATH = '/api2/json/nodes'
    DEFAULT_AUTH_SCHEME = 'PVEAPIToken'

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.status_path = self.config.get('status_path', self.DEFAULT_STATUS_PATH)
        self.info_path = self.config.get('info_path', self.DEFAULT_INFO_PATH)
        self.auth_scheme = self.config.get('auth_scheme', self.DEFAULT_AUTH_SCHEME)

    @staticmethod
    def _build_url(scheme: str, host: str, port: int, path: str) -> str:
        if ':' in host and not host.startswith('['):
            host = f'[{host}]'
        return f'{scheme}://{host}:{port}{path}'

    def _build_headers(self, credential: str) -> Dict[str, str]:
        return {
            'Authorization': f'{self.auth_scheme}={credential}',
            'Accept': 'application/json',
        }

    async def probe(self, endpoint: Endpoint, credential: str, timeout_ms: int) -> ProbeResult:
        """
        执行一次探测

        Args:
            endpoint: 被探测的节点
            credential: API令牌
            timeout_ms: 硬性截止时间（毫秒）

        Returns:
            ProbeResult: 探测结果，失败时带有错误阶段和错误信息
        """
        host, port, connection_type = endpoint.resolve_target()
        secure = endpoint.scheme == 'https'
        tunnel_info = None
        if connection_type == ConnectionType.TUNNEL:
            tunnel_info = {'hostname': host, 'port': port}

        base = dict(
            resolved_address=f'{host}:{port}',
            connection_type=connection_type,
            tunnel_info=tunnel_info,
            timeout_used_ms=timeout_ms,
        )

        clock = _StageClock()
        deadline = clock.started + timeout_ms / 1000
        headers = self._build_headers(credential)
        connector = aiohttp.TCPConnector(ssl=False) if not endpoint.verify_tls else aiohttp.TCPConnector()
        timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000)

        self.logger.debug(f"探测节点 {endpoint.id} -> {host}:{port}（超时 {timeout_ms}ms）")

        async with aiohttp.ClientSession(connector=connector, timeout=timeout,
                                         trace_configs=[clock.trace_config()]) as session:
            try:
                version = await asyncio.wait_for(
                    self._fetch_version(session, self._build_url(endpoint.scheme, host, port,
                                                                 self.status_path),
                                        headers, endpoint.id, clock),
                    timeout=timeout_ms / 1000)
            except (aiohttp.ClientError, asyncio.TimeoutError, ProbeError, OSError, ValueError) as e:
                stage = classify_error(e, clock.headers_at is not None)
                message = self._describe_error(e, stage, timeout_ms)
                self.logger.debug(f"节点 {endpoint.id} 探测失败 [{stage.value}]: {message}")
                failed_timing = ProbeTiming(
                    dns_ms=max(0, round(clock.dns_ms())),
                    total_ms=round(clock.elapsed_ms()))
                return ProbeResult.failure(endpoint.id, stage, message, timing=failed_timing, **base)

            timing = clock.timing(secure)
            node_count = None
            remaining = deadline - time.monotonic()
            if remaining > 0:
                node_count = await self._fetch_node_count(
                    session, self._build_url(endpoint.scheme, host, port, self.info_path),
                    headers, endpoint.id, remaining)

        return ProbeResult(endpoint_id=endpoint.id, success=True, timing=timing,
                           remote_version=version, node_count=node_count, **base)

    async def _fetch_version(self, session: aiohttp.ClientSession, url: str,
                             headers: Dict[str, str], endpoint_id: str,
                             clock: _StageClock) -> Optional[str]:
        """请求版本接口，返回远端版本号"""
        async with session.get(url, headers=headers) as response:
            clock.headers_at = time.monotonic()
            try:
                payload = await response.json(content_type=None)
            except ValueError:
                payload = None
            clock.parsed_at = time.monotonic()

            errors = payload.get('errors') if isinstance(payload, dict) else None
            if not 200 <= response.status < 300 or errors:
                detail = errors if errors else f'HTTP {response.status}'
                raise ProbeError(f"接口返回错误: {detail}", endpoint_id=endpoint_id,
                                 status_code=response.status)

            data = payload.get('data') if isinstance(payload, dict) else None
            if isinstance(data, dict) and data.get('version') is not None:
                return str(data['version'])
            return None

    async def _fetch_node_count(self, session: aiohttp.ClientSession, url: str,
                                headers: Dict[str, str], endpoint_id: str,
                                budget_s: float) -> Optional[int]:
        """在剩余时间预算内查询节点数量，失败时返回 None"""
        async def fetch() -> Optional[int]:
            async with session.get(url, headers=headers) as response:
                if not 200 <= response.status < 300:
                    return None
                payload = await response.json(content_type=None)
                data = payload.get('data') if isinstance(payload, dict) else None
                return len(data) if isinstance(data, list) else None

        try:
            return await asyncio.wait_for(fetch(), timeout=budget_s)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            self.logger.debug(f"节点 {endpoint_id} 节点数量查询失败，已忽略: {e}")
            return None

    @staticmethod
    def _describe_error(exc: BaseException, stage: ErrorStage, timeout_ms: int) -> str:
        if isinstance(exc, asyncio.TimeoutError):
            return f"请求超时（超过 {timeout_ms}ms）"
        if isinstance(exc, ProbeError):
            return exc.message
        message = str(exc) or exc.__class__.__name__
        if stage == ErrorStage.DNS:
            return f"域名解析失败: {message}"
        if stage == ErrorStage.TLS:
            return f"TLS握手失败: {message}"
        return f"连接失败: {message}"
