#!/usr/bin/env python3
"""
节点群健康监控系统主应用程序入口

组装状态存储、探测调度、超时校准、状态机和告警组件，
负责启动、配置热更新、信号处理和优雅关闭。
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional, Dict, Any, List

from fleet_health.alerts.hysteresis import AlertHysteresisEngine
from fleet_health.alerts.manager import AlertManager
from fleet_health.models.endpoint import Endpoint, TimeoutPolicy
from fleet_health.models.health_check import (AlertEvent, AlertEventType, EndpointStatus,
                                              HealthState, ProbeResult)
from fleet_health.services.config_manager import ConfigManager
from fleet_health.services.config_watcher import ConfigWatcher
from fleet_health.services.credential_store import CredentialStore, encrypt_token
from fleet_health.services.monitor_scheduler import HealthCheckScheduler
from fleet_health.services.realtime_bus import InMemoryRealtimeBus
from fleet_health.services.realtime_reconciler import RealtimeReconciler
from fleet_health.services.record_store import ProbeRecordStore
from fleet_health.services.status_machine import StatusStateMachine
from fleet_health.services.status_store import StatusStore
from fleet_health.services.timeout_calibrator import TimeoutCalibrator
from fleet_health.utils.exceptions import FleetMonitorError, ConfigError
from fleet_health.utils.log_manager import log_manager, get_logger

# 版本信息
__version__ = "1.0.0"


class FleetMonitorApp:
    """节点群健康监控主应用程序类"""

    def __init__(self, config_path: str, log_overrides: Optional[Dict[str, Any]] = None):
        """初始化应用程序

        Args:
            config_path: 配置文件路径
            log_overrides: 命令行传入的日志设置，优先于配置文件
        """
        self.config_path = config_path
        self.logger: Optional[logging.Logger] = None
        self.is_running = False
        self.shutdown_event = asyncio.Event()
        self.log_overrides: Dict[str, Any] = dict(log_overrides or {})

        # 核心组件
        self.config_manager: Optional[ConfigManager] = None
        self.config_watcher: Optional[ConfigWatcher] = None
        self.status_store: Optional[StatusStore] = None
        self.record_store: Optional[ProbeRecordStore] = None
        self.credential_store: Optional[CredentialStore] = None
        self.calibrator: Optional[TimeoutCalibrator] = None
        self.state_machine: Optional[StatusStateMachine] = None
        self.hysteresis: Optional[AlertHysteresisEngine] = None
        self.alert_manager: Optional[AlertManager] = None
        self.scheduler: Optional[HealthCheckScheduler] = None
        self.realtime_bus: Optional[InMemoryRealtimeBus] = None
        self.reconciler: Optional[RealtimeReconciler] = None

        # 任务管理
        self.background_tasks = set()

    async def initialize(self):
        """初始化应用程序组件"""
        try:
            self.config_manager = ConfigManager(self.config_path)
            self.config_manager.load_config()
            global_config = self.config_manager.get_global_config()
            thresholds = self.config_manager.get_thresholds_config()
            timeouts = self.config_manager.get_timeouts_config()

            self._configure_logging(global_config)
            self.logger = get_logger('main')
            self.logger.info("开始初始化节点群健康监控系统")

            self.calibrator = TimeoutCalibrator(
                success_multiplier=timeouts['success_multiplier'],
                failure_multiplier=timeouts['failure_multiplier'])

            self.status_store = StatusStore(
                self._prepare_path(global_config.get('state_file')),
                default_timeout_ms=timeouts['default_ms'],
                floor_ms=timeouts['floor_ms'], ceiling_ms=timeouts['ceiling_ms'])
            self.record_store = ProbeRecordStore(
                self._prepare_path(global_config.get('records_file')), self.calibrator,
                retention_days=global_config.get('record_retention_days', 30),
                max_records_per_endpoint=global_config.get('max_records_per_endpoint', 1000))

            self.state_machine = StatusStateMachine(
                degraded_threshold=thresholds['degraded_success_rate'],
                latency_threshold_ms=thresholds['latency_ms'],
                window=thresholds['success_rate_window'])
            self.hysteresis = AlertHysteresisEngine(
                degraded_threshold=thresholds['degraded_success_rate'],
                latency_threshold_ms=thresholds['latency_ms'])

            self.credential_store = CredentialStore(
                self.config_manager.get_endpoints_config(),
                key_env=self.config_manager.get_credentials_config()['encryption_key_env'])
            self.alert_manager = AlertManager(self._sink_configs())

            for endpoint in self.config_manager.get_endpoints():
                self.status_store.register(endpoint)
                self.state_machine.seed(
                    endpoint.id,
                    self.record_store.outcomes(endpoint.id, thresholds['success_rate_window']))

            removed = self.record_store.cleanup(self.record_store.retention_days)
            if removed:
                self.logger.info(f"已清理 {removed} 条过期探测记录")

            self.scheduler = HealthCheckScheduler(
                self.status_store, self.credential_store,
                calibrator=self.calibrator,
                state_machine=self.state_machine,
                hysteresis=self.hysteresis,
                alert_manager=self.alert_manager,
                record_store=self.record_store,
                check_interval=global_config['check_interval'],
                max_concurrent_probes=global_config['max_concurrent_probes'],
                auto_apply_timeout=timeouts['auto_apply'],
                probe_config=global_config.get('probe', {}))

            tenant_id = global_config.get('tenant_id')
            if tenant_id:
                self.realtime_bus = InMemoryRealtimeBus()
                self.reconciler = RealtimeReconciler(self.status_store)
                self.reconciler.subscribe(self.realtime_bus, tenant_id)
                self.scheduler.add_result_callback(self._publish_status)

            self.config_watcher = ConfigWatcher(self.config_manager)
            self.config_watcher.add_change_callback(self._on_config_changed_callback)

            self.logger.info(
                f"应用程序组件初始化完成，共 {len(self.status_store.all_endpoints())} 个节点")

        except Exception as e:
            if self.logger:
                self.logger.error(f"应用程序初始化失败: {e}", exc_info=True)
            else:
                print(f"应用程序初始化失败: {e}", file=sys.stderr)
            raise

    def _configure_logging(self, global_config: Dict[str, Any]):
        """配置日志系统，命令行参数优先"""
        global_config = {**global_config, **self.log_overrides}
        log_config = {
            'log_level': global_config.get('log_level', 'INFO'),
            'enable_console': True,
            'enable_file': bool(global_config.get('log_file'))
        }

        if global_config.get('log_file'):
            log_config['log_file'] = global_config['log_file']
            log_config['max_file_size'] = global_config.get('max_log_size',
                                                            10 * 1024 * 1024)
            log_config['backup_count'] = global_config.get('log_backup_count', 5)

        log_manager.configure(log_config)

    @staticmethod
    def _prepare_path(path: Optional[str]) -> Optional[str]:
        """确保持久化文件所在目录存在"""
        if path:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        return path

    def _sink_configs(self) -> List[Dict[str, Any]]:
        """告警器配置，global.audit_file 会补充一个默认的审计告警器"""
        configs = list(self.config_manager.get_alerts_config())
        global_config = self.config_manager.get_global_config()
        audit_file = global_config.get('audit_file')
        if audit_file and not any(c.get('type') == 'audit' for c in configs):
            configs.append({
                'name': 'audit',
                'type': 'audit',
                'path': audit_file,
                'tenant_id': global_config.get('tenant_id'),
            })
        return configs

    async def _publish_status(self, endpoint: Endpoint, result: ProbeResult,
                              status: EndpointStatus, policy: TimeoutPolicy):
        """把探测后的节点行变更推送到实时总线"""
        tenant_id = endpoint.tenant_id or self.config_manager.get_global_config().get('tenant_id')
        if not tenant_id or self.realtime_bus is None:
            return
        payload = {
            'id': endpoint.id,
            'connection_status': status.state.value,
            'last_health_check_at': status.last_checked_at.isoformat()
            if status.last_checked_at else None,
            'health_check_error': status.last_error or '',
            'success_rate': status.success_rate,
            'avg_response_time_ms': status.latency_ms,
            'connection_timeout': policy.current_ms,
            'learned_timeout_ms': policy.recommended_ms,
            'updated_at': (policy.updated_at or status.updated_at).isoformat(),
        }
        await self.realtime_bus.publish(tenant_id, payload)

    async def _on_config_changed_callback(self, old_config: Dict[str, Any],
                                          new_config: Dict[str, Any]):
        """配置文件变更回调：重新应用阈值、间隔、节点和告警器"""
        self.logger.info("检测到配置文件变更，重新应用配置")
        manager = self.config_manager
        global_config = manager.get_global_config()
        thresholds = manager.get_thresholds_config()
        timeouts = manager.get_timeouts_config()

        self._configure_logging(global_config)

        self.state_machine.update_thresholds(
            degraded_threshold=thresholds['degraded_success_rate'],
            latency_threshold_ms=thresholds['latency_ms'],
            window=thresholds['success_rate_window'])
        self.hysteresis.update_thresholds(
            degraded_threshold=thresholds['degraded_success_rate'],
            latency_threshold_ms=thresholds['latency_ms'])

        self.calibrator.success_multiplier = timeouts['success_multiplier']
        self.calibrator.failure_multiplier = timeouts['failure_multiplier']
        self.status_store.update_bounds(timeouts['default_ms'], timeouts['floor_ms'],
                                        timeouts['ceiling_ms'])

        self.scheduler.check_interval = global_config['check_interval']
        self.scheduler.set_max_concurrent_probes(global_config['max_concurrent_probes'])
        self.scheduler.auto_apply_timeout = timeouts['auto_apply']

        self.credential_store.load(manager.get_endpoints_config())
        await self._apply_endpoints(manager.get_endpoints())

        try:
            self.alert_manager.reload(self._sink_configs())
        except FleetMonitorError as e:
            self.logger.error(f"重新加载告警器失败，保留原告警器: {e}")

        self.logger.info("配置重新应用完成")

    async def _apply_endpoints(self, endpoints: List[Endpoint]):
        """同步节点列表：新增的注册，删除或停用的节点执行停用流程"""
        configured = {endpoint.id for endpoint in endpoints}

        for endpoint in endpoints:
            existing = self.status_store.get_endpoint(endpoint.id)
            if not endpoint.active and existing is not None and existing.active:
                await self.scheduler.deactivate_endpoint(endpoint.id)
            self.status_store.register(endpoint)

        for endpoint in self.status_store.all_endpoints():
            if endpoint.id not in configured:
                await self.scheduler.deactivate_endpoint(endpoint.id)
                self.status_store.remove(endpoint.id)
                self.logger.info(f"节点 {endpoint.id} 已从配置中删除")

    async def start(self):
        """启动应用程序"""
        if self.is_running:
            self.logger.warning("应用程序已经在运行")
            return

        try:
            self.is_running = True
            self.logger.info("启动节点群健康监控系统")

            self.config_watcher.start_watching()

            config_watcher_task = asyncio.create_task(
                self.config_watcher.watch_config_changes_async()
            )
            self.background_tasks.add(config_watcher_task)
            config_watcher_task.add_done_callback(self.background_tasks.discard)

            scheduler_task = asyncio.create_task(self.scheduler.start())
            self.background_tasks.add(scheduler_task)
            scheduler_task.add_done_callback(self.background_tasks.discard)

            self.logger.info("节点群健康监控系统启动完成")

            await self.shutdown_event.wait()

        except Exception as e:
            self.logger.error(f"应用程序运行异常: {e}", exc_info=True)
            raise
        finally:
            await self.stop()

    async def stop(self):
        """停止应用程序"""
        if not self.is_running:
            return

        self.logger.info("正在停止节点群健康监控系统...")
        self.is_running = False

        if self.scheduler:
            await self.scheduler.stop()

        if self.config_watcher:
            self.config_watcher.stop_watching()

        if self.reconciler:
            self.reconciler.unsubscribe()

        for task in self.background_tasks:
            if not task.done():
                task.cancel()
        if self.background_tasks:
            await asyncio.gather(*self.background_tasks, return_exceptions=True)
        self.background_tasks.clear()

        if self.status_store:
            self.status_store.save()

        self.logger.info("节点群健康监控系统已停止")
        log_manager.cleanup()

    def shutdown(self):
        """触发应用程序关闭"""
        if self.logger:
            self.logger.info("收到关闭信号")
        self.shutdown_event.set()

    def resume(self):
        """宿主恢复（重新可见）时触发全量检查"""
        if self.scheduler:
            self.scheduler.notify_resumed()

    def get_status(self) -> Dict[str, Any]:
        """获取应用程序状态"""
        status = {
            'is_running': self.is_running,
            'config_path': self.config_path,
            'background_tasks_count': len(self.background_tasks)
        }

        if self.scheduler:
            status['scheduler_stats'] = self.scheduler.get_scheduler_stats()

        if self.status_store:
            status['fleet'] = self.status_store.live_stats()
            status['endpoints'] = {
                endpoint_id: item.to_dict()
                for endpoint_id, item in self.status_store.all_statuses().items()
            }

        if self.alert_manager:
            status['alert_stats'] = self.alert_manager.get_stats()

        if self.hysteresis:
            status['active_alerts'] = [e.to_dict() for e in self.hysteresis.active_episodes()]

        return status


# 全局应用程序实例
app: Optional[FleetMonitorApp] = None


def install_signal_handlers(application: FleetMonitorApp):
    """SIGINT/SIGTERM 优雅关闭，SIGUSR1 表示宿主恢复"""
    loop = asyncio.get_running_loop()

    def _handle(signum, frame):
        signal_name = signal.Signals(signum).name
        if signum == getattr(signal, 'SIGUSR1', None):
            loop.call_soon_threadsafe(application.resume)
            return
        print(f"\n收到信号 {signal_name} ({signum})")
        loop.call_soon_threadsafe(application.shutdown)

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)
    if hasattr(signal, 'SIGUSR1'):
        signal.signal(signal.SIGUSR1, _handle)


def create_argument_parser() -> argparse.ArgumentParser:
    """创建命令行参数解析器"""
    parser = argparse.ArgumentParser(
        prog='fleet-health',
        description='节点群健康监控系统 - 探测虚拟化节点连通性、自适应调整超时并发送告警',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例用法:
  %(prog)s config.yaml                          # 使用指定配置文件启动监控
  %(prog)s --validate config.yaml              # 验证配置文件格式
  %(prog)s --check-once config.yaml            # 执行一次全量检查并输出结果
  %(prog)s --test-alerts config.yaml           # 测试告警系统
  %(prog)s --encrypt-token TOKEN config.yaml   # 加密节点凭据
  %(prog)s --version                            # 显示版本信息

运行期间发送 SIGUSR1 可立即触发全量检查。
配置文件格式请参考 config/example.yaml
        """
    )

    parser.add_argument(
        'config_file',
        nargs='?',
        help='YAML配置文件路径'
    )

    parser.add_argument(
        '--version', '-v',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    parser.add_argument(
        '--validate',
        action='store_true',
        help='验证配置文件格式并退出'
    )

    parser.add_argument(
        '--test-alerts',
        action='store_true',
        help='发送一条测试告警后退出'
    )

    parser.add_argument(
        '--check-once',
        action='store_true',
        help='执行一次全量检查后退出，有节点不在线时返回非零'
    )

    parser.add_argument(
        '--encrypt-token',
        metavar='TOKEN',
        help='使用环境变量中的密钥加密凭据并输出密文'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='设置日志级别（覆盖配置文件设置）'
    )

    parser.add_argument(
        '--log-file',
        help='日志文件路径（覆盖配置文件设置）'
    )

    return parser


def validate_config_file(config_path: str) -> bool:
    """验证配置文件

    Returns:
        验证是否成功
    """
    print(f"正在验证配置文件: {config_path}")

    try:
        config_manager = ConfigManager(config_path)
        config_manager.load_config()
    except ConfigError as e:
        print(f"❌ 配置文件验证失败: {e.message}")
        return False

    endpoints = config_manager.get_endpoints()
    alerts = config_manager.get_alerts_config()

    print("✅ 配置文件验证成功!")
    print(f"   - 节点数量: {len(endpoints)}")
    print(f"   - 告警配置数量: {len(alerts)}")

    if endpoints:
        print("   - 配置的节点:")
        for endpoint in endpoints:
            host, port, connection_type = endpoint.resolve_target()
            flag = '' if endpoint.active else ' [已停用]'
            print(f"     * {endpoint.name} ({endpoint.endpoint_type}, "
                  f"{connection_type.value} {host}:{port}){flag}")

    if alerts:
        print("   - 配置的告警:")
        for alert_config in alerts:
            print(f"     * {alert_config['name']} ({alert_config['type']})")

    return True


def encrypt_credential(token: str, config_path: Optional[str]) -> bool:
    """加密凭据，密钥来自配置中指定的环境变量"""
    key_env = 'FLEET_ENCRYPTION_KEY'
    if config_path:
        config_manager = ConfigManager(config_path)
        try:
            config_manager.load_config()
        except ConfigError as e:
            print(f"❌ 配置文件加载失败: {e.message}", file=sys.stderr)
            return False
        key_env = config_manager.get_credentials_config()['encryption_key_env']

    key = os.environ.get(key_env)
    if not key:
        print(f"❌ 环境变量 {key_env} 未设置", file=sys.stderr)
        return False

    print(encrypt_token(token, key))
    return True


def get_log_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """从命令行参数中提取日志设置"""
    overrides = {}
    if args.log_level:
        overrides['log_level'] = args.log_level
    if args.log_file:
        overrides['log_file'] = args.log_file
    return overrides


async def run_alert_test(config_path: str,
                         log_overrides: Optional[Dict[str, Any]] = None) -> bool:
    """向所有告警器发送一条测试告警

    Returns:
        测试是否成功
    """
    print(f"正在测试告警系统: {config_path}")

    application = FleetMonitorApp(config_path, log_overrides)
    await application.initialize()

    if not application.alert_manager.alerters:
        print("❌ 没有配置任何告警器")
        return False

    event = AlertEvent(
        endpoint_id='alert-test',
        event_type=AlertEventType.OFFLINE,
        success_rate=0.0,
        threshold=application.hysteresis.degraded_threshold,
        endpoint_name='告警测试节点',
        message='这是一条测试告警，请忽略',
        error_message='测试告警',
    )
    results = await application.alert_manager.send_alert(event)

    for name, ok in results.items():
        print(f"   {'✅' if ok else '❌'} {name}")

    success = all(results.values())
    print("✅ 告警系统测试成功!" if success else "❌ 告警系统测试失败!")
    return success


async def check_once(config_path: str,
                     log_overrides: Optional[Dict[str, Any]] = None) -> bool:
    """执行一次全量检查

    Returns:
        是否所有活跃节点都在线
    """
    print(f"正在执行健康检查: {config_path}")

    application = FleetMonitorApp(config_path, log_overrides)
    await application.initialize()

    results = await application.scheduler.check_all_now()
    await application.alert_manager.drain()
    application.status_store.save()

    print(f"✅ 健康检查完成，共检查 {len(results)} 个节点:")

    all_online = True
    for endpoint_id in sorted(results):
        endpoint = application.status_store.get_endpoint(endpoint_id)
        status = application.status_store.get_status(endpoint_id)
        policy = application.status_store.get_policy(endpoint_id)
        timeouts = f"超时 {policy.current_ms}ms / 推荐 {policy.recommended_ms}ms"

        if status.state == HealthState.ONLINE:
            print(f"   ✅ {endpoint.name}: 在线 (延迟: {status.latency_ms}ms, {timeouts})")
            continue

        all_online = False
        if status.state == HealthState.DEGRADED:
            print(f"   ⚠️  {endpoint.name}: 性能下降 (延迟: {status.latency_ms}ms, "
                  f"成功率: {status.success_rate}%, {timeouts})")
        elif status.state == HealthState.OFFLINE:
            stage = status.last_error_stage.value if status.last_error_stage else 'unknown'
            print(f"   ❌ {endpoint.name}: 离线 [{stage}] {status.last_error} ({timeouts})")
        else:
            print(f"   ❌ {endpoint.name}: 检查失败")

    return all_online


async def main():
    """主函数"""
    global app

    parser = create_argument_parser()
    args = parser.parse_args()

    if args.encrypt_token:
        sys.exit(0 if encrypt_credential(args.encrypt_token, args.config_file) else 1)

    if not args.config_file:
        parser.print_help()
        sys.exit(1)

    config_path = args.config_file

    if not os.path.exists(config_path):
        print(f"配置文件不存在: {config_path}", file=sys.stderr)
        sys.exit(1)

    if args.validate:
        sys.exit(0 if validate_config_file(config_path) else 1)

    log_overrides = get_log_overrides(args)

    try:
        if args.test_alerts:
            sys.exit(0 if await run_alert_test(config_path, log_overrides) else 1)

        if args.check_once:
            sys.exit(0 if await check_once(config_path, log_overrides) else 1)

        app = FleetMonitorApp(config_path, log_overrides)

        await app.initialize()
        install_signal_handlers(app)

        print(f"节点群健康监控系统 v{__version__} 已启动")
        print(f"配置文件: {config_path}")
        print("按 Ctrl+C 停止程序")

        await app.start()

    except KeyboardInterrupt:
        print("\n用户中断程序")
    except ConfigError as e:
        print(f"配置错误: {e}", file=sys.stderr)
        sys.exit(1)
    except FleetMonitorError as e:
        print(f"健康监控系统错误: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        if app:
            await app.stop()


def cli():
    """命令行入口"""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
