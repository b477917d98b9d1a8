"""健康检查调度器模块

定时触发、恢复触发和手动触发都进入同一个触发队列，
由单一的分发循环串行处理，每个节点同一时间最多只有一个探测在进行。
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Any

from ..alerts.hysteresis import AlertHysteresisEngine
from ..alerts.manager import AlertManager
from ..models.endpoint import Endpoint, TimeoutPolicy
from ..models.health_check import (EndpointStatus, ErrorStage, HealthState, ProbeRecord,
                                   ProbeResult)
from ..probes.base import BaseProbe
from ..probes.factory import probe_factory
from ..utils.exceptions import CredentialError, SchedulerError
from ..utils.log_manager import get_logger
from .credential_store import CredentialStore
from .record_store import ProbeRecordStore
from .status_machine import StatusStateMachine
from .status_store import StatusStore
from .timeout_calibrator import TimeoutCalibrator

ResultCallback = Callable[[Endpoint, ProbeResult, EndpointStatus, TimeoutPolicy], Awaitable[None]]


class TriggerSource(Enum):
    """触发来源"""
    TICK = "tick"
    RESUME = "resume"
    MANUAL = "manual"


@dataclass
class TriggerEvent:
    """触发事件，endpoint_ids 为 None 表示全部活跃节点"""
    source: TriggerSource
    endpoint_ids: Optional[List[str]] = None
    future: Optional[asyncio.Future] = field(default=None, repr=False)


class HealthCheckScheduler:
    """健康检查调度器

    每个全量周期开始时先清理残留的 checking 状态，再为活跃节点下发探测；
    已有探测在进行的节点直接合并，不重复下发
    """

    def __init__(self, store: StatusStore, credential_store: CredentialStore,
                 calibrator: Optional[TimeoutCalibrator] = None,
                 state_machine: Optional[StatusStateMachine] = None,
                 hysteresis: Optional[AlertHysteresisEngine] = None,
                 alert_manager: Optional[AlertManager] = None,
                 record_store: Optional[ProbeRecordStore] = None,
                 check_interval: int = 120, max_concurrent_probes: int = 10,
                 auto_apply_timeout: bool = False,
                 probe_config: Optional[Dict[str, Any]] = None):
        """初始化调度器

        Args:
            store: 状态存储
            credential_store: 凭据存储
            calibrator: 超时校准器
            state_machine: 状态机
            hysteresis: 告警滞回引擎
            alert_manager: 告警管理器，为 None 时不发送告警
            record_store: 探测记录存储，为 None 时不保存记录
            check_interval: 定时检查间隔（秒）
            max_concurrent_probes: 最大并发探测数
            auto_apply_timeout: 是否自动应用推荐超时
            probe_config: 传给探测器的配置
        """
        self.store = store
        self.credential_store = credential_store
        self.calibrator = calibrator or TimeoutCalibrator()
        self.state_machine = state_machine or StatusStateMachine()
        self.hysteresis = hysteresis or AlertHysteresisEngine()
        self.alert_manager = alert_manager
        self.record_store = record_store
        self.check_interval = check_interval
        self.max_concurrent_probes = max_concurrent_probes
        self.auto_apply_timeout = auto_apply_timeout
        self.probe_config = probe_config or {}

        self.is_running = False
        self.cycle = 0
        self.semaphore = asyncio.Semaphore(max_concurrent_probes)
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._probes: Dict[str, BaseProbe] = {}
        self._triggers: Optional[asyncio.Queue] = None
        self._ticker_task: Optional[asyncio.Task] = None
        self._result_callbacks: List[ResultCallback] = []
        self.logger = get_logger('service.scheduler')

        self.stats = {
            'cycles': 0,
            'probes_dispatched': 0,
            'probes_coalesced': 0,
            'probes_succeeded': 0,
            'probes_failed': 0,
            'rollbacks': 0,
            'stale_checking_reset': 0,
            'stale_probes_cancelled': 0,
        }

    def add_result_callback(self, callback: ResultCallback):
        """注册探测完成回调"""
        self._result_callbacks.append(callback)

    def set_max_concurrent_probes(self, value: int):
        """修改并发上限，对之后下发的探测生效"""
        if value != self.max_concurrent_probes:
            self.max_concurrent_probes = value
            self.semaphore = asyncio.Semaphore(value)

    def _probe_for(self, endpoint: Endpoint) -> BaseProbe:
        if endpoint.endpoint_type not in self._probes:
            self._probes[endpoint.endpoint_type] = probe_factory.create_probe(
                endpoint.endpoint_type, self.probe_config)
        return self._probes[endpoint.endpoint_type]

    def set_probe(self, endpoint_type: str, probe: BaseProbe):
        """替换某类节点使用的探测器"""
        self._probes[endpoint_type] = probe

    # 生命周期

    async def start(self):
        """启动调度器，运行直到 stop() 被调用"""
        if self.is_running:
            self.logger.warning("调度器已经在运行")
            return

        self.is_running = True
        self._triggers = asyncio.Queue()
        self._ticker_task = asyncio.create_task(self._tick_loop())
        self.logger.info(
            f"启动健康检查调度器，检查间隔 {self.check_interval} 秒，"
            f"最大并发探测数 {self.max_concurrent_probes}")

        try:
            await self._dispatch_loop()
        except asyncio.CancelledError:
            self.logger.info("调度器被取消")
        finally:
            await self.stop()

    async def stop(self):
        """停止调度器并取消所有进行中的探测"""
        if not self.is_running and not self._in_flight:
            return

        self.is_running = False
        self.logger.info("正在停止健康检查调度器...")

        if self._ticker_task and not self._ticker_task.done():
            self._ticker_task.cancel()
        self._ticker_task = None

        if self._triggers:
            while not self._triggers.empty():
                trigger = self._triggers.get_nowait()
                if trigger and trigger.future and not trigger.future.done():
                    trigger.future.set_exception(SchedulerError("调度器已停止"))
            self._triggers.put_nowait(None)

        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

        if self.alert_manager:
            await self.alert_manager.drain()

        self.logger.info("健康检查调度器已停止")

    async def _tick_loop(self):
        while self.is_running:
            self._enqueue(TriggerEvent(TriggerSource.TICK))
            await asyncio.sleep(self.check_interval)

    async def _dispatch_loop(self):
        """串行处理触发事件"""
        while self.is_running:
            trigger = await self._triggers.get()
            if trigger is None:
                break

            try:
                dispatched = await self.run_cycle(trigger.endpoint_ids, trigger.source)
            except Exception as e:
                self.logger.error(f"处理触发事件 {trigger.source.value} 失败: {e}", exc_info=True)
                if trigger.future and not trigger.future.done():
                    trigger.future.set_exception(
                        SchedulerError(f"处理触发事件失败: {e}", cause=e))
                continue

            if trigger.future and not trigger.future.done():
                trigger.future.set_result(dispatched)

    def _enqueue(self, trigger: TriggerEvent):
        if self._triggers is None:
            raise SchedulerError("调度器未启动")
        self._triggers.put_nowait(trigger)

    # 触发入口

    def notify_resumed(self):
        """宿主环境恢复（重新可见）时立即全量检查"""
        if not self.is_running:
            self.logger.debug("调度器未运行，忽略恢复信号")
            return
        self.logger.info("收到恢复信号，触发全量检查")
        self._enqueue(TriggerEvent(TriggerSource.RESUME))

    async def request_check(self, endpoint_ids: Optional[List[str]] = None,
                            source: TriggerSource = TriggerSource.MANUAL
                            ) -> Dict[str, asyncio.Task]:
        """
        请求立即检查

        调度器运行时经由触发队列处理，未运行时直接执行一次

        Returns:
            Dict[str, asyncio.Task]: 节点ID到探测任务的映射（包括被合并的已有任务）
        """
        if not self.is_running:
            return await self.run_cycle(endpoint_ids, source)

        future = asyncio.get_running_loop().create_future()
        self._enqueue(TriggerEvent(source, endpoint_ids, future))
        return await future

    async def check_endpoint_now(self, endpoint_id: str) -> Optional[ProbeResult]:
        """
        手动检查单个节点并等待结果

        Returns:
            Optional[ProbeResult]: 探测结果，节点不存在、未激活或探测异常时为 None
        """
        dispatched = await self.request_check([endpoint_id])
        task = dispatched.get(endpoint_id)
        if task is None:
            return None
        results = await asyncio.gather(task, return_exceptions=True)
        result = results[0]
        return result if isinstance(result, ProbeResult) else None

    async def check_all_now(self) -> Dict[str, Optional[ProbeResult]]:
        """检查所有活跃节点并等待结果"""
        dispatched = await self.request_check(None)
        if not dispatched:
            return {}
        results = await asyncio.gather(*dispatched.values(), return_exceptions=True)
        return {
            endpoint_id: result if isinstance(result, ProbeResult) else None
            for endpoint_id, result in zip(dispatched.keys(), results)
        }

    # 周期

    async def run_cycle(self, endpoint_ids: Optional[List[str]] = None,
                        source: TriggerSource = TriggerSource.TICK) -> Dict[str, asyncio.Task]:
        """
        执行一次调度

        Args:
            endpoint_ids: 要检查的节点，None 表示全部活跃节点（全量周期）
            source: 触发来源

        Returns:
            Dict[str, asyncio.Task]: 节点ID到探测任务的映射
        """
        if endpoint_ids is None:
            self.cycle += 1
            self.stats['cycles'] += 1
            await self._sweep_stale_checking()
            targets = self.store.active_endpoints()
        else:
            targets = [self.store.get_endpoint(eid) for eid in endpoint_ids]
            targets = [e for e in targets if e is not None and e.active]

        dispatched: Dict[str, asyncio.Task] = {}
        for endpoint in targets:
            existing = self._in_flight.get(endpoint.id)
            if existing is not None and not existing.done():
                self.stats['probes_coalesced'] += 1
                self.logger.debug(f"节点 {endpoint.id} 已有探测在进行，合并本次请求")
                dispatched[endpoint.id] = existing
                continue

            async with self.store.lock(endpoint.id):
                status = self.store.get_status(endpoint.id)
                self.store.set_status(self.state_machine.mark_checking(status, self.cycle))

            task = asyncio.create_task(self._probe_endpoint(endpoint))
            self._in_flight[endpoint.id] = task
            task.add_done_callback(partial(self._release, endpoint.id))
            dispatched[endpoint.id] = task
            self.stats['probes_dispatched'] += 1

        self.logger.debug(
            f"{source.value} 触发，下发 {len(dispatched)} 个节点的探测（周期 {self.cycle}）")
        return dispatched

    def _release(self, endpoint_id: str, task: asyncio.Task):
        if self._in_flight.get(endpoint_id) is task:
            del self._in_flight[endpoint_id]

    async def _sweep_stale_checking(self):
        """清理残留的 checking 状态

        在本周期计数递增之后、下发之前调用。没有对应探测任务的 checking
        直接回退到 unknown；上个周期或更早下发、仍未返回的探测被取消，
        等待其回退完成后本周期再重新下发
        """
        stale_tasks = []
        for endpoint_id, status in self.store.all_statuses().items():
            if status.state != HealthState.CHECKING:
                continue

            task = self._in_flight.get(endpoint_id)
            if task is None or task.done():
                async with self.store.lock(endpoint_id):
                    current = self.store.get_status(endpoint_id)
                    if current.state == HealthState.CHECKING:
                        self.store.set_status(self.state_machine.rollback(current))
                        self.stats['stale_checking_reset'] += 1
                        self.logger.warning(f"节点 {endpoint_id} 残留 checking 状态，已回退为 unknown")
            elif status.checking_cycle is not None and status.checking_cycle < self.cycle:
                self.logger.warning(
                    f"节点 {endpoint_id} 的探测跨越周期未返回（下发于周期 {status.checking_cycle}），取消")
                task.cancel()
                stale_tasks.append(task)
                self.stats['stale_probes_cancelled'] += 1

        if stale_tasks:
            await asyncio.gather(*stale_tasks, return_exceptions=True)

    def is_in_flight(self, endpoint_id: str) -> bool:
        task = self._in_flight.get(endpoint_id)
        return task is not None and not task.done()

    # 单个节点的探测流水线

    async def _probe_endpoint(self, endpoint: Endpoint) -> Optional[ProbeResult]:
        try:
            async with self.semaphore:
                result = await self._execute_probe(endpoint)
            await self._handle_result(endpoint, result)
            return result
        except asyncio.CancelledError:
            await self._rollback(endpoint.id, "探测被取消")
            raise
        except Exception as e:
            self.logger.error(f"节点 {endpoint.id} 探测流程异常: {e}", exc_info=True)
            await self._rollback(endpoint.id, str(e))
            return None

    async def _execute_probe(self, endpoint: Endpoint) -> ProbeResult:
        policy = self.store.get_policy(endpoint.id)
        try:
            credential = self.credential_store.resolve(endpoint.id)
        except CredentialError as e:
            host, port, connection_type = endpoint.resolve_target()
            self.logger.error(f"节点 {endpoint.id} 凭据解析失败: {e.message}")
            return ProbeResult.failure(
                endpoint.id, ErrorStage.API, e.message,
                resolved_address=f'{host}:{port}', connection_type=connection_type,
                timeout_used_ms=policy.current_ms)

        return await self._probe_for(endpoint).probe(endpoint, credential, policy.current_ms)

    async def _handle_result(self, endpoint: Endpoint, result: ProbeResult):
        """把探测结果依次交给记录存储、校准器、状态机和告警引擎"""
        async with self.store.lock(endpoint.id):
            current = self.store.get_endpoint(endpoint.id)
            if current is None or not current.active:
                self.logger.debug(f"节点 {endpoint.id} 已停用，丢弃探测结果")
                return

            if self.record_store:
                self.record_store.append(ProbeRecord.from_result(result))

            policy = self.calibrator.recommend(self.store.get_policy(endpoint.id), result)
            if self.auto_apply_timeout and policy.current_ms != policy.recommended_ms:
                policy = self.calibrator.apply(policy)
                self.logger.info(f"节点 {endpoint.id} 已自动应用推荐超时 {policy.current_ms}ms")
            self.store.set_policy(endpoint.id, policy)

            status, transition = self.state_machine.record_result(
                self.store.get_status(endpoint.id), result)
            transition.endpoint_name = current.name
            self.store.set_status(status)

            events = self.hysteresis.process(transition)

        if result.success:
            self.stats['probes_succeeded'] += 1
        else:
            self.stats['probes_failed'] += 1
            self.logger.info(
                f"节点 {endpoint.id} 探测失败 [{result.error_stage.value}]: {result.error_message}")

        if self.alert_manager:
            for event in events:
                self.alert_manager.dispatch(event)

        for callback in self._result_callbacks:
            try:
                await callback(current, result, status, policy)
            except Exception as e:
                self.logger.error(f"探测结果回调执行失败: {e}")

    async def _rollback(self, endpoint_id: str, reason: str):
        async with self.store.lock(endpoint_id):
            if not self.store.has_endpoint(endpoint_id):
                return
            status = self.store.get_status(endpoint_id)
            if status.state == HealthState.CHECKING:
                self.store.set_status(self.state_machine.rollback(status))
                self.stats['rollbacks'] += 1
                self.logger.warning(f"节点 {endpoint_id} 回退为 unknown: {reason}")

    # 节点管理

    async def deactivate_endpoint(self, endpoint_id: str):
        """
        停用节点：取消进行中的探测，重置状态和超时，静默关闭告警周期
        """
        task = self._in_flight.pop(endpoint_id, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        async with self.store.lock(endpoint_id):
            self.store.deactivate(endpoint_id)
        self.state_machine.reset(endpoint_id)
        self.hysteresis.close_all(endpoint_id)

    def get_scheduler_stats(self) -> Dict[str, Any]:
        """获取调度器统计信息"""
        return {
            **self.stats,
            'is_running': self.is_running,
            'current_cycle': self.cycle,
            'in_flight': sorted(eid for eid in self._in_flight if self.is_in_flight(eid)),
            'check_interval': self.check_interval,
            'max_concurrent_probes': self.max_concurrent_probes,
            'active_endpoints': len(self.store.active_endpoints()),
        }
