"""配置文件监控器"""

import asyncio
import inspect
import os
from typing import Any, Callable, Dict, List, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config_manager import ConfigManager
from ..utils.exceptions import ConfigError
from ..utils.log_manager import get_logger

ChangeCallback = Callable[[Dict[str, Any], Dict[str, Any]], Any]


class ConfigFileHandler(FileSystemEventHandler):
    """配置文件变更事件处理器（运行在 watchdog 线程中）"""

    def __init__(self, config_path: str, callback: Callable[[], None]):
        self.config_path = config_path
        self.callback = callback
        self.logger = get_logger('config_watcher.handler')

    def _matches(self, path: str) -> bool:
        return os.path.abspath(path) == self.config_path

    def on_modified(self, event):
        if not event.is_directory and self._matches(event.src_path):
            self.logger.info(f"检测到配置文件变更: {self.config_path}")
            self.callback()

    def on_moved(self, event):
        # 编辑器常用"写临时文件再改名"的方式保存
        if not event.is_directory and self._matches(event.dest_path):
            self.logger.info(f"检测到配置文件被替换: {self.config_path}")
            self.callback()


class ConfigWatcher:
    """
    配置文件监控器，支持热更新

    watchdog 事件在观察者线程中产生，重新加载统一切回事件循环执行；
    回调可以是普通函数，也可以是协程函数
    """

    def __init__(self, config_manager: ConfigManager,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.config_manager = config_manager
        self.loop = loop
        self.observer: Optional[Observer] = None
        self.change_callbacks: List[ChangeCallback] = []
        self._pending: set = set()
        self._running = False
        self.logger = get_logger('config_watcher')

    def add_change_callback(self, callback: ChangeCallback):
        self.change_callbacks.append(callback)

    def remove_change_callback(self, callback: ChangeCallback):
        if callback in self.change_callbacks:
            self.change_callbacks.remove(callback)

    def _schedule_reload(self):
        """由 watchdog 线程调用"""
        if self.loop is None or self.loop.is_closed():
            self.logger.warning("没有可用的事件循环，忽略配置变更事件")
            return
        self.loop.call_soon_threadsafe(self.check_for_changes)

    def check_for_changes(self) -> bool:
        """文件有变化时重新加载，返回是否重新加载成功"""
        if not self.config_manager.is_config_changed():
            return False
        return self._on_config_changed()

    def _on_config_changed(self) -> bool:
        """重新加载配置并通知回调，配置无效时保留旧配置"""
        old_config = self.config_manager.config.copy()
        try:
            new_config = self.config_manager.reload_config()
        except ConfigError as e:
            self.logger.error(f"配置重新加载失败，继续使用旧配置: {e.message}")
            # 避免同一个无效文件被反复加载
            self.config_manager.last_modified = os.path.getmtime(self.config_manager.config_path)
            return False

        self.logger.info("配置文件已重新加载")
        for callback in self.change_callbacks:
            try:
                outcome = callback(old_config, new_config)
                if inspect.isawaitable(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._pending.add(task)
                    task.add_done_callback(self._on_callback_done)
            except Exception as e:
                self.logger.error(f"配置变更回调执行失败: {e}")
        return True

    def _on_callback_done(self, task: asyncio.Future):
        self._pending.discard(task)
        if not task.cancelled() and task.exception():
            self.logger.error(f"配置变更回调执行失败: {task.exception()}")

    def start_watching(self):
        """开始监控配置文件"""
        if self._running:
            self.logger.warning("配置监控器已经在运行")
            return

        if self.loop is None:
            self.loop = asyncio.get_running_loop()

        config_path = os.path.abspath(self.config_manager.config_path)
        try:
            self.observer = Observer()
            self.observer.schedule(ConfigFileHandler(config_path, self._schedule_reload),
                                   os.path.dirname(config_path), recursive=False)
            self.observer.start()
        except OSError as e:
            self.logger.error(f"启动配置监控失败: {e}")
            raise ConfigError(f"启动配置监控失败: {e}", cause=e)

        self._running = True
        self.logger.info(f"开始监控配置文件: {self.config_manager.config_path}")

    def stop_watching(self):
        """停止监控配置文件"""
        if not self._running:
            return

        if self.observer:
            self.observer.stop()
            self.observer.join()
            self.observer = None

        self._running = False
        self.logger.info("配置文件监控已停止")

    def is_running(self) -> bool:
        return self._running

    async def watch_config_changes_async(self, check_interval: int = 5):
        """
        轮询方式监控配置变更，作为文件事件的兜底

        Args:
            check_interval: 检查间隔（秒）
        """
        self.logger.info(f"开始轮询监控配置文件变更，检查间隔: {check_interval}秒")

        while True:
            try:
                self.check_for_changes()
            except OSError as e:
                self.logger.error(f"配置监控过程中发生错误: {e}")
            await asyncio.sleep(check_interval)
