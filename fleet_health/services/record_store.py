"""探测记录存储

只追加的探测记录集合，为趋势分析、超时学习和成功率初始化提供数据，
可选地以 JSON Lines 格式持久化到文件
"""

import json
import os
from collections import defaultdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Any

from ..models.endpoint import TimeoutPolicy, utc_now
from ..models.health_check import ProbeRecord
from ..utils.exceptions import StateStoreError, ErrorCode
from ..utils.log_manager import get_logger
from .timeout_calibrator import TimeoutCalibrator, percentile


class ProbeRecordStore:
    """探测记录存储"""

    # 自动清理过期记录的最小间隔
    CLEANUP_INTERVAL = timedelta(hours=1)

    def __init__(self, records_file: Optional[str] = None,
                 calibrator: Optional[TimeoutCalibrator] = None,
                 retention_days: int = 30,
                 max_records_per_endpoint: int = 1000):
        """
        初始化记录存储

        Args:
            records_file: JSON Lines 持久化文件，为 None 时只保存在内存
            calibrator: 用于历史学习超时的校准器
            retention_days: 记录保留天数，追加时按小时自动清理
            max_records_per_endpoint: 每个节点最多保留的记录数，超出时丢弃最旧的
        """
        self.records_file = records_file
        self.calibrator = calibrator or TimeoutCalibrator()
        self.retention_days = retention_days
        self.max_records_per_endpoint = max_records_per_endpoint
        self._records: Dict[str, List[ProbeRecord]] = defaultdict(list)
        self._trimmed = 0
        self._last_cleanup = utc_now()
        self.logger = get_logger('service.record_store')

        if self.records_file:
            self._load()

    def append(self, record: ProbeRecord) -> None:
        """追加一条记录，超出单节点上限时丢弃最旧的记录"""
        records = self._records[record.endpoint_id]
        records.append(record)
        self._trim(records)
        if self.records_file:
            self._write_line(record)

        if utc_now() - self._last_cleanup >= self.CLEANUP_INTERVAL:
            try:
                self.cleanup(self.retention_days)
            except StateStoreError as e:
                self.logger.error(f"定期清理探测记录失败: {e}")

    def _trim(self, records: List[ProbeRecord]) -> None:
        overflow = len(records) - self.max_records_per_endpoint
        if overflow > 0:
            del records[:overflow]
            self._trimmed += overflow

    def get_records(self, endpoint_id: str, since: Optional[datetime] = None,
                    limit: Optional[int] = None) -> List[ProbeRecord]:
        """
        获取节点的探测记录，按时间倒序

        Args:
            endpoint_id: 节点ID
            since: 只返回此时间之后的记录
            limit: 最多返回的条数
        """
        records = self._records.get(endpoint_id, [])
        if since:
            records = [r for r in records if r.timestamp >= since]
        records = sorted(records, key=lambda r: r.timestamp, reverse=True)
        if limit:
            records = records[:limit]
        return records

    def outcomes(self, endpoint_id: str, limit: int = 20) -> List[bool]:
        """最近 limit 次探测的成败，按时间正序"""
        return [r.success for r in reversed(self.get_records(endpoint_id, limit=limit))]

    def get_stats(self, endpoint_id: str, limit: int = 100,
                  policy: Optional[TimeoutPolicy] = None) -> Dict[str, Any]:
        """
        统计最近 limit 条记录

        Returns:
            包含总数、成功率、平均/P95响应时间、最近错误和学习到的超时的字典
        """
        records = self.get_records(endpoint_id, limit=limit)
        successful = [r for r in records if r.success]
        times = [r.response_time_ms for r in successful if r.response_time_ms is not None]

        total = len(records)
        avg = round(sum(times) / len(times)) if times else None
        p95 = percentile(times, 95)

        return {
            'endpoint_id': endpoint_id,
            'total_attempts': total,
            'successful_attempts': len(successful),
            'success_rate': round(len(successful) * 100 / total) if total else 100,
            'avg_response_time_ms': avg,
            'p95_response_time_ms': p95,
            'learned_timeout_ms': self.calibrator.learn_from_history(policy or TimeoutPolicy(), times),
            'recent_errors': [
                {'message': r.error_message, 'timestamp': r.timestamp.isoformat()}
                for r in records if not r.success and r.error_message
            ][:5],
        }

    def get_hourly_history(self, endpoint_id: str, hours: int = 24,
                           now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        按小时汇总最近 hours 小时的探测记录

        没有探测的小时成功率记为 100
        """
        now = now or utc_now()
        current_hour = now.replace(minute=0, second=0, microsecond=0)
        start = current_hour - timedelta(hours=hours - 1)

        buckets: Dict[datetime, List[ProbeRecord]] = {
            start + timedelta(hours=i): [] for i in range(hours)}
        for record in self.get_records(endpoint_id, since=start):
            hour = record.timestamp.replace(minute=0, second=0, microsecond=0)
            if hour in buckets:
                buckets[hour].append(record)

        history = []
        for hour, records in buckets.items():
            times = [r.response_time_ms for r in records
                     if r.success and r.response_time_ms is not None]
            successes = sum(1 for r in records if r.success)
            history.append({
                'hour': hour.isoformat(),
                'success_rate': round(successes * 100 / len(records)) if records else 100,
                'avg_response_time_ms': round(sum(times) / len(times)) if times else None,
                'attempts': len(records),
            })

        attempts = sum(item['attempts'] for item in history)
        all_records = [r for records in buckets.values() for r in records]
        all_times = [r.response_time_ms for r in all_records
                     if r.success and r.response_time_ms is not None]
        return {
            'endpoint_id': endpoint_id,
            'history': history,
            'summary': {
                'total_attempts': attempts,
                'success_rate': round(sum(1 for r in all_records if r.success) * 100 / attempts)
                if attempts else 100,
                'avg_response_time_ms': round(sum(all_times) / len(all_times)) if all_times else None,
            },
        }

    def cleanup(self, keep_days: int = 30) -> int:
        """
        清理过期记录

        Args:
            keep_days: 保留天数

        Returns:
            int: 清理的记录数
        """
        now = utc_now()
        self._last_cleanup = now
        cutoff = now - timedelta(days=keep_days)
        removed = 0
        for endpoint_id in list(self._records):
            kept = [r for r in self._records[endpoint_id] if r.timestamp >= cutoff]
            removed += len(self._records[endpoint_id]) - len(kept)
            self._records[endpoint_id] = kept

        if removed:
            self.logger.info(f"清理了 {removed} 条过期探测记录")
        if (removed or self._trimmed) and self.records_file:
            self._rewrite()
        self._trimmed = 0
        return removed

    def remove_endpoint(self, endpoint_id: str) -> None:
        self._records.pop(endpoint_id, None)

    def count(self, endpoint_id: Optional[str] = None) -> int:
        if endpoint_id:
            return len(self._records.get(endpoint_id, []))
        return sum(len(records) for records in self._records.values())

    def _write_line(self, record: ProbeRecord) -> None:
        try:
            Path(self.records_file).parent.mkdir(parents=True, exist_ok=True)
            with open(self.records_file, 'a', encoding='utf-8') as f:
                f.write(json.dumps(record.to_dict(), ensure_ascii=False) + '\n')
        except OSError as e:
            self.logger.error(f"写入探测记录失败: {e}")

    def _rewrite(self) -> None:
        tmp_file = f'{self.records_file}.tmp'
        try:
            with open(tmp_file, 'w', encoding='utf-8') as f:
                for records in self._records.values():
                    for record in records:
                        f.write(json.dumps(record.to_dict(), ensure_ascii=False) + '\n')
            os.replace(tmp_file, self.records_file)
        except OSError as e:
            raise StateStoreError(f"重写探测记录文件失败: {e}",
                                  ErrorCode.STATE_PERSISTENCE_ERROR, cause=e)

    def _load(self) -> None:
        if not os.path.exists(self.records_file):
            return

        loaded = 0
        with open(self.records_file, 'r', encoding='utf-8') as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = ProbeRecord.from_dict(json.loads(line))
                except (ValueError, KeyError) as e:
                    self.logger.warning(f"跳过无效的探测记录（第 {line_no} 行）: {e}")
                    continue
                self._records[record.endpoint_id].append(record)
                loaded += 1

        for records in self._records.values():
            records.sort(key=lambda r: r.timestamp)
            self._trim(records)

        self.logger.info(f"从 {self.records_file} 加载了 {loaded} 条探测记录")
