"""服务模块"""

from .config_manager import ConfigManager
from .config_watcher import ConfigWatcher
from .credential_store import CredentialStore, encrypt_token, decrypt_token
from .monitor_scheduler import HealthCheckScheduler, TriggerSource, TriggerEvent
from .realtime_bus import BaseRealtimeBus, InMemoryRealtimeBus
from .realtime_reconciler import RealtimeReconciler
from .record_store import ProbeRecordStore
from .status_machine import StatusStateMachine, RollingSuccessRate
from .status_store import StatusStore
from .timeout_calibrator import TimeoutCalibrator, percentile

__all__ = [
    'ConfigManager', 'ConfigWatcher', 'CredentialStore', 'encrypt_token', 'decrypt_token',
    'HealthCheckScheduler', 'TriggerSource', 'TriggerEvent', 'BaseRealtimeBus',
    'InMemoryRealtimeBus', 'RealtimeReconciler', 'ProbeRecordStore', 'StatusStateMachine',
    'RollingSuccessRate', 'StatusStore', 'TimeoutCalibrator', 'percentile'
]
