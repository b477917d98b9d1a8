"""自定义异常类和错误代码"""

import traceback
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime


class ErrorCode(Enum):
    """错误代码枚举"""
    # 通用错误 (1000-1999)
    UNKNOWN_ERROR = 1000

    # 配置错误 (2000-2999)
    CONFIG_FILE_NOT_FOUND = 2000
    CONFIG_PARSE_ERROR = 2001
    CONFIG_VALIDATION_ERROR = 2002

    # 探测错误 (3000-3999)
    PROBE_ERROR = 3000
    API_ERROR = 3003

    # 凭据错误 (3500-3599)
    CREDENTIAL_NOT_FOUND = 3500
    CREDENTIAL_DECRYPTION_FAILED = 3501

    # 告警错误 (4000-4999)
    ALERT_CONFIG_ERROR = 4000
    ALERT_SEND_ERROR = 4001

    # 调度错误 (5000-5999)
    SCHEDULER_ERROR = 5000

    # 状态存储错误 (6000-6999)
    STATE_STORE_ERROR = 6000
    STATE_PERSISTENCE_ERROR = 6001


class FleetMonitorError(Exception):
    """节点监控系统基础异常类"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = True
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.cause = cause
        self.recoverable = recoverable
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """将异常转换为字典格式"""
        return {
            'error_code': self.error_code.value,
            'error_name': self.error_code.name,
            'message': self.message,
            'details': self.details,
            'recoverable': self.recoverable,
            'timestamp': self.timestamp.isoformat(),
            'cause': str(self.cause) if self.cause else None,
            'traceback': traceback.format_exc() if self.cause else None
        }

    def format_error(self) -> str:
        """格式化错误信息"""
        error_msg = f"[{self.error_code.name}] {self.message}"
        if self.details:
            details_str = ", ".join([f"{k}={v}" for k, v in self.details.items()])
            error_msg += f" (详情: {details_str})"
        if self.cause:
            error_msg += f" (原因: {str(self.cause)})"
        return error_msg


class ConfigError(FleetMonitorError):
    """配置相关异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFIG_VALIDATION_ERROR,
        config_path: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if config_path:
            details['config_path'] = config_path
        super().__init__(message, error_code, details, **kwargs)


class ProbeError(FleetMonitorError):
    """探测相关异常

    用于表示已经收到响应但应用层返回错误（非2xx、错误负载）的情况
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.API_ERROR,
        endpoint_id: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if endpoint_id:
            details['endpoint_id'] = endpoint_id
        if status_code is not None:
            details['status_code'] = status_code
        self.status_code = status_code
        super().__init__(message, error_code, details, **kwargs)


class CredentialError(FleetMonitorError):
    """凭据解析相关异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CREDENTIAL_NOT_FOUND,
        endpoint_id: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if endpoint_id:
            details['endpoint_id'] = endpoint_id
        super().__init__(message, error_code, details, recoverable=False, **kwargs)


class CredentialNotFoundError(CredentialError):
    """凭据不存在"""

    def __init__(self, message: str, endpoint_id: Optional[str] = None, **kwargs):
        super().__init__(message, ErrorCode.CREDENTIAL_NOT_FOUND,
                         endpoint_id=endpoint_id, **kwargs)


class CredentialDecryptionError(CredentialError):
    """凭据解密失败"""

    def __init__(self, message: str, endpoint_id: Optional[str] = None, **kwargs):
        super().__init__(message, ErrorCode.CREDENTIAL_DECRYPTION_FAILED,
                         endpoint_id=endpoint_id, **kwargs)


class AlertError(FleetMonitorError):
    """告警相关异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.ALERT_SEND_ERROR,
        alert_name: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if alert_name:
            details['alert_name'] = alert_name
        super().__init__(message, error_code, details, **kwargs)


class AlertConfigError(AlertError):
    """告警配置异常"""

    def __init__(self, message: str, alert_name: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            ErrorCode.ALERT_CONFIG_ERROR,
            alert_name=alert_name,
            recoverable=False,
            **kwargs
        )


class AlertSendError(AlertError):
    """告警发送异常"""

    def __init__(self, message: str, alert_name: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            ErrorCode.ALERT_SEND_ERROR,
            alert_name=alert_name,
            recoverable=True,
            **kwargs
        )


class SchedulerError(FleetMonitorError):
    """调度器相关异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.SCHEDULER_ERROR,
        endpoint_id: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if endpoint_id:
            details['endpoint_id'] = endpoint_id
        super().__init__(message, error_code, details, **kwargs)


class StateStoreError(FleetMonitorError):
    """状态存储相关异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.STATE_STORE_ERROR,
        **kwargs
    ):
        super().__init__(message, error_code, **kwargs)
