"""凭据存储：解析节点的API令牌"""

import base64
import binascii
import os
from typing import Dict, Any, Optional

from ..utils.exceptions import CredentialNotFoundError, CredentialDecryptionError
from ..utils.log_manager import get_logger

DEFAULT_KEY_ENV = 'FLEET_ENCRYPTION_KEY'


def _xor(data: bytes, key: bytes) -> bytes:
    return bytes(b ^ key[i % len(key)] for i, b in enumerate(data))


def encrypt_token(token: str, key: str) -> str:
    """
    加密令牌：按字节与密钥循环异或后做 base64 编码

    Args:
        token: 明文令牌
        key: 加密密钥

    Returns:
        str: 密文
    """
    if not key:
        raise ValueError("加密密钥不能为空")
    return base64.b64encode(_xor(token.encode('utf-8'), key.encode('utf-8'))).decode('ascii')


def decrypt_token(ciphertext: str, key: str) -> str:
    """
    解密 encrypt_token 生成的密文

    Raises:
        ValueError: 密文不是合法的 base64 或解密结果不是 UTF-8
    """
    if not key:
        raise ValueError("加密密钥不能为空")
    try:
        raw = base64.b64decode(ciphertext, validate=True)
    except binascii.Error as e:
        raise ValueError(f"密文不是合法的base64: {e}") from e
    try:
        return _xor(raw, key.encode('utf-8')).decode('utf-8')
    except UnicodeDecodeError as e:
        raise ValueError("解密结果不是合法的UTF-8文本") from e


class CredentialStore:
    """
    凭据存储

    令牌可以明文配置（token），也可以加密配置（token_encrypted），
    加密密钥从环境变量读取
    """

    def __init__(self, endpoint_configs: Optional[Dict[str, Dict[str, Any]]] = None,
                 key_env: str = DEFAULT_KEY_ENV):
        self.key_env = key_env
        self._configs: Dict[str, Dict[str, Any]] = {}
        self.logger = get_logger('service.credential_store')
        self.load(endpoint_configs or {})

    def load(self, endpoint_configs: Dict[str, Dict[str, Any]]) -> None:
        """替换全部节点的凭据配置"""
        self._configs = {
            endpoint_id: {key: config[key] for key in ('token', 'token_encrypted') if key in config}
            for endpoint_id, config in endpoint_configs.items()
        }

    def has_credential(self, endpoint_id: str) -> bool:
        return bool(self._configs.get(endpoint_id))

    def resolve(self, endpoint_id: str) -> str:
        """
        解析节点的访问凭据

        Args:
            endpoint_id: 节点ID

        Returns:
            str: 明文令牌

        Raises:
            CredentialNotFoundError: 没有配置凭据
            CredentialDecryptionError: 无法解密
        """
        config = self._configs.get(endpoint_id)
        if not config:
            raise CredentialNotFoundError(f"节点 {endpoint_id} 没有配置凭据", endpoint_id=endpoint_id)

        if config.get('token'):
            return str(config['token'])

        ciphertext = config.get('token_encrypted')
        if not ciphertext:
            raise CredentialNotFoundError(f"节点 {endpoint_id} 的凭据为空", endpoint_id=endpoint_id)

        key = os.environ.get(self.key_env)
        if not key:
            raise CredentialDecryptionError(
                f"环境变量 {self.key_env} 未设置，无法解密节点 {endpoint_id} 的凭据",
                endpoint_id=endpoint_id)

        try:
            return decrypt_token(ciphertext, key)
        except ValueError as e:
            raise CredentialDecryptionError(
                f"节点 {endpoint_id} 的凭据解密失败: {e}", endpoint_id=endpoint_id, cause=e)
