"""
加密解密模块
支持 AES-128-CBC 加密的 M3U8 流解密
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, List

from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad

from .errors import EncryptionKeyError, DecryptError, HLSError

SUPPORTED_METHOD = "AES-128"
KEY_LENGTH = 16


@dataclass
class EncryptionInfo:
    """加密信息数据类（对应一个 #EXT-X-KEY 标签）"""
    method: str  # 加密方法: AES-128, SAMPLE-AES, NONE
    uri: Optional[str] = None  # 密钥 URI（已解析为绝对地址）
    iv: Optional[bytes] = None  # 初始向量 (16 bytes)
    key_format: str = "identity"  # 密钥格式
    key_format_versions: str = ""  # 密钥格式版本

    def is_encrypted(self) -> bool:
        """判断是否加密"""
        return self.method not in (None, "NONE", "")

    def to_dict(self) -> Dict:
        """转换为字典"""
        return {
            'method': self.method,
            'uri': self.uri,
            'iv': self.iv.hex() if self.iv else None,
            'key_format': self.key_format,
            'key_format_versions': self.key_format_versions,
        }


def generate_iv_from_sequence(sequence_number: int) -> bytes:
    """
    根据序列号生成 IV

    HLS 规范：如果没有显式 IV，使用媒体序列号作为 IV

    Args:
        sequence_number: 媒体片段序列号

    Returns:
        bytes: 16 字节 IV
    """
    return sequence_number.to_bytes(16, byteorder='big')


def parse_iv_string(iv_string: str) -> bytes:
    """
    解析 IV 字符串

    Args:
        iv_string: 十六进制 IV 字符串，如 "0x12345678..."

    Returns:
        bytes: 16 字节 IV

    Raises:
        ValueError: 不是合法的十六进制或超过 16 字节
    """
    if iv_string.startswith('0x') or iv_string.startswith('0X'):
        iv_string = iv_string[2:]

    if not iv_string or len(iv_string) > 32:
        raise ValueError(f"IV 长度无效: {iv_string!r}")

    # 确保是 32 个十六进制字符（16 字节）
    return bytes.fromhex(iv_string.zfill(32))


@dataclass
class KeyContext:
    """一次任务使用的密钥（整个任务只允许一把密钥）"""
    info: EncryptionInfo
    key: bytes

    def iv_for(self, segment) -> bytes:
        """片段的 IV：优先使用标签中的显式 IV，否则由序列号生成"""
        if segment.key is not None and segment.key.iv is not None:
            return segment.key.iv
        return generate_iv_from_sequence(segment.sequence)


class KeyResolver:
    """
    密钥解析器

    检查媒体播放列表中的 #EXT-X-KEY 标签，下载并缓存密钥
    """

    def __init__(self, transport):
        """
        Args:
            transport: 用于下载密钥的传输对象（需要提供 get(uri) 方法）
        """
        self.transport = transport
        self._cache: Dict[str, bytes] = {}
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def check_keys(keys: List[EncryptionInfo]) -> Optional[EncryptionInfo]:
        """
        校验播放列表中的所有密钥标签，返回生效的密钥

        第一个加密标签对整个任务生效；之后出现不同的密钥 URI
        或者切换为其他加密方式都视为不支持的密钥轮换

        Args:
            keys: 按出现顺序排列的密钥标签

        Returns:
            Optional[EncryptionInfo]: 生效的密钥，未加密时返回 None

        Raises:
            EncryptionKeyError: 不支持的加密方式或密钥轮换
        """
        active: Optional[EncryptionInfo] = None
        for info in keys:
            if not info.is_encrypted():
                if active is not None:
                    raise EncryptionKeyError("不支持的密钥轮换: 加密片段之后出现 METHOD=NONE")
                continue

            if info.method.upper() != SUPPORTED_METHOD:
                raise EncryptionKeyError(f"不支持的加密方式: {info.method}")
            if not info.uri:
                raise EncryptionKeyError("AES-128 加密但缺少密钥 URI")

            if active is None:
                active = info
            elif info.uri != active.uri:
                raise EncryptionKeyError(
                    f"不支持的密钥轮换: {active.uri} -> {info.uri}")
        return active

    def get_key(self, uri: str) -> bytes:
        """
        下载密钥（同一 URI 只下载一次）

        Args:
            uri: 密钥 URI

        Returns:
            bytes: 16 字节密钥

        Raises:
            EncryptionKeyError: 下载失败或密钥长度不正确
        """
        if uri in self._cache:
            return self._cache[uri]

        try:
            key_data = self.transport.get(uri)
        except HLSError as e:
            raise EncryptionKeyError(f"下载密钥失败: {uri} - {e}") from e

        if len(key_data) != KEY_LENGTH:
            raise EncryptionKeyError(
                f"密钥长度异常: {len(key_data)} bytes (期望 {KEY_LENGTH} bytes)")

        self._cache[uri] = key_data
        self.logger.info(f"成功下载密钥: {uri[:80]}")
        return key_data

    def resolve(self, playlist) -> Optional[KeyContext]:
        """
        解析媒体播放列表的加密信息

        Args:
            playlist: MediaPlaylist

        Returns:
            Optional[KeyContext]: 未加密时返回 None
        """
        info = self.check_keys(playlist.keys)
        if info is None:
            self.logger.info("播放列表未加密")
            return None
        return KeyContext(info=info, key=self.get_key(info.uri))


class AESDecryptor:
    """
    AES-128-CBC 解密器

    用于解密 HLS/M3U8 加密的 TS 片段，每个片段独立解密
    """

    def __init__(self, context: Optional[KeyContext] = None):
        self.context = context

    @property
    def active(self) -> bool:
        return self.context is not None

    @staticmethod
    def decrypt(encrypted_data: bytes, key: bytes, iv: bytes) -> bytes:
        """
        解密数据

        Args:
            encrypted_data: 加密的数据
            key: 16 字节密钥
            iv: 16 字节初始向量

        Returns:
            bytes: 解密并去除 PKCS7 填充后的数据

        Raises:
            DecryptError: 密文长度不是块大小的整数倍或填充错误
        """
        if not encrypted_data or len(encrypted_data) % AES.block_size != 0:
            raise DecryptError(f"密文长度无效: {len(encrypted_data)} bytes")

        cipher = AES.new(key, AES.MODE_CBC, iv)
        try:
            return unpad(cipher.decrypt(encrypted_data), AES.block_size)
        except ValueError as e:
            raise DecryptError(f"解密失败: {e}") from e

    def decrypt_segment(self, segment, payload: bytes) -> bytes:
        """
        解密单个片段，未加密的片段原样返回

        Args:
            segment: 片段
            payload: 下载得到的原始数据

        Returns:
            bytes: 明文数据
        """
        if self.context is None or segment.key is None or not segment.key.is_encrypted():
            return payload

        try:
            return self.decrypt(payload, self.context.key, self.context.iv_for(segment))
        except DecryptError as e:
            raise DecryptError(f"片段 {segment.index} {e}", index=segment.index) from e
