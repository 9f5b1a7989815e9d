"""
异常模块
定义下载/解密/合并/转码各阶段的异常类型
"""

from typing import Optional


class HLSError(Exception):
    """所有运行期错误的基类"""

    phase = "error"


class ConfigError(HLSError):
    """配置参数错误（并发数、重试次数、码率、输出文件名等）"""

    phase = "config"


class PlaylistError(HLSError):
    """播放列表错误：无法获取、语法错误、没有可用的变体或片段"""

    phase = "playlist"


class EncryptionKeyError(HLSError):
    """密钥错误：无法获取密钥、不支持的加密方式、密钥轮换"""

    phase = "key"


class FetchError(HLSError):
    """片段在重试次数用尽后仍下载失败"""

    phase = "download"

    def __init__(self, message: str, index: int = -1, uri: str = "", attempts: int = 0):
        super().__init__(message)
        self.index = index
        self.uri = uri
        self.attempts = attempts


class DecryptError(HLSError):
    """解密失败（填充错误、密文被截断）"""

    phase = "decrypt"

    def __init__(self, message: str, index: Optional[int] = None):
        super().__init__(message)
        self.index = index


class AssemblyError(HLSError):
    """写入合并文件时发生 I/O 错误"""

    phase = "assemble"


class TranscodeError(HLSError):
    """没有可用的转码后端，或者转码后端执行失败"""

    phase = "transcode"


class RunCancelled(HLSError):
    """任务被调用方取消"""

    phase = "cancelled"
