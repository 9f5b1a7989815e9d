"""
HLS2MP4 Package
M3U8 视频下载并转换为 MP4，支持并发下载、失败重试、AES-128 解密、硬件转码
"""

from .core.downloader import M3U8Downloader, hls2mp4_run
from .core.parser import M3U8Parser
from .core.config import RunConfig, ConfigTemplates
from .core.errors import (
    HLSError,
    ConfigError,
    PlaylistError,
    EncryptionKeyError,
    FetchError,
    DecryptError,
    AssemblyError,
    TranscodeError,
    RunCancelled,
)
from .core.progress import EventPhase, ProgressEvent, FailureEvent, EventChannel
from .core.transcoder import (
    register_host_transcoder,
    unregister_host_transcoder,
    registered_host_transcoders,
)
from .core.utils import format_file_size, format_time, print_banner

__version__ = "1.0.0"
__all__ = [
    # 基础功能
    "M3U8Downloader",
    "hls2mp4_run",
    "M3U8Parser",
    "RunConfig",
    "ConfigTemplates",

    # 进度事件
    "EventPhase",
    "ProgressEvent",
    "FailureEvent",
    "EventChannel",

    # 宿主转码器
    "register_host_transcoder",
    "unregister_host_transcoder",
    "registered_host_transcoders",

    # 异常
    "HLSError",
    "ConfigError",
    "PlaylistError",
    "EncryptionKeyError",
    "FetchError",
    "DecryptError",
    "AssemblyError",
    "TranscodeError",
    "RunCancelled",

    # 工具类
    "format_file_size",
    "format_time",
    "print_banner",
]
