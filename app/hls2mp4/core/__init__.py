"""
HLS2MP4 Core Module
核心下载、解密、合并、转码模块
"""

from .parser import M3U8Parser, PlaylistResolver
from .config import RunConfig, ConfigTemplates
from .crypto import (
    EncryptionInfo,
    KeyContext,
    KeyResolver,
    AESDecryptor,
)
from .downloader import M3U8Downloader, hls2mp4_run
from .download_handler import DownloadHandler
from .errors import (
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
from .merge_handler import OrderedAssembler
from .models import (
    ByteRange,
    Variant,
    MasterPlaylist,
    Segment,
    MediaPlaylist,
    FetchResult,
    DecryptedChunk,
    TranscodeJob,
)
from .progress import (
    EventPhase,
    ProgressEvent,
    FailureEvent,
    EventChannel,
    ConsoleProgress,
)
from .scheduler import SegmentScheduler
from .transcoder import (
    AccelType,
    TranscodeBackend,
    FFmpegBackend,
    HostBackend,
    TranscodeOrchestrator,
    register_host_transcoder,
    unregister_host_transcoder,
    registered_host_transcoders,
)
from .transport import Transport
from .utils import (
    format_file_size,
    format_time,
    print_banner,
    RetryHandler,
    setup_logger,
    create_session,
    extract_filename_from_url,
)
from .workspace import RunWorkspace, select_writable_temp_dir

__all__ = [
    # 主流程
    "M3U8Downloader",
    "hls2mp4_run",

    # 各阶段
    "M3U8Parser",
    "PlaylistResolver",
    "KeyResolver",
    "KeyContext",
    "AESDecryptor",
    "DownloadHandler",
    "SegmentScheduler",
    "OrderedAssembler",
    "TranscodeOrchestrator",
    "Transport",
    "RunWorkspace",
    "select_writable_temp_dir",

    # 转码后端
    "AccelType",
    "TranscodeBackend",
    "FFmpegBackend",
    "HostBackend",
    "register_host_transcoder",
    "unregister_host_transcoder",
    "registered_host_transcoders",

    # 配置
    "RunConfig",
    "ConfigTemplates",

    # 数据模型
    "EncryptionInfo",
    "ByteRange",
    "Variant",
    "MasterPlaylist",
    "Segment",
    "MediaPlaylist",
    "FetchResult",
    "DecryptedChunk",
    "TranscodeJob",

    # 进度事件
    "EventPhase",
    "ProgressEvent",
    "FailureEvent",
    "EventChannel",
    "ConsoleProgress",

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

    # 工具函数
    "format_file_size",
    "format_time",
    "print_banner",
    "RetryHandler",
    "setup_logger",
    "create_session",
    "extract_filename_from_url",
]
