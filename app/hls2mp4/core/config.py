"""
配置模块
定义一次 HLS → MP4 任务的各种配置参数
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Dict

from .errors import ConfigError

# 参数取值范围
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 64
MIN_RETRIES = 0
MAX_RETRIES = 10

BACKEND_CHOICES = ("auto", "ffmpeg", "host")


@dataclass
class RunConfig:
    """任务配置类"""

    # 并发配置
    concurrency: int = 8

    # 重试配置（每个片段最多尝试 retries + 1 次）
    retries: int = 3
    retry_delay: float = 0.0  # 秒，大于 0 时按指数退避

    # 超时配置
    connect_timeout: int = 10
    read_timeout: int = 30

    # 码率配置（kbps，0 = 自动）
    video_bitrate: int = 0
    audio_bitrate: int = 0

    # 下载配置
    chunk_size: int = 8192

    # 乱序片段在内存中暂存的上限，超过后写入临时片段文件
    max_buffered_bytes: int = 64 * 1024 * 1024

    # 路径配置
    temp_dir: Optional[str] = None
    keep_temp: bool = False

    # 转码配置
    backend: str = "auto"
    host_transcoder: Optional[str] = None
    remux: bool = False
    transcode_timeout: Optional[int] = None

    # 请求头配置
    headers: Dict[str, str] = field(default_factory=lambda: {
        'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36',
        'Accept': '*/*',
        'Accept-Language': 'en-US,en;q=0.9',
    })
    auto_referer: bool = True

    # 其他配置
    verify_ssl: bool = True
    show_progress: bool = True
    enable_logging: bool = True
    log_file: Optional[str] = None

    def validate(self):
        """
        校验参数范围

        Raises:
            ConfigError: 参数不合法
        """
        if not isinstance(self.concurrency, int) or not (
                MIN_CONCURRENCY <= self.concurrency <= MAX_CONCURRENCY):
            raise ConfigError(
                f"并发数必须在 {MIN_CONCURRENCY}-{MAX_CONCURRENCY} 之间: {self.concurrency}")
        if not isinstance(self.retries, int) or not (MIN_RETRIES <= self.retries <= MAX_RETRIES):
            raise ConfigError(
                f"重试次数必须在 {MIN_RETRIES}-{MAX_RETRIES} 之间: {self.retries}")
        for name in ('video_bitrate', 'audio_bitrate'):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 0:
                raise ConfigError(f"{name} 必须是非负整数: {value}")
        if self.retry_delay < 0:
            raise ConfigError(f"retry_delay 不能为负数: {self.retry_delay}")
        if self.connect_timeout <= 0 or self.read_timeout <= 0:
            raise ConfigError("超时时间必须大于 0")
        if self.backend not in BACKEND_CHOICES:
            raise ConfigError(
                f"未知的转码后端: {self.backend}，可选: {', '.join(BACKEND_CHOICES)}")
        if self.max_buffered_bytes < 0:
            raise ConfigError("max_buffered_bytes 不能为负数")

    @staticmethod
    def validate_output_path(output_path: str):
        """
        校验输出文件名

        Args:
            output_path: 输出文件路径

        Raises:
            ConfigError: 文件名为空或不是 .mp4
        """
        if not output_path or not output_path.strip():
            raise ConfigError("输出文件名不能为空")
        filename = os.path.basename(output_path.strip())
        if not filename or filename.lower() == ".mp4":
            raise ConfigError(f"输出文件名无效: {output_path}")
        if not filename.lower().endswith('.mp4'):
            raise ConfigError(f"输出文件必须以 .mp4 结尾: {output_path}")

    @property
    def timeout(self):
        """requests 使用的 (connect, read) 超时"""
        return (self.connect_timeout, self.read_timeout)

    def update_headers(self, extra_headers: Dict[str, str]):
        """更新请求头"""
        self.headers.update(extra_headers)

    def to_dict(self):
        """转换为字典"""
        return {
            'concurrency': self.concurrency,
            'retries': self.retries,
            'retry_delay': self.retry_delay,
            'connect_timeout': self.connect_timeout,
            'read_timeout': self.read_timeout,
            'video_bitrate': self.video_bitrate,
            'audio_bitrate': self.audio_bitrate,
            'chunk_size': self.chunk_size,
            'max_buffered_bytes': self.max_buffered_bytes,
            'temp_dir': self.temp_dir,
            'keep_temp': self.keep_temp,
            'backend': self.backend,
            'host_transcoder': self.host_transcoder,
            'remux': self.remux,
            'transcode_timeout': self.transcode_timeout,
            'headers': self.headers,
            'auto_referer': self.auto_referer,
            'verify_ssl': self.verify_ssl,
            'show_progress': self.show_progress,
            'enable_logging': self.enable_logging,
            'log_file': self.log_file,
        }


# 预设配置模板
class ConfigTemplates:
    """配置模板"""

    @staticmethod
    def fast():
        """快速下载配置"""
        return RunConfig(
            concurrency=32,
            retries=1,
            connect_timeout=5,
            read_timeout=15,
        )

    @staticmethod
    def stable():
        """稳定下载配置"""
        return RunConfig(
            concurrency=4,
            retries=5,
            retry_delay=2.0,
            connect_timeout=15,
            read_timeout=60,
        )

    @staticmethod
    def low_bandwidth():
        """低带宽配置"""
        return RunConfig(
            concurrency=2,
            retries=3,
            retry_delay=3.0,
            chunk_size=4096,
        )

    @classmethod
    def get(cls, name: str) -> RunConfig:
        """按名称获取配置模板"""
        templates = {
            'fast': cls.fast,
            'stable': cls.stable,
            'low_bandwidth': cls.low_bandwidth,
        }
        if name not in templates:
            raise ConfigError(f"未知的配置模板: {name}")
        return templates[name]()
