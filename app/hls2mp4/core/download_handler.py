"""
下载处理器模块
处理单个片段的下载、重试和解密
"""

import logging
import threading
from typing import Optional

from .config import RunConfig
from .crypto import AESDecryptor
from .errors import FetchError, RunCancelled
from .models import DecryptedChunk, FetchResult, Segment
from .utils import RetryHandler, extract_filename_from_url


class DownloadHandler:
    """下载处理器 - 专门处理单个片段的下载逻辑"""

    def __init__(self, config: RunConfig, transport, decryptor: Optional[AESDecryptor] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.config = config
        self.transport = transport
        self.decryptor = decryptor or AESDecryptor()
        self.cancel_event = cancel_event or threading.Event()
        # 只对传输错误重试，解密错误直接失败
        self.retry_handler = RetryHandler(
            max_retries=self.config.retries,
            retry_delay=self.config.retry_delay,
            retry_on=(FetchError,),
            cancel_event=self.cancel_event,
        )
        self.logger = logging.getLogger(__name__)

    def fetch(self, segment: Segment) -> FetchResult:
        """
        下载单个片段的原始数据

        Args:
            segment: 片段

        Returns:
            FetchResult: 下载结果

        Raises:
            FetchError: 重试次数用尽
            RunCancelled: 任务已取消
        """
        attempts = 0
        filename = extract_filename_from_url(segment.uri)

        def _download():
            nonlocal attempts
            if self.cancel_event.is_set():
                raise RunCancelled("任务已取消")
            attempts += 1
            return self.transport.get(segment.uri, segment.byte_range)

        def _on_retry(attempt: int, error: BaseException):
            self.logger.warning(
                f"片段 {segment.index} ({filename}) 第 {attempt} 次尝试失败: {error}")

        try:
            payload = self.retry_handler.execute_with_retry(_download, on_retry=_on_retry)
        except FetchError as e:
            if self.cancel_event.is_set():
                raise RunCancelled("任务已取消") from e
            raise FetchError(
                f"片段 {segment.index} 在 {attempts} 次尝试后仍下载失败: {segment.uri}",
                index=segment.index, uri=segment.uri, attempts=attempts) from e

        return FetchResult(index=segment.index, payload=payload, attempts=attempts)

    def process(self, segment: Segment) -> DecryptedChunk:
        """
        下载并解密单个片段

        Args:
            segment: 片段

        Returns:
            DecryptedChunk: 明文数据
        """
        result = self.fetch(segment)
        plaintext = self.decryptor.decrypt_segment(segment, result.payload)
        if result.attempts > 1:
            self.logger.info(f"片段 {segment.index} 在第 {result.attempts} 次尝试后成功")
        return DecryptedChunk(index=segment.index, payload=plaintext)
