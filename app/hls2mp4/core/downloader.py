"""
下载器核心模块
串联播放列表解析、密钥解析、并发下载、顺序合并和转码，完成一次 M3U8 → MP4 任务
"""

import os
import time
import logging
import threading
from dataclasses import replace
from typing import Dict, Optional

from .config import RunConfig
from .crypto import AESDecryptor, KeyContext, KeyResolver
from .download_handler import DownloadHandler
from .errors import AssemblyError, HLSError, RunCancelled
from .merge_handler import OrderedAssembler
from .models import MediaPlaylist, TranscodeJob
from .parser import PlaylistResolver
from .progress import EventChannel, EventPhase
from .scheduler import SegmentScheduler
from .transcoder import TranscodeBackend, TranscodeOrchestrator
from .transport import Transport
from .utils import check_ts_header, format_file_size, format_time, setup_logger
from .workspace import RunWorkspace, select_writable_temp_dir


class M3U8Downloader:
    """
    M3U8下载器主类

    一个实例对应一次任务：run() 在当前线程阻塞执行，start() 在后台线程执行；
    两种方式的进度和最终结果都写入同一个事件通道 events
    """

    def __init__(self, url: str, output: str, config: Optional[RunConfig] = None,
                 transport: Optional[Transport] = None,
                 orchestrator: Optional[TranscodeOrchestrator] = None,
                 events: Optional[EventChannel] = None):
        """
        Args:
            url: 播放列表地址或本地路径
            output: 输出 MP4 路径
            config: 任务配置
            transport: 传输对象（测试时可注入）
            orchestrator: 转码调度（测试时可注入）
            events: 事件通道
        """
        self.url = url
        self.output = output
        self.config = config or RunConfig()
        self.events = events or EventChannel()

        self._owns_transport = transport is None
        self._transport = transport
        self.orchestrator = orchestrator or TranscodeOrchestrator(self.config, emitter=self.events)
        if self.orchestrator.emitter is None:
            self.orchestrator.emitter = self.events

        self._cancel_event = threading.Event()
        self._cancelled = False
        self._thread: Optional[threading.Thread] = None

        # 任务状态
        self.playlist: Optional[MediaPlaylist] = None
        self.backend: Optional[TranscodeBackend] = None
        self.workspace: Optional[RunWorkspace] = None
        self.error: Optional[BaseException] = None
        self.result: Optional[str] = None
        self.is_running = False
        self._started_at: Optional[float] = None
        self._finished_at: Optional[float] = None

        if self.config.enable_logging:
            self.logger = setup_logger('hls2mp4', self.config.log_file)
        else:
            self.logger = logging.getLogger(__name__)

    @property
    def transport(self) -> Transport:
        if self._transport is None:
            self._transport = Transport(self.config)
        return self._transport

    def _check_cancelled(self):
        if self._cancelled:
            raise RunCancelled("任务已取消")

    def inspect(self) -> MediaPlaylist:
        """
        只解析播放列表，不下载片段

        Returns:
            MediaPlaylist: 最终使用的媒体播放列表
        """
        if self.config.auto_referer:
            self.transport.set_referer(self.url)
        resolver = PlaylistResolver(self.transport)
        self.playlist = resolver.resolve(self.url)
        return self.playlist

    def _resolve_key(self, playlist: MediaPlaylist) -> Optional[KeyContext]:
        self.events.emit(EventPhase.KEY, "检查加密信息", 0.0)
        context = KeyResolver(self.transport).resolve(playlist)
        if context is None:
            self.events.emit(EventPhase.KEY, "未加密", 1.0)
        else:
            self.events.emit(EventPhase.KEY, f"已获取 {context.info.method} 密钥", 1.0)
        return context

    def run(self) -> str:
        """
        主下载流程

        Returns:
            str: 输出文件路径

        Raises:
            HLSError: 任意阶段失败（同时作为失败事件写入事件通道）
        """
        self.is_running = True
        self._started_at = time.time()
        assembler: Optional[OrderedAssembler] = None

        try:
            self.config.validate()
            RunConfig.validate_output_path(self.output)

            # 转码后端在任务开始时确定一次
            self.backend = self.orchestrator.select_backend()
            self._check_cancelled()

            if self.config.auto_referer:
                self.transport.set_referer(self.url)

            playlist = PlaylistResolver(self.transport, self.events).resolve(self.url)
            self.playlist = playlist
            self._check_cancelled()

            context = self._resolve_key(playlist)
            self._check_cancelled()

            try:
                base_temp_dir = select_writable_temp_dir(self.config.temp_dir)
                self.workspace = RunWorkspace(base_temp_dir)
            except OSError as e:
                raise AssemblyError(f"无法创建临时工作空间: {e}") from e

            total = len(playlist.segments)
            assembler = OrderedAssembler(
                self.workspace.merged_ts,
                total,
                spill_dir=self.workspace.path,
                max_buffered_bytes=self.config.max_buffered_bytes,
                emitter=self.events,
            )
            handler = DownloadHandler(
                self.config, self.transport, AESDecryptor(context), self._cancel_event)
            scheduler = SegmentScheduler(
                self.config.concurrency, handler.process, self.events, self._cancel_event)

            with assembler:
                scheduler.run(playlist.segments, assembler.add)
                merged_ts = assembler.finish()
            self._check_cancelled()

            if not check_ts_header(merged_ts):
                self.logger.warning("合并文件缺少 TS 同步字节 (0x47)，继续尝试转码")

            self.logger.info(
                f"合并文件大小: {format_file_size(assembler.bytes_written)}，"
                f"最大并发: {scheduler.max_in_flight}")

            job = TranscodeJob(
                input_path=merged_ts,
                output_path=self.output,
                video_bitrate=self.config.video_bitrate,
                audio_bitrate=self.config.audio_bitrate,
                work_dir=self.workspace.path,
                remux=self.config.remux,
                timeout=self.config.transcode_timeout,
            )
            self.result = self.orchestrator.transcode(job, self.backend)

            self._cleanup_workspace()

            self._finished_at = time.time()
            elapsed = format_time(self._finished_at - self._started_at)
            self.logger.info(f"任务完成: {self.result} (耗时 {elapsed})")
            self.events.succeed(f"下载完成: {self.result}")
            return self.result

        except BaseException as e:
            error = e
            if self._cancelled and not isinstance(e, RunCancelled):
                error = RunCancelled("任务已取消")

            self._finished_at = time.time()
            self.error = error
            if assembler is not None:
                assembler.abort(keep_partial=self.config.keep_temp)
            if self.workspace is not None and not self.config.keep_temp:
                self.workspace.cleanup()
            elif self.workspace is not None:
                self.logger.info(f"已保留临时文件: {self.workspace.path}")

            if isinstance(error, HLSError):
                self.logger.error(f"下载失败 [{error.phase}]: {error}")
            else:
                self.logger.error(f"下载过程出错: {error}")
            self.events.fail(error)

            if error is e:
                raise
            raise error from e

        finally:
            self.is_running = False
            if self._owns_transport and self._transport is not None:
                self._transport.close()

    def _cleanup_workspace(self):
        if self.config.keep_temp:
            self.logger.info(f"已保留临时文件: {self.workspace.path}")
            self.events.emit(EventPhase.CLEANUP, "保留临时文件", 1.0)
            return
        self.events.emit(EventPhase.CLEANUP, "清理临时文件", 0.0)
        self.workspace.cleanup()
        self.events.emit(EventPhase.CLEANUP, "临时文件已清理", 1.0)

    def _run_in_background(self):
        try:
            self.run()
        except Exception as e:
            # 错误已经作为失败事件写入事件通道
            self.logger.debug(f"后台任务结束: {e}")

    def start(self) -> threading.Thread:
        """
        在后台线程执行任务，调用方通过 events 读取进度

        Returns:
            threading.Thread: 执行任务的线程
        """
        if self._thread is not None:
            raise RuntimeError("任务已经启动")
        self._thread = threading.Thread(
            target=self._run_in_background, name="hls2mp4-run", daemon=True)
        self._thread.start()
        return self._thread

    def wait(self, timeout: Optional[float] = None) -> bool:
        """等待后台任务结束，返回是否已结束"""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def cancel(self):
        """取消任务：停止派发片段，正在进行的请求在下一次检查时退出"""
        if self._cancelled:
            return
        self._cancelled = True
        self._cancel_event.set()
        self.logger.info("收到取消请求，正在停止...")

    def get_status(self) -> Dict:
        """获取任务状态"""
        if self.is_running:
            state = 'running'
        elif self.result is not None:
            state = 'completed'
        elif self.error is not None:
            state = 'cancelled' if isinstance(self.error, RunCancelled) else 'failed'
        else:
            state = 'not_started'

        status = {
            'status': state,
            'url': self.url,
            'output_file': self.output,
            'backend': self.backend.describe() if self.backend else None,
        }
        if self.playlist is not None:
            status['total_segments'] = len(self.playlist.segments)
            status['duration'] = self.playlist.total_duration
            status['encrypted'] = self.playlist.is_encrypted
            if self.playlist.variant is not None:
                status['bandwidth'] = self.playlist.variant.bandwidth
                status['resolution'] = self.playlist.variant.resolution
        if self.error is not None:
            status['error'] = str(self.error)
        if self._started_at is not None:
            end = self._finished_at or time.time()
            status['elapsed'] = end - self._started_at
        return status


def hls2mp4_run(url: str, output: str, concurrency: int = 8, retries: int = 3,
                video_bitrate: int = 0, audio_bitrate: int = 0, keep_temp: bool = False,
                config: Optional[RunConfig] = None) -> M3U8Downloader:
    """
    启动一次 M3U8 → MP4 任务

    任务在后台线程执行，返回的下载器的 events 依次产生进度事件，
    最后以成功事件结束，或者在读取时抛出任务的异常

    Args:
        url: 播放列表地址或本地路径
        output: 输出 MP4 路径
        concurrency: 并发数 (1-64)
        retries: 每个片段的重试次数 (0-10)
        video_bitrate: 视频码率 kbps，0 = 自动
        audio_bitrate: 音频码率 kbps，0 = 自动
        keep_temp: 是否保留临时文件
        config: 其余配置，上面的参数会覆盖其中的同名字段

    Returns:
        M3U8Downloader: 已启动的下载器
    """
    # 复制一份配置，调用方传入的对象保持不变
    base = config or RunConfig()
    config = replace(
        base,
        concurrency=concurrency,
        retries=retries,
        video_bitrate=video_bitrate,
        audio_bitrate=audio_bitrate,
        keep_temp=keep_temp,
        headers=dict(base.headers),
    )

    downloader = M3U8Downloader(url, os.fspath(output), config)
    downloader.start()
    return downloader
