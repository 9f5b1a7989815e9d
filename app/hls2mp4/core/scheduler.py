"""
片段调度模块
用固定大小的线程池并发下载片段，信号量限制同时进行的请求数
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed, Future
from typing import Callable, Dict, List, Optional

from .errors import RunCancelled
from .models import DecryptedChunk, Segment
from .progress import EventPhase


class SegmentScheduler:
    """
    片段调度器

    片段按序号顺序提交，完成顺序不确定；完成结果在调用 run() 的线程里
    依次交给 sink，因此 sink 只会被一个线程调用
    """

    def __init__(self, concurrency: int, worker: Callable[[Segment], DecryptedChunk],
                 emitter=None, cancel_event: Optional[threading.Event] = None):
        """
        Args:
            concurrency: 最大并发请求数
            worker: 处理单个片段的函数（下载 + 解密）
            emitter: 进度事件通道
            cancel_event: 取消信号
        """
        self.concurrency = concurrency
        self.worker = worker
        self.emitter = emitter
        self.cancel_event = cancel_event or threading.Event()

        # 准入闸门
        self._gate = threading.BoundedSemaphore(concurrency)
        self._lock = threading.Lock()
        self._in_flight = 0
        self.max_in_flight = 0
        self.completed = 0

        self.logger = logging.getLogger(__name__)

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def _run_one(self, segment: Segment) -> DecryptedChunk:
        """在工作线程中执行单个片段，闸门在任何情况下都会释放"""
        self._gate.acquire()
        try:
            with self._lock:
                self._in_flight += 1
                self.max_in_flight = max(self.max_in_flight, self._in_flight)
            if self.cancel_event.is_set():
                raise RunCancelled("任务已取消")
            return self.worker(segment)
        finally:
            with self._lock:
                self._in_flight -= 1
            self._gate.release()

    def run(self, segments: List[Segment], sink: Callable[[DecryptedChunk], None]):
        """
        下载全部片段

        Args:
            segments: 按序号排列的片段
            sink: 接收完成片段的回调（合并器）

        Raises:
            FetchError / DecryptError / AssemblyError: 任意片段失败时中止整个任务
            RunCancelled: 任务被取消
        """
        total = len(segments)
        self.completed = 0

        self.logger.info(f"开始下载 {total} 个片段，并发数 {self.concurrency}")

        with ThreadPoolExecutor(max_workers=self.concurrency,
                                thread_name_prefix="hls-fetch") as executor:
            futures: Dict[Future, int] = {}
            for segment in segments:
                futures[executor.submit(self._run_one, segment)] = segment.index

            try:
                for future in as_completed(futures):
                    if self.cancel_event.is_set():
                        raise RunCancelled("任务已取消")

                    chunk = future.result()
                    self.completed += 1
                    if self.emitter is not None:
                        self.emitter.emit(
                            EventPhase.DOWNLOAD,
                            f"下载片段 [{self.completed}/{total}]",
                            self.completed / total)
                    sink(chunk)
            except BaseException:
                # 停止派发剩余片段，正在进行的请求会在下一次检查时退出
                self.cancel_event.set()
                for pending in futures:
                    pending.cancel()
                raise

        self.logger.info(f"全部片段下载完成: {total}")
