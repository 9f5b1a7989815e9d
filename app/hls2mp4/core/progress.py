"""
进度事件模块
一次任务只有一个有序的事件通道，由各阶段写入，调用方读取
"""

import sys
import time
import queue
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Union

from tqdm import tqdm


class EventPhase(Enum):
    """事件阶段"""
    BACKEND = "backend"
    PLAYLIST = "playlist"
    KEY = "key"
    DOWNLOAD = "download"
    ASSEMBLE = "assemble"
    TRANSCODE = "transcode"
    CLEANUP = "cleanup"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ProgressEvent:
    """进度事件"""
    phase: EventPhase
    message: str
    fraction: float
    timestamp: float = field(default_factory=time.time)

    @property
    def percent(self) -> float:
        return self.fraction * 100


@dataclass(frozen=True)
class FailureEvent:
    """终止事件：任务失败"""
    error: BaseException
    timestamp: float = field(default_factory=time.time)

    @property
    def message(self) -> str:
        return str(self.error)


ChannelItem = Union[ProgressEvent, FailureEvent]


class EventChannel:
    """
    无界有序事件通道

    进入终止状态（成功或失败）后不再接受任何事件
    """

    def __init__(self):
        self._queue: "queue.Queue[ChannelItem]" = queue.Queue()
        self._lock = threading.Lock()
        self._terminal = False
        self.logger = logging.getLogger(__name__)

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._terminal

    def emit(self, phase: EventPhase, message: str, fraction: float) -> bool:
        """
        写入一个进度事件

        Args:
            phase: 阶段
            message: 描述
            fraction: 阶段完成度 [0.0, 1.0]

        Returns:
            bool: 通道已终止时返回 False
        """
        fraction = min(max(float(fraction), 0.0), 1.0)
        with self._lock:
            if self._terminal:
                self.logger.debug(f"通道已终止，丢弃事件: {message}")
                return False
            self._queue.put(ProgressEvent(phase, message, fraction))
            return True

    def succeed(self, message: str) -> bool:
        """写入成功事件（完成度 1.0）并终止通道"""
        with self._lock:
            if self._terminal:
                return False
            self._queue.put(ProgressEvent(EventPhase.COMPLETED, message, 1.0))
            self._terminal = True
            return True

    def fail(self, error: BaseException) -> bool:
        """写入失败事件并终止通道"""
        with self._lock:
            if self._terminal:
                return False
            self._queue.put(FailureEvent(error))
            self._terminal = True
            return True

    def get(self, timeout: Optional[float] = None) -> ChannelItem:
        """阻塞读取下一个事件"""
        return self._queue.get(timeout=timeout)

    def drain(self) -> List[ChannelItem]:
        """取出当前已有的全部事件（不阻塞）"""
        items = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items

    def __iter__(self) -> Iterator[ProgressEvent]:
        """
        依次读取进度事件，直到终止

        Raises:
            任务失败时抛出失败事件中的异常
        """
        while True:
            item = self._queue.get()
            if isinstance(item, FailureEvent):
                raise item.error
            yield item
            if item.phase is EventPhase.COMPLETED:
                return


class ConsoleProgress:
    """
    命令行进度显示

    读取事件通道并用 tqdm 显示当前阶段的进度
    """

    STATUS_ICONS = {
        EventPhase.BACKEND: "○",
        EventPhase.PLAYLIST: "○",
        EventPhase.KEY: "○",
        EventPhase.DOWNLOAD: "↓",
        EventPhase.ASSEMBLE: "◎",
        EventPhase.TRANSCODE: "⊕",
        EventPhase.CLEANUP: "◎",
        EventPhase.COMPLETED: "✓",
    }

    def __init__(self, enabled: bool = True, stream=None):
        self.enabled = enabled
        self.stream = stream or sys.stderr
        self._pbar: Optional[tqdm] = None
        self._phase: Optional[EventPhase] = None

    def _format_desc(self, event: ProgressEvent) -> str:
        icon = self.STATUS_ICONS.get(event.phase, " ")
        return f"{icon} {event.phase.value:<9} {event.message}"

    def _open_bar(self, event: ProgressEvent):
        self._close_bar()
        self._phase = event.phase
        self._pbar = tqdm(
            total=100,
            desc=self._format_desc(event),
            leave=True,
            ncols=100,
            file=self.stream,
            mininterval=0.3,
            bar_format='{desc} |{bar}| {percentage:3.0f}% [{elapsed}]'
        )

    def _close_bar(self):
        if self._pbar is not None:
            self._pbar.close()
            self._pbar = None

    def update(self, event: ProgressEvent):
        """显示一个事件"""
        if not self.enabled:
            return
        if self._pbar is None or event.phase is not self._phase:
            self._open_bar(event)
        self._pbar.set_description(self._format_desc(event))
        self._pbar.n = round(event.percent)
        self._pbar.refresh()
        if event.phase is EventPhase.COMPLETED:
            self._close_bar()

    def follow(self, channel: EventChannel):
        """
        一直读取到通道终止

        Raises:
            任务失败时抛出对应异常
        """
        try:
            for event in channel:
                self.update(event)
        finally:
            self._close_bar()
