"""
合并处理器模块
按片段序号把解密后的数据顺序写入一个 TS 文件
"""

import os
import logging
from typing import Dict, Optional, Union

from .errors import AssemblyError
from .models import DecryptedChunk
from .progress import EventPhase


class OrderedAssembler:
    """
    顺序合并器

    片段可以以任意顺序到达，但只按序号严格递增写入输出文件；
    提前到达的片段暂存在以序号为键的暂存区里，超过内存上限时写入临时片段文件
    """

    def __init__(self, output_path: str, total: int, spill_dir: Optional[str] = None,
                 max_buffered_bytes: int = 64 * 1024 * 1024, emitter=None):
        """
        Args:
            output_path: 合并后的 TS 文件路径
            total: 片段总数
            spill_dir: 临时片段文件目录，为 None 时全部暂存在内存
            max_buffered_bytes: 内存暂存上限
            emitter: 进度事件通道
        """
        self.output_path = output_path
        self.total = total
        self.spill_dir = spill_dir
        self.max_buffered_bytes = max_buffered_bytes
        self.emitter = emitter

        self.next_index = 0
        self.bytes_written = 0
        self._pending: Dict[int, Union[bytes, str]] = {}
        self._buffered_bytes = 0
        self._file = None
        self.logger = logging.getLogger(__name__)

    @property
    def pending_indices(self):
        return sorted(self._pending)

    @property
    def is_complete(self) -> bool:
        return self.next_index == self.total

    def open(self):
        """创建输出文件"""
        try:
            os.makedirs(os.path.dirname(os.path.abspath(self.output_path)), exist_ok=True)
            self._file = open(self.output_path, 'wb')
        except OSError as e:
            raise AssemblyError(f"无法创建合并文件: {self.output_path} - {e}") from e
        return self

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def segment_path(self, index: int) -> str:
        return os.path.join(self.spill_dir, f"seg_{index:05d}.ts")

    def add(self, chunk: DecryptedChunk):
        """
        接收一个片段

        Args:
            chunk: 解密后的片段

        Raises:
            AssemblyError: 序号越界、重复或写入失败
        """
        if self._file is None:
            raise AssemblyError("合并文件未打开")
        index = chunk.index
        if not 0 <= index < self.total:
            raise AssemblyError(f"片段序号越界: {index} (共 {self.total} 个)")
        if index < self.next_index or index in self._pending:
            raise AssemblyError(f"片段重复: {index}")

        if index == self.next_index:
            self._write(chunk.payload)
            self._drain()
        else:
            self._hold(index, chunk.payload)

    def _hold(self, index: int, payload: bytes):
        """暂存提前到达的片段"""
        if self.spill_dir and self._buffered_bytes + len(payload) > self.max_buffered_bytes:
            path = self.segment_path(index)
            try:
                with open(path, 'wb') as f:
                    f.write(payload)
            except OSError as e:
                raise AssemblyError(f"写入临时片段失败: {path} - {e}") from e
            self._pending[index] = path
        else:
            self._pending[index] = payload
            self._buffered_bytes += len(payload)

    def _take(self, index: int) -> bytes:
        """取出暂存的片段"""
        item = self._pending.pop(index)
        if isinstance(item, bytes):
            self._buffered_bytes -= len(item)
            return item
        try:
            with open(item, 'rb') as f:
                payload = f.read()
            os.remove(item)
        except OSError as e:
            raise AssemblyError(f"读取临时片段失败: {item} - {e}") from e
        return payload

    def _drain(self):
        """从最小序号开始写出所有可以写的片段"""
        while self.next_index in self._pending:
            self._write(self._take(self.next_index))

    def _write(self, payload: bytes):
        try:
            self._file.write(payload)
        except OSError as e:
            raise AssemblyError(f"写入合并文件失败: {self.output_path} - {e}") from e
        self.next_index += 1
        self.bytes_written += len(payload)

    def finish(self) -> str:
        """
        所有片段写完后关闭文件

        Returns:
            str: 合并文件路径

        Raises:
            AssemblyError: 仍有片段缺失
        """
        if not self.is_complete:
            raise AssemblyError(
                f"合并未完成: 已写入 {self.next_index}/{self.total}，等待片段 {self.next_index}")
        self.close()
        self.logger.info(f"合并完成: {self.output_path} ({self.bytes_written:,} bytes)")
        if self.emitter is not None:
            self.emitter.emit(EventPhase.ASSEMBLE, f"合并完成 {self.total} 个片段", 1.0)
        return self.output_path

    def close(self):
        if self._file is not None:
            try:
                self._file.close()
            except OSError as e:
                raise AssemblyError(f"关闭合并文件失败: {self.output_path} - {e}") from e
            finally:
                self._file = None

    def abort(self, keep_partial: bool = False):
        """
        中止合并：关闭文件，删除暂存的片段文件；除非要求保留，删除不完整的输出

        Args:
            keep_partial: 是否保留已写入的部分文件用于诊断
        """
        try:
            self.close()
        except AssemblyError as e:
            self.logger.warning(str(e))

        for item in list(self._pending.values()):
            if isinstance(item, str) and os.path.exists(item) and not keep_partial:
                os.remove(item)
        self._pending.clear()
        self._buffered_bytes = 0

        if not keep_partial and os.path.exists(self.output_path):
            os.remove(self.output_path)
            self.logger.info(f"已删除不完整的合并文件: {self.output_path}")
