"""
数据模型
播放列表、片段、下载结果、转码任务等数据类
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .crypto import EncryptionInfo


@dataclass
class ByteRange:
    """#EXT-X-BYTERANGE 描述的字节范围"""
    length: int
    offset: int = 0

    @property
    def end(self) -> int:
        """最后一个字节的位置（包含）"""
        return self.offset + self.length - 1

    def to_header(self) -> str:
        return f"bytes={self.offset}-{self.end}"


@dataclass
class Variant:
    """主播放列表中的一个码率版本"""
    uri: str
    bandwidth: int = 0
    resolution: Optional[str] = None
    codecs: Optional[str] = None
    frame_rate: Optional[float] = None


@dataclass
class MasterPlaylist:
    """主播放列表"""
    uri: str
    variants: List[Variant] = field(default_factory=list)

    is_master = True

    def select_variant(self) -> Optional[Variant]:
        """
        选择带宽最大的版本，带宽相同时取先出现的

        Returns:
            Optional[Variant]: 没有任何版本时返回 None
        """
        best = None
        for variant in self.variants:
            if best is None or variant.bandwidth > best.bandwidth:
                best = variant
        return best


@dataclass
class Segment:
    """媒体片段"""
    index: int
    uri: str
    duration: float = 0.0
    title: str = ""
    byte_range: Optional[ByteRange] = None
    key: Optional[EncryptionInfo] = None
    sequence: int = 0
    discontinuity: bool = False


@dataclass
class MediaPlaylist:
    """媒体播放列表"""
    uri: str
    segments: List[Segment] = field(default_factory=list)
    keys: List[EncryptionInfo] = field(default_factory=list)
    media_sequence: int = 0
    target_duration: Optional[float] = None
    is_endlist: bool = False
    variant: Optional[Variant] = None

    is_master = False

    @property
    def total_duration(self) -> float:
        return sum(s.duration for s in self.segments)

    @property
    def is_encrypted(self) -> bool:
        return any(k.is_encrypted() for k in self.keys)


@dataclass
class FetchResult:
    """单个片段的下载结果（由调度器产生，解密阶段消费一次）"""
    index: int
    payload: bytes = b""
    attempts: int = 0


@dataclass
class DecryptedChunk:
    """解密后的片段数据（由合并器按序消费一次）"""
    index: int
    payload: bytes


@dataclass
class TranscodeJob:
    """转码任务"""
    input_path: str
    output_path: str
    video_bitrate: int = 0
    audio_bitrate: int = 0
    work_dir: Optional[str] = None
    remux: bool = False
    timeout: Optional[int] = None
