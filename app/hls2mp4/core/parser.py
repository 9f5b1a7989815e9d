"""
M3U8解析器模块
负责解析主播放列表和媒体播放列表，提取片段列表和加密信息
支持 #EXT-X-STREAM-INF、#EXTINF、#EXT-X-BYTERANGE、#EXT-X-KEY 等标签
"""

import re
import logging
from typing import Dict, Optional, Union

from .crypto import EncryptionInfo, parse_iv_string
from .errors import PlaylistError, FetchError
from .models import ByteRange, MasterPlaylist, MediaPlaylist, Segment, Variant
from .progress import EventPhase
from .utils import resolve_uri

# 属性列表: KEY=VALUE，VALUE 可能是带逗号的引号字符串
ATTRIBUTE_PATTERN = re.compile(r'([A-Z0-9-]+)=("[^"]*"|[^,]*)')

MASTER_TAGS = ('#EXT-X-STREAM-INF', '#EXT-X-I-FRAME-STREAM-INF', '#EXT-X-MEDIA:')

Playlist = Union[MasterPlaylist, MediaPlaylist]


def parse_attributes(attr_string: str) -> Dict[str, str]:
    """
    解析属性列表

    例如: BANDWIDTH=1280000,RESOLUTION=1280x720,CODECS="avc1.4d401f,mp4a.40.2"

    Args:
        attr_string: 标签冒号后面的内容

    Returns:
        Dict[str, str]: 属性字典（引号字符串已去掉引号）
    """
    attrs = {}
    for match in ATTRIBUTE_PATTERN.finditer(attr_string):
        key, value = match.group(1), match.group(2).strip()
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            value = value[1:-1]
        attrs[key] = value
    return attrs


class M3U8Parser:
    """M3U8文本解析器"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def parse(self, content: Union[str, bytes], uri: str) -> Playlist:
        """
        解析 M3U8 文本

        Args:
            content: 播放列表内容
            uri: 播放列表地址（用于解析相对路径）

        Returns:
            MasterPlaylist 或 MediaPlaylist

        Raises:
            PlaylistError: 语法错误
        """
        if isinstance(content, bytes):
            try:
                content = content.decode('utf-8-sig')
            except UnicodeDecodeError as e:
                raise PlaylistError(f"播放列表编码无效: {uri}") from e

        lines = [line.strip() for line in content.lstrip('\ufeff').splitlines()]
        lines = [line for line in lines if line]

        if not lines or not lines[0].startswith('#EXTM3U'):
            raise PlaylistError(f"不是有效的 M3U8 文件（缺少 #EXTM3U）: {uri}")

        if any(line.startswith(MASTER_TAGS) for line in lines):
            return self._parse_master(lines, uri)
        return self._parse_media(lines, uri)

    def _parse_master(self, lines, uri: str) -> MasterPlaylist:
        """解析主播放列表"""
        playlist = MasterPlaylist(uri=uri)
        pending: Optional[Dict[str, str]] = None

        for line in lines[1:]:
            if line.startswith('#EXT-X-STREAM-INF:'):
                if pending is not None:
                    raise PlaylistError("#EXT-X-STREAM-INF 之后缺少 URI")
                pending = parse_attributes(line.split(':', 1)[1])
            elif line.startswith('#'):
                continue
            elif pending is not None:
                playlist.variants.append(self._build_variant(pending, line, uri))
                pending = None

        if pending is not None:
            raise PlaylistError("#EXT-X-STREAM-INF 之后缺少 URI")

        return playlist

    @staticmethod
    def _build_variant(attrs: Dict[str, str], line: str, base_uri: str) -> Variant:
        bandwidth = attrs.get('BANDWIDTH', '0')
        try:
            bandwidth = int(bandwidth)
        except ValueError as e:
            raise PlaylistError(f"BANDWIDTH 无效: {bandwidth}") from e

        frame_rate = attrs.get('FRAME-RATE')
        if frame_rate:
            try:
                frame_rate = float(frame_rate)
            except ValueError as e:
                raise PlaylistError(f"FRAME-RATE 无效: {frame_rate}") from e
        else:
            frame_rate = None

        return Variant(
            uri=resolve_uri(base_uri, line),
            bandwidth=bandwidth,
            resolution=attrs.get('RESOLUTION'),
            codecs=attrs.get('CODECS'),
            frame_rate=frame_rate,
        )

    def _parse_media(self, lines, uri: str) -> MediaPlaylist:
        """解析媒体播放列表"""
        playlist = MediaPlaylist(uri=uri)

        duration = 0.0
        title = ""
        byte_range_spec: Optional[str] = None
        discontinuity = False
        current_key: Optional[EncryptionInfo] = None
        # 每个资源上一个字节范围的结束位置，用于省略 @offset 的情况
        last_range_end: Dict[str, int] = {}

        for line in lines[1:]:
            if line.startswith('#EXTINF:'):
                value = line.split(':', 1)[1]
                duration_str, _, title = value.partition(',')
                try:
                    duration = float(duration_str)
                except ValueError as e:
                    raise PlaylistError(f"#EXTINF 时长无效: {line}") from e
            elif line.startswith('#EXT-X-BYTERANGE:'):
                byte_range_spec = line.split(':', 1)[1]
            elif line.startswith('#EXT-X-KEY:'):
                current_key = self._parse_key(line.split(':', 1)[1], uri)
                playlist.keys.append(current_key)
                if not current_key.is_encrypted():
                    current_key = None
            elif line.startswith('#EXT-X-MEDIA-SEQUENCE:'):
                playlist.media_sequence = self._parse_int(line)
            elif line.startswith('#EXT-X-TARGETDURATION:'):
                try:
                    playlist.target_duration = float(line.split(':', 1)[1])
                except ValueError as e:
                    raise PlaylistError(f"标签值无效: {line}") from e
            elif line.startswith('#EXT-X-DISCONTINUITY') and not line.startswith('#EXT-X-DISCONTINUITY-'):
                discontinuity = True
            elif line.startswith('#EXT-X-ENDLIST'):
                playlist.is_endlist = True
            elif line.startswith('#'):
                continue
            else:
                index = len(playlist.segments)
                segment_uri = resolve_uri(uri, line)
                byte_range = None
                if byte_range_spec is not None:
                    byte_range = self._parse_byte_range(
                        byte_range_spec, last_range_end.get(segment_uri))
                    last_range_end[segment_uri] = byte_range.offset + byte_range.length

                playlist.segments.append(Segment(
                    index=index,
                    uri=segment_uri,
                    duration=duration,
                    title=title.strip(),
                    byte_range=byte_range,
                    key=current_key,
                    sequence=playlist.media_sequence + index,
                    discontinuity=discontinuity,
                ))
                duration = 0.0
                title = ""
                byte_range_spec = None
                discontinuity = False

        return playlist

    @staticmethod
    def _parse_int(line: str) -> int:
        value = line.split(':', 1)[1].strip()
        try:
            return int(value)
        except ValueError as e:
            raise PlaylistError(f"标签值无效: {line}") from e

    @staticmethod
    def _parse_byte_range(spec: str, previous_end: Optional[int]) -> ByteRange:
        """
        解析 #EXT-X-BYTERANGE:<n>[@<o>]

        省略 @o 时从同一资源上一个范围的结束位置开始
        """
        length_str, _, offset_str = spec.strip().partition('@')
        try:
            length = int(length_str)
            if offset_str:
                offset = int(offset_str)
            elif previous_end is not None:
                offset = previous_end
            else:
                offset = 0
        except ValueError as e:
            raise PlaylistError(f"#EXT-X-BYTERANGE 无效: {spec}") from e

        if length <= 0 or offset < 0:
            raise PlaylistError(f"#EXT-X-BYTERANGE 无效: {spec}")
        return ByteRange(length=length, offset=offset)

    @staticmethod
    def _parse_key(attr_string: str, base_uri: str) -> EncryptionInfo:
        """
        解析 #EXT-X-KEY 标签

        格式示例:
        #EXT-X-KEY:METHOD=AES-128,URI="https://example.com/key.key",IV=0x12345678...

        Args:
            attr_string: 标签属性
            base_uri: 播放列表地址（用于相对路径转换）

        Returns:
            EncryptionInfo: 加密信息
        """
        attrs = parse_attributes(attr_string)
        method = attrs.get('METHOD', 'NONE').upper()

        if method == 'NONE':
            return EncryptionInfo(method='NONE')

        uri = attrs.get('URI')
        if uri:
            uri = resolve_uri(base_uri, uri)

        iv = None
        if 'IV' in attrs:
            try:
                iv = parse_iv_string(attrs['IV'])
            except ValueError as e:
                raise PlaylistError(f"#EXT-X-KEY IV 无效: {attrs['IV']}") from e

        return EncryptionInfo(
            method=method,
            uri=uri,
            iv=iv,
            key_format=attrs.get('KEYFORMAT', 'identity'),
            key_format_versions=attrs.get('KEYFORMATVERSIONS', ''),
        )


class PlaylistResolver:
    """
    播放列表解析流程

    下载根播放列表；如果是主播放列表，选择带宽最大的版本并下载其媒体播放列表
    """

    def __init__(self, transport, emitter=None):
        """
        Args:
            transport: 传输对象
            emitter: 进度事件通道（可选）
        """
        self.transport = transport
        self.emitter = emitter
        self.parser = M3U8Parser()
        self.logger = logging.getLogger(__name__)

    def _emit(self, message: str, fraction: float):
        if self.emitter is not None:
            self.emitter.emit(EventPhase.PLAYLIST, message, fraction)

    def fetch(self, uri: str) -> Playlist:
        """下载并解析单个播放列表"""
        try:
            content = self.transport.get(uri)
        except FetchError as e:
            raise PlaylistError(f"无法获取播放列表: {e}") from e
        return self.parser.parse(content, uri)

    def resolve(self, uri: str) -> MediaPlaylist:
        """
        解析出最终使用的媒体播放列表

        Args:
            uri: 根播放列表地址或本地路径

        Returns:
            MediaPlaylist: 媒体播放列表

        Raises:
            PlaylistError: 播放列表无法获取、语法错误、没有版本或没有片段
        """
        playlist = self.fetch(uri)
        self._emit("已获取播放列表", 0.5 if playlist.is_master else 1.0)

        if playlist.is_master:
            self.logger.info(f"主播放列表，共 {len(playlist.variants)} 个版本")
            variant = playlist.select_variant()
            if variant is None:
                raise PlaylistError(f"主播放列表中没有可用的版本: {uri}")

            self.logger.info(
                f"选择版本: 带宽 {variant.bandwidth}，分辨率 {variant.resolution or 'N/A'}")
            self._emit(f"已选择版本: 带宽 {variant.bandwidth}", 1.0)

            media = self.fetch(variant.uri)
            if media.is_master:
                raise PlaylistError(f"版本地址指向的不是媒体播放列表: {variant.uri}")
            media.variant = variant
        else:
            media = playlist

        if not media.segments:
            raise PlaylistError(f"媒体播放列表中没有片段: {media.uri}")
        if not media.is_endlist:
            self.logger.warning("播放列表没有 #EXT-X-ENDLIST，按当前片段列表处理")

        self.logger.info(
            f"媒体播放列表: {len(media.segments)} 个片段，总时长 {media.total_duration:.1f}s")
        return media
