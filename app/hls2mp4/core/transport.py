"""
传输模块
远程地址使用 HTTP(S) GET，本地路径和 file:// 直接读取文件
"""

import logging
from typing import Optional

import requests

from .config import RunConfig
from .errors import FetchError
from .models import ByteRange
from .utils import create_session, is_remote_uri, to_local_path, referer_for


class Transport:
    """
    播放列表、密钥、片段共用的读取入口

    任何失败都抛出 FetchError，由调用方决定重试或转换为对应阶段的错误
    """

    def __init__(self, config: RunConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or create_session(
            config.verify_ssl, config.headers, pool_size=config.concurrency)
        self.logger = logging.getLogger(__name__)

    def set_referer(self, url: str):
        """根据播放列表的域名设置 Referer（已手动设置时不覆盖）"""
        if 'Referer' in self.session.headers:
            return
        referer = referer_for(url)
        if referer:
            self.session.headers['Referer'] = referer

    def get(self, uri: str, byte_range: Optional[ByteRange] = None) -> bytes:
        """
        读取 URI 对应的全部数据

        Args:
            uri: HTTP(S) 地址、file:// 地址或本地路径
            byte_range: 可选的字节范围

        Returns:
            bytes: 数据

        Raises:
            FetchError: 网络错误、超时、非 2xx 状态码、文件读取失败
        """
        if is_remote_uri(uri):
            return self._get_remote(uri, byte_range)
        return self._get_local(uri, byte_range)

    def _get_remote(self, url: str, byte_range: Optional[ByteRange]) -> bytes:
        headers = {}
        if byte_range is not None:
            headers['Range'] = byte_range.to_header()

        try:
            response = self.session.get(url, headers=headers, timeout=self.config.timeout, stream=True)
            try:
                response.raise_for_status()
                chunks = []
                for chunk in response.iter_content(chunk_size=self.config.chunk_size):
                    if chunk:
                        chunks.append(chunk)
            finally:
                response.close()
        except requests.RequestException as e:
            raise FetchError(f"请求失败: {url} - {e}", uri=url) from e

        data = b''.join(chunks)

        if byte_range is None:
            return data

        # 服务器忽略 Range 时自行截取
        if response.status_code == 200 and len(data) > byte_range.length:
            data = data[byte_range.offset:byte_range.offset + byte_range.length]
        if len(data) != byte_range.length:
            raise FetchError(
                f"请求失败: {url} 字节范围不完整 ({len(data)}/{byte_range.length})", uri=url)
        return data

    def _get_local(self, uri: str, byte_range: Optional[ByteRange]) -> bytes:
        path = to_local_path(uri)
        try:
            with open(path, 'rb') as f:
                if byte_range is None:
                    return f.read()
                f.seek(byte_range.offset)
                data = f.read(byte_range.length)
        except OSError as e:
            raise FetchError(f"读取文件失败: {path} - {e}", uri=uri) from e

        if len(data) != byte_range.length:
            raise FetchError(
                f"读取文件失败: {path} 字节范围越界 ({len(data)}/{byte_range.length})", uri=uri)
        return data

    def close(self):
        self.session.close()
