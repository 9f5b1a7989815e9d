"""
测试公共工具
本地假传输对象、加密片段生成、宿主转码器注册
"""

import os
import random
import shutil
import threading
import time
from collections import defaultdict

import pytest
from Crypto.Cipher import AES
from Crypto.Util.Padding import pad

from hls2mp4.core.config import RunConfig
from hls2mp4.core.errors import FetchError
from hls2mp4.core.transcoder import register_host_transcoder, unregister_host_transcoder


class FakeTransport:
    """
    内存中的传输对象

    resources: URI -> 数据
    failures: URI -> 前几次请求失败的次数
    """

    def __init__(self, resources=None, failures=None, latency=None):
        self.resources = dict(resources or {})
        self.failures = dict(failures or {})
        self.latency = latency
        self.attempts = defaultdict(int)
        self.referer = None

        self._lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    def set_referer(self, url):
        self.referer = url

    def get(self, uri, byte_range=None):
        with self._lock:
            self.attempts[uri] += 1
            attempt = self.attempts[uri]
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.latency:
                time.sleep(self.latency())
            if attempt <= self.failures.get(uri, 0):
                raise FetchError(f"模拟失败: {uri}", uri=uri)
            if uri not in self.resources:
                raise FetchError(f"资源不存在: {uri}", uri=uri)
            data = self.resources[uri]
            if byte_range is not None:
                data = data[byte_range.offset:byte_range.offset + byte_range.length]
            return data
        finally:
            with self._lock:
                self.in_flight -= 1

    def close(self):
        pass


def random_latency(max_delay=0.02, seed=1234):
    """返回随机延迟函数，用于打乱片段完成顺序"""
    rng = random.Random(seed)
    lock = threading.Lock()

    def _latency():
        with lock:
            return rng.uniform(0, max_delay)

    return _latency


def encrypt(plaintext: bytes, key: bytes, iv: bytes) -> bytes:
    """AES-128-CBC + PKCS7 加密"""
    return AES.new(key, AES.MODE_CBC, iv).encrypt(pad(plaintext, AES.block_size))


def media_playlist(segment_uris, key_line=None, media_sequence=None, endlist=True):
    """生成媒体播放列表文本"""
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:10"]
    if media_sequence is not None:
        lines.append(f"#EXT-X-MEDIA-SEQUENCE:{media_sequence}")
    if key_line:
        lines.append(key_line)
    for uri in segment_uris:
        lines.append("#EXTINF:10.0,")
        lines.append(uri)
    if endlist:
        lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"


def copy_transcoder(input_path, output_path, video_bitrate, audio_bitrate):
    """把 TS 原样复制为输出，用于检查合并结果"""
    shutil.copyfile(input_path, output_path)
    return True


@pytest.fixture
def host_copy():
    """注册一个复制文件的宿主转码器"""
    register_host_transcoder("copy", copy_transcoder)
    yield "copy"
    unregister_host_transcoder("copy")


@pytest.fixture
def run_config(tmp_path, host_copy):
    """使用宿主转码器、不输出日志的任务配置"""
    temp_dir = tmp_path / "work"
    temp_dir.mkdir()
    return RunConfig(
        concurrency=2,
        retries=0,
        backend="host",
        host_transcoder=host_copy,
        temp_dir=str(temp_dir),
        show_progress=False,
        enable_logging=False,
    )


def workspace_leftovers(config):
    """任务结束后残留在临时目录中的文件"""
    return os.listdir(config.temp_dir)
