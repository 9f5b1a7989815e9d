"""
配置与工具函数测试
"""

import os
from dataclasses import fields

import pytest

from hls2mp4.core.config import ConfigTemplates, RunConfig
from hls2mp4.core.errors import ConfigError
from hls2mp4.core.utils import (
    extract_filename_from_url,
    format_file_size,
    format_time,
    referer_for,
    resolve_uri,
    to_local_path,
)
from hls2mp4.core.workspace import RunWorkspace, select_writable_temp_dir


def test_default_config_is_valid():
    config = RunConfig()
    config.validate()
    assert config.timeout == (10, 30)
    assert config.verify_ssl


@pytest.mark.parametrize("field, value", [
    ("concurrency", 0),
    ("concurrency", 65),
    ("retries", -1),
    ("retries", 11),
    ("video_bitrate", -1),
    ("audio_bitrate", -100),
    ("retry_delay", -0.5),
    ("backend", "gstreamer"),
])
def test_out_of_range_values(field, value):
    config = RunConfig()
    setattr(config, field, value)
    with pytest.raises(ConfigError):
        config.validate()


@pytest.mark.parametrize("concurrency, retries", [(1, 0), (64, 10)])
def test_range_boundaries(concurrency, retries):
    RunConfig(concurrency=concurrency, retries=retries).validate()


@pytest.mark.parametrize("path", ["", "   ", "video.mkv", "out/.mp4", "video"])
def test_invalid_output_path(path):
    with pytest.raises(ConfigError):
        RunConfig.validate_output_path(path)


@pytest.mark.parametrize("path", ["video.mp4", "dir/Video.MP4"])
def test_valid_output_path(path):
    RunConfig.validate_output_path(path)


def test_templates():
    fast = ConfigTemplates.get('fast')
    stable = ConfigTemplates.get('stable')
    assert fast.concurrency > RunConfig().concurrency
    assert stable.retries > RunConfig().retries
    for config in (fast, stable, ConfigTemplates.low_bandwidth()):
        config.validate()
    with pytest.raises(ConfigError):
        ConfigTemplates.get('turbo')


def test_update_headers_and_to_dict():
    config = RunConfig()
    config.update_headers({'Referer': 'https://example.com/'})
    data = config.to_dict()
    assert data['headers']['Referer'] == 'https://example.com/'
    assert data['concurrency'] == 8


def test_to_dict_covers_every_field():
    assert set(RunConfig().to_dict()) == {f.name for f in fields(RunConfig)}


def test_resolve_uri_remote():
    base = "https://cdn.example.com/a/b/index.m3u8"
    assert resolve_uri(base, "seg.ts") == "https://cdn.example.com/a/b/seg.ts"
    assert resolve_uri(base, "/root.ts") == "https://cdn.example.com/root.ts"
    assert resolve_uri(base, "http://other/x.ts") == "http://other/x.ts"


def test_resolve_uri_local(tmp_path):
    base = str(tmp_path / "list" / "index.m3u8")
    assert resolve_uri(base, "../seg.ts") == str(tmp_path / "seg.ts")


def test_file_uri_to_path(tmp_path):
    path = tmp_path / "my video.ts"
    assert to_local_path(path.as_uri()) == str(path)
    assert to_local_path(str(path)) == str(path)


def test_referer_for():
    assert referer_for("https://cdn.example.com/v/index.m3u8?t=1") == "https://cdn.example.com/"
    assert referer_for("/local/index.m3u8") is None


def test_extract_filename_from_url():
    assert extract_filename_from_url("https://x.com/path/seg-1.ts?token=abc") == "seg-1.ts"


def test_formatters():
    assert format_file_size(512) == "512.00 B"
    assert format_file_size(2048) == "2.00 KB"
    assert format_time(30) == "30.0s"
    assert format_time(90) == "1.5m"


def test_select_writable_temp_dir(tmp_path):
    preferred = tmp_path / "temp"
    assert select_writable_temp_dir(str(preferred)) == str(preferred)
    assert preferred.is_dir()


def test_select_writable_temp_dir_falls_back(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_bytes(b"")
    chosen = select_writable_temp_dir(str(blocker / "temp"))
    assert chosen != str(blocker / "temp")
    assert os.path.isdir(chosen)


def test_workspace_cleanup(tmp_path):
    workspace = RunWorkspace(str(tmp_path))
    assert os.path.isdir(workspace.path)
    assert os.path.dirname(workspace.merged_ts) == workspace.path

    with open(workspace.merged_ts, 'wb') as f:
        f.write(b"data")
    workspace.cleanup()

    assert not os.path.exists(workspace.path)
