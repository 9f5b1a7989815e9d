"""
命令行接口模块
提供友好的命令行交互界面
"""

import argparse
import json
import signal
import sys
import os
from typing import Dict, Optional

from ..core.config import RunConfig, ConfigTemplates, BACKEND_CHOICES
from ..core.downloader import M3U8Downloader
from ..core.errors import HLSError
from ..core.progress import ConsoleProgress
from ..core.utils import (
    disable_console_logging,
    enable_console_logging,
    extract_filename_from_url,
    format_time,
    print_banner,
)


class M3U8CLI:
    """M3U8命令行界面"""

    def __init__(self):
        self.downloader: Optional[M3U8Downloader] = None

    def build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="hls2mp4",
            description="HLS2MP4 - M3U8 视频下载并转换为 MP4",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
使用示例:
  hls2mp4 https://example.com/video.m3u8
  hls2mp4 https://example.com/video.m3u8 -o myvideo.mp4 -c 16
  hls2mp4 https://example.com/video.m3u8 --profile stable --keep-temp
  hls2mp4 ./local/index.m3u8 --video-bitrate 2500 --audio-bitrate 192
  hls2mp4 https://example.com/video.m3u8 --headers "Referer=https://example.com"
            """
        )

        # 基本参数
        parser.add_argument('url', help='M3U8文件URL或本地路径')
        parser.add_argument('-o', '--output', help='输出文件路径 (.mp4)', default=None)
        parser.add_argument('-c', '--concurrency', type=int, help='并发下载数 (1-64)')
        parser.add_argument('-r', '--retries', type=int, help='每个片段的重试次数 (0-10)')

        # 转码参数
        parser.add_argument('--video-bitrate', type=int, help='视频码率 kbps (0 = 自动)')
        parser.add_argument('--audio-bitrate', type=int, help='音频码率 kbps (0 = 自动)')
        parser.add_argument('--backend', choices=BACKEND_CHOICES, help='转码后端')
        parser.add_argument('--remux', action='store_true', help='不指定码率时直接转封装，不重新编码')

        # 配置参数
        parser.add_argument('--profile', choices=['fast', 'stable', 'low_bandwidth'],
                            help='下载配置模板')
        parser.add_argument('--retry-delay', type=float, help='重试延迟(秒)，按指数退避')
        parser.add_argument('--timeout', type=int, help='读取超时(秒)')

        # 路径参数
        parser.add_argument('--temp-dir', help='临时目录路径')
        parser.add_argument('--keep-temp', action='store_true', help='保留临时文件')
        parser.add_argument('--log-file', help='日志文件路径')

        # 请求头参数
        parser.add_argument('--headers', help='自定义请求头 (JSON字符串或key=value格式)')
        parser.add_argument('--user-agent', help='自定义User-Agent')
        parser.add_argument('--referer', help='设置Referer')

        # 功能参数
        parser.add_argument('--no-ssl-verify', action='store_true', help='禁用SSL验证')
        parser.add_argument('--no-progress', action='store_true', help='禁用进度条')
        parser.add_argument('--dry-run', action='store_true', help='试运行，只解析播放列表')

        return parser

    def parse_arguments(self, argv=None):
        """解析命令行参数"""
        return self.build_parser().parse_args(argv)

    def create_config_from_args(self, args) -> RunConfig:
        """从参数创建配置"""
        # 选择配置模板
        if args.profile:
            config = ConfigTemplates.get(args.profile)
        else:
            config = RunConfig()

        # 应用命令行参数
        if args.concurrency is not None:
            config.concurrency = args.concurrency
        if args.retries is not None:
            config.retries = args.retries
        if args.retry_delay is not None:
            config.retry_delay = args.retry_delay
        if args.timeout is not None:
            config.read_timeout = args.timeout
        if args.video_bitrate is not None:
            config.video_bitrate = args.video_bitrate
        if args.audio_bitrate is not None:
            config.audio_bitrate = args.audio_bitrate
        if args.backend:
            config.backend = args.backend
        if args.remux:
            config.remux = True
        if args.temp_dir:
            config.temp_dir = args.temp_dir
        if args.keep_temp:
            config.keep_temp = True
        if args.log_file:
            config.log_file = args.log_file
        if args.no_ssl_verify:
            config.verify_ssl = False
        if args.no_progress:
            config.show_progress = False

        # 处理请求头
        if args.headers:
            config.update_headers(self.parse_headers(args.headers))

        if args.user_agent:
            config.headers['User-Agent'] = args.user_agent

        if args.referer:
            config.headers['Referer'] = args.referer

        return config

    @staticmethod
    def parse_headers(headers_str: str) -> Dict[str, str]:
        """解析请求头字符串: JSON 对象或 key=value,key=value"""
        headers_str = headers_str.strip()

        # 尝试解析JSON
        if headers_str.startswith('{'):
            try:
                headers = json.loads(headers_str)
            except ValueError:
                headers = None
            if isinstance(headers, dict):
                return {str(k): str(v) for k, v in headers.items()}

        # 解析key=value格式
        headers = {}
        for part in headers_str.split(','):
            if '=' in part:
                key, value = part.split('=', 1)
                headers[key.strip()] = value.strip()
        return headers

    @staticmethod
    def default_output(url: str) -> str:
        """从URL生成默认文件名"""
        filename = extract_filename_from_url(url)
        stem, _ = os.path.splitext(filename)
        return f"{stem or 'output'}.mp4"

    def _dry_run(self, url: str, output: str, config: RunConfig) -> bool:
        print("试运行模式:")
        print(f"  URL: {url}")
        print(f"  输出: {output}")
        print(f"  配置: {config.to_dict()}")

        self.downloader = M3U8Downloader(url, output, config)
        try:
            config.validate()
            RunConfig.validate_output_path(output)
            playlist = self.downloader.inspect()
        except HLSError as e:
            print(f"\n❌ {e}")
            return False
        finally:
            self.downloader.transport.close()

        print(f"  片段数: {len(playlist.segments)}")
        print(f"  总时长: {format_time(playlist.total_duration)}")
        print(f"  加密: {'是' if playlist.is_encrypted else '否'}")
        if playlist.variant is not None:
            print(f"  带宽: {playlist.variant.bandwidth}")
            print(f"  分辨率: {playlist.variant.resolution or 'N/A'}")
        return True

    def _do_download(self, url: str, output: str, config: RunConfig) -> bool:
        """执行下载"""
        self.downloader = M3U8Downloader(url, output, config)

        # 进度条显示期间关闭日志的控制台输出
        if config.show_progress:
            disable_console_logging(self.downloader.logger)

        previous_handler = signal.getsignal(signal.SIGINT)

        def _on_interrupt(signum, frame):
            print("\n\n下载被用户中断，正在停止...")
            self.downloader.cancel()

        signal.signal(signal.SIGINT, _on_interrupt)
        try:
            self.downloader.start()
            ConsoleProgress(enabled=config.show_progress).follow(self.downloader.events)
        except HLSError as e:
            print(f"\n❌ 下载失败: {e}")
            return False
        finally:
            self.downloader.wait()
            signal.signal(signal.SIGINT, previous_handler)
            if config.show_progress and config.enable_logging:
                enable_console_logging(self.downloader.logger)

        print("\n✅ 下载成功！")
        print(f"文件保存在: {os.path.abspath(output)}")
        return True

    def run(self, argv=None) -> bool:
        """主运行函数"""
        args = self.parse_arguments(argv)

        print_banner()

        url = args.url.strip()
        config = self.create_config_from_args(args)
        output = args.output or self.default_output(url)

        # 试运行模式
        if args.dry_run:
            return self._dry_run(url, output, config)

        return self._do_download(url, output, config)


def main(argv=None):
    """主入口"""
    cli = M3U8CLI()
    success = cli.run(argv)
    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
