"""
工具模块
包含日志、HTTP 会话、URI 处理、重试等通用工具
"""

import os
import time
import logging
import threading
import warnings
from typing import Dict, Optional, Callable, Tuple, Type
from urllib.parse import urljoin, urlparse, unquote
from urllib.request import url2pathname

import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import InsecureRequestWarning

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logger(name: str, log_file: Optional[str] = None, console_output: bool = True) -> logging.Logger:
    """
    配置并返回日志记录器

    Args:
        name: 日志记录器名称
        log_file: 日志文件路径，为 None 时不写文件
        console_output: 是否输出到控制台

    Returns:
        logging.Logger: 配置好的日志记录器
    """
    logger = logging.getLogger(name)

    # 避免重复添加 handler
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console_handler)

    return logger


def disable_console_logging(logger: logging.Logger):
    """禁用日志的控制台输出"""
    if logger:
        for handler in logger.handlers[:]:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
                logger.removeHandler(handler)


def enable_console_logging(logger: logging.Logger):
    """启用日志的控制台输出"""
    if logger:
        has_console = any(
            isinstance(h, logging.StreamHandler) and not isinstance(
                h, logging.FileHandler)
            for h in logger.handlers
        )
        if not has_console:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(console_handler)


def create_session(verify_ssl: bool = True, headers: Optional[Dict[str, str]] = None,
                   pool_size: int = 10) -> requests.Session:
    """
    创建配置好的 HTTP 会话

    Args:
        verify_ssl: 是否验证 SSL 证书
        headers: 自定义请求头
        pool_size: 连接池大小（与并发数一致）

    Returns:
        requests.Session: 配置好的会话对象
    """
    session = requests.Session()
    session.verify = verify_ssl

    if not verify_ssl:
        warnings.filterwarnings('ignore', category=InsecureRequestWarning)

    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount('http://', adapter)
    session.mount('https://', adapter)

    if headers:
        session.headers.update(headers)

    return session


def is_remote_uri(uri: str) -> bool:
    """判断是否为 HTTP(S) 地址"""
    return urlparse(uri).scheme.lower() in ('http', 'https')


def to_local_path(uri: str) -> str:
    """
    把 file:// URI 或本地路径转换为文件系统路径

    Args:
        uri: file:// URI 或本地路径

    Returns:
        str: 本地路径
    """
    parsed = urlparse(uri)
    if parsed.scheme.lower() == 'file':
        return url2pathname(unquote(parsed.path))
    return uri


def resolve_uri(base: str, ref: str) -> str:
    """
    根据播放列表地址解析相对 URI

    Args:
        base: 播放列表的 URI 或本地路径
        ref: 播放列表中出现的 URI

    Returns:
        str: 绝对 URI（远程）或绝对路径（本地）
    """
    ref = ref.strip()
    if urlparse(ref).scheme.lower() in ('http', 'https', 'file'):
        return ref
    if is_remote_uri(base) or urlparse(base).scheme.lower() == 'file':
        return urljoin(base, ref)
    # 本地播放列表
    if os.path.isabs(ref):
        return ref
    return os.path.normpath(os.path.join(os.path.dirname(os.path.abspath(base)), ref))


def referer_for(url: str) -> Optional[str]:
    """根据地址的域名生成 Referer"""
    if not is_remote_uri(url):
        return None
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}/" if parsed.netloc else None


def extract_filename_from_url(url: str) -> str:
    """
    从 URL 提取文件名,移除查询参数和片段标识

    Args:
        url: URL 字符串

    Returns:
        str: 文件名
    """
    clean_url = url.split('?')[0].split('#')[0]
    return clean_url.rstrip('/').split('/')[-1]


class RetryHandler:
    """
    重试处理器 - 支持指数退避策略

    max_retries 表示失败后的重试次数，总尝试次数为 max_retries + 1
    """

    def __init__(self, max_retries: int = 3, retry_delay: float = 0.0,
                 retry_on: Tuple[Type[BaseException], ...] = (Exception,),
                 cancel_event: Optional[threading.Event] = None):
        """
        初始化重试处理器

        Args:
            max_retries: 最大重试次数
            retry_delay: 重试延迟(秒)，0 表示立即重试
            retry_on: 需要重试的异常类型
            cancel_event: 取消信号，设置后不再重试
        """
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.retry_on = retry_on
        self.cancel_event = cancel_event

    def delay_for(self, attempt: int) -> float:
        """第 attempt 次失败后的等待时间（attempt 从 0 开始）"""
        if self.retry_delay <= 0:
            return 0.0
        return self.retry_delay * (2 ** attempt)

    def execute_with_retry(self, func: Callable, *args,
                           on_retry: Optional[Callable[[int, BaseException], None]] = None, **kwargs):
        """
        执行函数,失败时重试

        Args:
            func: 要执行的函数
            on_retry: 每次失败后的回调 (已尝试次数, 异常)
            *args: 位置参数
            **kwargs: 关键字参数

        Returns:
            函数执行结果

        Raises:
            Exception: 重试失败后抛出最后一次的异常
        """
        total_attempts = self.max_retries + 1

        for attempt in range(total_attempts):
            try:
                return func(*args, **kwargs)
            except self.retry_on as e:
                if on_retry:
                    on_retry(attempt + 1, e)
                if attempt == total_attempts - 1:
                    raise
                if self.cancel_event is not None and self.cancel_event.is_set():
                    raise
                delay = self.delay_for(attempt)
                if delay:
                    if self.cancel_event is not None:
                        self.cancel_event.wait(delay)
                    else:
                        time.sleep(delay)


def format_file_size(size: int) -> str:
    """格式化文件大小"""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size < 1024.0:
            return f"{size:.2f} {unit}"
        size /= 1024.0
    return f"{size:.2f} TB"


def format_time(seconds: float) -> str:
    """格式化时间"""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{seconds/60:.1f}m"
    else:
        return f"{seconds/3600:.1f}h"


def check_ts_header(file_path: str) -> bool:
    """检查TS文件头部是否正常"""
    if not os.path.exists(file_path):
        return False

    with open(file_path, 'rb') as f:
        # 读取前10个TS包（每个188字节）
        sample_data = f.read(1880)

    if len(sample_data) < 4 or sample_data[0] != 0x47:
        return False
    if len(sample_data) < 188 * 3:
        return True
    # 检查前几个TS包的同步字节
    valid_count = sum(1 for i in range(0, len(sample_data), 188) if sample_data[i] == 0x47)
    return valid_count >= 3


def print_banner():
    """打印欢迎横幅"""
    banner = """
        ╔══════════════════════════════════════════════════════════════╗
        ║                        HLS2MP4 v1.0.0                        ║
        ║                                                              ║
        ║  M3U8 → MP4 下载转换工具                                      ║
        ║  支持并发下载、失败重试、AES-128 解密、硬件转码              ║
        ╚══════════════════════════════════════════════════════════════╝
    """
    print(banner)
