"""
临时工作空间模块

每次任务使用独立的临时目录，存放合并后的 TS、暂存片段和转码中间文件
"""

import os
import uuid
import shutil
import logging
import tempfile
from typing import Optional

logger = logging.getLogger(__name__)

MERGED_FILENAME = "merged.ts"


def verify_directory_writable(path: str) -> bool:
    """
    检查目录是否可写（不存在时尝试创建）

    Args:
        path: 目录路径

    Returns:
        bool: 是否可写
    """
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        logger.warning(f"无法创建目录 {path}: {e}")
        return False

    if not os.path.isdir(path):
        logger.warning(f"路径存在但不是目录: {path}")
        return False

    test_file = os.path.join(path, f".writable_test_{uuid.uuid4().hex[:8]}")
    try:
        with open(test_file, 'wb') as f:
            f.write(b"test")
        os.remove(test_file)
    except OSError as e:
        logger.warning(f"目录不可写 {path}: {e}")
        return False
    return True


def select_writable_temp_dir(preferred: Optional[str] = None) -> str:
    """
    选择可写的临时目录

    依次尝试: 指定目录、系统临时目录、当前目录

    Args:
        preferred: 调用方指定的目录（受限平台上由宿主提供）

    Returns:
        str: 可写目录

    Raises:
        OSError: 没有任何可写目录
    """
    candidates = []
    if preferred:
        candidates.append(preferred)
    candidates.append(tempfile.gettempdir())
    candidates.append(os.getcwd())

    for candidate in candidates:
        if verify_directory_writable(candidate):
            logger.info(f"临时目录: {candidate}")
            return candidate

    raise OSError(f"找不到可写的临时目录，已尝试: {', '.join(candidates)}")


class RunWorkspace:
    """
    隔离的任务工作空间

    为每个任务创建独立的临时目录，避免并发任务间的资源竞争
    """

    def __init__(self, base_temp_dir: str, task_name: str = "hls2mp4"):
        # 生成唯一任务ID
        self.task_id = f"{task_name}_{uuid.uuid4().hex[:8]}"

        self.path = os.path.join(base_temp_dir, self.task_id)
        os.makedirs(self.path, exist_ok=True)

        self.merged_ts = os.path.join(self.path, MERGED_FILENAME)

        logger.info(f"[{self.task_id}] 创建工作空间: {self.path}")

    def cleanup(self):
        """删除整个工作空间"""
        if os.path.exists(self.path):
            shutil.rmtree(self.path, ignore_errors=True)
            logger.info(f"[{self.task_id}] 工作空间已清理")
