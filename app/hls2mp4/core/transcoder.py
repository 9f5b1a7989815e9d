"""
转码模块
把合并后的 TS 转为 MP4，支持两种可互换的后端：

- FFmpegBackend: 调用外部 ffmpeg，优先使用检测到的硬件编码器，失败时回退到 libx264
- HostBackend: 把整个转码委托给宿主环境注册的回调（例如移动平台的硬件编解码器）
"""

import os
import shutil
import logging
import threading
import subprocess
from collections import OrderedDict
from enum import Enum
from typing import Callable, List, Optional

from .config import RunConfig
from .errors import TranscodeError
from .models import TranscodeJob
from .progress import EventPhase

logger = logging.getLogger(__name__)

# 宿主转码回调: (输入路径, 输出路径, 视频码率kbps, 音频码率kbps) -> 是否成功
HostTranscodeCallback = Callable[[str, str, int, int], bool]

DEFAULT_AUDIO_BITRATE = "256k"


class AccelType(Enum):
    """硬件加速类型"""
    NVIDIA = "nvidia"
    AMD = "amd"
    INTEL = "intel"
    APPLE = "apple"
    CPU = "cpu"


# 按优先级排列的硬件编码器
HARDWARE_ENCODERS = [
    (AccelType.NVIDIA, "h264_nvenc"),
    (AccelType.AMD, "h264_amf"),
    (AccelType.INTEL, "h264_qsv"),
    (AccelType.APPLE, "h264_videotoolbox"),
]


class TranscodeBackend:
    """转码后端接口: probe() 检测是否可用，attempt(job) 执行转码"""

    name = "backend"

    def probe(self) -> bool:
        raise NotImplementedError

    def attempt(self, job: TranscodeJob):
        raise NotImplementedError

    def describe(self) -> str:
        return self.name


class FFmpegBackend(TranscodeBackend):
    """通用后端：外部 ffmpeg"""

    name = "ffmpeg"

    def __init__(self, ffmpeg_path: str = "ffmpeg"):
        self.ffmpeg_path = ffmpeg_path
        self.accel: Optional[AccelType] = None

    def probe(self) -> bool:
        """检查 ffmpeg 是否可用，可用时检测硬件加速"""
        try:
            subprocess.run([self.ffmpeg_path, '-version'],
                           stdout=subprocess.PIPE,
                           stderr=subprocess.PIPE,
                           check=True)
        except (subprocess.CalledProcessError, FileNotFoundError, PermissionError):
            logger.info("未找到可用的 ffmpeg")
            return False

        self.accel = self.detect_acceleration()
        return True

    def detect_acceleration(self) -> AccelType:
        """根据 ffmpeg 支持的编码器判断硬件加速类型"""
        try:
            result = subprocess.run([self.ffmpeg_path, '-hide_banner', '-encoders'],
                                    stdout=subprocess.PIPE,
                                    stderr=subprocess.PIPE,
                                    check=False)
        except OSError as e:
            logger.warning(f"检测硬件编码器失败: {e}")
            return AccelType.CPU

        encoders = result.stdout.decode('utf-8', errors='ignore')
        for accel, encoder in HARDWARE_ENCODERS:
            if encoder in encoders:
                logger.info(f"检测到硬件编码器: {encoder}")
                return accel
        return AccelType.CPU

    def describe(self) -> str:
        accel = self.accel.value if self.accel else "unknown"
        return f"ffmpeg ({accel})"

    def build_command(self, job: TranscodeJob, accel: AccelType, output_path: str) -> List[str]:
        """
        构建 ffmpeg 转码命令

        Args:
            job: 转码任务
            accel: 硬件加速类型
            output_path: 输出路径

        Returns:
            List[str]: 命令行参数
        """
        cmd = [self.ffmpeg_path, '-hide_banner', '-loglevel', 'error', '-y']

        if accel is AccelType.NVIDIA:
            cmd.extend(['-hwaccel', 'cuda'])
        cmd.extend(['-i', job.input_path])

        if accel is AccelType.NVIDIA:
            cmd.extend(['-c:v', 'h264_nvenc', '-preset', 'p3', '-rc', 'vbr'])
        elif accel is AccelType.AMD:
            cmd.extend(['-c:v', 'h264_amf'])
        elif accel is AccelType.INTEL:
            cmd.extend(['-c:v', 'h264_qsv'])
        elif accel is AccelType.APPLE:
            cmd.extend(['-c:v', 'h264_videotoolbox'])
        else:
            cmd.extend(['-c:v', 'libx264', '-preset', 'medium'])

        if job.video_bitrate > 0:
            cmd.extend(['-b:v', f"{job.video_bitrate}k"])

        cmd.extend(['-c:a', 'aac'])
        if job.audio_bitrate > 0:
            cmd.extend(['-b:a', f"{job.audio_bitrate}k"])
        else:
            cmd.extend(['-b:a', DEFAULT_AUDIO_BITRATE])

        cmd.extend(['-movflags', '+faststart', output_path])
        return cmd

    def build_remux_command(self, job: TranscodeJob, output_path: str) -> List[str]:
        """直接复制音视频流，不重新编码"""
        return [
            self.ffmpeg_path, '-hide_banner', '-loglevel', 'error', '-y',
            '-i', job.input_path,
            '-c', 'copy',
            '-bsf:a', 'aac_adtstoasc',  # 处理AAC音频流
            '-movflags', '+faststart',
            output_path,
        ]

    def _run(self, cmd: List[str], job: TranscodeJob) -> bool:
        logger.info(f"执行FFmpeg: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=job.timeout,
                check=False
            )
        except subprocess.TimeoutExpired:
            logger.error("FFmpeg执行超时")
            return False
        except OSError as e:
            logger.error(f"FFmpeg启动失败: {e}")
            return False

        if result.returncode != 0:
            stderr = result.stderr.decode('utf-8', errors='ignore')
            logger.error(f"FFmpeg失败 (exit {result.returncode}): {stderr[-1000:]}")
            return False
        return True

    def attempt(self, job: TranscodeJob):
        """
        执行转码：可选的直接转封装 → 硬件编码 → 软件编码

        Raises:
            TranscodeError: 所有方式都失败
        """
        output_path = job.output_path

        if job.remux and job.video_bitrate == 0 and job.audio_bitrate == 0:
            if self._run(self.build_remux_command(job, output_path), job):
                return
            logger.warning("直接转封装失败，改为重新编码")

        accel = self.accel or AccelType.CPU
        if accel is not AccelType.CPU:
            if self._run(self.build_command(job, accel, output_path), job):
                return
            logger.warning(f"硬件编码 ({accel.value}) 失败，回退到 libx264")
            self.accel = AccelType.CPU

        if not self._run(self.build_command(job, AccelType.CPU, output_path), job):
            raise TranscodeError("FFmpeg 转码失败")


class HostBackend(TranscodeBackend):
    """宿主后端：调用宿主环境注册的转码回调"""

    def __init__(self, name: str, callback: HostTranscodeCallback):
        self.name = name
        self.callback = callback

    def probe(self) -> bool:
        return True

    def describe(self) -> str:
        return f"host ({self.name})"

    def attempt(self, job: TranscodeJob):
        try:
            ok = self.callback(job.input_path, job.output_path,
                               job.video_bitrate, job.audio_bitrate)
        except Exception as e:
            raise TranscodeError(f"宿主转码器 {self.name} 异常: {e}") from e

        if not ok:
            raise TranscodeError(f"宿主转码器 {self.name} 转码失败")
        if not os.path.exists(job.output_path):
            raise TranscodeError(f"宿主转码器 {self.name} 没有生成输出文件")


# ==================== 宿主转码器注册表 ====================

_HOST_TRANSCODERS: "OrderedDict[str, HostTranscodeCallback]" = OrderedDict()
_registry_lock = threading.Lock()


def register_host_transcoder(name: str, callback: HostTranscodeCallback) -> bool:
    """
    注册宿主转码器（进程内只注册一次，之后只读）

    Args:
        name: 名称
        callback: 转码回调

    Returns:
        bool: 新注册返回 True，同名已存在返回 False
    """
    with _registry_lock:
        if name in _HOST_TRANSCODERS:
            logger.info(f"宿主转码器已注册: {name}")
            return False
        _HOST_TRANSCODERS[name] = callback
    logger.info(f"已注册宿主转码器: {name}")
    return True


def unregister_host_transcoder(name: str):
    """注销宿主转码器"""
    with _registry_lock:
        _HOST_TRANSCODERS.pop(name, None)


def registered_host_transcoders() -> List[str]:
    """已注册的宿主转码器名称"""
    with _registry_lock:
        return list(_HOST_TRANSCODERS)


def get_host_backend(name: Optional[str] = None) -> Optional[HostBackend]:
    """
    获取宿主后端：指定名称时取对应的，否则取最先注册的

    Returns:
        Optional[HostBackend]: 没有注册时返回 None
    """
    with _registry_lock:
        if name is not None:
            callback = _HOST_TRANSCODERS.get(name)
            return HostBackend(name, callback) if callback else None
        for registered_name, callback in _HOST_TRANSCODERS.items():
            return HostBackend(registered_name, callback)
    return None


class TranscodeOrchestrator:
    """
    转码调度

    任务开始时选择一次后端，之后不再变化
    """

    def __init__(self, config: RunConfig, emitter=None, ffmpeg: Optional[FFmpegBackend] = None):
        self.config = config
        self.emitter = emitter
        self.ffmpeg = ffmpeg or FFmpegBackend()

    def _emit(self, phase: EventPhase, message: str, fraction: float):
        if self.emitter is not None:
            self.emitter.emit(phase, message, fraction)

    def select_backend(self) -> TranscodeBackend:
        """
        根据配置和运行环境选择后端

        auto: 宿主已注册转码器时使用宿主，否则使用 ffmpeg

        Raises:
            TranscodeError: 没有可用的后端
        """
        choice = self.config.backend
        backend: Optional[TranscodeBackend] = None

        if choice in ("auto", "host"):
            backend = get_host_backend(self.config.host_transcoder)
            if backend is None and choice == "host":
                raise TranscodeError(
                    f"没有注册宿主转码器: {self.config.host_transcoder or '(任意)'}")

        if backend is None and choice in ("auto", "ffmpeg"):
            if self.ffmpeg.probe():
                backend = self.ffmpeg

        if backend is None:
            raise TranscodeError("没有可用的转码后端: 未找到 ffmpeg，也没有注册宿主转码器")

        logger.info(f"选择转码后端: {backend.describe()}")
        self._emit(EventPhase.BACKEND, f"转码后端: {backend.describe()}", 1.0)
        return backend

    def transcode(self, job: TranscodeJob, backend: TranscodeBackend) -> str:
        """
        执行转码，成功后再把结果移动到最终路径

        Args:
            job: 转码任务
            backend: 已选择的后端

        Returns:
            str: 最终输出路径

        Raises:
            TranscodeError: 转码失败
        """
        final_path = job.output_path
        work_dir = job.work_dir or os.path.dirname(os.path.abspath(final_path))
        temp_output = os.path.join(work_dir, f".transcode_{os.path.basename(final_path)}")
        staged = TranscodeJob(
            input_path=job.input_path,
            output_path=temp_output,
            video_bitrate=job.video_bitrate,
            audio_bitrate=job.audio_bitrate,
            work_dir=work_dir,
            remux=job.remux,
            timeout=job.timeout,
        )

        self._emit(EventPhase.TRANSCODE, f"使用 {backend.describe()} 转换为 MP4", 0.0)
        try:
            backend.attempt(staged)
            if not os.path.exists(temp_output):
                raise TranscodeError(f"转码后没有生成输出文件: {temp_output}")

            out_dir = os.path.dirname(os.path.abspath(final_path))
            os.makedirs(out_dir, exist_ok=True)
            shutil.move(temp_output, final_path)
        except OSError as e:
            raise TranscodeError(f"保存输出文件失败: {final_path} - {e}") from e
        finally:
            if os.path.exists(temp_output):
                os.remove(temp_output)

        logger.info(f"输出文件: {final_path}")
        self._emit(EventPhase.TRANSCODE, "MP4 转码完成", 1.0)
        return final_path
