"""
视频下载模块
按策略序列驱动 yt-dlp，产出经过校验、满足分辨率门槛、字幕已整理的视频目录

流程：
1. 标记 downloading
2. 依次尝试策略（web+cookies → web → android），每次运行都做停滞监控
3. 进程成功或策略耗尽后查找视频文件；只有 .part 时等待合并完成
4. 停滞（Stuck）时整个视频从头重试，最多 5 次
5. 解析分辨率、整理字幕、标记 completed
"""

import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from config.manager import YouTubeConfig
from core.cancel_token import CancelToken
from core.exceptions import (
    AppException,
    ExtractorError,
    StorageError,
    StuckError,
    TaskCancelledError,
    TransientError,
    UndownloadableError,
    preview_text,
)
from core.logger import get_logger
from core.models import DownloadResult, Strategy, VideoInfo, default_strategies
from core.process_monitor import STALL_SECONDS, TICK_SECONDS, ProcessMonitor, RunResult, StallDetector
from core.subprocess_utils import find_executable, run_command
from core.subtitle_normalizer import SubtitleNormalizer
from core.workdir import WorkDirRepository, measure_download_bytes, parse_height_from_filename
from core.ytdlp_args import build_download_args
from core.ytdlp_errors import classify_run, is_format_unavailable

logger = get_logger()

MAX_STUCK_RETRIES = 5
VERIFY_ATTEMPTS = 12
VERIFY_BASE_DELAY = 15
VERIFY_MAX_DELAY = 60


class VideoDownloader:
    """视频下载器（下载监督者）

    Args:
        repo: 工作目录仓库
        config: YouTube 配置
        auto_fix_overlap: 下载后是否修复字幕重叠
        cancel_token: 根取消令牌
        monitor_factory: 创建 ProcessMonitor 的工厂（测试可替换）
    """

    def __init__(
        self,
        repo: WorkDirRepository,
        config: YouTubeConfig,
        auto_fix_overlap: bool = False,
        cancel_token: Optional[CancelToken] = None,
        monitor_factory: Optional[Callable[..., ProcessMonitor]] = None,
        tick_seconds: float = TICK_SECONDS,
        stall_seconds: float = STALL_SECONDS,
        verify_attempts: int = VERIFY_ATTEMPTS,
        verify_base_delay: float = VERIFY_BASE_DELAY,
        verify_max_delay: float = VERIFY_MAX_DELAY,
        ffmpeg_available: Optional[bool] = None,
    ):
        self.repo = repo
        self.config = config
        self.cancel_token = cancel_token or CancelToken()
        self.monitor_factory = monitor_factory or ProcessMonitor
        self.normalizer = SubtitleNormalizer(repo, auto_fix_overlap=auto_fix_overlap)
        self.tick_seconds = tick_seconds
        self.stall_seconds = stall_seconds
        self.verify_attempts = verify_attempts
        self.verify_base_delay = verify_base_delay
        self.verify_max_delay = verify_max_delay
        self.ffmpeg_available = ffmpeg_available

    def strategies(self) -> List[Strategy]:
        return default_strategies(self.config.disable_android_fallback)

    def download(
        self,
        channel_id: str,
        video: VideoInfo,
        languages: Optional[Sequence[str]] = None,
        force: bool = False,
    ) -> DownloadResult:
        """下载单个视频并记录状态

        Args:
            channel_id: 频道目录名
            video: 视频描述
            languages: 字幕语言（为空表示全部）
            force: 允许重新下载被标记为 undownloadable 的视频

        Raises:
            AppException: 已分类的下载错误（状态文件已写为 failed / undownloadable）
            TaskCancelledError: 被取消（状态保持 downloading，下一轮从头开始）
        """
        video_dir = self.repo.ensure_video_dir(channel_id, video.video_id)
        self.repo.mark_downloading(video_dir, force=force)
        logger.info(f"开始下载: {video.title}", video_id=video.video_id, url=video.url)

        try:
            video_path, attempts = self._download_with_retry(video_dir, video, languages)
            return self._finish(video_dir, video, video_path, attempts)
        except TaskCancelledError:
            logger.warning("下载被取消", video_id=video.video_id)
            raise
        except UndownloadableError as e:
            logger.error(
                f"视频不可下载: {e.message}",
                video_id=video.video_id,
                url=video.url,
                error_type="undownloadable",
            )
            self.repo.mark_undownloadable(video_dir, e.message)
            raise
        except AppException as e:
            logger.error(
                f"下载失败: {e.message}",
                video_id=video.video_id,
                url=video.url,
                error_type=e.error_type.value,
            )
            self.repo.mark_download_failed(video_dir, e.message, e.error_type.value)
            raise

    def _download_with_retry(
        self, video_dir: Path, video: VideoInfo, languages: Optional[Sequence[str]]
    ):
        """Stuck 是唯一在整视频级别重试的错误"""
        for attempt in range(1, MAX_STUCK_RETRIES + 1):
            self.cancel_token.raise_if_cancelled()
            self.repo.record_download_attempt(video_dir, attempt)
            if attempt > 1:
                logger.info(
                    f"重新开始下载视频（第 {attempt}/{MAX_STUCK_RETRIES} 次）",
                    video_id=video.video_id,
                    attempt=attempt,
                )
            try:
                return self._download_once(video_dir, video, languages), attempt
            except StuckError:
                if attempt >= MAX_STUCK_RETRIES:
                    raise
                if self.config.cleanup_partial_files_on_failure:
                    self.repo.cleanup_partial_files(video_dir)
                logger.warning(
                    "检测到下载卡住，整个视频重新下载",
                    video_id=video.video_id,
                    attempt=attempt,
                    error_type="stuck",
                )
        raise StuckError()

    def _download_once(
        self, video_dir: Path, video: VideoInfo, languages: Optional[Sequence[str]]
    ) -> Path:
        """按顺序尝试所有策略，返回视频文件路径"""
        last_error: Optional[AppException] = None
        last_output = ""

        for index, strategy in enumerate(self.strategies(), 1):
            if strategy.pre_sleep > 0:
                self.cancel_token.sleep(strategy.pre_sleep)
            self.cancel_token.raise_if_cancelled()

            fields = {
                "video_id": video.video_id,
                "strategy": index,
                "client": strategy.player_client,
                "cookies": strategy.include_cookies,
            }
            args = build_download_args(
                video_dir, video.url, self.config, strategy, languages, self.ffmpeg_available
            )
            cmd = [self.config.yt_dlp_path or "yt-dlp"] + args
            logger.debug(f"执行下载命令: {' '.join(cmd)}", **fields)

            result = self._run(video_dir, cmd, fields)
            if result.cancelled:
                raise TaskCancelledError(self.cancel_token.get_reason())

            error = classify_run(result.output, result.exit_code, result.stalled)
            if error is None:
                video_path = self._wait_for_video_file(video_dir, video.video_id)
                if video_path is None:
                    raise ExtractorError(
                        "yt-dlp 退出成功但未找到视频文件", preview=result.output
                    )
                return video_path

            last_error = error
            last_output = result.output
            logger.warning(
                f"策略 {index} 失败（{strategy.describe()}）: {error.message}; "
                f"输出: {preview_text(result.output, 300)}",
                exit_code=result.exit_code,
                error_type=error.error_type.value,
                **fields,
            )
            if isinstance(error, UndownloadableError):
                break
            if isinstance(error, StuckError) and self.config.cleanup_partial_files_on_failure:
                self.repo.cleanup_partial_files(video_dir)

        # 策略耗尽：yt-dlp 可能因缺少可选组件返回非零，但视频文件已经完整
        video_path = self._wait_for_video_file(video_dir, video.video_id)
        if video_path is not None:
            logger.warning(
                f"yt-dlp 返回错误，但视频文件已存在，视为下载成功: {video_path.name}",
                video_id=video.video_id,
            )
            return video_path

        if last_error is None:
            last_error = ExtractorError("没有可用的下载策略")
        elif type(last_error) is ExtractorError and is_format_unavailable(last_output):
            last_error = ExtractorError(
                f"没有 {self.config.min_height}p 及以上的格式: {last_error.message}",
                preview=last_error.preview,
            )
        raise last_error

    def _run(self, video_dir: Path, cmd: List[str], fields: dict) -> RunResult:
        monitor = self.monitor_factory(
            video_dir,
            tick_seconds=self.tick_seconds,
            stall_seconds=self.stall_seconds,
            cancel_token=self.cancel_token,
            log_fields=fields,
        )
        try:
            return monitor.run(cmd)
        except OSError as e:
            raise TransientError(
                f"无法启动 yt-dlp: {cmd[0]}", cause=e, component="downloader"
            ) from e

    def _wait_for_video_file(self, video_dir: Path, video_id: str) -> Optional[Path]:
        """查找视频文件；只有 .part 时等待合并完成

        等待间隔 15s、30s、45s、60s...（上限 60s），最多 12 次；
        期间目录总字节数超过停滞窗口不变则判定为卡住

        Raises:
            StuckError: 等待期间文件大小停止变化
        """
        detector = StallDetector(self.stall_seconds)
        for i in range(self.verify_attempts):
            video_path = self.repo.find_video_file(video_dir)
            if video_path is not None:
                return video_path
            if not self.repo.has_partial_files(video_dir):
                return None

            total = measure_download_bytes(video_dir)
            if detector.observe(total):
                raise StuckError(
                    preview=f"等待视频合并期间目录总大小 {detector.unchanged_for():.0f}s 无变化（{total} 字节）"
                )
            if i < self.verify_attempts - 1:
                delay = min(self.verify_base_delay * (i + 1), self.verify_max_delay)
                logger.info(
                    f"存在未完成文件，{delay:.0f}s 后重新检查（{i + 1}/{self.verify_attempts}）",
                    video_id=video_id,
                )
                self.cancel_token.sleep(delay)
        return self.repo.find_video_file(video_dir)

    def _finish(self, video_dir: Path, video: VideoInfo, video_path: Path, attempts: int) -> DownloadResult:
        """分辨率门槛、字幕整理、写入 completed"""
        height = parse_height_from_filename(video_path.name)
        if height is None:
            height = probe_video_height(video_path)
        min_height = self.config.min_height or 1080
        if height is not None and height < min_height:
            raise ExtractorError(
                f"分辨率不足: {height}p < {min_height}p", preview=video_path.name
            )
        has_1080p = bool(height and height >= 1080)

        subtitles = {}
        try:
            subtitles = self.normalizer.normalize(video_dir, video.video_id, video.title)
        except StorageError as e:
            logger.warning(f"字幕整理失败，保留原始字幕: {e}", video_id=video.video_id)

        self.repo.mark_downloaded(video_dir, video_path, has_1080p, height)
        if subtitles:
            self.repo.record_subtitles(video_dir, subtitles)
        logger.info(
            f"下载完成: {video_path.name}（{height or '未知'}p，字幕 {len(subtitles)} 个）",
            video_id=video.video_id,
            attempt=attempts,
        )
        return DownloadResult(
            video_id=video.video_id,
            video_dir=video_dir,
            video_path=video_path,
            height=height,
            has_1080p=has_1080p,
            subtitle_paths=[Path(p) for p in subtitles.values()],
            attempts=attempts,
        )


def probe_video_height(video_path: Path) -> Optional[int]:
    """用 ffprobe 读取视频高度（ffprobe 不可用或失败时返回 None）"""
    ffprobe = find_executable("ffprobe")
    if not ffprobe:
        return None
    cmd = [
        ffprobe, "-v", "error", "-select_streams", "v:0",
        "-show_entries", "stream=height", "-of", "csv=p=0", str(video_path),
    ]
    try:
        result = run_command(cmd, timeout=30)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"ffprobe 执行失败: {e}")
        return None
    if result.returncode != 0:
        return None
    try:
        return int(result.stdout.strip().splitlines()[0])
    except (ValueError, IndexError):
        return None
