"""
下载服务
频道解析 → 按 channel_info.json 顺序逐个下载（单线程），负责跳过规则、每日上限、休息与视频间隔
"""

import random
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from config.manager import AppConfig, ChannelConfig
from core.cancel_token import CancelToken
from core.downloader import VideoDownloader
from core.exceptions import AppException, BotDetectedError, StorageError, TaskCancelledError
from core.fetcher import VideoFetcher
from core.logger import get_logger, update_log_context
from core.models import DownloadResult, VideoInfo
from core.pipeline.quota import DailyDownloadCounter, sleep_until_next_day
from core.pipeline.rest import BotRestController, VideoRestController
from core.state.status import DownloadState
from core.workdir import WorkDirRepository

logger = get_logger()


def select_videos(videos: Sequence[VideoInfo], offset: int = 0, limit: int = 0) -> List[VideoInfo]:
    """按 offset / limit 截取频道视频（limit <= 0 表示到末尾）"""
    offset = max(0, offset)
    selected = list(videos)[offset:]
    if limit > 0:
        selected = selected[:limit]
    return selected


class DownloadService:
    """下载侧编排

    Args:
        config: 应用配置
        repo: 工作目录仓库
        fetcher: 频道解析器
        downloader: 视频下载器
        cancel_token: 根取消令牌
        sleep: 休息 / 间隔使用的休眠函数（默认走取消令牌）
    """

    def __init__(
        self,
        config: AppConfig,
        repo: WorkDirRepository,
        fetcher: VideoFetcher,
        downloader: VideoDownloader,
        cancel_token: Optional[CancelToken] = None,
        sleep: Optional[Callable[[float], None]] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.repo = repo
        self.fetcher = fetcher
        self.downloader = downloader
        self.cancel_token = cancel_token or CancelToken()
        self.sleep = sleep or self.cancel_token.sleep
        self.rng = rng or random.Random()
        self.clock = clock

        yt = config.youtube
        self.video_rest = VideoRestController(
            yt.video_limit_before_rest, yt.video_limit_rest_duration, self.sleep, self.rng
        )
        self.bot_rest = BotRestController(
            yt.bot_detection_threshold, yt.bot_detection_rest_duration, self.sleep, self.rng
        )
        self.daily_counter = DailyDownloadCounter(repo, yt.daily_video_limit, clock)

    # ------------------------------------------------------------------ 频道

    def parse_channel(self, channel: ChannelConfig) -> List[VideoInfo]:
        """解析频道并整体覆盖 channel_info.json"""
        channel_id = self.repo.channel_id_for(channel.url)
        videos = self.fetcher.extract_videos(channel.url)
        path = self.repo.save_channel_info(channel_id, videos)
        logger.info(f"频道信息已保存: {path}（{len(videos)} 个视频）", channel=channel_id)
        return videos

    def load_channel_videos(self, channel: ChannelConfig) -> Tuple[str, List[VideoInfo]]:
        """读取频道视频列表（缺少 channel_info.json 时先解析），并应用 offset / limit"""
        channel_id = self.repo.channel_id_for(channel.url)
        if not self.repo.channel_info_exists(channel_id):
            logger.info("未找到频道信息，先解析频道", channel=channel_id, url=channel.url)
            self.parse_channel(channel)
        videos = self.repo.load_channel_info(channel_id)
        selected = select_videos(videos, channel.offset, channel.limit)
        if len(selected) != len(videos):
            logger.info(
                f"按 offset={channel.offset} limit={channel.limit} 处理 {len(selected)}/{len(videos)} 个视频",
                channel=channel_id,
            )
        return channel_id, selected

    def write_pending_downloads(self, channel_id: str, channel_url: str, videos: Sequence[VideoInfo]) -> None:
        entries = []
        for video in videos:
            state = self.repo.get_download_state(self.repo.video_dir(channel_id, video.video_id))
            entries.append({
                "id": video.video_id,
                "title": video.title,
                "url": video.url,
                "status": state.value if state else "pending",
            })
        self.repo.save_pending_downloads(channel_id, {
            "channel_id": channel_id,
            "channel_url": channel_url,
            "generated_at": self.clock().isoformat(timespec="seconds"),
            "videos": entries,
        })

    def download_channel(self, channel: ChannelConfig) -> Dict[str, int]:
        """逐个下载频道视频，单个视频失败不影响后续视频

        Returns:
            统计：total / downloaded / skipped / failed
        """
        channel_id, videos = self.load_channel_videos(channel)
        update_log_context(channel=channel_id)
        languages = self.config.channel_languages(channel)

        if self.config.generate_pending_downloads:
            try:
                self.write_pending_downloads(channel_id, channel.url, videos)
            except StorageError as e:
                logger.warning(f"生成待下载状态文件失败，继续下载: {e}", channel=channel_id)

        stats = {"total": len(videos), "downloaded": 0, "skipped": 0, "failed": 0}
        for index, video in enumerate(videos, 1):
            self.cancel_token.raise_if_cancelled()
            if self.should_skip(channel_id, video):
                logger.debug("视频已处理，跳过", video_id=video.video_id)
                stats["skipped"] += 1
                continue
            logger.info(f"处理视频 {index}/{len(videos)}: {video.title}", video_id=video.video_id)
            try:
                result = self.download_video(channel_id, video, languages)
            except TaskCancelledError:
                raise
            except StorageError as e:
                logger.error(f"工作目录读写失败: {e}", video_id=video.video_id, error_type=e.error_type.value)
                stats["failed"] += 1
                continue
            if result is None:
                stats["failed"] += 1
            else:
                stats["downloaded"] += 1

        logger.info(
            f"频道下载完成: 共 {stats['total']}，新下载 {stats['downloaded']}，"
            f"跳过 {stats['skipped']}，失败 {stats['failed']}",
            channel=channel_id,
        )
        return stats

    # ------------------------------------------------------------------ 单个视频

    def is_downloaded(self, channel_id: str, video: VideoInfo) -> bool:
        video_dir = self.repo.video_dir(channel_id, video.video_id)
        return self.repo.get_download_state(video_dir) == DownloadState.COMPLETED

    def should_skip(self, channel_id: str, video: VideoInfo) -> bool:
        """已上传、已下载或被标记为不可下载（未强制）的视频跳过"""
        video_dir = self.repo.video_dir(channel_id, video.video_id)
        if not video_dir.is_dir():
            return False
        if self.repo.is_video_uploaded(video_dir):
            return True
        if self.repo.get_download_state(video_dir) == DownloadState.COMPLETED:
            return self.repo.settle_partial_files(video_dir)
        if self.repo.is_undownloadable(video_dir):
            return not self.config.youtube.force_download_undownloadable
        return False

    def download_video(
        self, channel_id: str, video: VideoInfo, languages: Optional[Sequence[str]] = None
    ) -> Optional[DownloadResult]:
        """下载单个视频

        Returns:
            下载结果；跳过或失败（状态文件已记录）时返回 None

        Raises:
            TaskCancelledError: 被取消
            StorageError: 工作目录读写失败
        """
        if self.should_skip(channel_id, video):
            logger.debug("视频已处理，跳过", video_id=video.video_id)
            return None

        if self.daily_counter.is_limit_reached():
            logger.info(f"已达到每日下载上限 {self.daily_counter.limit}")
            sleep_until_next_day(self.cancel_token, self.clock, self.sleep)

        update_log_context(video_id=video.video_id)
        force = self.config.youtube.force_download_undownloadable
        try:
            result = self.downloader.download(channel_id, video, languages, force=force)
        except TaskCancelledError:
            raise
        except StorageError:
            raise
        except BotDetectedError:
            self.bot_rest.record_bot_detected()
            self._delay_between_videos()
            return None
        except AppException:
            # 错误已在下载器中分类、记录并写入状态文件
            self._delay_between_videos()
            return None

        self.daily_counter.increment()
        self.video_rest.record_success()
        self._delay_between_videos()
        return result

    def _delay_between_videos(self) -> None:
        base = self.config.youtube.download_delay_seconds
        if base <= 0:
            return
        seconds = base * self.rng.uniform(1.0, 1.5)
        logger.debug(f"视频间隔 {seconds:.1f}s")
        self.sleep(seconds)
