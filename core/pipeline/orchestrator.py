"""
编排器
- batch：先下载所有频道，再上传所有频道
- sync：按频道顺序逐个视频“下载 → 立即上传”，占用磁盘最少
- fix-status：离线补偿，上传已完成但下载状态不是 completed 的目录

取消只在视频之间生效：正在进行的下载 / 上传由各自的阻塞点感知取消令牌。
"""

from typing import Dict, List, Optional

from config.manager import AppConfig, ChannelConfig
from core.cancel_token import CancelToken
from core.exceptions import AppException, ConfigError, StorageError, TaskCancelledError
from core.logger import get_logger, update_log_context
from core.pipeline.download_service import DownloadService
from core.pipeline.upload_service import UploadService
from core.workdir import WorkDirRepository

logger = get_logger()


class Orchestrator:
    """下载 / 上传编排器

    Args:
        config: 应用配置
        repo: 工作目录仓库
        download_service: 下载服务
        upload_service: 上传服务（只解析 / 下载时可为 None）
        cancel_token: 根取消令牌
    """

    def __init__(
        self,
        config: AppConfig,
        repo: WorkDirRepository,
        download_service: Optional[DownloadService] = None,
        upload_service: Optional[UploadService] = None,
        cancel_token: Optional[CancelToken] = None,
    ):
        self.config = config
        self.repo = repo
        self.download_service = download_service
        self.upload_service = upload_service
        self.cancel_token = cancel_token or CancelToken()

    def select_channels(self, channel_url: Optional[str] = None, all_channels: bool = False) -> List[ChannelConfig]:
        """--channel 指定单个频道，--all 选择全部

        Raises:
            ConfigError: 两者都没有指定或频道不在配置中
        """
        if channel_url:
            channel = self.config.find_channel(channel_url)
            if channel is None:
                raise ConfigError(f"未找到该频道配置: {channel_url}")
            return [channel]
        if all_channels:
            return list(self.config.channels)
        raise ConfigError("请指定频道（--channel）或使用 --all 处理所有频道")

    def _for_each_channel(self, channels: List[ChannelConfig], action, label: str) -> Dict[str, int]:
        """逐个频道执行，单个频道失败不影响其他频道；取消时在频道 / 视频之间退出"""
        totals: Dict[str, int] = {}
        try:
            for channel in channels:
                self.cancel_token.raise_if_cancelled()
                channel_id = self.repo.channel_id_for(channel.url)
                update_log_context(task=label, channel=channel_id, video_id=None)
                try:
                    stats = action(channel) or {}
                except TaskCancelledError:
                    raise
                except AppException as e:
                    logger.error(
                        f"频道处理失败（继续下一个频道）: {e}",
                        channel=channel_id,
                        url=channel.url,
                        error_type=e.error_type.value,
                    )
                    totals["channel_failed"] = totals.get("channel_failed", 0) + 1
                    continue
                for key, value in stats.items():
                    totals[key] = totals.get(key, 0) + value
        except TaskCancelledError as e:
            logger.warning(f"{label} 已取消，在视频之间退出: {e.reason or ''}")
            totals["cancelled"] = 1
        return totals

    # ------------------------------------------------------------------ 模式

    def parse_channels(self, channels: List[ChannelConfig]) -> Dict[str, int]:
        def _parse(channel: ChannelConfig) -> Dict[str, int]:
            return {"videos": len(self.download_service.parse_channel(channel))}

        return self._for_each_channel(channels, _parse, "parse")

    def download_channels(self, channels: List[ChannelConfig]) -> Dict[str, int]:
        return self._for_each_channel(channels, self.download_service.download_channel, "download")

    def upload_all_channels(self, channels: List[ChannelConfig]) -> Dict[str, int]:
        return self._for_each_channel(channels, self.upload_service.upload_channel, "upload")

    def batch(self, channels: List[ChannelConfig]) -> Dict[str, int]:
        """先全部下载，再全部上传"""
        totals = self.download_channels(channels)
        if totals.get("cancelled"):
            return totals
        upload_totals = self.upload_all_channels(channels)
        for key, value in upload_totals.items():
            totals[key] = totals.get(key, 0) + value
        return totals

    def sync(self, channels: List[ChannelConfig]) -> Dict[str, int]:
        """逐个视频下载后立即上传"""
        return self._for_each_channel(channels, self.sync_channel, "sync")

    def sync_channel(self, channel: ChannelConfig) -> Dict[str, int]:
        channel_id, videos = self.download_service.load_channel_videos(channel)
        languages = self.config.channel_languages(channel)
        stats = {"total": len(videos), "downloaded": 0, "uploaded": 0, "skipped": 0, "failed": 0}
        logger.info(f"开始顺序同步频道: {len(videos)} 个视频", channel=channel_id)

        for index, video in enumerate(videos, 1):
            self.cancel_token.raise_if_cancelled()
            video_dir = self.repo.video_dir(channel_id, video.video_id)
            if video_dir.is_dir() and self.repo.is_video_uploaded(video_dir):
                self.upload_service.resume_housekeeping(video_dir)
                stats["skipped"] += 1
                continue

            logger.info(f"处理视频 {index}/{len(videos)}: {video.title}", video_id=video.video_id)
            try:
                if self.download_service.download_video(channel_id, video, languages) is not None:
                    stats["downloaded"] += 1
                if not self.repo.is_video_downloaded(video_dir):
                    stats["failed"] += 1
                    continue
                aid = self.upload_service.upload_video(video_dir, video, channel.account)
            except StorageError as e:
                logger.error(f"工作目录读写失败: {e}", video_id=video.video_id, error_type=e.error_type.value)
                stats["failed"] += 1
                continue
            if aid:
                stats["uploaded"] += 1
            else:
                stats["failed"] += 1

        logger.info(
            f"顺序同步完成: 共 {stats['total']}，下载 {stats['downloaded']}，上传 {stats['uploaded']}，"
            f"跳过 {stats['skipped']}，失败 {stats['failed']}",
            channel=channel_id,
        )
        return stats

    def fix_status(self, channels: List[ChannelConfig]) -> Dict[str, int]:
        """修复“上传已完成但下载状态不是 completed”的目录"""

        def _fix(channel: ChannelConfig) -> Dict[str, int]:
            channel_id = self.repo.channel_id_for(channel.url)
            fixed = 0
            for video_dir in self.repo.list_video_dirs(channel_id):
                if self.repo.repair_download_status(video_dir):
                    fixed += 1
            logger.info(f"已修复 {fixed} 个视频的下载状态", channel=channel_id)
            return {"fixed": fixed}

        return self._for_each_channel(channels, _fix, "fix-status")
