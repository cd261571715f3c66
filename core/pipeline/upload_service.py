"""
上传服务
为已下载的视频组装上传请求、选择账号、调用上传器、记录状态并做发布后的整理
"""

import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from config.manager import AppConfig, ChannelConfig
from core.bilibili.uploader import BilibiliUploader
from core.cancel_token import CancelToken
from core.exceptions import AppException, PublishError, StorageError, TaskCancelledError
from core.logger import get_logger, update_log_context
from core.models import UploadRequest, VideoInfo
from core.pipeline.download_service import select_videos
from core.pipeline.quota import UploadQuota, sleep_until_next_day
from core.subtitle_normalizer import subtitle_language
from core.workdir import WorkDirRepository

logger = get_logger()

# 没有配置任何账号时，使用 bilibili.cookies_file 的账号名
DEFAULT_ACCOUNT = "default"


def is_english(lang: str) -> bool:
    lang = lang.lower()
    return lang == "en" or lang.startswith("en-")


def pick_upload_subtitles(subtitles: Sequence[Path]) -> List[Path]:
    """优先英文字幕（en、en-*），没有则取第一个"""
    subtitles = [Path(p) for p in subtitles]
    english = [p for p in subtitles if is_english(subtitle_language(p))]
    if english:
        return english[:1]
    return subtitles[:1]


class UploadService:
    """上传侧编排

    Args:
        config: 应用配置
        repo: 工作目录仓库
        uploader: B 站上传器
        quota: 账号配额
        cancel_token: 根取消令牌
        sleep: 等待配额恢复时的休眠函数（默认走取消令牌）
    """

    def __init__(
        self,
        config: AppConfig,
        repo: WorkDirRepository,
        uploader: BilibiliUploader,
        quota: UploadQuota,
        cancel_token: Optional[CancelToken] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.repo = repo
        self.uploader = uploader
        self.quota = quota
        self.cancel_token = cancel_token or CancelToken()
        self.sleep = sleep or self.cancel_token.sleep
        self.clock = clock

    # ------------------------------------------------------------------ 账号

    def account_names(self) -> List[str]:
        if self.config.accounts:
            return sorted(self.config.accounts)
        return [DEFAULT_ACCOUNT]

    def acquire_account(self, preferred: str = "") -> str:
        """选择有剩余配额的账号，全部满额时休眠到第二天再选

        频道指定了账号时只使用该账号；否则在所有账号中随机轮转
        """
        while True:
            self.cancel_token.raise_if_cancelled()
            if preferred:
                if self.quota.try_account(preferred):
                    return preferred
                logger.info(f"账号 {preferred} 今日上传已达上限 {self.quota.limit}", account=preferred)
            else:
                account = self.quota.pick_account(self.account_names())
                if account:
                    return account
                logger.info(f"所有账号今日上传均已达上限 {self.quota.limit}")
            sleep_until_next_day(self.cancel_token, self.clock, self.sleep)

    def cookies_file(self, account: str) -> str:
        return self.config.cookies_for_account(account)

    # ------------------------------------------------------------------ 请求组装

    def build_request(
        self, video_dir: Path, video: Optional[VideoInfo] = None, account: str = ""
    ) -> UploadRequest:
        """标题：info.json → channel_info 描述 → 文件名；描述：.description → info.json"""
        video_dir = Path(video_dir)
        video_id = video.video_id if video else video_dir.name
        video_path = self.repo.find_video_file(video_dir) or self.repo.find_any_video_file(video_dir)
        if video_path is None:
            video_path = video_dir / f"{video_id}.mp4"

        info = self.repo.load_info_json(video_dir, video_id)
        title = (info.get("title") or "").strip()
        if not title and video is not None:
            title = video.title.strip()
        if not title:
            title = video_path.stem

        description = self.repo.read_description(video_dir, video_id) or (info.get("description") or "")

        subtitles: List[Path] = []
        if self.config.bilibili.upload_subtitles:
            subtitles = pick_upload_subtitles(self._downloaded_subtitles(video_dir))

        return UploadRequest(
            video_path=video_path,
            title=title,
            description=description,
            subtitle_paths=subtitles,
            account=account,
            video_dir=video_dir,
        )

    def _downloaded_subtitles(self, video_dir: Path) -> List[Path]:
        """状态文件记录的整理后字幕，缺失时扫描目录"""
        status = self.repo.load_download_status(video_dir)
        recorded = [Path(p) for p in status.subtitles.values() if Path(p).is_file()]
        if recorded:
            return sorted(recorded)
        return [p for p in self.repo.find_subtitle_files(video_dir) if p.suffix.lower() == ".srt"]

    # ------------------------------------------------------------------ 上传

    def should_upload(self, video_dir: Path) -> bool:
        if not Path(video_dir).is_dir():
            return False
        if self.repo.is_video_uploaded(video_dir):
            return False
        return self.repo.is_video_downloaded(video_dir)

    def upload_video(
        self,
        video_dir: Path,
        video: Optional[VideoInfo] = None,
        preferred_account: str = "",
    ) -> Optional[str]:
        """上传单个视频

        Returns:
            aid；跳过或失败（状态文件已记录）时返回 None

        Raises:
            TaskCancelledError: 被取消
            StorageError: 工作目录读写失败
        """
        video_dir = Path(video_dir)
        if not self.should_upload(video_dir):
            return None

        video_id = video.video_id if video else video_dir.name
        update_log_context(video_id=video_id)
        account = self.acquire_account(preferred_account)
        request = self.build_request(video_dir, video, account)

        self.repo.mark_uploading(video_dir, account)
        try:
            aid = self.uploader.upload(request, self.cookies_file(account))
        except TaskCancelledError:
            logger.warning("上传被取消", video_id=video_id, account=account)
            raise
        except PublishError as e:
            logger.error(
                f"投稿失败: {e.message}; 请求: {e.request_preview or ''}; 响应: {e.preview or ''}",
                video_id=video_id,
                account=account,
                error_type=e.error_type.value,
            )
            self.repo.mark_upload_failed(video_dir, e.response_message, e.error_type.value, e.code)
            return None
        except AppException as e:
            logger.error(
                f"上传失败: {e}",
                video_id=video_id,
                account=account,
                error_type=e.error_type.value,
            )
            self.repo.mark_upload_failed(video_dir, e.message, e.error_type.value)
            return None

        self.repo.mark_uploaded(video_dir, aid, account)
        count = self.quota.record_success(account)
        logger.info(f"上传完成: aid={aid}（账号今日第 {count} 个）", video_id=video_id, account=account)

        try:
            self.housekeeping(video_dir, request.video_path, aid)
        except StorageError as e:
            logger.warning(f"发布后整理失败: {e}", video_id=video_id)
        return aid

    def housekeeping(self, video_dir: Path, video_path: Path, aid: str) -> None:
        """归档字幕到 {subtitle_archive}/{aid}/{aid}_{lang}{ext}，按配置删除原视频，写入 .organized"""
        archive_root = self.config.output.subtitle_archive
        subtitles = self.repo.find_subtitle_files(video_dir)
        if archive_root and subtitles:
            target_dir = Path(archive_root) / aid
            try:
                target_dir.mkdir(parents=True, exist_ok=True)
                for subtitle in subtitles:
                    lang = subtitle_language(subtitle) or "und"
                    shutil.copy2(subtitle, target_dir / f"{aid}_{lang}{subtitle.suffix}")
            except OSError as e:
                raise StorageError(f"归档字幕失败: {target_dir}", cause=e) from e
            logger.info(f"已归档 {len(subtitles)} 个字幕到 {target_dir}")

        if self.config.bilibili.delete_original_after_upload and Path(video_path).is_file():
            try:
                Path(video_path).unlink()
            except OSError as e:
                raise StorageError(f"删除原视频失败: {video_path}", cause=e) from e
            logger.info(f"已删除原视频: {Path(video_path).name}")

        self.repo.mark_organized(video_dir)

    def resume_housekeeping(self, video_dir: Path) -> bool:
        """已投稿但没有 .organized 标记（上一轮在整理前中断）时补做整理

        Returns:
            是否补做了整理
        """
        video_dir = Path(video_dir)
        if not self.repo.is_video_uploaded(video_dir) or self.repo.is_organized(video_dir):
            return False
        aid = self.repo.load_upload_status(video_dir).bilibili_aid
        if not aid:
            return False
        video_path = self.repo.find_video_file(video_dir) or self.repo.find_any_video_file(video_dir)
        logger.info(f"补做发布后整理: aid={aid}", video_id=video_dir.name)
        try:
            self.housekeeping(video_dir, video_path or video_dir / f"{video_dir.name}.mp4", aid)
        except StorageError as e:
            logger.warning(f"发布后整理失败: {e}", video_id=video_dir.name)
            return False
        return True

    def upload_channel(self, channel: ChannelConfig) -> Dict[str, int]:
        """按 channel_info.json 顺序上传频道内已下载的视频

        Returns:
            统计：total / uploaded / skipped / failed
        """
        channel_id = self.repo.channel_id_for(channel.url)
        update_log_context(channel=channel_id)
        if self.repo.channel_info_exists(channel_id):
            videos: List[Optional[VideoInfo]] = list(
                select_videos(self.repo.load_channel_info(channel_id), channel.offset, channel.limit)
            )
            dirs = [self.repo.video_dir(channel_id, v.video_id) for v in videos]
        else:
            dirs = self.repo.list_video_dirs(channel_id)
            videos = [None] * len(dirs)

        stats = {"total": len(dirs), "uploaded": 0, "skipped": 0, "failed": 0}
        for video_dir, video in zip(dirs, videos):
            self.cancel_token.raise_if_cancelled()
            if not self.should_upload(video_dir):
                self.resume_housekeeping(video_dir)
                stats["skipped"] += 1
                continue
            try:
                aid = self.upload_video(video_dir, video, channel.account)
            except TaskCancelledError:
                raise
            except StorageError as e:
                logger.error(f"工作目录读写失败: {e}", error_type=e.error_type.value)
                stats["failed"] += 1
                continue
            stats["uploaded" if aid else "failed"] += 1

        logger.info(
            f"频道上传完成: 共 {stats['total']}，上传 {stats['uploaded']}，"
            f"跳过 {stats['skipped']}，失败 {stats['failed']}",
            channel=channel_id,
        )
        return stats
