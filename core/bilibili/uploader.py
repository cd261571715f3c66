"""
B 站投稿
一次投稿的完整流程：cookies → 预热会话 → 本地文件预检 → 封面 → 字幕 → 视频分片 → 发布
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from core.bilibili.client import BilibiliClient, decode_json
from core.bilibili.cookies import load_cookies
from core.bilibili.cover import CoverUploader
from core.bilibili.subtitle import SubtitleUploader
from core.bilibili.video import VideoUploader
from core.cancel_token import CancelToken
from core.exceptions import MissingCoverError, PublishError, UploadError
from core.logger import get_logger
from core.models import UploadRequest
from core.workdir import WorkDirRepository

logger = get_logger()

PUBLISH_ENDPOINT = "/intl/videoup/web2/add"
# 有字幕时固定为英语
SUBTITLE_LANG_ID = 3
PREVIEW_LIMIT = 1000

_SHELL_ESCAPES = (("\\ ", " "), ("\\#", "#"), ('\\"', '"'), ("\\'", "'"))


def clean_path(path) -> Path:
    """去掉从 shell 复制来的转义（\\ 、\\#、\\"、\\'）"""
    text = str(path)
    for escaped, plain in _SHELL_ESCAPES:
        text = text.replace(escaped, plain)
    return Path(text)


def build_publish_payload(
    filename: str,
    title: str,
    cover_url: str,
    description: str = "",
    subtitle_url: Optional[str] = None,
) -> Dict[str, Any]:
    """投稿请求体；filename 不带 .mp4 后缀"""
    if filename.endswith(".mp4"):
        filename = filename[: -len(".mp4")]
    payload: Dict[str, Any] = {
        "title": title,
        "cover": cover_url,
        "desc": description,
        "no_reprint": True,
        "filename": filename,
        "playlist_id": "",
        "from_spmid": "333.1011",
        "copyright": 1,
        "tag": "",
        "subtitle_id": None,
        "subtitle_lang_id": None,
    }
    if subtitle_url:
        payload["subtitle_url"] = subtitle_url
        payload["subtitle_lang_id"] = SUBTITLE_LANG_ID
    return payload


class BilibiliUploader:
    """B 站上传器

    Args:
        repo: 工作目录仓库（查找封面与兜底视频文件）
        base_url: 站点地址
        chunk_retries: 分片最大尝试次数
        chunk_backoff: 分片重试退避基数（秒）
        ffmpeg_path: 封面补边使用的 ffmpeg
        session_factory: 创建 requests.Session 的工厂（测试可替换）
    """

    def __init__(
        self,
        repo: WorkDirRepository,
        base_url: str = "https://www.bilibili.tv/en/",
        chunk_retries: int = 5,
        chunk_backoff: float = 1.0,
        ffmpeg_path: str = "ffmpeg",
        cancel_token: Optional[CancelToken] = None,
        session_factory=None,
        chunk_interval: Optional[float] = None,
    ):
        self.repo = repo
        self.base_url = base_url
        self.chunk_retries = chunk_retries
        self.chunk_backoff = chunk_backoff
        self.ffmpeg_path = ffmpeg_path
        self.cancel_token = cancel_token or CancelToken()
        self.session_factory = session_factory
        self.chunk_interval = chunk_interval

    def preflight(self, request: UploadRequest) -> Tuple[Path, List[Path], Path]:
        """发送任何字节之前检查本地文件

        Returns:
            (视频文件, 字幕文件列表, 封面文件)

        Raises:
            UploadError: 视频或字幕文件不存在
            MissingCoverError: 找不到封面
        """
        video_path = clean_path(request.video_path)
        video_dir = clean_path(request.video_dir or video_path.parent)
        if not video_path.is_file():
            fallback = self.repo.find_any_video_file(video_dir)
            if fallback is None:
                raise UploadError(f"视频文件不存在: {video_path}")
            logger.warning(f"视频文件不存在，改用目录中的 {fallback.name}")
            video_path = fallback

        subtitles = [clean_path(p) for p in request.subtitle_paths]
        missing = [str(p) for p in subtitles if not p.is_file()]
        if missing:
            raise UploadError(f"字幕文件不存在: {', '.join(missing)}")

        cover = self.repo.find_cover_file(video_dir, video_path)
        if cover is None:
            raise MissingCoverError(str(video_dir))
        return video_path, subtitles, cover

    def _create_client(self, cookies_file: str) -> BilibiliClient:
        cookies = load_cookies(cookies_file)
        session = self.session_factory() if self.session_factory else None
        return BilibiliClient(
            cookies, base_url=self.base_url, session=session, cancel_token=self.cancel_token
        )

    def upload(self, request: UploadRequest, cookies_file: str) -> str:
        """上传并发布一个视频

        Returns:
            aid

        Raises:
            AuthError / MissingCoverError / UploadError / PublishError
        """
        client = self._create_client(cookies_file)
        client.prime_session()

        video_path, subtitles, cover = self.preflight(request)
        logger.info(
            f"开始投稿: {request.title}（视频 {video_path.name}，封面 {cover.name}，字幕 {len(subtitles)} 个）",
            account=request.account or None,
        )

        cover_url = CoverUploader(client, self.ffmpeg_path).upload(cover, video_path)

        subtitle_url = None
        if subtitles:
            subtitle_url = SubtitleUploader(client, self.cancel_token).upload(subtitles)

        video_uploader = VideoUploader(
            client,
            chunk_retries=self.chunk_retries,
            retry_backoff=self.chunk_backoff,
            cancel_token=self.cancel_token,
        )
        if self.chunk_interval is not None:
            video_uploader.chunk_interval = self.chunk_interval
        filename = video_uploader.upload(video_path)

        aid = self.publish(client, filename, request.title, cover_url, request.description, subtitle_url)
        logger.info(f"投稿成功: aid={aid}", account=request.account or None)
        return aid

    def publish(
        self,
        client: BilibiliClient,
        filename: str,
        title: str,
        cover_url: str,
        description: str = "",
        subtitle_url: Optional[str] = None,
    ) -> str:
        """调用投稿接口

        Raises:
            UploadError: HTTP 非 200 或响应无法解析
            PublishError: 接口 code != 0
        """
        payload = build_publish_payload(filename, title, cover_url, description, subtitle_url)
        body = json.dumps(payload, ensure_ascii=False)
        response = client.post(
            client.api_url(PUBLISH_ENDPOINT),
            data=body.encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        if response.status_code != 200:
            raise UploadError(
                f"发布视频失败: HTTP {response.status_code}",
                preview=response.text,
            )

        result = decode_json(response, "投稿")
        code = result.get("code")
        if code != 0:
            message = str(result.get("message") or "")
            if message in ("", "--"):
                message = f"错误代码: {code}"
            raise PublishError(
                int(code) if isinstance(code, (int, float)) else -1,
                message,
                request_preview=body[:PREVIEW_LIMIT],
                response_preview=response.text[:PREVIEW_LIMIT],
            )

        aid = (result.get("data") or {}).get("aid")
        if aid in (None, ""):
            raise UploadError("投稿响应缺少 aid", preview=response.text)
        return str(aid)
