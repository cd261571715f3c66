"""
封面上传
封面以 data URI 放在 multipart 的 cover 字段里；尺寸被拒（-702）时用 ffmpeg 补边到 1280x720 重试，
仍失败则从视频第一帧截图再试一次
"""

import base64
import subprocess
from pathlib import Path
from typing import Optional, Tuple

from core.bilibili.client import BilibiliClient, decode_json
from core.exceptions import UploadError, preview_text
from core.logger import get_logger
from core.subprocess_utils import find_executable, run_command

logger = get_logger()

COVER_ENDPOINT = "/intl/videoup/web2/cover"
DIMENSION_REJECTED = -702
FFMPEG_TIMEOUT_SECONDS = 120

# 保持比例缩放，居中补黑边到 1280x720
PAD_FILTER = (
    "scale='if(gt(a,16/9),1280,-1)':'if(gt(a,16/9),-1,720)',"
    "pad=1280:720:(ow-iw)/2:(oh-ih)/2:color=black,format=yuv420p"
)

_OUTPUT_FORMATS = {
    ".jpg": (".jpg", "image/jpeg", ["-q:v", "2"]),
    ".jpeg": (".jpg", "image/jpeg", ["-q:v", "2"]),
    ".png": (".png", "image/png", []),
    ".webp": (".webp", "image/webp", ["-quality", "85"]),
}


def detect_image_mime(data: bytes) -> str:
    """根据文件头判断图片类型，默认 JPEG"""
    if data[:4] == b"\x89PNG":
        return "image/png"
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def to_data_uri(data: bytes) -> str:
    return f"data:{detect_image_mime(data)};base64,{base64.b64encode(data).decode('ascii')}"


def _run_ffmpeg(ffmpeg: str, args) -> None:
    cmd = [ffmpeg] + list(args)
    try:
        result = run_command(cmd, timeout=FFMPEG_TIMEOUT_SECONDS)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise UploadError(f"ffmpeg 执行失败: {e}", cause=e) from e
    if result.returncode != 0:
        raise UploadError(
            f"ffmpeg 退出码 {result.returncode}",
            preview=(result.stderr or "") + (result.stdout or ""),
        )


def _require_ffmpeg(ffmpeg_path: str) -> str:
    ffmpeg = find_executable(ffmpeg_path or "ffmpeg")
    if not ffmpeg:
        raise UploadError("未检测到 ffmpeg，无法自动调整封面尺寸")
    return ffmpeg


def pad_cover_to_1280x720(cover_path: Path, ffmpeg_path: str = "ffmpeg") -> Path:
    """把封面补边为 1280x720，尽量保持原格式，失败时回退为 jpg

    Returns:
        输出文件 cover_1280x720.{ext}
    """
    ffmpeg = _require_ffmpeg(ffmpeg_path)
    cover_path = Path(cover_path)
    out_ext, _, quality = _OUTPUT_FORMATS.get(cover_path.suffix.lower(), _OUTPUT_FORMATS[".jpg"])
    out_path = cover_path.parent / f"cover_1280x720{out_ext}"
    base = ["-y", "-i", str(cover_path), "-vf", PAD_FILTER, "-frames:v", "1"]
    try:
        _run_ffmpeg(ffmpeg, base + quality + [str(out_path)])
    except UploadError:
        if out_ext == ".jpg":
            raise
        out_path = cover_path.parent / "cover_1280x720.jpg"
        _run_ffmpeg(ffmpeg, base + ["-q:v", "2", str(out_path)])
    return out_path


def extract_cover_from_video(video_path: Path, ffmpeg_path: str = "ffmpeg") -> Path:
    """截取视频第一帧并补边为 1280x720 jpg"""
    ffmpeg = _require_ffmpeg(ffmpeg_path)
    video_path = Path(video_path)
    out_path = video_path.parent / "cover_from_frame_1280x720.jpg"
    _run_ffmpeg(
        ffmpeg,
        ["-y", "-ss", "0", "-i", str(video_path), "-vf", PAD_FILTER,
         "-frames:v", "1", "-q:v", "2", str(out_path)],
    )
    return out_path


class CoverUploader:
    """封面上传器"""

    def __init__(self, client: BilibiliClient, ffmpeg_path: str = "ffmpeg"):
        self.client = client
        self.ffmpeg_path = ffmpeg_path

    def _post(self, image_path: Path) -> Tuple[int, str, str, str]:
        try:
            data = Path(image_path).read_bytes()
        except OSError as e:
            raise UploadError(f"读取封面图失败: {image_path}", cause=e) from e

        response = self.client.post(
            self.client.api_url(COVER_ENDPOINT),
            files={"cover": (None, to_data_uri(data))},
        )
        if response.status_code != 200:
            raise UploadError(
                f"上传封面图失败: HTTP {response.status_code}", preview=response.text
            )
        result = decode_json(response, "封面上传")
        code = int(result.get("code", -1))
        url = ((result.get("data") or {}).get("url")) or ""
        return code, str(result.get("message") or ""), url, response.text

    def upload(self, cover_path: Path, video_path: Optional[Path] = None) -> str:
        """上传封面并返回封面 URL

        Raises:
            UploadError: 三次尝试（原图、补边图、视频截帧）都失败
        """
        code, message, url, body = self._post(cover_path)
        if code == 0:
            logger.info(f"封面上传成功: {url}")
            return url
        if code != DIMENSION_REJECTED:
            raise UploadError(f"上传封面图失败: code={code}, message={message}", preview=body)

        logger.warning(f"封面尺寸被拒绝（code={code}），调整为 1280x720 后重试: {preview_text(body, 200)}")
        padded = pad_cover_to_1280x720(cover_path, self.ffmpeg_path)
        code, message, url, body = self._post(padded)
        if code == 0:
            logger.info(f"调整尺寸后封面上传成功: {url}")
            return url

        if video_path is not None:
            logger.warning(f"调整后的封面仍被拒绝（code={code}），改用视频第一帧")
            try:
                frame = extract_cover_from_video(video_path, self.ffmpeg_path)
                frame_code, _, frame_url, _ = self._post(frame)
            except UploadError as e:
                logger.warning(f"从视频截取封面失败: {e}")
            else:
                if frame_code == 0:
                    logger.info(f"视频截帧封面上传成功: {frame_url}")
                    return frame_url
                logger.warning(f"视频截帧封面仍被拒绝（code={frame_code}）")

        raise UploadError(f"上传封面图失败（重试）: code={code}, message={message}", preview=body)
