"""
字幕上传（尽力而为）
取一次性 OSS 凭证，把样式字幕 JSON 直传到 OSS，返回的 key 即为字幕地址。
全部尝试失败时返回 None，视频照常发布（无字幕）。
"""

import base64
import binascii
import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from core.bilibili.client import BilibiliClient, decode_json
from core.cancel_token import CancelToken
from core.exceptions import AppException, TaskCancelledError, UploadError
from core.logger import get_logger
from core.subtitle_format import STYLED_DEFAULTS, parse_srt, srt_to_styled_json

logger = get_logger()

SUBTITLE_TOKEN_ENDPOINT = "/intl/videoup/web2/upload/token?type=subtitle"
SUBTITLE_ATTEMPTS = 3
STYLED_JSON_NAMES = ("styled_subtitles.json", "subtitles_styled.json", "subtitles_rich.json")


def pick_subtitle(paths: Sequence[Path]) -> Optional[Path]:
    """优先第一个 .srt，否则第一个文件"""
    paths = [Path(p) for p in paths]
    for path in paths:
        if path.suffix.lower() == ".srt":
            return path
    return paths[0] if paths else None


def build_subtitle_payload(srt_path: Path) -> Optional[bytes]:
    """同目录有样式字幕 JSON 时原样使用，否则从 SRT 生成

    Returns:
        JSON 字节；字幕没有条目时返回 None
    """
    srt_path = Path(srt_path)
    for name in STYLED_JSON_NAMES:
        styled = srt_path.parent / name
        if not styled.is_file():
            continue
        raw = styled.read_bytes()
        try:
            document = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning(f"样式字幕 JSON 无法解析，改为从 SRT 生成: {styled.name}")
            break
        if isinstance(document, dict) and document.get("body"):
            return raw
        break

    entries = parse_srt(srt_path.read_text(encoding="utf-8", errors="replace"))
    if not entries:
        return None
    document = srt_to_styled_json(entries, STYLED_DEFAULTS)
    return json.dumps(document, ensure_ascii=False).encode("utf-8")


def _first(data: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def key_prefix_from_policy(policy: str) -> str:
    """从 base64 policy 的 ["starts-with", "$key", prefix] 条件中取前缀"""
    decoded = None
    for candidate in (policy, policy + "=" * (-len(policy) % 4)):
        try:
            decoded = base64.b64decode(candidate, validate=False)
            break
        except (binascii.Error, ValueError):
            continue
    if decoded is None:
        return ""
    try:
        document = json.loads(decoded.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return ""

    for condition in document.get("conditions") or []:
        if (
            isinstance(condition, list)
            and len(condition) >= 3
            and condition[0] == "starts-with"
            and condition[1] in ("$key", "key")
            and isinstance(condition[2], str)
        ):
            return condition[2]
    return ""


def resolve_object_key(key: str, policy: str, now_ms: Optional[int] = None) -> str:
    """凭证里的 key 看起来只是前缀（以 _ 结尾或不含 subtitle-）时拼出最终文件名"""
    if key and not key.endswith("_") and "subtitle-" in key:
        return key
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    prefix = key_prefix_from_policy(policy) or key
    if not prefix:
        prefix = f"ugc/subtitle/{now_ms}_"
    return f"{prefix}subtitle-{now_ms}.json"


class SubtitleUploader:
    """字幕上传器，最多尝试 3 次，间隔 1s、2s、3s"""

    def __init__(
        self,
        client: BilibiliClient,
        cancel_token: Optional[CancelToken] = None,
        attempts: int = SUBTITLE_ATTEMPTS,
    ):
        self.client = client
        self.cancel_token = cancel_token or client.cancel_token
        self.attempts = attempts

    def upload(self, subtitle_paths: List[Path]) -> Optional[str]:
        """上传字幕，失败不抛出

        Returns:
            字幕地址（OSS key）；没有字幕或全部失败时返回 None
        """
        subtitle_path = pick_subtitle(subtitle_paths)
        if subtitle_path is None:
            return None

        for attempt in range(1, self.attempts + 1):
            try:
                url = self.upload_once(subtitle_path)
                if url:
                    logger.info(f"字幕上传成功: {url}", attempt=attempt)
                else:
                    logger.info("字幕没有有效条目，跳过字幕上传")
                return url
            except TaskCancelledError:
                raise
            except (AppException, OSError) as e:
                logger.warning(
                    f"字幕上传失败（{attempt}/{self.attempts}）: {e}", attempt=attempt
                )
                if attempt < self.attempts:
                    self.cancel_token.sleep(attempt)

        logger.warning("字幕上传全部失败，继续发布（无字幕）")
        return None

    def upload_once(self, subtitle_path: Path) -> Optional[str]:
        payload = build_subtitle_payload(subtitle_path)
        if payload is None:
            return None

        token = self._fetch_token()
        host = _first(token, "host", "Host")
        access_key = _first(token, "OSSAccessKeyId", "accessid", "accessKeyId")
        policy = _first(token, "policy", "Policy")
        signature = _first(token, "signature", "Signature")
        success_status = _first(token, "success_action_status", "successActionStatus") or "200"
        if not (host and access_key and policy and signature):
            raise UploadError("字幕上传凭证字段缺失", preview=json.dumps(token, ensure_ascii=False))

        key = resolve_object_key(
            _first(token, "key", "Key", "key_prefix", "keyPrefix", "dir", "Dir"), policy
        )
        if not host.startswith("http"):
            host = "https://" + host

        fields = [
            ("key", (None, key)),
            ("OSSAccessKeyId", (None, access_key)),
            ("policy", (None, policy)),
            ("signature", (None, signature)),
            ("success_action_status", (None, success_status)),
            ("Content-Type", (None, "application/octet-stream")),
            ("file", ("subtitle.json", payload, "application/octet-stream")),
        ]
        response = self.client.post(host, files=fields, with_cookies=False)
        if response.status_code != 200:
            raise UploadError(f"字幕直传失败: HTTP {response.status_code}", preview=response.text)
        return key

    def _fetch_token(self) -> Dict[str, Any]:
        response = self.client.get(self.client.api_url(SUBTITLE_TOKEN_ENDPOINT))
        if response.status_code != 200:
            raise UploadError(
                f"获取字幕上传凭证失败: HTTP {response.status_code}", preview=response.text
            )
        result = decode_json(response, "字幕上传凭证")
        if result.get("code") != 0:
            raise UploadError(
                f"字幕上传凭证返回错误: code={result.get('code')}, message={result.get('message')}",
                preview=response.text,
            )
        return result.get("data") or {}
