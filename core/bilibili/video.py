"""
视频分片上传（upos 对象存储）

流程：
1. preupload 协商：auth、endpoint、chunk_size、put_query、upos_uri（服务器指定的文件名）
2. init：POST ?uploads 取 upload_id
3. 分片：PUT ?partNumber=...，每片最多重试 chunk_upload_retries 次，分片之间间隔 500ms
4. finalize：POST 合并（失败只记录日志）
5. commit：POST /intl/videoup/web2/uploading 登记文件名
"""

import math
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, quote, urlencode

from core.bilibili.client import BilibiliClient, decode_json
from core.cancel_token import CancelToken
from core.exceptions import AppException, TaskCancelledError, UploadError, preview_text
from core.logger import get_logger

logger = get_logger()

DEFAULT_UPOS_HOST = "https://upos-cs-upcdntxa.bilivideo.com"
DEFAULT_CHUNK_SIZE = 22020096
DEFAULT_PROFILE = "iup/bup"
UPOS_URI_PREFIX = "upos://iupever/"
PREUPLOAD_ENDPOINT = "/preupload"
COMMIT_ENDPOINT = "/intl/videoup/web2/uploading"
CHUNK_INTERVAL_SECONDS = 0.5
COMMIT_ATTEMPTS = 3
# 分片 PUT 的读取超时（22MB 在慢速网络上需要较长时间）
CHUNK_TIMEOUT: Tuple[int, int] = (15, 600)


def generate_filename(ext: str = ".mp4", now: Optional[datetime] = None) -> str:
    """客户端生成的上传文件名：n{YYMMDD}ad{纳秒}{ext}"""
    now = now or datetime.now()
    nanos = time.time_ns() % 1_000_000_000
    return f"n{now.strftime('%y%m%d')}ad{nanos}{ext}"


def chunk_ranges(size: int, chunk_size: int) -> List[Tuple[int, int]]:
    """把 [0, size) 切成若干 [start, end) 区间，最后一片可能较短"""
    if chunk_size <= 0:
        chunk_size = DEFAULT_CHUNK_SIZE
    count = math.ceil(size / chunk_size) if size > 0 else 0
    return [(i * chunk_size, min((i + 1) * chunk_size, size)) for i in range(count)]


def normalize_endpoint(endpoint: str) -> str:
    if not endpoint:
        return DEFAULT_UPOS_HOST
    if endpoint.startswith("//"):
        endpoint = "https:" + endpoint
    elif not endpoint.startswith("http"):
        endpoint = "https://" + endpoint
    return endpoint.rstrip("/")


@dataclass
class UploadSession:
    """一次视频上传协商出的参数"""

    filename: str
    host: str = DEFAULT_UPOS_HOST
    auth: str = ""
    chunk_size: int = DEFAULT_CHUNK_SIZE
    put_query: str = ""
    biz_id: str = ""
    endpoints: List[str] = field(default_factory=list)
    upload_id: str = ""

    @property
    def profile(self) -> str:
        values = parse_qs(self.put_query).get("profile") if self.put_query else None
        return values[0] if values else DEFAULT_PROFILE

    @property
    def object_url(self) -> str:
        return f"{self.host}/iupever/{self.filename}"

    def upos_headers(self) -> Dict[str, str]:
        headers = {
            "Accept-Encoding": "gzip, deflate, br",
            "Connection": "keep-alive",
            "Sec-Fetch-Dest": "empty",
            "Sec-Fetch-Mode": "cors",
            "Sec-Fetch-Site": "cross-site",
        }
        if self.auth:
            headers["X-Upos-Auth"] = self.auth
        return headers


def parse_preupload(data: Dict[str, Any], session: UploadSession) -> UploadSession:
    """把 preupload 响应写入 UploadSession

    Raises:
        UploadError: OK != 1 或缺少 auth
    """
    if data.get("OK") != 1:
        raise UploadError("preupload 返回失败", preview=str(data))
    auth = data.get("auth")
    if not isinstance(auth, str) or not auth:
        raise UploadError("preupload 响应缺少 auth", preview=str(data))

    session.auth = auth.replace("\\u0026", "&")
    session.host = normalize_endpoint(str(data.get("endpoint") or ""))
    chunk_size = data.get("chunk_size")
    if isinstance(chunk_size, (int, float)) and chunk_size > 0:
        session.chunk_size = int(chunk_size)
    session.put_query = str(data.get("put_query") or "")
    if data.get("biz_id") is not None:
        session.biz_id = str(data.get("biz_id"))
    session.endpoints = [str(e) for e in data.get("endpoints") or []]

    upos_uri = str(data.get("upos_uri") or "")
    if upos_uri.startswith(UPOS_URI_PREFIX):
        session.filename = upos_uri[len(UPOS_URI_PREFIX):]
    return session


class VideoUploader:
    """upos 分片上传器

    Args:
        client: B 站 HTTP 会话
        chunk_retries: 每个分片的最大尝试次数
        retry_backoff: 第 n 次失败后等待 n × retry_backoff 秒
        chunk_interval: 分片之间的间隔
    """

    def __init__(
        self,
        client: BilibiliClient,
        chunk_retries: int = 5,
        retry_backoff: float = 1.0,
        chunk_interval: float = CHUNK_INTERVAL_SECONDS,
        cancel_token: Optional[CancelToken] = None,
    ):
        self.client = client
        self.chunk_retries = max(1, chunk_retries)
        self.retry_backoff = retry_backoff
        self.chunk_interval = chunk_interval
        self.cancel_token = cancel_token or client.cancel_token

    def upload(self, video_path: Path) -> str:
        """上传视频文件并登记

        Returns:
            服务器使用的文件名（含扩展名）

        Raises:
            UploadError: init / 分片 / commit 失败
        """
        video_path = Path(video_path)
        try:
            size = video_path.stat().st_size
        except OSError as e:
            raise UploadError(f"读取视频文件失败: {video_path}", cause=e) from e

        session = self.preupload(video_path, size)
        self.init_upload(session)
        ranges = chunk_ranges(size, session.chunk_size)
        logger.info(
            f"开始分片上传: {video_path.name}，大小 {size} 字节，分片 {len(ranges)} 个（每片 {session.chunk_size}）"
        )
        self.upload_chunks(session, video_path, size, ranges)
        self.finalize(session, video_path)
        self.commit(session.filename)
        return session.filename

    def preupload(self, video_path: Path, size: int) -> UploadSession:
        """协商上传参数；失败时沿用默认主机和本地生成的文件名"""
        session = UploadSession(filename=generate_filename(video_path.suffix or ".mp4"))
        url = self.client.api_url(
            PREUPLOAD_ENDPOINT,
            {
                "name": session.filename,
                "size": size,
                "r": "upos",
                "profile": DEFAULT_PROFILE,
                "ssl": 0,
                "version": "2.10.0",
                "build": 2100000,
                "biz": "UGC",
            },
        )
        try:
            response = self.client.get(url)
            if response.status_code != 200:
                raise UploadError(f"preupload HTTP {response.status_code}", preview=response.text)
            parse_preupload(decode_json(response, "preupload"), session)
        except TaskCancelledError:
            raise
        except AppException as e:
            logger.warning(f"获取上传凭证失败，使用默认上传参数继续: {e}")
            return session

        if session.endpoints:
            logger.debug(f"preupload 备选节点: {', '.join(session.endpoints)}")
        logger.info(f"preupload 完成: host={session.host}, filename={session.filename}")
        return session

    def init_upload(self, session: UploadSession) -> None:
        url = f"{session.object_url}?uploads&output=json"
        response = self.client.post(url, headers=session.upos_headers())
        if response.status_code != 200:
            raise UploadError(f"初始化上传失败: HTTP {response.status_code}", preview=response.text)
        result = decode_json(response, "初始化上传")
        upload_id = result.get("upload_id") or result.get("uploadId")
        if result.get("OK") != 1 or not upload_id:
            raise UploadError("初始化上传失败: 缺少 upload_id", preview=response.text)
        session.upload_id = str(upload_id)

    def upload_chunks(
        self, session: UploadSession, video_path: Path, size: int, ranges: List[Tuple[int, int]]
    ) -> None:
        total = len(ranges)
        try:
            with open(video_path, "rb") as f:
                for index, (start, end) in enumerate(ranges):
                    f.seek(start)
                    data = f.read(end - start)
                    self._put_chunk(session, index, total, start, end, size, data)
                    if index < total - 1:
                        self.cancel_token.sleep(self.chunk_interval)
        except OSError as e:
            raise UploadError(f"读取视频分片失败: {video_path}", cause=e) from e

    def _put_chunk(
        self,
        session: UploadSession,
        index: int,
        total: int,
        start: int,
        end: int,
        size: int,
        data: bytes,
    ) -> None:
        query = urlencode([
            ("partNumber", index + 1),
            ("uploadId", session.upload_id),
            ("chunk", index),
            ("chunks", total),
            ("size", end - start),
            ("start", start),
            ("end", end),
            ("total", size),
        ])
        url = f"{session.object_url}?{query}"
        headers = session.upos_headers()
        headers["Content-Type"] = "application/octet-stream"

        last_error = ""
        for attempt in range(1, self.chunk_retries + 1):
            try:
                response = self.client.put(url, headers=headers, data=data, timeout=CHUNK_TIMEOUT)
                if response.status_code in (200, 204):
                    logger.debug(f"分片 {index + 1}/{total} 上传完成", attempt=attempt)
                    return
                last_error = f"HTTP {response.status_code}: {preview_text(response.text, 200)}"
            except TaskCancelledError:
                raise
            except AppException as e:
                last_error = str(e)

            logger.warning(
                f"分片 {index + 1}/{total} 上传失败（{attempt}/{self.chunk_retries}）: {last_error}",
                attempt=attempt,
            )
            if attempt < self.chunk_retries:
                self.cancel_token.sleep(attempt * self.retry_backoff)

        raise UploadError(
            f"分片 {index + 1}/{total} 上传失败，已重试 {self.chunk_retries} 次",
            preview=last_error,
        )

    def finalize(self, session: UploadSession, video_path: Path) -> None:
        """通知对象存储合并分片（失败只记录日志）"""
        query = (
            f"output=json&name={quote(os.path.basename(str(video_path)))}"
            f"&profile={quote(session.profile, safe='')}&uploadId={session.upload_id}"
            f"&biz_id={session.biz_id}&biz=UGC"
        )
        try:
            response = self.client.post(f"{session.object_url}?{query}", headers=session.upos_headers())
        except TaskCancelledError:
            raise
        except AppException as e:
            logger.warning(f"合并分片请求失败（忽略）: {e}")
            return
        if response.status_code != 200:
            logger.warning(
                f"合并分片返回 HTTP {response.status_code}（忽略）: {preview_text(response.text, 200)}",
                status_code=response.status_code,
            )
            return
        logger.info(f"分片合并完成: {preview_text(response.text, 200)}")

    def commit(self, filename: str) -> None:
        """登记上传的文件名，最多 3 次

        Raises:
            UploadError: 全部尝试失败
        """
        url = self.client.api_url(COMMIT_ENDPOINT)
        last_error = ""
        for attempt in range(1, COMMIT_ATTEMPTS + 1):
            try:
                response = self.client.post(
                    url,
                    data={"filename": filename},
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
                if response.status_code == 200:
                    logger.info(f"上传登记完成: {filename}")
                    return
                last_error = f"HTTP {response.status_code}: {preview_text(response.text, 200)}"
            except TaskCancelledError:
                raise
            except AppException as e:
                last_error = str(e)
            logger.warning(f"上传登记失败（{attempt}/{COMMIT_ATTEMPTS}）: {last_error}", attempt=attempt)
            if attempt < COMMIT_ATTEMPTS:
                self.cancel_token.sleep(attempt)
        raise UploadError(f"上传登记失败: {filename}", preview=last_error)
