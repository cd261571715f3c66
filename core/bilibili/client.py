"""
B 站 HTTP 会话
负责 cookies、CSRF、请求头规则和 API 公共查询参数

请求头规则：
- upos 对象存储：Referer/Origin 为 studio 根路径，Accept */*
- api.*：Referer/Origin 为 studio 根路径，Accept JSON
- 其他主机：Referer 为 {base_url}/archive/new，Origin 为 base_url
"""

import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode, urlparse

import requests

from core.bilibili.cookies import Cookie, cookie_header, extract_csrf
from core.cancel_token import CancelToken
from core.exceptions import TransientError, UploadError, preview_text
from core.logger import get_logger

logger = get_logger()

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/138.0.0.0 Safari/537.36"
)
STUDIO_URL = "https://studio.bilibili.tv"
UPLOAD_PAGE_URL = f"{STUDIO_URL}/archive/new"
API_BASE_URL = "https://api.bilibili.tv"

API_QUERY = (
    ("lang_id", "3"),
    ("platform", "web"),
    ("lang", "en_US"),
    ("s_locale", "en_US"),
    ("timezone", "GMT+08:00"),
)

# (连接超时, 读取超时)
DEFAULT_TIMEOUT: Tuple[int, int] = (15, 120)


def is_upos_host(host: str) -> bool:
    return host.startswith("upos-") or host.endswith("bilivideo.com")


def is_api_host(host: str) -> bool:
    return host.startswith("api.")


def build_headers(url: str, base_url: str) -> Dict[str, str]:
    """按请求主机生成 User-Agent / Referer / Origin / Accept"""
    host = (urlparse(url).hostname or "").lower()
    headers = {"User-Agent": USER_AGENT}
    if is_upos_host(host):
        headers.update({
            "Referer": f"{STUDIO_URL}/",
            "Origin": STUDIO_URL,
            "Accept": "*/*",
            "Accept-Language": "en-US,en;q=0.9",
        })
    elif is_api_host(host):
        headers.update({
            "Referer": f"{STUDIO_URL}/",
            "Origin": STUDIO_URL,
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": "zh-CN,zh;q=0.9",
        })
    else:
        base = urlparse(base_url)
        origin = f"{base.scheme}://{base.netloc}" if base.netloc else base_url.rstrip("/")
        headers.update({
            "Referer": base_url.rstrip("/") + "/archive/new",
            "Origin": origin,
        })
    return headers


def build_api_url(endpoint: str, csrf: str, params: Optional[Dict[str, Any]] = None) -> str:
    """拼接 API 地址：endpoint 不以 http 开头时补上 api.bilibili.tv，并附加公共参数与 csrf"""
    url = endpoint if endpoint.startswith("http") else API_BASE_URL + endpoint
    query: List[Tuple[str, Any]] = list(API_QUERY)
    query.append(("csrf", csrf))
    if params:
        query.extend(params.items())
    separator = "&" if "?" in url else "?"
    return url + separator + urlencode(query)


def decode_json(response, what: str) -> Dict[str, Any]:
    """解析 JSON 响应体

    Raises:
        UploadError: 响应不是 JSON 对象
    """
    try:
        data = json.loads(response.text or "")
    except ValueError as e:
        raise UploadError(
            f"解析{what}响应失败（HTTP {response.status_code}）",
            cause=e,
            preview=response.text,
        ) from e
    if not isinstance(data, dict):
        raise UploadError(f"{what}响应格式错误", preview=response.text)
    return data


class BilibiliClient:
    """带 cookies 的 B 站 HTTP 会话

    Args:
        cookies: 已解析的 cookies
        base_url: 配置的站点地址（bilibili.base_url）
        session: requests.Session（测试时替换为假对象）
        cancel_token: 根取消令牌，每次请求前后检查
    """

    def __init__(
        self,
        cookies: List[Cookie],
        base_url: str = "https://www.bilibili.tv/en/",
        session=None,
        cancel_token: Optional[CancelToken] = None,
        timeout: Tuple[int, int] = DEFAULT_TIMEOUT,
    ):
        self.cookies = list(cookies)
        self.csrf = extract_csrf(self.cookies)
        self.base_url = base_url
        self.session = session if session is not None else requests.Session()
        self.cancel_token = cancel_token or CancelToken()
        self.timeout = timeout
        self._cookie_header = cookie_header(self.cookies)

        for cookie in self.cookies:
            self.session.cookies.set(
                cookie.name,
                cookie.value,
                domain=cookie.domain or None,
                path=cookie.path or "/",
            )

    def api_url(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
        return build_api_url(endpoint, self.csrf, params)

    def headers_for(self, url: str, with_cookies: bool = True) -> Dict[str, str]:
        headers = build_headers(url, self.base_url)
        # 跨域到对象存储时 cookie jar 不会带上 bilibili.tv 的 cookies，显式写入请求头
        if with_cookies and self._cookie_header:
            headers["Cookie"] = self._cookie_header
        return headers

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        with_cookies: bool = True,
        timeout=None,
        **kwargs,
    ):
        """发送请求

        Raises:
            TaskCancelledError: 请求前后检测到取消
            TransientError: 网络错误（连接失败、超时）
        """
        self.cancel_token.raise_if_cancelled()
        merged = self.headers_for(url, with_cookies=with_cookies)
        if headers:
            merged.update(headers)

        try:
            response = self.session.request(
                method,
                url,
                headers=merged,
                timeout=timeout or self.timeout,
                **kwargs,
            )
        except requests.RequestException as e:
            raise TransientError(
                f"{method} 请求失败: {e}", cause=e, component="uploader", preview=url
            ) from e

        self.cancel_token.raise_if_cancelled()
        logger.debug(
            f"{method} {url} -> HTTP {response.status_code}",
            status_code=response.status_code,
        )
        return response

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)

    def prime_session(self) -> None:
        """访问投稿页面预热会话；非 200 只记录日志"""
        response = self.get(
            UPLOAD_PAGE_URL,
            headers={"Referer": f"{STUDIO_URL}/", "Origin": STUDIO_URL},
        )
        if response.status_code != 200:
            logger.warning(
                f"访问投稿页面返回 HTTP {response.status_code}，继续上传: {preview_text(response.text, 200)}",
                status_code=response.status_code,
                url=UPLOAD_PAGE_URL,
            )
