"""
B 站 cookies 读取
支持浏览器插件导出的 JSON 数组和 Netscape 格式（先尝试 JSON，失败再按制表符解析）
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from core.exceptions import AuthError

CSRF_COOKIE_NAMES = ("csrf", "bili_jct")
_HTTPONLY_PREFIX = "#HttpOnly_"


@dataclass
class Cookie:
    name: str
    value: str
    domain: str = ""
    path: str = "/"
    secure: bool = False
    expires: Optional[int] = None
    http_only: bool = False


def _parse_json_cookies(text: str) -> Optional[List[Cookie]]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, list):
        return None

    cookies = []
    for item in data:
        if not isinstance(item, dict):
            continue
        expires = item.get("expirationDate")
        cookies.append(
            Cookie(
                name=str(item.get("name") or ""),
                value=str(item.get("value") or ""),
                domain=str(item.get("domain") or ""),
                path=str(item.get("path") or "/"),
                secure=bool(item.get("secure", False)),
                expires=int(expires) if isinstance(expires, (int, float)) else None,
                http_only=bool(item.get("httpOnly", False)),
            )
        )
    return cookies


def _parse_netscape_cookies(text: str) -> List[Cookie]:
    """domain, flag, path, secure, expiration, name, value（制表符分隔）"""
    cookies = []
    for raw in text.splitlines():
        line = raw.strip()
        http_only = False
        if line.startswith(_HTTPONLY_PREFIX):
            line = line[len(_HTTPONLY_PREFIX):]
            http_only = True
        if not line or line.startswith("#"):
            continue
        parts = line.split("\t")
        if len(parts) < 7:
            continue
        try:
            expires: Optional[int] = int(parts[4])
        except ValueError:
            expires = None
        cookies.append(
            Cookie(
                name=parts[5],
                value=parts[6],
                domain=parts[0],
                path=parts[2],
                secure=parts[3] == "TRUE",
                expires=expires,
                http_only=http_only,
            )
        )
    return cookies


def parse_cookies_text(text: str) -> List[Cookie]:
    cookies = _parse_json_cookies(text)
    if cookies is None:
        cookies = _parse_netscape_cookies(text)
    return [c for c in cookies if c.name]


def load_cookies(path: Union[str, Path]) -> List[Cookie]:
    """读取 cookies 文件

    Raises:
        AuthError: 路径为空、文件不存在或没有任何 cookie
    """
    if not path:
        raise AuthError("cookies 文件路径为空")
    cookie_path = Path(path).expanduser().resolve()
    try:
        text = cookie_path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise AuthError(f"读取 cookies 文件失败: {cookie_path}", cause=e) from e

    cookies = parse_cookies_text(text)
    if not cookies:
        raise AuthError(f"cookies 文件中没有可用的 cookie: {cookie_path}")
    return cookies


def extract_csrf(cookies: List[Cookie]) -> str:
    """从 csrf 或 bili_jct 中取 CSRF token

    Raises:
        AuthError: 两个 cookie 都不存在
    """
    for cookie in cookies:
        if cookie.name in CSRF_COOKIE_NAMES and cookie.value:
            return cookie.value
    raise AuthError("未找到 CSRF token（查找 csrf 或 bili_jct cookie）")


def cookie_header(cookies: List[Cookie]) -> str:
    return "; ".join(f"{c.name}={c.value}" for c in cookies)
