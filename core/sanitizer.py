"""
敏感信息脱敏模块

专注于日志消息的敏感信息脱敏处理。
支持脱敏：Cookie 头、B 站登录凭证（SESSDATA / bili_jct / csrf）、X-Upos-Auth、
OSS 上传签名、URL 敏感参数、长串令牌
"""

import re


MAX_MESSAGE_LENGTH = 2000

# B 站和 YouTube 登录相关的 Cookie 名称
_SECRET_COOKIE_NAMES = (
    "SESSDATA",
    "bili_jct",
    "csrf",
    "DedeUserID__ckMd5",
    "__Secure-3PSID",
    "__Secure-1PSID",
    "SAPISID",
    "LOGIN_INFO",
)

_SENSITIVE_PARAMS = (
    "csrf",
    "auth",
    "token",
    "key",
    "signature",
    "policy",
    "OSSAccessKeyId",
    "access_key",
    "password",
)


def _mask(value: str) -> str:
    """保留前后 4 位，中间用 *** 替换"""
    if len(value) > 8:
        return value[:4] + "***" + value[-4:]
    return "***REDACTED***" if value else value


def _redact_cookie_string(cookie_str: str) -> str:
    parts = []
    for part in cookie_str.split(";"):
        part = part.strip()
        if "=" in part:
            name, value = part.split("=", 1)
            parts.append(f"{name}={_mask(value)}")
        elif part:
            parts.append(part)
    return "; ".join(parts)


def sanitize_message(message: str) -> str:
    """脱敏处理：移除敏感信息

    严禁出现在日志中的内容：
    - Cookie 原文（请求头或 cookies 文件内容）
    - CSRF / bili_jct / SESSDATA
    - X-Upos-Auth 上传凭证
    - OSS 表单中的 policy / signature

    Args:
        message: 原始消息

    Returns:
        脱敏后的消息
    """
    if not message:
        return message

    # Cookie: 头
    message = re.sub(
        r"(Cookie:\s*)([^\n]+)",
        lambda m: m.group(1) + _redact_cookie_string(m.group(2)),
        message,
        flags=re.IGNORECASE,
    )

    # X-Upos-Auth 头
    message = re.sub(
        r"(X-Upos-Auth:\s*)(\S+)",
        lambda m: m.group(1) + _mask(m.group(2)),
        message,
        flags=re.IGNORECASE,
    )

    # 单个登录 Cookie（name=value 或 JSON "name": "value"）
    for name in _SECRET_COOKIE_NAMES:
        message = re.sub(
            rf"({re.escape(name)}\s*=\s*)([^;\s&\"']+)",
            lambda m: m.group(1) + _mask(m.group(2)),
            message,
        )
        message = re.sub(
            rf"(\"{re.escape(name)}\"\s*:\s*\")([^\"]+)",
            lambda m: m.group(1) + _mask(m.group(2)),
            message,
        )

    # URL 参数
    for param in _SENSITIVE_PARAMS:
        message = re.sub(
            rf"([?&]{param}=)([^&\s\"']+)",
            lambda m: m.group(1) + _mask(m.group(2)),
            message,
            flags=re.IGNORECASE,
        )

    # 长串令牌（>= 40 位字母数字）
    message = re.sub(
        r"\b[A-Za-z0-9]{40,}\b",
        lambda m: _mask(m.group(0)),
        message,
    )

    if len(message) > MAX_MESSAGE_LENGTH:
        message = message[:MAX_MESSAGE_LENGTH] + "... [truncated]"

    return message


__all__ = ["sanitize_message"]
