"""
日志脱敏测试
"""

from core.sanitizer import MAX_MESSAGE_LENGTH, sanitize_message


class TestSanitizeMessage:
    """sanitize_message 测试"""

    def test_empty(self):
        assert sanitize_message("") == ""

    def test_plain_message_unchanged(self):
        assert sanitize_message("频道下载完成: 共 3 个") == "频道下载完成: 共 3 个"

    def test_cookie_header(self):
        result = sanitize_message("Cookie: SESSDATA=abcdefghijkl; bili_jct=0123456789abcdef")
        assert "abcdefghijkl" not in result
        assert "0123456789abcdef" not in result
        assert "SESSDATA=abcd***ijkl" in result

    def test_short_secret(self):
        assert sanitize_message("SESSDATA=abc") == "SESSDATA=***REDACTED***"

    def test_upos_auth(self):
        result = sanitize_message("X-Upos-Auth: ak=123456789&sign=abcdef")
        assert "sign=abcdef" not in result
        assert result.startswith("X-Upos-Auth: ak=1***")

    def test_json_cookie(self):
        result = sanitize_message('{"bili_jct": "0123456789abcdef"}')
        assert "0123456789abcdef" not in result

    def test_url_params(self):
        result = sanitize_message("https://api.bilibili.tv/x?lang_id=3&csrf=0123456789abcdef&policy=eyJleHBpcmF0aW9u")
        assert "0123456789abcdef" not in result
        assert "eyJleHBpcmF0aW9u" not in result
        assert "lang_id=3" in result

    def test_long_token(self):
        token = "A" * 48
        assert token not in sanitize_message(f"token {token} end")

    def test_truncate(self):
        result = sanitize_message("日志 " * 1000)
        assert len(result) == MAX_MESSAGE_LENGTH + len("... [truncated]")
        assert result.endswith("... [truncated]")
