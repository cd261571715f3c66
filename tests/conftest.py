"""
测试公共夹具：假的 requests.Session 与 cookies 文件
"""

import json

import pytest
import requests


class FakeResponse:
    """只实现上传器用到的 status_code / text"""

    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        if text is None:
            text = json.dumps(body) if body is not None else ""
        self.text = text

    def json(self):
        return json.loads(self.text)


class FakeSession:
    """按 handler(method, url, kwargs) 返回响应，记录每次请求"""

    def __init__(self, handler):
        self.cookies = requests.cookies.RequestsCookieJar()
        self.handler = handler
        self.calls = []

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "headers": headers or {}, **kwargs})
        response = self.handler(method, url, kwargs)
        if isinstance(response, Exception):
            raise response
        return response

    def calls_to(self, fragment, method=None):
        return [
            c for c in self.calls
            if fragment in c["url"] and (method is None or c["method"] == method)
        ]


@pytest.fixture
def fake_session():
    """fake_session(handler) 创建一个假会话"""
    return FakeSession


@pytest.fixture
def fake_response():
    return FakeResponse


@pytest.fixture
def cookies_file(tmp_path):
    path = tmp_path / "bili_cookies.txt"
    path.write_text(
        "# Netscape HTTP Cookie File\n"
        ".bilibili.tv\tTRUE\t/\tTRUE\t1999999999\tSESSDATA\tsess-value\n"
        ".bilibili.tv\tTRUE\t/\tFALSE\t1999999999\tbili_jct\tcsrf-token\n",
        encoding="utf-8",
    )
    return path
