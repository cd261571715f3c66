"""
B 站上传流程测试：封面、字幕、分片、发布

HTTP 全部走 conftest 里的 FakeSession
"""

import base64
import json
from unittest.mock import MagicMock, patch

import pytest
import requests
from core.bilibili.client import BilibiliClient
from core.bilibili.cookies import Cookie
from core.bilibili.cover import CoverUploader, detect_image_mime, to_data_uri
from core.bilibili.subtitle import (
    SubtitleUploader,
    build_subtitle_payload,
    key_prefix_from_policy,
    pick_subtitle,
    resolve_object_key,
)
from core.bilibili.uploader import BilibiliUploader, build_publish_payload, clean_path
from core.bilibili.video import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_UPOS_HOST,
    UploadSession,
    VideoUploader,
    chunk_ranges,
    generate_filename,
    normalize_endpoint,
    parse_preupload,
)
from core.exceptions import AuthError, MissingCoverError, PublishError, UploadError
from core.models import UploadRequest
from core.workdir import WorkDirRepository

SRT = "1\n00:00:01,000 --> 00:00:02,000\nHello\n"
POLICY = base64.b64encode(
    json.dumps({"conditions": [["starts-with", "$key", "ugc/sub/abc_"]]}).encode()
).decode()


def _client(session):
    cookies = [Cookie("SESSDATA", "s", ".bilibili.tv"), Cookie("bili_jct", "tok", ".bilibili.tv")]
    return BilibiliClient(cookies, session=session)


def _script(responses):
    """按顺序返回预设响应的 handler"""
    queue = list(responses)

    def handler(method, url, kwargs):
        return queue.pop(0) if len(queue) > 1 else queue[0]

    return handler


class TestChunkRanges:
    """分片切分测试"""

    def test_fifty_megabytes(self):
        size = 50 * 1024 * 1024
        ranges = chunk_ranges(size, DEFAULT_CHUNK_SIZE)
        assert len(ranges) == 3
        assert ranges[0] == (0, DEFAULT_CHUNK_SIZE)
        assert ranges[-1] == (2 * DEFAULT_CHUNK_SIZE, size)

    def test_ranges_partition_file(self):
        ranges = chunk_ranges(100663296, DEFAULT_CHUNK_SIZE)
        assert ranges == [
            (0, 22020096),
            (22020096, 44040192),
            (44040192, 66060288),
            (66060288, 88080384),
            (88080384, 100663296),
        ]
        for size in (1, 3, 4, 5, 17):
            covered = [b for start, end in chunk_ranges(size, 4) for b in range(start, end)]
            assert covered == list(range(size))

    def test_exact_multiple(self):
        assert chunk_ranges(8, 4) == [(0, 4), (4, 8)]

    def test_empty_file(self):
        assert chunk_ranges(0, 4) == []

    def test_invalid_chunk_size_uses_default(self):
        assert chunk_ranges(10, 0) == [(0, 10)]


class TestPreupload:
    """preupload 响应解析测试"""

    def test_parse(self):
        data = {
            "OK": 1,
            "auth": "ak=1\\u0026sign=2",
            "endpoint": "//upos-test.bilivideo.com",
            "chunk_size": 4,
            "put_query": "os=upos&profile=iup%2Fbup",
            "biz_id": 99,
            "upos_uri": "upos://iupever/server_name.mp4",
            "endpoints": ["//a", "//b"],
        }
        session = parse_preupload(data, UploadSession(filename="local.mp4"))
        assert session.auth == "ak=1&sign=2"
        assert session.host == "https://upos-test.bilivideo.com"
        assert session.chunk_size == 4
        assert session.biz_id == "99"
        assert session.filename == "server_name.mp4"
        assert session.profile == "iup/bup"
        assert session.object_url == "https://upos-test.bilivideo.com/iupever/server_name.mp4"
        assert session.upos_headers()["X-Upos-Auth"] == "ak=1&sign=2"

    def test_keeps_local_filename_without_upos_uri(self):
        session = parse_preupload({"OK": 1, "auth": "a"}, UploadSession(filename="local.mp4"))
        assert session.filename == "local.mp4"
        assert session.host == DEFAULT_UPOS_HOST
        assert session.chunk_size == DEFAULT_CHUNK_SIZE

    def test_rejects_missing_auth(self):
        with pytest.raises(UploadError):
            parse_preupload({"OK": 1}, UploadSession(filename="x.mp4"))
        with pytest.raises(UploadError):
            parse_preupload({"OK": 0, "auth": "a"}, UploadSession(filename="x.mp4"))

    def test_normalize_endpoint(self):
        assert normalize_endpoint("") == DEFAULT_UPOS_HOST
        assert normalize_endpoint("upos-x.bilivideo.com/") == "https://upos-x.bilivideo.com"

    def test_generate_filename(self):
        name = generate_filename(".mp4")
        assert name.startswith("n")
        assert "ad" in name
        assert name.endswith(".mp4")

    def test_preupload_failure_uses_defaults(self, tmp_path, fake_session, fake_response):
        session = fake_session(_script([fake_response(500, text="busy")]))
        video = tmp_path / "v.mp4"
        video.write_bytes(b"0123456789")
        upload_session = VideoUploader(_client(session)).preupload(video, 10)
        assert upload_session.host == DEFAULT_UPOS_HOST
        assert upload_session.filename.endswith(".mp4")
        assert "csrf=tok" in session.calls[0]["url"]


class TestChunkRetry:
    """分片重试测试"""

    def _upload(self, tmp_path, session, retries):
        video = tmp_path / "v.mp4"
        video.write_bytes(b"0123456789")
        uploader = VideoUploader(_client(session), chunk_retries=retries, retry_backoff=0, chunk_interval=0)
        upload_session = UploadSession(filename="f.mp4", upload_id="U1")
        uploader.upload_chunks(upload_session, video, 10, chunk_ranges(10, 4))

    def test_retry_until_success(self, tmp_path, fake_session, fake_response):
        session = fake_session(_script([fake_response(500), fake_response(502), fake_response(200)]))
        self._upload(tmp_path, session, retries=5)
        puts = session.calls_to("partNumber", "PUT")
        assert len(puts) == 5
        assert puts[-1]["data"] == b"89"
        assert "partNumber=3" in puts[-1]["url"]
        assert "uploadId=U1" in puts[-1]["url"]

    def test_network_error_counts_as_attempt(self, tmp_path, fake_session, fake_response):
        session = fake_session(_script([requests.ConnectionError("reset"), fake_response(204)]))
        self._upload(tmp_path, session, retries=2)
        assert len(session.calls) == 4

    def test_exhausted(self, tmp_path, fake_session, fake_response):
        session = fake_session(_script([fake_response(500, text="error")]))
        with pytest.raises(UploadError):
            self._upload(tmp_path, session, retries=3)
        assert len(session.calls) == 3


class TestCover:
    """封面上传与尺寸回退测试"""

    def _cover(self, tmp_path, name="cover.jpg"):
        path = tmp_path / name
        path.write_bytes(b"\xff\xd8\xff\xe0data")
        return path

    def _response(self, fake_response, code, url=""):
        return fake_response(200, {"code": code, "message": "m", "data": {"url": url}})

    def test_mime_detection(self):
        assert detect_image_mime(b"\x89PNG....") == "image/png"
        assert detect_image_mime(b"RIFF\x00\x00\x00\x00WEBPVP8") == "image/webp"
        assert detect_image_mime(b"unknown") == "image/jpeg"
        assert to_data_uri(b"\xff\xd8\xff").startswith("data:image/jpeg;base64,")

    def test_direct_success(self, tmp_path, fake_session, fake_response):
        session = fake_session(_script([self._response(fake_response, 0, "https://c/1.jpg")]))
        url = CoverUploader(_client(session)).upload(self._cover(tmp_path))
        assert url == "https://c/1.jpg"
        cover_field = session.calls[0]["files"]["cover"]
        assert cover_field[1].startswith("data:image/jpeg;base64,")

    def test_dimension_rejected_then_padded(self, tmp_path, fake_session, fake_response):
        session = fake_session(_script([
            self._response(fake_response, -702),
            self._response(fake_response, 0, "https://c/padded.jpg"),
        ]))
        padded = self._cover(tmp_path, "cover_1280x720.jpg")
        with patch("core.bilibili.cover.pad_cover_to_1280x720", return_value=padded) as pad:
            url = CoverUploader(_client(session)).upload(self._cover(tmp_path))
        assert url == "https://c/padded.jpg"
        pad.assert_called_once()
        assert len(session.calls) == 2

    def test_frame_fallback(self, tmp_path, fake_session, fake_response):
        session = fake_session(_script([
            self._response(fake_response, -702),
            self._response(fake_response, -702),
            self._response(fake_response, 0, "https://c/frame.jpg"),
        ]))
        padded = self._cover(tmp_path, "cover_1280x720.jpg")
        frame = self._cover(tmp_path, "cover_from_frame_1280x720.jpg")
        with patch("core.bilibili.cover.pad_cover_to_1280x720", return_value=padded), \
                patch("core.bilibili.cover.extract_cover_from_video", return_value=frame):
            url = CoverUploader(_client(session)).upload(self._cover(tmp_path), tmp_path / "v.mp4")
        assert url == "https://c/frame.jpg"
        assert len(session.calls) == 3

    def test_all_attempts_fail(self, tmp_path, fake_session, fake_response):
        session = fake_session(_script([self._response(fake_response, -702)]))
        padded = self._cover(tmp_path, "cover_1280x720.jpg")
        with patch("core.bilibili.cover.pad_cover_to_1280x720", return_value=padded), \
                patch("core.bilibili.cover.extract_cover_from_video", side_effect=UploadError("no ffmpeg")):
            with pytest.raises(UploadError):
                CoverUploader(_client(session)).upload(self._cover(tmp_path), tmp_path / "v.mp4")
        assert len(session.calls) == 2

    def test_other_error_code_not_retried(self, tmp_path, fake_session, fake_response):
        session = fake_session(_script([self._response(fake_response, -1)]))
        with pytest.raises(UploadError):
            CoverUploader(_client(session)).upload(self._cover(tmp_path))
        assert len(session.calls) == 1


class TestSubtitleKey:
    """字幕对象 key 推导测试"""

    def test_complete_key_kept(self):
        assert resolve_object_key("ugc/subtitle-1.json", "", now_ms=5) == "ugc/subtitle-1.json"

    def test_prefix_from_policy(self):
        assert resolve_object_key("ugc/x_", POLICY, now_ms=5) == "ugc/sub/abc_subtitle-5.json"

    def test_prefix_from_key(self):
        assert resolve_object_key("ugc/x_", "", now_ms=5) == "ugc/x_subtitle-5.json"

    def test_generated_prefix(self):
        assert resolve_object_key("", "", now_ms=5) == "ugc/subtitle/5_subtitle-5.json"

    def test_policy_without_padding(self):
        assert key_prefix_from_policy(POLICY.rstrip("=")) == "ugc/sub/abc_"

    def test_policy_garbage(self):
        assert key_prefix_from_policy("not base64 json") == ""


class TestSubtitlePayload:
    """字幕内容选择测试"""

    def test_pick_prefers_srt(self, tmp_path):
        assert pick_subtitle([tmp_path / "a.vtt", tmp_path / "b.srt"]).name == "b.srt"
        assert pick_subtitle([tmp_path / "a.vtt"]).name == "a.vtt"
        assert pick_subtitle([]) is None

    def test_generated_from_srt(self, tmp_path):
        srt = tmp_path / "v.en.srt"
        srt.write_text(SRT, encoding="utf-8")
        document = json.loads(build_subtitle_payload(srt))
        assert document["body"][0]["content"] == "Hello"

    def test_existing_styled_json_used_verbatim(self, tmp_path):
        srt = tmp_path / "v.en.srt"
        srt.write_text(SRT, encoding="utf-8")
        styled = json.dumps({"body": [{"from": 0, "to": 1, "content": "custom"}]}).encode()
        (tmp_path / "styled_subtitles.json").write_bytes(styled)
        assert build_subtitle_payload(srt) == styled

    def test_empty_srt(self, tmp_path):
        srt = tmp_path / "v.en.srt"
        srt.write_text("", encoding="utf-8")
        assert build_subtitle_payload(srt) is None


class TestSubtitleUploader:
    """字幕上传测试"""

    def _token_response(self, fake_response):
        return fake_response(200, {"code": 0, "data": {
            "host": "oss.example.com",
            "OSSAccessKeyId": "key-id",
            "policy": POLICY,
            "signature": "sig",
            "key": "ugc/x_",
        }})

    def test_upload_success(self, tmp_path, fake_session, fake_response):
        srt = tmp_path / "v.en.srt"
        srt.write_text(SRT, encoding="utf-8")

        def handler(method, url, kwargs):
            if "upload/token" in url:
                return self._token_response(fake_response)
            return fake_response(200)

        session = fake_session(handler)
        key = SubtitleUploader(_client(session)).upload([srt])

        assert key.startswith("ugc/sub/abc_subtitle-")
        assert key.endswith(".json")
        oss_calls = session.calls_to("https://oss.example.com", "POST")
        assert len(oss_calls) == 1
        assert "Cookie" not in oss_calls[0]["headers"]
        fields = dict(oss_calls[0]["files"])
        assert fields["key"] == (None, key)
        assert fields["OSSAccessKeyId"] == (None, "key-id")

    def test_failures_return_none(self, tmp_path, fake_session, fake_response):
        srt = tmp_path / "v.en.srt"
        srt.write_text(SRT, encoding="utf-8")
        session = fake_session(_script([fake_response(500, text="down")]))
        token = MagicMock()
        assert SubtitleUploader(_client(session), cancel_token=token).upload([srt]) is None
        assert len(session.calls) == 3
        assert [c.args[0] for c in token.sleep.call_args_list] == [1, 2]

    def test_token_error_code(self, tmp_path, fake_session, fake_response):
        srt = tmp_path / "v.en.srt"
        srt.write_text(SRT, encoding="utf-8")
        session = fake_session(_script([fake_response(200, {"code": -101, "message": "no login"})]))
        uploader = SubtitleUploader(_client(session), cancel_token=MagicMock(), attempts=1)
        assert uploader.upload([srt]) is None

    def test_empty_subtitle_skips_network(self, tmp_path, fake_session, fake_response):
        srt = tmp_path / "v.en.srt"
        srt.write_text("", encoding="utf-8")
        session = fake_session(_script([fake_response(200)]))
        assert SubtitleUploader(_client(session)).upload([srt]) is None
        assert session.calls == []


class TestPublish:
    """发布接口测试"""

    def _uploader(self, tmp_path):
        return BilibiliUploader(WorkDirRepository(tmp_path / "downloads"))

    def test_payload(self):
        payload = build_publish_payload("server.mp4", "T", "https://c", "desc", "ugc/sub.json")
        assert payload["filename"] == "server"
        assert payload["subtitle_url"] == "ugc/sub.json"
        assert payload["subtitle_lang_id"] == 3
        assert payload["no_reprint"] is True
        assert payload["copyright"] == 1

    def test_payload_without_subtitle(self):
        payload = build_publish_payload("server", "T", "https://c")
        assert "subtitle_url" not in payload
        assert payload["subtitle_lang_id"] is None

    def test_success(self, tmp_path, fake_session, fake_response):
        session = fake_session(_script([fake_response(200, {"code": 0, "data": {"aid": 123}})]))
        aid = self._uploader(tmp_path).publish(_client(session), "f.mp4", "标题", "https://c")
        assert aid == "123"
        body = json.loads(session.calls[0]["data"].decode("utf-8"))
        assert body["title"] == "标题"
        assert "/intl/videoup/web2/add?" in session.calls[0]["url"]

    def test_placeholder_message(self, tmp_path, fake_session, fake_response):
        session = fake_session(_script([fake_response(200, {"code": 21001, "message": "--"})]))
        with pytest.raises(PublishError) as exc_info:
            self._uploader(tmp_path).publish(_client(session), "f", "T", "https://c")
        assert exc_info.value.code == 21001
        assert exc_info.value.response_message == "错误代码: 21001"
        assert exc_info.value.request_preview

    def test_http_error(self, tmp_path, fake_session, fake_response):
        session = fake_session(_script([fake_response(502, text="bad gateway")]))
        with pytest.raises(UploadError):
            self._uploader(tmp_path).publish(_client(session), "f", "T", "https://c")

    def test_missing_aid(self, tmp_path, fake_session, fake_response):
        session = fake_session(_script([fake_response(200, {"code": 0, "data": {}})]))
        with pytest.raises(UploadError):
            self._uploader(tmp_path).publish(_client(session), "f", "T", "https://c")


class TestPreflight:
    """发送前的本地文件检查"""

    def _setup(self, tmp_path):
        repo = WorkDirRepository(tmp_path / "downloads")
        video_dir = repo.ensure_video_dir("chan", "abc")
        return repo, video_dir

    def test_clean_path(self):
        assert str(clean_path("My\\ Video\\#1.mp4")) == "My Video#1.mp4"

    def test_missing_cover(self, tmp_path):
        repo, video_dir = self._setup(tmp_path)
        video = video_dir / "abc_1080p.mp4"
        video.write_bytes(b"v")
        with pytest.raises(MissingCoverError):
            BilibiliUploader(repo).preflight(UploadRequest(video, "T"))

    def test_missing_subtitle(self, tmp_path):
        repo, video_dir = self._setup(tmp_path)
        video = video_dir / "abc_1080p.mp4"
        video.write_bytes(b"v")
        request = UploadRequest(video, "T", subtitle_paths=[video_dir / "gone.en.srt"])
        with pytest.raises(UploadError):
            BilibiliUploader(repo).preflight(request)

    def test_missing_video(self, tmp_path):
        repo, video_dir = self._setup(tmp_path)
        with pytest.raises(UploadError):
            BilibiliUploader(repo).preflight(UploadRequest(video_dir / "abc_1080p.mp4", "T"))

    def test_fallback_video(self, tmp_path):
        repo, video_dir = self._setup(tmp_path)
        (video_dir / "other.mp4").write_bytes(b"v")
        (video_dir / "cover.jpg").write_bytes(b"\xff\xd8\xff")
        video, subtitles, cover = BilibiliUploader(repo).preflight(
            UploadRequest(video_dir / "abc_1080p.mp4", "T")
        )
        assert video.name == "other.mp4"
        assert subtitles == []
        assert cover.name == "cover.jpg"

    def test_bad_cookies_before_network(self, tmp_path):
        repo, video_dir = self._setup(tmp_path)
        factory = MagicMock()
        uploader = BilibiliUploader(repo, session_factory=factory)
        with pytest.raises(AuthError):
            uploader.upload(UploadRequest(video_dir / "abc_1080p.mp4", "T"), "")
        factory.assert_not_called()


class TestFullUpload:
    """完整投稿流程"""

    def test_upload_flow(self, tmp_path, cookies_file, fake_session, fake_response):
        repo = WorkDirRepository(tmp_path / "downloads")
        video_dir = repo.ensure_video_dir("chan", "abc")
        video = video_dir / "abc_1080p.mp4"
        video.write_bytes(b"0123456789")
        (video_dir / "cover.jpg").write_bytes(b"\xff\xd8\xff")
        srt = video_dir / "Demo[abc].en.srt"
        srt.write_text(SRT, encoding="utf-8")

        def handler(method, url, kwargs):
            if url.endswith("/archive/new"):
                return fake_response(200, text="<html>")
            if "/web2/cover" in url:
                return fake_response(200, {"code": 0, "data": {"url": "https://c/cover.jpg"}})
            if "upload/token" in url:
                return fake_response(200, {"code": 0, "data": {
                    "host": "oss.example.com", "OSSAccessKeyId": "k",
                    "policy": POLICY, "signature": "s", "key": "ugc/x_",
                }})
            if "oss.example.com" in url:
                return fake_response(200)
            if "/preupload" in url:
                return fake_response(200, {
                    "OK": 1,
                    "auth": "a\\u0026b",
                    "endpoint": "//upos-test.bilivideo.com",
                    "chunk_size": 4,
                    "upos_uri": "upos://iupever/server_name.mp4",
                    "biz_id": 7,
                    "put_query": "profile=iup%2Fbup",
                })
            if "?uploads" in url:
                return fake_response(200, {"OK": 1, "upload_id": "U1"})
            if method == "PUT":
                return fake_response(200)
            if "output=json&name=" in url:
                return fake_response(200, {"OK": 1})
            if "/web2/uploading" in url:
                return fake_response(200, {"code": 0})
            if "/web2/add" in url:
                return fake_response(200, {"code": 0, "data": {"aid": 555}})
            raise AssertionError(f"unexpected request {method} {url}")

        session = fake_session(handler)
        uploader = BilibiliUploader(repo, session_factory=lambda: session, chunk_interval=0)
        request = UploadRequest(video, "Demo", "desc", subtitle_paths=[srt], account="main")
        aid = uploader.upload(request, str(cookies_file))

        assert aid == "555"
        assert session.calls[0]["url"].endswith("/archive/new")
        puts = session.calls_to("partNumber", "PUT")
        assert len(puts) == 3
        assert all(c["headers"]["X-Upos-Auth"] == "a&b" for c in puts)
        assert all(c["url"].startswith("https://upos-test.bilivideo.com/iupever/server_name.mp4?") for c in puts)
        commit = session.calls_to("/web2/uploading", "POST")[0]
        assert commit["data"] == {"filename": "server_name.mp4"}

        publish = session.calls_to("/web2/add", "POST")[0]
        body = json.loads(publish["data"].decode("utf-8"))
        assert body["filename"] == "server_name"
        assert body["cover"] == "https://c/cover.jpg"
        assert body["subtitle_url"].startswith("ugc/sub/abc_subtitle-")
        assert body["desc"] == "desc"
