"""
字幕后处理测试
"""

from core.subtitle_normalizer import (
    SubtitleNormalizer,
    split_subtitle_name,
    strip_resolution_suffix,
    subtitle_language,
)
from core.workdir import WorkDirRepository

VTT = "WEBVTT\n\n00:00:01.000 --> 00:00:02.000\nHello\n"
OVERLAPPING_SRT = "1\n00:00:00,000 --> 00:00:02,000\na\n\n2\n00:00:01,000 --> 00:00:03,000\nb\n"


class TestNames:
    """文件名拆分测试"""

    def test_split(self, tmp_path):
        assert split_subtitle_name(tmp_path / "abc.en-US.srt", "abc") == ("en-US", "srt")
        assert split_subtitle_name(tmp_path / "other.en.srt", "abc") is None
        assert split_subtitle_name(tmp_path / "abc.srt", "abc") is None

    def test_language(self, tmp_path):
        assert subtitle_language(tmp_path / "Title[abc].zh-Hans.srt") == "zh-Hans"
        assert subtitle_language(tmp_path / "plain.srt") == ""

    def test_strip_resolution_suffix(self):
        assert strip_resolution_suffix("abcdefghijk_1080p.en.srt") == "abcdefghijk.en.srt"
        assert strip_resolution_suffix("abcdefghijk_720p.zh-Hans.vtt") == "abcdefghijk.zh-Hans.vtt"
        assert strip_resolution_suffix("abcdefghijk.en.srt") == "abcdefghijk.en.srt"
        assert strip_resolution_suffix("abcdefghijk_1080p.mp4") == "abcdefghijk_1080p.mp4"


class TestNormalize:
    """目录级整理测试"""

    def _dir(self, tmp_path):
        repo = WorkDirRepository(tmp_path)
        return repo, repo.ensure_video_dir("chan", "abc")

    def test_vtt_converted_and_renamed(self, tmp_path):
        repo, video_dir = self._dir(tmp_path)
        (video_dir / "abc.en.vtt").write_text(VTT, encoding="utf-8")
        result = SubtitleNormalizer(repo).normalize(video_dir, "abc", "My: Title")
        assert (video_dir / "abc.en.srt").exists()
        assert (video_dir / "abc.en.vtt").exists()
        assert (video_dir / "My_ Title[abc].en.srt").exists()
        assert result == {"en": str(video_dir / "My_ Title[abc].en.srt")}

    def test_existing_srt_not_overwritten(self, tmp_path):
        repo, video_dir = self._dir(tmp_path)
        (video_dir / "abc.en.vtt").write_text(VTT, encoding="utf-8")
        (video_dir / "abc.en.srt").write_text("keep", encoding="utf-8")
        SubtitleNormalizer(repo).convert_vtt_files(video_dir)
        assert (video_dir / "abc.en.srt").read_text(encoding="utf-8") == "keep"

    def test_overlap_fix_optional(self, tmp_path):
        repo, video_dir = self._dir(tmp_path)
        (video_dir / "abc.en.srt").write_text(OVERLAPPING_SRT, encoding="utf-8")
        SubtitleNormalizer(repo, auto_fix_overlap=False).normalize(video_dir, "abc", "t")
        assert not (video_dir / "abc.en.srt.backup").exists()

        SubtitleNormalizer(repo, auto_fix_overlap=True).normalize(video_dir, "abc", "t")
        assert (video_dir / "abc.en.srt.backup").exists()
        assert "00:00:00,990" in (video_dir / "abc.en.srt").read_text(encoding="utf-8")

    def test_multiple_languages(self, tmp_path):
        repo, video_dir = self._dir(tmp_path)
        (video_dir / "abc.en.srt").write_text(OVERLAPPING_SRT, encoding="utf-8")
        (video_dir / "abc.de.vtt").write_text(VTT, encoding="utf-8")
        result = SubtitleNormalizer(repo).normalize(video_dir, "abc", "t")
        assert sorted(result) == ["de", "en"]
        assert result["de"].endswith("t[abc].de.srt")

    def test_empty_dir(self, tmp_path):
        repo, video_dir = self._dir(tmp_path)
        assert SubtitleNormalizer(repo).normalize(video_dir, "abc", "t") == {}

    def test_template_names_renamed(self, tmp_path):
        repo = WorkDirRepository(tmp_path)
        video_dir = repo.ensure_video_dir("chan", "abcdefghijk")
        (video_dir / "abcdefghijk_1080p.mp4").write_bytes(b"v")
        (video_dir / "abcdefghijk_1080p.en.srt").write_text(OVERLAPPING_SRT, encoding="utf-8")
        (video_dir / "abcdefghijk_1080p.ja.vtt").write_text(VTT, encoding="utf-8")

        result = SubtitleNormalizer(repo).normalize(video_dir, "abcdefghijk", "Demo Title")

        assert (video_dir / "Demo Title[abcdefghijk].en.srt").exists()
        assert (video_dir / "Demo Title[abcdefghijk].ja.srt").exists()
        assert (video_dir / "abcdefghijk.en.srt").exists()
        assert not (video_dir / "abcdefghijk_1080p.en.srt").exists()
        assert result["en"] == str(video_dir / "Demo Title[abcdefghijk].en.srt")
        assert repo.find_video_file(video_dir) == video_dir / "abcdefghijk_1080p.mp4"
