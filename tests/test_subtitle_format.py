"""
subtitle_format 模块的单元测试

测试 SRT 解析、VTT 转换、重叠修复和样式字幕 JSON
"""

import pytest
from core.subtitle_format import (
    STYLED_DEFAULTS,
    SubtitleEntry,
    convert_vtt_to_srt,
    fix_overlaps,
    fix_overlaps_in_file,
    format_srt,
    ms_to_srt_time,
    parse_srt,
    srt_time_to_ms,
    srt_to_styled_json,
)


SAMPLE_SRT = """1
00:00:01,000 --> 00:00:02,500
Hello

2
00:00:03,000 --> 00:00:04,000
Second line
continues
"""


class TestTimeConversion:
    """时间格式转换测试"""

    def test_zero(self):
        assert ms_to_srt_time(0) == "00:00:00,000"

    def test_hours(self):
        assert ms_to_srt_time(3661500) == "01:01:01,500"

    def test_negative_clamped(self):
        assert ms_to_srt_time(-5) == "00:00:00,000"

    def test_parse_srt_time(self):
        assert srt_time_to_ms("01:01:01,500") == 3661500

    def test_parse_vtt_time_without_hours(self):
        assert srt_time_to_ms("01:05.250") == 65250

    def test_parse_invalid(self):
        with pytest.raises(ValueError):
            srt_time_to_ms("1:2:3:4.000")


class TestParseSrt:
    """SRT 解析测试"""

    def test_parse_entries(self):
        entries = parse_srt(SAMPLE_SRT)
        assert len(entries) == 2
        assert entries[0].start_ms == 1000
        assert entries[0].end_ms == 2500
        assert entries[1].text == "Second line\ncontinues"

    def test_crlf_and_bom(self):
        content = "﻿" + SAMPLE_SRT.replace("\n", "\r\n")
        assert len(parse_srt(content)) == 2

    def test_skip_broken_block(self):
        content = "1\nnot a time\nText\n\n" + SAMPLE_SRT
        assert len(parse_srt(content)) == 2

    def test_format_renumbers(self):
        entries = [SubtitleEntry(7, 0, 1000, "a"), SubtitleEntry(9, 1000, 2000, "b")]
        output = format_srt(entries)
        assert output.startswith("1\n00:00:00,000 --> 00:00:01,000\na\n")
        assert "\n2\n00:00:01,000 --> 00:00:02,000\nb\n" in output


class TestConvertVttToSrt:
    """VTT → SRT 转换测试"""

    def test_basic_conversion(self):
        vtt = (
            "WEBVTT\nKind: captions\n\n"
            "00:00:01.000 --> 00:00:02.500 align:start position:0%\n"
            "<c.colorE5E5E5>Hello</c>  <i>world</i>\n\n"
            "NOTE comment block\n\n"
            "00:01.000 --> 00:02.000\nSecond\n"
        )
        srt = convert_vtt_to_srt(vtt)
        assert srt == (
            "1\n00:00:01,000 --> 00:00:02,500\nHello world\n\n"
            "2\n00:00:01,000 --> 00:00:02,000\nSecond\n"
        )

    def test_empty_cue_dropped(self):
        vtt = "WEBVTT\n\n00:00:01.000 --> 00:00:02.000\n<c></c>\n\n00:00:03.000 --> 00:00:04.000\nkept\n"
        entries = parse_srt(convert_vtt_to_srt(vtt))
        assert len(entries) == 1
        assert entries[0].text == "kept"


class TestFixOverlaps:
    """时间轴重叠修复测试"""

    def test_trim_previous_end(self):
        entries = [SubtitleEntry(1, 0, 2000, "a"), SubtitleEntry(2, 1500, 3000, "b")]
        fixed, changed = fix_overlaps(entries)
        assert changed == 1
        assert fixed[0].end_ms == 1490
        assert entries[0].end_ms == 2000

    def test_min_duration_when_trim_collapses(self):
        entries = [SubtitleEntry(1, 1000, 3000, "a"), SubtitleEntry(2, 1005, 4000, "b")]
        fixed, _ = fix_overlaps(entries)
        assert fixed[0].end_ms == 1400

    def test_fixed_point(self):
        entries = [
            SubtitleEntry(1, 0, 2000, "a"),
            SubtitleEntry(2, 1000, 3000, "b"),
            SubtitleEntry(3, 1005, 5000, "c"),
        ]
        once, _ = fix_overlaps(entries)
        twice, changed = fix_overlaps(once)
        assert changed == 0
        assert [(e.start_ms, e.end_ms) for e in once] == [(e.start_ms, e.end_ms) for e in twice]

    def test_order_preserved(self):
        entries = [SubtitleEntry(1, 5000, 6000, "late"), SubtitleEntry(2, 0, 5500, "early")]
        fixed, changed = fix_overlaps(entries)
        assert [e.text for e in fixed] == ["late", "early"]
        assert changed == 1
        assert fixed[1].end_ms == 4990

    def test_file_backup_only_when_changed(self, tmp_path):
        clean = tmp_path / "clean.en.srt"
        clean.write_text(SAMPLE_SRT, encoding="utf-8")
        assert fix_overlaps_in_file(clean) == 0
        assert not (tmp_path / "clean.en.srt.backup").exists()

        broken = tmp_path / "broken.en.srt"
        broken.write_text(
            "1\n00:00:00,000 --> 00:00:02,000\na\n\n2\n00:00:01,000 --> 00:00:03,000\nb\n",
            encoding="utf-8",
        )
        assert fix_overlaps_in_file(broken) == 1
        assert (tmp_path / "broken.en.srt.backup").exists()
        assert parse_srt(broken.read_text(encoding="utf-8"))[0].end_ms == 990


class TestStyledJson:
    """样式字幕 JSON 测试"""

    def test_defaults(self):
        document = srt_to_styled_json(parse_srt(SAMPLE_SRT))
        assert document["font_size"] == STYLED_DEFAULTS["font_size"]
        assert document["background_color"] == "#9C27B0"
        assert document["Stroke"] == "none"
        assert document["body"][0] == {"from": 1.0, "to": 2.5, "location": 2, "content": "Hello"}

    def test_style_override(self):
        document = srt_to_styled_json(parse_srt(SAMPLE_SRT), {"location": 1, "font_color": "#000000"})
        assert document["font_color"] == "#000000"
        assert all(item["location"] == 1 for item in document["body"])
