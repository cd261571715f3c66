"""
yt-dlp 错误分类测试
"""

from core.exceptions import (
    BotDetectedError,
    ErrorType,
    ExtractorError,
    StuckError,
    TransientError,
    UndownloadableError,
    preview_text,
)
from core.ytdlp_errors import (
    classify_run,
    extract_error_message,
    has_error_line,
    is_bot_detection,
    is_format_unavailable,
)


class TestClassifyRun:
    """分类顺序测试"""

    def test_success(self):
        assert classify_run("[download] 100%\nWARNING: something", 0) is None

    def test_bot_detection_first(self):
        output = "ERROR: [youtube] x: Sign in to confirm you're not a bot"
        assert isinstance(classify_run(output, 1, stalled=True), BotDetectedError)

    def test_stalled(self):
        assert isinstance(classify_run("[download] 10%", -9, stalled=True), StuckError)

    def test_undownloadable(self):
        error = classify_run("ERROR: [youtube] x: Private video. Sign in if you've been granted access", 1)
        assert isinstance(error, UndownloadableError)
        assert error.error_type == ErrorType.EXTRACTOR

    def test_format_unavailable_stays_extractor(self):
        output = "ERROR: [youtube] x: Requested format is not available"
        error = classify_run(output, 1)
        assert type(error) is ExtractorError
        assert is_format_unavailable(output)

    def test_error_line_with_zero_exit(self):
        assert isinstance(classify_run("ERROR: unable to download", 0), ExtractorError)

    def test_nonzero_exit_without_error_line(self):
        error = classify_run("something odd", 2)
        assert isinstance(error, TransientError)
        assert error.error_type == ErrorType.TRANSIENT

    def test_no_exit_code(self):
        assert isinstance(classify_run("", None), TransientError)


class TestHelpers:
    """辅助函数测试"""

    def test_error_line_only_at_start(self):
        assert has_error_line("  ERROR: x")
        assert not has_error_line("WARNING: ERROR: nested")

    def test_extract_error_message(self):
        output = "[info] x\nWARNING: w\nERROR: first\nERROR: second"
        assert extract_error_message(output) == "ERROR: first\nERROR: second"
        assert extract_error_message("plain") == "plain"

    def test_bot_keywords_case_sensitive(self):
        assert is_bot_detection("please confirm you're not a bot")
        assert not is_bot_detection("SIGN IN TO CONFIRM")

    def test_preview_text(self):
        assert preview_text("a" * 10, 5) == "aaaaa..."
        assert preview_text(None) == ""
