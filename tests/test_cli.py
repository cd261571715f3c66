"""
CLI 参数解析与命令分发测试
"""

import json
from unittest.mock import patch

import pytest
from cli.download import download_command
from cli.main import create_parser, main
from cli.upload import upload_command
from core.logger import clear_log_context, configure_logger
from core.state.status import DownloadState
from core.workdir import WorkDirRepository

CHANNEL_URL = "https://www.youtube.com/@demo"


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "output": {
            "directory": str(tmp_path / "downloads"),
            "subtitle_archive": str(tmp_path / "archive"),
        },
        "youtube": {"yt_dlp_path": str(tmp_path / "missing-yt-dlp")},
        "channels": [{"url": CHANNEL_URL}],
        "logging": {"console": False},
    }), encoding="utf-8")
    yield path
    clear_log_context()
    configure_logger(console_output=True, file_output=False)


def _run(argv):
    with patch("cli.main.install_interrupt_handler"):
        return main(argv)


class TestParser:
    """参数解析"""

    def test_upload_arguments(self):
        args = create_parser().parse_args(["upload", "--all", "--account", "main"])
        assert args.command == "upload"
        assert args.all is True
        assert args.account == "main"
        assert args.func is upload_command

    def test_channel_argument(self):
        args = create_parser().parse_args(["download", "--channel", CHANNEL_URL])
        assert args.channel == CHANNEL_URL
        assert args.all is False
        assert args.func is download_command

    def test_channel_and_all_exclusive(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["sync", "--channel", CHANNEL_URL, "--all"])

    def test_batch_only_accepts_all(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["batch", "--channel", CHANNEL_URL])
        assert create_parser().parse_args(["batch", "--all"]).all is True

    def test_log_level_case_insensitive(self):
        args = create_parser().parse_args(["--log-level", "debug", "fix-status", "--all"])
        assert args.log_level == "DEBUG"
        assert args.command == "fix-status"

    def test_invalid_log_level(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["--log-level", "verbose", "parse", "--all"])


class TestMain:
    """main 退出码"""

    def test_no_command(self, capsys):
        assert main([]) == 1
        assert "yt2bili" in capsys.readouterr().out

    def test_fix_status(self, tmp_path, config_file):
        repo = WorkDirRepository(tmp_path / "downloads")
        video_dir = repo.ensure_video_dir("demo", "v1")
        repo.mark_downloading(video_dir)
        repo.mark_download_failed(video_dir, "timeout")
        repo.mark_uploaded(video_dir, "5", "default")

        assert _run(["--config", str(config_file), "fix-status", "--all"]) == 0
        assert repo.get_download_state(video_dir) == DownloadState.COMPLETED
        assert (tmp_path / "logs" / "app.log").exists()

    def test_missing_extractor(self, config_file):
        assert _run(["--config", str(config_file), "download", "--all"]) == 1

    def test_unknown_channel(self, config_file):
        assert _run(["--config", str(config_file), "fix-status", "--channel", "https://www.youtube.com/@x"]) == 1

    def test_no_channel_selected(self, config_file):
        assert _run(["--config", str(config_file), "fix-status"]) == 1

    def test_unknown_account(self, config_file):
        assert _run(["--config", str(config_file), "upload", "--all", "--account", "ghost"]) == 1

    def test_upload_with_nothing_downloaded(self, config_file):
        assert _run(["--config", str(config_file), "upload", "--all"]) == 0

    def test_corrupt_config(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{broken", encoding="utf-8")
        try:
            assert _run(["--config", str(path), "fix-status", "--all"]) == 1
            assert (tmp_path / "config.json.bak").exists()
        finally:
            clear_log_context()

    def test_invalid_config(self, tmp_path, config_file):
        data = json.loads(config_file.read_text(encoding="utf-8"))
        data["channels"] = [{"url": CHANNEL_URL, "account": "ghost"}]
        config_file.write_text(json.dumps(data), encoding="utf-8")
        assert _run(["--config", str(config_file), "fix-status", "--all"]) == 1
