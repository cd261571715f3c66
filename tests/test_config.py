"""
配置模型与 ConfigManager 测试
"""

import json

import pytest
from config.manager import AccountConfig, AppConfig, ChannelConfig, ConfigManager, YouTubeConfig
from core.exceptions import ConfigError


class TestDefaults:
    """默认值测试"""

    def test_default_values(self):
        config = AppConfig.default()
        assert config.output.directory == "./downloads"
        assert config.youtube.min_height == 1080
        assert config.youtube.limit_rate == "10M"
        assert config.youtube.daily_video_limit == 0
        assert config.bilibili.daily_upload_limit == 160
        assert config.bilibili.delete_original_after_upload is True
        assert config.bilibili.upload_subtitles is False
        assert config.generate_pending_downloads is True
        assert config.channels == []

    def test_partial_section_keeps_defaults(self):
        youtube = YouTubeConfig.from_dict({"retries": 7, "unknown_key": 1})
        assert youtube.retries == 7
        assert youtube.fragment_retries == 3

    def test_channel_from_dict(self):
        channel = ChannelConfig.from_dict({"url": "  https://www.youtube.com/@a  ", "limit": None})
        assert channel.url == "https://www.youtube.com/@a"
        assert channel.limit == 0
        assert channel.account == ""


class TestRoundTrip:
    """序列化往返"""

    def test_to_dict_from_dict(self):
        config = AppConfig()
        config.channels = [ChannelConfig("https://www.youtube.com/@a", ["en"], 10, 5, "main")]
        config.accounts = {"main": AccountConfig("user", "/tmp/main.txt")}
        config.generate_pending_downloads = False
        assert AppConfig.from_dict(config.to_dict()) == config

    def test_pending_downloads_under_channel_section(self):
        data = AppConfig().to_dict()
        assert data["channel"] == {"generate_pending_downloads": True}


class TestValidate:
    """配置校验"""

    def test_valid_default(self):
        AppConfig().validate()

    def test_all_problems_reported(self):
        config = AppConfig()
        config.youtube.min_height = 0
        config.channels = [ChannelConfig(url=""), ChannelConfig(url="https://x", account="ghost")]
        config.accounts = {"main": AccountConfig("", "")}
        with pytest.raises(ConfigError) as exc_info:
            config.validate()
        message = exc_info.value.message
        assert "youtube.min_height" in message
        assert "channels[0] 缺少 url" in message
        assert "ghost" in message
        assert "accounts.main 缺少 username" in message
        assert "accounts.main 缺少 cookies_file" in message

    def test_global_cookies_cover_accounts(self):
        config = AppConfig()
        config.bilibili.cookies_file = "/tmp/global.txt"
        config.accounts = {"main": AccountConfig("user", "")}
        config.validate()
        assert config.cookies_for_account("main") == "/tmp/global.txt"
        assert config.cookies_for_account("other") == "/tmp/global.txt"


class TestLookups:
    """频道与语言查找"""

    def test_find_channel(self):
        config = AppConfig()
        config.channels = [ChannelConfig("https://www.youtube.com/@a")]
        assert config.find_channel("https://www.youtube.com/@a") is config.channels[0]
        assert config.find_channel("https://www.youtube.com/@b") is None

    def test_channel_languages(self):
        config = AppConfig()
        config.subtitles.languages = ["en", "zh-Hans"]
        assert config.channel_languages(ChannelConfig("u")) == ["en", "zh-Hans"]
        assert config.channel_languages(ChannelConfig("u", ["ja"])) == ["ja"]


class TestConfigManager:
    """配置文件读写"""

    def test_missing_file_writes_default(self, tmp_path):
        path = tmp_path / "config.json"
        config = ConfigManager(path).load()
        assert config == AppConfig.default()
        assert json.loads(path.read_text(encoding="utf-8"))["bilibili"]["daily_upload_limit"] == 160
        assert (tmp_path / "logs").is_dir()

    def test_save_and_load(self, tmp_path):
        manager = ConfigManager(tmp_path / "config.json")
        config = AppConfig()
        config.channels = [ChannelConfig("https://www.youtube.com/@a", account="main")]
        config.accounts = {"main": AccountConfig("user", "c.txt")}
        manager.save(config)
        assert manager.load() == config
        assert not (tmp_path / "config.json.tmp").exists()

    def test_corrupt_file_backed_up(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigError):
            ConfigManager(path).load()
        assert (tmp_path / "config.json.bak").read_text(encoding="utf-8") == "{not json"
        assert not path.exists()

    def test_top_level_must_be_object(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(ConfigError):
            ConfigManager(path).load()

    def test_logs_dir(self, tmp_path):
        assert ConfigManager(tmp_path / "config.json").get_logs_dir() == tmp_path / "logs"
