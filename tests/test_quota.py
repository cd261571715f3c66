"""
每日配额与休息控制测试
"""

import random
from datetime import datetime, timedelta

import pytest
from core.cancel_token import CancelToken
from core.exceptions import TaskCancelledError
from core.pipeline.quota import (
    DOWNLOAD_COUNTER_FILE,
    UPLOAD_QUOTA_FILE,
    DailyDownloadCounter,
    UploadQuota,
    seconds_until_midnight,
    sleep_until_next_day,
)
from core.pipeline.rest import BotRestController, VideoRestController
from core.workdir import WorkDirRepository


class FakeClock:
    """可以手动推进的时钟"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FixedRng:
    """uniform 总是返回上界"""

    def uniform(self, a, b):
        return b


class TestUploadQuota:
    """账号级上传配额"""

    def _quota(self, tmp_path, limit=2, clock=None):
        clock = clock or FakeClock(datetime(2024, 5, 1, 12, 0, 0))
        return UploadQuota(WorkDirRepository(tmp_path), limit=limit, clock=clock, rng=random.Random(0)), clock

    def test_record_and_limit(self, tmp_path):
        quota, _ = self._quota(tmp_path)
        assert quota.try_account("a")
        assert quota.record_success("a") == 1
        assert quota.record_success("a") == 2
        assert not quota.try_account("a")
        assert quota.try_account("b")

    def test_persisted_layout(self, tmp_path):
        quota, _ = self._quota(tmp_path)
        quota.record_success("a")
        data = WorkDirRepository(tmp_path).load_global(UPLOAD_QUOTA_FILE)
        assert data == {"a": {"daily_count": 1, "daily_window_start": "2024-05-01"}}

    def test_per_account_windows(self, tmp_path):
        quota, _ = self._quota(tmp_path)
        WorkDirRepository(tmp_path).save_global(UPLOAD_QUOTA_FILE, {
            "a": {"daily_count": 2, "daily_window_start": "2024-05-01"},
            "b": {"daily_count": 2, "daily_window_start": "2024-04-30"},
        })
        assert quota.load_counts() == {"a": 2, "b": 0}
        assert not quota.try_account("a")
        assert quota.pick_account(["a", "b"]) == "b"

        assert quota.record_success("b") == 1
        data = WorkDirRepository(tmp_path).load_global(UPLOAD_QUOTA_FILE)
        assert data["a"] == {"daily_count": 2, "daily_window_start": "2024-05-01"}
        assert data["b"] == {"daily_count": 1, "daily_window_start": "2024-05-01"}

    def test_rollover_resets(self, tmp_path):
        quota, clock = self._quota(tmp_path)
        quota.record_success("a")
        quota.record_success("a")
        clock.advance(12 * 3600)
        assert quota.count("a") == 0
        assert quota.try_account("a")

    def test_pick_skips_full_accounts(self, tmp_path):
        quota, _ = self._quota(tmp_path, limit=1)
        quota.record_success("a")
        for _ in range(5):
            assert quota.pick_account(["a", "b", "c"]) in ("b", "c")

    def test_all_full_returns_none(self, tmp_path):
        quota, _ = self._quota(tmp_path, limit=1)
        quota.record_success("a")
        quota.record_success("b")
        assert quota.pick_account(["b", "a"]) is None
        assert quota.available_accounts(["a", "b"]) == []

    def test_corrupt_file_counts_zero(self, tmp_path):
        quota, _ = self._quota(tmp_path)
        (tmp_path / ".global").mkdir()
        (tmp_path / ".global" / UPLOAD_QUOTA_FILE).write_text("{broken", encoding="utf-8")
        assert quota.load_counts() == {}

    def test_non_positive_limit_uses_default(self, tmp_path):
        quota, _ = self._quota(tmp_path, limit=0)
        assert quota.limit == 160


class TestDailyDownloadCounter:
    """全局每日下载计数"""

    def test_limit(self, tmp_path):
        clock = FakeClock(datetime(2024, 5, 1, 8, 0, 0))
        counter = DailyDownloadCounter(WorkDirRepository(tmp_path), limit=2, clock=clock)
        assert not counter.is_limit_reached()
        counter.increment()
        counter.increment()
        assert counter.is_limit_reached()
        assert WorkDirRepository(tmp_path).load_global(DOWNLOAD_COUNTER_FILE)["count"] == 2

        clock.advance(24 * 3600)
        assert counter.count() == 0
        assert not counter.is_limit_reached()

    def test_unlimited(self, tmp_path):
        counter = DailyDownloadCounter(WorkDirRepository(tmp_path), limit=0)
        for _ in range(3):
            counter.increment()
        assert not counter.is_limit_reached()


class TestSleepUntilNextDay:
    """跨日休眠"""

    def test_seconds_until_midnight(self):
        assert seconds_until_midnight(datetime(2024, 5, 1, 23, 0, 0)) == 3600
        assert seconds_until_midnight(datetime(2024, 5, 1, 0, 0, 0)) == 86400

    def test_sleep_with_margin(self):
        slept = []
        clock = FakeClock(datetime(2024, 5, 1, 23, 59, 0))
        seconds = sleep_until_next_day(CancelToken(), clock, slept.append)
        assert seconds == 61
        assert slept == [61]

    def test_cancelled_during_sleep(self):
        token = CancelToken()
        token.cancel("用户中断")
        with pytest.raises(TaskCancelledError):
            sleep_until_next_day(token, FakeClock(datetime(2024, 5, 1, 23, 59, 59)))


class TestRestControllers:
    """休息控制"""

    def test_video_rest_after_limit(self):
        slept = []
        rest = VideoRestController(limit=2, rest_minutes=10, sleep=slept.append, rng=FixedRng())
        assert rest.record_success() is None
        assert rest.record_success() == pytest.approx(660)
        assert slept == [pytest.approx(660)]
        assert rest.record_success() is None
        assert rest.count == 1

    def test_video_rest_disabled(self):
        slept = []
        rest = VideoRestController(limit=0, rest_minutes=10, sleep=slept.append)
        for _ in range(5):
            assert rest.record_success() is None
        assert slept == []

    def test_rest_jitter_range(self):
        slept = []
        rest = VideoRestController(limit=1, rest_minutes=1, sleep=slept.append, rng=random.Random(3))
        for _ in range(20):
            rest.record_success()
        assert all(60 <= s <= 66 for s in slept)

    def test_bot_rest_threshold(self):
        slept = []
        rest = BotRestController(threshold=3, rest_minutes=480, sleep=slept.append, rng=FixedRng())
        assert rest.record_bot_detected() is None
        assert rest.record_bot_detected() is None
        assert rest.record_bot_detected() == pytest.approx(480 * 60 * 1.1)
        assert rest.count == 0
        assert len(slept) == 1
