"""
每日配额
- 上传：按账号计数，.global/upload_quota.json = {account: {daily_count, daily_window_start}}
- 下载：全局计数，.global/download_counter.json = {date, count}

窗口起点不是今天（本地午夜之后）时计数自动归零；所有账号都满额时休眠到第二天。
"""

import random
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.cancel_token import CancelToken
from core.exceptions import StorageError
from core.logger import get_logger
from core.workdir import WorkDirRepository

logger = get_logger()

UPLOAD_QUOTA_FILE = "upload_quota.json"
DOWNLOAD_COUNTER_FILE = "download_counter.json"
DEFAULT_DAILY_UPLOAD_LIMIT = 160


def today_str(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def seconds_until_midnight(now: datetime) -> float:
    """距离下一个本地午夜的秒数"""
    tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return (tomorrow - now).total_seconds()


def sleep_until_next_day(
    cancel_token: CancelToken,
    clock: Callable[[], datetime] = datetime.now,
    sleep: Optional[Callable[[float], None]] = None,
) -> float:
    """休眠到下一个午夜（多 1 秒，避免落在 23:59:59）

    Returns:
        休眠秒数
    """
    seconds = seconds_until_midnight(clock()) + 1
    logger.info(f"已达到每日上限，休眠 {seconds / 3600:.1f} 小时到次日")
    (sleep or cancel_token.sleep)(seconds)
    return seconds


class UploadQuota:
    """账号级每日上传配额

    Args:
        repo: 工作目录仓库（计数写在 {root}/.global/ 下）
        limit: 每个账号每天的上传上限
        clock: 当前时间（测试可替换）
    """

    def __init__(
        self,
        repo: WorkDirRepository,
        limit: int = DEFAULT_DAILY_UPLOAD_LIMIT,
        clock: Callable[[], datetime] = datetime.now,
        rng: Optional[random.Random] = None,
    ):
        self.repo = repo
        self.limit = limit if limit > 0 else DEFAULT_DAILY_UPLOAD_LIMIT
        self.clock = clock
        self.rng = rng or random.Random()

    def load_accounts(self) -> Dict[str, Dict[str, Any]]:
        """读取全部账号记录：{account: {daily_count, daily_window_start}}"""
        try:
            data = self.repo.load_global(UPLOAD_QUOTA_FILE)
        except StorageError as e:
            logger.warning(f"上传配额文件损坏，按 0 计数: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, dict)}

    def _current_count(self, record: Optional[Dict[str, Any]], today: str) -> int:
        """窗口起点不是今天的记录视为已归零"""
        if not record or str(record.get("daily_window_start") or "")[:10] != today:
            return 0
        value = record.get("daily_count")
        return int(value) if isinstance(value, (int, float)) else 0

    def load_counts(self) -> Dict[str, int]:
        """当天各账号的计数（各账号按自己的窗口归零）"""
        today = today_str(self.clock())
        return {
            name: self._current_count(record, today)
            for name, record in self.load_accounts().items()
        }

    def count(self, account: str) -> int:
        return self.load_counts().get(account, 0)

    def try_account(self, account: str) -> bool:
        """账号今天是否还有配额"""
        return self.count(account) < self.limit

    def record_success(self, account: str) -> int:
        today = today_str(self.clock())
        accounts = self.load_accounts()
        value = self._current_count(accounts.get(account), today) + 1
        accounts[account] = {"daily_count": value, "daily_window_start": today}
        self.repo.save_global(UPLOAD_QUOTA_FILE, accounts)
        return value

    def available_accounts(self, accounts: Sequence[str]) -> List[str]:
        counts = self.load_counts()
        return [name for name in accounts if counts.get(name, 0) < self.limit]

    def pick_account(self, accounts: Sequence[str]) -> Optional[str]:
        """随机选择一个未满额的账号，全部满额返回 None"""
        available = self.available_accounts(sorted(accounts))
        if not available:
            return None
        return self.rng.choice(available)


class DailyDownloadCounter:
    """全局每日下载计数（limit <= 0 表示不限制）"""

    def __init__(
        self,
        repo: WorkDirRepository,
        limit: int = 0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repo = repo
        self.limit = limit
        self.clock = clock

    def count(self) -> int:
        try:
            data = self.repo.load_global(DOWNLOAD_COUNTER_FILE)
        except StorageError as e:
            logger.warning(f"下载计数文件损坏，按 0 计数: {e}")
            return 0
        if not isinstance(data, dict) or data.get("date") != today_str(self.clock()):
            return 0
        return int(data.get("count") or 0)

    def is_limit_reached(self) -> bool:
        return self.limit > 0 and self.count() >= self.limit

    def increment(self) -> int:
        value = self.count() + 1
        self.repo.save_global(
            DOWNLOAD_COUNTER_FILE, {"date": today_str(self.clock()), "count": value}
        )
        return value
