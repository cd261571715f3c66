"""
取消令牌（CancelToken）
根作用域取消后，子进程、HTTP 请求和休眠都要及时退出
"""
import threading
from typing import Optional

from core.exceptions import TaskCancelledError


class CancelToken:
    """取消令牌

    所有阻塞点（读取子进程输出、定时器、HTTP 往返、分片间隔、休息）
    都通过 `wait()` 休眠，令牌被取消时立即返回。

    Example:
        token = CancelToken()
        if token.wait(60):
            return  # 已取消
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        """取消操作

        Args:
            reason: 取消原因（可选）
        """
        with self._lock:
            if self._reason is None:
                self._reason = reason
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def get_reason(self) -> Optional[str]:
        with self._lock:
            return self._reason

    def wait(self, seconds: float) -> bool:
        """可取消的休眠

        Args:
            seconds: 休眠秒数

        Returns:
            休眠期间被取消返回 True
        """
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)

    def sleep(self, seconds: float) -> None:
        """可取消的休眠，被取消时抛出 TaskCancelledError"""
        if self.wait(seconds):
            raise TaskCancelledError(self.get_reason())

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskCancelledError(self.get_reason())

    def reset(self) -> None:
        """重置取消状态（谨慎使用，主要用于测试）"""
        with self._lock:
            self._reason = None
        self._event.clear()
