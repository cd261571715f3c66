"""
外部下载进程监控

一次 yt-dlp 运行由四个并发点组成：
- 两个读取线程：按行读取 stdout / stderr，写入共享输出缓冲，进度与错误行立即记录日志
- 一个等待线程：process.wait()
- 一个定时线程：每 tick_seconds 触发一次，检查工作目录下载文件的总字节数

主线程在事件队列上等待 exit / stdout_done / stderr_done / tick 四类事件。
总字节数超过 stall_seconds 没有变化时终止整个进程组并标记为停滞。
"""

import queue
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from core.cancel_token import CancelToken
from core.logger import get_logger
from core.subprocess_utils import kill_process_group, start_process
from core.workdir import measure_download_bytes
from core.ytdlp_errors import BOT_KEYWORDS

logger = get_logger()

TICK_SECONDS = 60
STALL_SECONDS = 120
# 进程退出后等待读取线程收尾的时间
READER_JOIN_SECONDS = 5

_EXIT = "exit"
_STDOUT_DONE = "stdout_done"
_STDERR_DONE = "stderr_done"
_TICK = "tick"


@dataclass
class RunResult:
    """一次外部进程运行的结果"""
    exit_code: Optional[int]
    output: str
    stalled: bool = False
    cancelled: bool = False
    elapsed: float = 0.0


class OutputBuffer:
    """读取线程共享的输出缓冲"""

    def __init__(self):
        self._lines: List[str] = []
        self._lock = threading.Lock()

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines)


class StallDetector:
    """基于目录总字节数的停滞检测

    只有检测到下载文件（总字节数 > 0）之后才开始计时
    """

    def __init__(self, stall_seconds: float = STALL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.stall_seconds = stall_seconds
        self.clock = clock
        self.last_total = -1
        self.last_change: Optional[float] = None

    def observe(self, total: int) -> bool:
        """记录一次采样

        Returns:
            总字节数已超过停滞窗口没有变化
        """
        now = self.clock()
        if total <= 0:
            return False
        if self.last_total < 0 or total != self.last_total:
            self.last_total = total
            self.last_change = now
            return False
        return now - self.last_change > self.stall_seconds

    def unchanged_for(self) -> float:
        if self.last_change is None:
            return 0.0
        return self.clock() - self.last_change


class ProcessMonitor:
    """运行外部命令并监控下载目录

    Args:
        watch_dir: 统计字节数的目录
        tick_seconds: 定时检查间隔
        stall_seconds: 字节数无变化多久视为停滞
        cancel_token: 根取消令牌，取消时终止进程组
        log_fields: 附加到进度/错误日志的结构化字段（strategy, client 等）
    """

    def __init__(
        self,
        watch_dir: Path,
        tick_seconds: float = TICK_SECONDS,
        stall_seconds: float = STALL_SECONDS,
        cancel_token: Optional[CancelToken] = None,
        log_fields: Optional[Dict[str, object]] = None,
        measure: Callable[[Path], int] = measure_download_bytes,
    ):
        self.watch_dir = Path(watch_dir)
        self.tick_seconds = tick_seconds
        self.stall_seconds = stall_seconds
        self.cancel_token = cancel_token or CancelToken()
        self.log_fields = dict(log_fields or {})
        self.measure = measure

    def run(self, cmd: List[str]) -> RunResult:
        """启动命令并阻塞到进程结束、被判定停滞或被取消"""
        started = time.monotonic()
        buffer = OutputBuffer()
        events: "queue.Queue[str]" = queue.Queue()
        stop_ticker = threading.Event()
        detector = StallDetector(self.stall_seconds)

        process = start_process(cmd)

        readers = [
            threading.Thread(
                target=self._read_stream,
                args=(process.stdout, buffer, events, _STDOUT_DONE, self._on_stdout_line),
                daemon=True,
            ),
            threading.Thread(
                target=self._read_stream,
                args=(process.stderr, buffer, events, _STDERR_DONE, self._on_stderr_line),
                daemon=True,
            ),
        ]
        waiter = threading.Thread(target=lambda: (process.wait(), events.put(_EXIT)), daemon=True)
        ticker = threading.Thread(target=self._tick, args=(events, stop_ticker), daemon=True)
        for thread in readers:
            thread.start()
        waiter.start()
        ticker.start()

        stalled = False
        cancelled = False
        try:
            while True:
                try:
                    event = events.get(timeout=0.5)
                except queue.Empty:
                    event = None

                if self.cancel_token.is_cancelled():
                    cancelled = True
                    kill_process_group(process)
                    break

                if event == _EXIT:
                    break
                if event == _TICK:
                    total = self.measure(self.watch_dir)
                    if detector.observe(total):
                        stalled = True
                        logger.warning(
                            f"下载目录总大小 {detector.unchanged_for():.0f}s 无变化（{total} 字节），终止进程",
                            **self.log_fields,
                        )
                        kill_process_group(process)
                        break
                    logger.info(
                        f"下载进行中: 已用 {time.monotonic() - started:.0f}s，目录总大小 {total} 字节",
                        **self.log_fields,
                    )
                # stdout_done / stderr_done 只表示管道关闭，继续等待退出事件
        finally:
            stop_ticker.set()
            if process.poll() is None and (stalled or cancelled):
                kill_process_group(process)
            try:
                process.wait(timeout=READER_JOIN_SECONDS)
            except subprocess.TimeoutExpired:
                kill_process_group(process)
                process.wait()
            for thread in readers:
                thread.join(READER_JOIN_SECONDS)
                if thread.is_alive():
                    logger.warning("等待输出读取超时，继续处理", **self.log_fields)

        return RunResult(
            exit_code=process.returncode,
            output=buffer.text(),
            stalled=stalled,
            cancelled=cancelled,
            elapsed=time.monotonic() - started,
        )

    def _tick(self, events: "queue.Queue[str]", stop: threading.Event) -> None:
        while not stop.wait(self.tick_seconds):
            events.put(_TICK)

    @staticmethod
    def _read_stream(stream, buffer: OutputBuffer, events, done_event: str, on_line) -> None:
        try:
            for raw in iter(stream.readline, ""):
                line = raw.rstrip("\r\n")
                buffer.append(line)
                on_line(line)
        except (OSError, ValueError):
            # 进程被杀后管道关闭
            pass
        finally:
            events.put(done_event)

    def _on_stdout_line(self, line: str) -> None:
        if "[download]" in line or "%" in line:
            logger.info(f"下载进度: {line}", **self.log_fields)

    def _on_stderr_line(self, line: str) -> None:
        if any(keyword in line for keyword in BOT_KEYWORDS):
            logger.warning(f"检测到机器人验证: {line}", **self.log_fields)
        elif "ERROR:" in line:
            logger.warning(f"yt-dlp 输出错误: {line}", **self.log_fields)
