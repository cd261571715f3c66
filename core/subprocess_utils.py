"""
Subprocess 工具函数
跨平台的 subprocess 调用：Windows 下隐藏命令行窗口，POSIX 下为外部工具创建独立进程组，
以便卡住时整组终止（yt-dlp 会派生 ffmpeg 子进程）
"""

import os
import shutil
import signal
import subprocess
import sys
from typing import Any, Dict, List, Optional, Union


def get_subprocess_kwargs(new_process_group: bool = False) -> Dict[str, Any]:
    """获取 subprocess 的平台相关参数

    Args:
        new_process_group: 是否让子进程成为新进程组的组长

    Returns:
        传给 subprocess.run / Popen 的额外参数
    """
    kwargs: Dict[str, Any] = {}

    if sys.platform == "win32":
        startupinfo = subprocess.STARTUPINFO()
        startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW
        startupinfo.wShowWindow = subprocess.SW_HIDE
        kwargs["startupinfo"] = startupinfo
        flags = subprocess.CREATE_NO_WINDOW
        if new_process_group:
            flags |= subprocess.CREATE_NEW_PROCESS_GROUP
        kwargs["creationflags"] = flags
    elif new_process_group:
        kwargs["start_new_session"] = True

    return kwargs


def run_command(
    cmd: Union[List[str], str],
    capture_output: bool = True,
    text: bool = True,
    timeout: Optional[int] = None,
    **kwargs,
) -> subprocess.CompletedProcess:
    """执行命令，Windows 下自动隐藏命令行窗口

    Args:
        cmd: 命令（列表或字符串）
        capture_output: 是否捕获输出
        text: 是否以文本模式处理输出
        timeout: 超时时间（秒）
        **kwargs: 其他传递给 subprocess.run 的参数

    Returns:
        subprocess.CompletedProcess 对象
    """
    platform_kwargs = get_subprocess_kwargs()
    platform_kwargs.update(kwargs)
    if text:
        platform_kwargs.setdefault("encoding", "utf-8")
        platform_kwargs.setdefault("errors", "replace")

    return subprocess.run(
        cmd,
        capture_output=capture_output,
        text=text,
        timeout=timeout,
        **platform_kwargs,
    )


def start_process(cmd: List[str], cwd: Optional[str] = None) -> subprocess.Popen:
    """以独立进程组启动外部工具，stdout / stderr 按行读取"""
    return subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
        cwd=cwd,
        **get_subprocess_kwargs(new_process_group=True),
    )


def kill_process_group(process: subprocess.Popen) -> None:
    """终止整个进程组（包括 yt-dlp 派生的 ffmpeg）"""
    if process.poll() is not None:
        return
    try:
        if sys.platform == "win32":
            process.kill()
        else:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
    except (ProcessLookupError, PermissionError, OSError):
        # 进程已退出
        try:
            process.kill()
        except OSError:
            pass


def find_executable(name: str) -> Optional[str]:
    """在 PATH 中查找可执行文件，找不到返回 None"""
    if not name:
        return None
    if os.path.isabs(name) and os.path.exists(name):
        return name
    return shutil.which(name)
