"""
CLI 启动脚本
python cli.py <command> [...] 等价于安装后的 yt2bili 命令
"""
import sys

from cli.main import main

if __name__ == "__main__":
    sys.exit(main())
