"""
CLI 包：yt2bili 命令行入口与各子命令
"""
