"""
Bilibili Upload Module - B 站上传（会话、封面、字幕、分片、发布）
"""

from .client import BilibiliClient, build_api_url, build_headers
from .cookies import Cookie, extract_csrf, load_cookies
from .uploader import BilibiliUploader, build_publish_payload, clean_path
from .video import chunk_ranges, generate_filename

__all__ = [
    "BilibiliClient",
    "BilibiliUploader",
    "Cookie",
    "build_api_url",
    "build_headers",
    "build_publish_payload",
    "chunk_ranges",
    "clean_path",
    "extract_csrf",
    "generate_filename",
    "load_cookies",
]
