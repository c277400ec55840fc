"""
Web 层：FastAPI 分析接口
"""

from .api import create_app, start_server

__all__ = ["create_app", "start_server"]
