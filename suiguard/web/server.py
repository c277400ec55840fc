#!/usr/bin/env python3
"""
SuiGuard API 服务器启动脚本

Usage:
    suiguard-server                     # 使用默认配置启动
    suiguard-server --port 8080         # 指定端口
    suiguard-server --host 0.0.0.0      # 指定主机
    suiguard-server --reload            # 开发模式（自动重载）

其余配置（LLM、RPC、缓存、实时订阅）均从环境变量读取。
"""

import argparse
import os

from ..core.cli_logger import CLILogger
from .api import start_server


def main():
    logger = CLILogger(component="web.server", verbose=True)
    parser = argparse.ArgumentParser(description='SuiGuard Safety Card 分析服务器')
    parser.add_argument('--host', default=os.getenv('HOST', '0.0.0.0'), help='服务器主机地址 (默认: 0.0.0.0)')
    parser.add_argument('--port', type=int, default=int(os.getenv('PORT', '3000')), help='服务器端口 (默认: 3000)')
    parser.add_argument('--reload', action='store_true', help='启用自动重载（开发模式）')

    args = parser.parse_args()

    logger.info("startup.banner", "SuiGuard Safety Card 分析服务")
    logger.info("startup.addr", "服务地址", url=f"http://{args.host}:{args.port}/analyze")
    logger.info("startup.docs", "API 文档地址", url=f"http://{args.host}:{args.port}/docs")

    start_server(host=args.host, port=args.port, reload=args.reload)


if __name__ == '__main__':
    main()
