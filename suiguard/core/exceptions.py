#!/usr/bin/env python3
"""
异常定义

分析链路中所有致命错误的统一基类及分类。
提取降级、结构体缺失、快速通道退出都不是异常，不在此处定义。
"""

from typing import Optional


class AnalysisError(Exception):
    """分析失败基类，HTTP 层会将其转换为 500 响应"""
    pass


class ChainQueryError(AnalysisError):
    """链上查询服务（Sui JSON-RPC）调用失败"""

    def __init__(self, message: str, method: Optional[str] = None):
        super().__init__(message)
        self.method = method


class PackageNotFoundError(ChainQueryError):
    """目标对象不存在、不是 package 或没有反汇编内容"""
    pass


class UpstreamServiceError(AnalysisError):
    """文本生成服务调用失败"""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class StageTimeoutError(UpstreamServiceError):
    """单个推理阶段调用超时"""
    pass


class SchemaViolationError(AnalysisError):
    """推理阶段返回的内容不是合法 JSON 或不符合约定的结构"""

    def __init__(self, message: str, stage: Optional[str] = None, raw_response: str = ""):
        super().__init__(message)
        self.stage = stage
        self.raw_response = raw_response


__all__ = [
    "AnalysisError",
    "ChainQueryError",
    "PackageNotFoundError",
    "UpstreamServiceError",
    "StageTimeoutError",
    "SchemaViolationError",
]
