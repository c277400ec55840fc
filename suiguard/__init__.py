#!/usr/bin/env python3
"""
SuiGuard - Sui Move package 多阶段安全评估

基于 LangGraph 与异步协程构建：
提取公开接口 -> 依赖风险继承 -> 粗筛 -> 技术分析 -> 确定性评分 -> 报告 -> 自检纠错，
最终输出带数值评分的 Safety Card。
"""

__version__ = "1.0.0"
__author__ = "SuiGuard Team"

# 配置
from .config import AnalyzerConfig, env_flag, normalize_network

# 数据模型
from .models import (
    ExtractedFunction,
    ExtractedPackage,
    PackageSnapshot,
    TechnicalFinding,
    RiskScoreReport,
    SafetyCard,
    RiskLevel,
    DependencyRisk,
)

# 引擎层
from .engines import AnalysisPipeline, PipelineStage, PipelineResult

# 推理后端
from .agents import ReasoningBackend, LLMReasoningBackend

# 知识库与评分
from .knowledge import RiskPatternKnowledgeBase, RiskScorer, get_knowledge_base

# 服务
from .analyzer import SafetyAnalyzer
from .feed import LiveIngestionFeed

__all__ = [
    "__version__",
    "AnalyzerConfig",
    "env_flag",
    "normalize_network",
    "ExtractedFunction",
    "ExtractedPackage",
    "PackageSnapshot",
    "TechnicalFinding",
    "RiskScoreReport",
    "SafetyCard",
    "RiskLevel",
    "DependencyRisk",
    "AnalysisPipeline",
    "PipelineStage",
    "PipelineResult",
    "ReasoningBackend",
    "LLMReasoningBackend",
    "RiskPatternKnowledgeBase",
    "RiskScorer",
    "get_knowledge_base",
    "SafetyAnalyzer",
    "LiveIngestionFeed",
]
