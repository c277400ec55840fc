"""
引擎层：基于 LangGraph 的分析流水线
"""

from .pipeline import (
    PipelineStage,
    TERMINAL_STAGES,
    PipelineState,
    PipelineResult,
    filter_report_functions,
    AnalysisPipeline,
)

__all__ = [
    "PipelineStage",
    "TERMINAL_STAGES",
    "PipelineState",
    "PipelineResult",
    "filter_report_functions",
    "AnalysisPipeline",
]
