"""
风险模式知识库、确定性评分、证据校验与静态分析
"""

from .base import (
    DEFAULT_KNOWLEDGE_BASE_PATH,
    RiskPattern,
    ScoringRules,
    RiskPatternKnowledgeBase,
    get_knowledge_base,
)
from .scoring import RiskScorer, ScoreBreakdown, note_mentions
from .evidence import EvidenceValidator, evidence_in_code
from .static_analyzer import (
    StaticAnalysisResult,
    StaticFinding,
    StaticPatternAnalyzer,
    format_static_findings,
)
from .cross_module import CrossModuleAnalysisResult, CrossModuleAnalyzer, format_cross_module

__all__ = [
    "DEFAULT_KNOWLEDGE_BASE_PATH",
    "RiskPattern",
    "ScoringRules",
    "RiskPatternKnowledgeBase",
    "get_knowledge_base",
    "RiskScorer",
    "ScoreBreakdown",
    "note_mentions",
    "EvidenceValidator",
    "evidence_in_code",
    "StaticAnalysisResult",
    "StaticFinding",
    "StaticPatternAnalyzer",
    "format_static_findings",
    "CrossModuleAnalysisResult",
    "CrossModuleAnalyzer",
    "format_cross_module",
]
