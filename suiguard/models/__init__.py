"""
数据模型
"""

from .package import (
    ParamKind,
    ParamType,
    ExtractedFunction,
    StructField,
    UNKNOWN_STRUCT_FIELDS,
    ExtractedPackage,
    PackageSnapshot,
)
from .findings import (
    EVIDENCE_NOT_FOUND,
    Severity,
    Confidence,
    TriageResult,
    TechnicalFinding,
    TechnicalAnalysisResult,
    RiskScoreReport,
    CritiqueResult,
)
from .safety_card import (
    RiskLevel,
    risk_level_for_score,
    RiskyFunction,
    RugPullIndicator,
    SafetyCardDraft,
    SafetyCard,
    NO_FUNCTIONS_CARD,
    CLEAN_TRIAGE_CARD,
    DependencyRisk,
)

__all__ = [
    "ParamKind",
    "ParamType",
    "ExtractedFunction",
    "StructField",
    "UNKNOWN_STRUCT_FIELDS",
    "ExtractedPackage",
    "PackageSnapshot",
    "EVIDENCE_NOT_FOUND",
    "Severity",
    "Confidence",
    "TriageResult",
    "TechnicalFinding",
    "TechnicalAnalysisResult",
    "RiskScoreReport",
    "CritiqueResult",
    "RiskLevel",
    "risk_level_for_score",
    "RiskyFunction",
    "RugPullIndicator",
    "SafetyCardDraft",
    "SafetyCard",
    "NO_FUNCTIONS_CARD",
    "CLEAN_TRIAGE_CARD",
    "DependencyRisk",
]
