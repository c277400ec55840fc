#!/usr/bin/env python3
"""
推理阶段输出模型

每个阶段的回复都必须是能通过这些 pydantic 模型校验的 JSON 对象。
"""

import math
from enum import Enum
from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


EVIDENCE_NOT_FOUND = "Evidence not found in disassembled code"


class Severity(str, Enum):
    """风险模式严重等级"""
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        raise ValueError(f"Unknown severity: {value!r}")

    @property
    def is_severe(self) -> bool:
        """Critical / High"""
        return self in (Severity.CRITICAL, Severity.HIGH)


class Confidence(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class TriageResult(BaseModel):
    """Stage 1 输出"""
    potentially_risky_functions: List[str] = Field(default_factory=list)

    @field_validator("potentially_risky_functions", mode="before")
    @classmethod
    def _drop_blank(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [str(v).strip() for v in value if str(v).strip()]
        return value


class TechnicalFinding(BaseModel):
    """Stage 2 的单条技术发现，是评分的唯一输入"""
    model_config = ConfigDict(frozen=True)

    function_name: str
    technical_reason: str
    matched_pattern_id: str
    severity: Severity
    contextual_notes: List[str] = Field(default_factory=list)
    evidence_code_snippet: str = EVIDENCE_NOT_FOUND
    evidence_verified: bool = False

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> Severity:
        return Severity.parse(value)

    @field_validator("matched_pattern_id", mode="before")
    @classmethod
    def _normalize_pattern_id(cls, value: Any) -> str:
        return str(value or "").strip().upper()

    @field_validator("contextual_notes", mode="before")
    @classmethod
    def _coerce_notes(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("evidence_code_snippet", mode="before")
    @classmethod
    def _default_snippet(cls, value: Any) -> str:
        text = str(value or "").strip()
        return text or EVIDENCE_NOT_FOUND

    @property
    def has_evidence(self) -> bool:
        return self.evidence_code_snippet != EVIDENCE_NOT_FOUND


class TechnicalAnalysisResult(BaseModel):
    """Stage 2 输出"""
    technical_findings: List[TechnicalFinding] = Field(default_factory=list)

    @field_validator("technical_findings", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class RiskScoreReport(BaseModel):
    """Stage 3 输出，risk_score 之后原样写入 Safety Card"""
    model_config = ConfigDict(frozen=True)

    risk_score: int = Field(ge=0, le=100)
    justification: str = ""
    confidence: Confidence = Confidence.MEDIUM

    @field_validator("risk_score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> int:
        try:
            score = float(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"risk_score is not a number: {value!r}") from e
        if not math.isfinite(score):
            raise ValueError(f"risk_score must be a finite number, got {value!r}")
        return int(max(0, min(100, math.floor(score + 0.5))))

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalize_confidence(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().capitalize()
        return value


class CritiqueResult(BaseModel):
    """Stage 5 输出"""
    is_consistent: bool
    feedback: str = ""


__all__ = [
    "EVIDENCE_NOT_FOUND",
    "Severity",
    "Confidence",
    "TriageResult",
    "TechnicalFinding",
    "TechnicalAnalysisResult",
    "RiskScoreReport",
    "CritiqueResult",
]
