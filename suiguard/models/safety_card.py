#!/usr/bin/env python3
"""
Safety Card 数据模型

SafetyCardDraft 是 Stage 4 / 纠错阶段的输出（不含分数），
SafetyCard 是加上 Stage 3 分数与风险等级后的最终结果，一旦生成不再修改。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RiskLevel(str, Enum):
    """风险等级"""
    CRITICAL = "critical"
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"


def risk_level_for_score(score: int) -> RiskLevel:
    """
    由最终分数推导风险等级

    critical >= 70 > high >= 50 > moderate >= 30 > low
    """
    if score >= 70:
        return RiskLevel.CRITICAL
    if score >= 50:
        return RiskLevel.HIGH
    if score >= 30:
        return RiskLevel.MODERATE
    return RiskLevel.LOW


class RiskyFunction(BaseModel):
    model_config = ConfigDict(frozen=True)

    function_name: str
    reason: str = ""


class RugPullIndicator(BaseModel):
    model_config = ConfigDict(frozen=True)

    pattern_name: str
    evidence: str = ""


class SafetyCardDraft(BaseModel):
    """报告阶段输出的草稿（risk_score 由评分阶段追加，不在此生成）"""
    summary: str
    risky_functions: List[RiskyFunction] = Field(default_factory=list)
    rug_pull_indicators: List[RugPullIndicator] = Field(default_factory=list)
    impact_on_user: str = ""
    why_risky_one_liner: str = ""

    @field_validator("risky_functions", mode="before")
    @classmethod
    def _coerce_functions(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [
                {"function_name": item, "reason": ""} if isinstance(item, str) else item
                for item in value
            ]
        return value

    @field_validator("rug_pull_indicators", mode="before")
    @classmethod
    def _coerce_indicators(cls, value: Any) -> Any:
        # 模型偶尔会直接返回字符串列表
        if value is None:
            return []
        if isinstance(value, list):
            return [
                {"pattern_name": item, "evidence": ""} if isinstance(item, str) else item
                for item in value
            ]
        return value


class SafetyCard(BaseModel):
    """最终 Safety Card"""
    model_config = ConfigDict(frozen=True)

    summary: str
    risky_functions: List[RiskyFunction] = Field(default_factory=list)
    rug_pull_indicators: List[RugPullIndicator] = Field(default_factory=list)
    impact_on_user: str = ""
    why_risky_one_liner: str = ""
    risk_score: int = Field(ge=0, le=100)
    risk_level: RiskLevel

    @classmethod
    def from_draft(cls, draft: SafetyCardDraft, risk_score: int) -> "SafetyCard":
        return cls(
            summary=draft.summary,
            risky_functions=list(draft.risky_functions),
            rug_pull_indicators=list(draft.rug_pull_indicators),
            impact_on_user=draft.impact_on_user,
            why_risky_one_liner=draft.why_risky_one_liner,
            risk_score=risk_score,
            risk_level=risk_level_for_score(risk_score),
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


NO_FUNCTIONS_CARD = SafetyCard(
    summary=(
        "This package contains no public entry functions. It is likely a library "
        "or utility package with no direct user interaction."
    ),
    impact_on_user="No direct impact as there are no callable functions.",
    why_risky_one_liner="No risk detected - library package",
    risk_score=0,
    risk_level=RiskLevel.LOW,
)

CLEAN_TRIAGE_CARD = SafetyCard(
    summary="This contract passed initial triage with no suspicious functions detected.",
    impact_on_user="No significant risks identified in the initial analysis.",
    why_risky_one_liner="Low risk - no suspicious patterns detected",
    risk_score=5,
    risk_level=RiskLevel.LOW,
)


@dataclass(frozen=True)
class DependencyRisk:
    """依赖 package 的缓存风险结论（只保留 high / moderate）"""
    id: str
    risk_score: int
    level: RiskLevel

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "risk_score": self.risk_score, "level": self.level.value}


__all__ = [
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
