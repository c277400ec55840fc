#!/usr/bin/env python3
"""
风险模式知识库

从 YAML 表加载风险模式与评分规则常量，供以下环节共用：
- Stage 2 技术分析提示词（模式描述、指标、修正项）
- Stage 3 评分提示词（评分算法说明）
- 确定性评分器（基础分、关键词规则、组合效应）
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ..models.findings import Severity

DEFAULT_KNOWLEDGE_BASE_PATH = Path(__file__).with_name("risk_patterns.yaml")

_SEVERITY_ORDER = (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW)


class PatternModifier(BaseModel):
    direction: str
    description: str

    @field_validator("direction")
    @classmethod
    def _check_direction(cls, value: str) -> str:
        value = value.strip()
        if value not in ("+", "-"):
            raise ValueError(f"modifier direction must be '+' or '-', got {value!r}")
        return value


class RiskPattern(BaseModel):
    """单个风险模式"""
    pattern_id: str
    name: str
    severity: Severity
    base_score_range: Tuple[int, int]
    base_score: Optional[int] = None
    description: str = ""
    indicators: List[str] = Field(default_factory=list)
    aliases: List[str] = Field(default_factory=list)
    modifiers: List[PatternModifier] = Field(default_factory=list)
    pausing: bool = False

    @field_validator("pattern_id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str:
        return str(value).strip().upper()

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> Severity:
        return Severity.parse(value)

    @model_validator(mode="after")
    def _fill_base_score(self) -> "RiskPattern":
        low, high = self.base_score_range
        if not 0 <= low <= high <= 100:
            raise ValueError(f"{self.pattern_id}: invalid base_score_range {self.base_score_range}")
        if self.base_score is None:
            self.base_score = (low + high) // 2
        elif not low <= self.base_score <= high:
            raise ValueError(f"{self.pattern_id}: base_score {self.base_score} outside {self.base_score_range}")
        return self


class KeywordRule(BaseModel):
    """按 contextual_notes 关键词触发的分数修正"""
    name: str
    delta: int
    keywords: List[str]
    severities: List[Severity] = Field(default_factory=lambda: list(_SEVERITY_ORDER))

    @field_validator("keywords")
    @classmethod
    def _lower_keywords(cls, value: List[str]) -> List[str]:
        return [k.strip().lower() for k in value if k.strip()]

    @field_validator("severities", mode="before")
    @classmethod
    def _parse_severities(cls, value: Any) -> Any:
        if value is None:
            return list(_SEVERITY_ORDER)
        return [Severity.parse(v) for v in value]


class CombinationRules(BaseModel):
    critical_mass_threshold: int = 90
    critical_mass_bonus: int = 5
    high_cluster_min: int = 3
    high_cluster_bonus: int = 10
    pause_combo_bonus: int = 5


class ConfidenceRules(BaseModel):
    high_score_min: int = 75
    low_score_max: int = 25


class ScoringRules(BaseModel):
    """评分规则常量"""
    severity_points: Dict[Severity, int] = Field(default_factory=lambda: {
        Severity.CRITICAL: 50,
        Severity.HIGH: 20,
        Severity.MEDIUM: 5,
        Severity.LOW: 1,
    })
    negation_words: List[str] = Field(default_factory=lambda: ["no", "not", "without", "lack", "missing"])
    negation_window: int = 3
    trailing_negation_words: List[str] = Field(
        default_factory=lambda: ["not", "none", "absent", "missing", "lacking", "bypassable"]
    )
    negation_prefixes: List[str] = Field(default_factory=lambda: ["non"])
    rules: List[KeywordRule] = Field(default_factory=list)
    combinations: CombinationRules = Field(default_factory=CombinationRules)
    confidence: ConfidenceRules = Field(default_factory=ConfidenceRules)

    @field_validator("severity_points", mode="before")
    @classmethod
    def _parse_points(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {Severity.parse(k): int(v) for k, v in value.items()}
        return value

    @field_validator("negation_words", "trailing_negation_words", "negation_prefixes")
    @classmethod
    def _lower_words(cls, value: List[str]) -> List[str]:
        return [w.strip().lower() for w in value if w.strip()]

    def rule(self, name: str) -> Optional[KeywordRule]:
        for rule in self.rules:
            if rule.name == name:
                return rule
        return None


class KnowledgeBaseDocument(BaseModel):
    version: Union[int, str] = 1
    patterns: List[RiskPattern]
    scoring: ScoringRules = Field(default_factory=ScoringRules)


class RiskPatternKnowledgeBase:
    """
    风险模式知识库

    示例:
        ```python
        kb = RiskPatternKnowledgeBase.load()
        pattern = kb.get("CRITICAL-01")
        prompt_text = kb.render_prompt_text()
        ```
    """

    def __init__(self, patterns: List[RiskPattern], scoring: Optional[ScoringRules] = None, version: Union[int, str] = 1):
        self.version = version
        self.scoring = scoring or ScoringRules()
        self._patterns: Dict[str, RiskPattern] = {}
        for pattern in patterns:
            if pattern.pattern_id in self._patterns:
                raise ValueError(f"Duplicate pattern id: {pattern.pattern_id}")
            self._patterns[pattern.pattern_id] = pattern
        self._aliases: Dict[str, str] = {
            alias.lower(): p.pattern_id for p in patterns for alias in p.aliases
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RiskPatternKnowledgeBase":
        """从字典构建，结构不合法时抛出 ValueError"""
        try:
            doc = KnowledgeBaseDocument.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Invalid knowledge base: {e}") from e
        return cls(doc.patterns, doc.scoring, doc.version)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "RiskPatternKnowledgeBase":
        """从 YAML 文件加载，默认使用内置知识库"""
        kb_path = Path(path) if path else DEFAULT_KNOWLEDGE_BASE_PATH
        with open(kb_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @property
    def patterns(self) -> List[RiskPattern]:
        return list(self._patterns.values())

    def get(self, pattern_id: str) -> Optional[RiskPattern]:
        """按模式 ID 查找，也接受别名（如 admin_drain）"""
        key = str(pattern_id or "").strip()
        pattern = self._patterns.get(key.upper())
        if pattern is None:
            alias_target = self._aliases.get(key.lower())
            if alias_target:
                pattern = self._patterns[alias_target]
        return pattern

    def __contains__(self, pattern_id: str) -> bool:
        return self.get(pattern_id) is not None

    def __len__(self) -> int:
        return len(self._patterns)

    def base_score_for(self, pattern_id: str, severity: Severity) -> Tuple[int, bool]:
        """
        返回 (基础分, 是否来自知识库)

        未知模式按严重等级回退到方法论分值。
        """
        pattern = self.get(pattern_id)
        if pattern is not None:
            return int(pattern.base_score), True
        return self.scoring.severity_points.get(severity, 0), False

    def is_pausing(self, pattern_id: str) -> bool:
        pattern = self.get(pattern_id)
        return bool(pattern and pattern.pausing)

    # ============ 提示词渲染 ============

    def render_prompt_text(self) -> str:
        """渲染 Stage 2 / Stage 3 使用的知识库文本"""
        lines: List[str] = [f"# SUI/MOVE SECURITY PATTERNS KNOWLEDGE BASE (v{self.version})", ""]
        for severity in _SEVERITY_ORDER:
            group = [p for p in self._patterns.values() if p.severity == severity]
            if not group:
                continue
            lines.append(f"== {severity.value.upper()} SEVERITY ==")
            lines.append("")
            for p in group:
                low, high = p.base_score_range
                lines.append(f"ID: {p.pattern_id}")
                lines.append(f"Name: {p.name}")
                lines.append(f"Severity: {p.severity.value}")
                if p.description:
                    lines.append(f"Description: {p.description}")
                if p.indicators:
                    lines.append("Indicators:")
                    lines.extend(f"  - {item}" for item in p.indicators)
                lines.append(f"Base Score Hint: {low}-{high} (Base_Score used for scoring: {p.base_score})")
                if p.modifiers:
                    lines.append("Score Modifiers:")
                    lines.extend(f"  ({m.direction}) {m.description}" for m in p.modifiers)
                lines.append("")

        lines.append("== PATTERN MATCHING GUIDE ==")
        for p in self._patterns.values():
            aliases = ", ".join(p.aliases) if p.aliases else p.name
            lines.append(f"  - {p.pattern_id}: {aliases}")
        lines.append("")

        lines.append("== SCORING METHODOLOGY (fallback for findings without a known pattern id) ==")
        for severity in _SEVERITY_ORDER:
            points = self.scoring.severity_points.get(severity)
            if points is not None:
                lines.append(f"  - {severity.value} Findings: +{points} points each")
        lines.append("  - Maximum Score: 100 (cap)")
        return "\n".join(lines)

    def render_scoring_algorithm(self) -> str:
        """渲染 Stage 3 使用的评分算法说明，数值全部来自 scoring 配置"""
        s = self.scoring
        combos = s.combinations
        conf = s.confidence

        rule_lines = []
        for rule in s.rules:
            scope = "/".join(sev.value for sev in rule.severities)
            sign = "+" if rule.delta >= 0 else ""
            keywords = ", ".join(f'"{k}"' for k in rule.keywords)
            rule_lines.append(
                f"      * {rule.name}: if a note mentions any of [{keywords}] and the finding severity is "
                f"{scope}, finding_contribution {sign}{rule.delta} (at most once per finding)."
            )
        negations = ", ".join(f'"{w}"' for w in s.negation_words)
        trailing = ", ".join(f'"{w}"' for w in s.trailing_negation_words)
        prefixes = ", ".join(f'"{p}-"' for p in s.negation_prefixes)

        return "\n".join([
            "1. Initialize Score: current_score = 0.",
            "",
            "2. Iterate Through Findings: for each finding:",
            "   a. Base_Score: look up matched_pattern_id in the Knowledge Base and use its Base_Score.",
            "      Unknown pattern ids use the methodology points for the finding severity.",
            "   b. finding_contribution = Base_Score.",
            "   c. Apply Contextual Modifiers from contextual_notes (case-insensitive):",
            *rule_lines,
            f"      * A keyword preceded within {s.negation_window} words by a negation ({negations}) does not count,",
            '        e.g. "No obvious mitigations detected" or "No timelock detected" are NOT mitigations.',
            f"      * A keyword followed within {s.negation_window} words by ({trailing}) does not count,",
            '        e.g. "Timelock is not enforced" or "Multi-sig check is absent" are NOT mitigations.',
            f"      * A keyword carrying a negating prefix ({prefixes}) does not count, e.g. \"non-generic\".",
            "      * Negations only apply within the same clause (up to the nearest . , ; ! ?).",
            "   d. current_score += finding_contribution.",
            "",
            "3. Combination Effects (after all findings, in this order):",
            f"   * Critical Mass: if current_score >= {combos.critical_mass_threshold}: "
            f"current_score += {combos.critical_mass_bonus}.",
            f"   * High Risk Cluster: if the number of High findings >= {combos.high_cluster_min} "
            f"AND there are no Critical findings: current_score += {combos.high_cluster_bonus}.",
            "   * Pausable + X: if a pausing pattern finding exists AND any other High/Critical finding exists: "
            f"current_score += {combos.pause_combo_bonus}.",
            "",
            "4. Final Score: final_score = max(0, min(100, round_half_up(current_score))).",
            "",
            "5. Confidence:",
            f"   * High if final_score >= {conf.high_score_min} with at least one Critical/High finding and no "
            "finding that is complex/conditional or mitigated.",
            f"   * High if final_score < {conf.low_score_max} and every finding is Low severity or mitigated.",
            "   * Otherwise Medium.",
            "",
            "6. Justification: list every base score, every modifier applied, every combination effect, "
            "the total before clamping and the final score.",
        ])


_default_kb: Optional[RiskPatternKnowledgeBase] = None


def get_knowledge_base(path: Optional[Union[str, Path]] = None) -> RiskPatternKnowledgeBase:
    """获取知识库；未指定路径时复用进程级的内置知识库"""
    global _default_kb
    if path:
        return RiskPatternKnowledgeBase.load(path)
    if _default_kb is None:
        _default_kb = RiskPatternKnowledgeBase.load()
    return _default_kb


__all__ = [
    "DEFAULT_KNOWLEDGE_BASE_PATH",
    "PatternModifier",
    "RiskPattern",
    "KeywordRule",
    "CombinationRules",
    "ConfidenceRules",
    "ScoringRules",
    "RiskPatternKnowledgeBase",
    "get_knowledge_base",
]
