#!/usr/bin/env python3
"""
确定性风险评分

评分只依赖技术发现（TechnicalFinding）与知识库的评分规则，
相同输入永远得到相同的分数、置信度和说明文本。

算法:
1. 每条发现的基础分取自知识库模式的 base_score，未知模式按严重等级回退
2. 按 contextual_notes 关键词应用修正（每条规则每条发现至多一次，否定表述不计）
3. 汇总各发现贡献
4. 组合效应: 总分达到临界值、多个 High 聚集、暂停 + 其他高危
5. 截断到 [0, 100] 并四舍五入
6. 推导置信度并生成逐步说明
"""

import math
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from ..core.cli_logger import CLILogger
from ..models.findings import Confidence, RiskScoreReport, Severity, TechnicalFinding
from .base import KeywordRule, RiskPatternKnowledgeBase, get_knowledge_base

MITIGATION_RULE = "mitigation"
COMPLEX_LOGIC_RULE = "complex_logic"

_WORD = re.compile(r"[a-z]+")
# 分句边界: 否定只作用于同一分句
_CLAUSE_BREAK = re.compile(r"[.;,!?]")
_DEFAULT_PREFIXES = ("non",)


def _clause_bounds(text: str, start: int, end: int):
    """返回 [start, end) 所在分句的起止位置"""
    left = 0
    for match in _CLAUSE_BREAK.finditer(text, 0, start):
        left = match.end()
    match = _CLAUSE_BREAK.search(text, end)
    right = match.start() if match else len(text)
    return left, right


def note_mentions(
    note: str,
    keyword: str,
    negation_words: Sequence[str],
    window: int = 3,
    trailing_negation_words: Sequence[str] = (),
    negation_prefixes: Sequence[str] = _DEFAULT_PREFIXES,
) -> bool:
    """
    判断说明中是否肯定地提到关键词

    同一分句内出现以下任一情况时该处不计:
    - 关键词前 window 个单词内有否定词（no / not / without ...）
    - 关键词后 window 个单词内有后置否定词（not / none / absent ...），
      如 "Timelock is not enforced"
    - 关键词带否定前缀，如 "non-generic"
    """
    text = note.lower()
    keyword = keyword.lower()
    prefix_re = None
    if negation_prefixes:
        alternatives = "|".join(re.escape(p.lower()) for p in negation_prefixes)
        prefix_re = re.compile(rf"\b(?:{alternatives})[-\s]?$")
    start = 0
    while True:
        idx = text.find(keyword, start)
        if idx == -1:
            return False
        end = idx + len(keyword)
        left, right = _clause_bounds(text, idx, end)
        if window > 0:
            preceding = _WORD.findall(text[left:idx])[-window:]
            following = _WORD.findall(text[end:right])[:window]
        else:
            preceding = following = []
        negated = (
            any(word in negation_words for word in preceding)
            or any(word in trailing_negation_words for word in following)
            or (prefix_re is not None and prefix_re.search(text[left:idx]) is not None)
        )
        if not negated:
            return True
        start = idx + 1


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass
class AppliedModifier:
    rule: str
    delta: int
    note: str


@dataclass
class FindingContribution:
    """单条发现的得分构成"""
    finding: TechnicalFinding
    base_score: int
    from_pattern: bool
    modifiers: List[AppliedModifier] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.base_score + sum(m.delta for m in self.modifiers)

    def applied(self, rule_name: str) -> bool:
        return any(m.rule == rule_name for m in self.modifiers)

    @property
    def mitigated(self) -> bool:
        return self.applied(MITIGATION_RULE)

    @property
    def complex_logic(self) -> bool:
        return self.applied(COMPLEX_LOGIC_RULE)


@dataclass
class CombinationEffect:
    name: str
    bonus: int
    reason: str


@dataclass
class ScoreBreakdown:
    """完整评分过程"""
    contributions: List[FindingContribution]
    sum_of_contributions: int
    combinations: List[CombinationEffect]
    pre_clamp_total: int
    final_score: int
    confidence: Confidence
    confidence_reason: str

    def justification(self) -> str:
        lines: List[str] = []

        lines.append("Step 1 - Base scores:")
        if not self.contributions:
            lines.append("  - No technical findings; score starts at 0.")
        for c in self.contributions:
            f = c.finding
            source = "knowledge base" if c.from_pattern else f"methodology points for {f.severity.value}"
            lines.append(
                f"  - {f.function_name} [{f.matched_pattern_id or 'UNKNOWN'}, {f.severity.value}]: "
                f"base {c.base_score} ({source})"
            )

        lines.append("Step 2 - Contextual modifiers:")
        any_modifier = False
        for c in self.contributions:
            for m in c.modifiers:
                any_modifier = True
                sign = "+" if m.delta >= 0 else ""
                lines.append(f'  - {c.finding.function_name}: {sign}{m.delta} {m.rule} (note: "{m.note}")')
        if not any_modifier:
            lines.append("  - None applied.")

        lines.append(
            "Step 3 - Sum of contributions: "
            + (" + ".join(str(c.total) for c in self.contributions) or "0")
            + f" = {self.sum_of_contributions}"
        )

        lines.append("Step 4 - Combination effects:")
        if self.combinations:
            for effect in self.combinations:
                lines.append(f"  - {effect.name}: +{effect.bonus} ({effect.reason})")
        else:
            lines.append("  - None applied.")

        lines.append(f"Step 5 - Total before clamping: {self.pre_clamp_total}; final score: {self.final_score}")
        lines.append(f"Step 6 - Confidence: {self.confidence.value} ({self.confidence_reason})")
        return "\n".join(lines)

    def to_report(self) -> RiskScoreReport:
        return RiskScoreReport(
            risk_score=self.final_score,
            justification=self.justification(),
            confidence=self.confidence,
        )


class RiskScorer:
    """
    确定性评分器

    示例:
        ```python
        scorer = RiskScorer(kb)
        report = scorer.score(findings)
        ```
    """

    def __init__(self, knowledge_base: Optional[RiskPatternKnowledgeBase] = None, verbose: bool = False):
        self.kb = knowledge_base or get_knowledge_base()
        self._logger = CLILogger(component="RiskScorer", verbose=verbose)

    def score(self, findings: Iterable[TechnicalFinding]) -> RiskScoreReport:
        return self.breakdown(findings).to_report()

    def breakdown(self, findings: Iterable[TechnicalFinding]) -> ScoreBreakdown:
        rules = self.kb.scoring
        contributions = [self._contribution(f) for f in findings]
        total = sum(c.total for c in contributions)
        sum_of_contributions = total

        combos = rules.combinations
        effects: List[CombinationEffect] = []

        if total >= combos.critical_mass_threshold:
            effects.append(CombinationEffect(
                "critical_mass", combos.critical_mass_bonus,
                f"score {total} >= {combos.critical_mass_threshold}",
            ))
            total += combos.critical_mass_bonus

        high_count = sum(1 for c in contributions if c.finding.severity == Severity.HIGH)
        critical_count = sum(1 for c in contributions if c.finding.severity == Severity.CRITICAL)
        if high_count >= combos.high_cluster_min and critical_count == 0:
            effects.append(CombinationEffect(
                "high_risk_cluster", combos.high_cluster_bonus,
                f"{high_count} High findings and no Critical findings",
            ))
            total += combos.high_cluster_bonus

        pause_idx = {i for i, c in enumerate(contributions) if self.kb.is_pausing(c.finding.matched_pattern_id)}
        if any(
            c.finding.severity.is_severe and any(p != i for p in pause_idx)
            for i, c in enumerate(contributions)
        ):
            effects.append(CombinationEffect(
                "pausable_plus_x", combos.pause_combo_bonus,
                "pausing finding co-occurs with another High/Critical finding",
            ))
            total += combos.pause_combo_bonus

        final_score = max(0, min(100, round_half_up(total)))
        confidence, reason = self._confidence(contributions, final_score)

        result = ScoreBreakdown(
            contributions=contributions,
            sum_of_contributions=sum_of_contributions,
            combinations=effects,
            pre_clamp_total=total,
            final_score=final_score,
            confidence=confidence,
            confidence_reason=reason,
        )
        self._logger.debug(
            "scoring.done",
            "评分完成",
            findings=len(contributions),
            pre_clamp=total,
            score=final_score,
            confidence=confidence.value,
        )
        return result

    def _contribution(self, finding: TechnicalFinding) -> FindingContribution:
        base, from_pattern = self.kb.base_score_for(finding.matched_pattern_id, finding.severity)
        contribution = FindingContribution(finding=finding, base_score=base, from_pattern=from_pattern)
        for rule in self.kb.scoring.rules:
            note = self._matching_note(rule, finding)
            if note is not None:
                contribution.modifiers.append(AppliedModifier(rule=rule.name, delta=rule.delta, note=note))
        return contribution

    def _matching_note(self, rule: KeywordRule, finding: TechnicalFinding) -> Optional[str]:
        if finding.severity not in rule.severities:
            return None
        rules = self.kb.scoring
        for note in finding.contextual_notes:
            for keyword in rule.keywords:
                if note_mentions(note, keyword, rules.negation_words, rules.negation_window,
                                 rules.trailing_negation_words, rules.negation_prefixes):
                    return note
        return None

    def _confidence(self, contributions: List[FindingContribution], score: int):
        conf = self.kb.scoring.confidence
        has_severe = any(c.finding.severity.is_severe for c in contributions)
        weakened = any(c.complex_logic or c.mitigated for c in contributions)

        if score >= conf.high_score_min and has_severe and not weakened:
            return Confidence.HIGH, "high score backed by Critical/High findings without mitigations or complex logic"
        if score < conf.low_score_max and all(
            c.finding.severity == Severity.LOW or c.mitigated for c in contributions
        ):
            return Confidence.HIGH, "low score and only Low-severity or mitigated findings"
        return Confidence.MEDIUM, "mixed evidence"


__all__ = [
    "note_mentions",
    "round_half_up",
    "AppliedModifier",
    "FindingContribution",
    "CombinationEffect",
    "ScoreBreakdown",
    "RiskScorer",
]
