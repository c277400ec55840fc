#!/usr/bin/env python3
"""
技术发现校验

在 Stage 2 之后、评分之前执行:
- 已知模式的严重等级以知识库为准（不一致时记录并改写）
- 证据片段在反汇编代码中能找到时标记 evidence_verified
- 未知模式 ID、未知函数名只记录警告
任何发现都不会被删除。
"""

import re
from typing import Dict, Iterable, List

from ..core.cli_logger import CLILogger
from ..models.findings import TechnicalFinding
from ..models.package import ExtractedFunction
from .base import RiskPatternKnowledgeBase

_WHITESPACE = re.compile(r"\s+")

# 过短的行（如 "}"、"ret"）不能作为证据
_MIN_LINE_LENGTH = 8


def normalize_code(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def evidence_in_code(snippet: str, code: str) -> bool:
    """片段整体或其中任意一行（忽略空白差异）出现在代码中"""
    normalized_code = normalize_code(code)
    whole = normalize_code(snippet)
    if not whole or not normalized_code:
        return False
    if whole in normalized_code:
        return True
    for line in snippet.splitlines():
        line = normalize_code(line)
        if len(line) >= _MIN_LINE_LENGTH and line in normalized_code:
            return True
    return False


def short_function_name(name: str) -> str:
    """module::name -> name"""
    return name.rsplit("::", 1)[-1].strip().lower()


class EvidenceValidator:
    """技术发现校验器"""

    def __init__(self, knowledge_base: RiskPatternKnowledgeBase, verbose: bool = False):
        self.kb = knowledge_base
        self._logger = CLILogger(component="EvidenceValidator", verbose=verbose)

    def validate(
        self,
        findings: Iterable[TechnicalFinding],
        functions: Iterable[ExtractedFunction],
        disassembled_code: Dict[str, str],
    ) -> List[TechnicalFinding]:
        known_functions = {f.name.lower() for f in functions}
        all_code = "\n".join(code for code in disassembled_code.values() if isinstance(code, str))

        validated: List[TechnicalFinding] = []
        for finding in findings:
            updates = {}

            pattern = self.kb.get(finding.matched_pattern_id)
            if pattern is None:
                self._logger.warning(
                    "evidence.unknown_pattern",
                    "未知的模式 ID，按严重等级回退评分",
                    function=finding.function_name,
                    pattern_id=finding.matched_pattern_id or "<empty>",
                )
            else:
                if pattern.pattern_id != finding.matched_pattern_id:
                    updates["matched_pattern_id"] = pattern.pattern_id
                if pattern.severity != finding.severity:
                    self._logger.warning(
                        "evidence.severity_mismatch",
                        "严重等级与知识库不一致，已按知识库修正",
                        function=finding.function_name,
                        pattern_id=pattern.pattern_id,
                        reported=finding.severity.value,
                        expected=pattern.severity.value,
                    )
                    updates["severity"] = pattern.severity

            if short_function_name(finding.function_name) not in known_functions:
                self._logger.warning(
                    "evidence.unknown_function",
                    "发现引用的函数不在公开函数列表中",
                    function=finding.function_name,
                )

            verified = finding.has_evidence and evidence_in_code(finding.evidence_code_snippet, all_code)
            if verified != finding.evidence_verified:
                updates["evidence_verified"] = verified

            validated.append(finding.model_copy(update=updates) if updates else finding)

        self._logger.debug(
            "evidence.done",
            "发现校验完成",
            total=len(validated),
            verified=sum(1 for f in validated if f.evidence_verified),
        )
        return validated


__all__ = [
    "normalize_code",
    "evidence_in_code",
    "short_function_name",
    "EvidenceValidator",
]
