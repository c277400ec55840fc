#!/usr/bin/env python3
"""
静态模式检测

在推理阶段之前对提取结果做确定性的签名与字节码匹配，
命中的模式作为已验证的上下文写入 Triage 与技术分析的提示词。

每个模式可以有三类检查:
- 签名检查: 只看参数类型，命中即 definite
- 字节码检查: 在该函数的反汇编函数体内做正则匹配，命中为 likely
- 组合检查: 函数名 / 参数 + 函数体，命中为 likely
同一 (模式, 模块, 函数) 只保留一条，结果按严重等级排序。
"""

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Pattern, Sequence, Tuple

from ..core.cli_logger import CLILogger
from ..models.findings import Severity
from ..models.package import ExtractedFunction, ExtractedPackage, ParamKind, ParamType

# 反汇编中的函数头，如 "public withdraw_all<T0>(Arg0: &AdminCap, ...) {"
_FUNCTION_HEADER = re.compile(
    r"^[ \t]*(?:(?:public(?:\([a-z]+\))?|entry|native|fun)\s+)*(\w+)\s*(?:<[^>\n]*>)?\s*\([^\n]*\)[^{\n]*\{[ \t]*$",
    re.MULTILINE,
)
_NOT_FUNCTIONS = frozenset({"module", "struct", "use", "if", "while", "loop"})
_GENERIC_ARG = re.compile(r"^T\d+$")
_SEVERITY_ORDER = {Severity.CRITICAL: 0, Severity.HIGH: 1, Severity.MEDIUM: 2, Severity.LOW: 3}
_EVIDENCE_LIMIT = 160

TX_CONTEXT = "0x2::tx_context::TxContext"


class MatchConfidence(str, Enum):
    DEFINITE = "definite"
    LIKELY = "likely"
    POSSIBLE = "possible"


@dataclass(frozen=True)
class StaticFinding:
    """一条静态检测命中"""
    pattern_id: str
    severity: Severity
    module: str
    function_name: str
    evidence: str
    description: str
    confidence: MatchConfidence

    @property
    def qualified_name(self) -> str:
        return f"{self.module}::{self.function_name}"

    def to_dict(self) -> Dict[str, str]:
        return {
            "pattern_id": self.pattern_id,
            "severity": self.severity.value,
            "function": self.qualified_name,
            "evidence": self.evidence,
            "description": self.description,
            "confidence": self.confidence.value,
        }


@dataclass
class StaticAnalysisResult:
    findings: List[StaticFinding] = field(default_factory=list)
    analyzed_modules: List[str] = field(default_factory=list)
    patterns_checked: List[str] = field(default_factory=list)
    duration: float = 0.0

    def severity_counts(self) -> Dict[Severity, int]:
        counts = {severity: 0 for severity in Severity}
        for finding in self.findings:
            counts[finding.severity] += 1
        return counts

    def flagged_functions(self) -> List[str]:
        """命中任一模式的函数名，去重且保持顺序"""
        return list(dict.fromkeys(f.function_name for f in self.findings))


# ============================================================================
# 反汇编与参数辅助函数
# ============================================================================

def function_bodies(code: str) -> Dict[str, str]:
    """把一个模块的反汇编按函数切分: 函数名 -> 函数头与函数体"""
    headers = [m for m in _FUNCTION_HEADER.finditer(code or "") if m.group(1) not in _NOT_FUNCTIONS]
    bodies: Dict[str, str] = {}
    for i, match in enumerate(headers):
        end = headers[i + 1].start() if i + 1 < len(headers) else len(code)
        bodies.setdefault(match.group(1), code[match.start():end])
    return bodies


def param_text(param: ParamType) -> str:
    """参数类型的可读文本，用于大小写无关的名称匹配"""
    text = param.value or ""
    if param.type_args:
        text += "<" + ", ".join(param.type_args) + ">"
    if param.kind == ParamKind.REFERENCE:
        text = ("&mut " if param.mutable else "&") + text
    return text


def struct_name(param: ParamType) -> str:
    struct_id = param.struct_id
    return struct_id.rsplit("::", 1)[-1] if struct_id else ""


def _params_mention(func: ExtractedFunction, *needles: str) -> Optional[ParamType]:
    for param in func.params:
        text = param_text(param).lower()
        if any(needle in text for needle in needles):
            return param
    return None


def _name_has(func: ExtractedFunction, words: Sequence[str]) -> bool:
    name = func.name.lower()
    return any(word in name for word in words)


def _excerpt(text: str) -> str:
    text = " ".join(text.split())
    return text if len(text) <= _EVIDENCE_LIMIT else text[:_EVIDENCE_LIMIT] + "..."


# ============================================================================
# 模式定义
# ============================================================================

CheckResult = Optional[str]
SignatureCheck = Callable[[ExtractedFunction], CheckResult]
CombinedCheck = Callable[[str, ExtractedFunction], CheckResult]


@dataclass(frozen=True)
class StaticPattern:
    pattern_id: str
    severity: Severity
    description: str
    bytecode: Tuple[Pattern, ...] = ()
    signature: Optional[SignatureCheck] = None
    combined: Optional[CombinedCheck] = None


def _bytecode(*patterns: str) -> Tuple[Pattern, ...]:
    # 调用可能分布在多行，允许跨行匹配
    return tuple(re.compile(p, re.IGNORECASE | re.DOTALL) for p in patterns)


def _takes(label: str, *needles: str) -> SignatureCheck:
    def check(func: ExtractedFunction) -> CheckResult:
        param = _params_mention(func, *needles)
        if param is None:
            return None
        return f"Function {func.name} takes {param_text(param)} ({label})"
    return check


_WITHDRAW_WORDS = ("withdraw", "drain", "sweep", "collect", "extract", "remove")
_FEE_WORDS = ("set_fee", "update_fee", "change_fee", "set_rate", "update_rate",
              "setfee", "updatefee", "changefee", "setrate", "updaterate")
_CRITICAL_OP_WORDS = ("withdraw", "transfer", "mint", "burn", "upgrade", "pause")


def _generic_drain(body: str, func: ExtractedFunction) -> CheckResult:
    if not _name_has(func, _WITHDRAW_WORDS) or not func.type_parameter_count:
        return None
    for param in func.params:
        if struct_name(param) in ("Coin", "Balance") and any(_GENERIC_ARG.match(a) for a in param.type_args):
            return f"Generic withdraw function {func.name} accepts {param_text(param)} for any coin type"
    if re.search(r"(?:Coin|Balance)<T\d+>", body):
        return f"Generic withdraw function {func.name} moves Coin<T>/Balance<T> for any coin type"
    return None


def _coin_to_address(body: str, func: ExtractedFunction) -> CheckResult:
    has_address = any(p.kind == ParamKind.PRIMITIVE and (p.value or "").lower() == "address" for p in func.params)
    if has_address and "coin::" in body and "transfer::" in body:
        return f"Function {func.name} transfers coins to an address parameter"
    return None


def _shared_mut_without_cap(body: str, func: ExtractedFunction) -> CheckResult:
    mutable = [
        p for p in func.params
        if p.kind == ParamKind.REFERENCE and p.mutable and p.struct_id and p.struct_id != TX_CONTEXT
    ]
    if not mutable or _params_mention(func, "cap", "admin", "owner") is not None:
        return None
    return f"Function {func.name} mutates {param_text(mutable[0])} without a capability parameter"


def _fee_setter(body: str, func: ExtractedFunction) -> CheckResult:
    if _name_has(func, _FEE_WORDS):
        return f"Function {func.name} can modify fee parameters"
    return None


def _missing_events(body: str, func: ExtractedFunction) -> CheckResult:
    if body and _name_has(func, _CRITICAL_OP_WORDS) and "event::emit" not in body:
        return f"Critical function {func.name} does not emit events"
    return None


STATIC_PATTERNS: Tuple[StaticPattern, ...] = (
    StaticPattern(
        "STATIC-ADMINCAP-TRANSFER", Severity.CRITICAL,
        "AdminCap or OwnerCap handled by a public function - admin privileges can move",
        bytecode=_bytecode(r"AdminCap.*transfer::public_transfer", r"OwnerCap.*transfer::public_transfer",
                           r"transfer::public_transfer[^\n]*AdminCap"),
        signature=_takes("admin capability", "admincap", "ownercap"),
    ),
    StaticPattern(
        "STATIC-TREASURYCAP-PUBLIC", Severity.CRITICAL,
        "TreasuryCap exposed in a public function - allows unlimited token minting",
        signature=_takes("can mint tokens", "treasurycap"),
    ),
    StaticPattern(
        "STATIC-UPGRADECAP-TRANSFER", Severity.CRITICAL,
        "UpgradeCap reachable from a public function - allows package takeover",
        bytecode=_bytecode(r"UpgradeCap[^\n]*transfer", r"transfer[^\n]*UpgradeCap", r"package::authorize_upgrade"),
        signature=_takes("can upgrade package", "upgradecap"),
    ),
    StaticPattern(
        "STATIC-GENERIC-DRAIN", Severity.HIGH,
        "Generic withdraw function with type parameter <T> - can drain any coin type",
        combined=_generic_drain,
    ),
    StaticPattern(
        "STATIC-BALANCE-DRAIN", Severity.HIGH,
        "Balance extraction followed by public_transfer - funds sent out of the contract",
        bytecode=_bytecode(r"balance::withdraw_all.*transfer::public_transfer",
                           r"balance::split.*transfer::public_transfer",
                           r"coin::from_balance.*transfer::public_transfer"),
    ),
    StaticPattern(
        "STATIC-COIN-SPLIT-TRANSFER", Severity.HIGH,
        "Coin split and transfer to an arbitrary recipient - potential fund extraction",
        bytecode=_bytecode(r"coin::split.*transfer::public_transfer", r"coin::take.*transfer::public_transfer"),
        combined=_coin_to_address,
    ),
    StaticPattern(
        "STATIC-UNLIMITED-MINT", Severity.HIGH,
        "Minting capability detected",
        bytecode=_bytecode(r"coin::mint\s*<", r"coin::mint_and_transfer", r"balance::increase_supply",
                           r"supply::increase"),
    ),
    StaticPattern(
        "STATIC-SHARED-MUT-NO-CAP", Severity.MEDIUM,
        "Shared object mutation without capability check - anyone can modify state",
        combined=_shared_mut_without_cap,
    ),
    StaticPattern(
        "STATIC-DYNAMIC-FIELD-ADD", Severity.MEDIUM,
        "Dynamic field addition in a public function - can inject arbitrary data",
        bytecode=_bytecode(r"dynamic_field::add", r"dynamic_object_field::add"),
    ),
    StaticPattern(
        "STATIC-CLOCK-DEPENDENT", Severity.MEDIUM,
        "Clock-based logic detected - time manipulation risk",
        bytecode=_bytecode(r"clock::timestamp_ms"),
        signature=_takes("time-based logic", "::clock::clock"),
    ),
    StaticPattern(
        "STATIC-PAUSE-CONTROL", Severity.MEDIUM,
        "Pause/freeze mechanism detected - admin can halt operations",
        bytecode=_bytecode(r"\w*(?:pause|freeze|frozen|halt)\w*"),
    ),
    StaticPattern(
        "STATIC-FEE-MANIPULATION", Severity.MEDIUM,
        "Fee setting function detected - fees can be changed arbitrarily",
        combined=_fee_setter,
    ),
    StaticPattern(
        "STATIC-MISSING-EVENTS", Severity.LOW,
        "Critical operation without event emission - reduces transparency",
        combined=_missing_events,
    ),
)


# ============================================================================
# 检测
# ============================================================================

def check_pattern(pattern: StaticPattern, body: str, func: ExtractedFunction) -> Optional[Tuple[str, MatchConfidence]]:
    """返回 (证据, 置信度)；签名命中优先"""
    if pattern.signature is not None:
        evidence = pattern.signature(func)
        if evidence:
            return evidence, MatchConfidence.DEFINITE

    if body:
        for regex in pattern.bytecode:
            match = regex.search(body)
            if match:
                return f'Bytecode pattern matched: "{_excerpt(match.group(0))}"', MatchConfidence.LIKELY

    if pattern.combined is not None:
        evidence = pattern.combined(body, func)
        if evidence:
            return evidence, MatchConfidence.LIKELY
    return None


class StaticPatternAnalyzer:
    """
    静态模式检测器（纯函数式，不访问网络）

    示例:
        ```python
        result = StaticPatternAnalyzer().analyze(extracted)
        print(format_static_findings(result))
        ```
    """

    def __init__(self, patterns: Sequence[StaticPattern] = STATIC_PATTERNS, verbose: bool = False):
        self.patterns = tuple(patterns)
        self._logger = CLILogger(component="StaticAnalyzer", verbose=verbose)

    def analyze(self, extracted: ExtractedPackage) -> StaticAnalysisResult:
        start = time.perf_counter()
        bodies: Dict[str, Dict[str, str]] = {}
        findings: List[StaticFinding] = []
        seen = set()

        for func in extracted.functions:
            if func.module not in bodies:
                bodies[func.module] = function_bodies(extracted.disassembled_code.get(func.module, ""))
            body = bodies[func.module].get(func.name, "")

            for pattern in self.patterns:
                key = (pattern.pattern_id, func.module, func.name)
                if key in seen:
                    continue
                hit = check_pattern(pattern, body, func)
                if hit is None:
                    continue
                seen.add(key)
                evidence, confidence = hit
                findings.append(StaticFinding(
                    pattern_id=pattern.pattern_id,
                    severity=pattern.severity,
                    module=func.module,
                    function_name=func.name,
                    evidence=evidence,
                    description=pattern.description,
                    confidence=confidence,
                ))

        findings.sort(key=lambda f: _SEVERITY_ORDER[f.severity])
        result = StaticAnalysisResult(
            findings=findings,
            analyzed_modules=list(bodies),
            patterns_checked=[p.pattern_id for p in self.patterns],
            duration=time.perf_counter() - start,
        )
        counts = result.severity_counts()
        self._logger.debug(
            "static.done",
            "静态模式检测完成",
            findings=len(findings),
            critical=counts[Severity.CRITICAL],
            high=counts[Severity.HIGH],
            modules=len(bodies),
        )
        return result


def format_static_findings(result: Optional[StaticAnalysisResult]) -> str:
    """渲染为提示词中的文本块"""
    if result is None:
        return "No static analysis performed."
    if not result.findings:
        return "No static patterns detected."

    lines = [f"Static Analysis detected {len(result.findings)} pattern(s):", ""]
    for finding in result.findings:
        lines.append(f"- [{finding.severity.value}] {finding.pattern_id}")
        lines.append(f"  Function: {finding.qualified_name}")
        lines.append(f"  Evidence: {finding.evidence}")
        lines.append(f"  Confidence: {finding.confidence.value}")
        lines.append("")
    return "\n".join(lines).rstrip()


def run_static_analysis(extracted: ExtractedPackage) -> StaticAnalysisResult:
    return StaticPatternAnalyzer().analyze(extracted)


__all__ = [
    "MatchConfidence",
    "StaticFinding",
    "StaticAnalysisResult",
    "StaticPattern",
    "STATIC_PATTERNS",
    "function_bodies",
    "param_text",
    "struct_name",
    "check_pattern",
    "StaticPatternAnalyzer",
    "format_static_findings",
    "run_static_analysis",
]
