#!/usr/bin/env python3
"""
跨模块能力流分析

两遍扫描提取结果，找出跨越多个模块的能力（Capability）风险:

1. 能力与用法: 反汇编中声明的 *Cap / *Authority 结构体、公开函数参数中的能力，
   以及各函数体内对能力的创建、转移、共享、销毁
2. 流向与风险:
   - 公开函数把能力转给调用方指定的地址，且该能力被多个模块使用
   - 能力被共享为公共对象，任何人都能使用
   - 能力在 3 个及以上模块中使用，同时可以被外部转移
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..core.cli_logger import CLILogger
from ..models.findings import Severity
from ..models.package import ExtractedFunction, ExtractedPackage, ParamKind
from .static_analyzer import MatchConfidence, StaticFinding, function_bodies, struct_name

KNOWN_CAPABILITIES = (
    "AdminCap", "OwnerCap", "TreasuryCap", "UpgradeCap", "MintCap", "BurnCap", "PauseCap",
    "FreezeCap", "ConfigCap", "ManagerCap", "AuthorityCap", "GovernanceCap", "WithdrawCap",
    "ControllerCap",
)
CRITICAL_CAPABILITIES = ("AdminCap", "TreasuryCap", "UpgradeCap", "MintCap")
WIDE_IMPACT_MIN_MODULES = 3

_STRUCT_DECL = re.compile(r"^\s*(?:public\s+)?struct\s+(\w+)(?:<[^>\n]*>)?(?:\s+has\s+([\w\s,]+?))?\s*\{",
                          re.MULTILINE)
_INIT_FUNCTIONS = frozenset({"init"})


def is_capability_name(name: str) -> bool:
    return name in KNOWN_CAPABILITIES or name.endswith("Cap") or name.endswith("Authority")


class UsageType(str, Enum):
    PARAMETER = "parameter"
    BORROWED_MUT = "borrowed_mut"
    BORROWED_IMM = "borrowed_imm"
    CREATED = "created"
    TRANSFERRED = "transferred"
    SHARED = "shared"
    DESTROYED = "destroyed"


class FlowType(str, Enum):
    EXTERNAL_TRANSFER = "external_transfer"
    INITIAL_GRANT = "initial_grant"
    PUBLIC_SHARE = "public_share"
    CROSS_MODULE = "cross_module"


@dataclass(frozen=True)
class CapabilityDefinition:
    name: str
    module: str
    full_type: str
    abilities: Tuple[str, ...] = ()

    @property
    def has_store(self) -> bool:
        """带 store 的能力可以被 public_transfer 转给任何地址"""
        return "store" in self.abilities


@dataclass(frozen=True)
class CapabilityUsage:
    capability: str
    module: str
    function_name: str
    usage_type: UsageType


@dataclass(frozen=True)
class CapabilityFlow:
    capability: str
    from_module: str
    to: str
    via_function: str
    flow_type: FlowType

    @property
    def risky(self) -> bool:
        return self.flow_type in (FlowType.EXTERNAL_TRANSFER, FlowType.PUBLIC_SHARE)


@dataclass(frozen=True)
class CrossModuleRisk:
    pattern_id: str
    severity: Severity
    affected_modules: Tuple[str, ...]
    source_module: str
    source_function: str
    description: str
    evidence: str

    def to_static_finding(self) -> StaticFinding:
        return StaticFinding(
            pattern_id=self.pattern_id,
            severity=self.severity,
            module=self.source_module,
            function_name=self.source_function,
            evidence=self.evidence,
            description=self.description,
            confidence=MatchConfidence.LIKELY,
        )


@dataclass
class CrossModuleAnalysisResult:
    capabilities: List[CapabilityDefinition] = field(default_factory=list)
    usages: List[CapabilityUsage] = field(default_factory=list)
    flows: List[CapabilityFlow] = field(default_factory=list)
    risks: List[CrossModuleRisk] = field(default_factory=list)

    def modules_using(self, capability: str) -> List[str]:
        return list(dict.fromkeys(u.module for u in self.usages if u.capability == capability))


def _capability_regex(name: str, template: str) -> re.Pattern:
    return re.compile(template.format(cap=re.escape(name)))


class CrossModuleAnalyzer:
    """
    跨模块能力流分析器（纯函数式，不访问网络）

    示例:
        ```python
        result = CrossModuleAnalyzer().analyze(extracted)
        for risk in result.risks:
            print(risk.pattern_id, risk.affected_modules)
        ```
    """

    def __init__(self, verbose: bool = False):
        self._logger = CLILogger(component="CrossModuleAnalyzer", verbose=verbose)

    def analyze(self, extracted: ExtractedPackage) -> CrossModuleAnalysisResult:
        bodies = {module: function_bodies(code) for module, code in extracted.disassembled_code.items()}
        public = {(f.module, f.name): f for f in extracted.functions}

        result = CrossModuleAnalysisResult()
        result.capabilities = self._definitions(extracted)
        result.usages = self._usages(extracted, bodies, [c.name for c in result.capabilities])
        result.flows = self._flows(result, public)
        result.risks = self._risks(result)

        self._logger.debug(
            "cross_module.done",
            "跨模块能力流分析完成",
            capabilities=len(result.capabilities),
            usages=len(result.usages),
            flows=len(result.flows),
            risks=len(result.risks),
        )
        return result

    # ============ 第一遍: 能力与用法 ============

    @staticmethod
    def _definitions(extracted: ExtractedPackage) -> List[CapabilityDefinition]:
        found: Dict[str, CapabilityDefinition] = {}
        for module, code in extracted.disassembled_code.items():
            for match in _STRUCT_DECL.finditer(code or ""):
                name = match.group(1)
                if not is_capability_name(name):
                    continue
                abilities = tuple(a.strip() for a in (match.group(2) or "").split(",") if a.strip())
                found.setdefault(name, CapabilityDefinition(name, module, f"{module}::{name}", abilities))

        # 参数中出现但未在本 package 声明的能力（如 0x2::coin::TreasuryCap）
        for func in extracted.functions:
            for param in func.params:
                name = struct_name(param)
                if name and is_capability_name(name) and name not in found:
                    struct_id = param.struct_id or name
                    module = struct_id.split("::")[-2] if struct_id.count("::") == 2 else func.module
                    found[name] = CapabilityDefinition(name, module, struct_id)
        return list(found.values())

    @staticmethod
    def _param_usage(func: ExtractedFunction, capability: str) -> Optional[UsageType]:
        for param in func.params:
            if struct_name(param) != capability:
                continue
            if param.kind == ParamKind.REFERENCE:
                return UsageType.BORROWED_MUT if param.mutable else UsageType.BORROWED_IMM
            return UsageType.PARAMETER
        return None

    def _usages(
            self,
            extracted: ExtractedPackage,
            bodies: Dict[str, Dict[str, str]],
            capabilities: List[str],
    ) -> List[CapabilityUsage]:
        usages: List[CapabilityUsage] = []
        for func in extracted.functions:
            for cap in capabilities:
                usage = self._param_usage(func, cap)
                if usage is not None:
                    usages.append(CapabilityUsage(cap, func.module, func.name, usage))

        for cap in capabilities:
            operations = (
                (UsageType.CREATED, _capability_regex(cap, r"\bPack(?:Generic)?\[\d+\]\(\s*{cap}\b")),
                (UsageType.TRANSFERRED, _capability_regex(cap, r"transfer::(?:public_)?transfer<[^>\n]*\b{cap}\b")),
                (UsageType.SHARED, _capability_regex(cap, r"transfer::(?:public_)?share_object<[^>\n]*\b{cap}\b")),
                (UsageType.DESTROYED, _capability_regex(cap, r"\bUnpack(?:Generic)?\[\d+\]\(\s*{cap}\b")),
            )
            for module, functions in bodies.items():
                for name, body in functions.items():
                    for usage_type, regex in operations:
                        if regex.search(body):
                            usages.append(CapabilityUsage(cap, module, name, usage_type))
        return usages

    # ============ 第二遍: 流向与风险 ============

    @staticmethod
    def _flows(
            result: CrossModuleAnalysisResult,
            public: Dict[Tuple[str, str], ExtractedFunction],
    ) -> List[CapabilityFlow]:
        flows: List[CapabilityFlow] = []
        for cap in result.capabilities:
            for usage in (u for u in result.usages if u.capability == cap.name):
                key = (usage.module, usage.function_name)
                if usage.usage_type == UsageType.TRANSFERRED:
                    func = public.get(key)
                    if func is not None and usage.function_name not in _INIT_FUNCTIONS:
                        flows.append(CapabilityFlow(cap.name, usage.module, "external_address",
                                                    usage.function_name, FlowType.EXTERNAL_TRANSFER))
                    else:
                        flows.append(CapabilityFlow(cap.name, usage.module, "deployer",
                                                    usage.function_name, FlowType.INITIAL_GRANT))
                elif usage.usage_type == UsageType.SHARED:
                    flows.append(CapabilityFlow(cap.name, usage.module, "shared_object",
                                                usage.function_name, FlowType.PUBLIC_SHARE))

            for module in result.modules_using(cap.name):
                if module != cap.module:
                    flows.append(CapabilityFlow(cap.name, cap.module, module, "cross_module_import",
                                                FlowType.CROSS_MODULE))
        return flows

    @staticmethod
    def _risks(result: CrossModuleAnalysisResult) -> List[CrossModuleRisk]:
        risks: List[CrossModuleRisk] = []
        external: Dict[str, List[CapabilityFlow]] = {}
        for flow in result.flows:
            if flow.flow_type == FlowType.EXTERNAL_TRANSFER:
                external.setdefault(flow.capability, []).append(flow)

        for cap, flows in external.items():
            affected = result.modules_using(cap)
            if len(affected) < 2:
                continue
            for flow in flows:
                where = f"{flow.from_module}::{flow.via_function}"
                risks.append(CrossModuleRisk(
                    pattern_id="CROSS-MODULE-CAP-TRANSFER",
                    severity=Severity.CRITICAL,
                    affected_modules=tuple(affected),
                    source_module=flow.from_module,
                    source_function=flow.via_function,
                    description=(
                        f"{cap} can be transferred to an external address in {where}, but is also used in "
                        f"{len(affected)} modules. If it reaches a malicious address, ALL functionality "
                        f"depending on this capability is compromised."
                    ),
                    evidence=f"External transfer in {where}, affects modules: {', '.join(affected)}",
                ))

        for flow in result.flows:
            if flow.flow_type != FlowType.PUBLIC_SHARE:
                continue
            affected = result.modules_using(flow.capability)
            critical = any(name in flow.capability for name in CRITICAL_CAPABILITIES)
            where = f"{flow.from_module}::{flow.via_function}"
            risks.append(CrossModuleRisk(
                pattern_id="CROSS-MODULE-CAP-SHARED",
                severity=Severity.CRITICAL if critical else Severity.HIGH,
                affected_modules=tuple(affected),
                source_module=flow.from_module,
                source_function=flow.via_function,
                description=(
                    f"Capability {flow.capability} is shared as a public object in {where}. Anyone can use it, "
                    f"compromising all {len(affected)} module(s) that depend on it."
                ),
                evidence=f"Shared object in {where}",
            ))

        for cap in external:
            importers = [f.to for f in result.flows if f.capability == cap and f.flow_type == FlowType.CROSS_MODULE]
            if len(importers) < WIDE_IMPACT_MIN_MODULES:
                continue
            risks.append(CrossModuleRisk(
                pattern_id="CROSS-MODULE-WIDE-IMPACT",
                severity=Severity.HIGH,
                affected_modules=tuple(importers),
                source_module="multiple",
                source_function="multiple",
                description=(
                    f"Capability {cap} is used across {len(importers)} modules and can be transferred externally. "
                    f"A single transfer compromises functionality across the entire package."
                ),
                evidence=f"{cap} used in: {', '.join(importers)}",
            ))
        return risks


def format_cross_module(result: Optional[CrossModuleAnalysisResult], max_capabilities: int = 5) -> str:
    """渲染为提示词中的文本块"""
    if result is None or not result.risks:
        lines = ["No cross-module capability risks detected."]
    else:
        lines = [f"Cross-Module Analysis: {len(result.risks)} risk(s) found", ""]
        for risk in result.risks:
            lines.append(f"[{risk.severity.value}] {risk.pattern_id}")
            lines.append(f"  Source: {risk.source_module}::{risk.source_function}")
            lines.append(f"  Affected: {', '.join(risk.affected_modules)}")
            lines.append(f"  {risk.description}")
            lines.append("")

    if result is not None and result.capabilities:
        lines.append("Capabilities tracked:")
        for cap in result.capabilities[:max_capabilities]:
            lines.append(f"  - {cap.full_type}")
        if len(result.capabilities) > max_capabilities:
            lines.append(f"  ... and {len(result.capabilities) - max_capabilities} more")
    return "\n".join(lines).rstrip()


def run_cross_module_analysis(extracted: ExtractedPackage) -> CrossModuleAnalysisResult:
    return CrossModuleAnalyzer().analyze(extracted)


__all__ = [
    "KNOWN_CAPABILITIES",
    "is_capability_name",
    "UsageType",
    "FlowType",
    "CapabilityDefinition",
    "CapabilityUsage",
    "CapabilityFlow",
    "CrossModuleRisk",
    "CrossModuleAnalysisResult",
    "CrossModuleAnalyzer",
    "format_cross_module",
    "run_cross_module_analysis",
]
