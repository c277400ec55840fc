#!/usr/bin/env python3
"""
AnalysisPipeline - 基于 LangGraph 的 Safety Card 分析流水线

工作流（显式有限状态机）:

    extract ──┬─> no_functions ──> END                  (NoFunctions, 分数 0)
              └─> resolve_context ─> triage ──┬─> clean_triage ──> END   (CleanTriage, 分数 5)
                                              └─> technical_analysis ─> scoring ─> report
                                                   ─> critique ──┬─> finalize ──> END
                                                                 └─> correction ─> finalize

推理阶段严格顺序执行；结构体解析与依赖风险查询并发执行；
Critic 判定不一致时最多纠错一次，纠错后不再复查。
"""

import asyncio
import operator
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypedDict

from langgraph.graph import END, StateGraph

from ..agents.backend import ReasoningBackend
from ..chain.dependency_resolver import DependencyRiskResolver
from ..chain.extractor import PackageDataExtractor
from ..chain.struct_resolver import StructDefinitions, StructResolver
from ..core.cli_logger import CLILogger, format_duration
from ..knowledge.base import RiskPatternKnowledgeBase, get_knowledge_base
from ..knowledge.cross_module import CrossModuleAnalysisResult, CrossModuleAnalyzer
from ..knowledge.evidence import EvidenceValidator, short_function_name
from ..knowledge.scoring import RiskScorer
from ..knowledge.static_analyzer import StaticAnalysisResult, StaticPatternAnalyzer
from ..models.findings import CritiqueResult, RiskScoreReport, Severity, TechnicalFinding
from ..models.package import ExtractedPackage, PackageSnapshot
from ..models.safety_card import (
    CLEAN_TRIAGE_CARD,
    NO_FUNCTIONS_CARD,
    DependencyRisk,
    SafetyCard,
    SafetyCardDraft,
)


class PipelineStage(str, Enum):
    """流水线状态"""
    EXTRACTED = "Extracted"
    TRIAGED = "Triaged"
    TECHNICALLY_ANALYZED = "TechnicallyAnalyzed"
    SCORED = "Scored"
    REPORTED = "Reported"
    CRITIQUED = "Critiqued"
    CORRECTED = "Corrected"
    FINALIZED = "Finalized"
    # 快速通道终态
    NO_FUNCTIONS = "NoFunctions"
    CLEAN_TRIAGE = "CleanTriage"


TERMINAL_STAGES = frozenset({
    PipelineStage.FINALIZED,
    PipelineStage.NO_FUNCTIONS,
    PipelineStage.CLEAN_TRIAGE,
})


class PipelineState(TypedDict, total=False):
    """
    流水线状态

    history 使用追加合并，记录经过的所有状态
    """
    package_id: str
    network: str
    session_id: str
    snapshot: PackageSnapshot
    extracted: ExtractedPackage
    structs: StructDefinitions
    dependency_risks: List[DependencyRisk]
    static_analysis: StaticAnalysisResult
    cross_module: CrossModuleAnalysisResult
    flagged: List[str]
    findings: List[TechnicalFinding]
    score_report: RiskScoreReport
    draft: SafetyCardDraft
    critique: CritiqueResult
    card: SafetyCard
    stage: PipelineStage
    history: Annotated[List[PipelineStage], operator.add]


@dataclass
class PipelineResult:
    """一次完整运行的结果"""
    card: SafetyCard
    stage: PipelineStage
    history: List[PipelineStage]
    session_id: str
    findings: List[TechnicalFinding] = field(default_factory=list)
    score_report: Optional[RiskScoreReport] = None
    critique: Optional[CritiqueResult] = None
    duration: float = 0.0

    @property
    def corrected(self) -> bool:
        return PipelineStage.CORRECTED in self.history


def filter_report_functions(
        draft: SafetyCardDraft,
        findings: List[TechnicalFinding],
) -> Tuple[SafetyCardDraft, List[str]]:
    """
    丢弃报告中没有对应技术发现的风险函数

    按函数短名比较（module::name 与 name 视为同一函数）。
    返回 (过滤后的草稿, 被丢弃的函数名)
    """
    allowed = {short_function_name(f.function_name) for f in findings}
    kept = []
    dropped = []
    for entry in draft.risky_functions:
        if short_function_name(entry.function_name) in allowed:
            kept.append(entry)
        else:
            dropped.append(entry.function_name)
    if not dropped:
        return draft, dropped
    return draft.model_copy(update={"risky_functions": kept}), dropped


NodeFunc = Callable[[PipelineState], Awaitable[Dict[str, Any]]]


class AnalysisPipeline:
    """
    Safety Card 分析流水线

    示例:
        ```python
        pipeline = AnalysisPipeline(
            backend=LLMReasoningBackend(client, kb),
            struct_resolver=StructResolver(sui_client),
            dependency_resolver=DependencyRiskResolver(cache),
        )
        result = await pipeline.run(snapshot)
        print(result.card.risk_score, result.stage)
        ```
    """

    def __init__(
            self,
            backend: ReasoningBackend,
            struct_resolver: StructResolver,
            dependency_resolver: DependencyRiskResolver,
            knowledge_base: Optional[RiskPatternKnowledgeBase] = None,
            llm_scoring: bool = False,
            verbose: bool = False,
    ):
        """
        初始化流水线

        参数:
            backend: 推理后端（每个阶段一个方法）
            struct_resolver: 结构体定义解析器
            dependency_resolver: 依赖风险解析器（只读缓存）
            knowledge_base: 风险模式知识库，默认使用内置知识库
            llm_scoring: 是否同时让模型按同一算法评分（不一致时以确定性结果为准）
            verbose: 是否打印详细日志
        """
        self.backend = backend
        self.struct_resolver = struct_resolver
        self.dependency_resolver = dependency_resolver
        self.kb = knowledge_base or get_knowledge_base()
        self.llm_scoring = llm_scoring
        self.verbose = verbose

        self.extractor = PackageDataExtractor(verbose=verbose)
        self.scorer = RiskScorer(self.kb, verbose=verbose)
        self.evidence_validator = EvidenceValidator(self.kb, verbose=verbose)
        self.static_analyzer = StaticPatternAnalyzer(verbose=verbose)
        self.cross_module_analyzer = CrossModuleAnalyzer(verbose=verbose)
        self._logger = CLILogger(component="AnalysisPipeline", verbose=verbose)

        self._workflow = StateGraph(PipelineState)
        self.build_workflow()
        self._compiled_workflow = self._workflow.compile()

    # ============ 工作流构建 ============

    def build_workflow(self):
        wf = self._workflow
        wf.add_node("extract", self._timed("extract", self._extract_node))
        wf.add_node("no_functions", self._timed("no_functions", self._no_functions_node))
        wf.add_node("resolve_context", self._timed("resolve_context", self._resolve_context_node))
        wf.add_node("triage", self._timed("triage", self._triage_node))
        wf.add_node("clean_triage", self._timed("clean_triage", self._clean_triage_node))
        wf.add_node("technical_analysis", self._timed("technical_analysis", self._technical_analysis_node))
        wf.add_node("scoring", self._timed("scoring", self._scoring_node))
        wf.add_node("report", self._timed("report", self._report_node))
        wf.add_node("critique", self._timed("critique", self._critique_node))
        wf.add_node("correction", self._timed("correction", self._correction_node))
        wf.add_node("finalize", self._timed("finalize", self._finalize_node))

        wf.set_entry_point("extract")
        wf.add_conditional_edges(
            "extract",
            self._route_after_extract,
            {"no_functions": "no_functions", "resolve_context": "resolve_context"},
        )
        wf.add_edge("no_functions", END)
        wf.add_edge("resolve_context", "triage")
        wf.add_conditional_edges(
            "triage",
            self._route_after_triage,
            {"clean_triage": "clean_triage", "technical_analysis": "technical_analysis"},
        )
        wf.add_edge("clean_triage", END)
        wf.add_edge("technical_analysis", "scoring")
        wf.add_edge("scoring", "report")
        wf.add_edge("report", "critique")
        wf.add_conditional_edges(
            "critique",
            self._route_after_critique,
            {"correction": "correction", "finalize": "finalize"},
        )
        wf.add_edge("correction", "finalize")
        wf.add_edge("finalize", END)

    def _timed(self, name: str, node: NodeFunc) -> NodeFunc:
        """为节点加上开始/结束日志与耗时"""
        async def _wrapper(state: PipelineState) -> Dict[str, Any]:
            start = time.perf_counter()
            self._logger.info("pipeline.stage_start", f"{name} 开始", package_id=state.get("package_id"))
            update = await node(state)
            self._logger.info(
                "pipeline.stage_done",
                f"{name} 完成",
                package_id=state.get("package_id"),
                stage=update.get("stage").value if update.get("stage") else None,
                duration=format_duration(time.perf_counter() - start),
            )
            return update
        return _wrapper

    # ============ 路由 ============

    @staticmethod
    def _route_after_extract(state: PipelineState) -> str:
        return "no_functions" if state["extracted"].is_library else "resolve_context"

    @staticmethod
    def _route_after_triage(state: PipelineState) -> str:
        return "clean_triage" if not state.get("flagged") else "technical_analysis"

    @staticmethod
    def _route_after_critique(state: PipelineState) -> str:
        return "finalize" if state["critique"].is_consistent else "correction"

    # ============ 节点 ============

    async def _extract_node(self, state: PipelineState) -> Dict[str, Any]:
        snapshot = state["snapshot"]
        extracted = self.extractor.extract(snapshot.modules, snapshot.disassembled, snapshot.package_id)
        self._logger.info(
            "pipeline.extracted",
            "提取公开函数与依赖",
            functions=len(extracted.functions),
            dependencies=len(extracted.dependencies),
        )
        return {"extracted": extracted, "stage": PipelineStage.EXTRACTED, "history": [PipelineStage.EXTRACTED]}

    async def _no_functions_node(self, state: PipelineState) -> Dict[str, Any]:
        self._logger.info("pipeline.fast_lane", "没有公开函数，跳过推理阶段", lane=PipelineStage.NO_FUNCTIONS.value)
        return {"card": NO_FUNCTIONS_CARD, "stage": PipelineStage.NO_FUNCTIONS, "history": [PipelineStage.NO_FUNCTIONS]}

    async def _resolve_context_node(self, state: PipelineState) -> Dict[str, Any]:
        extracted = state["extracted"]

        async def _dependencies() -> List[DependencyRisk]:
            return self.dependency_resolver.resolve(extracted.dependencies, state["network"])

        structs, dependency_risks = await asyncio.gather(
            self.struct_resolver.resolve(extracted.referenced_structs()),
            _dependencies(),
        )

        # 静态检测与能力流分析都是纯计算，结果作为已验证上下文交给推理阶段
        static_analysis = self.static_analyzer.analyze(extracted)
        cross_module = self.cross_module_analyzer.analyze(extracted)
        counts = static_analysis.severity_counts()
        self._logger.info(
            "pipeline.static_analysis",
            "静态分析完成",
            patterns=len(static_analysis.findings),
            critical=counts[Severity.CRITICAL],
            high=counts[Severity.HIGH],
            capabilities=len(cross_module.capabilities),
            cross_module_risks=len(cross_module.risks),
        )
        return {
            "structs": structs,
            "dependency_risks": dependency_risks,
            "static_analysis": static_analysis,
            "cross_module": cross_module,
        }

    async def _triage_node(self, state: PipelineState) -> Dict[str, Any]:
        result = await self.backend.triage(
            state["extracted"].functions,
            state.get("structs", {}),
            state.get("dependency_risks", []),
            static_analysis=state.get("static_analysis"),
            cross_module=state.get("cross_module"),
            session_id=state.get("session_id"),
        )
        flagged = list(dict.fromkeys(result.potentially_risky_functions))
        self._logger.info("pipeline.triaged", "粗筛完成", flagged=len(flagged))
        return {"flagged": flagged, "stage": PipelineStage.TRIAGED, "history": [PipelineStage.TRIAGED]}

    async def _clean_triage_node(self, state: PipelineState) -> Dict[str, Any]:
        self._logger.info("pipeline.fast_lane", "粗筛未标记任何函数，跳过后续阶段", lane=PipelineStage.CLEAN_TRIAGE.value)
        return {"card": CLEAN_TRIAGE_CARD, "stage": PipelineStage.CLEAN_TRIAGE, "history": [PipelineStage.CLEAN_TRIAGE]}

    async def _technical_analysis_node(self, state: PipelineState) -> Dict[str, Any]:
        extracted = state["extracted"]
        result = await self.backend.technical_analysis(
            extracted.functions,
            state["flagged"],
            state.get("structs", {}),
            state.get("dependency_risks", []),
            extracted.disassembled_code,
            static_analysis=state.get("static_analysis"),
            cross_module=state.get("cross_module"),
            session_id=state.get("session_id"),
        )
        findings = self.evidence_validator.validate(
            result.technical_findings,
            extracted.functions,
            extracted.disassembled_code,
        )
        self._logger.info("pipeline.analyzed", "技术分析完成", findings=len(findings))
        return {
            "findings": findings,
            "stage": PipelineStage.TECHNICALLY_ANALYZED,
            "history": [PipelineStage.TECHNICALLY_ANALYZED],
        }

    async def _scoring_node(self, state: PipelineState) -> Dict[str, Any]:
        findings = state.get("findings", [])
        report = self.scorer.score(findings)

        if self.llm_scoring:
            llm_report = await self.backend.score(findings, session_id=state.get("session_id"))
            if llm_report.risk_score == report.risk_score:
                report = llm_report
            else:
                self._logger.warning(
                    "scoring.divergence",
                    "模型评分与确定性评分不一致，采用确定性结果",
                    llm_score=llm_report.risk_score,
                    deterministic_score=report.risk_score,
                )

        self._logger.info("pipeline.scored", "评分完成", risk_score=report.risk_score,
                          confidence=report.confidence.value)
        return {"score_report": report, "stage": PipelineStage.SCORED, "history": [PipelineStage.SCORED]}

    async def _report_node(self, state: PipelineState) -> Dict[str, Any]:
        draft = await self.backend.write_report(
            state.get("findings", []),
            state["score_report"],
            state.get("dependency_risks", []),
            session_id=state.get("session_id"),
        )
        draft = self._drop_unbacked_functions(draft, state.get("findings", []))
        return {"draft": draft, "stage": PipelineStage.REPORTED, "history": [PipelineStage.REPORTED]}

    async def _critique_node(self, state: PipelineState) -> Dict[str, Any]:
        critique = await self.backend.critique(
            state.get("findings", []),
            state["draft"],
            state["score_report"].risk_score,
            session_id=state.get("session_id"),
        )
        if critique.is_consistent:
            self._logger.info("pipeline.critiqued", "报告与技术发现一致")
        else:
            self._logger.warning("pipeline.critiqued", "报告不一致，进入纠错", feedback=critique.feedback[:300])
        return {"critique": critique, "stage": PipelineStage.CRITIQUED, "history": [PipelineStage.CRITIQUED]}

    async def _correction_node(self, state: PipelineState) -> Dict[str, Any]:
        draft = await self.backend.correct(
            state["draft"],
            state["critique"].feedback,
            session_id=state.get("session_id"),
        )
        draft = self._drop_unbacked_functions(draft, state.get("findings", []))
        return {"draft": draft, "stage": PipelineStage.CORRECTED, "history": [PipelineStage.CORRECTED]}

    async def _finalize_node(self, state: PipelineState) -> Dict[str, Any]:
        # 分数只来自评分阶段，报告阶段不能改写
        card = SafetyCard.from_draft(state["draft"], state["score_report"].risk_score)
        return {"card": card, "stage": PipelineStage.FINALIZED, "history": [PipelineStage.FINALIZED]}

    def _drop_unbacked_functions(self, draft: SafetyCardDraft, findings: List[TechnicalFinding]) -> SafetyCardDraft:
        draft, dropped = filter_report_functions(draft, findings)
        if dropped:
            self._logger.warning("report.unbacked_functions", "报告中的函数没有对应技术发现，已移除",
                                 dropped=", ".join(dropped))
        return draft

    # ============ 执行 ============

    async def run(self, snapshot: PackageSnapshot, session_id: Optional[str] = None) -> PipelineResult:
        """
        执行完整流水线

        Raises:
            AnalysisError 的子类: 任一推理阶段失败，不产生部分结果
        """
        session_id = session_id or str(uuid.uuid4())
        initial_state: PipelineState = {
            "package_id": snapshot.package_id,
            "network": snapshot.network,
            "session_id": session_id,
            "snapshot": snapshot,
            "history": [],
        }

        start = time.perf_counter()
        final_state = await self._compiled_workflow.ainvoke(initial_state, config={"recursion_limit": 25})
        duration = time.perf_counter() - start

        stage = final_state["stage"]
        if stage not in TERMINAL_STAGES:
            raise RuntimeError(f"Pipeline stopped in non-terminal stage {stage}")

        card: SafetyCard = final_state["card"]
        self._logger.success(
            "pipeline.done",
            "分析完成",
            package_id=snapshot.package_id,
            network=snapshot.network,
            stage=stage.value,
            risk_score=card.risk_score,
            risk_level=card.risk_level.value,
            duration=format_duration(duration),
        )
        return PipelineResult(
            card=card,
            stage=stage,
            history=list(final_state.get("history", [])),
            session_id=session_id,
            findings=list(final_state.get("findings", [])),
            score_report=final_state.get("score_report"),
            critique=final_state.get("critique"),
            duration=duration,
        )


__all__ = [
    "PipelineStage",
    "TERMINAL_STAGES",
    "PipelineState",
    "PipelineResult",
    "filter_report_functions",
    "AnalysisPipeline",
]
