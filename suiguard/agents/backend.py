#!/usr/bin/env python3
"""
推理后端

每个推理阶段对应一个方法，流水线只依赖 ReasoningBackend 接口，
测试中可以替换为脚本化的实现。LLMReasoningBackend 通过 JSONLLMClient
调用 OpenAI 兼容的聊天模型。
"""

from abc import ABC, abstractmethod
from typing import Mapping, Optional, Sequence

from ..chain.struct_resolver import StructDefinitions
from ..core.json_llm_client import JSONLLMClient
from ..knowledge.base import RiskPatternKnowledgeBase
from ..knowledge.cross_module import CrossModuleAnalysisResult
from ..knowledge.static_analyzer import StaticAnalysisResult
from ..models.findings import (
    CritiqueResult,
    RiskScoreReport,
    TechnicalAnalysisResult,
    TechnicalFinding,
    TriageResult,
)
from ..models.package import ExtractedFunction
from ..models.safety_card import DependencyRisk, SafetyCardDraft
from . import prompts


class ReasoningBackend(ABC):
    """推理阶段接口"""

    @abstractmethod
    async def triage(
        self,
        functions: Sequence[ExtractedFunction],
        structs: StructDefinitions,
        dependency_risks: Sequence[DependencyRisk],
        static_analysis: Optional[StaticAnalysisResult] = None,
        cross_module: Optional[CrossModuleAnalysisResult] = None,
        session_id: Optional[str] = None,
    ) -> TriageResult:
        """Stage 1: 粗筛可能有风险的函数（偏重召回）"""

    @abstractmethod
    async def technical_analysis(
        self,
        functions: Sequence[ExtractedFunction],
        flagged: Sequence[str],
        structs: StructDefinitions,
        dependency_risks: Sequence[DependencyRisk],
        disassembled_code: Mapping[str, str],
        static_analysis: Optional[StaticAnalysisResult] = None,
        cross_module: Optional[CrossModuleAnalysisResult] = None,
        session_id: Optional[str] = None,
    ) -> TechnicalAnalysisResult:
        """Stage 2: 对被标记函数做深入分析，每条发现附带证据"""

    @abstractmethod
    async def score(
        self,
        findings: Sequence[TechnicalFinding],
        session_id: Optional[str] = None,
    ) -> RiskScoreReport:
        """Stage 3: 只依据技术发现评分"""

    @abstractmethod
    async def write_report(
        self,
        findings: Sequence[TechnicalFinding],
        score_report: RiskScoreReport,
        dependency_risks: Sequence[DependencyRisk],
        session_id: Optional[str] = None,
    ) -> SafetyCardDraft:
        """Stage 4: 生成面向用户的报告草稿"""

    @abstractmethod
    async def critique(
        self,
        findings: Sequence[TechnicalFinding],
        draft: SafetyCardDraft,
        risk_score: int,
        session_id: Optional[str] = None,
    ) -> CritiqueResult:
        """Stage 5: 检查草稿与技术发现是否一致"""

    @abstractmethod
    async def correct(
        self,
        draft: SafetyCardDraft,
        feedback: str,
        session_id: Optional[str] = None,
    ) -> SafetyCardDraft:
        """按 Critic 反馈重写报告（最多一次）"""


class LLMReasoningBackend(ReasoningBackend):
    """
    基于 LLM 的推理后端

    示例:
        ```python
        client = JSONLLMClient(ChatOpenAI(model="gpt-4o-mini"), timeout=120)
        backend = LLMReasoningBackend(client, RiskPatternKnowledgeBase.load())
        triage = await backend.triage(functions, structs, [])
        ```
    """

    def __init__(self, client: JSONLLMClient, knowledge_base: RiskPatternKnowledgeBase):
        self.client = client
        self.kb = knowledge_base
        self._kb_text: Optional[str] = None

    @property
    def knowledge_base_text(self) -> str:
        if self._kb_text is None:
            self._kb_text = self.kb.render_prompt_text()
        return self._kb_text

    async def triage(
        self, functions, structs, dependency_risks, static_analysis=None, cross_module=None, session_id=None
    ) -> TriageResult:
        prompt = prompts.build_triage_prompt(functions, structs, dependency_risks, static_analysis, cross_module)
        return await self.client.ajson_call(
            prompt=prompt,
            schema=TriageResult,
            stage="triage",
            system_prompt=prompts.STAGE_SYSTEM_PROMPT,
            session_id=session_id,
            metadata={"functions": len(functions)},
        )

    async def technical_analysis(
        self, functions, flagged, structs, dependency_risks, disassembled_code,
        static_analysis=None, cross_module=None, session_id=None,
    ) -> TechnicalAnalysisResult:
        prompt = prompts.build_technical_analysis_prompt(
            functions=functions,
            flagged=flagged,
            structs=structs,
            dependency_risks=dependency_risks,
            disassembled_code=disassembled_code,
            static_analysis=static_analysis,
            cross_module=cross_module,
            knowledge_base_text=self.knowledge_base_text,
            pattern_ids=[p.pattern_id for p in self.kb.patterns],
        )
        return await self.client.ajson_call(
            prompt=prompt,
            schema=TechnicalAnalysisResult,
            stage="technical_analysis",
            system_prompt=prompts.STAGE_SYSTEM_PROMPT,
            session_id=session_id,
            metadata={"flagged": len(flagged)},
        )

    async def score(self, findings, session_id=None) -> RiskScoreReport:
        prompt = prompts.build_scoring_prompt(
            findings,
            knowledge_base_text=self.knowledge_base_text,
            algorithm_text=self.kb.render_scoring_algorithm(),
        )
        return await self.client.ajson_call(
            prompt=prompt,
            schema=RiskScoreReport,
            stage="scoring",
            system_prompt=prompts.STAGE_SYSTEM_PROMPT,
            session_id=session_id,
            metadata={"findings": len(findings)},
        )

    async def write_report(self, findings, score_report, dependency_risks, session_id=None) -> SafetyCardDraft:
        prompt = prompts.build_report_prompt(findings, score_report, dependency_risks)
        return await self.client.ajson_call(
            prompt=prompt,
            schema=SafetyCardDraft,
            stage="report",
            system_prompt=prompts.STAGE_SYSTEM_PROMPT,
            session_id=session_id,
        )

    async def critique(self, findings, draft, risk_score, session_id=None) -> CritiqueResult:
        prompt = prompts.build_critique_prompt(findings, draft, risk_score)
        return await self.client.ajson_call(
            prompt=prompt,
            schema=CritiqueResult,
            stage="critique",
            system_prompt=prompts.STAGE_SYSTEM_PROMPT,
            session_id=session_id,
        )

    async def correct(self, draft, feedback, session_id=None) -> SafetyCardDraft:
        prompt = prompts.build_correction_prompt(draft, feedback)
        return await self.client.ajson_call(
            prompt=prompt,
            schema=SafetyCardDraft,
            stage="correction",
            system_prompt=prompts.STAGE_SYSTEM_PROMPT,
            session_id=session_id,
        )


__all__ = ["ReasoningBackend", "LLMReasoningBackend"]
