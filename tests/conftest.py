"""
Shared fixtures and test doubles.
"""

from typing import Any, Dict, List, Optional

import pytest

from suiguard.agents.backend import ReasoningBackend
from suiguard.chain.dependency_resolver import DependencyRiskResolver
from suiguard.chain.struct_resolver import StructResolver
from suiguard.core.cache import ResultCache
from suiguard.core.exceptions import ChainQueryError, PackageNotFoundError
from suiguard.engines.pipeline import AnalysisPipeline
from suiguard.knowledge.base import RiskPatternKnowledgeBase
from suiguard.models.findings import (
    CritiqueResult,
    RiskScoreReport,
    TechnicalAnalysisResult,
    TechnicalFinding,
    TriageResult,
)
from suiguard.models.package import PackageSnapshot
from suiguard.models.safety_card import SafetyCardDraft

PACKAGE_ID = "0xabc123"
COIN_ID = "0x2::coin::Coin"
ADMIN_CAP = f"{PACKAGE_ID}::vault::AdminCap"
VAULT = f"{PACKAGE_ID}::vault::Vault"

DISASSEMBLY = """module 0xabc123::vault {
use 0000000000000000000000000000000000000000000000000000000000000002::coin;
use 00000000000000000000000000000000000000000000000000000000000000ff::oracle;

public withdraw_all<T0>(Arg0: &AdminCap, Arg1: &mut Vault, Arg2: &mut TxContext) {
B0:
    0: MoveLoc[0](Arg0: &AdminCap)
    1: Call balance::withdraw_all<T0>(&mut Balance<T0>): Balance<T0>
    2: Call transfer::public_transfer<Coin<T0>>(Coin<T0>, address)
    3: Ret
}
}"""


def make_modules() -> Dict[str, Any]:
    """A normalized module map with one admin withdraw function and one private helper."""
    return {
        "vault": {
            "dependencies": ["0x2", "0x00000000000000000000000000000000000000000000000000000000000000ee"],
            "exposedFunctions": {
                "withdraw_all": {
                    "visibility": "Public",
                    "isEntry": True,
                    "typeParameters": [{"abilities": []}],
                    "parameters": [
                        {"Reference": {"Struct": {"address": PACKAGE_ID, "module": "vault", "name": "AdminCap",
                                                  "typeArguments": []}}},
                        {"MutableReference": {"Struct": {"address": PACKAGE_ID, "module": "vault", "name": "Vault",
                                                         "typeArguments": []}}},
                        {"MutableReference": {"Struct": {"address": "0x2", "module": "tx_context",
                                                         "name": "TxContext", "typeArguments": []}}},
                    ],
                    "return": [],
                },
                "helper": {
                    "visibility": "Private",
                    "isEntry": False,
                    "typeParameters": [],
                    "parameters": ["U64"],
                    "return": [],
                },
            },
        }
    }


def make_snapshot(modules: Optional[Dict[str, Any]] = None, network: str = "mainnet") -> PackageSnapshot:
    return PackageSnapshot(
        package_id=PACKAGE_ID,
        network=network,
        modules=make_modules() if modules is None else modules,
        disassembled={"vault": DISASSEMBLY},
        publisher="0xpublisher",
    )


def make_finding(**overrides) -> TechnicalFinding:
    data = {
        "function_name": "vault::withdraw_all",
        "technical_reason": "AdminCap holder can withdraw the whole vault balance.",
        "matched_pattern_id": "CRITICAL-01",
        "severity": "Critical",
        "contextual_notes": ["No obvious mitigations detected."],
        "evidence_code_snippet": "Call balance::withdraw_all<T0>(&mut Balance<T0>): Balance<T0>",
    }
    data.update(overrides)
    return TechnicalFinding(**data)


def make_draft(function_names: Optional[List[str]] = None, summary: str = "Admin can drain the vault.") -> SafetyCardDraft:
    names = ["withdraw_all"] if function_names is None else function_names
    return SafetyCardDraft(
        summary=summary,
        risky_functions=[{"function_name": n, "reason": "Drains user funds."} for n in names],
        rug_pull_indicators=[{"pattern_name": "Admin Drain", "evidence": "withdraw_all takes AdminCap"}],
        impact_on_user="Deposited funds can be taken by the admin at any time.",
        why_risky_one_liner="Admin can withdraw all funds",
    )


class ScriptedBackend(ReasoningBackend):
    """Reasoning backend that replays canned stage outputs and counts calls."""

    def __init__(
        self,
        flagged: Optional[List[str]] = None,
        findings: Optional[List[TechnicalFinding]] = None,
        draft: Optional[SafetyCardDraft] = None,
        critique: Optional[CritiqueResult] = None,
        correction: Optional[SafetyCardDraft] = None,
        llm_score: Optional[RiskScoreReport] = None,
        fail_stage: Optional[str] = None,
    ):
        self.flagged = ["withdraw_all"] if flagged is None else flagged
        self.findings = [make_finding()] if findings is None else findings
        self.draft = draft or make_draft()
        self.critique_result = critique or CritiqueResult(is_consistent=True, feedback="")
        self.correction = correction
        self.llm_score = llm_score
        self.fail_stage = fail_stage
        self.calls: Dict[str, int] = {}
        self.received: Dict[str, Any] = {}

    def _record(self, stage: str, **kwargs):
        self.calls[stage] = self.calls.get(stage, 0) + 1
        self.received[stage] = kwargs
        if self.fail_stage == stage:
            raise RuntimeError(f"{stage} exploded")

    async def triage(self, functions, structs, dependency_risks, static_analysis=None, cross_module=None,
                     session_id=None):
        self._record("triage", functions=functions, structs=structs, dependency_risks=dependency_risks,
                     static_analysis=static_analysis, cross_module=cross_module)
        return TriageResult(potentially_risky_functions=self.flagged)

    async def technical_analysis(self, functions, flagged, structs, dependency_risks, disassembled_code,
                                 static_analysis=None, cross_module=None, session_id=None):
        self._record("technical_analysis", flagged=flagged, dependency_risks=dependency_risks,
                     static_analysis=static_analysis, cross_module=cross_module)
        return TechnicalAnalysisResult(technical_findings=self.findings)

    async def score(self, findings, session_id=None):
        self._record("score", findings=findings)
        return self.llm_score

    async def write_report(self, findings, score_report, dependency_risks, session_id=None):
        self._record("write_report", findings=findings, score_report=score_report)
        return self.draft

    async def critique(self, findings, draft, risk_score, session_id=None):
        self._record("critique", draft=draft, risk_score=risk_score)
        return self.critique_result

    async def correct(self, draft, feedback, session_id=None):
        self._record("correct", draft=draft, feedback=feedback)
        return self.correction or draft

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())


class FakeSuiClient:
    """In-memory stand-in for SuiRPCClient."""

    def __init__(self, snapshot: Optional[PackageSnapshot] = None, structs: Optional[Dict[str, Any]] = None,
                 failing_structs: Optional[List[str]] = None, network: str = "mainnet"):
        self.snapshot = snapshot
        self.structs = structs or {}
        self.failing_structs = set(failing_structs or [])
        self.network = network
        self.struct_calls: List[str] = []
        self.snapshot_calls = 0
        self.closed = False

    async def fetch_package_snapshot(self, package_id: str) -> PackageSnapshot:
        self.snapshot_calls += 1
        if self.snapshot is None:
            raise PackageNotFoundError("Could not retrieve package content or disassembled bytecode.")
        return PackageSnapshot(
            package_id=package_id,
            network=self.network,
            modules=self.snapshot.modules,
            disassembled=self.snapshot.disassembled,
            publisher=self.snapshot.publisher,
        )

    async def get_normalized_struct(self, package_id: str, module: str, struct: str, retry: bool = False):
        struct_id = f"{package_id}::{module}::{struct}"
        self.struct_calls.append(struct_id)
        if struct_id in self.failing_structs:
            raise ChainQueryError(f"struct {struct_id} not found", method="sui_getNormalizedMoveStruct")
        return self.structs.get(struct_id, {"fields": [{"name": "id", "type": {"Struct": {"address": "0x2",
                                                                                        "module": "object",
                                                                                        "name": "UID"}}}]})

    async def close(self):
        self.closed = True


@pytest.fixture
def knowledge_base() -> RiskPatternKnowledgeBase:
    return RiskPatternKnowledgeBase.load()


@pytest.fixture
def cache() -> ResultCache:
    return ResultCache()


@pytest.fixture
def sui_client() -> FakeSuiClient:
    return FakeSuiClient(snapshot=make_snapshot())


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def make_pipeline(knowledge_base, cache, sui_client):
    """Factory for pipelines wired to the fake chain client and the shared cache."""

    def _make(backend: ReasoningBackend, **kwargs) -> AnalysisPipeline:
        return AnalysisPipeline(
            backend=backend,
            struct_resolver=StructResolver(sui_client),
            dependency_resolver=DependencyRiskResolver(cache),
            knowledge_base=knowledge_base,
            **kwargs,
        )

    return _make
