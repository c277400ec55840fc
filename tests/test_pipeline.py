"""
Tests for the analysis pipeline state machine
"""

import pytest

from suiguard.core.cache import make_cache_key
from suiguard.engines.pipeline import PipelineStage, filter_report_functions
from suiguard.models.findings import CritiqueResult, RiskScoreReport
from suiguard.models.safety_card import CLEAN_TRIAGE_CARD, NO_FUNCTIONS_CARD, RiskLevel, SafetyCard

from .conftest import ADMIN_CAP, VAULT, ScriptedBackend, make_draft, make_finding, make_modules, make_snapshot

EE = "0x00000000000000000000000000000000000000000000000000000000000000ee"


def library_modules():
    modules = make_modules()
    del modules["vault"]["exposedFunctions"]["withdraw_all"]
    return modules


class TestFastLanes:
    """Test the two short-circuit terminal states."""

    async def test_no_public_functions(self, make_pipeline, sui_client):
        backend = ScriptedBackend()
        result = await make_pipeline(backend).run(make_snapshot(library_modules()))

        assert result.stage == PipelineStage.NO_FUNCTIONS
        assert result.card == NO_FUNCTIONS_CARD
        assert result.card.risk_score == 0
        assert result.history == [PipelineStage.EXTRACTED, PipelineStage.NO_FUNCTIONS]
        assert backend.total_calls == 0
        assert sui_client.struct_calls == []

    async def test_clean_triage(self, make_pipeline):
        backend = ScriptedBackend(flagged=[])
        result = await make_pipeline(backend).run(make_snapshot())

        assert result.stage == PipelineStage.CLEAN_TRIAGE
        assert result.card == CLEAN_TRIAGE_CARD
        assert result.card.risk_score == 5
        assert backend.calls == {"triage": 1}


class TestFullRun:
    """Test the complete reasoning path."""

    async def test_consistent_report(self, make_pipeline):
        backend = ScriptedBackend()
        result = await make_pipeline(backend).run(make_snapshot(), session_id="run-1")

        assert result.stage == PipelineStage.FINALIZED
        assert result.history == [
            PipelineStage.EXTRACTED,
            PipelineStage.TRIAGED,
            PipelineStage.TECHNICALLY_ANALYZED,
            PipelineStage.SCORED,
            PipelineStage.REPORTED,
            PipelineStage.CRITIQUED,
            PipelineStage.FINALIZED,
        ]
        assert result.session_id == "run-1"
        assert result.card.risk_score == 100
        assert result.card.risk_level == RiskLevel.CRITICAL
        assert result.card.summary == "Admin can drain the vault."
        assert not result.corrected
        assert "correct" not in backend.calls
        assert "score" not in backend.calls

    async def test_context_reaches_triage(self, make_pipeline, cache):
        cache.set(make_cache_key(EE, "mainnet"), SafetyCard(summary="dep", risk_score=60, risk_level=RiskLevel.HIGH))
        backend = ScriptedBackend()
        await make_pipeline(backend).run(make_snapshot())

        received = backend.received["triage"]
        assert set(received["structs"]) == {ADMIN_CAP, VAULT, "0x2::tx_context::TxContext"}
        assert [(r.id, r.risk_score) for r in received["dependency_risks"]] == [(EE, 60)]
        assert backend.received["technical_analysis"]["flagged"] == ["withdraw_all"]

    async def test_static_results_reach_reasoning_stages(self, make_pipeline):
        backend = ScriptedBackend()
        await make_pipeline(backend).run(make_snapshot())

        for stage in ("triage", "technical_analysis"):
            received = backend.received[stage]
            static = received["static_analysis"]
            assert static.findings[0].pattern_id == "STATIC-ADMINCAP-TRANSFER"
            assert static.flagged_functions() == ["withdraw_all"]
            cross = received["cross_module"]
            assert [c.full_type for c in cross.capabilities] == [ADMIN_CAP]
            assert cross.risks == []

    async def test_score_reaches_report_and_critique(self, make_pipeline):
        backend = ScriptedBackend()
        result = await make_pipeline(backend).run(make_snapshot())

        assert backend.received["write_report"]["score_report"].risk_score == 100
        assert backend.received["critique"]["risk_score"] == 100
        assert result.score_report.risk_score == result.card.risk_score

    async def test_findings_are_validated(self, make_pipeline):
        backend = ScriptedBackend(findings=[make_finding(evidence_code_snippet="")])
        result = await make_pipeline(backend).run(make_snapshot())
        assert result.findings[0].evidence_verified is False

    async def test_inconsistent_report_corrected_once(self, make_pipeline):
        backend = ScriptedBackend(
            critique=CritiqueResult(is_consistent=False, feedback="Summary omits the AdminCap."),
            correction=make_draft(summary="AdminCap holder can drain the vault."),
        )
        result = await make_pipeline(backend).run(make_snapshot())

        assert result.corrected
        assert result.history[-3:] == [PipelineStage.CRITIQUED, PipelineStage.CORRECTED, PipelineStage.FINALIZED]
        assert backend.calls["critique"] == 1
        assert backend.calls["correct"] == 1
        assert backend.received["correct"]["feedback"] == "Summary omits the AdminCap."
        assert result.card.summary == "AdminCap holder can drain the vault."
        assert result.card.risk_score == 100

    async def test_unbacked_functions_dropped(self, make_pipeline):
        backend = ScriptedBackend(draft=make_draft(["vault::withdraw_all", "mint_unlimited"]))
        result = await make_pipeline(backend).run(make_snapshot())
        assert [f.function_name for f in result.card.risky_functions] == ["vault::withdraw_all"]

    async def test_stage_failure_propagates(self, make_pipeline):
        backend = ScriptedBackend(fail_stage="write_report")
        with pytest.raises(RuntimeError, match="write_report exploded"):
            await make_pipeline(backend).run(make_snapshot())
        assert "critique" not in backend.calls


class TestLLMScoring:
    """Test cross-checking the model score against the deterministic score."""

    async def test_divergent_llm_score_ignored(self, make_pipeline):
        backend = ScriptedBackend(llm_score=RiskScoreReport(risk_score=60, justification="model"))
        result = await make_pipeline(backend, llm_scoring=True).run(make_snapshot())

        assert backend.calls["score"] == 1
        assert result.card.risk_score == 100
        assert result.score_report.justification != "model"

    async def test_agreeing_llm_score_used(self, make_pipeline):
        backend = ScriptedBackend(llm_score=RiskScoreReport(risk_score=100, justification="model"))
        result = await make_pipeline(backend, llm_scoring=True).run(make_snapshot())

        assert result.card.risk_score == 100
        assert result.score_report.justification == "model"


class TestFilterReportFunctions:
    """Test removal of report entries without a backing finding."""

    def test_nothing_dropped(self):
        draft = make_draft(["withdraw_all"])
        filtered, dropped = filter_report_functions(draft, [make_finding()])
        assert filtered is draft
        assert dropped == []

    def test_short_names_compared(self):
        draft = make_draft(["Vault::Withdraw_All", "other::ghost"])
        filtered, dropped = filter_report_functions(draft, [make_finding(function_name="withdraw_all")])
        assert [f.function_name for f in filtered.risky_functions] == ["Vault::Withdraw_All"]
        assert dropped == ["other::ghost"]
