"""
Tests for deterministic static pattern detection
"""

import pytest

from suiguard.chain.extractor import extract_package_data
from suiguard.knowledge.static_analyzer import (
    MatchConfidence,
    StaticAnalysisResult,
    StaticPatternAnalyzer,
    format_static_findings,
    function_bodies,
)
from suiguard.models.findings import Severity
from suiguard.models.package import ExtractedFunction, ExtractedPackage, ParamKind, ParamType

from .conftest import DISASSEMBLY, make_modules

TWO_FUNCTIONS = """module 0xfeed::pool {
struct Pool has key {
    id: UID
}

public deposit(Arg0: &mut Pool, Arg1: Coin<SUI>) {
B0:
    0: Call coin::into_balance<SUI>(Coin<SUI>): Balance<SUI>
    1: Ret
}
entry public set_fee(Arg0: &mut Pool, Arg1: u64) {
B0:
    0: MoveLoc[1](Arg1: u64)
    1: Call event::emit<FeeChanged>(FeeChanged)
    2: Ret
}
}"""


def struct_ref(struct_id: str, mutable: bool = False) -> ParamType:
    return ParamType(kind=ParamKind.REFERENCE, value=struct_id, mutable=mutable, referent=ParamKind.STRUCT)


def analyze(*functions: ExtractedFunction, code=None) -> StaticAnalysisResult:
    return StaticPatternAnalyzer().analyze(ExtractedPackage(functions=functions, disassembled_code=code or {}))


def ids(result: StaticAnalysisResult):
    return [f.pattern_id for f in result.findings]


class TestFunctionBodies:
    """Test splitting disassembly into per-function bodies."""

    def test_split(self):
        bodies = function_bodies(TWO_FUNCTIONS)
        assert list(bodies) == ["deposit", "set_fee"]
        assert "coin::into_balance" in bodies["deposit"]
        assert "event::emit" not in bodies["deposit"]
        assert bodies["set_fee"].startswith("entry public set_fee")

    def test_module_and_struct_lines_ignored(self):
        assert "withdraw_all" in function_bodies(DISASSEMBLY)
        assert function_bodies("module 0x1::m {\nstruct S has key {\n}\n}") == {}
        assert function_bodies("") == {}


class TestStaticPatternAnalyzer:
    """Test pattern matching over extracted packages."""

    def test_admin_withdraw_fixture(self):
        extracted = extract_package_data(make_modules(), {"vault": DISASSEMBLY})
        result = StaticPatternAnalyzer().analyze(extracted)

        assert ids(result) == [
            "STATIC-ADMINCAP-TRANSFER",
            "STATIC-GENERIC-DRAIN",
            "STATIC-BALANCE-DRAIN",
            "STATIC-MISSING-EVENTS",
        ]
        assert result.findings[0].confidence == MatchConfidence.DEFINITE
        assert result.findings[0].qualified_name == "vault::withdraw_all"
        assert all(f.confidence == MatchConfidence.LIKELY for f in result.findings[1:])
        assert result.flagged_functions() == ["withdraw_all"]
        assert result.analyzed_modules == ["vault"]
        assert result.severity_counts()[Severity.HIGH] == 2

    def test_bytecode_only_in_own_body(self):
        funcs = (
            ExtractedFunction("pool", "deposit", (struct_ref("0xfeed::pool::Pool", mutable=True),)),
            ExtractedFunction("pool", "set_fee", (struct_ref("0xfeed::pool::Pool", mutable=True),)),
        )
        result = analyze(*funcs, code={"pool": TWO_FUNCTIONS})

        by_function = {}
        for finding in result.findings:
            by_function.setdefault(finding.function_name, []).append(finding.pattern_id)
        assert "STATIC-FEE-MANIPULATION" in by_function["set_fee"]
        assert "STATIC-FEE-MANIPULATION" not in by_function["deposit"]
        # 只有 set_fee 发出事件，deposit 不是关键操作
        assert "STATIC-MISSING-EVENTS" not in ids(result)

    def test_treasury_cap_signature(self):
        func = ExtractedFunction("token", "mint_to", (
            struct_ref("0x2::coin::TreasuryCap", mutable=True),
            ParamType(kind=ParamKind.PRIMITIVE, value="U64"),
        ))
        finding = analyze(func).findings[0]
        assert finding.pattern_id == "STATIC-TREASURYCAP-PUBLIC"
        assert finding.severity == Severity.CRITICAL
        assert finding.confidence == MatchConfidence.DEFINITE
        assert "TreasuryCap" in finding.evidence

    def test_shared_mutation_ignores_tx_context(self):
        only_ctx = ExtractedFunction("pool", "touch", (struct_ref("0x2::tx_context::TxContext", mutable=True),))
        assert "STATIC-SHARED-MUT-NO-CAP" not in ids(analyze(only_ctx))

        shared = ExtractedFunction("pool", "touch", (struct_ref("0xfeed::pool::Pool", mutable=True),))
        assert ids(analyze(shared)) == ["STATIC-SHARED-MUT-NO-CAP"]

        guarded = ExtractedFunction("pool", "touch", (
            struct_ref("0xfeed::pool::Pool", mutable=True),
            struct_ref("0xfeed::pool::OwnerCap"),
        ))
        assert "STATIC-SHARED-MUT-NO-CAP" not in ids(analyze(guarded))

    def test_coin_sent_to_address_parameter(self):
        code = {"pay": (
            "public pay(Arg0: Coin<SUI>, Arg1: address) {\n"
            "B0:\n"
            "    0: Call transfer::public_transfer<Coin<SUI>>(Coin<SUI>, address)\n"
            "    1: Call coin::value<SUI>(&Coin<SUI>): u64\n"
            "}\n"
        )}
        func = ExtractedFunction("pay", "pay", (
            ParamType(kind=ParamKind.STRUCT, value="0x2::coin::Coin", type_args=("0x2::sui::SUI",)),
            ParamType(kind=ParamKind.PRIMITIVE, value="Address"),
        ))
        assert "STATIC-COIN-SPLIT-TRANSFER" in ids(analyze(func, code=code))

    def test_clean_function(self):
        func = ExtractedFunction("math", "add", (ParamType(kind=ParamKind.PRIMITIVE, value="U64"),))
        result = analyze(func)
        assert result.findings == []
        assert len(result.patterns_checked) == 13


class TestFormatStaticFindings:
    """Test the prompt text block."""

    def test_texts(self):
        assert format_static_findings(None) == "No static analysis performed."
        assert format_static_findings(StaticAnalysisResult()) == "No static patterns detected."

        text = format_static_findings(StaticPatternAnalyzer().analyze(
            extract_package_data(make_modules(), {"vault": DISASSEMBLY})
        ))
        assert text.startswith("Static Analysis detected 4 pattern(s):")
        assert "- [Critical] STATIC-ADMINCAP-TRANSFER" in text
        assert "Function: vault::withdraw_all" in text
        assert "Confidence: definite" in text

    @pytest.mark.parametrize("finding_index", [0, 1])
    def test_to_dict(self, finding_index):
        result = StaticPatternAnalyzer().analyze(extract_package_data(make_modules(), {"vault": DISASSEMBLY}))
        data = result.findings[finding_index].to_dict()
        assert data["function"] == "vault::withdraw_all"
        assert data["severity"] in ("Critical", "High")
