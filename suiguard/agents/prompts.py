#!/usr/bin/env python3
"""
推理阶段提示词管理模块

集中管理五个阶段（以及纠错阶段）的提示词模板，便于维护和调优。
Safety Card 面向英文用户，提示词与输出均使用英文。
"""

import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..chain.struct_resolver import StructDefinitions
from ..knowledge.cross_module import CrossModuleAnalysisResult, format_cross_module
from ..knowledge.static_analyzer import StaticAnalysisResult, format_static_findings
from ..models.findings import RiskScoreReport, TechnicalFinding
from ..models.package import ExtractedFunction
from ..models.safety_card import DependencyRisk, SafetyCardDraft

# ============================================================================
# 通用片段
# ============================================================================

GOLDEN_RULE = (
    "--- GOLDEN RULE: Your response MUST be ONLY the valid JSON object described in the schema. "
    "Do NOT add any other text, explanations, markdown, or introductory phrases like "
    "\"Here is the JSON:\". Your response must start with { and end with }. ---"
)

STAGE_SYSTEM_PROMPT = (
    "You are part of an automated security review pipeline for Sui Move smart contracts. "
    "Every reply you produce is parsed by a program, so it must be a single JSON object."
)

EVIDENCE_NOT_FOUND_SENTENCE = "Evidence not found in disassembled code"

CRITIQUE_CHECKLIST = (
    "1. Does the summary accurately reflect the severity of the technical findings?",
    "2. Are all critical findings mentioned in the report?",
    "3. Does the risk score match the severity described in the summary?",
    "4. Is the impact_on_user consistent with the identified patterns?",
    "5. Are the rug_pull_indicators backed by actual evidence from the technical findings?",
)

CONTEXTUAL_NOTE_EXAMPLES = (
    "Function is internal-only (not public entry)",
    "Function emits relevant events",
    "Logic seems simple/direct",
    "Logic is complex/conditional",
    "Requires specific Capability object",
    "Checks for Timelock detected",
    "Multi-sig check seems present",
    "No obvious mitigations detected",
    "Function can be called by anyone",
    "Multiple withdrawal functions exist",
    "Can withdraw any Coin type (generic)",
    "Affects core user funds",
)


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


def functions_payload(functions: Iterable[ExtractedFunction]) -> List[Dict[str, Any]]:
    return [f.to_dict() for f in functions]


def structs_payload(structs: Mapping[str, Sequence[Any]]) -> Dict[str, List[Dict[str, str]]]:
    return {sid: [f.to_dict() for f in fields] for sid, fields in structs.items()}


def dependencies_payload(risks: Iterable[DependencyRisk]) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in risks]


def findings_payload(findings: Iterable[TechnicalFinding]) -> List[Dict[str, Any]]:
    return [
        f.model_dump(mode="json", exclude={"evidence_verified"})
        for f in findings
    ]


# ============================================================================
# Stage 1: Triage
# ============================================================================

TRIAGE_PROMPT_TEMPLATE = """
You are a Junior Security Auditor performing initial triage.

Your task: Scan the following list of public functions and flag any that MIGHT be risky based on:
1. Function names (e.g., 'withdraw', 'mint', 'pause', 'upgrade', 'destroy')
2. Parameters (e.g., TreasuryCap, AdminCap, Coin, Balance)
3. Struct field details (e.g., a struct with 'balance' or 'supply' fields)
4. Inherited risks from dependencies

---PUBLIC FUNCTIONS---
{functions}
---END PUBLIC FUNCTIONS---

---STRUCT DEFINITIONS (for context)---
{structs}
---END STRUCT DEFINITIONS---

---DEPENDENCY RISKS (Inherited from imported packages)---
{dependencies}
---END DEPENDENCY RISKS---

---STATIC ANALYSIS (Deterministic pattern matches)---
{static_analysis}
---END STATIC ANALYSIS---

---CROSS-MODULE CAPABILITY FLOW---
{cross_module}
---END CROSS-MODULE CAPABILITY FLOW---

IMPORTANT:
- Flag functions that could allow admin control, fund withdrawal, minting, pausing, or upgrading.
- If dependency risks exist, consider that this contract inherits those risks.
- Functions named in STATIC ANALYSIS or CROSS-MODULE CAPABILITY FLOW matched deterministic checks; flag them.
- Prefer recall: when in doubt, flag the function. A later stage performs the deep analysis.
- Standard library functions (0x1::, 0x2::) are usually safe.

{golden_rule}

Return only a JSON object with this schema:
{{
  "potentially_risky_functions": ["function_name_1", "function_name_2"]
}}
"""


def build_triage_prompt(
        functions: Sequence[ExtractedFunction],
        structs: StructDefinitions,
        dependency_risks: Sequence[DependencyRisk],
        static_analysis: Optional[StaticAnalysisResult] = None,
        cross_module: Optional[CrossModuleAnalysisResult] = None,
) -> str:
    return TRIAGE_PROMPT_TEMPLATE.format(
        functions=_dump(functions_payload(functions)),
        structs=_dump(structs_payload(structs)),
        dependencies=_dump(dependencies_payload(dependency_risks)),
        static_analysis=format_static_findings(static_analysis),
        cross_module=format_cross_module(cross_module),
        golden_rule=GOLDEN_RULE,
    )


# ============================================================================
# Stage 2: Technical Analysis
# ============================================================================

TECHNICAL_ANALYSIS_PROMPT_TEMPLATE = """
You are a Senior Sui/Move Technical Security Auditor with forensic code analysis expertise.

A junior auditor has flagged these functions as potentially risky based on names/params: {flagged}

Your task is to perform a deep technical analysis on ONLY these flagged functions.

Use the KNOWLEDGE BASE below, the FULL FUNCTION LIST (with parameters and struct definitions),
and the DISASSEMBLED CODE provided for forensic evidence.

For each flagged function, determine:
1. What is the technical risk?
2. Which specific pattern from the KNOWLEDGE BASE does it match, and what is its PATTERN ID?
3. What is the SEVERITY LEVEL of that pattern in the Knowledge Base?
4. What parameters or struct fields reveal the vulnerability?
5. How do DEPENDENCY RISKS amplify the danger (if applicable)?
6. What CONTEXTUAL OBSERVATIONS can you make that might affect risk scoring?

---KNOWLEDGE BASE---
{knowledge_base}
---END KNOWLEDGE BASE---

---FULL FUNCTION LIST (Context)---
Public Functions: {functions}

Struct Definitions: {structs}

Dependency Risks: {dependencies}
---END FULL FUNCTION LIST---

---DISASSEMBLED CODE (For Evidence Extraction)---
{disassembled}
---END DISASSEMBLED CODE---

---STATIC ANALYSIS (Verified pattern matches)---
{static_analysis}
---END STATIC ANALYSIS---

---CROSS-MODULE CAPABILITY FLOW---
{cross_module}
---END CROSS-MODULE CAPABILITY FLOW---

---FLAGGED FUNCTIONS FOR DEEP ANALYSIS---
{flagged}
---END FLAGGED FUNCTIONS---

IMPORTANT ANALYSIS GUIDELINES:
- Match each function to a SPECIFIC pattern ID from the Knowledge Base: {pattern_ids}
- Copy the Severity field from the matched pattern's definition in the Knowledge Base.
- Explain the ROOT CAUSE using struct field details and the specific parameters involved.
- Only report functions that actually match a pattern. Omit flagged functions that are safe.
- Treat STATIC ANALYSIS and CROSS-MODULE results as verified facts, but still quote the evidence yourself.

CHAIN OF EVIDENCE REQUIREMENT:
- For every finding, quote the relevant lines of the DISASSEMBLED CODE literally in evidence_code_snippet.
- The snippet should be concise but sufficient to prove the risk exists.
- If the evidence is unclear or unavailable, write exactly "{evidence_not_found}".

CONTEXTUAL OBSERVATIONS TO REPORT:
For each finding, provide contextual_notes that may affect risk scoring, for example:
{note_examples}
- Any other observation that would influence the Score Modifiers from the Knowledge Base

{golden_rule}

Return only a JSON object with this schema:
{{
  "technical_findings": [
    {{
      "function_name": "string",
      "technical_reason": "Detailed technical explanation of the risk",
      "matched_pattern_id": "string (e.g., CRITICAL-01, HIGH-02, MEDIUM-03)",
      "severity": "Critical | High | Medium | Low",
      "contextual_notes": ["string"],
      "evidence_code_snippet": "string"
    }}
  ]
}}
"""


def build_technical_analysis_prompt(
        functions: Sequence[ExtractedFunction],
        flagged: Sequence[str],
        structs: StructDefinitions,
        dependency_risks: Sequence[DependencyRisk],
        disassembled_code: Mapping[str, str],
        knowledge_base_text: str,
        pattern_ids: Sequence[str],
        static_analysis: Optional[StaticAnalysisResult] = None,
        cross_module: Optional[CrossModuleAnalysisResult] = None,
) -> str:
    return TECHNICAL_ANALYSIS_PROMPT_TEMPLATE.format(
        flagged=json.dumps(list(flagged), ensure_ascii=False),
        knowledge_base=knowledge_base_text,
        functions=_dump(functions_payload(functions)),
        structs=_dump(structs_payload(structs)),
        dependencies=_dump(dependencies_payload(dependency_risks)),
        disassembled=_dump(dict(disassembled_code)),
        static_analysis=format_static_findings(static_analysis),
        cross_module=format_cross_module(cross_module),
        pattern_ids=", ".join(pattern_ids),
        evidence_not_found=EVIDENCE_NOT_FOUND_SENTENCE,
        note_examples="\n".join(f'- "{note}"' for note in CONTEXTUAL_NOTE_EXAMPLES),
        golden_rule=GOLDEN_RULE,
    )


# ============================================================================
# Stage 3: Risk Scoring
# ============================================================================

SCORING_PROMPT_TEMPLATE = """
You are a meticulous Sui Smart Contract Quantitative Risk Assessor. Calculate a precise numeric
risk score (0-100) based only on the technical findings below, using the Knowledge Base and the
scoring algorithm exactly as written. Provide a step-by-step justification and your confidence level.

--- TECHNICAL FINDINGS (Includes Contextual Notes) ---
{findings}
--- END FINDINGS ---

--- KNOWLEDGE BASE (For Reference) ---
{knowledge_base}
--- END KNOWLEDGE BASE ---

--- SCORING ALGORITHM ---
{algorithm}
--- END SCORING ALGORITHM ---

{golden_rule}

Return only a JSON object with this schema:
{{
  "risk_score": 0,
  "justification": "Step-by-step calculation: base scores, every modifier, combination effects, total before clamping, final score.",
  "confidence": "High | Medium | Low"
}}
"""


def format_findings_summary(findings: Iterable[TechnicalFinding]) -> str:
    lines = []
    for f in findings:
        context = f" | Context: {', '.join(f.contextual_notes)}" if f.contextual_notes else ""
        lines.append(
            f"- Func: {f.function_name}, Pattern: {f.matched_pattern_id} ({f.severity.value})"
            f"{context}, Reason: {f.technical_reason}"
        )
    return "\n".join(lines) or "- (no findings)"


def build_scoring_prompt(
        findings: Sequence[TechnicalFinding],
        knowledge_base_text: str,
        algorithm_text: str,
) -> str:
    return SCORING_PROMPT_TEMPLATE.format(
        findings=format_findings_summary(findings),
        knowledge_base=knowledge_base_text,
        algorithm=algorithm_text,
        golden_rule=GOLDEN_RULE,
    )


# ============================================================================
# Stage 4: Report Writing
# ============================================================================

REPORT_SCHEMA = """{
  "summary": "1-2 sentence summary of the contract's risk profile",
  "risky_functions": [
    {
      "function_name": "...",
      "reason": "User-friendly explanation"
    }
  ],
  "rug_pull_indicators": [
    {
      "pattern_name": "owner_can_withdraw_all",
      "evidence": "Specific function/parameter that proves this pattern"
    }
  ],
  "impact_on_user": "Clear explanation of how users are affected",
  "why_risky_one_liner": "One sentence explaining the main risk"
}"""

REPORT_PROMPT_TEMPLATE = """
You are a Security Communicator. Your job is to translate the following technical report and score
into a user-friendly JSON report.

TECHNICAL FINDINGS:
{findings}

RISK SCORE REPORT:
{score_report}

DEPENDENCY RISKS (Inherited risks from imported packages):
{dependencies}

IMPORTANT RULES:
- Do NOT make up new facts. Every risky function must come from the technical findings.
- Do NOT change or restate a different score. The score is final.
- Only translate technical language to user-friendly language.
- Be clear and direct about risks.
- If dependency risks exist, mention the inherited risks in the summary and impact_on_user.

CHAIN OF EVIDENCE INTEGRATION:
- In each risky_functions reason, include the evidence_code_snippet provided by the technical analyst
  (e.g., "This function allows admin withdrawal. Evidence: <code snippet>").
- If no evidence snippet is available, omit it from the reason.

{golden_rule}

Return only a JSON object with this schema:
{schema}
"""


def build_report_prompt(
        findings: Sequence[TechnicalFinding],
        score_report: RiskScoreReport,
        dependency_risks: Sequence[DependencyRisk],
) -> str:
    return REPORT_PROMPT_TEMPLATE.format(
        findings=_dump(findings_payload(findings)),
        score_report=_dump(score_report.model_dump(mode="json")),
        dependencies=_dump(dependencies_payload(dependency_risks)),
        golden_rule=GOLDEN_RULE,
        schema=REPORT_SCHEMA,
    )


# ============================================================================
# Stage 5: Critique
# ============================================================================

CRITIQUE_PROMPT_TEMPLATE = """
You are a Quality Assurance Critic. Your only job is to validate consistency.

TECHNICAL FINDINGS (The Facts):
{findings}

FINAL REPORT DRAFT:
{draft}

VALIDATION QUESTIONS:
{checklist}

{golden_rule}

Return only a JSON object with this schema:
{{
  "is_consistent": true,
  "feedback": "If inconsistent, explain what needs to be fixed. If consistent, say 'Report is accurate.'"
}}
"""


def build_critique_prompt(
        findings: Sequence[TechnicalFinding],
        draft: SafetyCardDraft,
        risk_score: Optional[int] = None,
) -> str:
    draft_payload = draft.model_dump(mode="json")
    if risk_score is not None:
        draft_payload["risk_score"] = risk_score
    return CRITIQUE_PROMPT_TEMPLATE.format(
        findings=_dump(findings_payload(findings)),
        draft=_dump(draft_payload),
        checklist="\n".join(CRITIQUE_CHECKLIST),
        golden_rule=GOLDEN_RULE,
    )


# ============================================================================
# 纠错阶段: 按 Critic 反馈重写报告
# ============================================================================

CORRECTION_PROMPT_TEMPLATE = """
You are a Security Communicator. The Quality Assurance team has provided feedback on your report.

ORIGINAL REPORT:
{draft}

FEEDBACK FROM QA:
{feedback}

Your task: Rewrite the report to address the feedback. Keep the same schema structure.
Do NOT add functions that are not in the original technical findings and do NOT change the score.

{golden_rule}

Return only a JSON object with this schema:
{schema}
"""


def build_correction_prompt(draft: SafetyCardDraft, feedback: str) -> str:
    return CORRECTION_PROMPT_TEMPLATE.format(
        draft=_dump(draft.model_dump(mode="json")),
        feedback=feedback or "(no feedback provided)",
        golden_rule=GOLDEN_RULE,
        schema=REPORT_SCHEMA,
    )


__all__ = [
    "GOLDEN_RULE",
    "STAGE_SYSTEM_PROMPT",
    "CRITIQUE_CHECKLIST",
    "build_triage_prompt",
    "build_technical_analysis_prompt",
    "format_findings_summary",
    "build_scoring_prompt",
    "build_report_prompt",
    "build_critique_prompt",
    "build_correction_prompt",
]
