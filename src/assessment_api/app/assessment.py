"""Assessment clients: turn questionnaire content into risk counts + summary.

Two implementations share the ``AssessmentClient`` interface:
- ``HeuristicAssessmentClient``: deterministic, counts risks already detected
  by the collecting agent. Used when no LLM is configured.
- ``LLMAssessmentClient``: asks an LLM for a JSON verdict and parses it.

LLM replies are untrusted. The adapter validates them against
``AssessmentReply``; a reply that fails validation becomes a failed
assessment and is never defaulted to zero risk.
"""


from __future__ import annotations

import json
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from .llm import LLMAdapter
from .models import AssessmentResult, RiskCounts, Submission

ASSESSMENT_SYSTEM_PROMPT = """You are a security risk assessment expert. \
Analyze the following security questionnaire responses and identify potential risks.

For each identified risk, categorize it as:
- HIGH RISK: Critical security vulnerabilities, missing essential controls, or practices \
that could lead to immediate security breaches
- MEDIUM RISK: Significant gaps in security practices that should be addressed but don't \
pose immediate threats
- LOW RISK: Minor improvements needed or best practices not fully implemented

Respond in the following JSON format only:
{
  "highRiskCount": <number>,
  "mediumRiskCount": <number>,
  "lowRiskCount": <number>,
  "summary": "<brief 2-3 sentence summary of the overall security posture>",
  "risks": [
    {
      "level": "HIGH|MEDIUM|LOW",
      "category": "<security category>",
      "description": "<brief description of the risk>"
    }
  ]
}"""


class AssessmentClient(Protocol):
    def assess(self, submission: Submission) -> AssessmentResult: ...


class AssessmentReply(BaseModel):
    """Shape an LLM reply must have to count as an assessment."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, str_strip_whitespace=True)

    high_risk_count: int = Field(alias="highRiskCount", ge=0)
    medium_risk_count: int = Field(alias="mediumRiskCount", ge=0)
    low_risk_count: int = Field(alias="lowRiskCount", ge=0)
    summary: str = Field(min_length=1)


def format_submission_for_prompt(submission: Submission) -> str:
    """Render sections and answers as the markdown block sent to the model."""
    formatted = ""
    for section in submission.sections:
        formatted += f"## {section.title}\n\n"
        for answer in section.answers:
            if answer.answer_text:
                answer_value = answer.answer_text
            elif answer.answer_json is not None:
                answer_value = json.dumps(answer.answer_json, sort_keys=True)
            else:
                answer_value = "No answer provided"
            formatted += f"**{answer.question_code}**: {answer.question_text}\n"
            formatted += f"Answer: {answer_value}\n\n"
    return formatted


def assessment_from_reply(reply: AssessmentReply) -> AssessmentResult:
    return AssessmentResult(
        risk_counts=RiskCounts(
            high=reply.high_risk_count,
            medium=reply.medium_risk_count,
            low=reply.low_risk_count,
        ),
        summary=reply.summary,
        raw=reply.model_dump(by_alias=True),
    )


class LLMAssessmentClient:
    def __init__(self, *, llm_adapter: LLMAdapter, timeout_s: float = 60.0) -> None:
        self.llm_adapter = llm_adapter
        self.timeout_s = timeout_s

    def assess(self, submission: Submission) -> AssessmentResult:
        user_prompt = (
            "Please analyze the following security questionnaire and provide a risk "
            f"assessment:\n\n{format_submission_for_prompt(submission)}"
        )
        reply = self.llm_adapter.generate_structured(
            system_prompt=ASSESSMENT_SYSTEM_PROMPT,
            user_prompt=user_prompt,
            response_model=AssessmentReply,
            timeout_s=self.timeout_s,
        )
        return assessment_from_reply(reply)


class HeuristicAssessmentClient:
    """Deterministic assessment from risks the collecting agent already flagged."""

    _BUCKETS = {"critical": "high", "high": "high", "medium": "medium", "low": "low"}

    def assess(self, submission: Submission) -> AssessmentResult:
        counts = {"high": 0, "medium": 0, "low": 0}
        risks: list[dict[str, str]] = []
        for section in submission.sections:
            for answer in section.answers:
                for risk in answer.detected_risks:
                    bucket = self._BUCKETS.get(risk.severity)
                    if bucket is None:
                        continue
                    counts[bucket] += 1
                    risks.append(
                        {
                            "level": bucket.upper(),
                            "category": section.title,
                            "description": risk.description or answer.question_text,
                        }
                    )
        total = sum(counts.values())
        if total == 0:
            summary = "No risks were detected in the submitted answers."
        else:
            summary = (
                f"{total} risk(s) detected: {counts['high']} high, "
                f"{counts['medium']} medium, {counts['low']} low."
            )
        raw = {
            "highRiskCount": counts["high"],
            "mediumRiskCount": counts["medium"],
            "lowRiskCount": counts["low"],
            "summary": summary,
            "risks": risks,
        }
        return AssessmentResult(risk_counts=RiskCounts(**counts), summary=summary, raw=raw)
