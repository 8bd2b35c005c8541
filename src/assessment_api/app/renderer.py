"""Report renderers: turn a completed assessment into an HTML artifact.

``HtmlReportRenderer`` renders straight from the stored assessment. When an
LLM adapter is supplied it first asks the model for a detailed assessment
(overall score, category health, remediation roadmap) and renders that too.
"""

from __future__ import annotations

from html import escape
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field, ValidationError

from .llm import LLMAdapter
from .models import Task

REPORT_SYSTEM_PROMPT = """You are a senior security consultant writing a detailed \
security health check report.

The report should include:
1. An overall security score (0-100)
2. A detailed executive summary (2-3 paragraphs)
3. Category health scores for: Network Security, Identity & Access, Data Encryption, \
API Integrity
4. Detailed risk items with CVSS scores and remediation suggestions
5. A phased remediation roadmap

Respond ONLY with valid JSON in this exact format:
{
  "overallScore": <number 0-100>,
  "executiveSummary": "<detailed 2-3 paragraph summary>",
  "categoryHealth": [{"name": "<category>", "score": <0-100>}],
  "risks": [
    {
      "level": "HIGH|MEDIUM|LOW",
      "category": "<category name>",
      "description": "<risk description>",
      "cvss": <number 0-10>,
      "remediation": "<remediation suggestion>"
    }
  ],
  "remediationRoadmap": [
    {
      "phase": 1,
      "title": "<phase title>",
      "urgency": "Urgent|Week 2|Month 1",
      "description": "<what to do>",
      "expectedBoost": "+X%"
    }
  ]
}"""


class ReportRenderer(Protocol):
    def render(self, task: Task) -> str: ...


class RiskItem(BaseModel):
    level: Literal["HIGH", "MEDIUM", "LOW"] = "LOW"
    category: str = ""
    description: str = ""
    cvss: float | None = Field(default=None, ge=0, le=10)
    remediation: str | None = None


class CategoryHealth(BaseModel):
    name: str
    score: int = Field(ge=0, le=100)


class RemediationPhase(BaseModel):
    phase: int
    title: str
    urgency: str = ""
    description: str = ""
    expected_boost: str = Field(default="", alias="expectedBoost")


class DetailedAssessment(BaseModel):
    overall_score: int = Field(alias="overallScore", ge=0, le=100)
    executive_summary: str = Field(alias="executiveSummary", min_length=1)
    category_health: list[CategoryHealth] = Field(default_factory=list, alias="categoryHealth")
    risks: list[RiskItem] = Field(default_factory=list)
    remediation_roadmap: list[RemediationPhase] = Field(
        default_factory=list, alias="remediationRoadmap"
    )


class HtmlReportRenderer:
    def __init__(self, *, llm_adapter: LLMAdapter | None = None, timeout_s: float = 120.0) -> None:
        self.llm_adapter = llm_adapter
        self.timeout_s = timeout_s

    def render(self, task: Task) -> str:
        if task.status != "COMPLETED" or task.risk_counts is None:
            raise ValueError(f"Task assessment not completed: {task.task_id}")
        detailed = self._detailed_assessment(task) if self.llm_adapter is not None else None
        return render_report_html(task, detailed)

    def _detailed_assessment(self, task: Task) -> DetailedAssessment:
        counts = task.risk_counts
        risks = _stored_risks(task)
        user_prompt = (
            "Generate a detailed security health check report for:\n\n"
            f"High Risk Issues: {counts.high}\n"
            f"Medium Risk Issues: {counts.medium}\n"
            f"Low Risk Issues: {counts.low}\n"
            f"Initial Summary: {task.assessment_summary or 'No summary available'}\n\n"
        )
        if risks:
            user_prompt += "Identified Risks:\n" + "\n".join(
                f"- [{risk.level}] {risk.category}: {risk.description}" for risk in risks
            )
        return self.llm_adapter.generate_structured(
            system_prompt=REPORT_SYSTEM_PROMPT,
            user_prompt=user_prompt,
            response_model=DetailedAssessment,
            timeout_s=self.timeout_s,
        )


def _stored_risks(task: Task) -> list[RiskItem]:
    raw_risks: Any = (task.raw_assessment or {}).get("risks")
    if not isinstance(raw_risks, list):
        return []
    risks: list[RiskItem] = []
    for item in raw_risks:
        if not isinstance(item, dict):
            continue
        try:
            risks.append(RiskItem.model_validate(item))
        except ValidationError:
            continue
    return risks


def _risk_rows(risks: list[RiskItem]) -> str:
    rows = []
    for risk in risks:
        cvss = f"{risk.cvss:.1f}" if risk.cvss is not None else "N/A"
        rows.append(
            f'<tr class="risk-{risk.level.lower()}">'
            f"<td>{risk.level}</td>"
            f"<td>{escape(risk.description)}</td>"
            f"<td>{escape(risk.category)}</td>"
            f"<td>{cvss}</td>"
            f"<td>{escape(risk.remediation or '')}</td>"
            "</tr>"
        )
    return "\n".join(rows)


def render_report_html(task: Task, detailed: DetailedAssessment | None = None) -> str:
    counts = task.risk_counts
    risks = detailed.risks if detailed is not None and detailed.risks else _stored_risks(task)
    summary = detailed.executive_summary if detailed else (task.assessment_summary or "")

    sections = [
        "<section><h2>Risk Summary</h2>"
        f'<ul class="risk-counts"><li>High: {counts.high}</li>'
        f"<li>Medium: {counts.medium}</li><li>Low: {counts.low}</li></ul>"
        "</section>",
        f"<section><h2>Executive Summary</h2><p>{escape(summary)}</p></section>",
    ]
    if detailed is not None:
        sections.insert(
            0,
            f'<section><h2>Overall Score</h2><p class="score">{detailed.overall_score}/100</p>'
            "</section>",
        )
        if detailed.category_health:
            bars = "".join(
                f"<li>{escape(item.name)}: {item.score}%</li>" for item in detailed.category_health
            )
            sections.append(f"<section><h2>Category Health</h2><ul>{bars}</ul></section>")
    if risks:
        sections.append(
            "<section><h2>Findings</h2><table>"
            "<thead><tr><th>Severity</th><th>Finding</th><th>Category</th>"
            "<th>CVSS</th><th>Remediation</th></tr></thead>"
            f"<tbody>{_risk_rows(risks)}</tbody></table></section>"
        )
    if detailed is not None and detailed.remediation_roadmap:
        phases = "".join(
            f"<li><strong>Phase {phase.phase}: {escape(phase.title)}</strong> "
            f"({escape(phase.urgency)}) {escape(phase.description)} "
            f"Expected Score Boost: {escape(phase.expected_boost)}</li>"
            for phase in detailed.remediation_roadmap
        )
        sections.append(f"<section><h2>Remediation Roadmap</h2><ol>{phases}</ol></section>")

    body = "\n".join(sections)
    return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>Security Health Check - {escape(task.task_id)}</title>
</head>
<body>
  <header>
    <h1>Security Health Check Report</h1>
    <p>Task {escape(task.task_id)} &middot; submission {escape(task.submission_ref)}</p>
  </header>
  <main>
{body}
  </main>
</body>
</html>
"""
