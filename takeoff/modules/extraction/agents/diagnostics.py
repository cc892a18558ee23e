"""Agent pipeline diagnostics: per-agent success rates, issues, recommendations."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel

MAX_RECOMMENDATIONS = 5
FAILURE_RATE_THRESHOLD = 0.2


class AgentErrorSummary(BaseModel):
    agent_name: str
    agent_order: int
    total_attempts: int
    success_count: int
    failure_count: int
    timeout_count: int
    success_rate: float
    errors: list[dict[str, Any]] = []


class PipelineDiagnostics(BaseModel):
    total_results: int
    total_agents: int
    successful_agents: int = 0
    failed_agents: int = 0
    overall_success_rate: float = 100.0
    agent_errors: list[AgentErrorSummary] = []
    critical_issues: list[str] = []
    recommendations: list[str] = []


def analyze(history: list[list[dict[str, Any]]], total_agents: int) -> PipelineDiagnostics:
    """Summarize per-item agent metadata (``history[i]`` is item i's list)."""
    if not history:
        return PipelineDiagnostics(total_results=0, total_agents=total_agents)

    total_results = len(history)
    grouped: dict[tuple[str, int], list[dict[str, Any]]] = {}
    for item_meta in history:
        for meta in item_meta:
            grouped.setdefault((meta["agentName"], meta["agentOrder"]), []).append(meta)

    summaries: list[AgentErrorSummary] = []
    issues: list[str] = []
    successful_agents = 0
    failed_agents = 0

    for (name, order), metas in grouped.items():
        success = sum(1 for m in metas if m["status"] == "success")
        failures = sum(1 for m in metas if m["status"] == "failed")
        timeouts = sum(1 for m in metas if m["status"] == "timeout")
        rate = success / len(metas) * 100

        if rate == 100:
            successful_agents += 1
        else:
            failed_agents += 1

        errors = [
            {"resultIndex": idx, "error": m.get("error") or "Unknown error", "status": m["status"]}
            for idx, m in enumerate(metas)
            if m["status"] in ("failed", "timeout")
        ]
        summaries.append(
            AgentErrorSummary(
                agent_name=name,
                agent_order=order,
                total_attempts=len(metas),
                success_count=success,
                failure_count=failures,
                timeout_count=timeouts,
                success_rate=rate,
                errors=errors[:3],
            )
        )

        if timeouts:
            issues.append(f'Agent "{name}" timed out {timeouts} times (consider increasing timeout)')
        if failures > total_results * FAILURE_RATE_THRESHOLD:
            issues.append(f'Agent "{name}" has {failures} failures ({rate:.1f}% success rate)')
        json_errors = [e for e in errors if "json" in e["error"].lower()]
        if json_errors:
            issues.append(f'Agent "{name}" returned invalid JSON {len(json_errors)} times - review prompt')

    total_success = sum(1 for item_meta in history for m in item_meta if m["status"] == "success")
    denominator = total_results * total_agents
    overall = min(100.0, total_success / denominator * 100) if denominator else 100.0

    return PipelineDiagnostics(
        total_results=total_results,
        total_agents=total_agents,
        successful_agents=successful_agents,
        failed_agents=failed_agents,
        overall_success_rate=overall,
        agent_errors=summaries,
        critical_issues=issues,
        recommendations=_recommendations(summaries, overall),
    )


def _recommendations(summaries: list[AgentErrorSummary], overall: float) -> list[str]:
    recs: list[str] = []
    if overall < 50:
        recs.append(
            "Overall agent pipeline success rate is very low. Consider disabling agents or reviewing schemas."
        )
    elif overall < 80:
        recs.append("Agent pipeline success rate below 80%. Review agent prompts for clarity.")

    for summary in summaries:
        name = summary.agent_name
        if summary.success_rate < 50:
            recs.append(
                f'Agent "{name}": Success rate {summary.success_rate:.1f}% - likely has unclear prompt. '
                "Rewrite with explicit format requirements."
            )
        if summary.timeout_count:
            recs.append(
                f'Agent "{name}": Timeouts detected. Consider a simpler prompt, a smaller batch or a higher timeout'
            )
        messages = [e["error"].lower() for e in summary.errors]
        if messages and sum("json" in m for m in messages) > len(messages) * 0.5:
            recs.append(
                f'Agent "{name}": Invalid JSON errors - add to prompt: '
                '"Return ONLY valid JSON. NO markdown code blocks. NO explanations."'
            )
        if any("array" in m for m in messages):
            recs.append(f'Agent "{name}": Not returning arrays - ensure prompt says "Return a JSON array [...]"')

    return recs[:MAX_RECOMMENDATIONS]


def format_for_logging(diagnostics: PipelineDiagnostics) -> str:
    return json.dumps({
        "totalResults": diagnostics.total_results,
        "totalAgents": diagnostics.total_agents,
        "successfulAgents": diagnostics.successful_agents,
        "failedAgents": diagnostics.failed_agents,
        "overallSuccessRate": f"{diagnostics.overall_success_rate:.1f}%",
        "issueCount": len(diagnostics.critical_issues),
        "recommendationCount": len(diagnostics.recommendations),
    })


def format_for_display(diagnostics: PipelineDiagnostics) -> str:
    lines = [
        "Agent Pipeline Summary",
        f"Total Results: {diagnostics.total_results}",
        f"Success Rate: {diagnostics.overall_success_rate:.1f}%",
        f"{diagnostics.successful_agents}/{diagnostics.total_agents} agents successful",
    ]
    if diagnostics.critical_issues:
        lines.append("")
        lines.append("Issues:")
        lines.extend(f"- {issue}" for issue in diagnostics.critical_issues)
    if diagnostics.recommendations:
        lines.append("")
        lines.append("Recommendations:")
        lines.extend(f"- {rec}" for rec in diagnostics.recommendations)
    return "\n".join(lines)
