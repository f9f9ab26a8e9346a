"""Execution reporter - scores, recommendations and text/json/csv rendering."""
import csv
import io
import json
from typing import Dict, List, Tuple

from intentflow.models.execution_report import ExecutionReport, RecoveryStatus
from intentflow.utils.config import config


FORMATS = ("text", "json", "csv")

CSV_COLUMNS = [
    "ExecutionID",
    "StepIndex",
    "StepName",
    "PathUsed",
    "FallbackOccurred",
    "Success",
    "Duration",
    "Error",
    "Timestamp",
]


def _clamp(value: float) -> float:
    return round(max(0.0, min(100.0, value)), 1)


# =============================================================================
# SCORES & RECOMMENDATIONS
# =============================================================================

def calculate_scores(report: ExecutionReport) -> Dict[str, float]:
    """Performance, reliability and adaptability, each in [0, 100]."""
    if report.total_steps == 0:
        return {"performance": 0.0, "reliability": 0.0, "adaptability": 0.0}

    fallback_penalty = min(report.fallback_rate * 20 / 100, 20)
    duration_penalty = min(report.total_duration_ms / 60000 * 10, 20)
    performance = report.success_rate - fallback_penalty - duration_penalty

    reliability = report.success_rate + (10 if report.fallback_count == 0 else 0)

    adaptability = report.ai_usage_rate
    if report.fallback_count > 0:
        adaptability += report.recovered_fallback_count / report.fallback_count * 20

    return {
        "performance": _clamp(performance),
        "reliability": _clamp(reliability),
        "adaptability": _clamp(adaptability),
    }


def recommendations(report: ExecutionReport) -> List[str]:
    """Ordered improvement suggestions for a report."""
    suggestions = []

    if report.total_duration_ms > config.slow_run_threshold_ms:
        suggestions.append(
            f"Performance: run took {format_duration(report.total_duration_ms)}; "
            "consider more specific selectors or tighter wait conditions"
        )

    if report.fallback_rate > config.high_fallback_rate:
        suggestions.append(
            f"Reliability: {report.fallback_rate:.0f}% of steps needed a fallback; "
            "review the preferred path of those steps"
        )

    for step in report.steps:
        if not step.success and not step.skipped:
            suggestions.append(f"Step '{step.name}' failed: {step.error or 'unknown error'}")

    if report.ai_usage_count == 0 and report.failed_count > 0:
        suggestions.append(
            "Adaptability: no step ran on the ai path; "
            "consider ai execution or an ai fallback for the failing steps"
        )

    if report.snippet_usage_count == 0 and report.fallback_count > 0:
        suggestions.append(
            "Reliability: fallbacks occurred but no step ran a snippet; "
            "consider recording snippets as fallbacks for critical steps"
        )

    return suggestions


def analyze(report: ExecutionReport) -> Tuple[Dict[str, float], List[str]]:
    """(scores, suggestions) for ReportBuilder.finalize()."""
    return calculate_scores(report), recommendations(report)


def format_duration(ms: int) -> str:
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    return f"{ms / 60000:.1f}m"


def _percent(value: int, total: int) -> int:
    return round(value / total * 100) if total else 0


# =============================================================================
# RENDERING
# =============================================================================

def render(report: ExecutionReport, fmt: str = "text") -> str:
    """
    Render a finalized report.

    Output depends only on the report: the same report and format always
    produce identical text.

    Raises:
        ValueError: Unknown format
    """
    if fmt == "text":
        return render_text(report)
    if fmt == "json":
        return render_json(report)
    if fmt == "csv":
        return render_csv(report)
    raise ValueError(f"Unknown report format '{fmt}' (expected one of: {', '.join(FORMATS)})")


def _scores(report: ExecutionReport) -> Dict[str, float]:
    return report.scores or calculate_scores(report)


def render_json(report: ExecutionReport) -> str:
    scores = _scores(report)
    data = {
        "executionId": report.execution_id,
        "specName": report.spec_name,
        "startedAt": report.started_at,
        "overallSuccess": report.overall_success,
        "cancelled": report.cancelled,
        "totalDuration": report.total_duration_ms,
        "summary": {
            "total": report.total_steps,
            "success": report.success_count,
            "successRate": round(report.success_rate, 1),
            "fallbackRate": round(report.fallback_rate, 1),
            "aiUsageRate": round(report.ai_usage_rate, 1),
        },
        "scores": {
            "performance": scores.get("performance", 0.0),
            "reliability": scores.get("reliability", 0.0),
            "adaptability": scores.get("adaptability", 0.0),
        },
        "steps": [step.to_dict() for step in report.steps],
        "suggestions": list(report.suggestions),
    }
    return json.dumps(data, indent=2)


def render_csv(report: ExecutionReport) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for index, step in enumerate(report.steps):
        writer.writerow([
            report.execution_id,
            index,
            step.name,
            step.path_used.value,
            str(step.fallback_occurred).lower(),
            str(step.success).lower(),
            step.duration_ms,
            step.error or "",
            step.timestamp,
        ])
    return buffer.getvalue()


def render_text(report: ExecutionReport) -> str:
    total = report.total_steps
    scores = _scores(report)
    rule = "=" * 46

    lines = [
        rule,
        "    INTENT SPEC EXECUTION REPORT",
        rule,
        f"Spec: {report.spec_name}",
        f"Execution ID: {report.execution_id}",
        f"Started: {report.started_at}",
        f"Duration: {format_duration(report.total_duration_ms)}",
        f"Overall Success: {'✓ PASSED' if report.overall_success else '✗ FAILED'}"
        + (" (cancelled)" if report.cancelled else ""),
        rule,
        "",
        "EXECUTION SUMMARY",
        "=================",
        f"Total Steps: {total}",
        f"Successful Steps: {report.success_count}",
        f"Failed Steps: {report.failed_count}",
        f"Skipped Steps: {report.skipped_count}",
        f"Success Rate: {_percent(report.success_count, total)}%",
        "",
        "EXECUTION PATHS",
        "===============",
        f"AI Used: {report.ai_usage_count} times ({_percent(report.ai_usage_count, total)}%)",
        f"Snippets Used: {report.snippet_usage_count} times ({_percent(report.snippet_usage_count, total)}%)",
        f"Fallbacks Occurred: {report.fallback_count} times ({_percent(report.fallback_count, total)}%)",
        "",
        "STEP DETAILS",
        "============",
    ]

    for index, step in enumerate(report.steps, 1):
        if step.skipped:
            status = "- SKIPPED"
        else:
            status = f"{'✓' if step.success else '✗'} {step.path_used.value.upper()}"
            if step.fallback_occurred:
                status += " (FALLBACK)"
        lines.append(f"{index}. {step.name}")
        lines.append(f"   Status: {status}")
        lines.append(f"   Duration: {format_duration(step.duration_ms)}")
        if step.recovery not in (RecoveryStatus.NOT_NEEDED, RecoveryStatus.SKIPPED):
            recovery = step.recovery.value
            if step.recovery_source:
                recovery += f" via {step.recovery_source}"
                if step.recovery_strategy:
                    recovery += f" ({step.recovery_strategy})"
            lines.append(f"   Recovery: {recovery}")
        if step.error_category:
            lines.append(f"   Error Category: {step.error_category}")
        if step.error:
            lines.append(f"   Error: {step.error}")
        if step.screenshot:
            lines.append(f"   Screenshot: {step.screenshot}")

    lines += [
        "",
        "USAGE ANALYSIS",
        "==============",
        f"Recovered in path: {report.count_by_recovery(RecoveryStatus.RECOVERED_IN_PATH)}",
        f"Recovered via fallback: {report.count_by_recovery(RecoveryStatus.RECOVERED_VIA_FALLBACK)}",
        f"Failed, no recovery attempted: {report.count_by_recovery(RecoveryStatus.NOT_ATTEMPTED)}",
        f"Recovery exhausted: {report.count_by_recovery(RecoveryStatus.EXHAUSTED)}",
    ]
    fallback_steps = [s.name for s in report.steps if s.fallback_occurred]
    if fallback_steps:
        lines.append("Fallback steps:")
        lines += [f"   - {name}" for name in fallback_steps]

    lines += [
        "",
        "SCORES",
        "======",
        f"Performance: {scores.get('performance', 0.0):.1f}",
        f"Reliability: {scores.get('reliability', 0.0):.1f}",
        f"Adaptability: {scores.get('adaptability', 0.0):.1f}",
        "",
        "RECOMMENDATIONS",
        "===============",
    ]
    if report.suggestions:
        lines += [f"- {s}" for s in report.suggestions]
    else:
        lines.append("✅ No specific recommendations")

    return "\n".join(lines) + "\n"
