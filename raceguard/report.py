"""
Text and JSON renderings of analysis results.
"""

import datetime
from typing import Any, Dict, List, Sequence, Tuple

from raceguard.analyzer import AnalysisResult, __version__
from raceguard.model import Confidence, Finding


def _finding_lines(index: int, finding: Finding) -> List[str]:
    lines = [f"{index}. {finding.message}"]
    lines.append(f"   📍 Locations: {finding.location_a} <-> {finding.location_b}")
    lines.append(f"   🏷️  Class: {finding.class_name}, field: {finding.access_path}")
    if finding.fix_suggestion:
        lines.append(f"   🔧 Fix: {finding.fix_suggestion}")
    lines.append("")
    return lines


def format_analysis_report(result: AnalysisResult, filename: str) -> str:
    """Human-readable report for one analyzed input"""
    report = []

    report.append("=" * 100)
    report.append("RaceGuard Analysis Report")
    report.append("=" * 100)
    report.append(f"Input: {filename}")
    report.append(f"Analysis Time: {result.analysis_time:.3f} seconds")
    report.append(f"Generated: {datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    high = [f for f in result.findings if f.confidence is Confidence.HIGH]
    low = [f for f in result.findings if f.confidence is Confidence.LOW]

    report.append("\n" + "🔍 EXECUTIVE SUMMARY")
    report.append("-" * 50)
    if result.errors:
        report.append("❌ ANALYSIS FAILED - see errors below")
    elif not result.findings:
        report.append("✅ NO DATA RACES DETECTED")
        report.append("   Every shared field write is guarded or thread-confined.")
    elif high:
        report.append(f"🚨 {len(high)} HIGH CONFIDENCE RACE(S) BETWEEN BACKGROUND THREADS")
        report.append("   Both sides are reachable from background threads.")
    else:
        report.append(f"⚠️  {len(low)} POSSIBLE RACE(S) - review recommended")
        report.append("   At least one side has no definite thread evidence.")

    metrics = result.metrics
    report.append("\nAnalysis Metrics:")
    report.append(f"  • Total Race Candidates: {metrics.get('total_races', 0)}")
    report.append(f"  • High Confidence Races: {metrics.get('high_confidence_races', 0)}")
    report.append(
        f"  • Methods Analyzed: {metrics.get('methods_analyzed', 0)}"
        f"/{metrics.get('methods_total', 0)}"
    )
    report.append(f"  • Classes: {metrics.get('classes', 0)}")
    report.append(f"  • Access Events: {metrics.get('access_events', 0)}")
    report.append(f"  • Skipped Accesses: {metrics.get('skipped_accesses', 0)}")
    report.append(f"  • Cyclic Call-Graph Components: {metrics.get('cyclic_components', 0)}")

    if high:
        report.append("\n" + "🚨 HIGH CONFIDENCE RACES")
        report.append("-" * 50)
        for i, finding in enumerate(high, 1):
            report.extend(_finding_lines(i, finding))

    if low:
        report.append("\n" + "⚠️  LOW CONFIDENCE RACES")
        report.append("-" * 50)
        for i, finding in enumerate(low, 1):
            report.extend(_finding_lines(i, finding))

    if result.incomplete:
        report.append("\n" + "🧩 ANALYSIS INCOMPLETE")
        report.append("-" * 50)
        for i, note in enumerate(result.incomplete, 1):
            report.append(f"{i}. {note}")

    if result.warnings:
        report.append("\n" + "⏱️  WARNINGS")
        report.append("-" * 50)
        for i, warning in enumerate(result.warnings, 1):
            report.append(f"{i}. {warning}")

    if result.skipped_accesses:
        report.append("\n" + "🙈 SKIPPED ACCESSES")
        report.append("-" * 50)
        for i, note in enumerate(result.skipped_accesses, 1):
            report.append(f"{i}. {note}")

    if result.errors:
        report.append("\n" + "❌ ERRORS")
        report.append("-" * 50)
        for i, error in enumerate(result.errors, 1):
            report.append(f"{i}. {error}")

    report.append("\n" + "=" * 100)
    return "\n".join(report)


def result_to_dict(result: AnalysisResult) -> Dict[str, Any]:
    return {
        "file": result.source,
        "metrics": result.metrics,
        "findings": [finding.to_dict() for finding in result.findings],
        "incomplete": list(result.incomplete),
        "warnings": list(result.warnings),
        "skipped_accesses": list(result.skipped_accesses),
        "errors": list(result.errors),
        "analysis_time": result.analysis_time,
    }


def build_json_report(results: Sequence[Tuple[str, AnalysisResult]]) -> Dict[str, Any]:
    """Machine-readable report over several analyzed inputs"""
    total_high = sum(r.metrics.get("high_confidence_races", 0) for _, r in results)
    total = sum(r.metrics.get("total_races", 0) for _, r in results)
    files = []
    for filepath, result in results:
        data = result_to_dict(result)
        data["file"] = filepath
        files.append(data)
    return {
        "analysis_summary": {
            "total_files": len(results),
            "total_races": total,
            "total_high_confidence_races": total_high,
            "analysis_timestamp": datetime.datetime.now().isoformat(),
            "raceguard_version": __version__,
        },
        "files": files,
    }
