#!/usr/bin/env python3
"""
RaceGuard: Compositional Static Analysis for Data Races

Detects, per class, fields that two code paths may access concurrently where
at least one access is a write and no common lock guards both. Works on
normalized control-flow graphs supplied by a language front-end, one method
at a time, and composes per-method summaries bottom-up over the call graph.

Authors: RaceGuard contributors
License: MIT
Version: 1.0.0
Date: 2026-10-18

Pipeline:
- Validate method records (a malformed CFG rejects only that method)
- Extract access paths and track lock sets per method (thread pool)
- Classify thread contexts from markers, hierarchy and call graph
- Build memoized method summaries over call-graph SCCs
- Collect and deduplicate race candidates per class
"""

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from raceguard.cfg import ClassRecord, MethodRecord, Program, validate_method
from raceguard.config import AnalysisConfig
from raceguard.errors import AnalysisError, InputFormatError, MalformedCFG
from raceguard.loader import parse_program
from raceguard.model import Confidence, Finding, MethodSummary, RaceCandidate
from raceguard.races import RaceCollector
from raceguard.summaries import CallGraph, MemoTable, MethodFacts, SummaryBuilder, collect_method_facts
from raceguard.thread_context import ClassHierarchy, ThreadContextClassifier

__version__ = "1.0.0"

logger = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    """Complete analysis results"""

    findings: List[Finding] = field(default_factory=list)
    races: List[RaceCandidate] = field(default_factory=list)
    incomplete: List[str] = field(default_factory=list)
    skipped_accesses: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    analysis_time: float = 0.0
    source: str = ""
    summaries: Dict[str, MethodSummary] = field(default_factory=dict, repr=False)

    def findings_on(self, access_path: str) -> List[Finding]:
        return [finding for finding in self.findings if finding.access_path == access_path]

    @property
    def high_confidence(self) -> List[Finding]:
        return [f for f in self.findings if f.confidence is Confidence.HIGH]


def _finding(candidate: RaceCandidate) -> Finding:
    first, second = candidate.first, candidate.second
    return Finding(
        access_path=str(candidate.path),
        location_a=str(first.location),
        location_b=str(second.location),
        confidence=candidate.confidence,
        message=candidate.description,
        class_name=candidate.class_name,
        fix_suggestion=candidate.fix_suggestion,
        extra={
            "method_a": first.owner,
            "method_b": second.owner,
            "kind_a": first.kind.value,
            "kind_b": second.kind.value,
            "locks_a": [str(lock) for lock in first.held_locks],
            "locks_b": [str(lock) for lock in second.held_locks],
            "context_a": first.thread_context.value,
            "context_b": second.thread_context.value,
        },
    )


class RaceAnalyzer:
    """
    Runs the full analysis over a set of method records. Every run is
    independent: the result, the statistics and the summary memo table live
    only as long as one call, so one analyzer may serve concurrent callers.
    """

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()

    def analyze(
        self, methods: Iterable[MethodRecord], classes: Iterable[ClassRecord] = ()
    ) -> AnalysisResult:
        return self.analyze_program(Program(list(methods), list(classes)))

    def analyze_program(self, program: Program) -> AnalysisResult:
        """
        Analyze already-loaded records.

        Per-method failures end up in ``result.incomplete``; an unexpected
        error anywhere else is recorded in ``result.errors`` and the result
        keeps whatever was computed before it.
        """
        start_time = time.time()
        result = AnalysisResult()
        stats: Dict[str, int] = {}

        for method_id, reason in sorted(program.rejected.items()):
            _incomplete(result, method_id, reason)

        try:
            self._run(program, result, stats)
        except Exception as e:
            logger.exception("Analysis failed")
            result.errors.append(f"ERROR during analysis: {e}")

        result.analysis_time = time.time() - start_time
        result.metrics = _calculate_metrics(result, stats)
        return result

    def analyze_file(self, filepath: Union[str, Path]) -> AnalysisResult:
        """
        Analyze a JSON document of method records

        Args:
            filepath: Path to the JSON input

        Returns:
            AnalysisResult; unreadable or malformed input is reported in
            ``errors`` rather than raised
        """
        filepath = Path(filepath)
        early = AnalysisResult(source=str(filepath))

        if not _validate_file(filepath, early):
            return early

        try:
            data = json.loads(filepath.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            early.errors.append(f"Error reading file {filepath}: {e}")
            return early
        except json.JSONDecodeError as e:
            early.errors.append(f"Invalid JSON in {filepath}: {e}")
            return early

        try:
            program = parse_program(data)
        except InputFormatError as e:
            early.errors.append(f"Invalid input in {filepath}: {e}")
            return early

        result = self.analyze_program(program)
        result.source = str(filepath)
        result.warnings[:0] = early.warnings
        return result

    def _run(self, program: Program, result: AnalysisResult, stats: Dict[str, int]) -> None:
        records: Dict[str, MethodRecord] = {}
        for record in program.methods:
            if record.method_id in records or record.method_id in program.rejected:
                _incomplete(result, record.method_id, "duplicate method id")
                continue
            records[record.method_id] = record

        known = set(records) | set(program.rejected)
        valid: List[MethodRecord] = []
        for method_id in sorted(records):
            try:
                validate_method(records[method_id], known)
            except MalformedCFG as e:
                logger.warning("Rejecting %s", e)
                _incomplete(result, method_id, e.message)
                continue
            valid.append(records[method_id])

        facts = self._collect_facts(valid, result)
        rejected: Set[str] = set(records) - set(facts)

        hierarchy = ClassHierarchy(program.classes, records.values())
        classifier = ThreadContextClassifier(hierarchy, records)
        call_graph = CallGraph(records, excluded=rejected)
        direct = {method_id: classifier.direct_context(method_id) for method_id in facts}
        propagated = classifier.propagate(call_graph.method_graph())

        builder = SummaryBuilder(
            records,
            facts,
            direct,
            propagated,
            config=self.config,
            memo=MemoTable(),
            call_graph=call_graph,
        )
        summaries = builder.build_all()
        for method_id, reason in sorted(builder.failures.items()):
            _incomplete(result, method_id, reason)

        collector = RaceCollector(
            hierarchy, summaries, strict_thread_context=self.config.strict_thread_context
        )
        races = [
            candidate
            for candidate in collector.collect()
            if candidate.confidence >= self.config.min_confidence
        ]
        result.races = races
        result.findings = [_finding(candidate) for candidate in races]
        result.summaries = {
            name: summary for name, summary in summaries.items() if summary is not None
        }

        stats.update(
            methods_total=len(records) + len(program.rejected),
            methods_analyzed=len(result.summaries),
            classes=len(hierarchy.class_names()),
            call_graph_components=len(call_graph.components()),
            cyclic_components=sum(
                1 for c in call_graph.components() if call_graph.is_cyclic(c)
            ),
            max_fixpoint_iterations=max(builder.iterations.values(), default=0),
            memo_entries=len(builder.memo),
        )

    def _collect_facts(
        self, records: List[MethodRecord], result: AnalysisResult
    ) -> Dict[str, MethodFacts]:
        """Per-method extraction and lock tracking, run in parallel"""
        budget = self.config.per_method_budget
        facts: Dict[str, MethodFacts] = {}

        def work(record: MethodRecord) -> Tuple[str, Optional[MethodFacts], Optional[AnalysisError]]:
            try:
                return record.method_id, collect_method_facts(record, budget), None
            except AnalysisError as e:
                return record.method_id, None, e

        with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
            outcomes = list(pool.map(work, records))

        for method_id, method_facts, error in outcomes:
            if error is not None:
                logger.warning("Rejecting %s", error)
                _incomplete(result, method_id, error.message)
                continue
            facts[method_id] = method_facts
            result.skipped_accesses.extend(method_facts.skipped)
            if method_facts.warning:
                result.warnings.append(method_facts.warning)
        return facts


def _validate_file(filepath: Path, result: AnalysisResult) -> bool:
    if not filepath.exists():
        result.errors.append(f"File does not exist: {filepath}")
        return False

    if not filepath.is_file():
        result.errors.append(f"Path is not a file: {filepath}")
        return False

    if filepath.suffix.lower() != ".json":
        result.warnings.append(
            f"Warning: Unusual file extension '{filepath.suffix}' for method records"
        )
    return True


def _incomplete(result: AnalysisResult, method_id: str, reason: str) -> None:
    result.incomplete.append(f"analysis incomplete for {method_id}: {reason}")


def _calculate_metrics(result: AnalysisResult, stats: Dict[str, int]) -> Dict[str, Any]:
    """Calculate analysis metrics"""
    summaries = result.summaries.values()
    return {
        "total_races": len(result.findings),
        "high_confidence_races": len(result.high_confidence),
        "low_confidence_races": len(result.findings) - len(result.high_confidence),
        "methods_total": stats.get("methods_total", 0),
        "methods_analyzed": stats.get("methods_analyzed", 0),
        "methods_incomplete": len(result.incomplete),
        "degraded_methods": sum(1 for summary in summaries if summary.degraded),
        "classes": stats.get("classes", 0),
        "access_events": sum(len(summary.accesses) for summary in summaries),
        "skipped_accesses": len(result.skipped_accesses),
        "call_graph_components": stats.get("call_graph_components", 0),
        "cyclic_components": stats.get("cyclic_components", 0),
        "max_fixpoint_iterations": stats.get("max_fixpoint_iterations", 0),
        "memo_entries": stats.get("memo_entries", 0),
        "analysis_time_seconds": round(result.analysis_time, 3),
    }
