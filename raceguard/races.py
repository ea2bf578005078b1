"""
Class-Level Race Collector.

Pairs accesses to the same access path across all method summaries visible
in a class (declared plus inherited, non-overridden methods) and keeps the
pairs that may conflict: at least one write, at least one side concurrently
reachable, and no lock common to both sides.
"""

import logging
from collections import defaultdict
from typing import DefaultDict, Dict, FrozenSet, List, Optional, Tuple

from raceguard.model import (
    AccessEvent,
    AccessPath,
    Confidence,
    MethodSummary,
    RaceCandidate,
    ThreadContext,
)
from raceguard.thread_context import ClassHierarchy, is_concurrent

logger = logging.getLogger(__name__)

CandidateKey = Tuple[AccessPath, FrozenSet[str]]


def conflicts(first: AccessEvent, second: AccessEvent, strict: bool = False) -> bool:
    """Whether two accesses to the same path can race"""
    if not (first.is_write or second.is_write):
        return False
    if not (
        is_concurrent(first.thread_context, strict)
        or is_concurrent(second.thread_context, strict)
    ):
        return False
    return first.held_locks.meet(second.held_locks).is_empty()


def confidence_for(first: AccessEvent, second: AccessEvent) -> Confidence:
    background = ThreadContext.BACKGROUND_REACHABLE
    if first.thread_context is background and second.thread_context is background:
        return Confidence.HIGH
    return Confidence.LOW


def describe_access(event: AccessEvent) -> str:
    text = f"{event.owner}() ({event.kind.value} at {event.location}"
    if event.via:
        text += f", indirectly via {event.via}()"
    if event.held_locks.is_empty():
        text += ", no lock held)"
    else:
        text += f", holding {event.held_locks})"
    return text


def _race_description(path: AccessPath, first: AccessEvent, second: AccessEvent) -> str:
    if first == second:
        return (
            f"Unprotected write to '{path}' in {describe_access(first)} "
            f"can race with a concurrent call of the same method"
        )
    return (
        f"Data race on '{path}' between {describe_access(first)} "
        f"and {describe_access(second)}"
    )


def _race_fix(path: AccessPath, first: AccessEvent, second: AccessEvent) -> str:
    guarded = [event for event in (first, second) if not event.held_locks.is_empty()]
    if len(guarded) == 2:
        return (
            f"Accesses to '{path}' hold different locks ({first.held_locks} vs "
            f"{second.held_locks}); guard both with the same lock"
        )
    if guarded:
        unguarded = second if guarded[0] is first else first
        return (
            f"Acquire one of {guarded[0].held_locks} around the access to '{path}' "
            f"in {unguarded.owner}()"
        )
    return f"Protect all accesses to '{path}' with a common lock or confine them to one thread"


class RaceCollector:
    """Collects deduplicated race candidates over every class of a run"""

    def __init__(
        self,
        hierarchy: ClassHierarchy,
        summaries: Dict[str, Optional[MethodSummary]],
        strict_thread_context: bool = False,
    ):
        self.hierarchy = hierarchy
        self.summaries = summaries
        self.strict = strict_thread_context

    def class_events(self, class_name: str) -> List[AccessEvent]:
        events = set()
        for method_id in self.hierarchy.methods_of(class_name):
            summary = self.summaries.get(method_id)
            if summary is None:
                continue
            events.update(summary.accesses)
        return sorted(events, key=lambda event: event.sort_key)

    def collect_class(self, class_name: str) -> List[RaceCandidate]:
        """Conflicting pairs visible in one class, before run-wide dedup"""
        by_path: DefaultDict[AccessPath, List[AccessEvent]] = defaultdict(list)
        for event in self.class_events(class_name):
            by_path[event.path].append(event)

        found: List[RaceCandidate] = []
        for path in sorted(by_path, key=lambda p: p.sort_key):
            group = by_path[path]
            if not any(event.is_write for event in group):
                continue
            for position, first in enumerate(group):
                for second in group[position:]:
                    if conflicts(first, second, self.strict):
                        found.append(self._candidate(class_name, path, first, second))
        return found

    def collect(self) -> List[RaceCandidate]:
        best: Dict[CandidateKey, RaceCandidate] = {}
        for class_name in self.hierarchy.class_names():
            for candidate in self.collect_class(class_name):
                current = best.get(candidate.key)
                if current is None or _preferred(candidate, current):
                    best[candidate.key] = candidate
        logger.debug("Collected %d race candidate(s)", len(best))
        return sorted(best.values(), key=_candidate_sort_key)

    @staticmethod
    def _candidate(
        class_name: str, path: AccessPath, first: AccessEvent, second: AccessEvent
    ) -> RaceCandidate:
        return RaceCandidate(
            path=path,
            first=first,
            second=second,
            confidence=confidence_for(first, second),
            class_name=class_name,
            description=_race_description(path, first, second),
            fix_suggestion=_race_fix(path, first, second),
        )


def _candidate_sort_key(candidate: RaceCandidate):
    return (candidate.path.sort_key, candidate.first.sort_key, candidate.second.sort_key)


def _preferred(candidate: RaceCandidate, current: RaceCandidate) -> bool:
    """Higher confidence wins, then the earlier pair of locations"""
    if candidate.confidence is not current.confidence:
        return candidate.confidence.rank > current.confidence.rank
    return _candidate_sort_key(candidate) < _candidate_sort_key(current)
