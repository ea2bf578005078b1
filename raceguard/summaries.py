"""
Method Summary Builder.

Summaries are built bottom-up over the call graph: every callee component is
finalized before its callers. Methods get stable integer ids, the caller ->
callee adjacency lives in a ``networkx.DiGraph`` and is condensed into
strongly connected components up front, so recursion in the analyzed program
never turns into recursion in the analyzer.

Members of a cyclic component start from empty summaries and are re-folded
callee-first (DFS postorder of the component) until no caller-visible part of
any summary changes. A caller rebases callee events onto its own call site, so
it only sees (path, kind, lock set, context); the round that leaves those
unchanged has already produced the final summaries. Sets only grow over a
finite universe, so the loop terminates; the iteration cap only guards
against bugs and fails the one component that trips it.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Hashable, Iterable, List, Optional, Set, Tuple

import networkx as nx

from raceguard.access_paths import AccessPathExtractor, CallMarker, ExtractedAccess
from raceguard.cfg import MethodRecord
from raceguard.config import AnalysisConfig
from raceguard.errors import AnalysisError, BudgetExceeded, NonConvergentFixpoint
from raceguard.locksets import LockSetTracker, call_site_locks
from raceguard.model import (
    EMPTY_LOCKSET,
    AccessEvent,
    LockId,
    LockSet,
    MethodSummary,
    ThreadContext,
)

logger = logging.getLogger(__name__)


class MemoTable:
    """Thread-safe, at-most-once cache scoped to a single analysis run.

    Concurrent requests for a key that is still being computed wait for the
    one computation in flight. Values become visible only once the factory
    returns, so no caller ever sees a partially built entry. A factory that
    raises stores the exception; later requests re-raise it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, Future] = {}
        self.computations = 0

    def get_or_compute(self, key: Hashable, factory: Callable[[], object]):
        with self._lock:
            future = self._entries.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._entries[key] = future
                self.computations += 1
        if owner:
            try:
                value = factory()
            except BaseException as exc:
                future.set_exception(exc)
                raise
            future.set_result(value)
        return future.result()

    def peek(self, key: Hashable):
        """Finalized value for ``key`` or None when absent or still running"""
        with self._lock:
            future = self._entries.get(key)
        if future is None or not future.done() or future.exception() is not None:
            return None
        return future.result()

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            future = self._entries.get(key)
        return future is not None and future.done()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass
class MethodFacts:
    """Intraprocedural results for one method: tagged accesses and call sites"""

    method_id: str
    direct: List[Tuple[ExtractedAccess, LockSet]] = field(default_factory=list)
    calls: List[Tuple[CallMarker, LockSet]] = field(default_factory=list)
    lock_ids: Set[LockId] = field(default_factory=set)
    skipped: List[str] = field(default_factory=list)
    degraded: bool = False
    warning: Optional[str] = None


def collect_method_facts(record: MethodRecord, budget: Optional[int] = None) -> MethodFacts:
    """Run the extractor and the lock-set tracker over one method.

    When the budget runs out the method is degraded: every access and call
    site is treated as unguarded, which can only add findings.

    Raises:
        MalformedCFG: for lock expressions the tracker cannot canonicalize
    """
    extraction = AccessPathExtractor(record).extract()
    facts = MethodFacts(record.method_id, skipped=list(extraction.skipped))

    try:
        states = LockSetTracker(record, budget).run()
    except BudgetExceeded as exc:
        facts.degraded = True
        facts.warning = f"{exc}; using a conservative summary"
        logger.warning("Degrading %s: %s", record.method_id, exc.message)
        facts.direct = [(access, EMPTY_LOCKSET) for access in extraction.accesses]
        facts.calls = [(call, EMPTY_LOCKSET) for call in extraction.calls]
        return facts

    for item in extraction.items:
        location = item.location
        if isinstance(item, CallMarker):
            held = call_site_locks(
                states, record, location.block, location.index, item.declared_locks
            )
            facts.calls.append((item, held))
        else:
            facts.direct.append((item, states.before(location.block, location.index)))
    facts.lock_ids = states.lock_ids()
    for _, held in facts.calls:
        facts.lock_ids.update(held.locks)
    return facts


class CallGraph:
    """Explicit caller -> callee graph over integer method ids"""

    def __init__(self, records: Dict[str, MethodRecord], excluded: Iterable[str] = ()):
        self.names: List[str] = sorted(records)
        self.ids: Dict[str, int] = {name: index for index, name in enumerate(self.names)}
        skip = set(excluded)

        self.graph = nx.DiGraph()
        self.graph.add_nodes_from(range(len(self.names)))
        for name in self.names:
            if name in skip:
                continue
            for callee in records[name].cfg.callees():
                if callee in self.ids:
                    self.graph.add_edge(self.ids[name], self.ids[callee])

        self.condensed = nx.condensation(self.graph)
        self._members: Dict[int, Tuple[int, ...]] = {
            component: tuple(sorted(members))
            for component, members in nx.get_node_attributes(self.condensed, "members").items()
        }
        self._component_of: Dict[int, int] = dict(self.condensed.graph["mapping"])
        self._generations: List[List[int]] = [
            sorted(generation, key=lambda c: self._members[c])
            for generation in nx.topological_generations(self.condensed.reverse(copy=False))
        ]
        self._order: List[int] = [c for generation in self._generations for c in generation]

    def method_graph(self) -> nx.DiGraph:
        """The same graph keyed by method id strings"""
        return nx.relabel_nodes(self.graph, dict(enumerate(self.names)))

    def component_of(self, method_id: str) -> int:
        return self._component_of[self.ids[method_id]]

    def members(self, component: int) -> List[str]:
        return [self.names[node] for node in self._members[component]]

    def callee_first(self, component: int) -> List[str]:
        """Members of ``component``, callees before callers except along back edges"""
        nodes = self._members[component]
        inside = self.graph.subgraph(nodes)
        return [self.names[node] for node in nx.dfs_postorder_nodes(inside, source=nodes[0])]

    def is_cyclic(self, component: int) -> bool:
        nodes = self._members[component]
        return len(nodes) > 1 or self.graph.has_edge(nodes[0], nodes[0])

    def generations(self) -> List[List[int]]:
        """Components grouped so each group only calls into earlier groups"""
        return [list(generation) for generation in self._generations]

    def dependency_order(self, component: int) -> List[int]:
        """``component`` and everything it calls, callees first"""
        needed = nx.descendants(self.condensed, component) | {component}
        return [c for c in self._order if c in needed]

    def components(self) -> List[int]:
        return list(self._order)


class SummaryBuilder:
    """Builds and memoizes MethodSummary objects for one run"""

    def __init__(
        self,
        records: Dict[str, MethodRecord],
        facts: Dict[str, MethodFacts],
        direct_contexts: Dict[str, ThreadContext],
        summary_contexts: Dict[str, ThreadContext],
        config: Optional[AnalysisConfig] = None,
        memo: Optional[MemoTable] = None,
        call_graph: Optional[CallGraph] = None,
    ):
        self.records = records
        self.facts = facts
        self.direct_contexts = direct_contexts
        self.summary_contexts = summary_contexts
        self.config = config or AnalysisConfig()
        self.memo = memo if memo is not None else MemoTable()
        self.call_graph = call_graph or CallGraph(
            records, excluded=[name for name in records if name not in facts]
        )
        self.failures: Dict[str, str] = {}
        self.iterations: Dict[str, int] = {}
        self._bookkeeping = threading.Lock()

    def summary(self, method_id: str) -> Optional[MethodSummary]:
        """Finalized summary, or None when the method failed or was rejected"""
        component = self.call_graph.component_of(method_id)
        for dependency in self.call_graph.dependency_order(component):
            self._component_result(dependency)
        return self.memo.get_or_compute(
            method_id, lambda: self._component_result(component)[method_id]
        )

    def build_all(self) -> Dict[str, Optional[MethodSummary]]:
        """Summaries for every method; independent components run in parallel"""
        with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
            for generation in self.call_graph.generations():
                list(pool.map(self._component_result, generation))
        return {name: self.summary(name) for name in self.call_graph.names}

    def _component_result(self, component: int) -> Dict[str, Optional[MethodSummary]]:
        return self.memo.get_or_compute(
            ("component", component), lambda: self._solve(component)
        )

    def _solve(self, component: int) -> Dict[str, Optional[MethodSummary]]:
        members = self.call_graph.members(component)
        live = [name for name in members if name in self.facts]
        result: Dict[str, Optional[MethodSummary]] = {
            name: None for name in members if name not in self.facts
        }
        if not live:
            return result

        current: Dict[str, FrozenSet[AccessEvent]] = {name: frozenset() for name in live}
        try:
            if self.call_graph.is_cyclic(component):
                order = [
                    name for name in self.call_graph.callee_first(component) if name in current
                ]
                rounds = self._fixpoint(order, current)
            else:
                current[live[0]] = self._fold(live[0], current)
                rounds = 1
        except AnalysisError as exc:
            logger.error("Summary computation failed: %s", exc)
            with self._bookkeeping:
                for name in live:
                    self.failures[name] = str(exc)
            result.update({name: None for name in live})
            return result

        with self._bookkeeping:
            for name in live:
                self.iterations[name] = rounds
        for name in live:
            result[name] = MethodSummary(
                method_id=name,
                accesses=current[name],
                thread_context=self.summary_contexts.get(
                    name, self.direct_contexts[name]
                ),
                degraded=self.facts[name].degraded,
            )
        return result

    def _fixpoint(self, order: List[str], current: Dict[str, FrozenSet[AccessEvent]]) -> int:
        cap = self.config.max_fixpoint_iterations or self._iteration_cap(order)
        rounds = 0
        changed = True
        while changed:
            if rounds >= cap:
                raise NonConvergentFixpoint(sorted(order), rounds)
            rounds += 1
            changed = False
            for name in order:
                updated = self._fold(name, current)
                if _visible(updated) != _visible(current[name]):
                    changed = True
                current[name] = updated
        logger.debug("Component %s converged after %d round(s)", order, rounds)
        return rounds

    def _iteration_cap(self, live: List[str]) -> int:
        """Bound on rounds for a cyclic component.

        A shortest derivation of any summary event only revisits a member
        after its lock set grew or its context rose, so it is at most
        ``members * (locks + 3)`` calls deep; one more round confirms.
        """
        locks: Set[LockId] = set()
        for name in live:
            locks.update(self.facts[name].lock_ids)
            for call, _ in self.facts[name].calls:
                for event in self._external_events(call.callee, live):
                    locks.update(event.held_locks.locks)
        return len(live) * (len(locks) + 3) + 2

    def _external_events(self, callee: str, live: List[str]) -> FrozenSet[AccessEvent]:
        if callee in live or callee not in self.call_graph.ids:
            return frozenset()
        summary = self._component_result(self.call_graph.component_of(callee)).get(callee)
        return summary.accesses if summary is not None else frozenset()

    def _fold(self, name: str, current: Dict[str, FrozenSet[AccessEvent]]) -> FrozenSet[AccessEvent]:
        """Direct accesses of ``name`` plus callee events rebased onto call sites"""
        facts = self.facts[name]
        context = self.direct_contexts[name]
        events: Set[AccessEvent] = set()

        for access, held in facts.direct:
            events.add(
                AccessEvent(
                    path=access.path,
                    kind=access.kind,
                    held_locks=held,
                    location=access.location,
                    thread_context=context,
                    owner=name,
                )
            )

        for call, held in facts.calls:
            if call.callee in current:
                callee_events = current[call.callee]
            else:
                callee_events = self._external_events(call.callee, [])
            for event in callee_events:
                events.add(
                    AccessEvent(
                        path=event.path,
                        kind=event.kind,
                        held_locks=event.held_locks.union(held),
                        location=call.location,
                        thread_context=context.join(event.thread_context),
                        owner=name,
                        via=call.callee,
                    )
                )
        return frozenset(events)


def _visible(events: FrozenSet[AccessEvent]) -> FrozenSet[Tuple[Hashable, ...]]:
    """The part of a summary a caller keeps when rebasing it onto a call site"""
    return frozenset(
        (event.path, event.kind, event.held_locks, event.thread_context) for event in events
    )
