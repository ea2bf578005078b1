"""
Lock-Set Tracker.

Forward dataflow over one method CFG computing the set of locks guaranteed
to be held before every statement. Merges intersect the incoming sets, so a
lock only counts as held when every path into the point holds it; the result
never claims more protection than the code guarantees.

States only shrink between visits (intersection and acquire/release are
monotone), so the worklist terminates after at most
``blocks * (distinct locks + 1)`` block visits.
"""

import heapq
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from raceguard.cfg import LockAcquire, LockRelease, MethodRecord, Statement
from raceguard.errors import BudgetExceeded, MalformedCFG
from raceguard.model import EMPTY_LOCKSET, LockId, LockKind, LockSet

logger = logging.getLogger(__name__)

_LOCK_EXPRESSION = re.compile(r"[A-Za-z_$][\w$]*(?:\s*\.\s*[A-Za-z_$][\w$]*)*")


def canonicalize_lock(expression: str, declaring_class: str, owner: Optional[str] = None) -> LockId:
    """Map a guarding-object expression to its canonical LockId.

    ``this`` is the receiver lock of ``declaring_class``; ``Foo.class`` is the
    class-level lock of ``Foo``; ``this.mLock`` and a bare ``mLock`` name the
    field lock of the declaring class (or of ``owner`` when the front-end
    resolved the field's declaring class); ``Other.LOCK`` names a field of
    ``Other``.

    Raises:
        ValueError: if the expression is not a dotted name
    """
    text = re.sub(r"\s+", "", expression or "")
    if not text or not _LOCK_EXPRESSION.fullmatch(text):
        raise ValueError(f"unsupported lock expression '{expression}'")

    parts = text.split(".")
    if parts == ["this"]:
        return LockId(LockKind.RECEIVER, owner or declaring_class)
    if len(parts) >= 2 and parts[-1] == "class":
        return LockId(LockKind.CLASS, ".".join(parts[:-1]))
    if parts[0] == "this":
        return LockId(LockKind.FIELD, owner or declaring_class, ".".join(parts[1:]))
    if len(parts) == 1:
        return LockId(LockKind.FIELD, owner or declaring_class, parts[0])
    return LockId(LockKind.FIELD, owner or parts[0], ".".join(parts[1:]))


@dataclass
class LockStates:
    """Lock sets held before each statement of one method"""

    method_id: str
    entry_state: LockSet
    block_entry: Dict[str, LockSet] = field(default_factory=dict)
    points: Dict[Tuple[str, int], LockSet] = field(default_factory=dict)
    steps: int = 0

    def before(self, block: str, index: int) -> LockSet:
        """Held locks just before statement ``index`` of ``block``.

        Points the analysis never reached hold nothing.
        """
        return self.points.get((block, index), EMPTY_LOCKSET)

    def lock_ids(self) -> Set[LockId]:
        ids: Set[LockId] = set(self.entry_state.locks)
        for state in self.points.values():
            ids.update(state.locks)
        return ids


class LockSetTracker:
    """Forward must-hold lock analysis over a single method"""

    def __init__(self, record: MethodRecord, budget: Optional[int] = None):
        self.record = record
        self.budget = budget
        self._steps = 0

    def entry_state(self) -> LockSet:
        guard = self.record.annotations.guarded_by
        if guard:
            return LockSet.of(self._lock(guard, None))
        return EMPTY_LOCKSET

    def _lock(self, expression: str, owner: Optional[str]) -> LockId:
        try:
            return canonicalize_lock(expression, self.record.declaring_class, owner)
        except ValueError as exc:
            raise MalformedCFG(str(exc), self.record.method_id) from exc

    def transfer(self, state: LockSet, stmt: Statement) -> LockSet:
        if isinstance(stmt, LockAcquire):
            return state.acquire(self._lock(stmt.lock, stmt.owner))
        if isinstance(stmt, LockRelease):
            lock = self._lock(stmt.lock, stmt.owner)
            if lock not in state:
                logger.debug(
                    "%s releases %s which is not known to be held",
                    self.record.method_id,
                    lock,
                )
            return state.release(lock)
        return state

    def _tick(self) -> None:
        self._steps += 1
        if self.budget is not None and self._steps > self.budget:
            raise BudgetExceeded(self.record.method_id, self.budget)

    def run(self) -> LockStates:
        """Iterate to the fixpoint and record the state before every statement

        Raises:
            BudgetExceeded: when the per-method step budget runs out
            MalformedCFG: for unusable lock expressions
        """
        cfg = self.record.cfg
        order = cfg.reverse_postorder()
        rank = {block_id: position for position, block_id in enumerate(order)}
        entry_locks = self.entry_state()

        block_in: Dict[str, LockSet] = {}
        block_out: Dict[str, LockSet] = {}
        heap: List[int] = list(range(len(order)))
        queued = set(order)

        while heap:
            block_id = order[heapq.heappop(heap)]
            queued.discard(block_id)

            incoming = [
                block_out[pred] for pred in cfg.predecessors(block_id) if pred in block_out
            ]
            if block_id == cfg.entry:
                incoming.append(entry_locks)
            if not incoming:
                continue
            state = incoming[0]
            for other in incoming[1:]:
                state = state.meet(other)
            block_in[block_id] = state

            for stmt in cfg.blocks[block_id].statements:
                self._tick()
                state = self.transfer(state, stmt)

            if block_out.get(block_id) != state:
                block_out[block_id] = state
                for successor in cfg.graph.successors(block_id):
                    if successor in rank and successor not in queued:
                        queued.add(successor)
                        heapq.heappush(heap, rank[successor])

        result = LockStates(self.record.method_id, entry_locks, steps=self._steps)
        for block_id in order:
            state = block_in.get(block_id)
            if state is None:
                continue
            result.block_entry[block_id] = state
            for index, stmt in enumerate(cfg.blocks[block_id].statements):
                result.points[(block_id, index)] = state
                state = self.transfer(state, stmt)
        return result


def call_site_locks(
    states: LockStates, record: MethodRecord, block: str, index: int, declared: Tuple[str, ...]
) -> LockSet:
    """Locks held at a call site: tracked state plus front-end supplied locks"""
    held = states.before(block, index)
    for expression in declared:
        try:
            held = held.acquire(canonicalize_lock(expression, record.declaring_class))
        except ValueError as exc:
            raise MalformedCFG(str(exc), record.method_id) from exc
    return held

