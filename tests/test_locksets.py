"""Unit tests for lock canonicalization and the must-hold lock-set dataflow."""

import itertools
import unittest

import networkx as nx
import pytest

from raceguard.cfg import ControlFlowGraph, LockAcquire, LockRelease
from raceguard.errors import BudgetExceeded, MalformedCFG
from raceguard.locksets import LockSetTracker, call_site_locks, canonicalize_lock
from raceguard.model import EMPTY_LOCKSET, LockId, LockKind, LockSet
from tests.test_utils import acquire, block, call, method, read, release, write

L = LockId(LockKind.FIELD, "Foo", "L")
M = LockId(LockKind.FIELD, "Foo", "M")


class TestCanonicalizeLock(unittest.TestCase):
    def test_receiver(self):
        self.assertEqual(canonicalize_lock("this", "Foo"), LockId(LockKind.RECEIVER, "Foo"))

    def test_class_lock(self):
        lock = canonicalize_lock("Foo.class", "Bar")
        self.assertEqual(lock, LockId(LockKind.CLASS, "Foo"))
        self.assertEqual(str(lock), "Foo.class")

    def test_field_lock_spellings_coincide(self):
        self.assertEqual(canonicalize_lock("this.L", "Foo"), L)
        self.assertEqual(canonicalize_lock("L", "Foo"), L)
        self.assertEqual(canonicalize_lock("this.L", "Sub", owner="Foo"), L)

    def test_static_field_of_other_class(self):
        self.assertEqual(
            canonicalize_lock("Registry.LOCK", "Foo"),
            LockId(LockKind.FIELD, "Registry", "LOCK"),
        )

    def test_rejects_non_names(self):
        for expression in ("", "getLock()", "locks[0]"):
            with self.assertRaises(ValueError):
                canonicalize_lock(expression, "Foo")


class TestLockSetTracker(unittest.TestCase):
    def test_straight_line_acquire_release(self):
        record = method(
            "Foo.run",
            [acquire("this.L"), read("this.f"), release("this.L"), read("this.f")],
        )
        states = LockSetTracker(record).run()
        self.assertEqual(states.before("entry", 1), LockSet.of(L))
        self.assertEqual(states.before("entry", 3), EMPTY_LOCKSET)

    def test_merge_intersects_branches(self):
        cfg = ControlFlowGraph(
            "b0",
            [
                block("b0", [acquire("this.M")], ["b1", "b2"]),
                block("b1", [acquire("this.L")], ["b3"]),
                block("b2", [], ["b3"]),
                block("b3", [read("this.f")]),
            ],
        )
        states = LockSetTracker(method("Foo.run", cfg=cfg)).run()
        self.assertEqual(states.before("b3", 0), LockSet.of(M))

    def test_both_branches_locking_keeps_the_lock(self):
        cfg = ControlFlowGraph(
            "b0",
            [
                block("b0", [], ["b1", "b2"]),
                block("b1", [acquire("this.L")], ["b3"]),
                block("b2", [acquire("L")], ["b3"]),
                block("b3", [write("this.f")]),
            ],
        )
        states = LockSetTracker(method("Foo.run", cfg=cfg)).run()
        self.assertIn(L, states.before("b3", 0))

    def test_loop_reaches_fixpoint(self):
        # the back edge releases L, so the loop header cannot assume it
        cfg = ControlFlowGraph(
            "b0",
            [
                block("b0", [acquire("this.L")], ["head"]),
                block("head", [read("this.f")], ["body", "exit"]),
                block("body", [release("this.L")], ["head"]),
                block("exit", [write("this.f")]),
            ],
        )
        states = LockSetTracker(method("Foo.run", cfg=cfg)).run()
        self.assertEqual(states.before("head", 0), EMPTY_LOCKSET)
        self.assertEqual(states.before("exit", 0), EMPTY_LOCKSET)

    def test_guarded_by_seeds_entry_state(self):
        record = method("Foo.run", [read("this.f")], guarded_by="this.L")
        states = LockSetTracker(record).run()
        self.assertEqual(states.entry_state, LockSet.of(L))
        self.assertEqual(states.before("entry", 0), LockSet.of(L))

    def test_release_of_unheld_lock_is_harmless(self):
        record = method("Foo.run", [release("this.L"), read("this.f")])
        states = LockSetTracker(record).run()
        self.assertEqual(states.before("entry", 1), EMPTY_LOCKSET)

    def test_unreachable_points_hold_nothing(self):
        cfg = ControlFlowGraph(
            "b0",
            [block("b0", [acquire("this.L")]), block("dead", [read("this.f")])],
        )
        states = LockSetTracker(method("Foo.run", cfg=cfg)).run()
        self.assertEqual(states.before("dead", 0), EMPTY_LOCKSET)
        self.assertNotIn("dead", states.block_entry)

    def test_budget_exceeded(self):
        record = method("Foo.run", [acquire("this.L"), read("this.f"), release("this.L")])
        with self.assertRaises(BudgetExceeded) as ctx:
            LockSetTracker(record, budget=2).run()
        self.assertEqual(ctx.exception.method_id, "Foo.run")

    def test_budget_large_enough(self):
        record = method("Foo.run", [acquire("this.L"), read("this.f"), release("this.L")])
        states = LockSetTracker(record, budget=3).run()
        self.assertEqual(states.steps, 3)

    def test_bad_lock_expression_is_malformed_cfg(self):
        record = method("Foo.run", [acquire("getLock()")])
        with self.assertRaises(MalformedCFG):
            LockSetTracker(record).run()

    def test_call_site_locks_add_declared_locks(self):
        record = method("Foo.run", [acquire("this.L"), call("Foo.g", locks_held=["this.M"])])
        states = LockSetTracker(record).run()
        held = call_site_locks(states, record, "entry", 1, ("this.M",))
        self.assertEqual(held, LockSet.of(L, M))


def _paths(cfg, source, target):
    return nx.all_simple_paths(cfg.graph, source, target) if source != target else [[source]]


@pytest.mark.parametrize("pattern", list(itertools.product([True, False], repeat=3)))
def test_lock_sets_never_exceed_any_path(pattern):
    """Locks claimed at the merge point are held along every entry path."""
    lock_first, lock_left, lock_right = pattern
    cfg = ControlFlowGraph(
        "b0",
        [
            block("b0", [acquire("this.L")] if lock_first else [], ["left", "right"]),
            block("left", [acquire("this.M")] if lock_left else [release("this.L")], ["join"]),
            block("right", [acquire("this.M")] if lock_right else [], ["join"]),
            block("join", [write("this.f")]),
        ],
    )
    states = LockSetTracker(method("Foo.run", cfg=cfg)).run()
    computed = states.before("join", 0)

    for path in _paths(cfg, "b0", "join"):
        held = set()
        for block_id in path[:-1]:
            for stmt in cfg.blocks[block_id].statements:
                lock = canonicalize_lock(stmt.lock, "Foo")
                if isinstance(stmt, LockAcquire):
                    held.add(lock)
                elif isinstance(stmt, LockRelease):
                    held.discard(lock)
        assert computed.locks <= held


if __name__ == "__main__":
    unittest.main()
