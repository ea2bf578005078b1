"""Unit tests for the memo table, call graph and summary builder."""

import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor

import pytest

from raceguard.config import AnalysisConfig
from raceguard.model import EMPTY_LOCKSET, LockId, LockKind, LockSet, ThreadContext
from raceguard.summaries import CallGraph, MemoTable, SummaryBuilder, collect_method_facts
from tests.test_utils import acquire, call, method, read, release, write

L = LockId(LockKind.FIELD, "Foo", "L")
BACKGROUND = ThreadContext.BACKGROUND_REACHABLE


def _builder(methods, config=None, contexts=None):
    records = {record.method_id: record for record in methods}
    facts = {name: collect_method_facts(record) for name, record in records.items()}
    contexts = contexts or {name: BACKGROUND for name in records}
    return SummaryBuilder(records, facts, contexts, contexts, config=config)


class TestMemoTable(unittest.TestCase):
    def test_concurrent_requests_compute_once(self):
        memo = MemoTable()
        calls = []
        barrier = threading.Barrier(8)

        def factory():
            calls.append(1)
            time.sleep(0.05)
            return object()

        def request(_):
            barrier.wait()
            return memo.get_or_compute("Foo.m", factory)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(request, range(8)))

        self.assertEqual(len(calls), 1)
        self.assertEqual(memo.computations, 1)
        self.assertTrue(all(result is results[0] for result in results))

    def test_peek_only_sees_finished_values(self):
        memo = MemoTable()
        self.assertIsNone(memo.peek("k"))
        self.assertNotIn("k", memo)
        memo.get_or_compute("k", lambda: 42)
        self.assertEqual(memo.peek("k"), 42)
        self.assertIn("k", memo)
        self.assertEqual(len(memo), 1)

    def test_factory_errors_are_remembered(self):
        memo = MemoTable()

        def boom():
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            memo.get_or_compute("k", boom)
        with self.assertRaises(RuntimeError):
            memo.get_or_compute("k", lambda: 1)
        self.assertEqual(memo.computations, 1)
        self.assertIsNone(memo.peek("k"))


class TestMethodFacts(unittest.TestCase):
    def test_accesses_tagged_with_lock_sets(self):
        record = method("Foo.m", [acquire("this.L"), write("this.f"), release("this.L"), read("this.f")])
        facts = collect_method_facts(record)
        self.assertEqual([held for _, held in facts.direct], [LockSet.of(L), EMPTY_LOCKSET])
        self.assertIn(L, facts.lock_ids)
        self.assertFalse(facts.degraded)

    def test_budget_overflow_degrades(self):
        record = method(
            "Foo.m", [acquire("this.L"), write("this.f"), call("Foo.g"), release("this.L")]
        )
        facts = collect_method_facts(record, budget=1)
        self.assertTrue(facts.degraded)
        self.assertIn("budget", facts.warning)
        self.assertEqual([held for _, held in facts.direct], [EMPTY_LOCKSET])
        self.assertEqual([held for _, held in facts.calls], [EMPTY_LOCKSET])


class TestCallGraph(unittest.TestCase):
    def test_generations_are_callees_first(self):
        records = {
            r.method_id: r
            for r in [
                method("Foo.top", [call("Foo.mid")]),
                method("Foo.mid", [call("Foo.leaf")]),
                method("Foo.leaf", []),
            ]
        }
        graph = CallGraph(records)
        order = [graph.members(c) for c in graph.components()]
        self.assertEqual(order, [["Foo.leaf"], ["Foo.mid"], ["Foo.top"]])
        self.assertEqual(graph.ids, {"Foo.leaf": 0, "Foo.mid": 1, "Foo.top": 2})

    def test_cycles_and_self_recursion(self):
        records = {
            r.method_id: r
            for r in [
                method("Foo.a", [call("Foo.b")]),
                method("Foo.b", [call("Foo.a")]),
                method("Foo.rec", [call("Foo.rec")]),
                method("Foo.plain", []),
            ]
        }
        graph = CallGraph(records)
        self.assertEqual(graph.component_of("Foo.a"), graph.component_of("Foo.b"))
        self.assertEqual(graph.members(graph.component_of("Foo.a")), ["Foo.a", "Foo.b"])
        self.assertTrue(graph.is_cyclic(graph.component_of("Foo.a")))
        self.assertTrue(graph.is_cyclic(graph.component_of("Foo.rec")))
        self.assertFalse(graph.is_cyclic(graph.component_of("Foo.plain")))

    def test_cycle_members_ordered_callee_first(self):
        records = {
            r.method_id: r
            for r in [
                method("Foo.a", [call("Foo.b")]),
                method("Foo.b", [call("Foo.c")]),
                method("Foo.c", [call("Foo.a")]),
            ]
        }
        graph = CallGraph(records)
        component = graph.component_of("Foo.a")
        self.assertEqual(graph.callee_first(component), ["Foo.c", "Foo.b", "Foo.a"])

    def test_excluded_methods_have_no_edges(self):
        records = {
            r.method_id: r
            for r in [method("Foo.a", [call("Foo.b")]), method("Foo.b", [])]
        }
        graph = CallGraph(records, excluded=["Foo.a"])
        self.assertEqual(graph.method_graph().number_of_edges(), 0)


class TestSummaryBuilder(unittest.TestCase):
    def test_callee_events_rebased_to_call_site(self):
        builder = _builder(
            [
                method("Foo.caller", [acquire("this.L", 1), call("Foo.helper", 2), release("this.L", 3)]),
                method("Foo.helper", [write("this.f", 10)]),
            ]
        )
        helper = builder.summary("Foo.helper")
        caller = builder.summary("Foo.caller")

        (own,) = helper.accesses
        self.assertEqual(own.held_locks, EMPTY_LOCKSET)

        (folded,) = caller.accesses
        self.assertEqual(str(folded.path), "Foo.f")
        self.assertEqual(folded.held_locks, LockSet.of(L))
        self.assertEqual(str(folded.location), "Foo.caller:2")
        self.assertEqual(folded.via, "Foo.helper")
        self.assertEqual(folded.owner, "Foo.caller")

    def test_folded_context_is_join_of_caller_and_event(self):
        main = ThreadContext.MAIN_THREAD_ONLY
        contexts = {"Foo.ui": main, "Foo.worker": BACKGROUND}
        builder = _builder(
            [method("Foo.ui", [call("Foo.worker")]), method("Foo.worker", [write("this.f")])],
            contexts=contexts,
        )
        (folded,) = builder.summary("Foo.ui").accesses
        self.assertIs(folded.thread_context, BACKGROUND)

    def test_mutual_recursion_converges(self):
        builder = _builder(
            [
                method("Foo.a", [write("this.x", 1), call("Foo.b", 2)]),
                method("Foo.b", [write("this.y", 5), call("Foo.a", 6)]),
            ]
        )
        summaries = builder.build_all()
        self.assertEqual({str(p) for p in summaries["Foo.a"].paths()}, {"Foo.x", "Foo.y"})
        self.assertEqual({str(p) for p in summaries["Foo.b"].paths()}, {"Foo.x", "Foo.y"})
        self.assertGreaterEqual(builder.iterations["Foo.a"], 1)
        self.assertEqual(builder.failures, {})

    def test_single_path_cycle_converges_within_path_bound(self):
        size = 5
        methods = [method(f"Foo.m{i}", [call(f"Foo.m{i + 1}", i + 1)]) for i in range(size - 1)]
        methods.append(method(f"Foo.m{size - 1}", [read("this.f", 40), call("Foo.m0", 41)]))
        builder = _builder(methods)
        summaries = builder.build_all()

        paths = set().union(*(summary.paths() for summary in summaries.values()))
        self.assertEqual({str(p) for p in paths}, {"Foo.f"})
        for name in summaries:
            self.assertLessEqual(builder.iterations[name], len(paths) + 1)
        self.assertEqual(builder.failures, {})

        last = summaries[f"Foo.m{size - 1}"]
        self.assertEqual(
            {str(event.location) for event in last.accesses}, {"Foo.m4:40", "Foo.m4:41"}
        )
        self.assertEqual(
            {str(event.location) for event in summaries["Foo.m0"].accesses}, {"Foo.m0:1"}
        )

    def test_recursion_under_lock_keeps_every_lock_set(self):
        builder = _builder(
            [
                method(
                    "Foo.a",
                    [write("this.x", 1), acquire("this.L", 2), call("Foo.b", 3), release("this.L", 4)],
                ),
                method("Foo.b", [read("this.y", 5), call("Foo.a", 6)]),
            ]
        )
        summaries = builder.build_all()
        held = {
            (str(event.path), event.held_locks) for event in summaries["Foo.b"].accesses
        }
        self.assertEqual(
            held,
            {
                ("Foo.y", EMPTY_LOCKSET),
                ("Foo.x", EMPTY_LOCKSET),
                ("Foo.y", LockSet.of(L)),
                ("Foo.x", LockSet.of(L)),
            },
        )

    def test_iteration_cap_fails_only_that_component(self):
        builder = _builder(
            [
                method("Foo.a", [write("this.x"), call("Foo.b")]),
                method("Foo.b", [call("Foo.a")]),
                method("Foo.top", [write("this.z"), call("Foo.a")]),
                method("Foo.other", [write("this.w")]),
            ],
            config=AnalysisConfig(max_fixpoint_iterations=1),
        )
        summaries = builder.build_all()
        self.assertIsNone(summaries["Foo.a"])
        self.assertIsNone(summaries["Foo.b"])
        self.assertIn("did not converge", builder.failures["Foo.a"])
        self.assertEqual({str(p) for p in summaries["Foo.top"].paths()}, {"Foo.z"})
        self.assertEqual({str(p) for p in summaries["Foo.other"].paths()}, {"Foo.w"})

    def test_summaries_are_memoized(self):
        builder = _builder([method("Foo.a", [call("Foo.b")]), method("Foo.b", [read("this.f")])])
        first = builder.summary("Foo.a")
        computations = builder.memo.computations
        self.assertIs(builder.summary("Foo.a"), first)
        self.assertEqual(builder.memo.computations, computations)

    def test_rejected_callee_folds_as_empty(self):
        records = {
            r.method_id: r
            for r in [method("Foo.a", [write("this.f"), call("Foo.bad")]), method("Foo.bad", [write("this.g")])]
        }
        facts = {"Foo.a": collect_method_facts(records["Foo.a"])}
        contexts = {"Foo.a": BACKGROUND, "Foo.bad": BACKGROUND}
        builder = SummaryBuilder(records, facts, contexts, contexts)
        summaries = builder.build_all()
        self.assertIsNone(summaries["Foo.bad"])
        self.assertEqual({str(p) for p in summaries["Foo.a"].paths()}, {"Foo.f"})


@pytest.mark.slow
def test_long_recursive_chain_terminates():
    size = 40
    methods = [
        method(f"Foo.m{i}", [write(f"this.f{i}"), call(f"Foo.m{(i + 1) % size}")])
        for i in range(size)
    ]
    summaries = _builder(methods).build_all()
    assert all(len(summary.paths()) == size for summary in summaries.values())


if __name__ == "__main__":
    unittest.main()
