"""
Thread-Context Classifier.

Decides, per method, whether it may run on a background thread concurrently
with other code. Evidence comes from explicit markers on methods and classes,
markers inherited through superclasses and interfaces, overriding a method of
a thread-shared type, and finally the call graph: a caller whose calls reach a
background-reachable callee is itself background-reachable at summary level.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import networkx as nx

from raceguard.cfg import Annotations, ClassRecord, MethodRecord
from raceguard.model import ThreadContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassFlags:
    """Thread-safety capabilities resolved once per class"""

    thread_shared: bool = False
    thread_confined: bool = False


class ClassHierarchy:
    """Type hierarchy over the classes of one run.

    Edges point from a type to its direct supertypes. Classes only mentioned
    as a method's declaring class or as a supertype are created implicitly
    with no markers.
    """

    def __init__(self, classes: Iterable[ClassRecord], methods: Iterable[MethodRecord]):
        self.classes: Dict[str, ClassRecord] = {}
        self.graph = nx.DiGraph()
        self.declared: Dict[str, Dict[str, str]] = {}

        for record in classes:
            self.classes[record.name] = record
        for method in methods:
            self.classes.setdefault(method.declaring_class, ClassRecord(method.declaring_class))
            self.declared.setdefault(method.declaring_class, {})[method.simple_name] = (
                method.method_id
            )
        for record in list(self.classes.values()):
            self.graph.add_node(record.name)
            for supertype in record.supertypes:
                self.classes.setdefault(supertype, ClassRecord(supertype))
                self.graph.add_edge(record.name, supertype)

        self.flags: Dict[str, ClassFlags] = {
            name: self._resolve_flags(name) for name in self.classes
        }

    def ancestors(self, name: str) -> List[str]:
        """Proper supertypes, nearest first (superclass before interfaces)"""
        if name not in self.graph:
            return []
        return [node for node in nx.bfs_tree(self.graph, name) if node != name]

    def _resolve_flags(self, name: str) -> ClassFlags:
        lineage = [name] + self.ancestors(name)
        markers = [self.classes[type_name].annotations for type_name in lineage]
        return ClassFlags(
            thread_shared=any(marker.thread_safe for marker in markers),
            thread_confined=any(marker.thread_confined for marker in markers),
        )

    def class_names(self) -> List[str]:
        return sorted(self.classes)

    def methods_of(self, name: str) -> List[str]:
        """Declared methods plus inherited ones the class does not override"""
        visible: Dict[str, str] = dict(self.declared.get(name, {}))
        for ancestor in self.ancestors(name):
            for simple_name, method_id in self.declared.get(ancestor, {}).items():
                visible.setdefault(simple_name, method_id)
        return sorted(visible.values())

    def overridden_thread_shared(self, name: str, simple_name: str) -> Optional[str]:
        """Thread-shared ancestor declaring a method this one overrides, if any"""
        for ancestor in self.ancestors(name):
            if self.flags[ancestor].thread_shared and simple_name in self.declared.get(
                ancestor, {}
            ):
                return ancestor
        return None


class ThreadContextClassifier:
    """Classifies methods into MainThreadOnly / UnknownThread / BackgroundReachable"""

    def __init__(self, hierarchy: ClassHierarchy, methods: Dict[str, MethodRecord]):
        self.hierarchy = hierarchy
        self.methods = methods
        self._direct: Dict[str, ThreadContext] = {}

    def direct_context(self, method_id: str) -> ThreadContext:
        """Context from markers and structure only; tags the method's own accesses"""
        if method_id not in self._direct:
            self._direct[method_id] = self._classify(self.methods[method_id])
        return self._direct[method_id]

    def _classify(self, method: MethodRecord) -> ThreadContext:
        marks: Annotations = method.annotations
        flags = self.hierarchy.flags.get(method.declaring_class, ClassFlags())

        if marks.thread_confined:
            return ThreadContext.MAIN_THREAD_ONLY
        if marks.thread_safe:
            return ThreadContext.BACKGROUND_REACHABLE
        overridden = self.hierarchy.overridden_thread_shared(
            method.declaring_class, method.simple_name
        )
        if overridden:
            logger.debug(
                "%s overrides a method of thread-shared %s", method.method_id, overridden
            )
            return ThreadContext.BACKGROUND_REACHABLE
        if flags.thread_shared:
            return ThreadContext.BACKGROUND_REACHABLE
        if flags.thread_confined:
            return ThreadContext.MAIN_THREAD_ONLY
        return ThreadContext.UNKNOWN_THREAD

    def propagate(self, call_graph: nx.DiGraph) -> Dict[str, ThreadContext]:
        """Summary-level contexts: join of a method's own context and every
        context reachable along its calls.

        ``call_graph`` has method ids as nodes and caller -> callee edges.
        """
        condensed = nx.condensation(call_graph)
        members = nx.get_node_attributes(condensed, "members")
        component_context: Dict[int, ThreadContext] = {}
        for component in reversed(list(nx.topological_sort(condensed))):
            context = ThreadContext.join_all(
                self.direct_context(method_id) for method_id in members[component]
            )
            for callee_component in condensed.successors(component):
                context = context.join(component_context[callee_component])
            component_context[component] = context

        return {
            method_id: component_context[component]
            for component, method_ids in members.items()
            for method_id in method_ids
        }


def is_concurrent(context: ThreadContext, strict: bool) -> bool:
    """Whether an access in ``context`` may overlap with another thread"""
    if context is ThreadContext.BACKGROUND_REACHABLE:
        return True
    if context is ThreadContext.UNKNOWN_THREAD:
        return not strict
    return False
