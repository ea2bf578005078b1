"""
Normalized control-flow graphs and method records handed over by a
language front-end.

A method body is a graph of basic blocks holding typed statements: field
reads and writes, lock acquire/release, and calls. The graph itself is kept as
a ``networkx.DiGraph`` so dataflow passes can walk predecessors and compute a
reverse postorder without hand-rolled traversal code.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

import networkx as nx

from raceguard.errors import MalformedCFG


@dataclass(frozen=True)
class FieldRead:
    """Read of a field or collection element"""

    target: str
    owner: Optional[str] = None  # declaring class of the first field, if known
    line: Optional[int] = None
    dynamic: bool = False  # reflective or computed access


@dataclass(frozen=True)
class FieldWrite:
    """Write of a field or collection element"""

    target: str
    owner: Optional[str] = None
    line: Optional[int] = None
    dynamic: bool = False


@dataclass(frozen=True)
class LockAcquire:
    lock: str
    owner: Optional[str] = None
    line: Optional[int] = None


@dataclass(frozen=True)
class LockRelease:
    lock: str
    owner: Optional[str] = None
    line: Optional[int] = None


@dataclass(frozen=True)
class Call:
    """Call site; ``locks_held`` are locks the front-end knows are held"""

    callee: str
    locks_held: Tuple[str, ...] = ()
    line: Optional[int] = None


Statement = Union[FieldRead, FieldWrite, LockAcquire, LockRelease, Call]
FIELD_ACCESSES = (FieldRead, FieldWrite)


@dataclass(frozen=True)
class BasicBlock:
    block_id: str
    statements: Tuple[Statement, ...] = ()
    successors: Tuple[str, ...] = ()


class ControlFlowGraph:
    """Basic blocks of one method plus the designated entry block"""

    def __init__(self, entry: str, blocks: Iterable[BasicBlock]):
        self.entry = entry
        block_list = list(blocks)
        self.blocks: Dict[str, BasicBlock] = {}
        counts = Counter(block.block_id for block in block_list)
        self._duplicates = sorted(bid for bid, count in counts.items() if count > 1)
        for block in block_list:
            self.blocks.setdefault(block.block_id, block)
        self._graph: Optional[nx.DiGraph] = None

    @classmethod
    def linear(cls, statements: Sequence[Statement], block_id: str = "entry") -> "ControlFlowGraph":
        """Single-block CFG, handy for straight-line method bodies"""
        return cls(block_id, [BasicBlock(block_id, tuple(statements))])

    def validate(self, method_id: Optional[str] = None) -> None:
        """Raise MalformedCFG for missing or duplicate blocks"""
        if self._duplicates:
            raise MalformedCFG(
                f"duplicate block ids: {', '.join(self._duplicates)}", method_id
            )
        if self.entry not in self.blocks:
            raise MalformedCFG(f"entry block '{self.entry}' is missing", method_id)
        for block in self.blocks.values():
            for successor in block.successors:
                if successor not in self.blocks:
                    raise MalformedCFG(
                        f"block '{block.block_id}' jumps to missing block '{successor}'",
                        method_id,
                    )

    @property
    def graph(self) -> nx.DiGraph:
        if self._graph is None:
            graph = nx.DiGraph()
            for block_id, block in self.blocks.items():
                graph.add_node(block_id)
                for successor in block.successors:
                    graph.add_edge(block_id, successor)
            self._graph = graph
        return self._graph

    def reverse_postorder(self) -> List[str]:
        """Blocks reachable from the entry, in reverse postorder"""
        order = list(nx.dfs_postorder_nodes(self.graph, source=self.entry))
        order.reverse()
        return order

    def reachable(self) -> Set[str]:
        return set(nx.descendants(self.graph, self.entry)) | {self.entry}

    def predecessors(self, block_id: str) -> List[str]:
        return list(self.graph.predecessors(block_id))

    def statements(self) -> Iterator[Tuple[str, int, Statement]]:
        for block_id, block in self.blocks.items():
            for index, stmt in enumerate(block.statements):
                yield block_id, index, stmt

    def call_sites(self) -> Iterator[Tuple[str, int, Call]]:
        for block_id, index, stmt in self.statements():
            if isinstance(stmt, Call):
                yield block_id, index, stmt

    def callees(self) -> List[str]:
        seen: List[str] = []
        for _, _, call in self.call_sites():
            if call.callee not in seen:
                seen.append(call.callee)
        return seen

    def __len__(self) -> int:
        return len(self.blocks)

    def __repr__(self) -> str:
        return f"ControlFlowGraph(entry={self.entry!r}, blocks={len(self.blocks)})"


@dataclass(frozen=True)
class Annotations:
    """Thread-safety markers attached to a class or method"""

    thread_safe: bool = False
    thread_confined: bool = False
    guarded_by: Optional[str] = None


@dataclass
class MethodRecord:
    """One method as delivered by the front-end"""

    method_id: str
    declaring_class: str
    cfg: ControlFlowGraph
    annotations: Annotations = field(default_factory=Annotations)
    name: Optional[str] = None

    @property
    def simple_name(self) -> str:
        return self.name or self.method_id.rsplit(".", 1)[-1]


@dataclass
class ClassRecord:
    name: str
    superclass: Optional[str] = None
    interfaces: Tuple[str, ...] = ()
    annotations: Annotations = field(default_factory=Annotations)

    @property
    def supertypes(self) -> Tuple[str, ...]:
        if self.superclass:
            return (self.superclass,) + tuple(self.interfaces)
        return tuple(self.interfaces)


@dataclass
class Program:
    """Method and class records for one analysis run.

    ``rejected`` maps method ids that could not even be loaded to the reason.
    """

    methods: List[MethodRecord] = field(default_factory=list)
    classes: List[ClassRecord] = field(default_factory=list)
    rejected: Dict[str, str] = field(default_factory=dict)


def validate_method(record: MethodRecord, known_methods: Set[str]) -> None:
    """Structural checks for one method; raises MalformedCFG"""
    if record.cfg is None:
        raise MalformedCFG("method has no CFG", record.method_id)
    record.cfg.validate(record.method_id)
    for _, _, call in record.cfg.call_sites():
        if call.callee not in known_methods:
            raise MalformedCFG(
                f"call to unknown method '{call.callee}'", record.method_id
            )
