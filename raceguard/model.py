"""
Core data model shared by every analysis phase.

All value types here are immutable and compare structurally, so summaries
built from the same CFGs are identical across runs and safe to share between
worker threads.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Iterator, Optional, Tuple

ELEMENT_FIELD = "[]"


class AccessKind(Enum):
    """Memory access classification"""

    READ = "READ"
    WRITE = "WRITE"


class ThreadContext(Enum):
    """Where a method may execute, ordered MAIN < UNKNOWN < BACKGROUND"""

    MAIN_THREAD_ONLY = "MainThreadOnly"
    UNKNOWN_THREAD = "UnknownThread"
    BACKGROUND_REACHABLE = "BackgroundReachable"

    @property
    def rank(self) -> int:
        return _THREAD_RANK[self]

    def join(self, other: "ThreadContext") -> "ThreadContext":
        """Least upper bound; BACKGROUND_REACHABLE dominates"""
        return self if self.rank >= other.rank else other

    @classmethod
    def join_all(cls, contexts: Iterable["ThreadContext"]) -> "ThreadContext":
        result = cls.MAIN_THREAD_ONLY
        for context in contexts:
            result = result.join(context)
        return result


_THREAD_RANK = {
    ThreadContext.MAIN_THREAD_ONLY: 0,
    ThreadContext.UNKNOWN_THREAD: 1,
    ThreadContext.BACKGROUND_REACHABLE: 2,
}


class Confidence(Enum):
    """Race candidate confidence"""

    LOW = "LOW"  # at least one side only possibly concurrent
    HIGH = "HIGH"  # both sides definitely background-reachable

    @property
    def rank(self) -> int:
        return 1 if self is Confidence.HIGH else 0

    def __ge__(self, other: "Confidence") -> bool:
        return self.rank >= other.rank

    def __lt__(self, other: "Confidence") -> bool:
        return self.rank < other.rank


class LockKind(Enum):
    """Shape of the guarding-object expression"""

    RECEIVER = "receiver"  # synchronized(this)
    FIELD = "field"  # a named field holding a lock
    CLASS = "class"  # class-level lock


@dataclass(frozen=True)
class LockId:
    """Canonical lock identifier"""

    kind: LockKind
    owner: str
    name: str = ""

    @property
    def sort_key(self) -> Tuple[str, str, str]:
        return (self.owner, self.kind.value, self.name)

    def __str__(self) -> str:
        if self.kind is LockKind.RECEIVER:
            return f"{self.owner}.this"
        if self.kind is LockKind.CLASS:
            return f"{self.owner}.class"
        return f"{self.owner}.{self.name}"


@dataclass(frozen=True)
class LockSet:
    """Set of locks statically known to be held; ordered by subset"""

    locks: FrozenSet[LockId] = frozenset()

    @classmethod
    def of(cls, *locks: LockId) -> "LockSet":
        return cls(frozenset(locks))

    def acquire(self, lock: LockId) -> "LockSet":
        if lock in self.locks:
            return self
        return LockSet(self.locks | {lock})

    def release(self, lock: LockId) -> "LockSet":
        if lock not in self.locks:
            return self
        return LockSet(self.locks - {lock})

    def meet(self, other: "LockSet") -> "LockSet":
        """Intersection: only locks held on both sides survive"""
        return LockSet(self.locks & other.locks)

    def union(self, other: "LockSet") -> "LockSet":
        return LockSet(self.locks | other.locks)

    def is_empty(self) -> bool:
        return not self.locks

    def __le__(self, other: "LockSet") -> bool:
        return self.locks <= other.locks

    def __contains__(self, lock: object) -> bool:
        return lock in self.locks

    def __iter__(self) -> Iterator[LockId]:
        return iter(sorted(self.locks, key=lambda lock: lock.sort_key))

    def __len__(self) -> int:
        return len(self.locks)

    def __str__(self) -> str:
        return "{" + ", ".join(str(lock) for lock in self) + "}"


EMPTY_LOCKSET = LockSet()


@dataclass(frozen=True)
class AccessPath:
    """Canonical field or field-chain identifier.

    ``owner`` is the declaring class of the first field in ``fields``. Element
    accesses into a collection field collapse onto a single synthetic
    ``[]`` component.
    """

    owner: str
    fields: Tuple[str, ...]

    @property
    def is_element(self) -> bool:
        return ELEMENT_FIELD in self.fields

    @property
    def sort_key(self) -> Tuple[str, Tuple[str, ...]]:
        return (self.owner, self.fields)

    def __str__(self) -> str:
        text = self.owner
        for name in self.fields:
            text += name if name == ELEMENT_FIELD else f".{name}"
        return text


@dataclass(frozen=True)
class Location:
    """A program point inside one method"""

    method_id: str
    line: Optional[int]
    block: str
    index: int

    @property
    def sort_key(self) -> Tuple[str, bool, int, str, int]:
        return (
            self.method_id,
            self.line is None,
            self.line or 0,
            self.block,
            self.index,
        )

    def __str__(self) -> str:
        if self.line is not None:
            return f"{self.method_id}:{self.line}"
        return f"{self.method_id}@{self.block}[{self.index}]"


@dataclass(frozen=True)
class AccessEvent:
    """A field access tagged with its lock set and thread context"""

    path: AccessPath
    kind: AccessKind
    held_locks: LockSet
    location: Location
    thread_context: ThreadContext
    owner: str
    via: Optional[str] = None

    @property
    def is_write(self) -> bool:
        return self.kind is AccessKind.WRITE

    @property
    def may_run_on_background_thread(self) -> bool:
        """Non-strict view: anything not confined to the main thread"""
        return self.thread_context is not ThreadContext.MAIN_THREAD_ONLY

    @property
    def sort_key(self) -> Tuple[Any, ...]:
        return (
            self.location.sort_key,
            self.path.sort_key,
            self.kind.value,
            self.via or "",
            self.thread_context.rank,
            tuple(lock.sort_key for lock in self.held_locks),
        )


@dataclass(frozen=True)
class MethodSummary:
    """Finalized per-method abstraction of tagged accesses"""

    method_id: str
    accesses: FrozenSet[AccessEvent]
    thread_context: ThreadContext
    degraded: bool = False

    def paths(self) -> FrozenSet[AccessPath]:
        return frozenset(event.path for event in self.accesses)

    def events_on(self, path: AccessPath) -> Tuple[AccessEvent, ...]:
        return tuple(
            sorted(
                (event for event in self.accesses if event.path == path),
                key=lambda event: event.sort_key,
            )
        )


@dataclass
class RaceCandidate:
    """Two same-path accesses, at least one a write, with no common lock"""

    path: AccessPath
    first: AccessEvent
    second: AccessEvent
    confidence: Confidence
    class_name: str
    description: str = ""
    fix_suggestion: str = ""

    @property
    def owners(self) -> FrozenSet[str]:
        return frozenset((self.first.owner, self.second.owner))

    @property
    def key(self) -> Tuple[AccessPath, FrozenSet[str]]:
        return (self.path, self.owners)


@dataclass
class Finding:
    """Output record consumed by report emitters"""

    access_path: str
    location_a: str
    location_b: str
    confidence: Confidence
    message: str
    class_name: str
    kind: str = "RaceCandidate"
    fix_suggestion: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "kind": self.kind,
            "class": self.class_name,
            "access_path": self.access_path,
            "location_a": self.location_a,
            "location_b": self.location_b,
            "confidence": self.confidence.value,
            "message": self.message,
            "fix_suggestion": self.fix_suggestion,
        }
        data.update(self.extra)
        return data
