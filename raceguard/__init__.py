"""
RaceGuard - compositional static data-race analysis over normalized CFGs.
"""

from raceguard.analyzer import AnalysisResult, RaceAnalyzer, __version__
from raceguard.cfg import (
    Annotations,
    BasicBlock,
    Call,
    ClassRecord,
    ControlFlowGraph,
    FieldRead,
    FieldWrite,
    LockAcquire,
    LockRelease,
    MethodRecord,
    Program,
)
from raceguard.config import AnalysisConfig
from raceguard.errors import (
    AnalysisError,
    BudgetExceeded,
    InputFormatError,
    MalformedCFG,
    NonConvergentFixpoint,
    UnresolvableAccessPath,
)
from raceguard.loader import load_program, parse_program
from raceguard.model import (
    AccessEvent,
    AccessKind,
    AccessPath,
    Confidence,
    Finding,
    LockId,
    LockKind,
    LockSet,
    MethodSummary,
    RaceCandidate,
    ThreadContext,
)

__all__ = [
    "AccessEvent",
    "AccessKind",
    "AccessPath",
    "AnalysisConfig",
    "AnalysisError",
    "AnalysisResult",
    "Annotations",
    "BasicBlock",
    "BudgetExceeded",
    "Call",
    "ClassRecord",
    "Confidence",
    "ControlFlowGraph",
    "FieldRead",
    "FieldWrite",
    "Finding",
    "InputFormatError",
    "LockAcquire",
    "LockId",
    "LockKind",
    "LockRelease",
    "LockSet",
    "MalformedCFG",
    "MethodRecord",
    "MethodSummary",
    "NonConvergentFixpoint",
    "Program",
    "RaceAnalyzer",
    "RaceCandidate",
    "ThreadContext",
    "UnresolvableAccessPath",
    "__version__",
    "load_program",
    "parse_program",
]
