"""
Access Path Extractor.

Turns the field and collection-element accesses of one method CFG into
canonical ``(path, kind, location)`` items in program order. Call sites are
kept as markers for the summary builder; nothing is inlined here.

Accesses that cannot be tied to a declared field (reflection, computed member
names, call results) are dropped and reported as skipped. This under-counts
accesses on purpose rather than inventing paths.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from raceguard.cfg import Call, FieldRead, FieldWrite, MethodRecord
from raceguard.errors import UnresolvableAccessPath
from raceguard.model import ELEMENT_FIELD, AccessKind, AccessPath, Location

logger = logging.getLogger(__name__)

_IDENT = r"[A-Za-z_$][\w$]*"
_EXPRESSION = re.compile(rf"{_IDENT}(?:\s*\.\s*{_IDENT}|\s*\[[^\[\]]*\])*")
_TOKEN = re.compile(rf"{_IDENT}|\[[^\[\]]*\]")


def _tokenize(expression: str) -> List[str]:
    tokens = _TOKEN.findall(expression)
    return [ELEMENT_FIELD if token.startswith("[") else token for token in tokens]


def normalize_access_path(
    expression: str,
    declaring_class: str,
    field_owner: Optional[str] = None,
    dynamic: bool = False,
) -> AccessPath:
    """Canonicalize an access expression.

    Args:
        expression: front-end rendering of the access, e.g. ``this.f``,
            ``obj.f``, ``this.a.b`` or ``this.items[k]``
        declaring_class: class of the method performing the access
        field_owner: declaring class of the first field, when the front-end
            resolved it
        dynamic: the front-end marked the access as reflective/computed

    Returns:
        The canonical AccessPath. ``this.f`` and ``obj.f`` coincide whenever
        they name the same declared field. Anything below a collection
        element collapses onto the synthetic ``field[]`` path.

    Raises:
        UnresolvableAccessPath: if the expression does not denote a field
    """
    text = expression.strip()
    if dynamic:
        raise UnresolvableAccessPath(expression, "reflective or computed access")
    if not text or not _EXPRESSION.fullmatch(text):
        raise UnresolvableAccessPath(expression, "not a field access expression")

    tokens = _tokenize(text)
    root = tokens[0]
    if root == "this":
        chain = tokens[1:]
        if not chain:
            raise UnresolvableAccessPath(expression, "bare receiver")
        if chain[0] == ELEMENT_FIELD:
            raise UnresolvableAccessPath(expression, "indexed receiver")
        owner = field_owner or declaring_class
    elif len(tokens) == 1 or tokens[1] == ELEMENT_FIELD:
        # implicit receiver: `f` or `items[k]`
        chain = tokens
        owner = field_owner or declaring_class
    else:
        chain = tokens[1:]
        if field_owner is None:
            raise UnresolvableAccessPath(
                expression, f"unknown declaring class for receiver '{root}'"
            )
        owner = field_owner

    if ELEMENT_FIELD in chain:
        chain = chain[: chain.index(ELEMENT_FIELD) + 1]
    return AccessPath(owner, tuple(chain))


@dataclass(frozen=True)
class ExtractedAccess:
    path: AccessPath
    kind: AccessKind
    location: Location


@dataclass(frozen=True)
class CallMarker:
    callee: str
    location: Location
    declared_locks: Tuple[str, ...] = ()


ExtractedItem = Union[ExtractedAccess, CallMarker]


@dataclass
class Extraction:
    """Program-ordered accesses and call markers of one method"""

    method_id: str
    items: List[ExtractedItem] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def accesses(self) -> List[ExtractedAccess]:
        return [item for item in self.items if isinstance(item, ExtractedAccess)]

    @property
    def calls(self) -> List[CallMarker]:
        return [item for item in self.items if isinstance(item, CallMarker)]


class AccessPathExtractor:
    """Per-method extractor; stateless apart from the record it reads"""

    def __init__(self, record: MethodRecord):
        self.record = record

    def extract(self) -> Extraction:
        record = self.record
        cfg = record.cfg
        result = Extraction(record.method_id)

        for block_id in cfg.reverse_postorder():
            block = cfg.blocks[block_id]
            for index, stmt in enumerate(block.statements):
                location = Location(record.method_id, stmt.line, block_id, index)
                if isinstance(stmt, Call):
                    result.items.append(
                        CallMarker(stmt.callee, location, tuple(stmt.locks_held))
                    )
                elif isinstance(stmt, (FieldRead, FieldWrite)):
                    kind = AccessKind.WRITE if isinstance(stmt, FieldWrite) else AccessKind.READ
                    try:
                        path = normalize_access_path(
                            stmt.target,
                            record.declaring_class,
                            field_owner=stmt.owner,
                            dynamic=stmt.dynamic,
                        )
                    except UnresolvableAccessPath as exc:
                        note = (
                            f"{location}: skipped {kind.value.lower()} of "
                            f"'{stmt.target}' ({exc.reason})"
                        )
                        logger.debug("Skipped access in %s: %s", record.method_id, exc.message)
                        result.skipped.append(note)
                        continue
                    result.items.append(ExtractedAccess(path, kind, location))

        unreachable = set(cfg.blocks) - cfg.reachable()
        if unreachable:
            logger.debug(
                "Ignoring %d unreachable block(s) in %s", len(unreachable), record.method_id
            )
        return result
