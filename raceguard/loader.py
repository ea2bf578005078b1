"""
JSON input for method and class records.

Accepts the snake_case keys used throughout this package and the camelCase
spelling front-ends tend to emit (``methodId``, ``declaringClass``,
``threadSafe``, ``guardedBy``, ``locksHeld``). A broken method entry rejects
only that method; a document without a ``methods`` list is unusable.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

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
    Statement,
)
from raceguard.errors import InputFormatError

logger = logging.getLogger(__name__)


def _get(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return default


def _require(data: Dict[str, Any], what: str, *keys: str) -> Any:
    value = _get(data, *keys)
    if value is None:
        raise InputFormatError(f"{what} is missing '{keys[0]}'")
    return value


def _line(data: Dict[str, Any]) -> Optional[int]:
    line = data.get("line")
    if line is None:
        return None
    if not isinstance(line, int) or isinstance(line, bool):
        raise InputFormatError(f"line must be an integer, got {line!r}")
    return line


def parse_annotations(data: Optional[Dict[str, Any]]) -> Annotations:
    if not data:
        return Annotations()
    if not isinstance(data, dict):
        raise InputFormatError("annotations must be an object")
    return Annotations(
        thread_safe=bool(_get(data, "thread_safe", "threadSafe", default=False)),
        thread_confined=bool(_get(data, "thread_confined", "threadConfined", default=False)),
        guarded_by=_get(data, "guarded_by", "guardedBy"),
    )


def parse_statement(data: Dict[str, Any]) -> Statement:
    if not isinstance(data, dict):
        raise InputFormatError(f"statement must be an object, got {data!r}")
    op = data.get("op")
    if op in ("read", "write"):
        target = _require(data, f"{op} statement", "path", "target")
        kind = FieldWrite if op == "write" else FieldRead
        return kind(
            target=str(target),
            owner=data.get("owner"),
            line=_line(data),
            dynamic=bool(data.get("dynamic", False)),
        )
    if op in ("acquire", "release"):
        lock = _require(data, f"{op} statement", "lock")
        kind = LockAcquire if op == "acquire" else LockRelease
        return kind(lock=str(lock), owner=data.get("owner"), line=_line(data))
    if op == "call":
        callee = _require(data, "call statement", "callee", "calleeId")
        held = _get(data, "locks_held", "locksHeld", default=[]) or []
        if not isinstance(held, list):
            raise InputFormatError("locks_held must be a list")
        return Call(callee=str(callee), locks_held=tuple(str(lock) for lock in held), line=_line(data))
    raise InputFormatError(f"unknown statement op {op!r}")


def parse_cfg(data: Dict[str, Any]) -> ControlFlowGraph:
    if not isinstance(data, dict):
        raise InputFormatError("cfg must be an object")
    blocks_data = _require(data, "cfg", "blocks")
    if not isinstance(blocks_data, list) or not blocks_data:
        raise InputFormatError("cfg blocks must be a non-empty list")

    blocks: List[BasicBlock] = []
    for block in blocks_data:
        if not isinstance(block, dict):
            raise InputFormatError("block must be an object")
        block_id = str(_require(block, "block", "id", "block_id"))
        statements = block.get("statements", [])
        if not isinstance(statements, list):
            raise InputFormatError(f"block '{block_id}' statements must be a list")
        successors = block.get("successors", [])
        if not isinstance(successors, list):
            raise InputFormatError(f"block '{block_id}' successors must be a list")
        blocks.append(
            BasicBlock(
                block_id,
                tuple(parse_statement(stmt) for stmt in statements),
                tuple(str(succ) for succ in successors),
            )
        )

    entry = data.get("entry", blocks[0].block_id)
    return ControlFlowGraph(str(entry), blocks)


def parse_method(data: Dict[str, Any]) -> MethodRecord:
    if not isinstance(data, dict):
        raise InputFormatError("method record must be an object")
    method_id = str(_require(data, "method", "id", "methodId", "method_id"))
    declaring_class = _get(data, "class", "declaringClass", "declaring_class")
    if declaring_class is None:
        if "." not in method_id:
            raise InputFormatError(f"method '{method_id}' has no declaring class")
        declaring_class = method_id.rsplit(".", 1)[0]
    return MethodRecord(
        method_id=method_id,
        declaring_class=str(declaring_class),
        cfg=parse_cfg(_require(data, f"method '{method_id}'", "cfg")),
        annotations=parse_annotations(data.get("annotations")),
        name=data.get("name"),
    )


def parse_class(data: Dict[str, Any]) -> ClassRecord:
    if not isinstance(data, dict):
        raise InputFormatError("class record must be an object")
    interfaces = data.get("interfaces") or []
    if not isinstance(interfaces, list):
        raise InputFormatError("interfaces must be a list")
    return ClassRecord(
        name=str(_require(data, "class", "name")),
        superclass=_get(data, "superclass", "extends"),
        interfaces=tuple(str(name) for name in interfaces),
        annotations=parse_annotations(data.get("annotations")),
    )


def parse_program(data: Any) -> Program:
    """Build a Program from a decoded JSON document.

    Raises:
        InputFormatError: if the document is not an object with a ``methods``
            list or a class record is malformed
    """
    if not isinstance(data, dict) or not isinstance(data.get("methods"), list):
        raise InputFormatError("input must be an object with a 'methods' list")

    classes = data.get("classes") or []
    if not isinstance(classes, list):
        raise InputFormatError("'classes' must be a list")

    program = Program()
    for entry in classes:
        program.classes.append(parse_class(entry))

    for position, entry in enumerate(data["methods"]):
        name = f"<methods[{position}]>"
        if isinstance(entry, dict):
            name = str(_get(entry, "id", "methodId", "method_id", default=name))
        try:
            program.methods.append(parse_method(entry))
        except InputFormatError as exc:
            logger.warning("Rejecting method %s: %s", name, exc.message)
            program.rejected[name] = exc.message
    return program


def load_program(path: Union[str, Path]) -> Program:
    """Read and parse a JSON document of method records

    Raises:
        OSError: if the file cannot be read
        InputFormatError: if the content is not valid JSON or not a program
    """
    text = Path(path).read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InputFormatError(f"invalid JSON in {path}: {exc}") from exc
    return parse_program(data)
