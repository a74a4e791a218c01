"""
Documentation model for C++ sources.

Declarations live in an arena keyed by stable ids, and every edge (parent,
children, references) is an id, so cyclic type graphs need no special care.
The graph is mutable while it is being built, frozen once building is done,
and sealed once every reference has a target.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from enum import Enum

from .errors import GraphFrozenError


class DeclKind(Enum):
    NAMESPACE = "namespace"
    RECORD = "record"
    ENUM = "enum"
    FUNCTION = "function"
    ALIAS = "alias"
    FIELD = "field"
    ENUM_CONSTANT = "enum_constant"
    TEMPLATE_PARAM = "template_param"


class RefKind(Enum):
    TYPE_USE = "type_use"
    BASE_CLASS = "base_class"
    ALIAS_OF = "alias_of"
    NAME_MENTION = "name_mention"


# Declaration kinds a reference of each kind may point at
COMPATIBLE_KINDS = {
    RefKind.TYPE_USE: frozenset(
        {DeclKind.RECORD, DeclKind.ENUM, DeclKind.ALIAS, DeclKind.TEMPLATE_PARAM}
    ),
    RefKind.ALIAS_OF: frozenset(
        {DeclKind.RECORD, DeclKind.ENUM, DeclKind.ALIAS, DeclKind.TEMPLATE_PARAM}
    ),
    RefKind.BASE_CLASS: frozenset({DeclKind.RECORD, DeclKind.ALIAS, DeclKind.TEMPLATE_PARAM}),
    RefKind.NAME_MENTION: frozenset(DeclKind),
}

# Kinds that open a scope for name lookup
SCOPE_KINDS = frozenset({DeclKind.NAMESPACE, DeclKind.RECORD, DeclKind.ENUM})

ROOT_NAME = ""


def stable_id(*parts):
    """Deterministic 16-hex-digit id derived from ``parts``."""
    digest = hashlib.sha1("\x1f".join(str(p) for p in parts).encode("utf-8"))
    return digest.hexdigest()[:16]


def declaration_id(kind, qualified_name, signature_key=""):
    return stable_id(kind.value, qualified_name, signature_key)


def join_name(scope, name):
    if not scope:
        return name
    return f"{scope}::{name}"


@dataclass(frozen=True)
class SourceLocation:
    file: str = ""
    line: int = 0
    column: int = 0

    def canonical(self):
        path = os.path.realpath(self.file) if self.file else ""
        return (path, self.line, self.column)

    def __str__(self):
        return f"{self.file}:{self.line}:{self.column}"


@dataclass(frozen=True)
class Param:
    type: str
    name: str = ""


@dataclass
class Signature:
    return_type: str = ""
    parameters: list[Param] = field(default_factory=list)
    template_parameters: list[Param] = field(default_factory=list)
    underlying: str = ""
    bases: list[str] = field(default_factory=list)
    qualifiers: list[str] = field(default_factory=list)

    def key(self, kind):
        """Part of the declaration id that tells overloads apart."""
        if kind != DeclKind.FUNCTION:
            return ""
        params = ",".join(" ".join(p.type.split()) for p in self.parameters)
        quals = " ".join(q for q in self.qualifiers if q == "const")
        tmpl = ",".join(p.type for p in self.template_parameters)
        key = f"({params})"
        if quals:
            key += f" {quals}"
        if tmpl:
            key = f"<{tmpl}>{key}"
        return key

    def parameter_types(self):
        return tuple(" ".join(p.type.split()) for p in self.parameters)


@dataclass
class Specialization:
    args: str
    location: SourceLocation = field(default_factory=SourceLocation)
    raw_comment: str = ""
    partial: bool = False


@dataclass
class Declaration:
    id: str
    kind: DeclKind
    name: str
    qualified_name: str
    location: SourceLocation = field(default_factory=SourceLocation)
    raw_comment: str = ""
    parent_id: str | None = None
    children: list[str] = field(default_factory=list)
    signature: Signature = field(default_factory=Signature)
    specializations: list[Specialization] = field(default_factory=list)
    using_directives: list[str] = field(default_factory=list)

    def display_name(self):
        if self.kind == DeclKind.NAMESPACE and not self.qualified_name:
            return "::"
        return self.qualified_name

    def find_specialization(self, args):
        norm = normalize_args(args)
        for spec in self.specializations:
            if normalize_args(spec.args) == norm and not spec.partial:
                return spec
        return None


def normalize_args(args):
    return "".join((args or "").split())


# ── Reference targets ──


@dataclass(frozen=True)
class Single:
    id: str
    specialization: str | None = None

    tag = "single"


@dataclass(frozen=True)
class OverloadSet:
    ids: tuple[str, ...]

    tag = "overload_set"


@dataclass(frozen=True)
class AliasChain:
    """Alias hops in order; the last id is the final target unless it left the graph."""

    ids: tuple[str, ...]
    terminal_name: str | None = None

    tag = "alias"

    @property
    def final_id(self):
        if self.terminal_name is not None:
            return None
        return self.ids[-1]


@dataclass(frozen=True)
class External:
    name: str

    tag = "external"


@dataclass(frozen=True)
class Unresolved:
    tag = "unresolved"


UNRESOLVED = Unresolved()


def target_ids(target):
    """Every declaration id a target points at."""
    if isinstance(target, Single):
        return (target.id,)
    if isinstance(target, (OverloadSet, AliasChain)):
        return target.ids
    return ()


def target_to_dict(target):
    data = {"tag": target.tag}
    if isinstance(target, Single):
        data["id"] = target.id
        if target.specialization:
            data["specialization"] = target.specialization
    elif isinstance(target, OverloadSet):
        data["ids"] = list(target.ids)
    elif isinstance(target, AliasChain):
        data["ids"] = list(target.ids)
        if target.terminal_name is not None:
            data["terminal_name"] = target.terminal_name
    elif isinstance(target, External):
        data["name"] = target.name
    return data


@dataclass
class Reference:
    id: str
    owner_id: str
    kind: RefKind
    text: str
    target: object = UNRESOLVED

    @property
    def resolved(self):
        return not isinstance(self.target, Unresolved)


def reference_id(owner_id, kind, text, ordinal=0):
    return stable_id("ref", owner_id, kind.value, text, ordinal)


# ── Doc comments ──


class TestMode(Enum):
    __test__ = False

    TESTED = "tested"
    NO_RUN = "no_run"
    IGNORE = "ignore"


@dataclass
class CodeBlock:
    id: str
    owner_id: str
    index: int
    language: str
    code: str
    mode: TestMode | None = None
    wrap_main: bool = True
    expected_output: str | None = None
    line: int = 0

    @property
    def is_doctest(self):
        return self.mode is not None


@dataclass
class Mention:
    start: int
    end: int
    display: str
    reference: Reference


@dataclass
class ProseSegment:
    text: str
    mentions: list[Mention] = field(default_factory=list)


@dataclass
class DocComment:
    owner_id: str
    segments: list = field(default_factory=list)
    brief: str = ""
    # (Specialization, DocComment) pairs for commented specializations
    specializations: list = field(default_factory=list)

    @property
    def prose(self):
        return [s for s in self.segments if isinstance(s, ProseSegment)]

    @property
    def code_blocks(self):
        return [s for s in self.segments if isinstance(s, CodeBlock)]

    @property
    def tested_blocks(self):
        blocks = [b for b in self.code_blocks if b.is_doctest]
        for _, doc in self.specializations:
            blocks += doc.tested_blocks
        return blocks

    @property
    def mentions(self):
        found = [m for s in self.prose for m in s.mentions]
        for _, doc in self.specializations:
            found += doc.mentions
        return found


# ── Doc-test results ──


class TestStatus(Enum):
    __test__ = False

    PENDING = "pending"
    COMPILING = "compiling"
    COMPILE_ERROR = "compile_error"
    COMPILED = "compiled"
    RUNNING = "running"
    TIMEOUT = "timeout"
    RUNTIME_ERROR = "runtime_error"
    COMPLETED = "completed"
    SKIPPED = "skipped"


_TRANSITIONS = {
    TestStatus.PENDING: {TestStatus.COMPILING, TestStatus.SKIPPED},
    TestStatus.COMPILING: {TestStatus.COMPILE_ERROR, TestStatus.COMPILED, TestStatus.TIMEOUT},
    TestStatus.COMPILED: {TestStatus.RUNNING},
    TestStatus.RUNNING: {TestStatus.TIMEOUT, TestStatus.RUNTIME_ERROR, TestStatus.COMPLETED},
}


@dataclass
class TestResult:
    __test__ = False

    block_id: str
    status: TestStatus = TestStatus.PENDING
    passed: bool = False
    stdout: str = ""
    stderr: str = ""
    diff: str = ""
    returncode: int | None = None
    duration: float = 0.0
    history: list[TestStatus] = field(default_factory=list)

    def advance(self, status):
        if status not in _TRANSITIONS.get(self.status, ()):
            raise ValueError(f"illegal doc-test transition {self.status.value} -> {status.value}")
        self.history.append(self.status)
        self.status = status

    @property
    def failed(self):
        if self.status == TestStatus.SKIPPED:
            return False
        return not self.passed

    def to_dict(self):
        return {
            "block_id": self.block_id,
            "status": self.status.value,
            "passed": self.passed,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "diff": self.diff,
            "returncode": self.returncode,
        }


class ResultTable:
    """Doc-test results keyed by code-block id; each key is written once."""

    def __init__(self):
        self._results = {}

    def record(self, result):
        if result.block_id in self._results:
            raise KeyError(f"result for code block {result.block_id} already recorded")
        self._results[result.block_id] = result

    def get(self, block_id):
        return self._results.get(block_id)

    def __contains__(self, block_id):
        return block_id in self._results

    def __len__(self):
        return len(self._results)

    def __iter__(self):
        return iter(sorted(self._results.values(), key=lambda r: r.block_id))

    def failures(self):
        return [r for r in self if r.failed]


# ── Diagnostics ──


class Severity(Enum):
    NOTE = "note"
    WARNING = "warning"
    ERROR = "error"
    FATAL = "fatal"


class DiagnosticKind(Enum):
    PARSE = "parse"
    UNRESOLVED_REFERENCE = "unresolved_reference"
    AMBIGUOUS_REFERENCE = "ambiguous_reference"
    DOCTEST_FAILURE = "doctest_failure"
    TOOLCHAIN = "toolchain"


@dataclass(frozen=True)
class Diagnostic:
    severity: Severity
    kind: DiagnosticKind
    message: str
    file: str = ""
    line: int = 0
    owner: str = ""

    def to_dict(self):
        return {
            "severity": self.severity.value,
            "kind": self.kind.value,
            "file": self.file,
            "line": self.line,
            "message": self.message,
        }


# ── Graph ──


class SymbolGraph:
    def __init__(self):
        self._decls = {}
        self._refs = {}
        self.root_id = None
        self.frozen = False
        self.sealed = False

    # building

    def add(self, decl):
        self._check_mutable()
        if decl.id in self._decls:
            raise KeyError(f"duplicate declaration id {decl.id} ({decl.qualified_name})")
        self._decls[decl.id] = decl
        if decl.parent_id is None:
            if self.root_id is not None:
                raise ValueError("graph already has a root namespace")
            self.root_id = decl.id
        return decl

    def attach(self, parent_id, child_id):
        self._check_mutable()
        self._decls[parent_id].children.append(child_id)

    def add_reference(self, ref):
        self._check_mutable()
        if ref.id in self._refs:
            raise KeyError(f"duplicate reference id {ref.id}")
        self._refs[ref.id] = ref
        return ref

    def set_target(self, ref_id, target):
        if self.sealed:
            raise GraphFrozenError("reference targets are sealed")
        self._refs[ref_id].target = target

    def freeze(self):
        for decl in self._decls.values():
            decl.children = tuple(decl.children)
            decl.using_directives = tuple(decl.using_directives)
        self.frozen = True

    def seal(self):
        self.frozen = True
        self.sealed = True

    def _check_mutable(self):
        if self.frozen:
            raise GraphFrozenError("symbol graph is frozen")

    # queries

    def __contains__(self, decl_id):
        return decl_id in self._decls

    def __len__(self):
        return len(self._decls)

    def get(self, decl_id):
        return self._decls.get(decl_id)

    def __getitem__(self, decl_id):
        return self._decls[decl_id]

    @property
    def root(self):
        return self._decls[self.root_id]

    @property
    def declarations(self):
        return list(self._decls.values())

    @property
    def references(self):
        return list(self._refs.values())

    def references_of(self, owner_id):
        return [r for r in self._refs.values() if r.owner_id == owner_id]

    def children(self, decl_id, kind=None):
        out = [self._decls[c] for c in self._decls[decl_id].children]
        if kind is not None:
            out = [d for d in out if d.kind == kind]
        return out

    def parent(self, decl_id):
        pid = self._decls[decl_id].parent_id
        return self._decls[pid] if pid is not None else None

    def ancestors(self, decl_id):
        """Enclosing declarations from the innermost outward, ending at the root."""
        out = []
        decl = self.parent(decl_id)
        while decl is not None:
            out.append(decl)
            decl = self.parent(decl.id)
        return out

    def enclosing_namespace(self, decl_id):
        for decl in self.ancestors(decl_id):
            if decl.kind == DeclKind.NAMESPACE:
                return decl
        return self.root

    def walk(self, decl_id=None):
        """Depth-first, pre-order, in child order."""
        stack = [decl_id or self.root_id]
        while stack:
            decl = self._decls[stack.pop()]
            yield decl
            stack.extend(reversed(decl.children))

    def find(self, qualified_name, kind=None):
        return [
            d
            for d in self._decls.values()
            if d.qualified_name == qualified_name and (kind is None or d.kind == kind)
        ]

    def to_dict(self):
        decls = []
        for decl in self.walk():
            decls.append(
                {
                    "id": decl.id,
                    "kind": decl.kind.value,
                    "name": decl.name,
                    "qualified_name": decl.qualified_name,
                    "location": {
                        "file": decl.location.file,
                        "line": decl.location.line,
                        "column": decl.location.column,
                    },
                    "comment": decl.raw_comment,
                    "parent": decl.parent_id,
                    "children": list(decl.children),
                    "signature": {
                        "return_type": decl.signature.return_type,
                        "parameters": [
                            {"type": p.type, "name": p.name} for p in decl.signature.parameters
                        ],
                        "template_parameters": [
                            {"type": p.type, "name": p.name}
                            for p in decl.signature.template_parameters
                        ],
                        "underlying": decl.signature.underlying,
                        "bases": list(decl.signature.bases),
                        "qualifiers": list(decl.signature.qualifiers),
                    },
                    "specializations": [
                        {"args": s.args, "partial": s.partial} for s in decl.specializations
                    ],
                }
            )
        refs = [
            {
                "id": r.id,
                "owner": r.owner_id,
                "kind": r.kind.value,
                "text": r.text,
                "target": target_to_dict(r.target),
            }
            for r in sorted(self._refs.values(), key=lambda r: r.id)
        ]
        return {"root": self.root_id, "declarations": decls, "references": refs}
