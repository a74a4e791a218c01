"""
libclang front end.

Parses one translation unit and walks its cursors, yielding a flat stream of
RawRecord entries for every C++ entity the documentation model knows about
(namespaces, records, enums, functions, aliases, fields, enum constants and
template parameters) plus using-directives. Parent links are carried as
qualified names so the graph builder can wire containment afterwards.

Only cursors located under the configured project roots are reported;
anything pulled in from system or third-party headers is skipped.
"""

from __future__ import annotations

import os

from clang.cindex import (
    AccessSpecifier,
    CursorKind,
    Index,
    TranslationUnit,
    TranslationUnitLoadError,
)

from .errors import FrontendError
from .ingest import USING_DIRECTIVE, FrontendResult, RawRecord
from .model import (
    DeclKind,
    Diagnostic,
    DiagnosticKind,
    Param,
    Severity,
    Signature,
    SourceLocation,
)

_RECORD_CURSORS = frozenset(
    {
        CursorKind.STRUCT_DECL,
        CursorKind.CLASS_DECL,
        CursorKind.UNION_DECL,
        CursorKind.CLASS_TEMPLATE,
        CursorKind.CLASS_TEMPLATE_PARTIAL_SPECIALIZATION,
    }
)

_FUNCTION_CURSORS = frozenset(
    {
        CursorKind.FUNCTION_DECL,
        CursorKind.CXX_METHOD,
        CursorKind.CONSTRUCTOR,
        CursorKind.DESTRUCTOR,
        CursorKind.CONVERSION_FUNCTION,
        CursorKind.FUNCTION_TEMPLATE,
    }
)

_TEMPLATE_PARAM_CURSORS = frozenset(
    {
        CursorKind.TEMPLATE_TYPE_PARAMETER,
        CursorKind.TEMPLATE_NON_TYPE_PARAMETER,
        CursorKind.TEMPLATE_TEMPLATE_PARAMETER,
    }
)

_KIND_MAP = {
    CursorKind.NAMESPACE: DeclKind.NAMESPACE,
    CursorKind.ENUM_DECL: DeclKind.ENUM,
    CursorKind.ENUM_CONSTANT_DECL: DeclKind.ENUM_CONSTANT,
    CursorKind.FIELD_DECL: DeclKind.FIELD,
    CursorKind.TYPEDEF_DECL: DeclKind.ALIAS,
    CursorKind.TYPE_ALIAS_DECL: DeclKind.ALIAS,
    CursorKind.TYPE_ALIAS_TEMPLATE_DECL: DeclKind.ALIAS,
}
_KIND_MAP.update({k: DeclKind.RECORD for k in _RECORD_CURSORS})
_KIND_MAP.update({k: DeclKind.FUNCTION for k in _FUNCTION_CURSORS})
_KIND_MAP.update({k: DeclKind.TEMPLATE_PARAM for k in _TEMPLATE_PARAM_CURSORS})

# Cursors whose spelling contributes a component to qualified names
_SCOPE_CURSORS = frozenset({CursorKind.NAMESPACE, CursorKind.ENUM_DECL}) | _RECORD_CURSORS

# Cursors we descend into without documenting them
_TRANSPARENT_CURSORS = frozenset({CursorKind.LINKAGE_SPEC, CursorKind.UNEXPOSED_DECL})

_SEVERITY_MAP = {
    1: Severity.NOTE,
    2: Severity.WARNING,
    3: Severity.ERROR,
    4: Severity.FATAL,
}


def _spelling(cursor):
    name = cursor.spelling or ""
    if not name and cursor.kind == CursorKind.NAMESPACE:
        return "(anonymous namespace)"
    return name


def qualified_name(cursor):
    parts = [_spelling(cursor)]
    parent = cursor.semantic_parent
    while parent is not None and parent.kind != CursorKind.TRANSLATION_UNIT:
        if parent.kind in _SCOPE_CURSORS or parent.kind in _FUNCTION_CURSORS:
            parts.append(_spelling(parent))
        parent = parent.semantic_parent
    return "::".join(reversed(parts))


def _parent_ref(cursor):
    parent = cursor.semantic_parent
    while parent is not None and parent.kind in _TRANSPARENT_CURSORS:
        parent = parent.semantic_parent
    if parent is None or parent.kind == CursorKind.TRANSLATION_UNIT:
        return ""
    return qualified_name(parent)


def _location(cursor):
    loc = cursor.location
    if loc is None or loc.file is None:
        return SourceLocation()
    return SourceLocation(file=loc.file.name, line=loc.line, column=loc.column)


def _template_params(cursor):
    out = []
    for ch in cursor.get_children():
        if ch.kind == CursorKind.TEMPLATE_TYPE_PARAMETER:
            out.append(Param("typename", ch.spelling or ""))
        elif ch.kind == CursorKind.TEMPLATE_NON_TYPE_PARAMETER:
            out.append(Param(ch.type.spelling, ch.spelling or ""))
        elif ch.kind == CursorKind.TEMPLATE_TEMPLATE_PARAMETER:
            out.append(Param("template", ch.spelling or ""))
    return out


def _function_signature(cursor):
    params = [
        Param(ch.type.spelling, ch.spelling or "")
        for ch in cursor.get_children()
        if ch.kind == CursorKind.PARM_DECL
    ]
    rtype = ""
    if cursor.kind not in (CursorKind.CONSTRUCTOR, CursorKind.DESTRUCTOR):
        rtype = cursor.result_type.spelling if cursor.result_type else ""
    quals = []
    if cursor.kind in (CursorKind.CXX_METHOD, CursorKind.FUNCTION_TEMPLATE):
        if cursor.is_const_method():
            quals.append("const")
        if cursor.is_static_method():
            quals.append("static")
        if cursor.is_virtual_method():
            quals.append("virtual")
    tparams = _template_params(cursor) if cursor.kind == CursorKind.FUNCTION_TEMPLATE else []
    return Signature(
        return_type=rtype, parameters=params, template_parameters=tparams, qualifiers=quals
    )


def _alias_underlying(cursor):
    if cursor.kind == CursorKind.TYPE_ALIAS_TEMPLATE_DECL:
        for ch in cursor.get_children():
            if ch.kind == CursorKind.TYPE_ALIAS_DECL:
                return ch.underlying_typedef_type.spelling
        return ""
    return cursor.underlying_typedef_type.spelling


def _signature(cursor, kind):
    if kind == DeclKind.FUNCTION:
        return _function_signature(cursor)
    if kind == DeclKind.RECORD:
        bases = [
            ch.type.spelling or ch.spelling
            for ch in cursor.get_children()
            if ch.kind == CursorKind.CXX_BASE_SPECIFIER
        ]
        tparams = _template_params(cursor) if cursor.kind != CursorKind.STRUCT_DECL else []
        return Signature(bases=bases, template_parameters=tparams)
    if kind == DeclKind.ALIAS:
        tparams = _template_params(cursor)
        return Signature(underlying=_alias_underlying(cursor), template_parameters=tparams)
    if kind == DeclKind.FIELD:
        return Signature(underlying=cursor.type.spelling)
    if kind == DeclKind.TEMPLATE_PARAM and cursor.kind == CursorKind.TEMPLATE_NON_TYPE_PARAMETER:
        return Signature(underlying=cursor.type.spelling)
    return Signature()


def _template_args(cursor):
    display = cursor.displayname or ""
    if "<" in display:
        return display[display.index("<") :]
    return ""


def _specialization(cursor, kind):
    """Return (primary qualified name, args, partial) for specializations."""
    if cursor.kind == CursorKind.CLASS_TEMPLATE_PARTIAL_SPECIALIZATION:
        return qualified_name(cursor), _template_args(cursor), True
    if kind == DeclKind.RECORD and cursor.kind != CursorKind.CLASS_TEMPLATE:
        if cursor.get_num_template_arguments() > 0 or "<" in (cursor.displayname or ""):
            return qualified_name(cursor), _template_args(cursor), False
    if cursor.kind in (CursorKind.FUNCTION_DECL, CursorKind.CXX_METHOD):
        if cursor.get_num_template_arguments() > 0:
            args = [
                cursor.get_template_argument_type(i).spelling
                for i in range(cursor.get_num_template_arguments())
            ]
            return qualified_name(cursor), f"<{', '.join(args)}>", False
    return None


def _is_public(cursor):
    access = cursor.access_specifier
    return access in (AccessSpecifier.PUBLIC, AccessSpecifier.NONE, AccessSpecifier.INVALID)


def _in_roots(path, roots):
    if not path:
        return False
    real = os.path.realpath(path)
    return any(real == r or real.startswith(r + os.sep) for r in roots)


class ClangFrontend:
    """Front end backed by the libclang Python bindings."""

    def __init__(self, roots=None):
        self.roots = [os.path.realpath(r) for r in (roots or [])]

    def parse(self, path, args):
        idx = Index.create()
        args = list(args or [])
        if not any(a.startswith("-x") for a in args):
            args = ["-x", "c++"] + args
        # inputs are usually headers parsed as the main file
        args.append("-Wno-pragma-once-outside-header")
        try:
            tu = idx.parse(path, args=args, options=TranslationUnit.PARSE_SKIP_FUNCTION_BODIES)
        except TranslationUnitLoadError as exc:
            raise FrontendError(path, f"failed to load translation unit: {exc}") from exc

        diagnostics = []
        for d in tu.diagnostics:
            severity = _SEVERITY_MAP.get(d.severity)
            if severity is None:
                continue
            loc = d.location
            diagnostics.append(
                Diagnostic(
                    severity=severity,
                    kind=DiagnosticKind.PARSE,
                    message=d.spelling,
                    file=loc.file.name if loc and loc.file else path,
                    line=loc.line if loc else 0,
                )
            )

        roots = self.roots or [os.path.realpath(os.path.dirname(os.path.abspath(path)))]
        return FrontendResult(records=self._walk(tu.cursor, roots), diagnostics=diagnostics)

    def _walk(self, parent, roots):
        for cursor in parent.get_children():
            loc = cursor.location
            if loc is None or loc.file is None or not _in_roots(loc.file.name, roots):
                continue
            if cursor.kind in _TRANSPARENT_CURSORS:
                yield from self._walk(cursor, roots)
                continue
            if cursor.kind == CursorKind.USING_DIRECTIVE:
                target = cursor.referenced
                if target is not None:
                    yield RawRecord(
                        kind=USING_DIRECTIVE,
                        qualified_name=qualified_name(target),
                        spelling=target.spelling or "",
                        location=_location(cursor),
                        parent_ref=_parent_ref(cursor),
                    )
                continue
            yield from self._records(cursor, roots)

    def _records(self, cursor, roots):
        kind = _KIND_MAP.get(cursor.kind)
        if kind is None:
            return
        if kind in (DeclKind.FIELD, DeclKind.FUNCTION) and not _is_public(cursor):
            return
        name = _spelling(cursor)
        if not name or "deduction guide" in name or name.startswith("(unnamed"):
            return

        spec = _specialization(cursor, kind)
        record = RawRecord(
            kind=kind.value,
            qualified_name=qualified_name(cursor),
            spelling=name,
            location=_location(cursor),
            raw_comment=cursor.raw_comment or "",
            parent_ref=_parent_ref(cursor),
            type_signature=_signature(cursor, kind),
            is_definition=kind == DeclKind.NAMESPACE or cursor.is_definition(),
        )
        if spec is not None:
            record.specialization_of, record.template_args, record.partial = spec
        yield record
        if spec is not None:
            # members of a specialization are not documented separately
            return

        if kind in (DeclKind.NAMESPACE, DeclKind.RECORD, DeclKind.ENUM):
            yield from self._walk(cursor, roots)
        elif kind in (DeclKind.FUNCTION, DeclKind.ALIAS):
            for ch in cursor.get_children():
                if ch.kind in _TEMPLATE_PARAM_CURSORS and ch.spelling:
                    yield from self._records(ch, roots)
