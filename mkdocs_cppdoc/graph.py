"""
Symbol graph builder.

Consumes the merged record stream from ingestion and produces a frozen
SymbolGraph:

- one Declaration per stable id; records reaching the same id from several
  files merge, keeping the first non-empty comment; a definition replaces
  the signature and location taken from an earlier forward declaration
- namespaces with the same qualified name merge into a single node, and
  scopes implied by a qualified name but never declared are synthesized as
  namespaces, so every parent chain ends at the one root namespace
- template specializations are folded onto their primary template
- children are ordered by first-seen position (input file, then path, line
  and column of the declaration)
- type uses, base classes and alias targets found in signatures become
  unresolved References for the resolver

Runs on a single thread.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from .ingest import USING_DIRECTIVE, RawRecord
from .model import (
    ROOT_NAME,
    SCOPE_KINDS,
    Declaration,
    DeclKind,
    Reference,
    RefKind,
    Specialization,
    SymbolGraph,
    declaration_id,
    join_name,
    normalize_args,
    reference_id,
)
from .typesig import named_types, scope_of, split_qualified

log = logging.getLogger("mkdocs.plugins.cppdoc")


def _order_key(record, seq):
    loc = record.location
    return (record.origin, loc.file, loc.line, loc.column, seq)


class GraphBuilder:
    def __init__(self):
        self.graph = SymbolGraph()
        self._scopes = {}
        self._by_name = {}
        self._order = {}
        self._forward = set()
        self._seq = 0
        self._usings = []
        self._specializations = []
        self.merged = 0

        root = Declaration(
            id=declaration_id(DeclKind.NAMESPACE, ROOT_NAME),
            kind=DeclKind.NAMESPACE,
            name=ROOT_NAME,
            qualified_name=ROOT_NAME,
        )
        self.graph.add(root)
        self._scopes[ROOT_NAME] = root.id
        self._order[root.id] = (-1, "", 0, 0, -1)

    # ── Records ──

    def add(self, record):
        self._seq += 1
        if record.kind == USING_DIRECTIVE:
            self._usings.append(record)
            return None
        if record.specialization_of:
            self._specializations.append((record, self._seq))
            return None
        return self._add_declaration(record, DeclKind(record.kind), self._seq)

    def _add_declaration(self, record, kind, seq):
        parent_id = self._parent_for(record, seq)
        if kind == DeclKind.TEMPLATE_PARAM:
            # parameters of different overloads share a qualified name
            decl_id = declaration_id(kind, record.qualified_name, parent_id)
        else:
            decl_id = declaration_id(
                kind, record.qualified_name, record.type_signature.key(kind)
            )

        existing = self.graph.get(decl_id)
        if existing is not None:
            self.merged += 1
            if not existing.raw_comment and record.raw_comment:
                existing.raw_comment = record.raw_comment
            if decl_id in self._forward and record.is_definition:
                # the definition carries bases and the documented location
                self._forward.discard(decl_id)
                existing.signature = record.type_signature
                existing.location = record.location
            return existing

        decl = Declaration(
            id=decl_id,
            kind=kind,
            name=record.spelling or split_qualified(record.qualified_name)[-1],
            qualified_name=record.qualified_name,
            location=record.location,
            raw_comment=record.raw_comment,
            parent_id=parent_id,
            signature=record.type_signature,
        )
        self._insert(decl, _order_key(record, seq))
        if not record.is_definition:
            self._forward.add(decl_id)
        return decl

    def _insert(self, decl, key):
        self.graph.add(decl)
        self.graph.attach(decl.parent_id, decl.id)
        self._order[decl.id] = key
        if decl.kind in SCOPE_KINDS:
            self._scopes.setdefault(decl.qualified_name, decl.id)
        self._by_name[decl.qualified_name] = decl.id

    def _parent_for(self, record, seq):
        name = record.parent_ref or scope_of(record.qualified_name)
        if name == ROOT_NAME:
            return self.graph.root_id
        if name in self._by_name:
            return self._by_name[name]
        return self._ensure_namespace(name, _order_key(record, seq))

    def _ensure_namespace(self, qualified_name, key):
        """Scope id for ``qualified_name``, synthesizing namespaces as needed."""
        parent_id = self.graph.root_id
        scope = ROOT_NAME
        for part in split_qualified(qualified_name):
            if not part:
                continue
            scope = join_name(scope, part)
            existing = self._scopes.get(scope) or self._by_name.get(scope)
            if existing is not None:
                parent_id = existing
                continue
            decl = Declaration(
                id=declaration_id(DeclKind.NAMESPACE, scope),
                kind=DeclKind.NAMESPACE,
                name=part,
                qualified_name=scope,
                parent_id=parent_id,
            )
            log.debug("cppdoc: synthesized namespace %s", scope)
            self._insert(decl, key)
            parent_id = decl.id
        return parent_id

    # ── Deferred records ──

    def _primary(self, kind, qualified_name):
        if kind == DeclKind.RECORD:
            decl_id = self._scopes.get(qualified_name)
            if decl_id is not None and self.graph[decl_id].kind == DeclKind.RECORD:
                return self.graph[decl_id]
            return None
        candidates = self.graph.find(qualified_name, kind)
        templates = [d for d in candidates if d.signature.template_parameters]
        pool = templates or candidates
        if not pool:
            return None
        return min(pool, key=lambda d: self._order[d.id])

    def _fold_specializations(self):
        for record, seq in self._specializations:
            kind = DeclKind(record.kind)
            primary = self._primary(kind, record.specialization_of)
            if primary is None:
                # the primary template lives outside the project or was never seen
                placeholder = RawRecord(
                    kind=record.kind,
                    qualified_name=record.specialization_of,
                    spelling=split_qualified(record.specialization_of)[-1],
                    location=record.location,
                    parent_ref=record.parent_ref,
                    origin=record.origin,
                )
                primary = self._add_declaration(placeholder, kind, seq)
            norm = normalize_args(record.template_args)
            if any(
                normalize_args(s.args) == norm and s.partial == record.partial
                for s in primary.specializations
            ):
                self.merged += 1
                continue
            primary.specializations.append(
                Specialization(
                    args=record.template_args,
                    location=record.location,
                    raw_comment=record.raw_comment,
                    partial=record.partial,
                )
            )

    def _attach_usings(self):
        for record in self._usings:
            name = record.parent_ref
            scope_id = self._by_name.get(name) if name else self.graph.root_id
            if scope_id is None:
                continue
            scope = self.graph[scope_id]
            target = record.qualified_name.lstrip(":")
            if target and target not in scope.using_directives:
                scope.using_directives.append(target)

    # ── References ──

    def _emit(self, owner_id, counts, kind, text):
        ordinal = counts[(kind, text)]
        counts[(kind, text)] += 1
        self.graph.add_reference(
            Reference(
                id=reference_id(owner_id, kind, text, ordinal),
                owner_id=owner_id,
                kind=kind,
                text=text,
            )
        )

    def _emit_references(self):
        for decl in list(self.graph.walk()):
            counts = defaultdict(int)
            sig = decl.signature
            if decl.kind == DeclKind.FUNCTION:
                for text in [sig.return_type] + [p.type for p in sig.parameters]:
                    for name in named_types(text):
                        self._emit(decl.id, counts, RefKind.TYPE_USE, name)
            elif decl.kind in (DeclKind.FIELD, DeclKind.TEMPLATE_PARAM):
                for name in named_types(sig.underlying):
                    self._emit(decl.id, counts, RefKind.TYPE_USE, name)
            elif decl.kind == DeclKind.RECORD:
                for base in sig.bases:
                    names = named_types(base)
                    if names:
                        self._emit(decl.id, counts, RefKind.BASE_CLASS, names[0])
                    for name in names[1:]:
                        self._emit(decl.id, counts, RefKind.TYPE_USE, name)
            elif decl.kind == DeclKind.ALIAS:
                names = named_types(sig.underlying)
                if names:
                    self._emit(decl.id, counts, RefKind.ALIAS_OF, names[0])
                for name in names[1:]:
                    self._emit(decl.id, counts, RefKind.TYPE_USE, name)

    # ── Finish ──

    def _sort_children(self):
        for decl in self.graph.declarations:
            decl.children.sort(key=lambda c: self._order[c])

    def build(self):
        self._fold_specializations()
        self._attach_usings()
        self._sort_children()
        self._emit_references()
        self.graph.freeze()
        log.info(
            "cppdoc: symbol graph has %d declarations, %d references (%d merged)",
            len(self.graph),
            len(self.graph.references),
            self.merged,
        )
        return self.graph


def build_graph(records):
    """Build and freeze a SymbolGraph from ingested ``records``."""
    builder = GraphBuilder()
    for record in records:
        builder.add(record)
    return builder.build()
