"""
Cross-reference resolver.

Lookup follows C++ unqualified name lookup: starting at the scope of the
referencing declaration, each enclosing scope is searched in turn, together
with the namespaces nominated by using-directives in that scope. The first
scope holding a declaration of a compatible kind wins. A leading ``::``
searches from the global namespace only.

Outcomes:

- several functions -> OverloadSet with all of them (narrowed when the text
  spells out parameter types, e.g. ``bar(int)``)
- an alias -> AliasChain listing every hop down to the final target
- a full specialization spelled out (``Foo<int>``) -> Single pointing at the
  primary with the specialization arguments attached
- nothing found -> External, rendered as plain text

The resolver only reads the frozen graph and writes each Reference's target,
so references can be resolved in any order and on any number of threads.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor

from .model import (
    COMPATIBLE_KINDS,
    ROOT_NAME,
    AliasChain,
    DeclKind,
    Diagnostic,
    DiagnosticKind,
    External,
    OverloadSet,
    RefKind,
    Severity,
    Single,
    join_name,
)
from .typesig import named_types, normalize_type, split_call, split_template

log = logging.getLogger("mkdocs.plugins.cppdoc")


class Resolver:
    def __init__(self, graph):
        self.graph = graph
        self._index = defaultdict(list)
        for decl in graph.walk():
            self._index[decl.qualified_name].append(decl)

    # ── Scopes ──

    def scope_chain(self, owner_id):
        """Scopes searched for names used by ``owner_id``, innermost first.

        The owner itself opens a scope when it has members (records,
        namespaces, and templates with their parameters).
        """
        owner = self.graph.get(owner_id)
        if owner is None:
            return [self.graph.root]
        chain = []
        if owner.children:
            chain.append(owner)
        chain.extend(self.graph.ancestors(owner.id))
        if not chain or chain[-1].id != self.graph.root_id:
            chain.append(self.graph.root)
        return chain

    def _candidates(self, name, owner_id, kind):
        allowed = COMPATIBLE_KINDS[kind]
        if name.startswith("::"):
            groups = [[ROOT_NAME]]
            name = name[2:]
        else:
            groups = [
                [scope.qualified_name] + list(scope.using_directives)
                for scope in self.scope_chain(owner_id)
            ]
        for prefixes in groups:
            found = []
            seen = set()
            for prefix in prefixes:
                for decl in self._index.get(join_name(prefix, name), ()):
                    if decl.kind in allowed and decl.id not in seen:
                        seen.add(decl.id)
                        found.append(decl)
            if found:
                return found
        return []

    # ── Lookup ──

    def find(self, text, owner_id, kind=RefKind.NAME_MENTION):
        """Declarations ``text`` names from ``owner_id``, before alias expansion."""
        params = None
        name = text.strip()
        if kind == RefKind.NAME_MENTION:
            name, params = split_call(name)
        base, args = split_template(name)
        candidates = self._candidates(base, owner_id, kind)
        if params is not None:
            narrowed = [
                d
                for d in candidates
                if d.kind == DeclKind.FUNCTION
                and tuple(normalize_type(t) for t in d.signature.parameter_types()) == params
            ]
            if narrowed:
                candidates = narrowed
        return candidates, args

    def lookup(self, text, owner_id, kind=RefKind.NAME_MENTION):
        """Resolve ``text`` as used by declaration ``owner_id`` to a target."""
        candidates, args = self.find(text, owner_id, kind)
        if not candidates:
            return External(text.strip())

        functions = [d for d in candidates if d.kind == DeclKind.FUNCTION]
        if len(functions) > 1 and len(functions) == len(candidates):
            return OverloadSet(tuple(d.id for d in functions))

        others = [d for d in candidates if d.kind != DeclKind.FUNCTION]
        decl = others[0] if others else candidates[0]
        if decl.kind == DeclKind.ALIAS:
            return self.follow_alias(decl)
        if args:
            spec = decl.find_specialization(args)
            if spec is not None:
                return Single(decl.id, specialization=spec.args)
        return Single(decl.id)

    def follow_alias(self, decl):
        """Chain of alias hops starting at ``decl``; cycles stop at the repeat."""
        ids = [decl.id]
        seen = {decl.id}
        current = decl
        while current.kind == DeclKind.ALIAS:
            names = named_types(current.signature.underlying)
            if not names:
                terminal = current.signature.underlying.strip()
                return AliasChain(tuple(ids), terminal_name=terminal or None)
            found, _ = self.find(names[0], current.id, RefKind.ALIAS_OF)
            if not found:
                return AliasChain(tuple(ids), terminal_name=names[0])
            nxt = found[0]
            if nxt.id in seen:
                log.debug("cppdoc: alias cycle through %s", nxt.qualified_name)
                break
            ids.append(nxt.id)
            seen.add(nxt.id)
            current = nxt
        return AliasChain(tuple(ids))

    # ── Diagnostics ──

    def diagnose(self, ref):
        owner = self.graph.get(ref.owner_id)
        where = owner.display_name() if owner is not None else ref.owner_id
        file = owner.location.file if owner is not None else ""
        line = owner.location.line if owner is not None else 0
        if isinstance(ref.target, External):
            return Diagnostic(
                severity=Severity.NOTE,
                kind=DiagnosticKind.UNRESOLVED_REFERENCE,
                message=f"'{ref.text}' referenced from {where} is not documented here",
                file=file,
                line=line,
                owner=ref.owner_id,
            )
        if isinstance(ref.target, OverloadSet) and split_call(ref.text)[1] is None:
            return Diagnostic(
                severity=Severity.NOTE,
                kind=DiagnosticKind.AMBIGUOUS_REFERENCE,
                message=(
                    f"'{ref.text}' referenced from {where} names "
                    f"{len(ref.target.ids)} overloads"
                ),
                file=file,
                line=line,
                owner=ref.owner_id,
            )
        return None


def resolve_all(graph, resolver=None, workers=None):
    """Resolve every pending reference in ``graph``; returns diagnostics."""
    resolver = resolver or Resolver(graph)
    pending = [r for r in graph.references if not r.resolved]

    def task(ref):
        graph.set_target(ref.id, resolver.lookup(ref.text, ref.owner_id, ref.kind))
        return resolver.diagnose(ref)

    if workers is not None and workers <= 1:
        outcomes = [task(r) for r in pending]
    else:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cppdoc-resolve") as pool:
            outcomes = list(pool.map(task, pending))

    diagnostics = [d for d in outcomes if d is not None]
    log.info(
        "cppdoc: resolved %d references (%d outside the documented sources)",
        len(pending),
        sum(1 for d in diagnostics if d.kind == DiagnosticKind.UNRESOLVED_REFERENCE),
    )
    return diagnostics
