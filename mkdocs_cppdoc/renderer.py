"""
Markdown renderer for the resolved symbol graph.

Produces one page per namespace with headings, anchors, signatures,
parameter tables and the parsed doc comments. Resolved references turn into
links: a single target links to its anchor, an overload set lists every
overload, an alias chain reads "alias of A, which is alias of B" and an
external name stays plain code.
"""

from __future__ import annotations

import posixpath
import re

from .model import (
    AliasChain,
    CodeBlock,
    DeclKind,
    External,
    OverloadSet,
    RefKind,
    Single,
    TestStatus,
)
from .typesig import named_types

_KIND_LABELS = {
    DeclKind.NAMESPACE: "Namespace",
    DeclKind.RECORD: "Class",
    DeclKind.ENUM: "Enum",
    DeclKind.FUNCTION: "Function",
    DeclKind.ALIAS: "Type",
    DeclKind.FIELD: "Field",
    DeclKind.ENUM_CONSTANT: "Enumerator",
    DeclKind.TEMPLATE_PARAM: "Template parameter",
}

_KIND_ANCHOR_PREFIX = {
    DeclKind.NAMESPACE: "ns",
    DeclKind.RECORD: "class",
    DeclKind.ENUM: "enum",
    DeclKind.FUNCTION: "func",
    DeclKind.ALIAS: "type",
    DeclKind.FIELD: "field",
    DeclKind.ENUM_CONSTANT: "enumval",
    DeclKind.TEMPLATE_PARAM: "tparam",
}

_SLUG_RE = re.compile(r"[^\w~-]+")

# Kinds documented as members of their parent rather than on their own
_MEMBER_KINDS = frozenset(
    {
        DeclKind.RECORD,
        DeclKind.ENUM,
        DeclKind.FUNCTION,
        DeclKind.ALIAS,
        DeclKind.FIELD,
        DeclKind.ENUM_CONSTANT,
    }
)


def _slug(text):
    return _SLUG_RE.sub("_", text).strip("_") or "anonymous"


def _heading(text, level):
    return f"{'#' * level} {text}"


def relative_url(target_uri, current_uri):
    if target_uri == current_uri:
        return ""
    return posixpath.relpath(target_uri, posixpath.dirname(current_uri))


class RenderConfig:
    def __init__(self, *, heading_level=2, output_dir="api", title="API Reference"):
        self.heading_level = heading_level
        self.output_dir = output_dir.strip("/")
        self.title = title


class Renderer:
    def __init__(self, graph, comments=None, results=None, cfg=None):
        self.graph = graph
        self.comments = comments or {}
        self.results = results
        self.cfg = cfg or RenderConfig()

    # ── Addressing ──

    def namespace_of(self, decl):
        if decl.kind == DeclKind.NAMESPACE:
            return decl
        return self.graph.enclosing_namespace(decl.id)

    def page_uri(self, namespace):
        if not namespace.qualified_name:
            return f"{self.cfg.output_dir}/index.md"
        # every namespace gets a directory, so none can land on the root page
        parts = [_slug(p) for p in namespace.qualified_name.split("::")]
        return f"{self.cfg.output_dir}/{'/'.join(parts)}/index.md"

    def anchor_id(self, decl):
        prefix = _KIND_ANCHOR_PREFIX.get(decl.kind, "sym")
        ns = self.namespace_of(decl)
        local = decl.qualified_name
        if ns.qualified_name and local.startswith(ns.qualified_name + "::"):
            local = local[len(ns.qualified_name) + 2 :]
        aid = f"{prefix}-{_slug(local.replace('::', '-'))}"
        if decl.kind in (DeclKind.FUNCTION, DeclKind.TEMPLATE_PARAM):
            aid += f"-{decl.id[:8]}"
        return aid

    def url_for(self, decl, current_uri):
        uri = self.page_uri(self.namespace_of(decl))
        if decl.kind == DeclKind.NAMESPACE:
            return relative_url(uri, current_uri) or "#"
        return f"{relative_url(uri, current_uri)}#{self.anchor_id(decl)}"

    def pages(self):
        """Map of page uri to namespace declaration, in graph order."""
        out = {}
        for decl in self.graph.walk():
            if decl.kind == DeclKind.NAMESPACE:
                out[self.page_uri(decl)] = decl
        return out

    # ── Links ──

    def _decl_link(self, decl_id, current_uri, display=None):
        decl = self.graph[decl_id]
        text = display or self.display_signature(decl)
        return f"[`{text}`]({self.url_for(decl, current_uri)})"

    def render_target(self, target, current_uri, display):
        if isinstance(target, Single):
            text = display
            if target.specialization and not display.endswith(">"):
                text += target.specialization
            return self._decl_link(target.id, current_uri, text)
        if isinstance(target, OverloadSet):
            links = ", ".join(self._decl_link(i, current_uri) for i in target.ids)
            return f"`{display}` (overloads: {links})"
        if isinstance(target, AliasChain):
            head = self._decl_link(target.ids[0], current_uri, display)
            hops = [
                self._decl_link(i, current_uri, self.graph[i].qualified_name)
                for i in target.ids[1:]
            ]
            if target.terminal_name:
                hops.append(f"`{target.terminal_name}`")
            if not hops:
                return head
            return f"{head} (alias of {', which is alias of '.join(hops)})"
        return f"`{display}`"

    def _type_link(self, decl, text, current_uri, kinds=(RefKind.TYPE_USE,)):
        names = named_types(text)
        if not names:
            return f"`{text}`"
        for ref in self.graph.references_of(decl.id):
            if ref.kind in kinds and ref.text == names[0] and not isinstance(ref.target, External):
                return self.render_target(ref.target, current_uri, text)
        return f"`{text}`"

    # ── Signatures ──

    def display_signature(self, decl):
        if decl.kind == DeclKind.FUNCTION:
            params = ", ".join(p.type for p in decl.signature.parameters)
            return f"{decl.qualified_name}({params})"
        return decl.display_name()

    def signature(self, decl):
        sig = decl.signature
        lines = []
        if sig.template_parameters:
            tparams = ", ".join(f"{p.type} {p.name}".strip() for p in sig.template_parameters)
            lines.append(f"template <{tparams}>")
        if decl.kind == DeclKind.FUNCTION:
            params = ", ".join(f"{p.type} {p.name}".strip() for p in sig.parameters)
            prefix = " ".join(q for q in sig.qualifiers if q in ("static", "virtual"))
            text = f"{sig.return_type} {decl.name}({params})".strip()
            if prefix:
                text = f"{prefix} {text}"
            if "const" in sig.qualifiers:
                text += " const"
            lines.append(text + ";")
        elif decl.kind == DeclKind.RECORD:
            text = f"class {decl.name}"
            if sig.bases:
                text += " : " + ", ".join(f"public {b}" for b in sig.bases)
            lines.append(text + ";")
        elif decl.kind == DeclKind.ALIAS:
            lines.append(f"using {decl.name} = {sig.underlying};")
        elif decl.kind == DeclKind.FIELD:
            lines.append(f"{sig.underlying} {decl.name};")
        elif decl.kind == DeclKind.ENUM:
            lines.append(f"enum {decl.name};")
        else:
            return ""
        return "\n".join(lines)

    # ── Comments ──

    def _prose(self, segment, current_uri):
        text = segment.text
        for mention in sorted(segment.mentions, key=lambda m: m.start, reverse=True):
            ref = mention.reference
            if text.startswith("[", mention.start) and isinstance(ref.target, Single):
                link = f"[{mention.display}]({self._target_url(ref.target, current_uri)})"
            else:
                link = self.render_target(ref.target, current_uri, mention.display)
            text = text[: mention.start] + link + text[mention.end :]
        return text.strip()

    def _target_url(self, target, current_uri):
        return self.url_for(self.graph[target.id], current_uri)

    def _doctest_status(self, block):
        result = self.results.get(block.id) if self.results is not None else None
        if result is None:
            return []
        if result.status == TestStatus.SKIPPED:
            return ["*Doc-test: skipped*", ""]
        if result.passed:
            return [f"*Doc-test: passed ({result.status.value})*", ""]
        out = [f"*Doc-test: **failed** ({result.status.value.replace('_', ' ')})*", ""]
        detail = result.diff or result.stderr
        if detail:
            lang = "diff" if result.diff else "text"
            out += [f"```{lang}", detail.rstrip("\n"), "```", ""]
        return out

    def _code_block(self, block):
        lang = block.language or "text"
        out = [f"```{lang}", block.code.rstrip("\n"), "```", ""]
        if block.is_doctest:
            out += self._doctest_status(block)
        return out

    def _segments(self, doc, current_uri):
        out = []
        for segment in doc.segments:
            if isinstance(segment, CodeBlock):
                out += self._code_block(segment)
            else:
                out += [self._prose(segment, current_uri), ""]
        return out

    def render_comment(self, decl, current_uri):
        doc = self.comments.get(decl.id)
        if doc is None:
            return []
        out = self._segments(doc, current_uri)
        for spec, spec_doc in doc.specializations:
            kind = "Partial specialization" if spec.partial else "Specialization"
            out += [f"**{kind} `{decl.name}{spec.args}`:**", ""]
            out += self._segments(spec_doc, current_uri)
        return out

    # ── Declarations ──

    def _params_table(self, decl, current_uri):
        params = decl.signature.parameters
        if not params:
            return []
        out = ["| Parameter | Type |", "|-----------|------|"]
        for p in params:
            out.append(f"| `{p.name or '-'}` | {self._type_link(decl, p.type, current_uri)} |")
        out.append("")
        return out

    def _relations(self, decl, current_uri):
        sig = decl.signature
        out = []
        if decl.kind == DeclKind.RECORD and sig.bases:
            bases = [
                self._type_link(decl, b, current_uri, (RefKind.BASE_CLASS,)) for b in sig.bases
            ]
            out += [f"**Bases:** {', '.join(bases)}", ""]
        if decl.kind == DeclKind.ALIAS and sig.underlying:
            out += [
                f"**Aliases:** {self._type_link(decl, sig.underlying, current_uri, (RefKind.ALIAS_OF,))}",
                "",
            ]
        if decl.kind == DeclKind.FUNCTION and sig.return_type and sig.return_type != "void":
            out += [f"**Returns:** {self._type_link(decl, sig.return_type, current_uri)}", ""]
        if decl.specializations:
            specs = ", ".join(
                f"`{decl.name}{s.args}`" + (" (partial)" if s.partial else "")
                for s in decl.specializations
            )
            out += [f"**Specializations:** {specs}", ""]
        return out

    def render_decl(self, decl, current_uri, level=None):
        level = level or self.cfg.heading_level
        label = _KIND_LABELS.get(decl.kind, "")
        out = [f'<a id="{self.anchor_id(decl)}"></a>', ""]
        out += [_heading(f"{label}: `{decl.name}`", min(level, 6)), ""]

        sig = self.signature(decl)
        if sig:
            out += ["```cpp", sig, "```", ""]
        out += self._relations(decl, current_uri)
        out += self.render_comment(decl, current_uri)
        if decl.kind == DeclKind.FUNCTION:
            out += self._params_table(decl, current_uri)

        if decl.kind in (DeclKind.RECORD, DeclKind.ENUM):
            for child in self.graph.children(decl.id):
                if child.kind in _MEMBER_KINDS:
                    out.append(self.render_decl(child, current_uri, level + 1))
        return "\n".join(out)

    def render_page(self, namespace):
        uri = self.page_uri(namespace)
        title = (
            f"Namespace `{namespace.qualified_name}`" if namespace.qualified_name else self.cfg.title
        )
        out = [_heading(title, 1), ""]
        out += self.render_comment(namespace, uri)

        nested = self.graph.children(namespace.id, DeclKind.NAMESPACE)
        if nested:
            out += [_heading("Namespaces", self.cfg.heading_level), ""]
            for ns in nested:
                line = f"- [`{ns.qualified_name}`]({relative_url(self.page_uri(ns), uri)})"
                doc = self.comments.get(ns.id)
                if doc is not None and doc.brief:
                    line += f": {doc.brief}"
                out.append(line)
            out.append("")

        members = [
            c for c in self.graph.children(namespace.id) if c.kind != DeclKind.NAMESPACE
        ]
        parts = [self.render_decl(d, uri) for d in members]
        out.append("\n---\n\n".join(parts))
        return "\n".join(out).rstrip("\n") + "\n"
