"""
Doc-comment pipeline.

Parses the raw comment of every declaration in a frozen graph, together
with the comments of its specializations, on a thread pool, resolving name
mentions through the resolver's read-only lookup. It only reads the graph,
so it can run alongside reference resolution.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from .comment import parse_comment
from .model import DocComment, RefKind
from .resolver import Resolver

log = logging.getLogger("mkdocs.plugins.cppdoc")


@dataclass
class PipelineResult:
    comments: dict[str, DocComment] = field(default_factory=dict)
    diagnostics: list = field(default_factory=list)
    order: list[str] = field(default_factory=list)

    def doctest_queue(self):
        """Tested code blocks in declaration order."""
        return [
            block
            for decl_id in self.order
            for block in self.comments[decl_id].tested_blocks
        ]


def _process(decl, resolver):
    ordinals = {}
    doc = parse_comment(decl.raw_comment, decl.id, ordinals=ordinals)
    # specialization comments belong to the primary template
    index = len(doc.code_blocks)
    for spec in decl.specializations:
        if not spec.raw_comment:
            continue
        spec_doc = parse_comment(spec.raw_comment, decl.id, index, ordinals)
        index += len(spec_doc.code_blocks)
        doc.specializations.append((spec, spec_doc))
    diagnostics = []
    for mention in doc.mentions:
        ref = mention.reference
        ref.target = resolver.lookup(ref.text, decl.id, RefKind.NAME_MENTION)
        diag = resolver.diagnose(ref)
        if diag is not None:
            diagnostics.append(diag)
    return doc, diagnostics


def process_comments(graph, resolver=None, workers=None):
    resolver = resolver or Resolver(graph)
    documented = [
        d
        for d in graph.walk()
        if d.raw_comment or any(s.raw_comment for s in d.specializations)
    ]
    result = PipelineResult()

    if workers is not None and workers <= 1:
        outcomes = [_process(d, resolver) for d in documented]
    else:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cppdoc-comments") as pool:
            outcomes = list(pool.map(lambda d: _process(d, resolver), documented))

    for decl, (doc, diagnostics) in zip(documented, outcomes):
        result.comments[decl.id] = doc
        result.order.append(decl.id)
        result.diagnostics.extend(diagnostics)

    log.info(
        "cppdoc: processed %d doc comments, %d doc-tests found",
        len(result.comments),
        len(result.doctest_queue()),
    )
    return result
