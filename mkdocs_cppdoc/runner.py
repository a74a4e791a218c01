"""
Run orchestration.

One generation run goes through four phases separated by barriers::

    ingest (pool) -> build (one thread) -> freeze
        -> resolve (pool) alongside comments (pool) -> seal
        -> doc-tests (pool, when enabled)

The graph is rebuilt from scratch on every run. Problems local to a file,
reference or code block end up as diagnostics in the Report; a broken
doc-test toolchain is recorded as a fatal diagnostic and skips the doc-test
phase; cancellation raises RunCancelled and yields no result at all.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum

from .doctest import Cancellation, DoctestConfig, DoctestEngine
from .errors import RunCancelled, ToolchainConfigurationError
from .graph import build_graph
from .ingest import ingest
from .model import Diagnostic, DiagnosticKind, ResultTable, Severity
from .pipeline import process_comments
from .resolver import Resolver, resolve_all

log = logging.getLogger("mkdocs.plugins.cppdoc")


class Classification(Enum):
    SUCCESS = "success"
    SUCCESS_WITH_WARNINGS = "success_with_warnings"
    FAILURE = "failure"


@dataclass
class RunConfig:
    files: list[str] = field(default_factory=list)
    clang_args: list[str] = field(default_factory=list)
    roots: list[str] = field(default_factory=list)
    ingest_workers: int | None = None
    resolve_workers: int | None = None
    doctests: bool = False
    doctest: DoctestConfig = field(default_factory=DoctestConfig)
    fail_on_doctest_failure: bool = True
    fail_on_parse_error: bool = False


@dataclass
class Report:
    diagnostics: list[Diagnostic] = field(default_factory=list)
    fail_on_doctest_failure: bool = True
    fail_on_parse_error: bool = False

    @property
    def errors(self):
        return [d for d in self.diagnostics if d.severity in (Severity.ERROR, Severity.FATAL)]

    @property
    def warnings(self):
        return [d for d in self.diagnostics if d.severity == Severity.WARNING]

    def of_kind(self, kind):
        return [d for d in self.diagnostics if d.kind == kind]

    @property
    def classification(self):
        errors = self.errors
        if any(d.severity == Severity.FATAL for d in errors):
            return Classification.FAILURE
        if self.fail_on_doctest_failure and any(
            d.kind == DiagnosticKind.DOCTEST_FAILURE for d in errors
        ):
            return Classification.FAILURE
        if self.fail_on_parse_error and any(d.kind == DiagnosticKind.PARSE for d in errors):
            return Classification.FAILURE
        if errors or self.warnings:
            return Classification.SUCCESS_WITH_WARNINGS
        return Classification.SUCCESS

    def to_dict(self):
        return {
            "classification": self.classification.value,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


@dataclass
class RunResult:
    graph: object
    comments: dict = field(default_factory=dict)
    results: ResultTable = field(default_factory=ResultTable)
    report: Report = field(default_factory=Report)

    def to_dict(self):
        data = self.graph.to_dict()
        data["doctests"] = [r.to_dict() for r in self.results]
        data["report"] = self.report.to_dict()
        return data


def _frontend_for(config):
    from .parser import ClangFrontend

    return ClangFrontend(config.roots)


def _resolve_phase(graph, config):
    """Resolve references and process comments side by side on the frozen graph."""
    resolver = Resolver(graph)
    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="cppdoc-phase") as pool:
        refs = pool.submit(resolve_all, graph, resolver, config.resolve_workers)
        comments = pool.submit(process_comments, graph, resolver, config.resolve_workers)
        ref_diags = refs.result()
        pipeline = comments.result()
    graph.seal()
    return pipeline, ref_diags + pipeline.diagnostics


def _doctest_phase(graph, pipeline, config, cancellation):
    engine = DoctestEngine(config.doctest, graph, cancellation)
    try:
        engine.check_toolchain()
    except ToolchainConfigurationError as exc:
        log.error("cppdoc: %s", exc)
        diag = Diagnostic(
            severity=Severity.FATAL,
            kind=DiagnosticKind.TOOLCHAIN,
            message=str(exc),
        )
        return ResultTable(), [diag]
    try:
        return engine.run(pipeline.doctest_queue())
    except KeyboardInterrupt:
        cancellation.cancel()
        raise RunCancelled("doc-test run interrupted") from None


def generate(config, frontend=None, cancellation=None):
    """Run every phase for ``config`` and return a RunResult."""
    cancellation = cancellation or Cancellation()
    frontend = frontend or _frontend_for(config)
    report = Report(
        fail_on_doctest_failure=config.fail_on_doctest_failure,
        fail_on_parse_error=config.fail_on_parse_error,
    )

    ingested = ingest(config.files, frontend, config.clang_args, config.ingest_workers)
    report.diagnostics.extend(ingested.diagnostics)
    cancellation.raise_if_cancelled()

    graph = build_graph(ingested.records)
    cancellation.raise_if_cancelled()

    pipeline, diagnostics = _resolve_phase(graph, config)
    report.diagnostics.extend(diagnostics)
    cancellation.raise_if_cancelled()

    results = ResultTable()
    if config.doctests:
        results, diagnostics = _doctest_phase(graph, pipeline, config, cancellation)
        report.diagnostics.extend(diagnostics)

    log.info(
        "cppdoc: run finished: %s (%d errors, %d warnings)",
        report.classification.value,
        len(report.errors),
        len(report.warnings),
    )
    return RunResult(graph=graph, comments=pipeline.comments, results=results, report=report)
