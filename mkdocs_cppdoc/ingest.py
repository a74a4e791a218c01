"""
Ingestion adapter between the C++ front end and the graph builder.

One front-end invocation per source file runs on a bounded thread pool.
Once every invocation has finished, their records are merged in input order
and duplicates are dropped. Headers reached through several translation
units yield one record per entity. A file whose parse fails fatally
contributes no records, only diagnostics, and the other files still go
through.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from .errors import FrontendError
from .model import Diagnostic, DiagnosticKind, Severity, Signature, SourceLocation

log = logging.getLogger("mkdocs.plugins.cppdoc")

USING_DIRECTIVE = "using_directive"


@dataclass
class RawRecord:
    kind: str
    qualified_name: str
    spelling: str
    location: SourceLocation = field(default_factory=SourceLocation)
    raw_comment: str = ""
    parent_ref: str = ""
    type_signature: Signature = field(default_factory=Signature)
    specialization_of: str = ""
    template_args: str = ""
    partial: bool = False
    # false for forward declarations
    is_definition: bool = True
    # index of the input file the record was first reached through
    origin: int = 0

    def dedup_key(self):
        return (self.kind, self.qualified_name, self.location.canonical())


@dataclass
class FrontendResult:
    records: object = ()
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def fatal(self):
        return any(d.severity == Severity.FATAL for d in self.diagnostics)


@dataclass
class FileOutcome:
    path: str
    records: list[RawRecord] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    failed: bool = False


@dataclass
class IngestResult:
    records: list[RawRecord] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    failed_files: list[str] = field(default_factory=list)
    parsed_files: list[str] = field(default_factory=list)
    duplicates: int = 0

    def __iter__(self):
        return iter(self.records)


def default_workers():
    return max(1, os.cpu_count() or 1)


def _parse_one(frontend, path, args):
    try:
        result = frontend.parse(path, args)
        diagnostics = list(result.diagnostics)
        if result.fatal:
            return FileOutcome(path, diagnostics=diagnostics, failed=True)
        records = list(result.records)
        # diagnostics can be appended while the record stream is consumed
        diagnostics = list(result.diagnostics)
        if result.fatal:
            return FileOutcome(path, diagnostics=diagnostics, failed=True)
        return FileOutcome(path, records=records, diagnostics=diagnostics)
    except FrontendError as exc:
        diag = Diagnostic(
            severity=Severity.FATAL,
            kind=DiagnosticKind.PARSE,
            message=exc.message,
            file=path,
        )
        return FileOutcome(path, diagnostics=[diag], failed=True)


def _excluded_file_diagnostic(outcome):
    fatal = [d for d in outcome.diagnostics if d.severity == Severity.FATAL]
    reason = fatal[0].message if fatal else "parse failed"
    return Diagnostic(
        severity=Severity.ERROR,
        kind=DiagnosticKind.PARSE,
        message=f"file excluded from documentation: {reason}",
        file=outcome.path,
        line=fatal[0].line if fatal else 0,
    )


def ingest(files, frontend, args=None, workers=None):
    """Parse ``files`` with ``frontend`` and merge the results."""
    files = list(files)
    args = list(args or [])
    workers = max(1, min(workers or default_workers(), len(files) or 1))
    result = IngestResult()
    if not files:
        return result

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cppdoc-ingest") as pool:
        outcomes = list(pool.map(lambda p: _parse_one(frontend, p, args), files))

    seen = set()
    for origin, outcome in enumerate(outcomes):
        if outcome.failed:
            for diag in outcome.diagnostics:
                log.debug("cppdoc: %s: %s", outcome.path, diag.message)
            log.warning("cppdoc: failed to parse %s, skipping its declarations", outcome.path)
            result.failed_files.append(outcome.path)
            result.diagnostics.append(_excluded_file_diagnostic(outcome))
            continue
        result.parsed_files.append(outcome.path)
        result.diagnostics.extend(outcome.diagnostics)
        for record in outcome.records:
            key = record.dedup_key()
            if key in seen:
                result.duplicates += 1
                continue
            seen.add(key)
            record.origin = origin
            result.records.append(record)

    log.info(
        "cppdoc: ingested %d files (%d failed), %d records, %d duplicates dropped",
        len(files),
        len(result.failed_files),
        len(result.records),
        result.duplicates,
    )
    return result
