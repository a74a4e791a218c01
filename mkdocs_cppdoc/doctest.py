"""
Doc-test execution engine.

Every tested code block becomes a small standalone program: prelude
includes, the owner's header, ``using namespace`` for the owner's
namespaces and, unless the block opts out, a ``main()`` wrapper. The
program is compiled with the configured compiler and then run.

Each test owns a Sandbox: a scratch directory plus every process group
started in it. Processes start in a new session so a timeout or a
cancellation can kill the whole group, descendants included. Leaving the
sandbox, on any path, kills what is left and removes the directory.

Test status moves through::

    pending -> compiling -> compile_error | compiled | timeout
    compiled -> running -> timeout | runtime_error | completed
    pending -> skipped                  (ignore blocks)

``no_run`` blocks stop at ``compiled``.
"""

from __future__ import annotations

import difflib
import logging
import os
import re
import shlex
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from .errors import RunCancelled, ToolchainConfigurationError
from .model import (
    DeclKind,
    Diagnostic,
    DiagnosticKind,
    ResultTable,
    Severity,
    TestMode,
    TestResult,
    TestStatus,
)

log = logging.getLogger("mkdocs.plugins.cppdoc")

HEADER_EXTENSIONS = (".h", ".hh", ".hpp", ".hxx", ".h++", ".inl")
COMPARISON_MODES = ("exact", "trimmed")
ISOLATION_MODES = ("auto", "always", "never")

_PROBE_SOURCE = "int main() { return 0; }\n"


@dataclass
class DoctestConfig:
    compiler_invocation: str = "c++ -std=c++17 {flags} -o {output} {source}"
    flags: list[str] = field(default_factory=list)
    timeout: float = 10.0
    compile_timeout: float = 120.0
    memory_limit_mb: int = 0
    workers: int | None = None
    comparison: str = "exact"
    network_isolation: str = "auto"
    prelude: list[str] = field(default_factory=lambda: ["<iostream>", "<cassert>"])
    scratch_root: str | None = None

    def __post_init__(self):
        if self.comparison not in COMPARISON_MODES:
            raise ValueError(
                f"output comparison must be one of {', '.join(COMPARISON_MODES)}, "
                f"not {self.comparison!r}"
            )
        if self.network_isolation not in ISOLATION_MODES:
            raise ValueError(
                f"network isolation must be one of {', '.join(ISOLATION_MODES)}, "
                f"not {self.network_isolation!r}"
            )


def compile_command(config, source, output):
    """Expand the compiler invocation template into an argv list."""
    argv = []
    for token in shlex.split(config.compiler_invocation):
        if token == "{flags}":
            argv.extend(config.flags)
            continue
        argv.append(token.replace("{source}", source).replace("{output}", output))
    return argv


# ── Process groups ──


def _kill_group(pgid):
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


class Cancellation:
    """Run-wide cancellation token that tracks live process groups."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._groups = set()

    @property
    def cancelled(self):
        return self._event.is_set()

    def cancel(self):
        self._event.set()
        with self._lock:
            groups = list(self._groups)
        for pgid in groups:
            _kill_group(pgid)

    def register(self, pgid):
        with self._lock:
            self._groups.add(pgid)
        if self.cancelled:
            _kill_group(pgid)

    def unregister(self, pgid):
        with self._lock:
            self._groups.discard(pgid)

    def raise_if_cancelled(self):
        if self.cancelled:
            raise RunCancelled("doc-test run cancelled")


@dataclass
class ProcessOutcome:
    returncode: int | None
    stdout: bytes = b""
    stderr: bytes = b""
    timed_out: bool = False
    duration: float = 0.0


def _group_alive(pgid):
    try:
        os.killpg(pgid, 0)
    except (ProcessLookupError, PermissionError):
        return False
    return True


class Sandbox:
    """Scratch directory plus the process groups started inside it."""

    def __init__(self, config, cancellation=None):
        self.config = config
        self.cancellation = cancellation
        self.path = None
        self._groups = []

    def __enter__(self):
        if self.config.scratch_root:
            os.makedirs(self.config.scratch_root, exist_ok=True)
        self.path = tempfile.mkdtemp(prefix="cppdoc-", dir=self.config.scratch_root)
        return self

    def __exit__(self, exc_type, exc, tb):
        for pgid in self._groups:
            _kill_group(pgid)
            if self.cancellation is not None:
                self.cancellation.unregister(pgid)
        self._groups.clear()
        shutil.rmtree(self.path, ignore_errors=True)
        return False

    def write(self, name, text):
        path = os.path.join(self.path, name)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        return path

    def run(self, argv, timeout, limit_memory=False):
        if self.cancellation is not None:
            self.cancellation.raise_if_cancelled()
        if limit_memory and self.config.memory_limit_mb > 0:
            argv = memory_prefix(self.config.memory_limit_mb) + list(argv)

        start = time.monotonic()
        proc = subprocess.Popen(
            argv,
            cwd=self.path,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        # the new session makes the child the leader of its own group
        self._groups.append(proc.pid)
        if self.cancellation is not None:
            self.cancellation.register(proc.pid)

        timed_out = False
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            # the unreaped leader still holds the group id
            timed_out = True
            _kill_group(proc.pid)
            stdout, stderr = proc.communicate()
        finally:
            self._release(proc)

        if self.cancellation is not None:
            self.cancellation.raise_if_cancelled()
        return ProcessOutcome(
            returncode=proc.returncode,
            stdout=stdout or b"",
            stderr=stderr or b"",
            timed_out=timed_out,
            duration=time.monotonic() - start,
        )

    def _release(self, proc):
        if proc.poll() is None:
            _kill_group(proc.pid)
            proc.kill()
            proc.wait()
        elif _group_alive(proc.pid):
            # surviving descendants keep the reaped leader's group id reserved
            _kill_group(proc.pid)
        self._groups.remove(proc.pid)
        if self.cancellation is not None:
            self.cancellation.unregister(proc.pid)


# ── Resource limits ──

_prlimit_lock = threading.Lock()
_prlimit = None


def memory_prefix(limit_mb):
    """Command prefix that caps a program's address space at ``limit_mb``."""
    global _prlimit
    if limit_mb <= 0:
        return []
    with _prlimit_lock:
        if _prlimit is None:
            _prlimit = _probe_prlimit()
            if not _prlimit:
                log.warning(
                    "cppdoc: 'prlimit' is not usable here, doc-tests run without a memory limit"
                )
    if not _prlimit:
        return []
    return [_prlimit, f"--as={limit_mb * 1024 * 1024}", "--"]


def _probe_prlimit():
    prlimit = shutil.which("prlimit")
    if prlimit is None:
        return ""
    try:
        proc = subprocess.run(
            [prlimit, "--as=1073741824", "--", "true"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return ""
    return prlimit if proc.returncode == 0 else ""


# ── Network isolation ──

_isolation_lock = threading.Lock()
_isolation_prefix = None


def network_prefix(mode):
    """Command prefix that runs a program without network access."""
    global _isolation_prefix
    if mode == "never":
        return []
    with _isolation_lock:
        if _isolation_prefix is None:
            _isolation_prefix = _probe_unshare()
            if not _isolation_prefix:
                log.warning(
                    "cppdoc: 'unshare -rn' is not usable here, doc-tests run with network access"
                )
    return list(_isolation_prefix)


def _probe_unshare():
    unshare = shutil.which("unshare")
    if unshare is None:
        return []
    try:
        proc = subprocess.run(
            [unshare, "-rn", "true"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return []
    return [unshare, "-rn"] if proc.returncode == 0 else []


# ── Toolchain ──


def _tail(data, limit=2000):
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    return text[-limit:].strip()


def check_toolchain(config):
    """Compile and run a trivial program; raise ToolchainConfigurationError on failure."""
    argv = compile_command(config, "probe.cpp", "probe.bin")
    if not argv:
        raise ToolchainConfigurationError("doc-test compiler invocation is empty")
    if shutil.which(argv[0]) is None:
        raise ToolchainConfigurationError(f"doc-test compiler {argv[0]!r} was not found")

    with Sandbox(config) as box:
        source = box.write("probe.cpp", _PROBE_SOURCE)
        binary = os.path.join(box.path, "probe.bin")
        argv = compile_command(config, source, binary)
        try:
            outcome = box.run(argv, config.compile_timeout)
        except OSError as exc:
            raise ToolchainConfigurationError(f"cannot run doc-test compiler: {exc}") from exc
        if outcome.timed_out:
            raise ToolchainConfigurationError("doc-test compiler timed out on a trivial program")
        if outcome.returncode != 0 or not os.path.exists(binary):
            raise ToolchainConfigurationError(
                "doc-test compiler cannot build a trivial program: " + _tail(outcome.stderr)
            )
        try:
            outcome = box.run([binary], config.timeout)
        except OSError as exc:
            raise ToolchainConfigurationError(f"cannot run compiled doc-test: {exc}") from exc
        if outcome.returncode != 0:
            raise ToolchainConfigurationError(
                f"trivial doc-test program exited with {outcome.returncode}"
            )

    if config.network_isolation == "always" and not network_prefix("always"):
        raise ToolchainConfigurationError(
            "network isolation is required but 'unshare -rn' is not available"
        )
    log.debug("cppdoc: doc-test toolchain ok (%s)", argv[0])


# ── Sources ──


def _owner_namespaces(graph, owner):
    chain = [owner] + graph.ancestors(owner.id)
    names = [
        d.qualified_name
        for d in chain
        if d.kind == DeclKind.NAMESPACE and d.qualified_name and "(anonymous" not in d.name
    ]
    return list(reversed(names))


_MAIN_RE = re.compile(r"\bint\s+main\s*\(")


def _defines_main(code):
    return bool(_MAIN_RE.search(code))


def assemble_source(block, graph, config):
    """Build the translation unit compiled for ``block``."""
    lines = [f"#include {inc}" for inc in config.prelude]
    owner = graph.get(block.owner_id) if graph is not None else None
    header = None
    if owner is not None and owner.location.file.endswith(HEADER_EXTENSIONS):
        header = os.path.abspath(owner.location.file)
        lines.append(f'#include "{header}"')
    lines.append("")

    if header is not None:
        for ns in _owner_namespaces(graph, owner):
            lines.append(f"using namespace {ns};")

    code = block.code if block.code.endswith("\n") else block.code + "\n"
    if block.wrap_main and not _defines_main(code):
        lines.append("int main() {")
        for line in code.rstrip("\n").split("\n"):
            lines.append(f"    {line}" if line.strip() else "")
        lines.append("    return 0;")
        lines.append("}")
        return "\n".join(lines) + "\n"
    return "\n".join(lines) + "\n" + code


# ── Output comparison ──


def _trim(text):
    lines = [line.rstrip() for line in text.split("\n")]
    while lines and not lines[0]:
        lines.pop(0)
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def compare_output(actual, expected, mode="exact"):
    """Return ``(passed, diff)`` for captured stdout bytes against ``expected``."""
    text = actual.decode("utf-8", errors="replace")
    if mode == "trimmed":
        passed = _trim(text) == _trim(expected)
        left, right = _trim(expected) + "\n", _trim(text) + "\n"
    else:
        passed = actual == expected.encode("utf-8")
        left, right = expected, text
    if passed:
        return True, ""
    diff = "".join(
        difflib.unified_diff(
            left.splitlines(keepends=True),
            right.splitlines(keepends=True),
            fromfile="expected",
            tofile="actual",
        )
    )
    if not diff:
        diff = f"--- expected\n+++ actual\n-{left!r}\n+{right!r}\n"
    return False, diff


# ── Running ──


def run_block(block, graph, config, cancellation=None):
    """Compile and run one code block; returns its TestResult."""
    result = TestResult(block_id=block.id)
    if block.mode == TestMode.IGNORE:
        result.advance(TestStatus.SKIPPED)
        return result

    start = time.monotonic()
    with Sandbox(config, cancellation) as box:
        source = box.write("doctest.cpp", assemble_source(block, graph, config))
        binary = os.path.join(box.path, "doctest.bin")

        result.advance(TestStatus.COMPILING)
        outcome = box.run(compile_command(config, source, binary), config.compile_timeout)
        result.stderr = _tail(outcome.stderr, 20000)
        if outcome.timed_out:
            result.advance(TestStatus.TIMEOUT)
        elif outcome.returncode != 0 or not os.path.exists(binary):
            result.returncode = outcome.returncode
            result.advance(TestStatus.COMPILE_ERROR)
        else:
            result.advance(TestStatus.COMPILED)
            if block.mode == TestMode.NO_RUN:
                result.passed = True
            else:
                _execute(result, block, box, binary, config)

    result.duration = time.monotonic() - start
    return result


def _execute(result, block, box, binary, config):
    result.advance(TestStatus.RUNNING)
    argv = network_prefix(config.network_isolation) + [binary]
    outcome = box.run(argv, config.timeout, limit_memory=True)
    result.stdout = outcome.stdout.decode("utf-8", errors="replace")
    result.stderr = _tail(outcome.stderr, 20000)
    result.returncode = outcome.returncode
    if outcome.timed_out:
        result.advance(TestStatus.TIMEOUT)
        return
    if outcome.returncode != 0:
        result.advance(TestStatus.RUNTIME_ERROR)
        return
    result.advance(TestStatus.COMPLETED)
    if block.expected_output is None:
        result.passed = True
    else:
        result.passed, result.diff = compare_output(
            outcome.stdout, block.expected_output, config.comparison
        )


def _failure_diagnostic(result, block, graph):
    owner = graph.get(block.owner_id) if graph is not None else None
    where = owner.display_name() if owner is not None else block.owner_id
    if result.status == TestStatus.COMPLETED:
        reason = "output does not match"
    else:
        reason = result.status.value.replace("_", " ")
    return Diagnostic(
        severity=Severity.ERROR,
        kind=DiagnosticKind.DOCTEST_FAILURE,
        message=f"doc-test #{block.index + 1} of {where} failed: {reason}",
        file=owner.location.file if owner is not None else "",
        line=owner.location.line if owner is not None else 0,
        owner=block.owner_id,
    )


class DoctestEngine:
    def __init__(self, config, graph, cancellation=None):
        self.config = config
        self.graph = graph
        self.cancellation = cancellation or Cancellation()

    def check_toolchain(self):
        check_toolchain(self.config)

    def run(self, blocks):
        """Run ``blocks`` on a worker pool; returns ``(ResultTable, diagnostics)``.

        Raises RunCancelled when the run is cancelled; nothing produced by a
        cancelled run is returned.
        """
        blocks = list(blocks)
        table = ResultTable()
        self.cancellation.raise_if_cancelled()
        if not blocks:
            return table, []

        workers = self.config.workers or os.cpu_count() or 1
        log.info("cppdoc: running %d doc-tests on %d workers", len(blocks), workers)

        def task(block):
            result = run_block(block, self.graph, self.config, self.cancellation)
            table.record(result)
            return result

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cppdoc-doctest") as pool:
            futures = {pool.submit(task, b): b for b in blocks}
            try:
                for future in as_completed(futures):
                    future.result()
            except BaseException:
                self.cancellation.cancel()
                for future in futures:
                    future.cancel()
                raise

        self.cancellation.raise_if_cancelled()

        diagnostics = []
        for block in blocks:
            result = table.get(block.id)
            if result.failed:
                diag = _failure_diagnostic(result, block, self.graph)
                log.warning("cppdoc: %s", diag.message)
                diagnostics.append(diag)
        return table, diagnostics
