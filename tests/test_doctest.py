import os
import signal
import sys
import threading
import time

import pytest

from mkdocs_cppdoc.doctest import (
    Cancellation,
    DoctestConfig,
    DoctestEngine,
    Sandbox,
    assemble_source,
    check_toolchain,
    compare_output,
    compile_command,
    memory_prefix,
    run_block,
)
from mkdocs_cppdoc.errors import RunCancelled, ToolchainConfigurationError
from mkdocs_cppdoc.graph import build_graph
from mkdocs_cppdoc.ingest import FrontendResult, RawRecord
from mkdocs_cppdoc.model import (
    CodeBlock,
    DiagnosticKind,
    Signature,
    SourceLocation,
    TestMode,
    TestStatus,
)
from mkdocs_cppdoc.runner import Classification, RunConfig, generate

# Stand-in compiler: turns every "//$ " line of the source into a shell
# script, so tests control what the "binary" does without a C++ toolchain.
FAKE_COMPILER = """\
import os
import sys

source, output = sys.argv[1], sys.argv[2]
with open(source) as f:
    text = f.read()
if "COMPILE_ERROR" in text:
    sys.stderr.write("error: requested failure\\n")
    sys.exit(1)
lines = []
for line in text.splitlines():
    line = line.strip()
    if line.startswith("//$ "):
        lines.append(line[4:])
with open(output, "w") as f:
    f.write("#!/bin/sh\\n" + "\\n".join(lines) + "\\n")
os.chmod(output, 0o755)
"""


def _config(tmp_path, **over):
    script = tmp_path / "fakecc.py"
    script.write_text(FAKE_COMPILER)
    opts = dict(
        compiler_invocation=f'"{sys.executable}" "{script}" {{source}} {{output}}',
        network_isolation="never",
        timeout=10.0,
        compile_timeout=30.0,
        scratch_root=str(tmp_path / "scratch"),
    )
    opts.update(over)
    return DoctestConfig(**opts)


def _block(code, mode=TestMode.TESTED, expected=None, index=0, wrap_main=True):
    return CodeBlock(
        id=f"block-{index}",
        owner_id="owner",
        index=index,
        language="cpp",
        code=code,
        mode=mode,
        wrap_main=wrap_main,
        expected_output=expected,
    )


def _gone(pid):
    try:
        with open(f"/proc/{pid}/stat") as f:
            # zombies are dead but not yet reaped
            return f.read().rsplit(")", 1)[1].split()[0] == "Z"
    except FileNotFoundError:
        return True


# -- compiler invocation --


class TestCompileCommand:
    def test_expands_placeholders(self):
        config = DoctestConfig(
            compiler_invocation="c++ {flags} -o {output} {source}", flags=["-O2", "-Iinc"]
        )
        assert compile_command(config, "t.cpp", "t.bin") == [
            "c++",
            "-O2",
            "-Iinc",
            "-o",
            "t.bin",
            "t.cpp",
        ]

    def test_invalid_modes(self):
        with pytest.raises(ValueError):
            DoctestConfig(comparison="fuzzy")
        with pytest.raises(ValueError):
            DoctestConfig(network_isolation="sometimes")


# -- program assembly --


class TestAssembleSource:
    def _graph(self, file):
        return build_graph(
            [
                RawRecord(
                    kind="function",
                    qualified_name="lib::f",
                    spelling="f",
                    location=SourceLocation(file, 3, 1),
                    parent_ref="lib",
                    type_signature=Signature(return_type="void"),
                )
            ]
        )

    def _owned(self, graph, code, **kw):
        block = _block(code, **kw)
        block.owner_id = graph.find("lib::f")[0].id
        return block

    def test_header_owner(self):
        graph = self._graph("include/lib.hpp")
        source = assemble_source(self._owned(graph, "f();\n"), graph, DoctestConfig())
        assert "#include <iostream>" in source
        assert f'#include "{os.path.abspath("include/lib.hpp")}"' in source
        assert "using namespace lib;" in source
        assert "int main() {\n    f();\n    return 0;\n}\n" in source

    def test_source_owner_gets_no_include(self):
        graph = self._graph("src/lib.cpp")
        source = assemble_source(self._owned(graph, "f();\n"), graph, DoctestConfig())
        assert "lib.cpp" not in source
        assert "using namespace" not in source

    def test_nomain(self):
        code = "void g() {}\n"
        source = assemble_source(_block(code, wrap_main=False), None, DoctestConfig())
        assert "int main()" not in source
        assert source.endswith(code)

    def test_existing_main_is_kept(self):
        code = "int main(int argc, char **argv) { return 0; }\n"
        source = assemble_source(_block(code), None, DoctestConfig())
        assert source.count("int main") == 1


# -- output comparison --


class TestCompareOutput:
    def test_exact(self):
        assert compare_output(b"3\n", "3\n") == (True, "")

    def test_exact_trailing_newline_matters(self):
        passed, diff = compare_output(b"3", "3\n")
        assert not passed
        assert diff

    def test_trimmed(self):
        assert compare_output(b"\nhello  \n\n", "hello\n", "trimmed")[0]
        assert not compare_output(b"hello\nworld\n", "hello\n", "trimmed")[0]

    def test_diff(self):
        passed, diff = compare_output(b"hello\n", "goodbye\n")
        assert not passed
        assert "-goodbye" in diff
        assert "+hello" in diff


# -- sandbox --


class TestSandbox:
    def test_removed_on_error(self, tmp_path):
        config = _config(tmp_path)
        with pytest.raises(RuntimeError):
            with Sandbox(config) as box:
                path = box.path
                box.write("x.txt", "x")
                raise RuntimeError("boom")
        assert not os.path.exists(path)

    def test_timeout_kills_descendants(self, tmp_path):
        config = _config(tmp_path)
        pidfile = tmp_path / "child.pid"
        with Sandbox(config) as box:
            outcome = box.run(
                ["/bin/sh", "-c", f"sleep 30 & echo $! > {pidfile}; sleep 30"], timeout=1.0
            )
        assert outcome.timed_out
        pid = int(pidfile.read_text())
        deadline = time.monotonic() + 5
        while not _gone(pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert _gone(pid)

    def test_reaped_leader_group_is_released(self, tmp_path):
        cancellation = Cancellation()
        with Sandbox(_config(tmp_path), cancellation) as box:
            outcome = box.run(["/bin/sh", "-c", "exit 0"], timeout=10.0)
            assert outcome.returncode == 0
            assert box._groups == []
            assert cancellation._groups == set()

    def test_empty_group_is_not_signalled_after_reaping(self, tmp_path, monkeypatch):
        sent = []

        def fake_killpg(pgid, sig):
            sent.append(sig)
            raise ProcessLookupError(pgid)

        with Sandbox(_config(tmp_path)) as box:
            monkeypatch.setattr(os, "killpg", fake_killpg)
            box.run(["/bin/sh", "-c", "exit 0"], timeout=10.0)
        monkeypatch.undo()
        assert signal.SIGKILL not in sent


# -- toolchain check --


class TestToolchain:
    def test_fake_compiler_passes(self, tmp_path):
        check_toolchain(_config(tmp_path))

    def test_missing_compiler(self, tmp_path):
        config = _config(
            tmp_path, compiler_invocation="definitely-not-a-compiler-xyz {source} -o {output}"
        )
        with pytest.raises(ToolchainConfigurationError):
            check_toolchain(config)

    def test_broken_compiler(self, tmp_path):
        config = _config(
            tmp_path,
            compiler_invocation=f'"{sys.executable}" -c "import sys; sys.exit(1)" {{source}}',
        )
        with pytest.raises(ToolchainConfigurationError):
            check_toolchain(config)


# -- single blocks --


class TestRunBlock:
    def test_pass(self, tmp_path):
        result = run_block(_block("//$ echo hello\n", expected="hello\n"), None, _config(tmp_path))
        assert result.status == TestStatus.COMPLETED
        assert result.passed
        assert result.history == [
            TestStatus.PENDING,
            TestStatus.COMPILING,
            TestStatus.COMPILED,
            TestStatus.RUNNING,
        ]

    def test_no_expectation_passes_on_exit_zero(self, tmp_path):
        result = run_block(_block("//$ echo anything\n"), None, _config(tmp_path))
        assert result.passed and result.stdout == "anything\n"

    def test_mismatch(self, tmp_path):
        result = run_block(
            _block("//$ echo hello\n", expected="goodbye\n"), None, _config(tmp_path)
        )
        assert result.status == TestStatus.COMPLETED
        assert not result.passed
        assert "-goodbye" in result.diff and "+hello" in result.diff

    def test_trimmed_comparison(self, tmp_path):
        code = "//$ printf 'hello  \\n\\n'\n"
        exact = run_block(_block(code, expected="hello\n"), None, _config(tmp_path))
        trimmed = run_block(
            _block(code, expected="hello\n"), None, _config(tmp_path, comparison="trimmed")
        )
        assert not exact.passed
        assert trimmed.passed

    def test_compile_error(self, tmp_path):
        result = run_block(_block("COMPILE_ERROR;\n"), None, _config(tmp_path))
        assert result.status == TestStatus.COMPILE_ERROR
        assert "requested failure" in result.stderr
        assert result.failed

    def test_runtime_error(self, tmp_path):
        result = run_block(_block("//$ exit 3\n"), None, _config(tmp_path))
        assert result.status == TestStatus.RUNTIME_ERROR
        assert result.returncode == 3

    def test_timeout(self, tmp_path):
        pidfile = tmp_path / "child.pid"
        code = f"//$ sleep 30 &\n//$ echo $! > {pidfile}\n//$ sleep 30\n"
        config = _config(tmp_path, timeout=1.0)
        result = run_block(_block(code), None, config)
        assert result.status == TestStatus.TIMEOUT
        assert result.failed
        pid = int(pidfile.read_text())
        deadline = time.monotonic() + 5
        while not _gone(pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert _gone(pid)
        assert os.listdir(config.scratch_root) == []

    def test_no_run(self, tmp_path):
        result = run_block(_block("//$ exit 3\n", mode=TestMode.NO_RUN), None, _config(tmp_path))
        assert result.status == TestStatus.COMPILED
        assert result.passed

    def test_ignore(self, tmp_path):
        result = run_block(_block("COMPILE_ERROR;\n", mode=TestMode.IGNORE), None, _config(tmp_path))
        assert result.status == TestStatus.SKIPPED
        assert not result.failed

    def test_memory_limit(self, tmp_path):
        config = _config(tmp_path, memory_limit_mb=256)
        result = run_block(_block("//$ echo ok\n", expected="ok\n"), None, config)
        assert result.passed

    def test_memory_limit_reaches_the_program(self, tmp_path):
        if not memory_prefix(256):
            pytest.skip("prlimit is not usable here")
        config = _config(tmp_path, memory_limit_mb=256)
        result = run_block(_block("//$ ulimit -v\n", expected="262144\n"), None, config)
        assert result.passed, result.stdout

    def test_no_memory_limit_without_a_size(self):
        assert memory_prefix(0) == []


# -- engine --


class TestEngine:
    def test_results_and_diagnostics(self, tmp_path):
        blocks = [
            _block("//$ echo one\n", expected="one\n", index=0),
            _block("//$ exit 1\n", index=1),
            _block("//$ echo three\n", mode=TestMode.IGNORE, index=2),
        ]
        engine = DoctestEngine(_config(tmp_path, workers=3), None)
        table, diagnostics = engine.run(blocks)
        assert len(table) == 3
        assert table.get("block-0").passed
        assert table.get("block-1").status == TestStatus.RUNTIME_ERROR
        assert table.get("block-2").status == TestStatus.SKIPPED
        assert [r.block_id for r in table.failures()] == ["block-1"]
        assert [d.kind for d in diagnostics] == [DiagnosticKind.DOCTEST_FAILURE]
        assert "doc-test #2" in diagnostics[0].message

    def test_cancel(self, tmp_path):
        config = _config(tmp_path, timeout=30.0)
        cancellation = Cancellation()
        engine = DoctestEngine(config, None, cancellation)
        timer = threading.Timer(0.5, cancellation.cancel)
        timer.start()
        try:
            with pytest.raises(RunCancelled):
                engine.run([_block("//$ sleep 30\n", index=i) for i in range(2)])
        finally:
            timer.cancel()
        assert os.listdir(config.scratch_root) == []

    def test_cancelled_before_start(self, tmp_path):
        cancellation = Cancellation()
        cancellation.cancel()
        engine = DoctestEngine(_config(tmp_path), None, cancellation)
        with pytest.raises(RunCancelled):
            engine.run([_block("//$ echo hi\n")])


# -- full runs --


class _Frontend:
    def __init__(self, records):
        self.records = records

    def parse(self, path, args):
        return FrontendResult(records=iter(self.records), diagnostics=[])


def _documented(tmp_path, comment):
    return [
        RawRecord(
            kind="function",
            qualified_name="calc::answer",
            spelling="answer",
            location=SourceLocation(str(tmp_path / "calc.hpp"), 4, 1),
            raw_comment=comment,
            parent_ref="calc",
            type_signature=Signature(return_type="int"),
        )
    ]


_PASSING = "/// Prints the answer.\n/// ```cpp\n/// //$ echo 42\n/// ```\n/// ```output\n/// 42\n/// ```"
_FAILING = "/// Prints the answer.\n/// ```cpp\n/// //$ echo 41\n/// ```\n/// ```output\n/// 42\n/// ```"


class TestGenerateWithDoctests:
    def _run(self, tmp_path, comment, **over):
        config = RunConfig(files=["calc.cpp"], doctests=True, doctest=_config(tmp_path), **over)
        return generate(config, frontend=_Frontend(_documented(tmp_path, comment)))

    def test_passing(self, tmp_path):
        result = self._run(tmp_path, _PASSING)
        assert len(result.results) == 1
        assert all(r.passed for r in result.results)
        assert result.report.classification == Classification.SUCCESS

    def test_failing(self, tmp_path):
        result = self._run(tmp_path, _FAILING)
        assert len(result.report.of_kind(DiagnosticKind.DOCTEST_FAILURE)) == 1
        assert result.report.classification == Classification.FAILURE

    def test_failing_allowed(self, tmp_path):
        result = self._run(tmp_path, _FAILING, fail_on_doctest_failure=False)
        assert result.report.classification == Classification.SUCCESS_WITH_WARNINGS

    def test_broken_toolchain(self, tmp_path):
        config = RunConfig(
            files=["calc.cpp"],
            doctests=True,
            doctest=_config(tmp_path, compiler_invocation="no-such-cc-xyz {source} {output}"),
        )
        result = generate(config, frontend=_Frontend(_documented(tmp_path, _PASSING)))
        assert len(result.results) == 0
        assert len(result.report.of_kind(DiagnosticKind.TOOLCHAIN)) == 1
        assert result.report.classification == Classification.FAILURE
        assert result.graph.find("calc::answer")
