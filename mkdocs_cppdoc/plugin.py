"""
MkDocs plugin for generating C++ API documentation.

Hooks into the MkDocs build lifecycle: discovers sources under
``source_root``, runs the generator (ingest, build, resolve, doc-tests) once
per build, and hands one generated Markdown page per namespace to MkDocs
together with a nav section. A run classified as failed aborts the build.
"""

from __future__ import annotations

import fnmatch
import logging
import os

from mkdocs.config import config_options
from mkdocs.config.base import Config as MkDocsConfig
from mkdocs.exceptions import PluginError
from mkdocs.plugins import BasePlugin
from mkdocs.structure.files import File

from .doctest import DoctestConfig
from .errors import RunCancelled
from .model import Severity
from .renderer import RenderConfig, Renderer
from .runner import Classification, RunConfig, generate

log = logging.getLogger("mkdocs.plugins.cppdoc")

_DEFAULT_EXTENSIONS = [".h", ".hh", ".hpp", ".hxx", ".cpp", ".cc", ".cxx"]

# clang arguments that also matter when compiling doc-tests
_SHARED_FLAG_PREFIXES = ("-I", "-D", "-U", "-std=", "-isystem")


class CppdocConfig(MkDocsConfig):
    source_root = config_options.Type(str, default="")
    extensions = config_options.Type(list, default=_DEFAULT_EXTENSIONS)
    exclude = config_options.Type(list, default=[])
    clang_args = config_options.Type(list, default=[])
    output_dir = config_options.Type(str, default="api")
    nav_title = config_options.Type(str, default="API Reference")
    heading_level = config_options.Type(int, default=2)
    doctests = config_options.Type(bool, default=False)
    doctest_compiler = config_options.Type(
        str, default="c++ -std=c++17 {flags} -o {output} {source}"
    )
    doctest_flags = config_options.Type(list, default=[])
    doctest_timeout = config_options.Type((int, float), default=10)
    doctest_memory_limit_mb = config_options.Type(int, default=0)
    doctest_workers = config_options.Type(int, default=0)
    ingest_workers = config_options.Type(int, default=0)
    output_comparison = config_options.Choice(("exact", "trimmed"), default="exact")
    fail_on_doctest_failure = config_options.Type(bool, default=True)
    fail_on_parse_error = config_options.Type(bool, default=False)
    network_isolation = config_options.Choice(("auto", "always", "never"), default="auto")


def _discover_sources(root, extensions, exclude):
    out = []
    exts = [e if e.startswith(".") else f".{e}" for e in extensions]
    for dirpath, dirnames, fnames in os.walk(root):
        dirnames.sort()
        for fn in sorted(fnames):
            _, ext = os.path.splitext(fn)
            if ext.lower() not in exts:
                continue
            rel = os.path.relpath(os.path.join(dirpath, fn), root)
            if any(fnmatch.fnmatch(fn, p) or fnmatch.fnmatch(rel, p) for p in exclude):
                continue
            out.append(rel)
    return out


def _doctest_flags(plugin_config, root):
    flags = list(plugin_config["doctest_flags"])
    flags += [a for a in plugin_config["clang_args"] if a.startswith(_SHARED_FLAG_PREFIXES)]
    flags.append(f"-I{root}")
    return flags


def build_run_config(plugin_config, config_dir):
    """Map the plugin's options onto a RunConfig."""
    root = plugin_config["source_root"] or "."
    if not os.path.isabs(root):
        root = os.path.normpath(os.path.join(config_dir, root))
    files = [
        os.path.join(root, rel)
        for rel in _discover_sources(root, plugin_config["extensions"], plugin_config["exclude"])
    ]
    doctest = DoctestConfig(
        compiler_invocation=plugin_config["doctest_compiler"],
        flags=_doctest_flags(plugin_config, root),
        timeout=float(plugin_config["doctest_timeout"]),
        memory_limit_mb=plugin_config["doctest_memory_limit_mb"],
        workers=plugin_config["doctest_workers"] or None,
        comparison=plugin_config["output_comparison"],
        network_isolation=plugin_config["network_isolation"],
    )
    return RunConfig(
        files=files,
        clang_args=list(plugin_config["clang_args"]),
        roots=[root],
        ingest_workers=plugin_config["ingest_workers"] or None,
        doctests=plugin_config["doctests"],
        doctest=doctest,
        fail_on_doctest_failure=plugin_config["fail_on_doctest_failure"],
        fail_on_parse_error=plugin_config["fail_on_parse_error"],
    )


def _log_report(report):
    for diag in report.diagnostics:
        where = f"{diag.file}:{diag.line}: " if diag.file else ""
        if diag.severity in (Severity.ERROR, Severity.FATAL):
            log.error("cppdoc: %s%s", where, diag.message)
        elif diag.severity == Severity.WARNING:
            log.warning("cppdoc: %s%s", where, diag.message)
        else:
            log.debug("cppdoc: %s%s", where, diag.message)


class CppdocPlugin(BasePlugin[CppdocConfig]):
    def __init__(self):
        super().__init__()
        self._pages = {}
        self._nav = []
        self.result = None
        # front end override; None means libclang
        self.frontend = None

    # ── Navigation ──

    def _build_nav_tree(self, renderer):
        nav = []
        for uri, ns in renderer.pages().items():
            title = ns.qualified_name or "Overview"
            nav.append({title: uri})
        return nav

    def _inject_nav(self, config):
        top_title = self.config["nav_title"]
        if not self._nav:
            return
        section = {top_title: self._nav}

        nav = config.get("nav")
        if nav is None:
            config["nav"] = [section]
            return
        for i, item in enumerate(nav):
            if isinstance(item, dict) and top_title in item:
                nav[i] = section
                return
        nav.append(section)

    # ── MkDocs lifecycle hooks ──

    def on_config(self, config, **kwargs):
        config_dir = os.path.dirname(config.get("config_file_path", "") or "") or os.getcwd()
        self._pages.clear()
        self._nav = []

        run_config = build_run_config(self.config, config_dir)
        if not run_config.files:
            log.warning("cppdoc: no sources found under %s", run_config.roots[0])
            return config
        log.info("cppdoc: %d source files under %s", len(run_config.files), run_config.roots[0])

        try:
            self.result = generate(run_config, frontend=self.frontend)
        except RunCancelled as exc:
            raise PluginError(f"cppdoc: {exc}") from exc

        report = self.result.report
        _log_report(report)
        if report.classification == Classification.FAILURE:
            raise PluginError(
                f"cppdoc: documentation run failed with {len(report.errors)} error(s)"
            )

        renderer = Renderer(
            self.result.graph,
            self.result.comments,
            self.result.results,
            RenderConfig(
                heading_level=self.config["heading_level"],
                output_dir=self.config["output_dir"],
                title=self.config["nav_title"],
            ),
        )
        for uri, ns in renderer.pages().items():
            self._pages[uri] = renderer.render_page(ns)
        self._nav = self._build_nav_tree(renderer)
        self._inject_nav(config)
        log.info("cppdoc: %d API pages generated", len(self._pages))
        return config

    def on_files(self, files, *, config, **kwargs):
        for uri in sorted(self._pages):
            f = File.generated(config, uri, content="")
            f.edit_uri = None
            files.append(f)
        return files

    def on_page_markdown(self, markdown, *, page, config, files, **kwargs):
        src_uri = getattr(page.file, "src_uri", None) or page.file.src_path
        if src_uri in self._pages:
            return self._pages[src_uri]
        return markdown
