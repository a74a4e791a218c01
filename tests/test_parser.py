import pytest

cindex = pytest.importorskip("clang.cindex")

from mkdocs_cppdoc.graph import build_graph  # noqa: E402
from mkdocs_cppdoc.ingest import USING_DIRECTIVE  # noqa: E402
from mkdocs_cppdoc.model import AliasChain, DeclKind, RefKind, Single  # noqa: E402
from mkdocs_cppdoc.parser import ClangFrontend  # noqa: E402
from mkdocs_cppdoc.resolver import Resolver, resolve_all  # noqa: E402
from mkdocs_cppdoc.runner import Classification, RunConfig, generate  # noqa: E402

HEADER = """\
#pragma once

namespace geo {

class Derived;

/// Root of the hierarchy.
class Base {
public:
    virtual ~Base();
};

/// Concrete shape.
class Derived : public Base {
public:
    /// Scales by an integer.
    void scale(int factor);
    /// Scales by a real factor.
    void scale(double factor);
};

using Final = Base;
using NewName = Final;
typedef NewName OldName;

template <typename T>
struct Vec {
    T value;
};

/// Packed booleans.
template <>
struct Vec<bool> {
    unsigned bits;
};

template <typename T>
struct Vec<T *> {
    T *ptr;
};

}  // namespace geo

namespace app {
using namespace geo;

/// Draws a `Derived`.
void draw(const Derived &shape);
}  // namespace app
"""


@pytest.fixture
def header(tmp_path):
    try:
        cindex.Index.create()
    except cindex.LibclangError as exc:
        pytest.skip(f"libclang is not loadable: {exc}")
    path = tmp_path / "shapes.hpp"
    path.write_text(HEADER)
    return path


def _parse(header):
    result = ClangFrontend([str(header.parent)]).parse(str(header), ["-std=c++17"])
    return list(result.records), result.diagnostics


def _by_name(records):
    out = {}
    for r in records:
        out.setdefault((r.kind, r.qualified_name), []).append(r)
    return out


def _one(graph, qn, kind=None):
    found = graph.find(qn, kind)
    assert len(found) == 1, found
    return found[0]


# -- front end --


class TestClangFrontend:
    def test_pragma_once_header_parses_cleanly(self, header):
        _, diagnostics = _parse(header)
        assert diagnostics == []

    def test_records(self, header):
        records, _ = _parse(header)
        by = _by_name(records)
        assert ("namespace", "geo") in by and ("namespace", "app") in by
        assert "Root of the hierarchy." in by[("record", "geo::Base")][0].raw_comment

        scales = by[("function", "geo::Derived::scale")]
        assert [r.type_signature.parameter_types() for r in scales] == [("int",), ("double",)]

        (using,) = [r for r in records if r.kind == USING_DIRECTIVE]
        assert using.qualified_name == "geo"
        assert using.parent_ref == "app"

    def test_forward_declaration_is_not_a_definition(self, header):
        records, _ = _parse(header)
        derived = _by_name(records)[("record", "geo::Derived")]
        assert [r.is_definition for r in derived] == [False, True]
        assert derived[0].type_signature.bases == []
        assert derived[1].type_signature.bases[0].endswith("Base")

    def test_specializations(self, header):
        records, _ = _parse(header)
        specs = [r for r in records if r.specialization_of == "geo::Vec"]
        assert [r.partial for r in specs] == [False, True]
        assert specs[0].template_args == "<bool>"
        assert "Packed booleans." in specs[0].raw_comment
        # members of specializations are not reported
        assert not any(r.qualified_name == "geo::Vec::bits" for r in records)


# -- parsed graph --


class TestParsedGraph:
    def _graph(self, header):
        records, _ = _parse(header)
        graph = build_graph(records)
        resolver = Resolver(graph)
        resolve_all(graph, resolver, workers=1)
        return graph, resolver

    def test_base_class_of_forward_declared_record(self, header):
        graph, _ = self._graph(header)
        derived = _one(graph, "geo::Derived")
        base = _one(graph, "geo::Base")
        assert derived.location.line == 14
        (ref,) = [r for r in graph.references_of(derived.id) if r.kind == RefKind.BASE_CLASS]
        assert ref.target == Single(base.id)

    def test_alias_chain(self, header):
        graph, resolver = self._graph(header)
        geo = _one(graph, "geo", DeclKind.NAMESPACE)
        target = resolver.lookup("OldName", geo.id)
        assert isinstance(target, AliasChain)
        assert [graph[i].name for i in target.ids] == ["OldName", "NewName", "Final", "Base"]

    def test_specializations_fold_onto_primary(self, header):
        graph, _ = self._graph(header)
        vec = _one(graph, "geo::Vec", DeclKind.RECORD)
        assert [s.partial for s in vec.specializations] == [False, True]

    def test_using_directive_reaches_parameter_type(self, header):
        graph, _ = self._graph(header)
        draw = _one(graph, "app::draw")
        derived = _one(graph, "geo::Derived")
        assert _one(graph, "app").using_directives == ("geo",)
        (ref,) = [r for r in graph.references_of(draw.id) if r.kind == RefKind.TYPE_USE]
        assert ref.target == Single(derived.id)

    def test_generate(self, header):
        outcome = generate(RunConfig(files=[str(header)], roots=[str(header.parent)]))
        assert outcome.report.classification == Classification.SUCCESS
