import pytest

from edifact_errors import InvalidPath
from edifact_models import OwnedSegment
from path_resolver import EdifactPath, PathResolver

pytestmark = pytest.mark.unit


class TestPathResolver:

    @pytest.fixture
    def resolver(self, utilmd_mig):
        return PathResolver.from_mig(utilmd_mig)

    @pytest.mark.parametrize("path, expected", [
        ("loc.c517.d3225", ("LOC", None, 1, 0)),
        ("loc.d3227", ("LOC", None, 0, 0)),
        ("dtm[137].c507.d2380", ("DTM", "137", 0, 1)),
        ("nad.c082.d3055", ("NAD", None, 1, 2)),
        ("ftx.c108.d4440_2", ("FTX", None, 3, 1)),
        ("rff.c506.qualifier", ("RFF", None, 0, 0)),
        ("LOC.C517.D3225", ("LOC", None, 1, 0)),
    ])
    def test_named_paths(self, resolver, path, expected):
        resolved = resolver.resolve(path)
        assert (resolved.tag, resolved.qualifier, resolved.element, resolved.component) == expected

    def test_numeric_paths_need_no_schema(self):
        resolved = PathResolver().resolve("loc.1.0")
        assert resolved == EdifactPath(tag="LOC", element=1, component=0)
        assert str(resolved) == "LOC.1.0"

    def test_qualified_path_string(self, resolver):
        assert str(resolver.resolve("dtm[92].c507.d2380")) == "DTM[92].0.1"

    @pytest.mark.parametrize("path", ["loc", "loc.c999", "1oc.d3227", "loc.c517.d9999", "loc..d3225", "loc.1.0.0"])
    def test_invalid_paths(self, resolver, path):
        with pytest.raises(InvalidPath):
            resolver.resolve(path)
        assert not resolver.is_resolvable(path)

    def test_alias(self, resolver):
        resolver.add_alias("LOC", "malo", 1, 0)
        resolved = resolver.resolve("loc.malo")
        assert (resolved.element, resolved.component) == (1, 0)

    def test_from_pid_schema(self, pid_55001_schema):
        resolver = PathResolver.from_pid_schema(pid_55001_schema)
        resolved = resolver.resolve("ide.c206.d7402")
        assert (resolved.element, resolved.component) == (1, 0)
        assert resolver.resolve("sts.c555.d4405").element == 1


class TestConditions:

    @pytest.fixture
    def resolver(self, utilmd_mig):
        return PathResolver.from_mig(utilmd_mig)

    def test_guard_expression(self, resolver):
        condition = resolver.resolve_condition("loc.d3227 == 'Z16'")
        assert condition.value == "Z16"
        assert condition.holds_for(OwnedSegment(id="LOC", elements=[["Z16"], ["MALO"]]))
        assert not condition.holds_for(OwnedSegment(id="LOC", elements=[["Z17"], ["MELO"]]))
        assert not condition.holds_for(OwnedSegment(id="RFF", elements=[["Z16"]]))

    def test_double_quoted_guard(self, resolver):
        assert resolver.resolve_condition('ide.d7495 == "24"').value == "24"

    def test_compact_guard(self, resolver):
        condition = resolver.resolve_condition("SEQ.0.0=Z01")
        assert condition.path == EdifactPath(tag="SEQ", element=0, component=0)
        assert condition.value == "Z01"

    def test_malformed_guard(self, resolver):
        with pytest.raises(InvalidPath):
            resolver.resolve_condition("loc.d3227 != Z16")

    def test_qualifier_selects_segment(self, resolver):
        path = resolver.resolve("dtm[92].c507.d2380")
        assert path.selects(OwnedSegment(id="DTM", elements=[["92", "20260101", "102"]]))
        assert not path.selects(OwnedSegment(id="DTM", elements=[["93", "20260101", "102"]]))
