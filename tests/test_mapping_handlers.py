import pytest

from assembled_tree import AssembledGroup, AssembledGroupInstance
from bo4e_model import Bo4eUri, LinkRegistry
from edifact_errors import TypeConversion, UnknownHandler
from edifact_models import OwnedSegment
from mapping_handlers import (
    CollectFreeText,
    HandlerContext,
    HandlerRegistry,
    ResolveCrossRefs,
    TransformRegistry,
    edifact_date_to_iso,
    iso_to_edifact_date,
    loc_qualifier_to_type,
    type_to_loc_qualifier,
)

pytestmark = pytest.mark.unit


class TestTransforms:

    @pytest.mark.parametrize("edifact, iso", [
        ("20250401", "2025-04-01"),
        ("202504012200", "2025-04-01T22:00"),
        ("202504012200+00", "2025-04-01T22:00+00:00"),
        ("202504012200+0130", "2025-04-01T22:00+01:30"),
    ])
    def test_dates_in_both_directions(self, edifact, iso):
        assert edifact_date_to_iso(edifact) == iso
        assert iso_to_edifact_date(iso) == edifact

    def test_invalid_dates(self):
        with pytest.raises(TypeConversion):
            edifact_date_to_iso("2025-04-01")
        with pytest.raises(TypeConversion):
            iso_to_edifact_date("20250401")

    def test_location_qualifiers(self):
        assert loc_qualifier_to_type("Z16") == "Marktlokation"
        assert type_to_loc_qualifier("Messlokation") == "Z17"
        with pytest.raises(TypeConversion):
            loc_qualifier_to_type("Z99")

    def test_registry(self):
        registry = TransformRegistry.with_builtins()
        assert registry.apply("decimal_comma_to_point", "12,5") == "12.5"
        assert registry.invert("decimal_comma_to_point", "12.5") == "12,5"
        assert registry.get("uppercase").is_destructive
        with pytest.raises(TypeConversion):
            registry.invert("uppercase", "ABC")
        with pytest.raises(UnknownHandler):
            registry.get("missing")

    def test_custom_transform(self):
        registry = TransformRegistry()
        registry.register("double", lambda v: v * 2, lambda v: v[: len(v) // 2])
        assert registry.names() == ["double"]
        assert registry.invert("double", registry.apply("double", "ab")) == "ab"


class TestResolveCrossRefs:

    def setup_method(self):
        self.handler = ResolveCrossRefs()
        reference = AssembledGroupInstance(segments=[OwnedSegment(id="RFF", elements=[["Z18", "MALO9"]])])
        ignored = AssembledGroupInstance(segments=[OwnedSegment(id="RFF", elements=[["Z13", "55001"]])])
        self.instance = AssembledGroupInstance(
            segments=[OwnedSegment(id="IDE", elements=[["24"], ["TX"]])],
            child_groups=[AssembledGroup(group_id="SG6", repetitions=[reference, ignored])],
        )

    def test_forward_collects_links(self):
        links = LinkRegistry()
        source = Bo4eUri.new("Prozessdaten", "TX")
        context = HandlerContext("Prozessdaten", "Prozessdaten", links, source)
        result = self.handler.forward(self.instance, context)
        assert result == {"verknuepfungen": ["bo4e://Marktlokation/MALO9"]}
        assert links.get_links_from(source) == [Bo4eUri.new("Marktlokation", "MALO9")]

    def test_forward_without_references(self):
        context = HandlerContext("Prozessdaten", "Prozessdaten")
        assert self.handler.forward(AssembledGroupInstance(), context) == {}

    def test_reverse_builds_rff_segments(self):
        context = HandlerContext("Prozessdaten", "Prozessdaten")
        obj = {"verknuepfungen": ["bo4e://Messlokation/ME1", "not-a-link", "bo4e://Unbekannt/X"]}
        segments = self.handler.reverse(obj, context)
        assert len(segments) == 1
        assert segments[0].id == "RFF"
        assert segments[0].elements == [["Z19", "ME1"]]


class TestCollectFreeText:

    def test_forward_and_reverse(self):
        handler = CollectFreeText()
        context = HandlerContext("Prozessdaten", "Prozessdaten")
        instance = AssembledGroupInstance(segments=[
            OwnedSegment(id="FTX", elements=[["ACB"], [""], [""], ["Teil eins, ", "Teil zwei"]]),
        ])
        result = handler.forward(instance, context)
        assert result == {"bemerkungen": [{"qualifier": "ACB", "texte": ["Teil eins, ", "Teil zwei"]}]}

        segments = handler.reverse(result, context)
        assert segments[0].elements == [["ACB"], [""], [""], ["Teil eins, ", "Teil zwei"]]

    def test_function_code_and_components_are_kept(self):
        handler = CollectFreeText()
        context = HandlerContext("Prozessdaten", "Prozessdaten")
        original = OwnedSegment(id="FTX", elements=[["ACB"], ["1"], ["Z01"], ["a", "", "c", "d", "e"]])
        result = handler.forward(AssembledGroupInstance(segments=[original]), context)
        assert result["bemerkungen"][0] == {
            "qualifier": "ACB",
            "funktion": "1",
            "code": "Z01",
            "texte": ["a", "", "c", "d", "e"],
        }
        assert handler.reverse(result, context)[0].elements == original.elements

    def test_long_text_is_split(self):
        handler = CollectFreeText()
        segments = handler.reverse({"bemerkungen": [{"qualifier": "ACB", "text": "x" * 600}]},
                                   HandlerContext("P", "P"))
        assert [len(c) for c in segments[0].elements[3]] == [512, 88]


class TestHandlerRegistry:

    def test_builtins(self):
        registry = HandlerRegistry.with_builtins()
        assert registry.names() == ["collect_free_text", "resolve_cross_refs"]
        assert len(registry) == 2
        with pytest.raises(UnknownHandler):
            registry.get("missing")
