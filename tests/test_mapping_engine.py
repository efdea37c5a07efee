"""
Unit tests for forward extraction and reverse population of the mapping engine.
"""

import pytest

from edifact_errors import InvalidPath
from edifact_parser import parse_to_segments
from edifact_renderer import EdifactRenderer
from mapping_definition import MappingDefinition
from mapping_engine import MappingEngine, get_path, map_all_forward, set_path
from mig_assembler import Assembler

pytestmark = pytest.mark.unit

HEADER = "UNH+M1+UTILMD:D:11A:UN:S2.1'"


def assemble(text, mig):
    _, _, segments = parse_to_segments(text)
    return Assembler(mig).assemble([s for s in segments if s.id not in ("UNB", "UNZ")]).tree


def rendered(segments):
    renderer = EdifactRenderer()
    return [renderer.render_segment(s).rstrip("'") for s in segments]


def make_definition(fields, **meta):
    meta.setdefault("entity", "Prozessdaten")
    meta.setdefault("bo4e_type", "Prozessdaten")
    meta.setdefault("source_group", "SG4")
    return MappingDefinition.model_validate({"meta": meta, "fields": fields})


class TestJsonPaths:

    def test_get_and_set(self):
        obj = {}
        set_path(obj, "a.b.c", 1)
        assert obj == {"a": {"b": {"c": 1}}}
        assert get_path(obj, "a.b.c") == 1
        assert get_path(obj, "a.x") is None
        assert get_path({"a": 5}, "a.b") is None


class TestForward:

    @pytest.fixture
    def tree(self, utilmd_55001, utilmd_mig):
        return assemble(utilmd_55001, utilmd_mig)

    def test_transaction_scope(self, tree, mapping_set, utilmd_mig):
        engine = MappingEngine(mapping_set.transaction, mig=utilmd_mig)
        transaction = tree.find_group("SG4").repetitions[0]
        result = engine.map_forward(transaction, "SG4")
        assert result.data == {
            "prozessdaten": {
                "transaktionsId": "TX001",
                "transaktionsgrund": "Z33",
                "lieferbeginn": "2026-01-01T00:00+00:00",
                "prozessdatenEdifact": {"statuskategorie": "7", "lieferbeginnFormat": "303"},
            },
            "marktlokationen": [{"marktlokationsId": "51238696788"}],
        }
        assert result.issues == []

    def test_message_scope(self, tree, mapping_set, utilmd_mig):
        engine = MappingEngine(mapping_set.message, mig=utilmd_mig)
        result = engine.map_forward(tree.root_instance(), "")
        assert result.data["nachricht"] == {
            "kategorie": "E01",
            "dokumentennummer": "DOC55001",
            "nachrichtendatum": "2025-12-17T12:29+00:00",
            "nachrichtEdifact": {"datumsformat": "303"},
        }
        assert [p["rolle"] for p in result.data["marktpartner"]] == ["MS", "MR"]
        assert result.data["marktpartner"][0]["rollencodetyp"] == "293"

    def test_trace(self, tree, mapping_set, utilmd_mig):
        engine = MappingEngine(mapping_set.transaction, mig=utilmd_mig)
        result = engine.map_forward(tree.find_group("SG4").repetitions[0], "SG4", include_trace=True)
        by_target = {t.target_path: t for t in result.trace}
        assert by_target["transaktionsId"].source_segment == "IDE#7"
        assert by_target["transaktionsId"].mapper == "Prozessdaten"
        assert by_target["prozessdatenEdifact.statuskategorie"].value == "7"
        assert by_target["marktlokationsId"].mapper == "Marktlokation"

    def test_collection_with_single_object_is_a_list(self, mapping_set, utilmd_mig):
        tree = assemble(HEADER + "BGM+E03+DOC'NAD+MS+9900123000002::293'IDE+24+TX'UNT+5+M1'", utilmd_mig)
        engine = MappingEngine(mapping_set.message, mig=utilmd_mig)
        data = engine.map_forward(tree.root_instance(), "").data
        assert isinstance(data["marktpartner"], list)
        assert "nachrichtendatum" not in data["nachricht"]

    def test_nested_group_fields(self, mapping_set, utilmd_mig):
        text = HEADER + "BGM+E03+DOC'NAD+MS+9900123000002::293'CTA+IC+:Frau Muster'IDE+24+TX'UNT+6+M1'"
        engine = MappingEngine(mapping_set.message, mig=utilmd_mig)
        data = engine.map_forward(assemble(text, utilmd_mig).root_instance(), "").data
        assert data["marktpartner"][0]["ansprechpartner"] == {"funktion": "IC", "name": "Frau Muster"}

    def test_transform_failure_is_reported(self, mapping_set, utilmd_mig):
        text = HEADER + "BGM+E03+DOC'IDE+24+TX'DTM+92:morgen:303'UNT+5+M1'"
        engine = MappingEngine(mapping_set.transaction, mig=utilmd_mig)
        result = engine.map_forward(assemble(text, utilmd_mig).groups[0].repetitions[0], "SG4")
        assert "lieferbeginn" not in result.data["prozessdaten"]
        assert [(i.field, i.code) for i in result.issues] == [("dtm[92].c507.d2380", "TYPE_CONVERSION")]

    def test_enum_map_and_guard(self, utilmd_mig):
        definition = make_definition({
            "sts.c555.d4405": {"target": "grund", "enum_map": {"Z33": "Lieferbeginn"}},
            "dtm.c507.d2380": {"target": "ende", "when": "dtm.c507.d2005 == '93'"},
        })
        text = HEADER + "BGM+E03+DOC'IDE+24+TX'DTM+92:20260101:102'DTM+93:20261231:102'STS+7+Z33'UNT+7+M1'"
        engine = MappingEngine([definition], mig=utilmd_mig)
        result = engine.map_forward(assemble(text, utilmd_mig).groups[0].repetitions[0], "SG4")
        assert result.data["prozessdaten"] == {"grund": "Lieferbeginn", "ende": "20261231"}

    def test_unmapped_enum_value(self, utilmd_mig):
        definition = make_definition({"sts.c555.d4405": {"target": "grund", "enum_map": {"Z33": "Lieferbeginn"}}})
        text = HEADER + "BGM+E03+DOC'IDE+24+TX'STS+7+Z99'UNT+5+M1'"
        engine = MappingEngine([definition], mig=utilmd_mig)
        result = engine.map_forward(assemble(text, utilmd_mig).groups[0].repetitions[0], "SG4")
        assert result.data["prozessdaten"] == {}
        assert result.issues[0].code == "MAPPING_ERROR"

    def test_map_all_forward(self, mapping_set, utilmd_mig):
        text = HEADER + "BGM+E03+DOC'IDE+24+A'IDE+24+B'UNT+5+M1'"
        tree = assemble(text, utilmd_mig)
        engine = MappingEngine(mapping_set.transaction, mig=utilmd_mig)
        results = map_all_forward(engine, [(i, "SG4") for i in tree.groups[0].repetitions])
        assert [r.data["prozessdaten"]["transaktionsId"] for r in results] == ["A", "B"]

    def test_bad_path_fails_at_construction(self, utilmd_mig):
        with pytest.raises(InvalidPath):
            MappingEngine([make_definition({"loc.c999": "x"})], mig=utilmd_mig)


class TestReverse:

    def test_transaction_scope(self, mapping_set, utilmd_mig):
        engine = MappingEngine(mapping_set.transaction, mig=utilmd_mig)
        data = {
            "prozessdaten": {
                "transaktionsId": "TX001",
                "transaktionsgrund": "Z33",
                "lieferbeginn": "2026-01-01T00:00+00:00",
                "prozessdatenEdifact": {"statuskategorie": "7", "lieferbeginnFormat": "303"},
            },
            "marktlokationen": [{"marktlokationsId": "51238696788"}],
        }
        result = engine.map_reverse(data, "SG4")
        instance = result.instance
        assert result.issues == []
        assert rendered(instance.segments) == ["IDE+24+TX001", "DTM+92:202601010000?+00:303", "STS+7+Z33"]
        assert [g.group_id for g in instance.child_groups] == ["SG5_Z16"]
        assert rendered(instance.child_groups[0].repetitions[0].segments) == ["LOC+Z16+51238696788"]

    def test_message_scope(self, mapping_set, utilmd_mig):
        engine = MappingEngine(mapping_set.message, mig=utilmd_mig)
        data = {
            "nachricht": {"kategorie": "E01", "dokumentennummer": "DOC", "nachrichtendatum": "2025-12-17T12:29+00:00",
                          "nachrichtEdifact": {"datumsformat": "303"}},
            "marktpartner": [
                {"rolle": "MS", "rollencodenummer": "9900123000002", "rollencodetyp": "293",
                 "ansprechpartner": {"funktion": "IC", "name": "Frau Muster"}},
                {"rolle": "MR", "rollencodenummer": "9900456000001", "rollencodetyp": "293"},
            ],
        }
        instance = engine.map_reverse(data, "").instance
        assert rendered(instance.segments) == ["BGM+E01+DOC", "DTM+137:202512171229?+00:303"]
        parties = instance.child_groups[0]
        assert parties.group_id == "SG2"
        assert rendered(parties.repetitions[0].segments) == ["NAD+MS+9900123000002::293"]
        assert rendered(parties.repetitions[1].segments) == ["NAD+MR+9900456000001::293"]
        contact = parties.repetitions[0].child_groups[0].repetitions[0]
        assert rendered(contact.segments) == ["CTA+IC+:Frau Muster"]

    def test_qualified_variants_get_their_own_groups(self, mapping_set, utilmd_mig):
        engine = MappingEngine(mapping_set.transaction, mig=utilmd_mig)
        data = {
            "prozessdaten": {"transaktionsId": "TX"},
            "marktlokationen": [{"marktlokationsId": "MALO1"}, {"marktlokationsId": "MALO2"}],
            "messlokationen": [{"messlokationsId": "ME1"}],
        }
        instance = engine.map_reverse(data, "SG4").instance
        assert [(g.group_id, len(g.repetitions)) for g in instance.child_groups] == [("SG5_Z16", 2), ("SG5_Z17", 1)]

    def test_transform_failure_is_reported(self, mapping_set, utilmd_mig):
        engine = MappingEngine(mapping_set.transaction, mig=utilmd_mig)
        result = engine.map_reverse({"prozessdaten": {"transaktionsId": "TX", "lieferbeginn": "bald"}}, "SG4")
        assert [(i.field, i.code) for i in result.issues] == [("lieferbeginn", "TYPE_CONVERSION")]
        assert rendered(result.instance.segments) == ["IDE+24+TX"]

    def test_handlers_add_segments(self, mapping_set, utilmd_mig):
        engine = MappingEngine(mapping_set.transaction, mig=utilmd_mig)
        data = {"prozessdaten": {
            "transaktionsId": "TX",
            "verknuepfungen": ["bo4e://Marktlokation/MALO9"],
            "bemerkungen": [{"qualifier": "ACB", "text": "Hinweis"}],
        }}
        instance = engine.map_reverse(data, "SG4").instance
        assert rendered(instance.segments) == ["IDE+24+TX", "FTX+ACB+++Hinweis"]
        assert [g.group_id for g in instance.child_groups] == ["SG6"]
        assert rendered(instance.child_groups[0].repetitions[0].segments) == ["RFF+Z18:MALO9"]

    def test_enum_map_reverse(self, utilmd_mig):
        definition = make_definition({"sts.c555.d4405": {"target": "grund", "enum_map": {"Z33": "Lieferbeginn"}}})
        instance = MappingEngine([definition], mig=utilmd_mig).map_reverse({"prozessdaten": {"grund": "Lieferbeginn"}}, "SG4").instance
        assert rendered(instance.segments) == ["STS++Z33"]
