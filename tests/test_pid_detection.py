import pytest

from edifact_errors import PidDetectionFailed, UnknownPid
from edifact_parser import parse_to_segments, split_messages
from mig_assembler import Assembler
from pid_detection import PidRule, detect_pid, filter_mig_for_pid, filter_tree_for_pid

pytestmark = pytest.mark.unit


def segments_of(text):
    return parse_to_segments(text)[2]


class TestDetectPid:

    def test_rff_z13_wins(self):
        segments = segments_of("BGM+E03+DOC'STS+7+Z33'RFF+Z13:55001'")
        assert detect_pid(segments) == "55001"

    def test_document_code_and_reason(self):
        assert detect_pid(segments_of("BGM+E01+DOC'IDE+24+TX'STS+7+Z34'")) == "55002"

    def test_document_code_alone(self):
        assert detect_pid(segments_of("BGM+E03+DOC'IDE+24+TX'")) == "55201"

    def test_reason_without_matching_rule_falls_back_to_document(self):
        assert detect_pid(segments_of("BGM+E03+DOC'STS+7+Z99'")) == "55201"

    def test_from_assembled_tree(self, utilmd_55001, utilmd_mig):
        _, _, segments = parse_to_segments(utilmd_55001)
        tree = Assembler(utilmd_mig).assemble_message(split_messages(segments).messages[0]).tree
        assert detect_pid(tree) == "55001"

    def test_missing_bgm(self):
        with pytest.raises(PidDetectionFailed):
            detect_pid(segments_of("UNH+1+UTILMD'IDE+24+TX'"))

    def test_unknown_document_code(self):
        with pytest.raises(UnknownPid) as exc_info:
            detect_pid(segments_of("BGM+Z99+DOC'"))
        assert exc_info.value.code == "UNKNOWN_PID"

    def test_known_pids_restrict_result(self):
        with pytest.raises(UnknownPid):
            detect_pid(segments_of("BGM+E03+DOC'"), known_pids={"55001"})

    def test_custom_rules(self):
        rules = [PidRule(document_code="E03", reason_code="Z33", pid="12345")]
        assert detect_pid(segments_of("BGM+E03'STS+7+Z33'"), rules=rules) == "12345"


class TestFilterTreeForPid:

    def setup_method(self):
        self.text = (
            "UNH+M1+UTILMD:D:11A:UN:S2.1'BGM+E01+DOC'DTM+137:20251217:102'NAD+MS+9900123000002::293'"
            "IDE+24+TX'LOC+Z16+MALO'LOC+Z18+NELO'NAD+Z09+X'UNT+9+M1'"
        )

    def assemble(self, mig):
        _, _, segments = parse_to_segments(self.text)
        return Assembler(mig).assemble(segments).tree

    def test_drops_undeclared_groups(self, utilmd_mig, pid_55001_schema):
        tree = self.assemble(utilmd_mig)
        transaction = tree.find_group("SG4").repetitions[0]
        assert [g.group_id for g in transaction.child_groups] == ["SG5_Z16", "SG5_Z18", "SG12"]

        filtered = filter_tree_for_pid(tree, pid_55001_schema)
        kept = filtered.find_group("SG4").repetitions[0]
        assert [g.group_id for g in kept.child_groups] == ["SG5_Z16"]
        assert [g.group_id for g in filtered.groups] == ["SG2", "SG4"]

    def test_keeps_declared_root_segments(self, utilmd_mig, pid_55001_schema):
        filtered = filter_tree_for_pid(self.assemble(utilmd_mig), pid_55001_schema)
        assert [s.id for s in filtered.segments_before_groups] == ["UNH", "BGM", "DTM"]
        assert [s.id for s in filtered.segments_after_groups] == ["UNT"]

    def test_input_tree_is_untouched(self, utilmd_mig, pid_55001_schema):
        tree = self.assemble(utilmd_mig)
        filter_tree_for_pid(tree, pid_55001_schema)
        assert len(tree.find_group("SG4").repetitions[0].child_groups) == 3


class TestFilterMigForPid:

    def test_keeps_only_used_numbers(self, utilmd_mig):
        numbers = {"00001", "00002", "00020", "00030", "00099"}
        filtered = filter_mig_for_pid(utilmd_mig, numbers)
        assert [s.id for s in filtered.segments] == ["UNH", "BGM", "UNT"]
        assert [g.key for g in filtered.segment_groups] == ["SG4"]
        transaction = filtered.segment_groups[0]
        assert [s.id for s in transaction.segments] == ["IDE"]
        assert [g.key for g in transaction.nested_groups] == ["SG5_Z16"]

    def test_original_mig_is_untouched(self, utilmd_mig):
        filter_mig_for_pid(utilmd_mig, {"00001"})
        assert len(utilmd_mig.segment_groups) == 2
        assert len(utilmd_mig.find_group("SG4").nested_groups) == 6
