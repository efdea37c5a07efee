import pytest
import json
from pathlib import Path
from schema_manager import SchemaManager

pytestmark = pytest.mark.unit


def mig(description: str, format_version: str = "FV2504", message_type: str = "UTILMD") -> dict:
    return {
        "message_type": message_type,
        "format_version": format_version,
        "description": description,
        "segments": [{"id": "UNH", "counter": "0010", "status": "M"}],
        "segment_groups": [],
    }


@pytest.fixture
def schema_dir(tmp_path: Path) -> Path:
    """Create a temporary directory with base MIGs, a format-version override, PID and AHB files."""
    (tmp_path / "UTILMD_FV2504.json").write_text(json.dumps(mig("Base UTILMD MIG")))
    (tmp_path / "MSCONS_FV2504.json").write_text(json.dumps(mig("Base MSCONS MIG", message_type="MSCONS")))

    # Format-version specific MIG
    version_dir = tmp_path / "FV2510"
    version_dir.mkdir()
    (version_dir / "UTILMD_FV2504.json").write_text(json.dumps(mig("UTILMD MIG for FV2510", "FV2510")))

    (tmp_path / "pid_55001_schema.json").write_text(json.dumps({
        "pid": "55001", "beschreibung": "Anmeldung", "fields": {"SG4": {"source_group": "SG4"}},
    }))
    (tmp_path / "ahb_utilmd.json").write_text(json.dumps({"workflows": [
        {"pruefidentifikator": "55001", "fields": [{"segment_path": "BGM/C002/1001", "ahb_status": "Muss"}]},
        {"pruefidentifikator": "55201", "fields": []},
    ]}))
    (tmp_path / "ahb_single.json").write_text(json.dumps({"pid": "55002", "fields": []}))

    # Malformed schema
    (tmp_path / "malformed.json").write_text("{'invalid_json':}")

    return tmp_path


def test_schema_manager_init_and_load_base_schemas(schema_dir: Path):
    manager = SchemaManager(str(schema_dir))
    assert "UTILMD_FV2504.json" in manager._base_schemas
    assert "malformed.json" not in manager._base_schemas  # Should fail to load
    assert "pid_55001_schema.json" not in manager._base_schemas
    assert "ahb_utilmd.json" not in manager._base_schemas


def test_get_schema_base(schema_dir: Path):
    manager = SchemaManager(str(schema_dir))
    schema = manager.get_schema("UTILMD_FV2504.json")
    assert schema is not None
    assert schema.description == "Base UTILMD MIG"


def test_get_schema_format_version_specific(schema_dir: Path):
    manager = SchemaManager(str(schema_dir))
    schema = manager.get_schema("UTILMD_FV2504.json", "FV2510")
    assert schema is not None
    assert schema.description == "UTILMD MIG for FV2510"


def test_get_schema_format_version_fallback_to_base(schema_dir: Path):
    manager = SchemaManager(str(schema_dir))
    schema = manager.get_schema("MSCONS_FV2504.json", "FV2510")
    assert schema is not None
    assert schema.description == "Base MSCONS MIG"


def test_get_schema_not_found(schema_dir: Path):
    manager = SchemaManager(str(schema_dir))
    schema = manager.get_schema("non_existent_schema.json", "FV2510")
    assert schema is None


def test_get_schema_caching(schema_dir: Path):
    manager = SchemaManager(str(schema_dir))

    # First call should load from file
    schema1 = manager.get_schema("UTILMD_FV2504.json", "FV2510")
    assert "FV2510/UTILMD_FV2504.json" in manager._version_schemas_cache

    # To prove it's cached, let's delete the file and get it again
    (schema_dir / "FV2510" / "UTILMD_FV2504.json").unlink()

    schema2 = manager.get_schema("UTILMD_FV2504.json", "FV2510")
    assert schema2 is not None
    assert schema1 == schema2


def test_find_mig_by_message_type(schema_dir: Path):
    manager = SchemaManager(str(schema_dir))
    assert manager.find_mig("utilmd").description == "Base UTILMD MIG"
    assert manager.find_mig("UTILMD", "FV2510").description == "UTILMD MIG for FV2510"
    assert manager.find_mig("APERAK") is None


def test_pid_schemas_and_ahb_workflows(schema_dir: Path):
    manager = SchemaManager(str(schema_dir))
    assert manager.get_pid_schema("55001").description == "Anmeldung"
    assert manager.get_pid_schema("99999") is None
    workflow = manager.get_ahb_workflow("55001")
    assert workflow.fields[0].segment_path == "BGM/C002/1001"
    assert manager.get_ahb_workflow("55002") is not None
    assert manager.known_pids() == {"55001", "55002", "55201"}


def test_list_base_schemas(schema_dir: Path):
    manager = SchemaManager(str(schema_dir))
    base_schemas = manager.list_base_schemas()
    assert sorted(base_schemas) == ["MSCONS_FV2504.json", "UTILMD_FV2504.json"]


def test_reload_schemas(schema_dir: Path):
    manager = SchemaManager(str(schema_dir))
    (schema_dir / "MSCONS_FV2504.json").unlink()
    manager.reload_schemas()
    assert manager.list_base_schemas() == ["UTILMD_FV2504.json"]


def test_missing_base_path(tmp_path: Path):
    manager = SchemaManager(str(tmp_path / "missing"))
    assert manager.list_base_schemas() == []
    assert manager.known_pids() == set()


def test_shipped_schemas():
    manager = SchemaManager(str(Path(__file__).parent.parent / "src" / "schemas"))
    utilmd = manager.find_mig("UTILMD")
    assert utilmd is not None
    assert utilmd.format_version == "FV2504"
    assert {"55001", "55201"} <= manager.known_pids()


def test_default_base_path_is_next_to_the_module(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    manager = SchemaManager()
    assert manager.schema_base_path == Path(__file__).resolve().parent.parent / "src" / "schemas"
    assert manager.find_mig("UTILMD") is not None
