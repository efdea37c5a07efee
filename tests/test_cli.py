import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

import main as cli
from main import main

pytestmark = pytest.mark.integration


@pytest.fixture
def run(schema_dir, mapping_dir):
    def _run(*argv):
        return main(["--schemas", str(schema_dir), "--mappings", str(mapping_dir), *argv])
    return _run


def test_convert_and_reverse(run, tmp_path, minimal_utilmd, capsys):
    edi = tmp_path / "in.edi"
    edi.write_text(minimal_utilmd, encoding="utf-8")

    assert run("convert", str(edi)) == 0
    out = tmp_path / "in.json"
    data = json.loads(out.read_text(encoding="utf-8"))
    assert data["messages"][0]["transactions"][0]["prozessdaten"]["transaktionsId"] == "TX001"
    assert "JSON output saved to" in capsys.readouterr().out

    target = tmp_path / "back.edi"
    assert run("reverse", str(out), str(target)) == 0
    assert target.read_text(encoding="utf-8") == minimal_utilmd


def test_convert_with_output_name(run, tmp_path, minimal_utilmd):
    edi = tmp_path / "in.edi"
    edi.write_text(minimal_utilmd, encoding="utf-8")
    assert run("convert", str(edi), str(tmp_path / "named.json"), "--trace") == 0
    data = json.loads((tmp_path / "named.json").read_text(encoding="utf-8"))
    assert data["messages"][0]["trace"]


def test_convert_batch(run, tmp_path, minimal_utilmd, two_message_utilmd, capsys):
    files = []
    for name, text in [("a.edi", minimal_utilmd), ("b.edi", two_message_utilmd), ("c.edi", "garbage")]:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        files.append(str(path))

    assert run("convert", *files, "--workers", "2") == 1
    assert (tmp_path / "a.json").exists()
    assert (tmp_path / "b.json").exists()
    assert not (tmp_path / "c.json").exists()
    assert "FAILED [UNTERMINATED_SEGMENT]" in capsys.readouterr().out


def test_roundtrip(run, tmp_path, minimal_utilmd, capsys):
    edi = tmp_path / "in.edi"
    edi.write_text(minimal_utilmd + "\n", encoding="utf-8")
    assert run("roundtrip", str(edi)) == 0
    assert "byte-identical" in capsys.readouterr().out


def test_validate(run, tmp_path, utilmd_55001, capsys):
    edi = tmp_path / "in.edi"
    edi.write_text(utilmd_55001, encoding="utf-8")
    assert run("validate", str(edi)) == 0
    assert "EDIFACT is valid (Full, PID 55001)" in capsys.readouterr().out

    edi.write_text(utilmd_55001.replace("UNT+11", "UNT+9"), encoding="utf-8")
    assert run("validate", str(edi), "--level", "structure") == 2
    assert "[STR009]" in capsys.readouterr().out


def test_validate_json(run, tmp_path, utilmd_55001, capsys):
    edi = tmp_path / "in.edi"
    edi.write_text(utilmd_55001, encoding="utf-8")
    assert run("validate", str(edi), "--pid", "55001", "--json") == 0
    report = json.loads(capsys.readouterr().out)
    assert report["valid"] is True
    assert report["pruefidentifikator"] == "55001"


def test_invalid_level(run, tmp_path, utilmd_55001, capsys):
    edi = tmp_path / "in.edi"
    edi.write_text(utilmd_55001, encoding="utf-8")
    assert run("validate", str(edi), "--level", "snip3") == 1
    assert "Unknown validation level" in capsys.readouterr().out


@pytest.mark.parametrize("command", ["convert", "reverse", "validate", "roundtrip"])
def test_missing_input(run, tmp_path, command, capsys):
    assert run(command, str(tmp_path / "missing.edi")) == 1
    assert "Input file not found" in capsys.readouterr().out


def test_validate_without_report(run, tmp_path, utilmd_55001, capsys):
    edi = tmp_path / "in.edi"
    edi.write_text(utilmd_55001, encoding="utf-8")
    with patch.object(cli.EdifactValidationService, "validate_edifact", return_value=None):
        assert run("validate", str(edi), "--json") == 1
    assert "Validation produced no report" in capsys.readouterr().out


def test_default_paths_do_not_depend_on_the_working_directory(tmp_path, minimal_utilmd, monkeypatch):
    edi = tmp_path / "in.edi"
    edi.write_text(minimal_utilmd, encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    assert main(["roundtrip", str(edi)]) == 0
