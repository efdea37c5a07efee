# FILE: tests/conftest.py

import pytest
import json
import sys
import os
import logging
from pathlib import Path

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from mig_schema_models import AhbWorkflow, MigSchema, PidSchema
from mapping_definition import MappingSet
from schema_manager import SchemaManager
from conversion_service import ConversionService

PROJECT_ROOT = Path(__file__).parent.parent
SCHEMA_DIR = PROJECT_ROOT / "src" / "schemas"
MAPPING_DIR = PROJECT_ROOT / "src" / "mappings" / "utilmd"

# ==============================================================================
# PYTEST CONFIGURATION & HOOKS
# ==============================================================================

def pytest_configure(config):
    """Configure pytest settings and markers."""
    config.addinivalue_line("markers", "unit: Pure unit tests with no external dependencies.")
    config.addinivalue_line("markers", "integration: Tests that run the whole pipeline on the shipped schemas and mappings.")

@pytest.fixture(scope="session", autouse=True)
def setup_test_environment(pytestconfig):
    """Set up test environment with logging configuration."""
    log_level = pytestconfig.getoption("log_cli_level") or "INFO"
    logging.basicConfig(
        level=log_level.upper(),
        format="[%(asctime)s] [%(levelname)s] [%(name)s:%(lineno)d] - %(message)s",
        stream=sys.stdout,
        force=True,
    )
    logging.info(f"Test logging configured with level: {log_level.upper()}")
    yield

# ==============================================================================
# SCHEMA AND MAPPING FIXTURES
# ==============================================================================

@pytest.fixture(scope="session")
def schema_dir() -> Path:
    if not SCHEMA_DIR.exists():
        pytest.skip(f"Schema directory not found at: {SCHEMA_DIR}")
    return SCHEMA_DIR

@pytest.fixture(scope="session")
def mapping_dir() -> Path:
    if not MAPPING_DIR.exists():
        pytest.skip(f"Mapping directory not found at: {MAPPING_DIR}")
    return MAPPING_DIR

@pytest.fixture(scope="session")
def utilmd_mig(schema_dir: Path) -> MigSchema:
    """The UTILMD FV2504 MIG, loaded directly from its file."""
    with open(schema_dir / "UTILMD_FV2504.json", 'r', encoding='utf-8') as f:
        return MigSchema.model_validate(json.load(f))

@pytest.fixture(scope="session")
def pid_55001_schema(schema_dir: Path) -> PidSchema:
    with open(schema_dir / "pid_55001_schema.json", 'r', encoding='utf-8') as f:
        return PidSchema.model_validate(json.load(f))

@pytest.fixture(scope="session")
def ahb_55001(schema_dir: Path) -> AhbWorkflow:
    with open(schema_dir / "ahb_utilmd.json", 'r', encoding='utf-8') as f:
        data = json.load(f)
    return next(AhbWorkflow.model_validate(w) for w in data["workflows"] if w["pruefidentifikator"] == "55001")

@pytest.fixture(scope="session")
def schema_manager(schema_dir: Path) -> SchemaManager:
    return SchemaManager(str(schema_dir))

@pytest.fixture(scope="session")
def mapping_set(mapping_dir: Path) -> MappingSet:
    return MappingSet.load(mapping_dir)

@pytest.fixture
def conversion_service(mapping_set: MappingSet, schema_manager: SchemaManager) -> ConversionService:
    return ConversionService(mapping_set, schema_manager=schema_manager)

# ==============================================================================
# EDIFACT TEST DATA
# ==============================================================================

@pytest.fixture(scope="session")
def minimal_utilmd() -> str:
    """One message, one transaction with one Marktlokation."""
    return (
        "UNA:+.? '"
        "UNB+UNOC:3+S+R+251217:1229+REF'"
        "UNH+M1+UTILMD:D:11A:UN:S2.1'"
        "BGM+E03+DOC'"
        "IDE+24+TX001'"
        "LOC+Z16+MALO001'"
        "UNT+5+M1'"
        "UNZ+1+REF'"
    )

@pytest.fixture(scope="session")
def two_message_utilmd() -> str:
    """Two messages in one interchange, each with its own transaction."""
    return (
        "UNA:+.? '"
        "UNB+UNOC:3+S+R+251217:1229+REF2'"
        "UNH+001+UTILMD:D:11A:UN:S2.1'"
        "BGM+E03+DOC1'"
        "IDE+24+001'"
        "UNT+4+001'"
        "UNH+002+UTILMD:D:11A:UN:S2.1'"
        "BGM+E03+DOC2'"
        "IDE+24+002'"
        "UNT+4+002'"
        "UNZ+2+REF2'"
    )

@pytest.fixture(scope="session")
def utilmd_55001() -> str:
    """
    A complete Anmeldung (PID 55001) that is valid at every level:
    sender and receiver, one transaction with start date, reason,
    Marktlokation and PID reference.
    """
    return "\n".join([
        "UNA:+.? '",
        "UNB+UNOC:3+9900123000002:500+9900456000001:500+251217:1229+REF55001'",
        "UNH+M1+UTILMD:D:11A:UN:S2.1'",
        "BGM+E01+DOC55001'",
        "DTM+137:202512171229?+00:303'",
        "NAD+MS+9900123000002::293'",
        "NAD+MR+9900456000001::293'",
        "IDE+24+TX001'",
        "DTM+92:202601010000?+00:303'",
        "STS+7+Z33'",
        "LOC+Z16+51238696788'",
        "RFF+Z13:55001'",
        "UNT+11+M1'",
        "UNZ+1+REF55001'",
    ])
