import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, ValidationError

from mig_schema_models import AhbWorkflow, MigSchema, PidSchema

logger = logging.getLogger(__name__)

PID_SCHEMA_PREFIX = "pid_"
AHB_PREFIX = "ahb_"
DEFAULT_SCHEMA_PATH = Path(__file__).resolve().parent / "schemas"


class SchemaManager:
    """
    Loads MIG, PID and AHB schema files from the local filesystem.

    File names decide the kind: ``pid_<pid>_schema.json`` holds a PID schema,
    ``ahb_<...>.json`` an AHB workflow (or a ``workflows`` list), anything
    else a MIG. A MIG placed in ``<schema_base_path>/<format_version>/``
    overrides the base file of the same name for that format version.
    """

    def __init__(self, schema_base_path: Optional[str] = None):
        self.schema_base_path = Path(schema_base_path) if schema_base_path else DEFAULT_SCHEMA_PATH
        self._base_schemas: Dict[str, MigSchema] = {}
        self._version_schemas_cache: Dict[str, MigSchema] = {}
        self._pid_schemas: Dict[str, PidSchema] = {}
        self._ahb_workflows: Dict[str, AhbWorkflow] = {}
        self._load_base_schemas()

    def _read(self, path: Path, model: type) -> Optional[BaseModel]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return model.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Failed to load schema {path.name}: {e}")
            return None

    def _load_base_schemas(self):
        """Load base schemas from the schema directory."""
        if not self.schema_base_path.exists():
            logger.warning(f"Schema base path does not exist: {self.schema_base_path}")
            return

        logger.info(f"Loading EDIFACT schemas from: {self.schema_base_path}")

        for schema_file in sorted(self.schema_base_path.glob("*.json")):
            if schema_file.name.startswith(PID_SCHEMA_PREFIX):
                schema = self._read(schema_file, PidSchema)
                if schema is not None:
                    self._pid_schemas[schema.pid] = schema
                    logger.info(f"Loaded PID schema: {schema_file.name}")
            elif schema_file.name.startswith(AHB_PREFIX):
                self._load_ahb_file(schema_file)
            else:
                schema = self._read(schema_file, MigSchema)
                if schema is not None:
                    self._base_schemas[schema_file.name] = schema
                    logger.info(f"Loaded MIG schema: {schema_file.name}")

    def _load_ahb_file(self, path: Path):
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            entries = data.get("workflows", [data]) if isinstance(data, dict) else data
            for entry in entries:
                workflow = AhbWorkflow.model_validate(entry)
                self._ahb_workflows[workflow.pid] = workflow
            logger.info(f"Loaded AHB file: {path.name} ({len(entries)} workflow(s))")
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Failed to load AHB file {path.name}: {e}")

    def get_schema(self, schema_name: str, format_version: Optional[str] = None) -> Optional[MigSchema]:
        """
        Get a MIG by file name. A format-version directory takes precedence over the base file.

        Args:
            schema_name: Name of the schema file (e.g., "UTILMD_FV2504.json")
            format_version: Optional format version (e.g., "FV2504")

        Returns:
            MigSchema or None if not found
        """
        if format_version:
            cache_key = f"{format_version}/{schema_name}"
            if cache_key in self._version_schemas_cache:
                return self._version_schemas_cache[cache_key]

            version_path = self.schema_base_path / format_version / schema_name
            if version_path.exists():
                schema = self._read(version_path, MigSchema)
                if schema is not None:
                    self._version_schemas_cache[cache_key] = schema
                    logger.info(f"Loaded {format_version} schema: {schema_name}")
                    return schema

        if schema_name in self._base_schemas:
            return self._base_schemas[schema_name]

        logger.error(f"Schema not found: {schema_name}" + (f" for {format_version}" if format_version else ""))
        return None

    def get_base_schema(self, schema_name: str) -> Optional[MigSchema]:
        return self._base_schemas.get(schema_name)

    def find_mig(self, message_type: str, format_version: Optional[str] = None) -> Optional[MigSchema]:
        """First MIG for a message type, preferring an exact format-version match."""
        candidates = [(name, s) for name, s in self._base_schemas.items() if s.message_type.upper() == message_type.upper()]
        if format_version:
            for name, schema in candidates:
                if schema.format_version == format_version:
                    return self.get_schema(name, format_version)
            if candidates:
                return self.get_schema(candidates[0][0], format_version)
        return candidates[0][1] if candidates else None

    def get_pid_schema(self, pid: str) -> Optional[PidSchema]:
        return self._pid_schemas.get(pid)

    def get_ahb_workflow(self, pid: str) -> Optional[AhbWorkflow]:
        return self._ahb_workflows.get(pid)

    def known_pids(self) -> Set[str]:
        return set(self._pid_schemas) | set(self._ahb_workflows)

    def list_base_schemas(self) -> List[str]:
        """List available MIG schema names."""
        return list(self._base_schemas.keys())

    def reload_schemas(self):
        """Reload all schemas from filesystem."""
        self._base_schemas.clear()
        self._version_schemas_cache.clear()
        self._pid_schemas.clear()
        self._ahb_workflows.clear()
        self._load_base_schemas()
