"""Module settings: validation, registration and catalog loading."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

import db
import problem_bank
from errors import ConfigurationError, NotFoundError
from schemas import ModuleSettings, ProblemMode, ToolKind

logger = logging.getLogger(__name__)


class ModuleCatalog:
    """Loads module definitions from a JSON or YAML list and syncs them to storage."""

    REQUIRED_FIELDS = ("module_id", "course_id", "logic_expressions")

    def __init__(self, path: str | Path, *, auto_sync: bool = True) -> None:
        self.path = Path(path)
        self._modules: List[ModuleSettings] = []
        self._load(auto_sync=auto_sync)

    # ------------------------------------------------------------------
    # loading & validation
    # ------------------------------------------------------------------
    def _read(self) -> Any:
        if not self.path.exists():
            raise FileNotFoundError(f"Module catalog file not found: {self.path}")
        text = self.path.read_text(encoding="utf-8")
        if self.path.suffix.lower() in {".yml", ".yaml"}:
            return yaml.safe_load(text)
        return json.loads(text)

    def _load(self, *, auto_sync: bool) -> None:
        raw = self._read()
        if not isinstance(raw, list):
            raise ConfigurationError("Module catalog root must be a list")

        modules: List[ModuleSettings] = []
        seen_ids: set[int] = set()
        for entry in raw:
            settings = validate_module(entry)
            if settings.module_id in seen_ids:
                raise ConfigurationError(f"Duplicate module id detected: {settings.module_id}")
            seen_ids.add(settings.module_id)
            modules.append(settings)

        self._modules = modules
        if auto_sync:
            for settings in modules:
                register_module(settings)
            logger.info("Synced %d modules from %s", len(modules), self.path)

    @property
    def modules(self) -> List[ModuleSettings]:
        return list(self._modules)


def validate_module(entry: Any) -> ModuleSettings:
    """Turn a raw module definition into :class:`ModuleSettings`."""

    if not isinstance(entry, dict):
        raise ConfigurationError("Each module must be an object")
    for field in ModuleCatalog.REQUIRED_FIELDS:
        if field not in entry or entry[field] in (None, ""):
            raise ConfigurationError(f"Module {entry.get('module_id')} missing required field '{field}'")

    try:
        module_id = int(entry["module_id"])
        course_id = int(entry["course_id"])
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Module {entry.get('module_id')} ids must be integers") from exc

    tool_kind = ToolKind.parse(entry.get("tool_kind") or entry.get("logictool") or ToolKind.TRUTH_TABLE)
    mode = ProblemMode.parse(entry.get("mode") or ProblemMode.ASSIGNMENT)
    logic_expressions = str(entry["logic_expressions"])

    if not problem_bank.parse_problem_list(logic_expressions):
        raise ConfigurationError(f"Module {module_id} defines no problems")

    return ModuleSettings(
        module_id=module_id,
        course_id=course_id,
        name=str(entry.get("name") or ""),
        intro=str(entry.get("intro") or ""),
        mode=mode,
        tool_kind=tool_kind,
        logic_expressions=logic_expressions,
    )


def _settings_from_record(record: Dict[str, Any]) -> ModuleSettings:
    return ModuleSettings(
        module_id=record["module_id"],
        course_id=record["course_id"],
        name=record.get("name") or "",
        intro=record.get("intro") or "",
        mode=ProblemMode.parse(record["mode"]),
        tool_kind=ToolKind.parse(record["tool_kind"]),
        logic_expressions=record["logic_expressions"],
        created_at=record.get("created_at"),
        modified_at=record.get("modified_at"),
    )


def register_module(settings: ModuleSettings) -> ModuleSettings:
    """Create or update the stored settings for ``settings.module_id``."""

    validate_module(settings.model_dump(mode="json"))
    db.upsert_module(settings.model_dump(mode="json"))
    logger.info("Registered module %s for course %s", settings.module_id, settings.course_id)
    return get_module(settings.module_id)


def get_module(module_id: int) -> ModuleSettings:
    record = db.get_module(module_id)
    if record is None:
        raise NotFoundError(f"Module {module_id} not found")
    return _settings_from_record(record)


def list_modules(course_id: Optional[int] = None) -> List[ModuleSettings]:
    return [_settings_from_record(record) for record in db.list_modules(course_id)]


def delete_module(module_id: int) -> bool:
    """Remove the module settings; banks and attempts are kept as history."""

    removed = db.delete_module(module_id)
    if removed:
        logger.info("Deleted module %s", module_id)
    return removed


def load_catalog(path: str | Path, *, sync: bool = True) -> List[ModuleSettings]:
    """Return validated modules from disk, syncing them into the database."""
    return ModuleCatalog(path, auto_sync=sync).modules
