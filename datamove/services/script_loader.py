"""Load stage: script file to object sets, working directories and file names."""

import json
import logging
from pathlib import Path
from typing import Optional

from .query_builder import parse_query_string
from ..constants import CSV_SOURCE_SUB_DIRECTORY, CSV_TARGET_SUB_DIRECTORY, DEFAULT_ENCODING
from ..errors import ConfigurationError
from ..models.config import DataMoveConfig
from ..models.script import ExtraData, ObjectSet, Operation, Script, ScriptObject

logger = logging.getLogger(__name__)

SOURCE_ROLES = ("source",)


def load_script(config: DataMoveConfig) -> Script:
    """
    Read and normalize the script file.

    Bare top-level objects become an implicit first object set. Sets get
    1-based indices and their working directories; duplicate and excluded
    objects are dropped.

    Raises:
        ConfigurationError: If the file is missing or invalid
    """
    path = config.resolved_config_path
    if not path.exists():
        raise ConfigurationError(f"Script file not found: {path}")

    try:
        data = json.loads(path.read_text(encoding=DEFAULT_ENCODING))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Script file {path.name} is not valid JSON: {e}") from e

    try:
        script = Script.from_dict(data)
    except ValueError as e:
        raise ConfigurationError(f"Script file {path.name} is invalid: {e}") from e

    normalize_script(script, config.resolved_work_dir)
    logger.info(
        f"Loaded {sum(len(s.objects) for s in script.object_sets)} objects "
        f"in {len(script.object_sets)} object set(s) from {path.name}"
    )
    return script


def normalize_script(script: Script, work_dir: Path) -> Script:
    if script.objects:
        implicit_set = ObjectSet()
        for obj in script.objects:
            implicit_set.add_object(obj)
        script.object_sets.insert(0, implicit_set)
        script.objects = []

    for index, object_set in enumerate(script.object_sets, start=1):
        object_set.index = index
        create_working_directories(object_set, work_dir)
        load_object_set(object_set)

    return script


def create_working_directories(object_set: ObjectSet, work_dir: Path) -> None:
    set_dir = Path(work_dir) / f"object-set-{object_set.index}"
    object_set.source_dir = set_dir / CSV_SOURCE_SUB_DIRECTORY
    object_set.target_dir = set_dir / CSV_TARGET_SUB_DIRECTORY
    object_set.source_dir.mkdir(parents=True, exist_ok=True)
    object_set.target_dir.mkdir(parents=True, exist_ok=True)


def load_object_set(object_set: ObjectSet) -> None:
    """Parse every query and keep the first non-excluded object per entity."""
    kept = []
    seen = set()

    for obj in object_set.objects:
        obj.object_set = object_set
        obj.extra = ExtraData(query=parse_query_string(obj.query))
        name = obj.name

        if not name:
            raise ConfigurationError(f"Cannot parse query: {obj.query!r}", object_set_index=object_set.index)

        if obj.excluded:
            logger.info(f"Object set {object_set.index}: {name} is excluded")
            if name not in object_set.excluded_objects:
                object_set.excluded_objects.append(name)
            continue

        if name in seen:
            logger.warning(f"Object set {object_set.index}: duplicate object {name} ignored")
            continue

        validate_object(obj)
        seen.add(name)
        kept.append(obj)

    object_set.objects = kept


def validate_object(obj: ScriptObject) -> None:
    """Checks that need no endpoint access."""
    index = obj.object_set.index if obj.object_set else None

    if obj.delete_query:
        delete_query = parse_query_string(obj.delete_query)
        if delete_query.object_name != obj.name:
            raise ConfigurationError(
                f"Delete query entity {delete_query.object_name or '?'} does not match {obj.name}",
                object_set_index=index,
                object_name=obj.name,
            )
        obj.extra.delete_query = delete_query

    if obj.operation == Operation.UPDATE and obj.delete_old_data and not obj.delete_query:
        raise ConfigurationError(
            "deleteOldData on an Update object requires a deleteQuery",
            object_set_index=index,
            object_name=obj.name,
        )


def get_working_file_name(object_set_index: int, object_name: str, operation: Operation, role: str) -> str:
    """Deterministic name of a working file, e.g. ``1_Account_upsert_source.csv``."""
    return f"{object_set_index}_{object_name}_{operation.value.lower()}_{role}.csv"


def get_working_file_path(obj: ScriptObject, role: str, operation: Optional[Operation] = None) -> Path:
    """Path of a working file; source-side files live in the set's source directory."""
    object_set = obj.object_set
    directory = object_set.source_dir if role in SOURCE_ROLES else object_set.target_dir
    return directory / get_working_file_name(object_set.index, obj.name, operation or obj.operation, role)
