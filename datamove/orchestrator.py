"""Data-move orchestrator - drives the staged pipeline for every object set."""

import json
import logging
import math
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from .constants import (
    COMPLEX_EXTERNAL_ID_SEPARATOR,
    FIELD_KEYWORDS,
    ID_FIELD,
    REPORT_FILE_PREFIX,
)
from .endpoints.base import BaseEndpoint
from .endpoints.csv_endpoint import CsvFileEndpoint
from .endpoints.salesforce import SalesforceEndpoint
from .errors import ConfigurationError, DataMoveError, SchemaError, TransportError
from .models.config import DataMoveConfig, EndpointConfig
from .models.describe import SObjectDescribe
from .models.job import IngestJobInfo, JobState, QueryProgress, WriteOperation
from .models.run import DataMoveRun, DataMoveStep, RunStatus
from .models.script import ObjectSet, Operation, Script, ScriptObject, create_readonly_object
from .services.csv_files import read_csv_rows, write_csv_rows
from .services.dependency import compute_objects_order, find_referencing_objects
from .services.engine_selector import suggest_query_engine
from .services.query_builder import (
    build_external_id_clauses,
    build_in_clause,
    compose_object_query,
    compose_query_string,
    get_external_id_value,
    is_relationship_field,
    map_external_id,
    map_field,
    map_object_name,
    map_where_clause,
    to_direct_field,
    to_relationship_field,
)
from .services.schema_registry import (
    COMPOUND_FIELD_TYPES,
    SchemaRegistry,
    default_external_id,
    expand_field_keywords,
)
from .services.script_loader import get_working_file_path, load_script
from .services.transfer import DataTransfer

logger = logging.getLogger(__name__)

COUNT_FIELD = f"COUNT({ID_FIELD})"
READONLY_FIELD = "is read-only in the target schema"


def create_endpoint(config: EndpointConfig) -> BaseEndpoint:
    """Create the endpoint client described by an endpoint configuration."""
    if config.is_csv:
        return CsvFileEndpoint(config.label, config.csv_dir)
    if not config.instance_url or not config.access_token:
        raise ConfigurationError("No instance URL or access token configured", endpoint_label=config.label)
    return SalesforceEndpoint(config.label, config.instance_url, config.access_token, config.api_version)


def _unique(items: List[str]) -> List[str]:
    return list(dict.fromkeys(items))


class DataMoveOrchestrator:
    """
    Orchestrates a complete data move.

    Object sets are processed one at a time, and every stage of a set
    completes before the next begins:
    - Prepare: parse queries, describe schemas, pick external ids, filter fields
    - Resolve references: add read-only objects for undeclared parents
    - Finalize: relationship fields, target spelling, master promotion
    - Order: write order and its reverse for deletes
    - Count: source, target and to-delete record counts
    - Delete: remove old or obsolete target records
    - Query master objects, then child objects from source and from target
    - Write: inserts and updates in write order
    """

    def __init__(
        self,
        config: DataMoveConfig,
        source: Optional[BaseEndpoint] = None,
        target: Optional[BaseEndpoint] = None,
        schema_registry: Optional[SchemaRegistry] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Run configuration
            source: Source endpoint; created from the configuration when omitted
            target: Target endpoint; created from the configuration when omitted
            schema_registry: Describe cache shared across runs
        """
        self.config = config
        self.source = source
        self.target = target
        self._owned_endpoints: List[BaseEndpoint] = []
        self.registry = schema_registry or SchemaRegistry()
        self.transfer = DataTransfer(config.engine, config.report_level)

        # Runtime state
        self.script: Optional[Script] = None
        self.run: Optional[DataMoveRun] = None

    async def run_data_move(self, run: Optional[DataMoveRun] = None) -> DataMoveRun:
        """
        Run the complete data move.

        Returns:
            DataMoveRun with per-stage steps and statistics
        """
        self.run = run or DataMoveRun()
        self.run.config_path = str(self.config.resolved_config_path)
        self.run.started_at = datetime.utcnow()
        self.run.status = RunStatus.LOADING

        try:
            logger.info("=== STAGE 1: LOAD ===")
            self._run_load()
            self._create_endpoints()

            for object_set in self.script.object_sets:
                await self._process_object_set(object_set)

            self.run.status = RunStatus.COMPLETED
            logger.info("=== DATA MOVE COMPLETED ===")

        except Exception as e:
            logger.error(f"Data move failed: {e}")
            error = {
                "stage": self.run.status.value,
                "error": str(e),
                "timestamp": datetime.utcnow().isoformat(),
            }
            if isinstance(e, DataMoveError):
                error.update({
                    "object_set_index": e.object_set_index,
                    "object_name": e.object_name,
                    "endpoint_label": e.endpoint_label,
                })
            self.run.status = RunStatus.FAILED
            self.run.errors.append(error)

        finally:
            self.run.completed_at = datetime.utcnow()
            self.run.update_totals()
            self._save_report()
            await self._close_endpoints()

        return self.run

    def _run_load(self) -> None:
        step = self.run.add_step(name="Load script")
        step.status = RunStatus.LOADING
        step.started_at = datetime.utcnow()
        try:
            self.script = load_script(self.config)
            step.records_processed = sum(len(s.objects) for s in self.script.object_sets)
            step.status = RunStatus.COMPLETED
        except DataMoveError as e:
            step.status = RunStatus.FAILED
            step.errors.append({"error": str(e)})
            raise
        finally:
            step.completed_at = datetime.utcnow()

    def _create_endpoints(self) -> None:
        if self.source is None:
            self.source = create_endpoint(self.config.source)
            self._owned_endpoints.append(self.source)
        if self.target is None:
            self.target = create_endpoint(self.config.target)
            self._owned_endpoints.append(self.target)
        if not self.source.supports_describe and not self.target.supports_describe:
            raise ConfigurationError("At least one endpoint must provide entity schemas")

    async def _close_endpoints(self) -> None:
        for endpoint in self._owned_endpoints:
            await endpoint.close()
        self._owned_endpoints = []

    async def _process_object_set(self, object_set: ObjectSet) -> None:
        stages: List[Tuple[str, RunStatus, Callable]] = [
            ("PREPARE", RunStatus.PREPARING, self._prepare_objects),
            ("RESOLVE REFERENCES", RunStatus.PREPARING, self._resolve_references),
            ("FINALIZE", RunStatus.PREPARING, self._finalize_objects),
            ("ORDER", RunStatus.PREPARING, self._order_objects),
            ("COUNT", RunStatus.COUNTING, self._count_records),
            ("DELETE", RunStatus.DELETING, self._delete_records),
            ("QUERY MASTER OBJECTS", RunStatus.QUERYING, self._query_master_objects),
            ("QUERY CHILD OBJECTS FROM SOURCE", RunStatus.QUERYING, self._query_child_objects_from_source),
            ("QUERY CHILD OBJECTS FROM TARGET", RunStatus.QUERYING, self._query_child_objects_from_target),
            ("WRITE", RunStatus.UPDATING, self._write_records),
        ]

        logger.info(f"Processing object set {object_set.index} ({len(object_set.objects)} objects)")
        for number, (name, status, handler) in enumerate(stages, start=2):
            logger.info(f"=== STAGE {number}: {name} (object set {object_set.index}) ===")
            self.run.status = status
            await handler(object_set)

    @asynccontextmanager
    async def _step(
        self,
        name: str,
        object_set: ObjectSet,
        obj: Optional[ScriptObject] = None,
    ) -> AsyncIterator[DataMoveStep]:
        """
        Record a step on the run.

        Transport and stream failures only fail the step when
        ``continue_on_error`` is set; every other error stops the run.
        """
        object_name = obj.name if obj else ""
        step = self.run.add_step(
            name=f"{name} {object_name}".strip(),
            object_set_index=object_set.index,
            object_name=object_name,
        )
        step.status = self.run.status
        step.started_at = datetime.utcnow()

        try:
            yield step
            if step.status != RunStatus.FAILED:
                step.status = RunStatus.COMPLETED

        except DataMoveError as e:
            e.with_context(object_set_index=object_set.index, object_name=object_name or None)
            step.status = RunStatus.FAILED
            step.errors.append({"error": str(e), "type": type(e).__name__})
            logger.error(f"{step.name} failed: {e}")

            if not (self.config.continue_on_error and isinstance(e, TransportError)):
                raise
            logger.warning(f"Continuing after failure of {step.name}")

        finally:
            step.completed_at = datetime.utcnow()

    def _warn(self, step: Optional[DataMoveStep], message: str) -> None:
        logger.warning(message)
        if step is not None:
            step.warnings.append(message)

    # Stage 2: prepare --------------------------------------------------------

    async def _prepare_objects(self, object_set: ObjectSet) -> None:
        for obj in list(object_set.objects):
            async with self._step("Prepare", object_set, obj) as step:
                await self._prepare_object(obj, step)

    async def _describe_object(self, obj: ScriptObject) -> None:
        """Describe the entity on both sides, borrowing the other side's schema for CSV endpoints."""
        extra = obj.extra

        if self.source.supports_describe:
            extra.source_describe = await self.registry.describe(self.source, obj.name)
        if self.target.supports_describe:
            extra.target_describe = await self.registry.describe(self.target, obj.target_name)

        if extra.source_describe is None:
            if obj.target_name == obj.name:
                extra.source_describe = extra.target_describe
            else:
                extra.source_describe = await self.registry.describe(self.target, obj.name)
        if extra.target_describe is None:
            extra.target_describe = extra.source_describe

    async def _prepare_object(self, obj: ScriptObject, step: Optional[DataMoveStep] = None) -> None:
        extra = obj.extra
        extra.target_object_name = map_object_name(obj.name, obj)
        await self._describe_object(obj)
        describe = extra.source_describe

        if obj.operation == Operation.INSERT:
            extra.external_id = ID_FIELD
        elif obj.external_id:
            extra.external_id = obj.external_id
        else:
            extra.external_id = default_external_id(obj.name, describe)
            extra.external_id_is_default = True

        fields = []
        for field_name in extra.query.fields:
            if field_name.lower() in FIELD_KEYWORDS:
                fields.extend(expand_field_keywords(field_name, describe))
            else:
                fields.append(field_name)
        fields = [f for f in fields if f not in obj.excluded_fields]
        if ID_FIELD not in fields:
            fields.insert(0, ID_FIELD)
        fields.extend(extra.external_id_fields)

        external_id_parts = set(extra.external_id_fields)
        excluded_from_update = list(obj.excluded_from_update_fields)
        kept = []

        for field_name in _unique(fields):
            problem = self._field_problem(obj, field_name)
            if problem is None:
                kept.append(field_name)
                continue
            if problem == READONLY_FIELD and (field_name in excluded_from_update or field_name in external_id_parts):
                kept.append(field_name)
                if field_name not in excluded_from_update:
                    excluded_from_update.append(field_name)
                continue
            if field_name in external_id_parts:
                raise SchemaError(f"External id field {field_name} {problem}")
            self._warn(step, f"Object set {obj.object_set.index}: {obj.name}.{field_name} {problem}, dropped")

        extra.query.fields = kept
        extra.excluded_from_update_fields = excluded_from_update

        for field_name in kept:
            if field_name == ID_FIELD or is_relationship_field(field_name):
                continue
            field_describe = describe.get_field(field_name)
            if field_describe and field_describe.is_lookup:
                entity = extra.query.polymorphic_field_mapping.get(field_name) or field_describe.referenced_object_type
                extra.lookup_object_name_mapping[field_name] = entity
                if field_describe.is_master_detail:
                    extra.master_detail_object_name_mapping[field_name] = entity

        if step is not None:
            step.records_processed = len(kept)
        logger.info(
            f"Prepared {obj.name} -> {obj.target_name}: {len(kept)} fields, "
            f"external id {extra.external_id}, {len(extra.lookup_object_name_mapping)} lookups"
        )

    def _field_problem(self, obj: ScriptObject, field_name: str) -> Optional[str]:
        """Why a selected field cannot be moved, or None."""
        if field_name == ID_FIELD:
            return None
        extra = obj.extra
        source_describe: SObjectDescribe = extra.source_describe
        # External id parts are matched against target records
        check_target_external_id = (
            field_name in extra.external_id_fields
            and self.target.supports_describe
            and self._needs_target_records(obj)
        )

        if is_relationship_field(field_name):
            direct = to_direct_field(field_name.split(".", 1)[0])
            field_describe = source_describe.get_field(direct)
            if field_describe is None or not field_describe.is_lookup:
                return "is not a relationship of the source entity"
            if check_target_external_id:
                target_direct = to_direct_field(map_field(field_name, obj).split(".", 1)[0])
                target_describe = extra.target_describe.get_field(target_direct)
                if target_describe is None or not target_describe.is_lookup:
                    return "is not a relationship of the target entity"
            return None

        field_describe = source_describe.get_field(field_name)
        if field_describe is None:
            return "does not exist in the source schema"
        if field_describe.type in COMPOUND_FIELD_TYPES:
            return "is a compound field"
        if field_describe.is_polymorphic and field_name not in extra.query.polymorphic_field_mapping:
            return "is a polymorphic reference without an entity annotation"

        if not obj.operation.is_write:
            if check_target_external_id and extra.target_describe.get_field(map_field(field_name, obj)) is None:
                return "does not exist in the target schema"
            return None
        if self.target.supports_describe:
            target_describe = extra.target_describe.get_field(map_field(field_name, obj))
            if target_describe is None:
                return "does not exist in the target schema"
            if target_describe.readonly or target_describe.calculated:
                return READONLY_FIELD
        elif field_describe.readonly or field_describe.calculated:
            return READONLY_FIELD
        return None

    # Stage 3: resolve references ---------------------------------------------

    async def _resolve_references(self, object_set: ObjectSet) -> None:
        position = 0
        while position < len(object_set.objects):
            obj = object_set.objects[position]
            position += 1

            for field_name, entity in list(obj.extra.lookup_object_name_mapping.items()):
                if object_set.get_object(entity):
                    continue

                if entity in object_set.excluded_objects or object_set.get_object_by_target_name(entity):
                    self._drop_lookup_field(obj, field_name)
                    logger.warning(
                        f"Object set {object_set.index}: {obj.name}.{field_name} references "
                        f"{entity}, which is excluded or already targeted, dropped"
                    )
                    continue

                logger.info(f"Object set {object_set.index}: adding read-only {entity} referenced by {obj.name}")
                new_obj = create_readonly_object(entity, object_set)
                async with self._step("Prepare", object_set, new_obj) as step:
                    await self._prepare_object(new_obj, step)

    def _drop_lookup_field(self, obj: ScriptObject, field_name: str) -> None:
        extra = obj.extra
        extra.query.fields = [f for f in extra.query.fields if f != field_name]
        extra.lookup_object_name_mapping.pop(field_name, None)
        extra.master_detail_object_name_mapping.pop(field_name, None)

    # Stage 4: finalize -------------------------------------------------------

    async def _finalize_objects(self, object_set: ObjectSet) -> None:
        for obj in object_set.objects:
            async with self._step("Finalize", object_set, obj):
                self._finalize_object(obj)

        async with self._step("Validate references", object_set):
            self._promote_masters(object_set)
            self._validate_hard_deletes(object_set)

    def _finalize_object(self, obj: ScriptObject) -> None:
        extra = obj.extra
        object_set = obj.object_set
        fields = _unique(extra.query.fields)

        for field_name, entity in extra.lookup_object_name_mapping.items():
            parent = object_set.get_object(entity)
            extra.lookup_object_mapping[field_name] = parent

            relationship = to_relationship_field(field_name)
            relationship_fields = [f"{relationship}.{part}" for part in parent.extra.external_id_fields]
            extra.referenced_field_mapping[field_name] = relationship_fields
            for relationship_field in relationship_fields:
                extra.relationship_field_mapping[relationship_field] = field_name

            # Parent external ids travel with the child unless they are record ids
            polymorphic = field_name in extra.query.polymorphic_field_mapping
            if parent.extra.external_id != ID_FIELD and not polymorphic:
                fields.extend(f for f in relationship_fields if f not in fields)

        extra.query.fields = fields
        extra.field_mapping = {f: map_field(f, obj) for f in fields}
        extra.target_where = map_where_clause(extra.where, obj)

        if extra.external_id == ID_FIELD:
            extra.target_external_id = ID_FIELD
        elif extra.external_id_is_default:
            extra.target_external_id = default_external_id(obj.target_name, extra.target_describe)
        else:
            extra.target_external_id = map_external_id(extra.external_id, obj)

        logger.debug(
            f"Finalized {obj.name}: fields={fields}, target external id={extra.target_external_id}, "
            f"target where={extra.target_where!r}"
        )

    def _promote_masters(self, object_set: ObjectSet) -> None:
        """Promote non-master objects that no lookup path connects to a master object."""
        names = {obj.name for obj in object_set.objects}
        neighbours: Dict[str, set] = {name: set() for name in names}
        for obj in object_set.objects:
            for entity in obj.extra.lookup_object_name_mapping.values():
                if entity in names and entity != obj.name:
                    neighbours[obj.name].add(entity)
                    neighbours[entity].add(obj.name)

        reached = {obj.name for obj in object_set.objects if obj.master}
        queue = deque(reached)
        while queue:
            for name in neighbours[queue.popleft()]:
                if name not in reached:
                    reached.add(name)
                    queue.append(name)

        for obj in object_set.objects:
            if not obj.master and obj.name not in reached:
                obj.master = True
                logger.info(f"Object set {object_set.index}: {obj.name} has no master dependency, promoted to master")

    def _validate_hard_deletes(self, object_set: ObjectSet) -> None:
        for obj in object_set.objects:
            if obj.operation != Operation.DELETE or not obj.hard_delete:
                continue
            for other in find_referencing_objects(obj, object_set):
                if other.operation.is_write:
                    raise ConfigurationError(
                        f"{obj.name} is hard deleted but referenced by {other.name} ({other.operation.value})",
                        object_set_index=object_set.index,
                        object_name=obj.name,
                    )

    # Stage 5: order ----------------------------------------------------------

    async def _order_objects(self, object_set: ObjectSet) -> None:
        async with self._step("Order", object_set) as step:
            update_order, _ = compute_objects_order(object_set)
            step.records_processed = len(update_order)

    # Stage 6: count ----------------------------------------------------------

    def _target_query(
        self,
        obj: ScriptObject,
        fields: Optional[List[str]] = None,
        where: Optional[str] = None,
    ) -> str:
        """Query of the object in target spelling; limits are never applied on the target side."""
        extra = obj.extra
        return compose_query_string(
            extra.query,
            fields=fields if fields is not None else self._target_fields(obj),
            object_name=obj.target_name,
            where=extra.target_where if where is None else where,
            drop_limits=True,
        )

    def _target_fields(self, obj: ScriptObject) -> List[str]:
        extra = obj.extra
        fields = [extra.field_mapping.get(f) or map_field(f, obj) for f in extra.query.fields]
        return _unique([ID_FIELD] + fields + extra.target_external_id_fields)

    def _delete_query(self, obj: ScriptObject, fields: List[str]) -> str:
        extra = obj.extra
        if extra.delete_query:
            return compose_query_string(
                extra.delete_query,
                fields=fields,
                object_name=obj.target_name,
                where=map_where_clause(extra.delete_query.where, obj),
                drop_limits=fields == [COUNT_FIELD],
            )
        return self._target_query(obj, fields=fields)

    async def _count(self, endpoint: BaseEndpoint, query: str, limit: int = 0) -> int:
        try:
            count = await endpoint.count(query)
        except DataMoveError as e:
            raise e.with_context(endpoint_label=endpoint.label)
        return min(count, limit) if limit else count

    async def _count_records(self, object_set: ObjectSet) -> None:
        for obj in object_set.objects_in_update_order():
            if obj.completed:
                continue
            async with self._step("Count", object_set, obj) as step:
                extra = obj.extra
                extra.total_records_count = await self._count(
                    self.source,
                    compose_object_query(obj, fields=[COUNT_FIELD], drop_limits=True),
                    extra.query.limit,
                )
                extra.target_total_records_count = await self._count(
                    self.target, self._target_query(obj, fields=[COUNT_FIELD])
                )

                if obj.is_deleting:
                    extra.target_records_to_delete_count = await self._count(
                        self.target,
                        self._delete_query(obj, [COUNT_FIELD]),
                        extra.delete_query.limit if extra.delete_query else 0,
                    )
                    extra.target_total_records_count = max(
                        extra.target_total_records_count - extra.target_records_to_delete_count, 0
                    )

                step.records_processed = extra.total_records_count
                logger.info(
                    f"{obj.name}: {extra.total_records_count} source records, "
                    f"{extra.target_total_records_count} target records, "
                    f"{extra.target_records_to_delete_count} to delete"
                )

    # Stage 7: delete ---------------------------------------------------------

    async def _delete_records(self, object_set: ObjectSet) -> None:
        for obj in object_set.objects_in_delete_order():
            if obj.completed or not obj.is_deleting:
                continue
            async with self._step("Delete", object_set, obj) as step:
                await self._delete_object(obj, step)

    async def _delete_object(self, obj: ScriptObject, step: DataMoveStep) -> None:
        extra = obj.extra
        to_delete = extra.target_records_to_delete_count

        if to_delete <= 0:
            logger.info(f"{obj.name}: nothing to delete")
            if obj.operation == Operation.DELETE:
                obj.completed = True
            return

        choice = suggest_query_engine(to_delete, to_delete, 1, self.config.engine)
        delete_file = get_working_file_path(obj, "delete")
        await self.transfer.query_to_file(
            self.target,
            self._delete_query(obj, [ID_FIELD]),
            delete_file,
            use_bulk=choice.use_bulk,
            fieldnames=[ID_FIELD],
            record_callback=lambda row: {ID_FIELD: row.get(ID_FIELD)} if row.get(ID_FIELD) else None,
            progress_callback=self._query_progress_logger(obj, self.target),
        )

        operation = WriteOperation.HARD_DELETE if obj.hard_delete else WriteOperation.DELETE
        info = await self.transfer.update_from_file(
            self.target,
            obj.target_name,
            operation,
            delete_file,
            status_file_path=get_working_file_path(obj, "delete_status"),
            progress_callback=self._job_progress_logger(obj),
        )
        self._record_job(step, info)

        if info.state == JobState.JOB_COMPLETE and obj.operation == Operation.DELETE:
            obj.completed = True

    # Stage 8: query master objects -------------------------------------------

    def _needs_target_records(self, obj: ScriptObject) -> bool:
        # Inserted objects match on record ids, which never exist on the target side
        return obj.operation not in (Operation.INSERT, Operation.DELETE)

    async def _query_master_objects(self, object_set: ObjectSet) -> None:
        for obj in object_set.objects_in_update_order():
            if obj.completed or not obj.master:
                continue

            async with self._step("Query source", object_set, obj) as step:
                extra = obj.extra
                total = extra.total_records_count
                choice = suggest_query_engine(
                    total, total, math.ceil(total / self.config.engine.rest_max_records_per_call), self.config.engine
                )
                if choice.skip_api_call:
                    self._reset_file(get_working_file_path(obj, "source"), extra.query.fields)
                else:
                    progress = await self._query_source(obj, compose_object_query(obj), choice.use_bulk)
                    step.records_processed = progress.filtered_record_count
                extra.fully_queried = True

            if self._needs_target_records(obj):
                async with self._step("Query target", object_set, obj) as step:
                    total = obj.extra.target_total_records_count
                    choice = suggest_query_engine(
                        total, total, math.ceil(total / self.config.engine.rest_max_records_per_call), self.config.engine
                    )
                    if choice.skip_api_call:
                        self._reset_file(get_working_file_path(obj, "target"), self._target_fields(obj))
                    else:
                        progress = await self._query_target(obj, self._target_query(obj), choice.use_bulk)
                        step.records_processed = progress.filtered_record_count

    def _reset_file(self, path, fieldnames: List[str]) -> None:
        write_csv_rows(path, [], fieldnames)

    async def _query_source(
        self,
        obj: ScriptObject,
        query: str,
        use_bulk: bool,
        append: bool = False,
    ) -> QueryProgress:
        """Query source records into the source file, filling the id and lookup caches."""
        extra = obj.extra
        lookup_fields = list(extra.lookup_object_name_mapping)

        def capture(row):
            record_id = row.get(ID_FIELD)
            if not record_id or record_id in extra.source_id_to_external_id:
                return None
            extra.source_id_to_external_id[record_id] = get_external_id_value(row, extra.external_id_fields)
            for field_name in lookup_fields:
                value = row.get(field_name)
                if value:
                    extra.source_lookup_values.setdefault(field_name, set()).add(value)
            return row

        return await self.transfer.query_to_file(
            self.source,
            query,
            get_working_file_path(obj, "source"),
            use_bulk=use_bulk,
            append=append,
            fieldnames=extra.query.fields,
            record_callback=capture,
            progress_callback=self._query_progress_logger(obj, self.source),
        )

    async def _query_target(
        self,
        obj: ScriptObject,
        query: str,
        use_bulk: bool,
        append: bool = False,
    ) -> QueryProgress:
        """Query target records into the target file, filling the external id cache."""
        extra = obj.extra
        external_id_fields = extra.target_external_id_fields

        def capture(row):
            target_id = row.get(ID_FIELD)
            if not target_id:
                return None
            external_id = get_external_id_value(row, external_id_fields)
            if extra.target_external_id_to_target_id.get(external_id) == target_id:
                return None
            if external_id.replace(COMPLEX_EXTERNAL_ID_SEPARATOR, ""):
                extra.target_external_id_to_target_id[external_id] = target_id
            return row

        return await self.transfer.query_to_file(
            self.target,
            query,
            get_working_file_path(obj, "target"),
            use_bulk=use_bulk,
            append=append,
            fieldnames=self._target_fields(obj),
            record_callback=capture,
            progress_callback=self._query_progress_logger(obj, self.target),
        )

    # Stage 9: query child objects from source --------------------------------

    async def _query_child_objects_from_source(self, object_set: ObjectSet) -> None:
        children = [o for o in object_set.objects_in_update_order() if not o.master and not o.completed]
        if not children:
            return

        for obj in children:
            self._reset_file(get_working_file_path(obj, "source"), obj.extra.query.fields)

        for round_number in range(1, self.config.child_query_rounds + 1):
            logger.info(f"Child query round {round_number} of {self.config.child_query_rounds}")
            fetched = 0
            for obj in children:
                if obj.extra.fully_queried:
                    continue
                async with self._step(f"Query source (round {round_number})", object_set, obj) as step:
                    step.records_processed = await self._query_child_from_source(obj)
                    fetched += step.records_processed
            if not fetched:
                break

    def _child_filter_values(self, obj: ScriptObject) -> List[Tuple[str, set]]:
        """
        Filter field and candidate values for a child object.

        Covers the lookups of the object into records already fetched, and the
        object's own ids referenced by records of other objects.
        """
        extra = obj.extra
        filters = []
        for field_name, parent in extra.lookup_object_mapping.items():
            parent_ids = set(parent.extra.source_id_to_external_id)
            if parent_ids:
                filters.append((field_name, parent_ids))

        referenced_ids = set()
        for other in find_referencing_objects(obj):
            for field_name, entity in other.extra.lookup_object_name_mapping.items():
                if entity == obj.name:
                    referenced_ids |= other.extra.source_lookup_values.get(field_name, set())
        if referenced_ids:
            filters.append((ID_FIELD, referenced_ids))
        return filters

    async def _query_child_from_source(self, obj: ScriptObject) -> int:
        extra = obj.extra
        settings = self.config.engine
        overhead = len(compose_object_query(obj, where="", drop_limits=True))
        fetched = 0

        for field_name, values in self._child_filter_values(obj):
            queried = extra.queried_values.setdefault(field_name, set())
            new_values = sorted(values - queried)
            if not new_values:
                continue

            clauses = build_in_clause(
                field_name, new_values, extra.where,
                settings.max_where_clause_length, settings.max_query_length, overhead,
            )
            choice = suggest_query_engine(
                extra.total_records_count, min(len(new_values), extra.total_records_count), len(clauses), settings
            )
            queried.update(new_values)

            if choice.skip_api_call:
                continue
            if choice.query_all:
                progress = await self._query_source(obj, compose_object_query(obj), choice.use_bulk, append=True)
                extra.fully_queried = True
                return fetched + progress.filtered_record_count

            for clause in clauses:
                query = compose_object_query(obj, where=clause, drop_limits=True)
                progress = await self._query_source(obj, query, choice.use_bulk, append=True)
                fetched += progress.filtered_record_count

        return fetched

    # Stage 10: query child objects from target -------------------------------

    async def _query_child_objects_from_target(self, object_set: ObjectSet) -> None:
        settings = self.config.engine
        for obj in object_set.objects_in_update_order():
            if obj.master or obj.completed or not self._needs_target_records(obj):
                continue

            async with self._step("Query target", object_set, obj) as step:
                extra = obj.extra
                target_file = get_working_file_path(obj, "target")
                self._reset_file(target_file, self._target_fields(obj))

                values = sorted(
                    v for v in set(extra.source_id_to_external_id.values())
                    if v.replace(COMPLEX_EXTERNAL_ID_SEPARATOR, "")
                )
                if not values:
                    continue

                overhead = len(self._target_query(obj, where=""))
                clauses = build_external_id_clauses(
                    extra.target_external_id_fields, values, extra.target_where,
                    settings.max_where_clause_length, settings.max_query_length, overhead,
                )
                choice = suggest_query_engine(
                    extra.target_total_records_count,
                    min(len(values), extra.target_total_records_count),
                    len(clauses),
                    settings,
                )
                if choice.skip_api_call:
                    continue

                if choice.query_all:
                    progress = await self._query_target(obj, self._target_query(obj), choice.use_bulk, append=True)
                    step.records_processed = progress.filtered_record_count
                    continue

                for clause in clauses:
                    progress = await self._query_target(
                        obj, self._target_query(obj, where=clause), choice.use_bulk, append=True
                    )
                    step.records_processed += progress.filtered_record_count

    # Stage 11: write ---------------------------------------------------------

    async def _write_records(self, object_set: ObjectSet) -> None:
        for obj in object_set.objects_in_update_order():
            if obj.completed or not obj.operation.is_write:
                continue
            async with self._step(obj.operation.value, object_set, obj) as step:
                await self._write_object(obj, step)

    def _payload_fields(self, obj: ScriptObject) -> Tuple[List[Tuple[str, str]], List[str], List[str]]:
        """Source/target field pairs of the write payload, plus insertable and updatable target fields."""
        extra = obj.extra
        target_describe = extra.target_describe if self.target.supports_describe else None
        pairs, insertable, updatable = [], [], []

        for field_name in extra.query.fields:
            if field_name == ID_FIELD or is_relationship_field(field_name):
                continue
            if field_name in extra.excluded_from_update_fields:
                continue
            target_field = extra.field_mapping.get(field_name) or map_field(field_name, obj)
            field_describe = target_describe.get_field(target_field) if target_describe else None
            pairs.append((field_name, target_field))
            if field_describe is None or field_describe.createable:
                insertable.append(target_field)
            if field_describe is None or field_describe.updateable:
                updatable.append(target_field)

        return pairs, insertable, updatable

    def _resolve_lookup(self, obj: ScriptObject, field_name: str, row: Dict[str, str]) -> Optional[str]:
        """Target id of the parent referenced by a source lookup value."""
        extra = obj.extra
        parent = extra.lookup_object_mapping.get(field_name)
        if parent is None:
            return None

        parent_external_id = parent.extra.source_id_to_external_id.get(row.get(field_name) or "")
        if not parent_external_id:
            relationship_fields = extra.referenced_field_mapping.get(field_name) or []
            values = [row.get(f) or "" for f in relationship_fields]
            if relationship_fields and all(values):
                parent_external_id = COMPLEX_EXTERNAL_ID_SEPARATOR.join(values)
        if not parent_external_id:
            return None
        return parent.extra.target_external_id_to_target_id.get(parent_external_id)

    async def _write_object(self, obj: ScriptObject, step: DataMoveStep) -> None:
        extra = obj.extra
        operation = obj.operation
        source_file = get_working_file_path(obj, "source")
        if not source_file.exists():
            logger.info(f"{obj.name}: no source records to write")
            obj.completed = True
            return

        pairs, insertable, updatable = self._payload_fields(obj)
        insert_rows: List[Dict[str, str]] = []
        update_rows: List[Dict[str, str]] = []
        pending_inserts: Dict[Tuple[str, ...], List[str]] = {}
        deferred_self_lookups: List[Tuple[str, str, str]] = []
        skipped = 0
        unresolved = 0

        async for row in read_csv_rows(source_file):
            external_id = get_external_id_value(row, extra.external_id_fields)
            target_id = extra.target_external_id_to_target_id.get(external_id) if external_id else None

            payload = {target_field: row.get(source_field) or "" for source_field, target_field in pairs}
            for field_name, parent in extra.lookup_object_mapping.items():
                target_field = extra.field_mapping.get(field_name) or field_name
                if target_field not in payload or not row.get(field_name):
                    continue
                parent_target_id = self._resolve_lookup(obj, field_name, row)
                if parent_target_id:
                    payload[target_field] = parent_target_id
                    continue
                payload[target_field] = ""
                if parent is obj:
                    deferred_self_lookups.append((external_id, target_field, row[field_name]))
                else:
                    unresolved += 1

            if target_id:
                if operation == Operation.INSERT:
                    if obj.skip_existing_records:
                        skipped += 1
                        continue
                else:
                    update_rows.append({ID_FIELD: target_id, **{f: payload[f] for f in updatable}})
                    continue
            elif operation == Operation.UPDATE or (operation == Operation.UPSERT and obj.skip_existing_records):
                skipped += 1
                continue

            insert_row = {f: payload[f] for f in insertable}
            insert_rows.append(insert_row)
            pending_inserts.setdefault(tuple(insert_row[f] for f in insertable), []).append(external_id)

        if unresolved:
            self._warn(step, f"{obj.name}: {unresolved} lookup values could not be resolved on the target")
        if skipped:
            logger.info(f"{obj.name}: {skipped} records skipped")

        succeeded = True
        if insert_rows:
            info = await self._run_write(obj, WriteOperation.INSERT, insert_rows, insertable, "insert")
            self._record_job(step, info)
            succeeded = succeeded and info.state == JobState.JOB_COMPLETE
            for result in info.results:
                if not (result.success and result.created and result.id):
                    continue
                signature = tuple(str(result.record.get(f) or "") for f in insertable)
                external_ids = pending_inserts.get(signature)
                if external_ids:
                    extra.target_external_id_to_target_id[external_ids.pop(0)] = result.id

        if update_rows:
            info = await self._run_write(obj, WriteOperation.UPDATE, update_rows, [ID_FIELD] + updatable, "update")
            self._record_job(step, info)
            succeeded = succeeded and info.state == JobState.JOB_COMPLETE

        self_lookup_rows = self._self_lookup_updates(obj, deferred_self_lookups, updatable)
        if self_lookup_rows:
            info = await self._run_write(
                obj, WriteOperation.UPDATE, self_lookup_rows,
                _unique([ID_FIELD] + [k for r in self_lookup_rows for k in r]), "update_self_lookups",
            )
            self._record_job(step, info)
            succeeded = succeeded and info.state == JobState.JOB_COMPLETE

        if succeeded:
            obj.completed = True

    def _self_lookup_updates(
        self,
        obj: ScriptObject,
        deferred: List[Tuple[str, str, str]],
        updatable: List[str],
    ) -> List[Dict[str, str]]:
        """Second-pass updates for lookups into the same object, resolvable once its records exist."""
        extra = obj.extra
        rows: Dict[str, Dict[str, str]] = {}
        for external_id, target_field, parent_source_id in deferred:
            if target_field not in updatable:
                continue
            record_id = extra.target_external_id_to_target_id.get(external_id)
            parent_external_id = extra.source_id_to_external_id.get(parent_source_id)
            parent_id = extra.target_external_id_to_target_id.get(parent_external_id) if parent_external_id else None
            if record_id and parent_id:
                rows.setdefault(record_id, {ID_FIELD: record_id})[target_field] = parent_id
        return list(rows.values())

    async def _run_write(
        self,
        obj: ScriptObject,
        operation: WriteOperation,
        rows: List[Dict[str, str]],
        fieldnames: List[str],
        role: str,
    ) -> IngestJobInfo:
        payload_file = get_working_file_path(obj, role)
        write_csv_rows(payload_file, rows, fieldnames)
        return await self.transfer.update_from_file(
            self.target,
            obj.target_name,
            operation,
            payload_file,
            status_file_path=get_working_file_path(obj, f"{role}_status"),
            projected_record_count=len(rows),
            progress_callback=self._job_progress_logger(obj),
        )

    # Reporting ---------------------------------------------------------------

    def _record_job(self, step: DataMoveStep, info: IngestJobInfo) -> None:
        step.records_processed += info.number_records_processed
        step.records_failed += info.number_records_failed
        step.records_succeeded += max(info.number_records_processed - info.number_records_failed, 0)

        if info.state != JobState.JOB_COMPLETE:
            step.status = RunStatus.FAILED
            step.errors.append({
                "error": info.error_message or f"Job {info.job_id} ended as {info.state.value}",
                "job": info.to_dict(),
            })
        elif info.number_records_failed:
            step.warnings.append(f"{info.number_records_failed} records failed ({info.operation})")

    def _query_progress_logger(self, obj: ScriptObject, endpoint: BaseEndpoint) -> Callable[[QueryProgress], None]:
        def log_progress(progress: QueryProgress) -> None:
            logger.info(
                f"{obj.name} on {endpoint.label} via {progress.engine.value}: "
                f"{progress.record_count} records fetched, {progress.filtered_record_count} kept"
            )
        return log_progress

    def _job_progress_logger(self, obj: ScriptObject) -> Callable[[IngestJobInfo], None]:
        def log_progress(info: IngestJobInfo) -> None:
            logger.info(
                f"{obj.name} {info.operation} via {info.engine.value}: {info.state.value}, "
                f"{info.number_records_processed} processed, {info.number_records_failed} failed"
            )
        return log_progress

    def _save_report(self) -> None:
        """Save the run report."""
        work_dir = self.config.resolved_work_dir
        filepath = work_dir / f"{REPORT_FILE_PREFIX}_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}.json"
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
            self.run.report_path = str(filepath)
            with open(filepath, "w") as f:
                json.dump(self.run.to_dict(), f, indent=2, default=str)
            logger.info(f"Saved run report to {filepath}")
        except OSError as e:
            self.run.report_path = None
            logger.error(f"Failed to save run report: {e}")
