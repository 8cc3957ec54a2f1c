"""Script models: object sets, object definitions and their working state."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .describe import SObjectDescribe
from ..constants import COMPLEX_EXTERNAL_ID_SEPARATOR


class Operation(str, Enum):
    """Operation performed on an object's records in the target."""
    INSERT = "Insert"
    UPDATE = "Update"
    UPSERT = "Upsert"
    READONLY = "Readonly"
    DELETE = "Delete"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Operation":
        """Case-insensitive lookup, defaulting to Readonly."""
        if not value:
            return cls.READONLY
        for member in cls:
            if member.value.lower() == str(value).lower():
                return member
        raise ValueError(f"Unsupported operation: {value}")

    @property
    def is_write(self) -> bool:
        return self in (Operation.INSERT, Operation.UPDATE, Operation.UPSERT)


@dataclass
class FieldMappingItem:
    """One row of an object's field-mapping table."""
    source_field: str = ""
    target_field: str = ""
    target_object: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceField": self.source_field,
            "targetField": self.target_field,
            "targetObject": self.target_object,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMappingItem":
        return cls(
            source_field=data.get("sourceField", "") or "",
            target_field=data.get("targetField", "") or "",
            target_object=data.get("targetObject", "") or "",
        )


@dataclass
class ParsedQuery:
    """Components of a parsed query string."""
    fields: List[str] = field(default_factory=list)
    object_name: str = ""
    where: str = ""
    limit: int = 0
    offset: int = 0
    polymorphic_field_mapping: Dict[str, str] = field(default_factory=dict)


@dataclass
class ExtraData:
    """
    Working state derived for a ScriptObject.

    Rebuilt once per object during prepare, then mutated in place by
    finalize and by the streaming stages that own the object.
    """
    query: ParsedQuery = field(default_factory=ParsedQuery)
    delete_query: Optional[ParsedQuery] = None

    # Target spelling
    target_object_name: str = ""
    target_where: str = ""
    external_id: str = ""
    target_external_id: str = ""
    external_id_is_default: bool = False
    field_mapping: Dict[str, str] = field(default_factory=dict)  # Source field -> target field

    # Schema
    source_describe: Optional[SObjectDescribe] = None
    target_describe: Optional[SObjectDescribe] = None
    excluded_from_update_fields: List[str] = field(default_factory=list)

    # References
    lookup_object_name_mapping: Dict[str, str] = field(default_factory=dict)  # Lookup field -> entity
    lookup_object_mapping: Dict[str, "ScriptObject"] = field(default_factory=dict)
    master_detail_object_name_mapping: Dict[str, str] = field(default_factory=dict)
    referenced_field_mapping: Dict[str, List[str]] = field(default_factory=dict)  # Lookup -> relationship fields
    relationship_field_mapping: Dict[str, str] = field(default_factory=dict)  # Relationship field -> lookup

    # Caches filled while streaming
    source_id_to_external_id: Dict[str, str] = field(default_factory=dict)
    target_external_id_to_target_id: Dict[str, str] = field(default_factory=dict)
    source_lookup_values: Dict[str, Set[str]] = field(default_factory=dict)  # Lookup field -> parent ids seen
    queried_values: Dict[str, Set[str]] = field(default_factory=dict)  # Filter field -> values already queried
    fully_queried: bool = False

    # Counts
    total_records_count: int = 0
    target_total_records_count: int = 0
    target_records_to_delete_count: int = 0

    @property
    def fields(self) -> List[str]:
        return self.query.fields

    @property
    def object_name(self) -> str:
        return self.query.object_name

    @property
    def where(self) -> str:
        return self.query.where

    @property
    def external_id_fields(self) -> List[str]:
        return split_external_id(self.external_id)

    @property
    def target_external_id_fields(self) -> List[str]:
        return split_external_id(self.target_external_id)


@dataclass(eq=False)
class ScriptObject:
    """Definition of one entity to move."""
    query: str = ""
    operation: Operation = Operation.READONLY
    external_id: str = ""
    delete_query: str = ""
    excluded: bool = False
    master: bool = True
    delete_old_data: bool = False
    hard_delete: bool = False
    use_field_mapping: bool = False
    skip_existing_records: bool = False
    excluded_fields: List[str] = field(default_factory=list)
    excluded_from_update_fields: List[str] = field(default_factory=list)
    field_mapping: List[FieldMappingItem] = field(default_factory=list)

    # Working state
    extra: ExtraData = field(default_factory=ExtraData, repr=False)
    object_set: Optional["ObjectSet"] = field(default=None, repr=False, compare=False)
    completed: bool = False
    is_auto_added: bool = False

    @property
    def name(self) -> str:
        """Source entity name as parsed from the query."""
        return self.extra.query.object_name

    @property
    def target_name(self) -> str:
        return self.extra.target_object_name or self.name

    @property
    def is_deleting(self) -> bool:
        return self.operation == Operation.DELETE or self.delete_old_data

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the script file representation."""
        return {
            "query": self.query,
            "operation": self.operation.value,
            "externalId": self.external_id,
            "deleteQuery": self.delete_query,
            "excluded": self.excluded,
            "master": self.master,
            "deleteOldData": self.delete_old_data,
            "hardDelete": self.hard_delete,
            "useFieldMapping": self.use_field_mapping,
            "skipExistingRecords": self.skip_existing_records,
            "excludedFields": list(self.excluded_fields),
            "excludedFromUpdateFields": list(self.excluded_from_update_fields),
            "fieldMapping": [m.to_dict() for m in self.field_mapping],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScriptObject":
        """Create from a decoded script file entry."""
        return cls(
            query=(data.get("query") or "").strip(),
            operation=Operation.parse(data.get("operation")),
            external_id=(data.get("externalId") or "").strip(),
            delete_query=(data.get("deleteQuery") or "").strip(),
            excluded=bool(data.get("excluded", False)),
            master=bool(data.get("master", True)),
            delete_old_data=bool(data.get("deleteOldData", False)),
            hard_delete=bool(data.get("hardDelete", False)),
            use_field_mapping=bool(data.get("useFieldMapping", False)),
            skip_existing_records=bool(data.get("skipExistingRecords", False)),
            excluded_fields=list(data.get("excludedFields") or []),
            excluded_from_update_fields=list(data.get("excludedFromUpdateFields") or []),
            field_mapping=[FieldMappingItem.from_dict(m) for m in data.get("fieldMapping") or []],
        )


@dataclass(eq=False)
class ObjectSet:
    """An independently ordered and processed group of objects."""
    index: int = 0
    objects: List[ScriptObject] = field(default_factory=list)
    update_objects_order: List[str] = field(default_factory=list)
    delete_objects_order: List[str] = field(default_factory=list)
    excluded_objects: List[str] = field(default_factory=list)
    source_dir: Optional[Path] = None
    target_dir: Optional[Path] = None

    def get_object(self, name: str) -> Optional[ScriptObject]:
        """Find an object by its source entity name."""
        for obj in self.objects:
            if obj.name == name:
                return obj
        return None

    def get_object_by_target_name(self, target_name: str) -> Optional[ScriptObject]:
        for obj in self.objects:
            if obj.target_name == target_name:
                return obj
        return None

    def add_object(self, obj: ScriptObject) -> ScriptObject:
        obj.object_set = self
        self.objects.append(obj)
        return obj

    def objects_in_update_order(self) -> List[ScriptObject]:
        return self._objects_in(self.update_objects_order)

    def objects_in_delete_order(self) -> List[ScriptObject]:
        return self._objects_in(self.delete_objects_order)

    def _objects_in(self, order: List[str]) -> List[ScriptObject]:
        if not order:
            return list(self.objects)
        result = []
        for name in order:
            obj = self.get_object(name)
            if obj:
                result.append(obj)
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {"objects": [o.to_dict() for o in self.objects]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> "ObjectSet":
        object_set = cls(index=index)
        for object_data in data.get("objects") or []:
            object_set.add_object(ScriptObject.from_dict(object_data))
        return object_set


@dataclass
class Script:
    """Top-level script: bare objects plus explicit object sets."""
    objects: List[ScriptObject] = field(default_factory=list)
    object_sets: List[ObjectSet] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "objects": [o.to_dict() for o in self.objects],
            "objectSets": [s.to_dict() for s in self.object_sets],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Script":
        """Create from the decoded script file."""
        return cls(
            objects=[ScriptObject.from_dict(o) for o in data.get("objects") or []],
            object_sets=[ObjectSet.from_dict(s) for s in data.get("objectSets") or []],
        )


def split_external_id(external_id: str) -> List[str]:
    """Split a composite external id into its field names."""
    if not external_id:
        return []
    return [part.strip() for part in external_id.split(COMPLEX_EXTERNAL_ID_SEPARATOR) if part.strip()]


def create_readonly_object(object_name: str, object_set: ObjectSet) -> ScriptObject:
    """Create the minimal Id-only object used for an undeclared referenced entity."""
    obj = ScriptObject(
        query=f"SELECT Id FROM {object_name}",
        operation=Operation.READONLY,
        master=False,
        is_auto_added=True,
        extra=ExtraData(query=ParsedQuery(fields=["Id"], object_name=object_name)),
    )
    return object_set.add_object(obj)
