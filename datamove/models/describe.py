"""Schema models describing an entity on an endpoint."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class FieldDescribe:
    """Definition of a single field as reported by an endpoint describe call."""
    name: str
    type: str = "string"
    label: str = ""
    nillable: bool = True
    createable: bool = True
    updateable: bool = True
    unique: bool = False
    calculated: bool = False
    name_field: bool = False
    auto_number: bool = False
    cascade_delete: bool = False
    custom: bool = False
    reference_to: List[str] = field(default_factory=list)
    relationship_name: Optional[str] = None

    @property
    def is_lookup(self) -> bool:
        return len(self.reference_to) > 0

    @property
    def is_polymorphic(self) -> bool:
        return len(self.reference_to) > 1

    @property
    def is_master_detail(self) -> bool:
        """Master-detail references are lookups that cascade or cannot be reparented."""
        return self.is_lookup and (not self.updateable or self.cascade_delete)

    @property
    def readonly(self) -> bool:
        return not self.createable and not self.updateable

    @property
    def referenced_object_type(self) -> Optional[str]:
        return self.reference_to[0] if self.reference_to else None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "type": self.type,
            "label": self.label,
            "nillable": self.nillable,
            "createable": self.createable,
            "updateable": self.updateable,
            "unique": self.unique,
            "calculated": self.calculated,
            "nameField": self.name_field,
            "autoNumber": self.auto_number,
            "cascadeDelete": self.cascade_delete,
            "custom": self.custom,
            "referenceTo": list(self.reference_to),
            "relationshipName": self.relationship_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldDescribe":
        """Create from an endpoint describe payload."""
        name = data.get("name", "")
        return cls(
            name=name,
            type=data.get("type", "string"),
            label=data.get("label", ""),
            nillable=data.get("nillable", True),
            createable=data.get("createable", True),
            updateable=data.get("updateable", True),
            unique=data.get("unique", False),
            calculated=data.get("calculated", False),
            name_field=data.get("nameField", False),
            auto_number=data.get("autoNumber", False),
            cascade_delete=data.get("cascadeDelete", False),
            custom=data.get("custom", name.endswith("__c")),
            reference_to=list(data.get("referenceTo") or []),
            relationship_name=data.get("relationshipName"),
        )


@dataclass
class SObjectDescribe:
    """Schema of an entity on one endpoint."""
    name: str
    label: str = ""
    custom: bool = False
    fields: Dict[str, FieldDescribe] = field(default_factory=dict)

    def get_field(self, name: str) -> Optional[FieldDescribe]:
        return self.fields.get(name)

    def has_field(self, name: str) -> bool:
        return name in self.fields

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "label": self.label,
            "custom": self.custom,
            "fields": [f.to_dict() for f in self.fields.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SObjectDescribe":
        """Create from an endpoint describe payload."""
        fields = {}
        for field_data in data.get("fields", []):
            field_describe = FieldDescribe.from_dict(field_data)
            fields[field_describe.name] = field_describe

        return cls(
            name=data.get("name", ""),
            label=data.get("label", ""),
            custom=data.get("custom", False),
            fields=fields,
        )
