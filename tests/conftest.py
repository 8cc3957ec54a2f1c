"""Shared fixtures: schema-aware CSV endpoints and script builders."""

import csv
import json
from pathlib import Path
from typing import Dict, List

import pytest

from datamove.endpoints.csv_endpoint import CsvFileEndpoint
from datamove.errors import SchemaError
from datamove.models.describe import SObjectDescribe
from datamove.models.script import ObjectSet, ScriptObject
from datamove.services.script_loader import load_object_set


def make_describe(name: str, fields: List[Dict]) -> SObjectDescribe:
    """Build a describe with an Id field plus the given field payloads."""
    payload = [{"name": "Id", "type": "id", "createable": False, "updateable": False, "unique": True}]
    payload.extend(fields)
    return SObjectDescribe.from_dict({"name": name, "fields": payload})


class SchemaCsvEndpoint(CsvFileEndpoint):
    """CSV endpoint that also answers describe calls from a fixed schema."""

    supports_describe = True

    def __init__(self, label: str, directory: str, describes: Dict[str, SObjectDescribe]):
        super().__init__(label, directory)
        self.describes = describes
        self.describe_calls: List[str] = []

    async def describe(self, object_name: str) -> SObjectDescribe:
        self.describe_calls.append(object_name)
        if object_name not in self.describes:
            raise SchemaError(f"Entity {object_name} does not exist", endpoint_label=self.label)
        return self.describes[object_name]


def write_csv(path: Path, rows: List[Dict[str, str]], fieldnames: List[str]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)
    return path


def read_csv(path: Path) -> List[Dict[str, str]]:
    with open(path, newline="") as f:
        return list(csv.DictReader(f))


def build_object_set(*objects: Dict, index: int = 1) -> ObjectSet:
    """Object set with parsed queries, as the load stage leaves it."""
    object_set = ObjectSet(index=index)
    for data in objects:
        object_set.add_object(ScriptObject.from_dict(data))
    load_object_set(object_set)
    return object_set


@pytest.fixture
def crm_describes() -> Dict[str, SObjectDescribe]:
    return {
        "Account": make_describe("Account", [
            {"name": "Name", "nameField": True},
            {"name": "Industry"},
            {"name": "ParentId", "type": "reference", "referenceTo": ["Account"]},
        ]),
        "Contact": make_describe("Contact", [
            {"name": "LastName", "nameField": True},
            {"name": "Email"},
            {"name": "AccountId", "type": "reference", "referenceTo": ["Account"]},
            {"name": "CreatedDate", "type": "datetime", "createable": False, "updateable": False},
        ]),
        "Lead": make_describe("Lead", [
            {"name": "LastName", "nameField": True},
            {"name": "Email"},
        ]),
    }


@pytest.fixture
def write_script(tmp_path):
    """Write a script file and return its path."""
    def _write(objects=None, object_sets=None) -> Path:
        path = tmp_path / "export.json"
        data = {}
        if objects is not None:
            data["objects"] = objects
        if object_sets is not None:
            data["objectSets"] = object_sets
        path.write_text(json.dumps(data))
        return path
    return _write
