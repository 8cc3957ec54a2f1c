"""Tests for query parsing, field mapping and clause splitting."""

from datetime import date, datetime, timezone

import pytest

from datamove.models.script import FieldMappingItem, ParsedQuery, ScriptObject
from datamove.services.query_builder import (
    build_external_id_clauses,
    build_in_clause,
    build_or_and_clause,
    compose_query_string,
    get_external_id_value,
    map_external_id,
    map_field,
    map_object_name,
    map_where_clause,
    parse_query_string,
    to_direct_field,
    to_relationship_field,
    value_to_literal,
)


def mapped_object(*items, use_field_mapping=True):
    return ScriptObject(
        use_field_mapping=use_field_mapping,
        field_mapping=[FieldMappingItem(*item) for item in items],
    )


class TestParseQuery:
    """Tests for parse_query_string."""

    def test_all_components(self):
        parsed = parse_query_string(
            "SELECT Id, Name, Account.Name FROM Contact WHERE Name != 'x' LIMIT 10 OFFSET 5"
        )
        assert parsed.fields == ["Id", "Name", "Account.Name"]
        assert parsed.object_name == "Contact"
        assert parsed.where == "Name != 'x'"
        assert parsed.limit == 10
        assert parsed.offset == 5

    def test_keywords_are_case_insensitive(self):
        parsed = parse_query_string("select Id from Account where Name = 'a' limit 3")
        assert parsed.object_name == "Account"
        assert parsed.where == "Name = 'a'"
        assert parsed.limit == 3

    def test_polymorphic_marker(self):
        parsed = parse_query_string("SELECT Id, WhatId%Account FROM Task")
        assert parsed.fields == ["Id", "WhatId"]
        assert parsed.polymorphic_field_mapping == {"WhatId": "Account"}

    def test_empty_and_malformed(self):
        assert parse_query_string("") == ParsedQuery()
        assert parse_query_string("nonsense").object_name == ""


class TestComposeQuery:
    """Tests for compose_query_string."""

    def test_round_trip(self):
        query = "SELECT Id, Name FROM Account WHERE Name != null LIMIT 10"
        assert compose_query_string(parse_query_string(query)) == query

    def test_overrides(self):
        parsed = parse_query_string("SELECT Id FROM Account WHERE Name = 'a' LIMIT 5 OFFSET 2")
        composed = compose_query_string(
            parsed, fields=["COUNT(Id)"], object_name="Client__c", where="", drop_limits=True
        )
        assert composed == "SELECT COUNT(Id) FROM Client__c"

    def test_no_fields_selects_id(self):
        assert compose_query_string(ParsedQuery(object_name="Account")) == "SELECT Id FROM Account"


class TestRelationshipSpelling:
    """Tests for direct and relationship field names."""

    @pytest.mark.parametrize("direct,relationship", [
        ("Account__c", "Account__r"),
        ("Contact__pc", "Contact__pr"),
        ("AccountId", "Account"),
        ("Account__c.Name", "Account__r.Name"),
    ])
    def test_conversions(self, direct, relationship):
        assert to_relationship_field(direct) == relationship
        assert to_direct_field(relationship) == direct


class TestFieldMapping:
    """Tests for object, field, clause and external id mapping."""

    def test_mapping_disabled(self):
        obj = mapped_object(("Name", "Title__c", ""), use_field_mapping=False)
        assert map_field("Name", obj) == "Name"
        assert map_where_clause("Name = 'a'", obj) == "Name = 'a'"

    def test_object_name(self):
        obj = mapped_object(("", "", "Client__c"))
        assert map_object_name("Account", obj) == "Client__c"
        assert map_object_name("Account", mapped_object(("Name", "Title__c", ""))) == "Account"

    def test_direct_and_relationship_fields(self):
        obj = mapped_object(("Name", "Title__c", ""), ("Account__c", "Client__c", ""))
        assert map_field("Name", obj) == "Title__c"
        assert map_field("Industry", obj) == "Industry"
        assert map_field("Account__r.Name", obj) == "Client__r.Name"
        assert map_field("Owner.Name", obj) == "Owner.Name"

    def test_where_clause_leaves_literals_and_keywords(self):
        obj = mapped_object(("Name", "Title__c", ""), ("Code__c", "Ref__c", ""))
        where = "Name = 'Name' AND (Code__c IN ('a','b') OR Code__c = null) AND Amount > 100"
        assert map_where_clause(where, obj) == (
            "Title__c = 'Name' AND (Ref__c IN ('a','b') OR Ref__c = null) AND Amount > 100"
        )

    def test_where_clause_escaped_quote(self):
        obj = mapped_object(("Name", "Title__c", ""))
        assert map_where_clause("Name = 'O\\'Name'", obj) == "Title__c = 'O\\'Name'"

    def test_composite_external_id(self):
        obj = mapped_object(("Code__c", "Ref__c", ""))
        assert map_external_id("Name;Code__c", obj) == "Name;Ref__c"


class TestExternalIdValue:
    """Tests for get_external_id_value."""

    def test_single_and_composite(self):
        record = {"Name": "Acme", "Code__c": "42", "Active__c": True, "Empty__c": None}
        assert get_external_id_value(record, ["Name"]) == "Acme"
        assert get_external_id_value(record, ["Name", "Code__c"]) == "Acme;42"
        assert get_external_id_value(record, ["Active__c", "Empty__c"]) == "true;"


class TestLiterals:
    """Tests for value_to_literal."""

    def test_literals(self):
        assert value_to_literal(None) == "NULL"
        assert value_to_literal(True) == "TRUE"
        assert value_to_literal(42) == "42"
        assert value_to_literal(1.5) == "1.5"
        assert value_to_literal("O'Brien") == "'O\\'Brien'"
        assert value_to_literal(date(2024, 1, 31)) == "'2024-01-31'"
        assert value_to_literal(datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)) == "'2024-01-31T12:00:00Z'"


class TestInClause:
    """Tests for build_in_clause."""

    def test_single_clause(self):
        assert build_in_clause("Id", ["a", "b", "a"]) == ["Id IN ('a','b')"]

    def test_with_where(self):
        assert build_in_clause("Id", ["a"], where="Name != null") == ["(Name != null) AND (Id IN ('a'))"]

    def test_no_values(self):
        assert build_in_clause("Id", []) == []

    def test_splits_at_max_length(self):
        values = [f"{i:03d}" for i in range(10)]
        clauses = build_in_clause("Id", values, max_length=30)

        assert all(len(c) <= 30 for c in clauses)
        joined = ",".join(c[len("Id IN ("):-1] for c in clauses)
        assert joined == ",".join(f"'{v}'" for v in values)

    def test_query_overhead_limits_clause(self):
        values = [f"{i:03d}" for i in range(10)]
        clauses = build_in_clause("Id", values, max_length=1000, max_query_length=100, query_overhead=50)
        assert all(len(c) <= 100 - 50 - len(" WHERE ") for c in clauses)
        assert len(clauses) > 1

    def test_oversized_value_is_emitted_alone(self):
        clauses = build_in_clause("Id", ["x" * 50, "a"], max_length=20)
        assert clauses == [f"Id IN ('{'x' * 50}')", "Id IN ('a')"]

    def test_ten_thousand_ids(self):
        values = [f"001{i:015d}" for i in range(10000)]
        clauses = build_in_clause("Id", values, max_length=4000)

        assert len(clauses) > 1
        assert all(len(c) <= 4000 for c in clauses)
        emitted = [v.strip("'") for c in clauses for v in c[len("Id IN ("):-1].split(",")]
        assert sorted(emitted) == values
        assert len(emitted) == len(set(emitted))


class TestOrAndClause:
    """Tests for build_or_and_clause and composite external id clauses."""

    def test_or(self):
        assert build_or_and_clause("or", ["A = 1", "B = 2"]) == ["(A = 1) OR (B = 2)"]

    def test_splits_at_max_length(self):
        sub_clauses = [f"Code__c = '{i:02d}'" for i in range(12)]
        clauses = build_or_and_clause("OR", sub_clauses, max_length=60)

        assert len(clauses) > 1
        assert all(len(c) <= 60 for c in clauses)
        emitted = [part for c in clauses for part in c.split(" OR ")]
        assert emitted == [f"({s})" for s in sub_clauses]

    def test_and_oversized_sub_clause_is_emitted_alone(self):
        long_clause = "Name = '" + "x" * 80 + "'"
        clauses = build_or_and_clause("AND", ["A = 1", long_clause, "B = 2"], max_length=40)

        assert clauses == ["(A = 1)", f"({long_clause})", "(B = 2)"]

    def test_unsupported_operator(self):
        with pytest.raises(ValueError):
            build_or_and_clause("XOR", ["A = 1"])

    def test_single_field_external_id_uses_in(self):
        assert build_external_id_clauses(["Name"], ["a", "b"]) == ["Name IN ('a','b')"]

    def test_composite_external_id(self):
        clauses = build_external_id_clauses(["Name", "Code__c"], ["Acme;1", "Globex;"])
        assert clauses == ["(Name = 'Acme' AND Code__c = '1') OR (Name = 'Globex' AND Code__c = NULL)"]
