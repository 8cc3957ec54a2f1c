"""
Query string parsing, composition, field remapping and clause splitting.

The parser is deliberately lenient: malformed input yields empty components
instead of raising, and validation happens later against endpoint schemas.
"""

import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..constants import (
    COMPLEX_EXTERNAL_ID_SEPARATOR,
    ID_FIELD,
    MAX_QUERY_LENGTH,
    MAX_WHERE_CLAUSE_LENGTH,
    POLYMORPHIC_FIELD_SEPARATOR,
)
from ..models.script import ParsedQuery, ScriptObject, split_external_id

_SELECT_FROM_RE = re.compile(r"\bSELECT\s+(.*?)\s+FROM\s+([^\s]+)(?:\s+|$)", re.IGNORECASE | re.DOTALL)
_WHERE_RE = re.compile(
    r"\bWHERE\s+(.*?)(?:\s+ORDER\s+BY\b|\s+LIMIT\b|\s+OFFSET\b|$)", re.IGNORECASE | re.DOTALL
)
_LIMIT_RE = re.compile(r"\bLIMIT\s+(\d+)", re.IGNORECASE)
_OFFSET_RE = re.compile(r"\bOFFSET\s+(\d+)", re.IGNORECASE)
_TOKEN_CHAR_RE = re.compile(r"[A-Za-z0-9_.]")

# Tokens of a filter clause that are never field names
WHERE_CLAUSE_KEYWORDS = frozenset([
    "AND", "OR", "NOT", "IN", "LIKE", "EXCLUDES", "INCLUDES", "IS", "NULL",
    "TRUE", "FALSE", "BETWEEN", "HAVING", "ON", "BY", "WITH", "DISTINCT",
    "SELECT", "FROM", "WHERE", "GROUP", "ORDER", "LIMIT", "OFFSET", "ASC",
    "DESC", "NULLS", "FIRST", "LAST", "TODAY", "YESTERDAY", "TOMORROW",
])


# Parsing / composition -------------------------------------------------------

def parse_query_string(query_string: str) -> ParsedQuery:
    """
    Split a query string into its components.

    A field written as ``Field%Entity`` marks a polymorphic reference: the
    field is kept as ``Field`` and ``Entity`` is recorded in
    ``polymorphic_field_mapping``.
    """
    parsed = ParsedQuery()
    if not query_string:
        return parsed

    select_from = _SELECT_FROM_RE.search(query_string)
    if select_from:
        for raw_field in select_from.group(1).split(","):
            field_name = raw_field.strip()
            if not field_name:
                continue
            if POLYMORPHIC_FIELD_SEPARATOR in field_name:
                field_name, entity = field_name.split(POLYMORPHIC_FIELD_SEPARATOR, 1)
                field_name = field_name.strip()
                parsed.polymorphic_field_mapping[field_name] = entity.strip()
            parsed.fields.append(field_name)
        parsed.object_name = select_from.group(2)

    where = _WHERE_RE.search(query_string)
    if where and where.group(1):
        parsed.where = where.group(1).strip()

    limit = _LIMIT_RE.search(query_string)
    if limit:
        parsed.limit = int(limit.group(1))

    offset = _OFFSET_RE.search(query_string)
    if offset:
        parsed.offset = int(offset.group(1))

    return parsed


def compose_query_string(
    query: ParsedQuery,
    fields: Optional[List[str]] = None,
    object_name: Optional[str] = None,
    where: Optional[str] = None,
    drop_limits: bool = False,
) -> str:
    """Rebuild a query string, optionally overriding any of its components."""
    select_fields = fields if fields is not None else query.fields
    parts = [f"SELECT {', '.join(select_fields) if select_fields else ID_FIELD}"]
    parts.append(f"FROM {object_name or query.object_name}")

    where = query.where if where is None else where
    if where:
        parts.append(f"WHERE {where}")

    if not drop_limits:
        if query.limit > 0:
            parts.append(f"LIMIT {query.limit}")
        if query.offset > 0:
            parts.append(f"OFFSET {query.offset}")

    return " ".join(parts)


def compose_object_query(
    obj: ScriptObject,
    use_target: bool = False,
    fields: Optional[List[str]] = None,
    where: Optional[str] = None,
    drop_limits: bool = False,
) -> str:
    """Compose the query of a script object in source or target spelling."""
    extra = obj.extra
    if not use_target:
        return compose_query_string(extra.query, fields=fields, where=where, drop_limits=drop_limits)

    select_fields = fields if fields is not None else extra.query.fields
    select_fields = [extra.field_mapping.get(f) or map_field(f, obj) for f in select_fields]
    return compose_query_string(
        extra.query,
        fields=select_fields,
        object_name=obj.target_name,
        where=extra.target_where if where is None else where,
        drop_limits=drop_limits,
    )


# Relationship spelling -------------------------------------------------------

def is_relationship_field(field_name: str) -> bool:
    return "." in field_name


def to_relationship_field(field_name: str) -> str:
    """Account__c -> Account__r, Contact__pc -> Contact__pr, AccountId -> Account."""
    base, sep, rest = field_name.partition(".")
    if base.endswith("__c"):
        base = base[:-3] + "__r"
    elif base.endswith("__pc"):
        base = base[:-4] + "__pr"
    elif base.endswith("Id") and len(base) > 2:
        base = base[:-2]
    return base + sep + rest


def to_direct_field(field_name: str) -> str:
    """Account__r -> Account__c, Contact__pr -> Contact__pc, Account -> AccountId."""
    base, sep, rest = field_name.partition(".")
    if base.endswith("__r"):
        base = base[:-3] + "__c"
    elif base.endswith("__pr"):
        base = base[:-4] + "__pc"
    elif not base.endswith("Id"):
        base = base + "Id"
    return base + sep + rest


# Field mapping ---------------------------------------------------------------

def _mapping_table(obj: ScriptObject) -> Dict[str, str]:
    return {
        item.source_field: item.target_field
        for item in obj.field_mapping
        if item.source_field and item.target_field
    }


def map_object_name(object_name: str, obj: ScriptObject) -> str:
    if not obj.use_field_mapping:
        return object_name
    for item in obj.field_mapping:
        if item.target_object:
            return item.target_object
    return object_name


def map_field(field_name: str, obj: ScriptObject) -> str:
    """Map a source field (direct or relationship spelling) to its target name."""
    if not obj.use_field_mapping:
        return field_name
    table = _mapping_table(obj)
    if not is_relationship_field(field_name):
        return table.get(field_name, field_name)

    relationship, _, rest = field_name.partition(".")
    direct = to_direct_field(relationship)
    mapped_direct = table.get(direct, direct)
    if mapped_direct == direct:
        return field_name
    return f"{to_relationship_field(mapped_direct)}.{rest}"


def map_where_clause(where: str, obj: ScriptObject) -> str:
    """Map every field token of a filter clause, leaving keywords and literals alone."""
    if not obj.use_field_mapping or not where:
        return where

    def map_token(token: str) -> str:
        if token.upper() in WHERE_CLAUSE_KEYWORDS or token[0].isdigit():
            return token
        return map_field(token, obj)

    result = []
    token = ""
    quote: Optional[str] = None
    escaped = False

    for char in where:
        if quote:
            result.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
            continue

        if char in ("'", '"'):
            if token:
                result.append(map_token(token))
                token = ""
            quote = char
            result.append(char)
        elif _TOKEN_CHAR_RE.match(char):
            token += char
        else:
            if token:
                result.append(map_token(token))
                token = ""
            result.append(char)

    if token:
        result.append(map_token(token))

    return "".join(result)


def map_external_id(external_id: str, obj: ScriptObject) -> str:
    if not obj.use_field_mapping:
        return external_id
    return COMPLEX_EXTERNAL_ID_SEPARATOR.join(
        map_field(part, obj) for part in split_external_id(external_id)
    )


def get_external_id_value(record: Mapping[str, Any], external_id_fields: List[str]) -> str:
    """Value of a (possibly composite) external id on a flat record."""
    values = []
    for field_name in external_id_fields:
        value = record.get(field_name)
        if value is None:
            value = ""
        elif isinstance(value, bool):
            value = "true" if value else "false"
        values.append(str(value))
    return COMPLEX_EXTERNAL_ID_SEPARATOR.join(values)


# Literals and clause splitting -----------------------------------------------

def value_to_literal(value: Any) -> str:
    """Render a Python value as a query literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return f"'{value.strftime('%Y-%m-%dT%H:%M:%SZ')}'"
    if isinstance(value, date):
        return f"'{value.isoformat()}'"
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace("'", "\\'")
        return f"'{escaped}'"
    return f"'{value}'"


def _unique(items: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def _effective_limit(max_length: int, max_query_length: int, query_overhead: int) -> int:
    # " WHERE " joins the clause to the rest of the query
    return min(max_length, max_query_length - query_overhead - len(" WHERE "))


def _pack(items: List[str], prefix: str, suffix: str, joiner: str, limit: int) -> List[str]:
    """Greedily pack items; start a new clause exactly when the next item would overflow."""
    overhead = len(prefix) + len(suffix)
    clauses = []
    current: List[str] = []
    current_length = overhead

    for item in items:
        added = len(item) + (len(joiner) if current else 0)
        if current and current_length + added > limit:
            clauses.append(prefix + joiner.join(current) + suffix)
            current = []
            current_length = overhead
            added = len(item)
        current.append(item)
        current_length += added

    if current:
        clauses.append(prefix + joiner.join(current) + suffix)
    return clauses


def build_in_clause(
    field_name: str,
    values: Iterable[Any],
    where: str = "",
    max_length: int = MAX_WHERE_CLAUSE_LENGTH,
    max_query_length: int = MAX_QUERY_LENGTH,
    query_overhead: int = 0,
) -> List[str]:
    """
    Build the fewest ``field IN (...)`` clauses that cover every value.

    ``query_overhead`` is the length of the query the clause will be
    appended to, so the composed query also stays within
    ``max_query_length``. A single value too long for any clause is still
    emitted on its own.
    """
    literals = _unique(value_to_literal(v) for v in values)
    if not literals:
        return []

    if where:
        prefix, suffix = f"({where}) AND ({field_name} IN (", "))"
    else:
        prefix, suffix = f"{field_name} IN (", ")"

    limit = _effective_limit(max_length, max_query_length, query_overhead)
    return _pack(literals, prefix, suffix, ",", limit)


def build_or_and_clause(
    operator: str,
    clauses: Iterable[str],
    where: str = "",
    max_length: int = MAX_WHERE_CLAUSE_LENGTH,
    max_query_length: int = MAX_QUERY_LENGTH,
    query_overhead: int = 0,
) -> List[str]:
    """Combine sub-clauses with OR/AND into the fewest length-bounded clauses."""
    operator = operator.strip().upper()
    if operator not in ("OR", "AND"):
        raise ValueError(f"Unsupported boolean operator: {operator}")

    parts = _unique(f"({c})" for c in clauses if c)
    if not parts:
        return []

    if where:
        prefix, suffix = f"({where}) AND (", ")"
    else:
        prefix, suffix = "", ""

    limit = _effective_limit(max_length, max_query_length, query_overhead)
    return _pack(parts, prefix, suffix, f" {operator} ", limit)


def build_external_id_clauses(
    external_id_fields: List[str],
    values: Iterable[str],
    where: str = "",
    max_length: int = MAX_WHERE_CLAUSE_LENGTH,
    max_query_length: int = MAX_QUERY_LENGTH,
    query_overhead: int = 0,
) -> List[str]:
    """Clauses matching records by (possibly composite) external id values."""
    if len(external_id_fields) == 1:
        return build_in_clause(
            external_id_fields[0], values, where, max_length, max_query_length, query_overhead
        )

    sub_clauses = []
    for value in values:
        parts = value.split(COMPLEX_EXTERNAL_ID_SEPARATOR)
        conditions = []
        for index, field_name in enumerate(external_id_fields):
            part = parts[index] if index < len(parts) else ""
            literal = value_to_literal(part) if part != "" else "NULL"
            conditions.append(f"{field_name} = {literal}")
        sub_clauses.append(" AND ".join(conditions))

    return build_or_and_clause("OR", sub_clauses, where, max_length, max_query_length, query_overhead)
