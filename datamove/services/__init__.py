"""Service layer for the data-move engine."""

from .csv_files import CsvFileSink, read_csv_rows
from .dependency import build_dependency_graph, compute_object_weights, compute_objects_order
from .engine_selector import suggest_polling_settings, suggest_query_engine, suggest_update_engine
from .query_builder import compose_query_string, parse_query_string

__all__ = [
    "CsvFileSink",
    "read_csv_rows",
    "build_dependency_graph",
    "compute_object_weights",
    "compute_objects_order",
    "suggest_polling_settings",
    "suggest_query_engine",
    "suggest_update_engine",
    "compose_query_string",
    "parse_query_string",
]
