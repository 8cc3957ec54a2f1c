"""Endpoint clients for the two sides of a data move."""

from .base import BaseEndpoint, BaseIngestJob, expand_record
from .csv_endpoint import CsvFileEndpoint
from .salesforce import SalesforceEndpoint

__all__ = [
    "BaseEndpoint",
    "BaseIngestJob",
    "expand_record",
    "CsvFileEndpoint",
    "SalesforceEndpoint",
]
