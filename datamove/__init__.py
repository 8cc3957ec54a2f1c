"""
Data Move Engine

Moves records between two schema-described endpoints (two orgs, or an org
and a directory of CSV files) under a declarative JSON script.

Supports:
- Insert, update, upsert, delete and read-only objects
- External-id based record matching, including composite external ids
- Source to target field and entity remapping
- Dependency-ordered writes and reverse-ordered deletes
- Cost-based choice between the REST and Bulk transports
- Streaming CSV staging with backpressure and bulk job polling
"""

__version__ = "0.1.0"
