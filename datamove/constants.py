"""Constants shared across the data-move engine.

Limits and cost weights here are defaults only. Anything the engine selector
or the clause builder consumes can be overridden through ``EngineSettings``.
"""

# Script / files
DEFAULT_CONFIG_PATH = "./export.json"
DEFAULT_WORK_SUB_DIRECTORY = "datamove"
CSV_SOURCE_SUB_DIRECTORY = "source"
CSV_TARGET_SUB_DIRECTORY = "target"
DEFAULT_ENCODING = "utf-8"
REPORT_FILE_PREFIX = "datamove_report"

# Record identity
ID_FIELD = "Id"
COMPLEX_EXTERNAL_ID_SEPARATOR = ";"
POLYMORPHIC_FIELD_SEPARATOR = "%"

# SELECT list keywords that expand against the source schema
FIELD_KEYWORD_ALL = "all"
FIELD_KEYWORD_CUSTOM = "custom"
FIELD_KEYWORD_STANDARD = "standard"
FIELD_KEYWORD_UPDATEABLE = "updateable"
FIELD_KEYWORD_LOOKUP = "lookup"
FIELD_KEYWORDS = (
    FIELD_KEYWORD_ALL,
    FIELD_KEYWORD_CUSTOM,
    FIELD_KEYWORD_STANDARD,
    FIELD_KEYWORD_UPDATEABLE,
    FIELD_KEYWORD_LOOKUP,
)

# Fallback external ids per entity, checked before the schema heuristics
DEFAULT_EXTERNAL_ID = {
    "EmailMessage": "Subject",
    "Case": "CaseNumber",
    "Contact": "Email",
    "Lead": "Email",
    "Opportunity": "Name",
    "User": "Username",
    "RecordType": "DeveloperName;NamespacePrefix;SobjectType",
}

# Query length limits (characters)
MAX_WHERE_CLAUSE_LENGTH = 3900
MAX_QUERY_LENGTH = 100_000

# Transport capacities
REST_API_MAX_RECORDS_PER_CALL = 2000
REST_API_MAX_RECORDS_PER_BATCH = 200
BULK_API_MAX_RECORDS_PER_BATCH = 10_000

# Update engine cost model (arbitrary units, only compared to each other)
REST_API_BASE_COST_PER_CALL = 0.1
REST_API_COST_PER_RECORD = 0.001
BULK_API_BASE_COST_PER_JOB = 1.0
BULK_API_COST_PER_RECORD = 0.0005

# Bulk job polling (seconds)
BULK_API_POLL_MIN_INTERVAL = 10.0
BULK_API_POLL_MAX_INTERVAL = 30.0
BULK_API_POLL_MAX_TIMEOUT = 300.0
BULK_API_POLL_RECORD_SCALE_FACTOR = 100_000

# Progress callbacks fire on this cadence (seconds)
PROGRESS_REPORT_INTERVAL = 5.0

# Buffered characters before a CSV sink asks the producer to wait for drain
FILE_WRITE_HIGH_WATER_MARK = 64 * 1024

# Pipeline
CHILD_QUERY_RETRY_ROUNDS = 3
STATUS_FILE_COLUMNS = ["Id", "Created", "Error", "Status"]
STATUS_SUCCESS = "Success"
STATUS_ERROR = "Error"

# Salesforce REST
DEFAULT_API_VERSION = "61.0"
SFORCE_CALL_OPTIONS_HEADER = {"Sforce-Call-Options": "client=datamove"}
