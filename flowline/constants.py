DEFINITION_SCHEMA_VERSIONS = frozenset({"1"})

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5

DEFAULT_MAX_STEPS = 1_000
WEBHOOK_SIGNATURE_HEADER = "X-Signature"
WEBHOOK_TIMESTAMP_HEADER = "X-Timestamp"
SCHEDULER_LEASE_NAME = "scheduler"
