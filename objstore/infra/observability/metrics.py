from prometheus_client import Counter, Histogram

# Low-cardinality labels only: provider kind and operation name, never object names.
OPERATIONS = Counter(
    "storage_operations_total",
    "Total object storage operations",
    ["provider", "operation", "outcome"],
)

LATENCY = Histogram(
    "storage_operation_duration_seconds",
    "Object storage operation latency in seconds",
    ["provider", "operation"],
)
