"""Prometheus metrics for call stack anomaly analysis"""

from prometheus_client import REGISTRY, Counter, Histogram, write_to_textfile

# ============================================================================
# Analysis Metrics
# ============================================================================

# Total number of analysis runs
analysis_runs_total = Counter(
    'csa_analysis_runs_total',
    'Total number of call stack anomaly analysis runs',
    ['analysis_type', 'status'],  # status: success, aborted, no_roots, cancelled, error
)

analysis_duration_seconds = Histogram(
    'csa_analysis_duration_seconds',
    'Time spent in a full analysis run',
    ['analysis_type'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0],
)


# ============================================================================
# Encoding Metrics
# ============================================================================

# Calls handed over by the call-graph collaborator
intervals_processed_total = Counter('csa_intervals_processed_total', 'Total number of call intervals processed')

records_encoded_total = Counter('csa_records_encoded_total', 'Total number of call stack arrays written to stores')

encoding_duration_seconds = Histogram(
    'csa_encoding_duration_seconds',
    'Time to build the call tree and write the array store',
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0],
)

# Columns of the arrays of a trace (sum of per-address maxima)
array_address_size = Histogram(
    'csa_array_address_size',
    'Number of columns of the arrays of an encoded trace',
    buckets=[1, 5, 10, 50, 100, 500, 1000, 5000, 10000],
)


# ============================================================================
# Detection Metrics
# ============================================================================

records_scored_total = Counter(
    'csa_records_scored_total',
    'Total number of records scored',
    ['detector'],  # statistical, model, metadata
)

anomalies_found_total = Counter('csa_anomalies_found_total', 'Total number of anomalous records', ['detector'])

detection_duration_seconds = Histogram(
    'csa_detection_duration_seconds',
    'Time spent by one detector over a store',
    ['detector'],
    buckets=[0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0],
)

# Model runs that fell back to the metadata detector
metadata_fallbacks_total = Counter(
    'csa_metadata_fallbacks_total', 'Number of model runs replaced by metadata checks (incompatible trace)'
)


# ============================================================================
# Store Metrics
# ============================================================================

store_cache_hits_total = Counter('csa_store_cache_hits_total', 'Number of analyses reusing an existing array store')

store_cache_misses_total = Counter('csa_store_cache_misses_total', 'Number of analyses that had to encode a store')


# ============================================================================
# Error Metrics
# ============================================================================

errors_total = Counter(
    'csa_errors_total',
    'Total errors by type',
    ['error_type'],  # store_io, record_decode, model_container
)


# ============================================================================
# Helper Functions
# ============================================================================


def record_encoding(duration: float, num_intervals: int, num_records: int, address_size: int):
    """
    Record metrics for building an array store.

    Args:
        duration: Encoding duration in seconds
        num_intervals: Number of call intervals read
        num_records: Number of records written
        address_size: Column count of the trace metadata
    """
    encoding_duration_seconds.observe(duration)
    intervals_processed_total.inc(num_intervals)
    records_encoded_total.inc(num_records)
    array_address_size.observe(address_size)


def record_detection(detector: str, num_scored: int, num_anomalies: int, duration: float):
    """Record metrics for one detector run."""
    records_scored_total.labels(detector=detector).inc(num_scored)
    anomalies_found_total.labels(detector=detector).inc(num_anomalies)
    detection_duration_seconds.labels(detector=detector).observe(duration)


def record_analysis(analysis_type: str, status: str, duration: float):
    """Record the outcome of a full analysis run."""
    analysis_runs_total.labels(analysis_type=analysis_type, status=status).inc()
    analysis_duration_seconds.labels(analysis_type=analysis_type).observe(duration)


def record_store_cache(hit: bool):
    if hit:
        store_cache_hits_total.inc()
    else:
        store_cache_misses_total.inc()


def record_metadata_fallback():
    metadata_fallbacks_total.inc()


def record_error(error_type: str):
    """Record an error by type."""
    errors_total.labels(error_type=error_type).inc()


def write_metrics(path: str) -> None:
    """Write the current metrics in text exposition format (e.g., for a textfile collector)."""
    write_to_textfile(path, REGISTRY)
