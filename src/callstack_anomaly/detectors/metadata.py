"""Metadata compatibility checks and the fallback detector built on them."""

from callstack_anomaly.array_store import CallStackArrayStore
from callstack_anomaly.models import CallStackMetadata

from .base import AnomalyDetector, AnomalyRun


def is_metadata_valid(num_rows: int, num_cols: int, model_rows: int, model_cols: int) -> bool:
    """True if an array of num_rows x num_cols fits in a model's dimensions."""
    return num_rows <= model_rows and num_cols <= model_cols


def is_metadata_compatible(trace_rows: int, trace_cols: int, model_rows: int, model_cols: int) -> bool:
    """True if a trace's arrays can be fed to a model as is.

    Requires exact equality of both dimensions, unlike is_metadata_valid().
    """
    return trace_rows == model_rows and trace_cols == model_cols


class MetadataAnomalyDetector(AnomalyDetector):
    """Fallback used when a trace does not match a model's dimensions.

    Every record whose local dimensions exceed the model's metadata is a call
    shape the model has never seen: it scores 1.0, the others 0.0.
    """

    def __init__(self, model_metadata: CallStackMetadata, **kwargs):
        super().__init__(**kwargs)
        self.model_metadata = model_metadata

    @property
    def name(self) -> str:
        return 'metadata'

    def detect_anomalies(self, store: CallStackArrayStore, run: AnomalyRun) -> None:
        run.min_score, run.max_score, run.threshold = 0.0, 1.0, 1.0
        model_rows, model_cols = self.model_metadata.dimensions

        store.init_read()
        run.record_count = store.record_count
        while store.has_next():
            self.check_cancelled()
            record = store.read()
            is_anomaly = not is_metadata_valid(record.num_rows, record.num_cols, model_rows, model_cols)
            self.add_result(run, record, 1.0 if is_anomaly else 0.0, is_anomaly)
