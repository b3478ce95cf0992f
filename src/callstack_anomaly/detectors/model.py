"""Detector scoring records with a pre-trained model."""

from typing import Protocol

import numpy as np

from callstack_anomaly.array_store import CallStackArrayStore

from .base import AnomalyDetector, AnomalyRun


# Scores at or above this value are anomalies
DEFAULT_ANOMALY_THRESHOLD = 0.5


class AnomalyModel(Protocol):
    """A trained model mapping one flattened record to an anomaly score.

    The input is a 1 x (2 * depth_size * address_size) float64 row: the offset
    matrix stacked over the self-time matrix, see CallStackArray.model_input().
    """

    def score(self, features: np.ndarray) -> float: ...


class ModelAnomalyDetector(AnomalyDetector):
    """Feeds every record to a model and reports its raw score."""

    def __init__(self, model: AnomalyModel, threshold: float = DEFAULT_ANOMALY_THRESHOLD, **kwargs):
        super().__init__(**kwargs)
        self.model = model
        self.threshold = threshold

    @property
    def name(self) -> str:
        return 'model'

    def detect_anomalies(self, store: CallStackArrayStore, run: AnomalyRun) -> None:
        run.threshold = self.threshold
        min_score = max_score = None

        store.init_read()
        run.record_count = store.record_count
        while store.has_next():
            self.check_cancelled()
            record = store.read()
            score = float(self.model.score(record.model_input()))
            min_score = score if min_score is None else min(min_score, score)
            max_score = score if max_score is None else max(max_score, score)
            self.add_result(run, record, score, score >= self.threshold)

        run.min_score = min_score if min_score is not None else 0.0
        run.max_score = max_score if max_score is not None else 0.0
