"""Base classes, result types and result sinks for anomaly detection."""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from time import time
from typing import Protocol

from callstack_anomaly import prometheus as prom
from callstack_anomaly.array_store import CallStackArrayStore
from callstack_anomaly.arrays import CallStackArray
from callstack_anomaly.errors import ArrayStoreError, check_cancelled
from callstack_anomaly.models import AnomalyScore, DetectionResponse


logger = logging.getLogger(__name__)

# Attribute keys written to result sinks
RESULTS_KEY = 'Results'
INFO_KEY = 'Info'
INFO_MIN_KEY = f'{INFO_KEY}/min'
INFO_MAX_KEY = f'{INFO_KEY}/max'
INFO_THRESHOLD_KEY = f'{INFO_KEY}/threshold'


def results_key(depth: int) -> str:
    return f'{RESULTS_KEY}/{depth}'


class ResultSink(Protocol):
    """Time-indexed attribute store receiving detection results."""

    def set_value(self, timestamp: int, value: float, key: str) -> None: ...

    def clear_value(self, timestamp: int, key: str) -> None: ...


class MemoryResultSink:
    """In-memory ResultSink keeping, per key, the ordered list of value changes.

    A value set at t1 and cleared at t2 is valid over [t1, t2).
    """

    def __init__(self):
        self.changes: dict[str, list[tuple[int, float | None]]] = {}

    def set_value(self, timestamp: int, value: float, key: str) -> None:
        self.changes.setdefault(key, []).append((timestamp, value))

    def clear_value(self, timestamp: int, key: str) -> None:
        self.changes.setdefault(key, []).append((timestamp, None))

    def keys(self) -> list[str]:
        return sorted(self.changes)

    def value_at(self, key: str, timestamp: int) -> float | None:
        """Return the value of key at timestamp, or None if unset/cleared."""
        current = None
        for change_time, value in sorted(self.changes.get(key, []), key=lambda c: c[0]):
            if change_time > timestamp:
                break
            current = value
        return current


@dataclass
class AnomalyResult:
    """Score of one root call."""

    timestamp: int
    duration: int
    depth: int
    address: int
    score: float
    is_anomaly: bool


@dataclass
class AnomalyRun:
    """All results of one detector over one store, plus trace-wide info."""

    detector: str
    results: list[AnomalyResult] = field(default_factory=list)
    record_count: int = 0
    min_score: float = 0.0
    max_score: float = 1.0
    threshold: float = 0.0
    elapsed: float = 0.0

    @property
    def anomaly_count(self) -> int:
        return sum(1 for result in self.results if result.is_anomaly)

    @property
    def start_timestamp(self) -> int:
        return min((result.timestamp for result in self.results), default=0)

    def score_of(self, timestamp: int) -> float | None:
        for result in self.results:
            if result.timestamp == timestamp:
                return result.score
        return None

    def to_response(self, store_path: str) -> DetectionResponse:
        return DetectionResponse(
            detector=self.detector,
            store_path=store_path,
            record_count=self.record_count,
            scored_count=len(self.results),
            anomaly_count=self.anomaly_count,
            min_score=self.min_score,
            max_score=self.max_score,
            threshold=self.threshold,
            time=round(self.elapsed, 3),
            scores=[
                AnomalyScore(
                    timestamp=r.timestamp,
                    duration=r.duration,
                    depth=r.depth,
                    address=r.address,
                    score=r.score,
                    is_anomaly=r.is_anomaly,
                )
                for r in self.results
            ],
        )


class AnomalyDetector(ABC):
    """Base class for detectors scoring the records of an array store.

    Subclasses implement detect_anomalies(); apply() takes care of closing the
    read stream, publishing trace-wide info and metrics.
    """

    def __init__(
        self,
        sink: ResultSink | None = None,
        is_cancelled: Callable[[], bool] | None = None,
        log: logging.Logger | None = None,
    ):
        self.sink = sink
        self.is_cancelled = is_cancelled
        self.log = log or logger

    @property
    @abstractmethod
    def name(self) -> str:
        """Detector identifier (e.g., 'statistical', 'metadata')."""
        pass

    @abstractmethod
    def detect_anomalies(self, store: CallStackArrayStore, run: AnomalyRun) -> None:
        """Score every record of the store into run.

        Implementations open the read stream themselves; apply() closes it.
        """
        pass

    def apply(self, store: CallStackArrayStore) -> AnomalyRun:
        """Run the detector over a store.

        Raises:
            ArrayStoreError: If the store cannot be read (the stream is closed first)
            AnalysisCancelled: If is_cancelled fires
        """
        run = AnomalyRun(detector=self.name)
        start_time = time()
        try:
            self.detect_anomalies(store, run)
        except ArrayStoreError as e:
            self.log.error(f'{type(self).__name__} failed on {store.path}: {e}')
            raise
        finally:
            store.close_read()
        run.elapsed = time() - start_time

        self._publish_info(run)
        prom.record_detection(self.name, len(run.results), run.anomaly_count, run.elapsed)
        self.log.info(
            f'{self.name} detection: {len(run.results)} of {run.record_count} records scored, '
            f'{run.anomaly_count} anomalies in {run.elapsed:.2f}s'
        )
        return run

    def check_cancelled(self) -> None:
        check_cancelled(self.is_cancelled, f'{self.name} detection')

    def add_result(self, run: AnomalyRun, record: CallStackArray, score: float, is_anomaly: bool) -> None:
        """Record a score and publish it as valid over the root call's interval."""
        run.results.append(
            AnomalyResult(
                timestamp=record.timestamp,
                duration=record.duration,
                depth=record.depth,
                address=record.address,
                score=score,
                is_anomaly=is_anomaly,
            )
        )
        if self.sink is not None:
            key = results_key(record.depth)
            self.sink.set_value(record.timestamp, score, key)
            self.sink.clear_value(record.timestamp + record.duration, key)

    def _publish_info(self, run: AnomalyRun) -> None:
        if self.sink is None:
            return
        start = run.start_timestamp
        self.sink.set_value(start, run.min_score, INFO_MIN_KEY)
        self.sink.set_value(start, run.max_score, INFO_MAX_KEY)
        self.sink.set_value(start, run.threshold, INFO_THRESHOLD_KEY)
