"""Call stack anomaly analysis: encode a trace once, then run one detector over it.

Steps of a run:
1. Unless the array store already exists, rebuild the call tree, compute the
   trace metadata and write one CallStackArray per root call.
2. Statistical analysis: StatisticalAnomalyDetector.
   Model apply: import the model container, then use ModelAnomalyDetector if
   the trace dimensions match the model exactly, MetadataAnomalyDetector
   otherwise.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from time import time

from callstack_anomaly import prometheus as prom
from callstack_anomaly.array_store import CallStackArrayStore
from callstack_anomaly.arrays import CallStackArray
from callstack_anomaly.compression import CompressionFormat
from callstack_anomaly.detectors import (
    DEFAULT_ANOMALY_THRESHOLD,
    AnomalyDetector,
    AnomalyRun,
    MetadataAnomalyDetector,
    ModelAnomalyDetector,
    ResultSink,
    StatisticalAnomalyDetector,
    is_metadata_compatible,
)
from callstack_anomaly.errors import (
    AnalysisCancelled,
    ArrayStoreError,
    ModelContainerError,
    RecordDecodeError,
    check_cancelled,
)
from callstack_anomaly.model_container import import_model_container
from callstack_anomaly.models import ArrayEncoding, CallStackMetadata
from callstack_anomaly.stack_model import build_stack_model, compute_trace_metadata
from callstack_anomaly.tree import CallIntervalLike, build_call_tree
from callstack_anomaly.utils import get_float_env, get_int_env, get_str_env


logger = logging.getLogger(__name__)

# Progress units reported through progress_callback
WORK_METADATA = 1
WORK_ARRAYS = 2
WORK_ANALYSIS = 3
WORK_TOTAL = WORK_METADATA + WORK_ARRAYS + WORK_ANALYSIS


def store_error_type(error: ArrayStoreError) -> str:
    """Error label for the csa_errors_total metric."""
    return 'record_decode' if isinstance(error, RecordDecodeError) else 'store_io'


class AnalysisType(str, Enum):
    STATISTICAL = 'statistical'
    MODEL_APPLY = 'model_apply'

    @classmethod
    def from_string(cls, value: str) -> 'AnalysisType':
        try:
            return cls(value.strip().lower().replace('-', '_'))
        except ValueError:
            raise ValueError(f'Unsupported analysis type: {value!r}') from None


def _default_encoding() -> ArrayEncoding:
    return ArrayEncoding.from_string(get_str_env('CSA_ARRAY_ENCODING', ArrayEncoding.DENSE.value))


def _default_compression() -> CompressionFormat:
    return CompressionFormat.from_string(get_str_env('CSA_COMPRESSION', CompressionFormat.ZSTD.value))


@dataclass
class AnalysisParameters:
    """Parameters of one analysis run.

    Defaults for n_value, anomaly_threshold, encoding_mode and compression come
    from CSA_N_VALUE, CSA_ANOMALY_THRESHOLD, CSA_ARRAY_ENCODING and
    CSA_COMPRESSION.
    """

    analysis_type: AnalysisType = AnalysisType.STATISTICAL
    target_depth: int = 1
    n_value: int = field(default_factory=lambda: get_int_env('CSA_N_VALUE', 1))
    model_container_path: Path | None = None
    anomaly_threshold: float = field(
        default_factory=lambda: get_float_env('CSA_ANOMALY_THRESHOLD', DEFAULT_ANOMALY_THRESHOLD)
    )
    encoding_mode: ArrayEncoding = field(default_factory=_default_encoding)
    compression: CompressionFormat = field(default_factory=_default_compression)

    def __post_init__(self):
        if self.target_depth < 1:
            raise ValueError(f'target_depth must be >= 1, got {self.target_depth}')
        if self.n_value < 0:
            raise ValueError(f'n_value must be >= 0, got {self.n_value}')
        if self.analysis_type == AnalysisType.MODEL_APPLY and self.model_container_path is None:
            raise ValueError('model_container_path is required for model_apply analysis')
        if self.model_container_path is not None:
            self.model_container_path = Path(self.model_container_path)


class CallStackAnomalyAnalysis:
    """Runs the full analysis for one trace against one array store."""

    def __init__(
        self,
        store_path: str | Path,
        parameters: AnalysisParameters,
        sink: ResultSink | None = None,
        progress_callback: Callable[[int, int], None] | None = None,
        is_cancelled: Callable[[], bool] | None = None,
        log: logging.Logger | None = None,
    ):
        """Initialize the analysis.

        Args:
            store_path: Directory of the array store, reused when it already exists
            parameters: Analysis parameters
            sink: Receives per-record scores and trace-wide info
            progress_callback: Called with (units done, WORK_TOTAL) after each step
            is_cancelled: Checked between roots, records and steps
            log: Logger to use instead of the module logger
        """
        self.parameters = parameters
        self.sink = sink
        self.progress_callback = progress_callback
        self.is_cancelled = is_cancelled
        self.log = log or logger
        self.store = CallStackArrayStore(store_path, compression=parameters.compression, log=self.log)
        self.metadata: CallStackMetadata | None = None
        self._progress = 0

    def run(self, intervals: Iterable[CallIntervalLike]) -> AnomalyRun | None:
        """Encode the trace if needed and run the configured detector.

        Returns:
            The detector results, or None if the run was aborted (no root calls,
            unusable model container)

        Raises:
            AnalysisCancelled: If is_cancelled fires; no partial store is left behind
            ArrayStoreError: On store I/O or decode failures
        """
        analysis_type = self.parameters.analysis_type.value
        start_time = time()
        status = 'error'
        self._progress = 0
        self.log.info(f'Starting {analysis_type} analysis on {self.store.path}')

        try:
            if self.store.exists():
                prom.record_store_cache(True)
                self.log.info(f'Reusing existing array store {self.store.path}')
                self._advance(WORK_METADATA + WORK_ARRAYS)
            else:
                prom.record_store_cache(False)
                if not self.encode(intervals):
                    self.log.error('Call stack arrays generation failed')
                    self.store.dispose()
                    status = 'no_roots'
                    return None

            self._check_cancelled('analysis')
            result = self.perform_analysis()
            status = 'success' if result is not None else 'aborted'
            return result
        except AnalysisCancelled:
            status = 'cancelled'
            self.log.warning(f'{analysis_type} analysis cancelled')
            raise
        except ArrayStoreError as e:
            prom.record_error(store_error_type(e))
            self.log.error(f'{analysis_type} analysis failed: {e}')
            raise
        finally:
            prom.record_analysis(analysis_type, status, time() - start_time)

    def encode(self, intervals: Iterable[CallIntervalLike]) -> bool:
        """Rebuild the call tree and write one array per root call.

        Returns:
            False if there are no root calls at the target depth (nothing written)
        """
        start_time = time()
        intervals = list(intervals)
        tree = build_call_tree(intervals, self.parameters.target_depth, is_cancelled=self.is_cancelled, log=self.log)
        if not tree.roots:
            self.log.error(f'No root calls found at depth {self.parameters.target_depth}')
            return False

        self.metadata = compute_trace_metadata(tree, is_cancelled=self.is_cancelled)
        self._advance(WORK_METADATA)

        self.store.init_write(self.metadata, self.parameters.encoding_mode)
        completed = False
        try:
            for root_id in tree.roots:
                self._check_cancelled('array generation')
                model = build_stack_model(tree, root_id)
                self.store.write(CallStackArray.from_stack_model(model, self.metadata))
            completed = True
        finally:
            if completed:
                self.store.close_write()
            else:
                # A failed or cancelled write leaves no store behind
                self.store.dispose()

        duration = time() - start_time
        prom.record_encoding(duration, len(intervals), len(tree.roots), self.metadata.address_size)
        self.log.info(
            f'Encoded {len(tree.roots)} root calls from {len(intervals)} intervals in {duration:.2f}s '
            f'(arrays {self.metadata.depth_size}x{self.metadata.address_size})'
        )
        self._advance(WORK_ARRAYS)
        return True

    def detect(self) -> AnomalyRun | None:
        """Run the configured detector over an existing store, recording the outcome.

        Raises:
            AnalysisCancelled: If is_cancelled fires
            ArrayStoreError: On store I/O or decode failures
        """
        analysis_type = self.parameters.analysis_type.value
        start_time = time()
        status = 'error'
        try:
            result = self.perform_analysis()
            status = 'success' if result is not None else 'aborted'
            return result
        except AnalysisCancelled:
            status = 'cancelled'
            raise
        except ArrayStoreError as e:
            prom.record_error(store_error_type(e))
            self.log.error(f'{analysis_type} detection failed: {e}')
            raise
        finally:
            prom.record_analysis(analysis_type, status, time() - start_time)

    def perform_analysis(self) -> AnomalyRun | None:
        """Run the detector selected by the parameters over the existing store."""
        if self.parameters.analysis_type == AnalysisType.STATISTICAL:
            detector = StatisticalAnomalyDetector(self.parameters.n_value, **self._detector_kwargs())
        else:
            detector = self.select_model_detector()
            if detector is None:
                return None

        result = detector.apply(self.store)
        self._advance(WORK_ANALYSIS)
        return result

    def select_model_detector(self) -> AnomalyDetector | None:
        """Load the model container and pick the model or the metadata detector."""
        try:
            container = import_model_container(self.parameters.model_container_path)
        except ModelContainerError as e:
            prom.record_error('model_container')
            self.log.error(f'Model container import failed; aborting: {e}')
            return None

        trace_metadata = self.store.read_header().metadata
        self.metadata = trace_metadata
        if is_metadata_compatible(*trace_metadata.dimensions, *container.metadata.dimensions):
            self.log.info(f'Applying model from {container.path}')
            return ModelAnomalyDetector(
                container.model, threshold=self.parameters.anomaly_threshold, **self._detector_kwargs()
            )

        prom.record_metadata_fallback()
        self.log.warning(
            f'Trace dimensions {trace_metadata.dimensions} do not match model dimensions '
            f'{container.metadata.dimensions}; looking for unknown call stacks instead'
        )
        return MetadataAnomalyDetector(container.metadata, **self._detector_kwargs())

    def _detector_kwargs(self) -> dict:
        return {'sink': self.sink, 'is_cancelled': self.is_cancelled, 'log': self.log}

    def _check_cancelled(self, step: str) -> None:
        check_cancelled(self.is_cancelled, step)

    def _advance(self, work: int) -> None:
        self._progress += work
        if self.progress_callback is not None:
            self.progress_callback(self._progress, WORK_TOTAL)
