"""Statistical anomaly detector."""

import numpy as np

from callstack_anomaly.array_store import CallStackArrayStore

from .base import AnomalyDetector, AnomalyRun


class StatisticalAnomalyDetector(AnomalyDetector):
    """Flags root calls whose timings stray from calls at the same tree position.

    Records are grouped by the (address, depth) of their root call. For each
    group, the element-wise mean and standard deviation of the offset and
    self-time matrices are computed over all its records. A record is
    anomalous (score 1.0) if any element fails

        value - mean <= n_value * std

    in either matrix, otherwise it scores 0.0. Values are compared per cell,
    so a single abnormal call slot is enough to flag the whole sub-tree.

    Reads the store twice: once to build the statistics, once to score.
    """

    # Sample standard deviation; groups of a single record get std 0
    STD_DDOF = 1

    def __init__(self, n_value: int = 1, **kwargs):
        """Initialize the detector.

        Args:
            n_value: Number of standard deviations tolerated above the mean (>= 0)
            **kwargs: sink, is_cancelled and log, see AnomalyDetector
        """
        super().__init__(**kwargs)
        if n_value < 0:
            raise ValueError(f'n_value must be >= 0, got {n_value}')
        self.n_value = n_value
        self.stats: dict[tuple[int, int], tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]] = {}

    @property
    def name(self) -> str:
        return 'statistical'

    def detect_anomalies(self, store: CallStackArrayStore, run: AnomalyRun) -> None:
        run.min_score, run.max_score, run.threshold = 0.0, 1.0, 0.0

        groups = self._group_arrays(store)
        self.stats = {key: self._compute_stats(offsets, self_times) for key, (offsets, self_times) in groups.items()}
        groups.clear()
        self.log.debug(f'Computed statistics for {len(self.stats)} (address, depth) groups')

        store.close_read()
        store.init_read()
        run.record_count = store.record_count
        while store.has_next():
            self.check_cancelled()
            record = store.read()
            stats = self.stats.get((record.address, record.depth))
            if stats is None:
                self.log.debug(f'No statistics for 0x{record.address:x} at depth {record.depth}, skipping')
                continue
            offset_mean, offset_std, self_time_mean, self_time_std = stats
            offset_ok = self._within_bounds(record.offset_array, offset_mean, offset_std)
            self_time_ok = self._within_bounds(record.self_time_array, self_time_mean, self_time_std)
            is_anomaly = not (offset_ok and self_time_ok)
            self.add_result(run, record, 1.0 if is_anomaly else 0.0, is_anomaly)

    def _group_arrays(self, store: CallStackArrayStore) -> dict[tuple[int, int], tuple[list, list]]:
        groups: dict[tuple[int, int], tuple[list, list]] = {}
        store.init_read()
        while store.has_next():
            self.check_cancelled()
            record = store.read()
            offsets, self_times = groups.setdefault((record.address, record.depth), ([], []))
            offsets.append(record.offset_array)
            self_times.append(record.self_time_array)
        return groups

    def _compute_stats(self, offsets: list, self_times: list) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        offset_stack = np.stack(offsets)
        self_time_stack = np.stack(self_times)
        return (
            offset_stack.mean(axis=0),
            self._std(offset_stack),
            self_time_stack.mean(axis=0),
            self._std(self_time_stack),
        )

    def _std(self, stack: np.ndarray) -> np.ndarray:
        if stack.shape[0] <= self.STD_DDOF:
            return np.zeros(stack.shape[1:], dtype=np.float64)
        return stack.std(axis=0, ddof=self.STD_DDOF)

    def _within_bounds(self, values: np.ndarray, mean: np.ndarray, std: np.ndarray) -> bool:
        return bool(np.all(values - mean <= self.n_value * std))
