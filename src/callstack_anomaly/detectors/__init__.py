"""Anomaly detectors for encoded call stack arrays."""

from .base import AnomalyDetector, AnomalyResult, AnomalyRun, MemoryResultSink, ResultSink
from .metadata import MetadataAnomalyDetector, is_metadata_compatible, is_metadata_valid
from .model import DEFAULT_ANOMALY_THRESHOLD, AnomalyModel, ModelAnomalyDetector
from .statistical import StatisticalAnomalyDetector


__all__ = [
    # Base classes
    'AnomalyDetector',
    'AnomalyResult',
    'AnomalyRun',
    'ResultSink',
    'MemoryResultSink',
    # Detectors
    'StatisticalAnomalyDetector',
    'ModelAnomalyDetector',
    'MetadataAnomalyDetector',
    'AnomalyModel',
    'DEFAULT_ANOMALY_THRESHOLD',
    # Metadata checks
    'is_metadata_valid',
    'is_metadata_compatible',
]
