"""Exception hierarchy for call stack anomaly analysis.

    ArrayStoreError       I/O failure on the record stream or its header
    RecordDecodeError     corrupt, truncated or unexpected record
    ModelContainerError   model container missing or unreadable
    AnalysisCancelled     cooperative cancellation requested by the caller
"""


class CallStackAnomalyError(RuntimeError):
    """Base for all call stack anomaly analysis errors."""


class ArrayStoreError(CallStackAnomalyError):
    """A record stream or header could not be opened, written or read.

    The affected stream handle is closed before this is raised.
    """


class RecordDecodeError(ArrayStoreError):
    """A record could not be decoded.

    Callers must stop consuming the current pass and close the read stream.
    """


class ModelContainerError(CallStackAnomalyError):
    """A model container is incomplete or could not be loaded."""


class AnalysisCancelled(CallStackAnomalyError):
    """The caller asked for a long-running step to stop."""


def check_cancelled(is_cancelled, step: str) -> None:
    """Raise AnalysisCancelled if the cancellation callable fires.

    Args:
        is_cancelled: Optional zero-argument callable returning True to stop
        step: Name of the step, used in the exception message
    """
    if is_cancelled is not None and is_cancelled():
        raise AnalysisCancelled(f'Cancelled during {step}')
