"""Pydantic models for trace input, persisted headers and CLI output"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from callstack_anomaly.compression import CompressionFormat


class ArrayEncoding(str, Enum):
    """On-disk representation of the matrices of a CallStackArray.

    DENSE stores nested lists inside the record header, NATIVE stores raw
    numpy `.npy` payloads after it.
    """

    DENSE = 'dense'
    NATIVE = 'native'

    @classmethod
    def from_string(cls, value: str) -> 'ArrayEncoding':
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f'Unsupported array encoding: {value!r}') from None


class CallInterval(BaseModel):
    """One recorded call interval, as produced by a call-graph collaborator.

    Attributes:
        start: Start timestamp of the call
        length: Duration of the call
        depth: Depth of the call in its call stack (>= 1)
        symbol: Function address
    """

    model_config = ConfigDict(frozen=True)

    start: int = Field(..., examples=[1000], description='Start timestamp')
    length: int = Field(..., ge=0, examples=[250], description='Duration of the call')
    depth: int = Field(..., ge=1, examples=[2], description='Call depth (>= 1)')
    symbol: int = Field(..., examples=[0x4005D0], description='Function address')


class CallStackMetadata(BaseModel):
    """Trace-wide sizing information shared by every encoded array.

    Attributes:
        max_calls_per_address: For each address (ascending), the maximum number
                               of calls observed at any single depth of any sub-tree
        depth_size: Number of rows of every array (maximum absolute depth)
    """

    model_config = ConfigDict(frozen=True)

    max_calls_per_address: dict[int, int] = Field(default_factory=dict)
    depth_size: int = Field(..., ge=0)

    @field_validator('max_calls_per_address')
    @classmethod
    def _sort_by_address(cls, value: dict[int, int]) -> dict[int, int]:
        return dict(sorted(value.items()))

    @property
    def address_size(self) -> int:
        """Number of columns: sum of the per-address maxima."""
        return sum(self.max_calls_per_address.values())

    @property
    def dimensions(self) -> tuple[int, int]:
        return self.depth_size, self.address_size


class ArrayStoreHeader(BaseModel):
    """Small header persisted next to a record stream."""

    version: int
    record_count: int = Field(..., ge=0)
    metadata: CallStackMetadata
    encoding_mode: ArrayEncoding = ArrayEncoding.DENSE
    compression: CompressionFormat = CompressionFormat.ZSTD
    created_at: str | None = None


class AnomalyScore(BaseModel):
    """Score of one root call, valid over [timestamp, timestamp + duration)."""

    timestamp: int
    duration: int
    depth: int
    address: int | None = None
    score: float
    is_anomaly: bool = False


class DetectionResponse(BaseModel):
    """Outcome of one detection run, used for CLI output."""

    detector: str
    store_path: str
    record_count: int
    scored_count: int
    anomaly_count: int
    min_score: float | None = None
    max_score: float | None = None
    threshold: float | None = None
    time: float = 0.0
    scores: list[AnomalyScore] = Field(default_factory=list)

    def to_cli(self, show_all: bool = False) -> str:
        """Render a human-readable summary.

        Args:
            show_all: Also list non-anomalous records

        Returns:
            Multi-line summary string
        """
        lines = [
            f'Detector: {self.detector}',
            f'Store: {self.store_path}',
            f'Records: {self.record_count} ({self.scored_count} scored) in {self.time:.2f}s',
        ]
        if self.min_score is not None and self.max_score is not None:
            lines.append(f'Scores: min={self.min_score:.3f} max={self.max_score:.3f} threshold={self.threshold}')
        lines.append(f'Anomalies: {self.anomaly_count}')

        for item in self.scores:
            if not show_all and not item.is_anomaly:
                continue
            address = f'0x{item.address:x}' if item.address is not None else '-'
            lines.append(
                f'  t={item.timestamp} dur={item.duration} depth={item.depth} addr={address} score={item.score:.3f}'
            )
        return '\n'.join(lines)
