"""CallStackArray: the fixed-shape encoding of one root call, and its record codec.

Record layout inside a store stream:

    uint32 (big-endian)   length of the JSON header
    JSON header           identifying fields, plus both matrices in DENSE mode
    .npy payload x 2      offset then self-time matrix, NATIVE mode only

The encoding mode is persisted once in the store header, and records are
decoded through a small dispatch table keyed by that mode.
"""

import json
import logging
import struct
from collections.abc import Callable
from dataclasses import dataclass
from typing import BinaryIO

import numpy as np

from callstack_anomaly.compression import read_exact
from callstack_anomaly.errors import RecordDecodeError
from callstack_anomaly.models import ArrayEncoding, CallStackMetadata
from callstack_anomaly.stack_model import StackModel, get_offset, get_self_time


logger = logging.getLogger(__name__)

_LENGTH = struct.Struct('>I')
_IDENTITY_FIELDS = ('address', 'depth', 'timestamp', 'duration', 'num_rows', 'num_cols')


@dataclass(frozen=True, eq=False)
class CallStackArray:
    """Encoded sub-tree of one root call.

    Both matrices have the trace-wide shape (depth_size x address_size).
    num_rows and num_cols keep the local dimensions of the originating
    StackModel, before padding to the trace metadata.
    """

    address: int
    depth: int
    timestamp: int
    duration: int
    offset_array: np.ndarray
    self_time_array: np.ndarray
    num_rows: int
    num_cols: int

    @classmethod
    def from_stack_model(cls, model: StackModel, metadata: CallStackMetadata) -> 'CallStackArray':
        num_rows, num_cols = model.array_dimensions()
        maximums = metadata.max_calls_per_address
        depth_size, address_size = metadata.dimensions
        return cls(
            address=model.address,
            depth=model.depth,
            timestamp=model.timestamp,
            duration=model.duration,
            offset_array=model.to_array(get_offset, depth_size, address_size, maximums),
            self_time_array=model.to_array(get_self_time, depth_size, address_size, maximums),
            num_rows=num_rows,
            num_cols=num_cols,
        )

    @property
    def shape(self) -> tuple[int, int]:
        return self.offset_array.shape

    def model_input(self) -> np.ndarray:
        """Offsets stacked over self-times, flattened to a single row."""
        stacked = np.concatenate([self.offset_array, self.self_time_array], axis=0)
        return stacked.reshape(1, stacked.size)

    def __eq__(self, other):
        if not isinstance(other, CallStackArray):
            return NotImplemented
        return all(getattr(self, name) == getattr(other, name) for name in _IDENTITY_FIELDS) and (
            np.array_equal(self.offset_array, other.offset_array)
            and np.array_equal(self.self_time_array, other.self_time_array)
        )

    def __hash__(self):
        return hash(tuple(getattr(self, name) for name in _IDENTITY_FIELDS))


def _identity(record: CallStackArray) -> dict:
    return {name: getattr(record, name) for name in _IDENTITY_FIELDS}


def _write_header(stream: BinaryIO, header: dict) -> None:
    payload = json.dumps(header, separators=(',', ':')).encode('utf-8')
    stream.write(_LENGTH.pack(len(payload)))
    stream.write(payload)


def _write_dense(stream: BinaryIO, record: CallStackArray) -> None:
    header = _identity(record)
    header['shape'] = list(record.offset_array.shape)
    header['offset'] = record.offset_array.tolist()
    header['self_time'] = record.self_time_array.tolist()
    _write_header(stream, header)


def _write_native(stream: BinaryIO, record: CallStackArray) -> None:
    _write_header(stream, _identity(record))
    np.lib.format.write_array(stream, np.ascontiguousarray(record.offset_array), allow_pickle=False)
    np.lib.format.write_array(stream, np.ascontiguousarray(record.self_time_array), allow_pickle=False)


def _read_header(stream: BinaryIO) -> dict:
    raw_length = read_exact(stream, _LENGTH.size)
    if len(raw_length) < _LENGTH.size:
        raise RecordDecodeError('Unexpected end of record stream')
    (length,) = _LENGTH.unpack(raw_length)
    payload = read_exact(stream, length)
    if len(payload) < length:
        raise RecordDecodeError(f'Truncated record header ({len(payload)} of {length} bytes)')
    try:
        header = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise RecordDecodeError(f'Corrupt record header: {e}') from e
    if not isinstance(header, dict):
        raise RecordDecodeError('Corrupt record header: expected an object')
    missing = [name for name in _IDENTITY_FIELDS if name not in header]
    if missing:
        raise RecordDecodeError(f'Record header missing fields: {", ".join(missing)}')
    return header


def _build(header: dict, offset_array: np.ndarray, self_time_array: np.ndarray) -> CallStackArray:
    if offset_array.shape != self_time_array.shape or offset_array.ndim != 2:
        raise RecordDecodeError(
            f'Mismatched record matrices: offset {offset_array.shape}, self-time {self_time_array.shape}'
        )
    try:
        identity = {name: int(header[name]) for name in _IDENTITY_FIELDS}
    except (TypeError, ValueError) as e:
        raise RecordDecodeError(f'Corrupt record identity: {e}') from e
    return CallStackArray(offset_array=offset_array, self_time_array=self_time_array, **identity)


def _read_dense(stream: BinaryIO) -> CallStackArray:
    header = _read_header(stream)
    try:
        shape = tuple(header['shape'])
        offset_array = np.array(header['offset'], dtype=np.float64).reshape(shape)
        self_time_array = np.array(header['self_time'], dtype=np.float64).reshape(shape)
    except (KeyError, TypeError, ValueError) as e:
        raise RecordDecodeError(f'Corrupt dense record: {e}') from e
    return _build(header, offset_array, self_time_array)


def _read_native(stream: BinaryIO) -> CallStackArray:
    header = _read_header(stream)
    try:
        offset_array = np.lib.format.read_array(stream, allow_pickle=False)
        self_time_array = np.lib.format.read_array(stream, allow_pickle=False)
    except (OSError, ValueError) as e:
        raise RecordDecodeError(f'Corrupt native record: {e}') from e
    return _build(header, offset_array, self_time_array)


RECORD_WRITERS: dict[ArrayEncoding, Callable[[BinaryIO, CallStackArray], None]] = {
    ArrayEncoding.DENSE: _write_dense,
    ArrayEncoding.NATIVE: _write_native,
}

RECORD_READERS: dict[ArrayEncoding, Callable[[BinaryIO], CallStackArray]] = {
    ArrayEncoding.DENSE: _read_dense,
    ArrayEncoding.NATIVE: _read_native,
}


def write_record(stream: BinaryIO, record: CallStackArray, encoding: ArrayEncoding) -> None:
    RECORD_WRITERS[encoding](stream, record)


def read_record(stream: BinaryIO, encoding: ArrayEncoding) -> CallStackArray:
    """Decode the next record.

    Raises:
        RecordDecodeError: If the stream ends early or the record is corrupt
    """
    return RECORD_READERS[encoding](stream)
