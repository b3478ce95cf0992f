"""Streaming on-disk store for CallStackArray records.

Store Location: a directory, by default $CSA_CACHE_DIR/arrays/<name>/
(or ~/.cache/csa/arrays/<name>/)

Store Structure:
- callstack_arrays.dat: compressed stream of records, appended one at a time
- callstack_arrays.metadata.json: header with the record count, the trace
  metadata, the encoding mode and the compression format

The header is only written by close_write(), so a store whose header is
missing was never completed. Readers load the header first and then decode
exactly `record_count` records.

Only one of the read and write streams may be open at a time. Calling an
init_* method while its stream is already open, or a close_* method while it
is closed, does nothing.
"""

import json
import logging
from collections.abc import Iterator
from datetime import datetime
from pathlib import Path
from typing import BinaryIO

import zstandard
from pydantic import ValidationError

from callstack_anomaly.arrays import CallStackArray, read_record, write_record
from callstack_anomaly.compression import CompressionFormat, open_compressed_reader, open_compressed_writer
from callstack_anomaly.errors import ArrayStoreError, RecordDecodeError
from callstack_anomaly.models import ArrayEncoding, ArrayStoreHeader, CallStackMetadata
from callstack_anomaly.utils import get_csa_cache_dir


logger = logging.getLogger(__name__)

# Header format version - increment when the record layout changes
ARRAY_STORE_VERSION = 1

ARRAYS_FILE_NAME = 'callstack_arrays.dat'
HEADER_FILE_NAME = 'callstack_arrays.metadata.json'


def get_array_store_dir(name: str) -> Path:
    """Get the default directory for a named store.

    Args:
        name: Store name, usually derived from the trace name

    Returns:
        Path to $CSA_CACHE_DIR/arrays/<name>/ (not created)
    """
    safe_name = ''.join(c if c.isalnum() or c in '._-' else '_' for c in name)
    return get_csa_cache_dir('arrays') / safe_name


class CallStackArrayStore:
    """Append-only, compressed, restartable container of CallStackArray records."""

    def __init__(
        self,
        path: str | Path,
        compression: CompressionFormat = CompressionFormat.ZSTD,
        log: logging.Logger | None = None,
    ):
        """Initialize the store.

        Args:
            path: Directory holding the two store artifacts
            compression: Stream compression used for new writes; reads use the
                         format recorded in the header
            log: Logger to use instead of the module logger
        """
        self.path = Path(path)
        self.arrays_file = self.path / ARRAYS_FILE_NAME
        self.header_file = self.path / HEADER_FILE_NAME
        self.compression = compression
        self.log = log or logger

        self._input: BinaryIO | None = None
        self._output: BinaryIO | None = None
        self._metadata: CallStackMetadata | None = None
        self._encoding = ArrayEncoding.DENSE
        self._count = 0

    def __repr__(self) -> str:
        return f'CallStackArrayStore({str(self.path)!r}, records={self._count}, mode={self.mode})'

    def __enter__(self) -> 'CallStackArrayStore':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close_write()
        else:
            # No header for a write interrupted by an exception
            self._abort_write()
        self.close_read()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def metadata(self) -> CallStackMetadata | None:
        return self._metadata

    @property
    def encoding_mode(self) -> ArrayEncoding:
        return self._encoding

    @property
    def record_count(self) -> int:
        """Records written so far (write mode) or still unread (read mode)."""
        return self._count

    @property
    def mode(self) -> str | None:
        if self._output is not None:
            return 'write'
        if self._input is not None:
            return 'read'
        return None

    def exists(self) -> bool:
        """True when both artifacts of a completed store are on disk."""
        return self.arrays_file.exists() and self.header_file.exists()

    def has_next(self) -> bool:
        """True while records are left to read."""
        return self._input is not None and self._count > 0

    # ------------------------------------------------------------------
    # Header
    # ------------------------------------------------------------------

    def read_header(self) -> ArrayStoreHeader:
        """Read and validate the header without changing the store state.

        Raises:
            ArrayStoreError: If the header is missing, unreadable or from another version
        """
        try:
            with open(self.header_file, encoding='utf-8') as f:
                data = json.load(f)
        except OSError as e:
            raise ArrayStoreError(f'Cannot read store header {self.header_file}: {e}') from e
        except json.JSONDecodeError as e:
            raise ArrayStoreError(f'Corrupt store header {self.header_file}: {e}') from e
        if not isinstance(data, dict):
            raise ArrayStoreError(f'Corrupt store header {self.header_file}: expected an object')

        if data.get('version') != ARRAY_STORE_VERSION:
            raise ArrayStoreError(
                f'Store header version mismatch in {self.header_file}: '
                f'{data.get("version")} != {ARRAY_STORE_VERSION}'
            )

        try:
            header = ArrayStoreHeader(**data)
        except ValidationError as e:
            raise ArrayStoreError(f'Invalid store header {self.header_file}: {e}') from e
        return header

    def load_header(self) -> ArrayStoreHeader:
        """Load the header and adopt its count, metadata and encoding."""
        header = self.read_header()
        self._count = header.record_count
        self._metadata = header.metadata
        self._encoding = header.encoding_mode
        self.compression = header.compression
        return header

    def _save_header(self) -> None:
        header = ArrayStoreHeader(
            version=ARRAY_STORE_VERSION,
            record_count=self._count,
            metadata=self._metadata,
            encoding_mode=self._encoding,
            compression=self.compression,
            created_at=datetime.now().isoformat(),
        )
        try:
            with open(self.header_file, 'w', encoding='utf-8') as f:
                json.dump(header.model_dump(mode='json'), f, indent=2)
        except OSError as e:
            raise ArrayStoreError(f'Cannot write store header {self.header_file}: {e}') from e

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def init_write(self, metadata: CallStackMetadata, encoding_mode: ArrayEncoding = ArrayEncoding.DENSE) -> None:
        """Open a fresh record stream, truncating any previous content.

        Raises:
            ArrayStoreError: If the read stream is open or the file cannot be created
        """
        if self._output is not None:
            return
        if self._input is not None:
            raise ArrayStoreError('Cannot start writing while the store is open for reading')

        self._metadata = metadata
        self._encoding = encoding_mode
        self._count = 0

        try:
            self.path.mkdir(parents=True, exist_ok=True)
            # A stale header would describe the old records
            self.header_file.unlink(missing_ok=True)
            self._output = open_compressed_writer(self.arrays_file, self.compression)
        except OSError as e:
            self._output = None
            raise ArrayStoreError(f'Cannot open {self.arrays_file} for writing: {e}') from e

        self.log.debug(f'Writing {encoding_mode.value} records to {self.arrays_file} ({self.compression.value})')

    def write(self, record: CallStackArray) -> None:
        """Append one record.

        Raises:
            ArrayStoreError: If init_write() was not called or the write fails
        """
        if self._output is None:
            raise ArrayStoreError('Store is not open for writing; call init_write() first')
        try:
            write_record(self._output, record, self._encoding)
        except (OSError, zstandard.ZstdError) as e:
            self._abort_write()
            raise ArrayStoreError(f'Cannot write record to {self.arrays_file}: {e}') from e
        self._count += 1

    def close_write(self) -> None:
        """Flush the record stream and persist the header."""
        if self._output is None:
            return
        try:
            self._output.close()
        except (OSError, zstandard.ZstdError) as e:
            raise ArrayStoreError(f'Cannot finish writing {self.arrays_file}: {e}') from e
        finally:
            self._output = None
        self._save_header()
        self.log.info(f'Stored {self._count} records in {self.path}')

    def _abort_write(self) -> None:
        output, self._output = self._output, None
        if output is None:
            return
        try:
            output.close()
        except (OSError, zstandard.ZstdError) as e:
            self.log.warning(f'Error while closing {self.arrays_file} after a failed write: {e}')

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def init_read(self) -> None:
        """Load the header and open the record stream at the first record.

        Raises:
            ArrayStoreError: If the write stream is open, or either artifact is unreadable
        """
        if self._input is not None:
            return
        if self._output is not None:
            raise ArrayStoreError('Cannot start reading while the store is open for writing')

        self.load_header()
        try:
            self._input = open_compressed_reader(self.arrays_file, self.compression)
        except OSError as e:
            self._input = None
            raise ArrayStoreError(f'Cannot open {self.arrays_file} for reading: {e}') from e

        self.log.debug(f'Reading {self._count} {self._encoding.value} records from {self.arrays_file}')

    def read(self) -> CallStackArray:
        """Decode the next record.

        Raises:
            ArrayStoreError: If init_read() was not called or no record is left
            RecordDecodeError: If the record is corrupt or the stream ends early
        """
        if self._input is None:
            raise ArrayStoreError('Store is not open for reading; call init_read() first')
        if self._count <= 0:
            raise ArrayStoreError(f'No records left in {self.arrays_file}')
        try:
            record = read_record(self._input, self._encoding)
        except (OSError, EOFError, zstandard.ZstdError) as e:
            raise RecordDecodeError(f'Cannot decode record from {self.arrays_file}: {e}') from e
        self._count -= 1
        return record

    def close_read(self) -> None:
        """Release the read stream."""
        if self._input is None:
            return
        try:
            self._input.close()
        except (OSError, zstandard.ZstdError) as e:
            self.log.warning(f'Error while closing {self.arrays_file}: {e}')
        finally:
            self._input = None

    def iter_records(self) -> Iterator[CallStackArray]:
        """Read every record from the start, closing the stream afterwards."""
        self.close_read()
        self.init_read()
        try:
            while self.has_next():
                yield self.read()
        finally:
            self.close_read()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Return the active stream to its start (a write restarts empty)."""
        if self._input is not None:
            self.close_read()
            self.init_read()
        if self._output is not None:
            metadata, encoding = self._metadata, self._encoding
            self._abort_write()
            self.init_write(metadata, encoding)

    def dispose(self) -> None:
        """Close both streams and delete the store artifacts."""
        self._abort_write()
        self.close_read()
        for artifact in (self.arrays_file, self.header_file):
            try:
                artifact.unlink(missing_ok=True)
            except OSError as e:
                self.log.warning(f'Failed to delete {artifact}: {e}')
        # Remove the directory only if nothing else lives in it
        try:
            if self.path.is_dir() and not any(self.path.iterdir()):
                self.path.rmdir()
        except OSError as e:
            self.log.debug(f'Left store directory {self.path} in place: {e}')
        self._count = 0

    def describe(self) -> dict:
        """Header summary for CLI output."""
        header = self.read_header()
        return {
            'path': str(self.path),
            'record_count': header.record_count,
            'depth_size': header.metadata.depth_size,
            'address_size': header.metadata.address_size,
            'address_count': len(header.metadata.max_calls_per_address),
            'encoding_mode': header.encoding_mode.value,
            'compression': header.compression.value,
            'created_at': header.created_at,
            'arrays_file_bytes': self.arrays_file.stat().st_size if self.arrays_file.exists() else 0,
        }
