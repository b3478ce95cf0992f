"""Tests for CallStackArray records and the streaming array store."""

import io
import json
import struct

import numpy as np
import pytest

from callstack_anomaly.array_store import (
    ARRAYS_FILE_NAME,
    HEADER_FILE_NAME,
    CallStackArrayStore,
    get_array_store_dir,
)
from callstack_anomaly.arrays import CallStackArray, read_record, write_record
from callstack_anomaly.compression import CompressionFormat
from callstack_anomaly.errors import ArrayStoreError, RecordDecodeError
from callstack_anomaly.models import ArrayEncoding, CallStackMetadata
from callstack_anomaly.stack_model import StackModel


METADATA = CallStackMetadata(max_calls_per_address={0x10: 2, 0x20: 1}, depth_size=2)


def make_record(index: int) -> CallStackArray:
    offsets = np.arange(6, dtype=np.float64).reshape(2, 3) + index
    self_times = np.full((2, 3), float(index * 10))
    return CallStackArray(
        address=0x10,
        depth=1,
        timestamp=1_000 * index,
        duration=500 + index,
        offset_array=offsets,
        self_time_array=self_times,
        num_rows=2,
        num_cols=3,
    )


def write_store(path, records, encoding=ArrayEncoding.DENSE, compression=CompressionFormat.ZSTD):
    store = CallStackArrayStore(path, compression=compression)
    store.init_write(METADATA, encoding)
    for record in records:
        store.write(record)
    store.close_write()
    return store


class TestCallStackArray:
    """Tests for CallStackArray."""

    def test_from_stack_model(self):
        model = StackModel(address=0x10, depth=1, timestamp=50, duration=40)
        model.add_entry(1, 0x10, 0, 30)
        model.add_entry(2, 0x20, 5, 10)

        record = CallStackArray.from_stack_model(model, METADATA)

        assert record.shape == (2, 3)
        assert (record.num_rows, record.num_cols) == (2, 2)
        np.testing.assert_array_equal(record.self_time_array, [[30, 0, 0], [0, 0, 10]])
        np.testing.assert_array_equal(record.offset_array, [[0, 0, 0], [0, 0, 5]])

    def test_model_input_stacks_offsets_over_self_times(self):
        record = make_record(1)

        features = record.model_input()

        assert features.shape == (1, 12)
        np.testing.assert_array_equal(features[0, :6], record.offset_array.ravel())
        np.testing.assert_array_equal(features[0, 6:], record.self_time_array.ravel())

    def test_equality_includes_arrays(self):
        assert make_record(1) == make_record(1)
        assert make_record(1) != make_record(2)
        assert hash(make_record(1)) == hash(make_record(1))

    @pytest.mark.parametrize('encoding', list(ArrayEncoding))
    def test_record_codec(self, encoding):
        buffer = io.BytesIO()
        write_record(buffer, make_record(3), encoding)
        buffer.seek(0)

        assert read_record(buffer, encoding) == make_record(3)

    def test_truncated_record(self):
        buffer = io.BytesIO()
        write_record(buffer, make_record(3), ArrayEncoding.DENSE)
        truncated = io.BytesIO(buffer.getvalue()[:-5])

        with pytest.raises(RecordDecodeError):
            read_record(truncated, ArrayEncoding.DENSE)

    @pytest.mark.parametrize('address', [None, 'ten', [16]])
    def test_non_integer_identity_field(self, address):
        header = {
            'address': address,
            'depth': 1,
            'timestamp': 0,
            'duration': 10,
            'num_rows': 1,
            'num_cols': 1,
            'shape': [1, 1],
            'offset': [[0.0]],
            'self_time': [[10.0]],
        }
        payload = json.dumps(header).encode('utf-8')
        buffer = io.BytesIO(struct.pack('>I', len(payload)) + payload)

        with pytest.raises(RecordDecodeError, match='identity'):
            read_record(buffer, ArrayEncoding.DENSE)

    def test_record_header_not_an_object(self):
        payload = b'[1, 2]'
        buffer = io.BytesIO(struct.pack('>I', len(payload)) + payload)

        with pytest.raises(RecordDecodeError, match='expected an object'):
            read_record(buffer, ArrayEncoding.NATIVE)

    def test_empty_stream(self):
        with pytest.raises(RecordDecodeError, match='end of record stream'):
            read_record(io.BytesIO(b''), ArrayEncoding.NATIVE)


class TestArrayStoreRoundTrip:
    """Writing then reading a store."""

    @pytest.mark.parametrize('encoding', list(ArrayEncoding))
    @pytest.mark.parametrize('compression', list(CompressionFormat))
    def test_round_trip(self, tmp_path, encoding, compression):
        records = [make_record(i) for i in range(5)]
        write_store(tmp_path / 'store', records, encoding, compression)

        store = CallStackArrayStore(tmp_path / 'store')
        store.init_read()
        read_back = []
        while store.has_next():
            read_back.append(store.read())
        store.close_read()

        assert read_back == records
        assert not store.has_next()
        assert store.encoding_mode == encoding
        assert store.compression == compression

    def test_header_persisted(self, tmp_path):
        write_store(tmp_path, [make_record(1), make_record(2)], ArrayEncoding.NATIVE)

        with open(tmp_path / HEADER_FILE_NAME) as f:
            header = json.load(f)

        assert header['record_count'] == 2
        assert header['encoding_mode'] == 'native'
        assert header['compression'] == 'zstd'
        assert header['metadata']['depth_size'] == 2
        store = CallStackArrayStore(tmp_path)
        assert store.load_header().metadata == METADATA

    def test_iter_records(self, tmp_path):
        store = write_store(tmp_path, [make_record(i) for i in range(3)])

        assert [record.timestamp for record in store.iter_records()] == [0, 1_000, 2_000]
        assert store.mode is None

    def test_empty_store(self, tmp_path):
        store = write_store(tmp_path, [])

        store.init_read()
        assert not store.has_next()
        store.close_read()
        assert store.exists()

    def test_reset_restarts_reading(self, tmp_path):
        store = write_store(tmp_path, [make_record(i) for i in range(3)])
        store.init_read()
        store.read()
        store.read()

        store.reset()

        assert store.record_count == 3
        assert store.read() == make_record(0)
        store.close_read()

    def test_reset_truncates_writing(self, tmp_path):
        store = CallStackArrayStore(tmp_path)
        store.init_write(METADATA)
        store.write(make_record(1))

        store.reset()
        store.write(make_record(2))
        store.close_write()

        assert list(store.iter_records()) == [make_record(2)]


class TestArrayStoreLifecycle:
    """Mode handling, idempotency and failure paths."""

    def test_init_and_close_are_idempotent(self, tmp_path):
        store = CallStackArrayStore(tmp_path)
        store.close_write()
        store.close_read()

        store.init_write(METADATA)
        store.write(make_record(1))
        store.init_write(METADATA)
        store.write(make_record(2))
        store.close_write()
        store.close_write()

        store.init_read()
        store.init_read()
        assert store.record_count == 2
        store.close_read()
        store.close_read()

    def test_modes_are_exclusive(self, tmp_path):
        store = write_store(tmp_path, [make_record(1)])
        store.init_read()
        with pytest.raises(ArrayStoreError):
            store.init_write(METADATA)
        store.close_read()

        store.init_write(METADATA)
        with pytest.raises(ArrayStoreError):
            store.init_read()
        store.close_write()

    def test_write_before_init(self, tmp_path):
        with pytest.raises(ArrayStoreError):
            CallStackArrayStore(tmp_path).write(make_record(1))

    def test_read_before_init(self, tmp_path):
        with pytest.raises(ArrayStoreError):
            write_store(tmp_path, [make_record(1)]).read()

    def test_read_past_end(self, tmp_path):
        store = write_store(tmp_path, [make_record(1)])
        store.init_read()
        store.read()

        with pytest.raises(ArrayStoreError):
            store.read()
        store.close_read()

    def test_missing_header(self, tmp_path):
        store = CallStackArrayStore(tmp_path / 'missing')

        assert not store.exists()
        with pytest.raises(ArrayStoreError):
            store.init_read()
        assert store.mode is None

    def test_header_version_mismatch(self, tmp_path):
        write_store(tmp_path, [make_record(1)])
        header_file = tmp_path / HEADER_FILE_NAME
        header = json.loads(header_file.read_text())
        header['version'] = 999
        header_file.write_text(json.dumps(header))

        with pytest.raises(ArrayStoreError, match='version mismatch'):
            CallStackArrayStore(tmp_path).init_read()

    @pytest.mark.parametrize('content', ['[1, 2]', '"header"', '42', 'null'])
    def test_header_not_an_object(self, tmp_path, content):
        write_store(tmp_path, [make_record(1)])
        (tmp_path / HEADER_FILE_NAME).write_text(content)
        store = CallStackArrayStore(tmp_path)

        with pytest.raises(ArrayStoreError, match='Corrupt store header'):
            store.init_read()
        assert store.mode is None
        with pytest.raises(ArrayStoreError):
            store.describe()

    def test_has_next_only_while_reading(self, tmp_path):
        store = CallStackArrayStore(tmp_path)
        store.init_write(METADATA)
        store.write(make_record(1))

        assert not store.has_next()
        store.close_write()
        assert not store.has_next()

        store.init_read()
        assert store.has_next()
        store.read()
        assert not store.has_next()
        store.close_read()

    def test_count_larger_than_stream(self, tmp_path):
        write_store(tmp_path, [make_record(1)])
        header_file = tmp_path / HEADER_FILE_NAME
        header = json.loads(header_file.read_text())
        header['record_count'] = 2
        header_file.write_text(json.dumps(header))
        store = CallStackArrayStore(tmp_path)
        store.init_read()
        store.read()

        with pytest.raises(RecordDecodeError):
            store.read()
        store.close_read()

    def test_header_written_only_on_close(self, tmp_path):
        store = CallStackArrayStore(tmp_path)
        store.init_write(METADATA)
        store.write(make_record(1))

        assert not store.exists()
        store.close_write()
        assert store.exists()

    def test_rewrite_removes_stale_header(self, tmp_path):
        store = write_store(tmp_path, [make_record(1)])

        store.init_write(METADATA)

        assert not (tmp_path / HEADER_FILE_NAME).exists()
        store.close_write()

    def test_dispose(self, tmp_path):
        store_dir = tmp_path / 'store'
        store = write_store(store_dir, [make_record(1)])
        store.init_read()

        store.dispose()

        assert store.mode is None
        assert not (store_dir / ARRAYS_FILE_NAME).exists()
        assert not (store_dir / HEADER_FILE_NAME).exists()
        assert not store_dir.exists()

    def test_dispose_while_writing(self, tmp_path):
        store = CallStackArrayStore(tmp_path / 'store')
        store.init_write(METADATA)
        store.write(make_record(1))

        store.dispose()

        assert store.mode is None
        assert not store.exists()

    def test_describe(self, tmp_path):
        store = write_store(tmp_path, [make_record(1), make_record(2)])

        info = store.describe()

        assert info['record_count'] == 2
        assert info['depth_size'] == 2
        assert info['address_size'] == 3
        assert info['address_count'] == 2
        assert info['arrays_file_bytes'] > 0

    def test_default_store_dir(self, temp_cache_dir):
        path = get_array_store_dir('my trace/1')

        assert str(path).startswith(temp_cache_dir)
        assert path.name == 'my_trace_1'

    def test_context_manager_closes_write(self, tmp_path):
        with CallStackArrayStore(tmp_path) as store:
            store.init_write(METADATA)
            store.write(make_record(1))

        assert store.mode is None
        assert store.exists()

    def test_context_manager_aborts_failed_write(self, tmp_path):
        with pytest.raises(RuntimeError):
            with CallStackArrayStore(tmp_path) as store:
                store.init_write(METADATA)
                store.write(make_record(1))
                raise RuntimeError('boom')

        assert store.mode is None
        assert not store.exists()
