"""Per-root stack models and trace metadata aggregation.

A StackModel groups every call of one sub-tree by (absolute depth, address)
and turns them into a 2D array: one row per absolute depth (row = depth - 1)
and one block of columns per address, in ascending address order. A block is
as wide as the largest number of calls that address has at any single depth,
and entries fill it left to right in traversal order.

For example, the sub-tree

                 {1} 0x2
               /         \\
          {2} 0x2        {3} 0x6d
           /             /      \\
      {4} 0x2       {5} 0x2    {6} 0x2

becomes (blocks: 0x2 is 3 wide, 0x6d is 1 wide)

    [[{1},   0,   0,   0],
     [{2},   0,   0, {3}],
     [{4}, {5}, {6},   0]]

When every model of a trace is encoded with the same CallStackMetadata, every
array has the same shape.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

import numpy as np

from callstack_anomaly.errors import check_cancelled
from callstack_anomaly.models import CallStackMetadata
from callstack_anomaly.tree import CallTree


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallEntry:
    """Offset from the sub-tree root and self-time of one call."""

    offset: int
    self_time: int


def get_offset(entry: CallEntry) -> int:
    return entry.offset


def get_self_time(entry: CallEntry) -> int:
    return entry.self_time


class StackModel:
    """Sparse (depth, address) -> [CallEntry] view of one root call's sub-tree."""

    def __init__(self, address: int, depth: int, timestamp: int, duration: int):
        self.address = address
        self.depth = depth
        self.timestamp = timestamp
        self.duration = duration
        # depth -> address -> entries in insertion order
        self._data: dict[int, dict[int, list[CallEntry]]] = {}

    def __eq__(self, other):
        if not isinstance(other, StackModel):
            return NotImplemented
        return (
            self.address == other.address
            and self.depth == other.depth
            and self.timestamp == other.timestamp
            and self.duration == other.duration
            and self._data == other._data
        )

    def __repr__(self) -> str:
        return (
            f'StackModel(address=0x{self.address:x}, depth={self.depth}, '
            f'timestamp={self.timestamp}, duration={self.duration}, depths={sorted(self._data)})'
        )

    @property
    def data(self) -> dict[int, dict[int, list[CallEntry]]]:
        """Copy of the grouped entries."""
        return {
            depth: {address: list(entries) for address, entries in by_address.items()}
            for depth, by_address in self._data.items()
        }

    def add_entry(self, depth: int, address: int, offset: int, self_time: int) -> None:
        """Record one call at its absolute depth and address."""
        self._data.setdefault(depth, {}).setdefault(address, []).append(CallEntry(offset, self_time))

    def entries(self, depth: int, address: int) -> list[CallEntry]:
        return list(self._data.get(depth, {}).get(address, []))

    def max_calls_per_address(self) -> dict[int, int]:
        """For each address, the largest number of calls at any one depth, sorted by address."""
        maximums: dict[int, int] = {}
        for by_address in self._data.values():
            for address, entries in by_address.items():
                if len(entries) > maximums.get(address, 0):
                    maximums[address] = len(entries)
        return dict(sorted(maximums.items()))

    def array_dimensions(self, max_calls_per_address: dict[int, int] | None = None) -> tuple[int, int]:
        """Local (rows, cols) of this model: deepest absolute depth and total block width."""
        if max_calls_per_address is None:
            max_calls_per_address = self.max_calls_per_address()
        rows = max(self._data) if self._data else 0
        return rows, sum(max_calls_per_address.values())

    def to_array(
        self,
        accessor: Callable[[CallEntry], int],
        depth_size: int,
        address_size: int,
        max_calls_per_address: dict[int, int],
    ) -> np.ndarray:
        """Build a depth_size x address_size matrix of accessor(entry) values.

        Column blocks follow ascending address order, so the layout depends only
        on max_calls_per_address. Entries beyond depth_size rows or outside the
        known addresses are not representable and are left out.

        Args:
            accessor: Extracts the value to store from a CallEntry
            depth_size: Number of rows
            address_size: Number of columns
            max_calls_per_address: Block width per address

        Returns:
            float64 array of shape (depth_size, address_size)
        """
        array = np.zeros((depth_size, address_size), dtype=np.float64)

        block_starts = {}
        column = 0
        for address in sorted(max_calls_per_address):
            block_starts[address] = column
            column += max_calls_per_address[address]

        for depth_index in range(depth_size):
            by_address = self._data.get(depth_index + 1)
            if not by_address:
                continue
            for address, entries in by_address.items():
                start = block_starts.get(address)
                if start is None:
                    continue
                width = max_calls_per_address[address]
                for i, entry in enumerate(entries[:width]):
                    array[depth_index, start + i] = accessor(entry)
        return array

    def to_offset_array(self) -> np.ndarray:
        """Offsets, sized by this model alone (shape differs between models)."""
        maximums = self.max_calls_per_address()
        rows, cols = self.array_dimensions(maximums)
        return self.to_array(get_offset, rows, cols, maximums)

    def to_self_time_array(self) -> np.ndarray:
        """Self-times, sized by this model alone (shape differs between models)."""
        maximums = self.max_calls_per_address()
        rows, cols = self.array_dimensions(maximums)
        return self.to_array(get_self_time, rows, cols, maximums)


def build_stack_model(tree: CallTree, root_id: int) -> StackModel:
    """Walk a root call's sub-tree in pre-order and group its calls."""
    root = tree[root_id]
    model = StackModel(root.symbol, root.depth, root.start, root.duration)
    for call in tree.walk(root_id):
        model.add_entry(call.depth, call.symbol, call.start - root.start, call.self_time)
    return model


def compute_trace_metadata(
    tree: CallTree,
    root_ids: Iterable[int] | None = None,
    is_cancelled: Callable[[], bool] | None = None,
) -> CallStackMetadata:
    """Aggregate array sizes over every sub-tree of a trace.

    For each sub-tree, count calls per (address, depth) and keep the largest
    count per address; then keep the largest of those across sub-trees. The
    depth size is the deepest absolute depth seen in any sub-tree.

    Args:
        tree: Reconstructed call tree
        root_ids: Roots to consider (defaults to tree.roots)
        is_cancelled: Optional callable checked once per root

    Returns:
        CallStackMetadata shared by every array of the trace
    """
    if root_ids is None:
        root_ids = tree.roots

    maximums: dict[int, int] = {}
    max_depth = 0
    for root_id in root_ids:
        check_cancelled(is_cancelled, 'metadata aggregation')
        counts: dict[tuple[int, int], int] = {}
        for call in tree.walk(root_id):
            max_depth = max(max_depth, call.depth)
            key = (call.symbol, call.depth)
            counts[key] = counts.get(key, 0) + 1

        per_address: dict[int, int] = {}
        for (address, _depth), count in counts.items():
            per_address[address] = max(per_address.get(address, 0), count)
        for address, count in per_address.items():
            if count > maximums.get(address, 0):
                maximums[address] = count

    metadata = CallStackMetadata(max_calls_per_address=maximums, depth_size=max_depth)
    logger.debug(
        f'Trace metadata: {len(maximums)} addresses, depth_size={metadata.depth_size}, '
        f'address_size={metadata.address_size}'
    )
    return metadata
