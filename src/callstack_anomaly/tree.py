"""Call tree reconstruction from flat call intervals.

Call-graph collaborators hand over a flat list of intervals (start, length,
depth, symbol). This module links them back into trees and computes each
call's self-time, then exposes the calls at a target depth as independent
roots for encoding.

Calls are stored in an arena (CallTree) and reference each other by integer id.

Linking rule: a call K at depth d + 1 becomes a child of a call C at depth d
only when C strictly contains K (C.start < K.start and C.end > K.end). A child
sharing either boundary with its would-be parent is left unlinked, and deeper
calls without a strict container are not part of any tree.
"""

import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Protocol

from callstack_anomaly.errors import check_cancelled


logger = logging.getLogger(__name__)


class CallIntervalLike(Protocol):
    """Anything exposing the four fields of a recorded call interval."""

    start: int
    length: int
    depth: int
    symbol: int


@dataclass
class Call:
    """One call instance inside a CallTree.

    self_time starts equal to duration and is reduced by the duration of each
    child linked under it. It is not validated: overlapping children can make
    it negative.
    """

    id: int
    start: int
    duration: int
    depth: int  # >= 1
    symbol: int
    self_time: int
    parent: int | None = None
    children: list[int] = field(default_factory=list)

    @property
    def end(self) -> int:
        return self.start + self.duration


class CallTree:
    """Arena of calls linked by id."""

    def __init__(self):
        self._calls: list[Call] = []
        self.roots: list[int] = []

    def __len__(self) -> int:
        return len(self._calls)

    def __getitem__(self, call_id: int) -> Call:
        return self._calls[call_id]

    def add_call(self, start: int, duration: int, depth: int, symbol: int) -> int:
        """Add an unlinked call and return its id."""
        call_id = len(self._calls)
        self._calls.append(
            Call(id=call_id, start=start, duration=duration, depth=depth, symbol=symbol, self_time=duration)
        )
        return call_id

    def link(self, parent_id: int, child_id: int) -> None:
        """Attach child under parent and charge its duration to the parent's self-time."""
        parent = self._calls[parent_id]
        child = self._calls[child_id]
        if child.parent is not None:
            logger.debug(f'Call {child_id} already linked under {child.parent}, relinking under {parent_id}')
        child.parent = parent_id
        parent.children.append(child_id)
        parent.self_time -= child.duration

    def children(self, call_id: int) -> list[Call]:
        return [self._calls[child_id] for child_id in self._calls[call_id].children]

    def walk(self, root_id: int) -> Iterator[Call]:
        """Yield the sub-tree under root_id in pre-order (root first)."""
        stack = [root_id]
        while stack:
            call = self._calls[stack.pop()]
            yield call
            # Reversed so the first child is visited first
            stack.extend(reversed(call.children))

    def root_calls(self) -> list[Call]:
        return [self._calls[root_id] for root_id in self.roots]


def is_strict_parent(parent: Call, child: Call) -> bool:
    """Return True if parent strictly contains child on both boundaries."""
    return parent.start < child.start and parent.end > child.end


def _collect_by_depth(intervals: Iterable[CallIntervalLike]) -> dict[int, list[CallIntervalLike]]:
    by_depth: dict[int, list[CallIntervalLike]] = {}
    for interval in intervals:
        by_depth.setdefault(interval.depth, []).append(interval)
    return by_depth


def build_call_tree(
    intervals: Iterable[CallIntervalLike],
    target_depth: int,
    is_cancelled: Callable[[], bool] | None = None,
    log: logging.Logger | None = None,
) -> CallTree:
    """Recreate the call hierarchy and select the root calls.

    Depths are processed from 1 upward and stop at the first depth with no
    intervals. Within a depth, calls are ordered by start time and a start
    time appears only once (the first interval seen wins).

    Matching is a full scan of every (depth d, depth d + 1) pair, so it is
    quadratic in the number of calls per depth.

    Args:
        intervals: Flat call intervals
        target_depth: Depth whose calls become roots (>= 1)
        is_cancelled: Optional callable checked once per parent call
        log: Logger to use instead of the module logger

    Returns:
        CallTree whose `roots` are the calls at target_depth, ordered by start.
        `roots` is empty when no call exists at that depth.

    Raises:
        ValueError: If target_depth < 1
        AnalysisCancelled: If is_cancelled fires
    """
    log = log or logger
    if target_depth < 1:
        raise ValueError(f'Target depth must be >= 1, got {target_depth}')

    by_depth = _collect_by_depth(intervals)
    tree = CallTree()
    calls_at_depth: dict[int, list[int]] = {}

    depth = 1
    while by_depth.get(depth):
        seen_starts: set[int] = set()
        ids = []
        dropped = 0
        for interval in sorted(by_depth[depth], key=lambda i: i.start):
            if interval.start in seen_starts:
                dropped += 1
                continue
            seen_starts.add(interval.start)
            ids.append(tree.add_call(interval.start, interval.length, depth, interval.symbol))
        if dropped:
            log.debug(f'Depth {depth}: dropped {dropped} calls sharing a start time')
        calls_at_depth[depth] = ids
        depth += 1

    ignored = sum(len(items) for d, items in by_depth.items() if d not in calls_at_depth)
    if ignored:
        log.debug(f'Ignored {ignored} intervals below the first empty depth')

    # Link each depth to the one below it
    for depth, parent_ids in calls_at_depth.items():
        child_ids = calls_at_depth.get(depth + 1)
        if not child_ids:
            continue
        for parent_id in parent_ids:
            check_cancelled(is_cancelled, 'call hierarchy reconstruction')
            parent = tree[parent_id]
            for child_id in child_ids:
                if is_strict_parent(parent, tree[child_id]):
                    tree.link(parent_id, child_id)

    tree.roots = list(calls_at_depth.get(target_depth, []))
    if not tree.roots:
        log.warning(f'No root calls found at depth {target_depth}')
    else:
        log.info(f'Rebuilt {len(tree)} calls over {len(calls_at_depth)} depths, {len(tree.roots)} roots')
    return tree
