"""
Priority queue for task scheduling.

Items are ordered by a caller-supplied key (lower sorts first); items with
equal keys come out in insertion order. The queue has a single owner and
performs no locking.
"""

import heapq
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass
class _QueueEntry(Generic[T]):
    """Internal heap entry with sort key and sequence for ordering."""

    key: Any
    sequence: int
    item: T

    def __lt__(self, other: "_QueueEntry[T]") -> bool:
        """Compare entries for heap ordering: smaller key first, then sequence."""
        if self.key != other.key:
            return bool(self.key < other.key)
        return self.sequence < other.sequence


class PriorityQueue(Generic[T]):
    """
    Heap-backed priority queue with a deterministic FIFO tie-break.

    The orchestrator keys tasks by ``(priority rank, submitted_at)`` so that
    critical work is served before low priority work and equal priorities
    are served in submission order.

    Example:
        >>> queue = PriorityQueue(key=lambda item: item[0])
        >>> queue.enqueue((2, "b"))
        >>> queue.enqueue((1, "a"))
        >>> queue.dequeue()
        (1, 'a')
    """

    def __init__(self, key: Callable[[T], Any]) -> None:
        self._key = key
        self._heap: list[_QueueEntry[T]] = []
        self._sequence_counter = 0

    def enqueue(self, item: T) -> None:
        """Add an item to the queue."""
        self._sequence_counter += 1
        heapq.heappush(
            self._heap,
            _QueueEntry(key=self._key(item), sequence=self._sequence_counter, item=item),
        )

    def dequeue(self) -> T | None:
        """Remove and return the first item, or None when the queue is empty."""
        if not self._heap:
            return None
        return heapq.heappop(self._heap).item

    def peek(self) -> T | None:
        """Return the first item without removing it."""
        if not self._heap:
            return None
        return self._heap[0].item

    def remove(self, item: T) -> bool:
        """Remove a specific item (compared by identity).

        Returns:
            True if the item was queued and has been removed
        """
        for index, entry in enumerate(self._heap):
            if entry.item is item:
                last = self._heap.pop()
                if index < len(self._heap):
                    self._heap[index] = last
                    heapq.heapify(self._heap)
                return True
        return False

    def ordered(self) -> list[T]:
        """Return all items in dequeue order without modifying the queue."""
        return [entry.item for entry in sorted(self._heap)]

    def clear(self) -> None:
        self._heap.clear()

    def is_empty(self) -> bool:
        return not self._heap

    def __len__(self) -> int:
        return len(self._heap)

    def __iter__(self) -> Iterator[T]:
        return iter(self.ordered())
