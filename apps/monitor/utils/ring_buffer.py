from collections import deque
from typing import Callable, Deque, Generic, Iterator, List, Optional, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """
    Bounded in-memory history. Oldest entries are evicted first once
    `capacity` is reached.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._items: Deque[T] = deque(maxlen=capacity)

    def append(self, item: T) -> None:
        self._items.append(item)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def latest(self, limit: Optional[int] = None) -> List[T]:
        """Newest first."""
        items = list(reversed(self._items))
        return items if limit is None else items[:limit]

    def oldest_first(self) -> List[T]:
        return list(self._items)

    def last(self) -> Optional[T]:
        return self._items[-1] if self._items else None

    def retain(self, keep: Callable[[T], bool]) -> int:
        """Drop entries for which `keep` is false. Returns how many were dropped."""
        kept = [item for item in self._items if keep(item)]
        dropped = len(self._items) - len(kept)
        self._items = deque(kept, maxlen=self.capacity)
        return dropped

    def clear(self) -> None:
        self._items.clear()
