import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterator, List, Tuple
import numpy as np

Shape = Tuple[int, ...]


class BufferPool:
    """Reusable frame buffers keyed by shape.

    Buffers are allocated on first use and kept for the pool's lifetime.
    """

    def __init__(self, dtype=np.uint8):
        self.dtype = dtype
        self._free: Dict[Shape, List[np.ndarray]] = defaultdict(list)
        self._lock = threading.Lock()
        self.allocations = 0

    def acquire(self, shape: Shape) -> np.ndarray:
        shape = tuple(shape)
        with self._lock:
            free = self._free[shape]
            if free:
                return free.pop()
            self.allocations += 1
        return np.empty(shape, dtype=self.dtype)

    def release(self, buffer: np.ndarray) -> None:
        with self._lock:
            self._free[tuple(buffer.shape)].append(buffer)

    @contextmanager
    def checkout(self, shape: Shape) -> Iterator[np.ndarray]:
        buffer = self.acquire(shape)
        try:
            yield buffer
        finally:
            self.release(buffer)
