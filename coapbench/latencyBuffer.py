import threading

import numpy as np


class LatencyBuffer:
    """Growable, merge-only store of latency samples in milliseconds.

    Appends may come from several client threads at once; reads hand out copies.
    """

    def __init__(self, samples=None):
        self._lock = threading.Lock()
        self._samples = [int(s) for s in samples] if samples else []

    def add(self, ms):
        with self._lock:
            self._samples.append(int(ms))

    def extend(self, samples):
        samples = [int(s) for s in samples]
        with self._lock:
            self._samples.extend(samples)

    def merge(self, other):
        self.extend(other.to_list())

    def clear(self):
        with self._lock:
            self._samples.clear()

    def to_list(self):
        with self._lock:
            return list(self._samples)

    def to_array(self):
        return np.array(self.to_list(), dtype=np.int64)

    def __len__(self):
        with self._lock:
            return len(self._samples)
