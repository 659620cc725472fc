"""
Job Counters

Run-scoped, monotonically increasing counters. A fresh instance is handed
to every split attempt and merged into the job totals when the attempt
succeeds, so no counter state is shared between runs.
"""

import threading
from collections import defaultdict
from typing import Dict, Mapping, Optional


class JobCounters:
    """Thread-safe named counters."""

    def __init__(self, initial: Optional[Mapping[str, int]] = None):
        self._lock = threading.Lock()
        self._values: Dict[str, int] = defaultdict(int)
        if initial:
            for name, value in initial.items():
                self.increment(name, value)

    def increment(self, name: str, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError(f"Counter {name} cannot be decremented")
        with self._lock:
            self._values[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._values.get(name, 0)

    def merge(self, other: "JobCounters") -> None:
        for name, value in other.as_dict().items():
            self.increment(name, value)

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)

    def __repr__(self) -> str:
        return f"JobCounters({self.as_dict()})"
