import statistics
import time
from typing import Dict, List, Optional


class RunMetrics:
    """Collects counters and timings for one rebalancing run."""

    def __init__(self):
        self._start = time.time()
        self._finished: Optional[float] = None
        self.examined = 0
        self.skipped = 0
        self.migrated = 0
        self._durations: List[float] = []
        self._attempts: List[int] = []
        self.moves: List[Dict[str, object]] = []
        self.distribution_before: Dict[str, int] = {}
        self.distribution_after: Dict[str, int] = {}

    def record_skip(self) -> None:
        self.examined += 1
        self.skipped += 1

    def record_planned(self) -> None:
        self.examined += 1

    def record_migration(self, queue: str, source: Optional[str], target: str, duration_ms: float, attempts: int) -> None:
        self.examined += 1
        self.migrated += 1
        self._durations.append(duration_ms)
        self._attempts.append(attempts)
        self.moves.append({"queue": queue, "from": source, "to": target})

    def finish(self) -> None:
        self._finished = time.time()

    def snapshot(self) -> Dict[str, object]:
        end = self._finished or time.time()
        return {
            "examined": self.examined,
            "skipped": self.skipped,
            "migrated": self.migrated,
            "avg_move_ms": statistics.fmean(self._durations) if self._durations else 0.0,
            "max_polls": max(self._attempts) if self._attempts else 0,
            "elapsed_s": end - self._start,
            "moves": list(self.moves),
            "distribution_before": dict(self.distribution_before),
            "distribution_after": dict(self.distribution_after),
        }
