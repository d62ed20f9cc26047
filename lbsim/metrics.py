"""
Metrics aggregation for the load-balancing simulator.

Every tick the aggregator recomputes all statistics from the full
completed and failed collections (not incrementally) and appends one
immutable MetricsSnapshot to the history. The history is indexed by tick
so an external observer can replay or graph a run afterwards.

Definitions:
    - percentile(p) = sorted[ceil(p / 100 * n) - 1], clamped, 0 when empty
    - throughput = completed / elapsed ticks
    - SLA compliance = share of completed tasks within their target (%)
    - failure rate = failed / (failed + completed) (%)
    - load std = population standard deviation of per-server load
    - jitter = population standard deviation of response times
"""

from dataclasses import asdict, dataclass
from typing import Dict, Iterator, List, Optional, Sequence
import math

import numpy as np

from lbsim.config import PRIORITY_ORDER, get_sla_target
from lbsim.workload import Task


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """
    Nearest-rank percentile of an ascending sequence.

    Args:
        sorted_values: Values sorted in ascending order
        p: Percentile in [0, 100]

    Returns:
        The value at rank ceil(p/100 * n), or 0 for an empty sequence

    Example:
        >>> percentile([10, 20, 30, 40], 50)
        20
        >>> percentile([], 95)
        0
    """
    n = len(sorted_values)
    if n == 0:
        return 0
    index = math.ceil(p / 100 * n) - 1
    return sorted_values[max(0, min(index, n - 1))]


def sla_compliance(completed: Sequence[Task]) -> Dict[str, float]:
    """
    SLA compliance percentage per priority and overall.

    A task is compliant when its response time is within the target of
    its current (possibly escalated) priority. Buckets with no completed
    tasks report 100.

    Returns:
        Dict with keys "high", "medium", "low" and "overall"
    """
    compliance = {p: 100.0 for p in PRIORITY_ORDER}
    compliance["overall"] = 100.0

    for priority in PRIORITY_ORDER:
        bucket = [t for t in completed if t.priority == priority]
        if bucket:
            target = get_sla_target(priority)
            ok = sum(1 for t in bucket if t.response_time <= target)
            compliance[priority] = ok / len(bucket) * 100

    if completed:
        ok = sum(1 for t in completed if t.response_time <= t.sla_target)
        compliance["overall"] = ok / len(completed) * 100

    return compliance


def population_std(values: Sequence[float]) -> float:
    """Population standard deviation, 0 for empty input."""
    if len(values) == 0:
        return 0.0
    return float(np.std(np.asarray(values, dtype=float)))


def load_std(servers: Sequence) -> float:
    """Standard deviation of current load across servers."""
    return population_std([s.current_load for s in servers])


@dataclass(frozen=True)
class MetricsSnapshot:
    """
    Aggregated metrics of a single tick.

    Attributes:
        tick: Tick number (1-based)
        time: Simulated time at the end of the tick (ms)
        avg_response_time: Mean response time of completed tasks (ms)
        p50_response_time: Median response time
        p90_response_time: 90th percentile response time
        p95_response_time: 95th percentile response time
        throughput: Completed tasks per elapsed tick
        sla_compliance: Overall SLA compliance (%)
        sla_high: High priority SLA compliance (%)
        sla_medium: Medium priority SLA compliance (%)
        sla_low: Low priority SLA compliance (%)
        failure_rate: Failed share of finished tasks (%)
        availability: Mean server uptime (%)
        load_std: Population std-dev of per-server load
        queue_depth: Mean queued tasks per server
        jitter: Population std-dev of response times (ms)
        completed: Completed task count
        failed: Failed task count
    """
    tick: int
    time: float
    avg_response_time: float
    p50_response_time: float
    p90_response_time: float
    p95_response_time: float
    throughput: float
    sla_compliance: float
    sla_high: float
    sla_medium: float
    sla_low: float
    failure_rate: float
    availability: float
    load_std: float
    queue_depth: float
    jitter: float
    completed: int
    failed: int

    def __str__(self) -> str:
        return (
            f"Tick {self.tick}: "
            f"Avg Response: {self.avg_response_time / 1000:.2f}s, "
            f"P95: {self.p95_response_time / 1000:.2f}s, "
            f"SLA: {self.sla_compliance:.1f}%, "
            f"Throughput: {self.throughput:.2f} tasks/tick"
        )

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


class MetricsHistory:
    """Append-only, tick-indexed sequence of snapshots."""

    def __init__(self) -> None:
        self._snapshots: List[MetricsSnapshot] = []

    def append(self, snapshot: MetricsSnapshot) -> None:
        self._snapshots.append(snapshot)

    @property
    def latest(self) -> Optional[MetricsSnapshot]:
        return self._snapshots[-1] if self._snapshots else None

    def series(self, name: str) -> np.ndarray:
        """
        One metric across all recorded ticks.

        Raises:
            AttributeError: If name is not a MetricsSnapshot field
        """
        return np.array([getattr(s, name) for s in self._snapshots], dtype=float)

    def __getitem__(self, index: int) -> MetricsSnapshot:
        return self._snapshots[index]

    def __iter__(self) -> Iterator[MetricsSnapshot]:
        return iter(self._snapshots)

    def __len__(self) -> int:
        return len(self._snapshots)


class MetricsAggregator:
    """
    Samples global simulation state into MetricsSnapshot rows.

    Attributes:
        history: Every snapshot recorded so far
    """

    def __init__(self) -> None:
        self.history = MetricsHistory()

    def sample(
        self,
        tick: int,
        now: float,
        servers: Sequence,
        completed: Sequence[Task],
        failed: Sequence[Task]
    ) -> MetricsSnapshot:
        """
        Compute and record the metrics of one tick.

        Args:
            tick: Ticks elapsed so far
            now: Current simulated time (ms)
            servers: All servers of the pool
            completed: Completed tasks
            failed: Failed tasks

        Returns:
            The snapshot appended to the history
        """
        response_times = sorted(t.response_time for t in completed)
        n = len(response_times)
        avg_response = float(np.mean(response_times)) if n else 0.0

        finished = len(completed) + len(failed)
        compliance = sla_compliance(completed)

        if servers:
            availability = float(np.mean([s.uptime for s in servers]))
            queue_depth = sum(s.queue_depth for s in servers) / len(servers)
        else:
            availability = 0.0
            queue_depth = 0.0

        snapshot = MetricsSnapshot(
            tick=tick,
            time=now,
            avg_response_time=avg_response,
            p50_response_time=percentile(response_times, 50),
            p90_response_time=percentile(response_times, 90),
            p95_response_time=percentile(response_times, 95),
            throughput=len(completed) / tick if tick > 0 else 0.0,
            sla_compliance=compliance["overall"],
            sla_high=compliance["high"],
            sla_medium=compliance["medium"],
            sla_low=compliance["low"],
            failure_rate=len(failed) / finished * 100 if finished else 0.0,
            availability=availability,
            load_std=load_std(servers),
            queue_depth=queue_depth,
            jitter=population_std(response_times) if n > 1 else 0.0,
            completed=len(completed),
            failed=len(failed),
        )
        self.history.append(snapshot)
        return snapshot
