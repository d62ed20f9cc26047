"""
Server pool and health state machine for the load-balancing simulator.

Health Transitions:
    healthy    -> degraded    load ratio above degrade_threshold
    degraded   -> healthy     load ratio below recover_threshold
    healthy    -> failed      Bernoulli trial on a health-check tick
    failed     -> recovering  once now >= recovery_time
    recovering -> healthy     deferred event, recovering_delay after entry

The last transition is not evaluated by the health check. It is a
scheduled event kept in DeferredEvents, keyed by server id and drained at
the start of every tick. Scheduling again for a server supersedes the
previous entry, cancelling is idempotent, and a due event whose server is
no longer recovering does nothing.
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, List, Optional, Tuple
import heapq
import logging
import random

import numpy as np

from lbsim.config import (
    DEFAULT_RESPONSE_TIME,
    NEAR_CAPACITY_RATIO,
    RESPONSE_HISTORY_SIZE,
    RESPONSE_WINDOW,
    WEIGHT_RANGE,
    SimulationConfig,
)
from lbsim.eventlog import EventLog, LogCategory
from lbsim.scheduler import TaskQueues
from lbsim.workload import FailureReason, Task


logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"
    RECOVERING = "recovering"


@dataclass(eq=False)
class Server:
    """
    A simulated backend server.

    Attributes:
        server_id: 1-based identifier, stable for the whole run
        capacity: Nominal capacity, compared against current_load
        weight: Static weight in WEIGHT_RANGE, drawn at creation
        health: Current health state
        current_load: Sum of processing times reserved by queued tasks
        queues: High/medium/low task queues
        processing: In-flight tasks in assignment order
        response_time_history: Last RESPONSE_HISTORY_SIZE response times
        total_processed: Completed task counter
        uptime: Availability percentage, refreshed on health checks
        failure_time: When the current outage started
        recovery_time: When the failed server may start recovering
        downtime: Accumulated length of finished outages (ms)
        creation_time: Simulated time the server joined the pool
    """
    server_id: int
    capacity: float
    weight: float = 1.0
    health: HealthStatus = HealthStatus.HEALTHY
    current_load: float = 0
    queues: TaskQueues = field(default_factory=TaskQueues)
    processing: List[Task] = field(default_factory=list)
    response_time_history: Deque[float] = field(
        default_factory=lambda: deque(maxlen=RESPONSE_HISTORY_SIZE)
    )
    total_processed: int = 0
    uptime: float = 100.0
    failure_time: Optional[float] = None
    recovery_time: Optional[float] = None
    downtime: float = 0.0
    creation_time: float = 0.0

    @property
    def load_ratio(self) -> float:
        return self.current_load / self.capacity

    @property
    def is_available(self) -> bool:
        """Whether selection strategies may route new work here."""
        return self.health in (HealthStatus.HEALTHY, HealthStatus.DEGRADED)

    @property
    def is_failed(self) -> bool:
        return self.health is HealthStatus.FAILED

    @property
    def queue_depth(self) -> int:
        return self.queues.depth()

    def average_response_time(self, window: int = RESPONSE_WINDOW) -> float:
        """Mean of the most recent response times, or a neutral default."""
        if not self.response_time_history:
            return DEFAULT_RESPONSE_TIME
        recent = list(self.response_time_history)[-window:]
        return float(np.mean(recent))

    def enqueue(self, task: Task) -> None:
        """Reserve capacity for a task and queue it by priority."""
        self.queues.enqueue(task)
        self.processing.append(task)
        self.current_load += task.processing_time

    def update_uptime(self, now: float) -> float:
        """Recompute uptime as the share of elapsed time spent up."""
        elapsed = max(1.0, now - self.creation_time)
        down = self.downtime
        if self.failure_time is not None:
            down += now - self.failure_time
        self.uptime = max(0.0, min(100.0, (elapsed - down) / elapsed * 100))
        return self.uptime

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.server_id,
            "capacity": self.capacity,
            "weight": self.weight,
            "health": self.health.value,
            "current_load": self.current_load,
            "queues": {
                p: [t.task_id for t in self.queues.queue(p)]
                for p in ("high", "medium", "low")
            },
            "processing": [t.task_id for t in self.processing],
            "response_time_history": list(self.response_time_history),
            "total_processed": self.total_processed,
            "uptime": self.uptime,
            "failure_time": self.failure_time,
            "recovery_time": self.recovery_time,
        }


@dataclass(order=True)
class ScheduledEvent:
    """A deferred recovering -> healthy transition, ordered by due time."""
    time: float
    seq: int
    server_id: int = field(compare=False)
    cancelled: bool = field(default=False, compare=False)


class DeferredEvents:
    """
    Min-heap of scheduled transitions with at most one live entry per server.

    Cancelled entries stay in the heap and are skipped when popped.
    """

    def __init__(self) -> None:
        self._heap: List[ScheduledEvent] = []
        self._live: Dict[int, ScheduledEvent] = {}
        self._seq = 0

    def schedule(self, server_id: int, time: float) -> ScheduledEvent:
        """Schedule a transition, superseding any pending one for the server."""
        self.cancel(server_id)
        event = ScheduledEvent(time=time, seq=self._seq, server_id=server_id)
        self._seq += 1
        heapq.heappush(self._heap, event)
        self._live[server_id] = event
        return event

    def cancel(self, server_id: int) -> bool:
        """Cancel the pending transition of a server. Safe to call repeatedly."""
        event = self._live.pop(server_id, None)
        if event is None:
            return False
        event.cancelled = True
        return True

    def pop_due(self, now: float) -> List[ScheduledEvent]:
        """Remove and return live events due at or before now, in due order."""
        due: List[ScheduledEvent] = []
        while self._heap and self._heap[0].time <= now:
            event = heapq.heappop(self._heap)
            if event.cancelled:
                continue
            del self._live[event.server_id]
            due.append(event)
        return due

    def pending(self, server_id: int) -> Optional[ScheduledEvent]:
        return self._live.get(server_id)

    def __len__(self) -> int:
        return len(self._live)


class ServerPool:
    """
    Owns the servers of one simulation and drives their health transitions.

    Methods that fail a server return the tasks drained from it so the
    caller can move them to its failed collection.

    Attributes:
        servers: All servers, in id order
        deferred: Pending recovering -> healthy transitions
    """

    def __init__(
        self,
        config: SimulationConfig,
        rng: random.Random,
        log: EventLog
    ) -> None:
        self.config = config
        self.rng = rng
        self.log = log
        self.deferred = DeferredEvents()
        low, high = WEIGHT_RANGE
        self.servers: List[Server] = [
            Server(
                server_id=i,
                capacity=config.server_capacity,
                weight=self.rng.random() * (high - low) + low,
            )
            for i in range(1, config.server_count + 1)
        ]

    @property
    def failure_probability(self) -> float:
        return self.config.failure_rate * self.config.failure_multiplier

    def available(self) -> List[Server]:
        """Servers a selection strategy may choose from, in id order."""
        return [s for s in self.servers if s.is_available]

    def get(self, server_id: int) -> Server:
        for server in self.servers:
            if server.server_id == server_id:
                return server
        raise KeyError(f"Unknown server id: {server_id}")

    def assign(self, server: Server, task: Task) -> None:
        """Place an already-selected task on a server."""
        server.enqueue(task)
        if server.current_load > server.capacity * NEAR_CAPACITY_RATIO:
            self.log.record(
                f"Server {server.server_id} is near capacity "
                f"({round(server.current_load)}/{server.capacity})",
                LogCategory.SERVER_OVERLOAD,
            )

    # -------------------------------------------------------------------------
    # Failure and recovery
    # -------------------------------------------------------------------------

    def fail_server(self, server: Server, now: float, message: str) -> List[Task]:
        """
        Take a server down and fail everything queued on it.

        Args:
            server: Server to fail
            now: Current simulated time (ms)
            message: Event log text describing the cause

        Returns:
            Tasks that failed because of the outage, high priority first
        """
        server.health = HealthStatus.FAILED
        server.failure_time = now
        server.recovery_time = now + self.config.recovery_delay
        self.deferred.cancel(server.server_id)
        self.log.record(message, LogCategory.SERVER_FAILURE)
        logger.info("Server %d failed at t=%s", server.server_id, now)

        drained = server.queues.drain()
        for task in drained:
            task.fail(FailureReason.SERVER_FAILURE)
            self.log.record(
                f"Task {task.task_id} failed due to server {server.server_id} failure",
                LogCategory.SERVER_FAILURE,
            )
        server.processing.clear()
        server.current_load = 0
        return drained

    def trigger_failure(self, now: float) -> Tuple[Optional[Server], List[Task]]:
        """
        Fail one randomly chosen available server.

        Returns:
            The failed server (None if no server was available) and the
            tasks drained from it
        """
        candidates = self.available()
        if not candidates:
            return None, []
        server = candidates[int(self.rng.random() * len(candidates))]
        drained = self.fail_server(
            server, now, f"Manually triggered failure on Server {server.server_id}"
        )
        return server, drained

    def _mark_healthy(self, server: Server, now: float) -> None:
        if server.failure_time is not None:
            server.downtime += now - server.failure_time
        server.health = HealthStatus.HEALTHY
        server.failure_time = None
        server.recovery_time = None

    def recover_all(self, now: float) -> List[Server]:
        """Bring every failed or recovering server straight back to healthy."""
        recovered: List[Server] = []
        for server in self.servers:
            if server.health in (HealthStatus.FAILED, HealthStatus.RECOVERING):
                self.deferred.cancel(server.server_id)
                self._mark_healthy(server, now)
                recovered.append(server)
        self.log.record("All servers manually recovered", LogCategory.SERVER_RECOVERY)
        return recovered

    def complete_recoveries(self, now: float) -> List[Server]:
        """
        Apply due recovering -> healthy transitions.

        A due event is ignored when its server has left the recovering
        state in the meantime (manual recovery or a new failure).
        """
        recovered: List[Server] = []
        for event in self.deferred.pop_due(now):
            server = self.get(event.server_id)
            if server.health is not HealthStatus.RECOVERING:
                continue
            self._mark_healthy(server, now)
            self.log.record(
                f"Server {server.server_id} fully recovered", LogCategory.SERVER_RECOVERY
            )
            logger.info("Server %d recovered at t=%s", server.server_id, now)
            recovered.append(server)
        return recovered

    # -------------------------------------------------------------------------
    # Health check
    # -------------------------------------------------------------------------

    def health_check(self, now: float) -> List[Task]:
        """
        Evaluate random failures, recovery, load degradation and uptime.

        Args:
            now: Current simulated time (ms)

        Returns:
            Tasks failed by servers that went down during this check
        """
        failed_tasks: List[Task] = []
        config = self.config

        for server in self.servers:
            if (server.health is HealthStatus.HEALTHY
                    and self.rng.random() < self.failure_probability):
                failed_tasks.extend(self.fail_server(
                    server, now, f"Server {server.server_id} failed due to random failure"
                ))

            if (server.health is HealthStatus.FAILED
                    and server.recovery_time is not None
                    and now >= server.recovery_time):
                server.health = HealthStatus.RECOVERING
                self.deferred.schedule(server.server_id, now + config.recovering_delay)
                self.log.record(
                    f"Server {server.server_id} recovering", LogCategory.SERVER_RECOVERY
                )

            # Thresholds are compared against the raw load ratio
            if server.health is HealthStatus.HEALTHY:
                if server.load_ratio > config.degrade_threshold:
                    server.health = HealthStatus.DEGRADED
                    self.log.record(
                        f"Server {server.server_id} performance degraded due to high load",
                        LogCategory.SERVER_OVERLOAD,
                    )
            elif server.health is HealthStatus.DEGRADED:
                if server.load_ratio < config.recover_threshold:
                    server.health = HealthStatus.HEALTHY

            server.update_uptime(now)

        return failed_tasks
