"""
Scheduler module for the load-balancing simulator.

This module implements per-server priority scheduling. Every server owns
three FIFO queues (high, medium, low); once per tick the scheduler spends a
small, fixed budget of task-advancements on each server, strictly draining
higher priorities first.

Budget Rules:
    - At most MAX_ADVANCEMENTS_PER_TICK advancements per server per tick
    - One advancement removes min(STEP_UNIT, remaining_time) from a task
    - The high queue is served before medium, medium before low

Aging:
    A task whose time left to its SLA deadline falls below AGING_THRESHOLD
    of its current priority's target is escalated by one level and moved
    to the tail of the escalated queue in the same pass.
"""

from collections import deque
from typing import TYPE_CHECKING, Deque, Dict, Iterator, List, Optional
import logging

from lbsim.config import (
    AGING_THRESHOLD,
    MAX_ADVANCEMENTS_PER_TICK,
    PRIORITY_ORDER,
    STEP_UNIT,
)
from lbsim.workload import Task, TaskStatus

if TYPE_CHECKING:
    from lbsim.cluster import Server


logger = logging.getLogger(__name__)


class TaskQueues:
    """
    The three priority queues of a single server.

    A task is always stored in the queue matching its current priority;
    re-homing after an escalation keeps that true, so a task is never in
    two queues at once.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[Task]] = {p: deque() for p in PRIORITY_ORDER}

    def enqueue(self, task: Task) -> None:
        """Add a task to the back of the queue for its priority."""
        self._queues[task.priority].append(task)

    def remove(self, task: Task) -> None:
        """Remove a task from the queue matching its current priority."""
        self._queues[task.priority].remove(task)

    def rehome(self, task: Task, old_priority: str) -> None:
        """Move an escalated task from its old queue to the back of its new one."""
        self._queues[old_priority].remove(task)
        self._queues[task.priority].append(task)

    def queue(self, priority: str) -> Deque[Task]:
        return self._queues[priority]

    def depth(self, priority: Optional[str] = None) -> int:
        """Length of one queue, or of all three when priority is None."""
        if priority is not None:
            return len(self._queues[priority])
        return sum(len(q) for q in self._queues.values())

    def drain(self) -> List[Task]:
        """Remove and return every task, high queue first."""
        drained: List[Task] = []
        for priority in PRIORITY_ORDER:
            drained.extend(self._queues[priority])
            self._queues[priority].clear()
        return drained

    def __iter__(self) -> Iterator[Task]:
        for priority in PRIORITY_ORDER:
            yield from self._queues[priority]

    def __len__(self) -> int:
        return self.depth()

    @property
    def is_empty(self) -> bool:
        return self.depth() == 0


class PriorityScheduler:
    """
    Advances queued work on each server and applies the aging rule.

    The scheduler owns no state of its own beyond its budget parameters;
    all task and server state it touches lives on the servers it is
    handed. Completed tasks are returned so the caller can record them.

    Attributes:
        max_advancements: Advancement budget per server per tick
        step_unit: Work (ms) removed by one advancement
        aging_threshold: Fraction of the SLA target that triggers escalation
    """

    def __init__(
        self,
        max_advancements: int = MAX_ADVANCEMENTS_PER_TICK,
        step_unit: int = STEP_UNIT,
        aging_threshold: float = AGING_THRESHOLD
    ) -> None:
        self.max_advancements = max_advancements
        self.step_unit = step_unit
        self.aging_threshold = aging_threshold

    def process(self, server: "Server", now: float) -> List[Task]:
        """
        Run one scheduling pass over a server's queues.

        Args:
            server: Server whose queues to advance
            now: Current simulated time (ms), stamped on completions

        Returns:
            Tasks completed during this pass, in completion order
        """
        if server.is_failed:
            return []

        budget = self.max_advancements
        completed: List[Task] = []

        for priority in PRIORITY_ORDER:
            if budget <= 0:
                break
            # Iterate over a copy: completions remove tasks from the deque
            for task in list(server.queues.queue(priority)):
                if budget <= 0:
                    break
                task.remaining_time -= min(self.step_unit, task.remaining_time)
                budget -= 1
                if task.remaining_time == 0:
                    self._complete(server, task, now)
                    completed.append(task)

        return completed

    def _complete(self, server: "Server", task: Task, now: float) -> None:
        """Finalize a task whose remaining work reached zero."""
        task.completion_time = now
        task.response_time = now - task.arrival_time
        task.status = TaskStatus.COMPLETED

        # Load is a reservation: release exactly what assignment reserved
        server.current_load = max(0, server.current_load - task.processing_time)
        server.total_processed += 1
        server.response_time_history.append(task.response_time)

        server.queues.remove(task)
        server.processing.remove(task)

    def age(self, servers: List["Server"], now: float) -> List[Task]:
        """
        Escalate in-flight tasks that are close to their SLA deadline.

        Args:
            servers: All servers of the pool
            now: Current simulated time (ms)

        Returns:
            Tasks whose priority changed in this pass
        """
        escalated: List[Task] = []
        for server in servers:
            for task in server.processing:
                if task.status is not TaskStatus.PROCESSING:
                    continue
                time_left = task.sla_deadline - now
                if time_left >= task.sla_target * self.aging_threshold:
                    continue
                old_priority = task.priority
                if task.escalate():
                    server.queues.rehome(task, old_priority)
                    escalated.append(task)
                    logger.debug(
                        "Task %d escalated %s -> %s on server %d",
                        task.task_id, old_priority, task.priority, server.server_id
                    )
        return escalated
