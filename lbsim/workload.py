"""
Workload generation module for the load-balancing simulator.

This module defines the Task record that flows through the engine and the
TaskGenerator that synthesizes tasks from the configured distributions.

Each arrival draws:
    - A processing time, uniform over [processing_time_min, processing_time_max]
    - A priority, by comparing a uniform draw in [0, 100) against the
      cumulative priority shares (high first, then high + medium, else low)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional
import random

from lbsim.config import PRIORITY_ORDER, get_sla_target


class TaskStatus(str, Enum):
    """Lifecycle of a task. Transitions only move forward."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a task ended in the failed collection."""
    NO_HEALTHY_SERVERS = "no healthy servers"
    SELECTION_FAILED = "selection failed"
    SERVER_FAILURE = "server failure"


@dataclass(eq=False)
class Task:
    """
    Represents a single unit of work routed by the load balancer.

    Identity comparison is used on purpose: two tasks are only the same
    task if they are the same object, regardless of field values.

    Attributes:
        task_id: Unique, ascending identifier
        priority: Current priority class (escalates, never de-escalates)
        arrival_time: Simulated time (ms) the task entered the system
        processing_time: Total work (ms), fixed at creation
        remaining_time: Work left (ms), decreases to zero
        sla_deadline: arrival_time + SLA target of the initial priority
        assigned_server: Id of the server the task was routed to
        status: Current lifecycle state
        completion_time: Simulated time of completion
        response_time: completion_time - arrival_time
        failure_reason: Set when the task fails
    """
    task_id: int
    priority: str
    arrival_time: float
    processing_time: int
    remaining_time: int = field(init=False)
    sla_deadline: float = field(init=False)
    assigned_server: Optional[int] = None
    status: TaskStatus = TaskStatus.PENDING
    completion_time: Optional[float] = None
    response_time: Optional[float] = None
    failure_reason: Optional[FailureReason] = None

    def __post_init__(self) -> None:
        self.remaining_time = self.processing_time
        self.sla_deadline = self.arrival_time + get_sla_target(self.priority)

    @property
    def sla_target(self) -> int:
        """SLA target of the task's current priority."""
        return get_sla_target(self.priority)

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    @property
    def sla_violated(self) -> bool:
        """True when a completed task took longer than its current target."""
        return self.response_time is not None and self.response_time > self.sla_target

    def escalate(self) -> bool:
        """
        Raise the priority by exactly one level.

        Returns:
            True if the priority changed, False if the task was already high
        """
        idx = PRIORITY_ORDER.index(self.priority)
        if idx == 0:
            return False
        self.priority = PRIORITY_ORDER[idx - 1]
        return True

    def fail(self, reason: FailureReason) -> None:
        self.status = TaskStatus.FAILED
        self.failure_reason = reason

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.task_id,
            "priority": self.priority,
            "arrival_time": self.arrival_time,
            "processing_time": self.processing_time,
            "remaining_time": self.remaining_time,
            "sla_deadline": self.sla_deadline,
            "assigned_server": self.assigned_server,
            "status": self.status.value,
            "completion_time": self.completion_time,
            "response_time": self.response_time,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
        }


@dataclass
class TaskGenerator:
    """
    Synthesizes tasks with priority, processing time and SLA deadline.

    The generator only creates tasks; routing them is the caller's job
    (Simulation.generate_task assigns each new task exactly once).

    Attributes:
        processing_time_min: Lower bound of processing time (ms)
        processing_time_max: Upper bound of processing time (ms)
        priority_distribution: Normalized percent shares per priority
        rng: Random source shared with the rest of the simulation

    Example:
        >>> gen = TaskGenerator(500, 3000, {"high": 20, "medium": 50, "low": 30},
        ...                     random.Random(42))
        >>> gen.next_task(current_time=0).task_id
        1
    """
    processing_time_min: int
    processing_time_max: int
    priority_distribution: Dict[str, int]
    rng: random.Random = field(default_factory=random.Random, repr=False)
    next_id: int = 1

    def draw_processing_time(self) -> int:
        return self.rng.randint(self.processing_time_min, self.processing_time_max)

    def draw_priority(self) -> str:
        """Map a uniform draw in [0, 100) onto the cumulative priority shares."""
        roll = self.rng.random() * 100
        high = self.priority_distribution["high"]
        medium = self.priority_distribution["medium"]
        if roll < high:
            return "high"
        if roll < high + medium:
            return "medium"
        return "low"

    def next_task(self, current_time: float) -> Task:
        """Create the next task, arriving at current_time."""
        processing_time = self.draw_processing_time()
        priority = self.draw_priority()
        task = Task(
            task_id=self.next_id,
            priority=priority,
            arrival_time=current_time,
            processing_time=processing_time,
        )
        self.next_id += 1
        return task

    @property
    def generated(self) -> int:
        """Number of tasks created so far."""
        return self.next_id - 1
