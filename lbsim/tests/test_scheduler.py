"""
Tests for the per-server priority scheduler.

Covers:
    1. TaskQueues bookkeeping and re-homing
    2. Per-tick budget and strict priority order
    3. Completion bookkeeping (load, history, counters)
    4. Aging (deadline-driven priority escalation)
"""

import pytest
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from lbsim.cluster import HealthStatus, Server
from lbsim.config import PRIORITY_ORDER
from lbsim.scheduler import PriorityScheduler, TaskQueues
from lbsim.workload import Task, TaskStatus


def place(server: Server, task_id: int, priority: str, processing_time: int = 1000,
          arrival_time: float = 0) -> Task:
    task = Task(task_id=task_id, priority=priority, arrival_time=arrival_time,
                processing_time=processing_time)
    task.status = TaskStatus.PROCESSING
    task.assigned_server = server.server_id
    server.enqueue(task)
    return task


# =============================================================================
# TaskQueues
# =============================================================================

class TestTaskQueues:
    """Tests for TaskQueues."""

    def test_fifo_within_priority(self) -> None:
        queues = TaskQueues()
        tasks = [Task(task_id=i, priority="medium", arrival_time=0, processing_time=1)
                 for i in range(3)]
        for task in tasks:
            queues.enqueue(task)

        assert list(queues.queue("medium")) == tasks
        assert queues.depth("medium") == 3
        assert queues.depth("high") == 0

    def test_iteration_is_priority_ordered(self) -> None:
        queues = TaskQueues()
        low = Task(task_id=1, priority="low", arrival_time=0, processing_time=1)
        high = Task(task_id=2, priority="high", arrival_time=0, processing_time=1)
        queues.enqueue(low)
        queues.enqueue(high)

        assert list(queues) == [high, low]
        assert len(queues) == 2

    def test_rehome_moves_between_queues(self) -> None:
        """An escalated task lives in exactly one queue afterwards."""
        queues = TaskQueues()
        waiting = Task(task_id=1, priority="medium", arrival_time=0, processing_time=1)
        task = Task(task_id=2, priority="low", arrival_time=0, processing_time=1)
        queues.enqueue(waiting)
        queues.enqueue(task)

        task.escalate()
        queues.rehome(task, "low")

        assert list(queues.queue("medium")) == [waiting, task]
        assert task not in queues.queue("low")
        assert sum(1 for t in queues if t is task) == 1

    def test_drain_empties_everything(self) -> None:
        queues = TaskQueues()
        for i, priority in enumerate(PRIORITY_ORDER):
            queues.enqueue(Task(task_id=i, priority=priority, arrival_time=0,
                                processing_time=1))
        drained = queues.drain()
        assert [t.priority for t in drained] == list(PRIORITY_ORDER)
        assert queues.is_empty


# =============================================================================
# Scheduling pass
# =============================================================================

class TestSchedulingPass:
    """Tests for PriorityScheduler.process."""

    def test_budget_caps_advancements(self) -> None:
        server = Server(server_id=1, capacity=100)
        tasks = [place(server, i, "high", 3000) for i in range(5)]

        PriorityScheduler().process(server, now=1000)

        assert [t.remaining_time for t in tasks] == [2000, 2000, 2000, 3000, 3000]

    def test_high_before_medium_before_low(self) -> None:
        server = Server(server_id=1, capacity=100)
        low = place(server, 1, "low", 2000)
        medium = place(server, 2, "medium", 2000)
        highs = [place(server, 3, "high", 2000), place(server, 4, "high", 2000)]

        PriorityScheduler().process(server, now=1000)

        assert [t.remaining_time for t in highs] == [1000, 1000]
        assert medium.remaining_time == 1000
        assert low.remaining_time == 2000

    def test_partial_step_does_not_go_negative(self) -> None:
        server = Server(server_id=1, capacity=100)
        task = place(server, 1, "medium", 400)

        completed = PriorityScheduler().process(server, now=1000)

        assert completed == [task]
        assert task.remaining_time == 0

    def test_completion_bookkeeping(self) -> None:
        server = Server(server_id=1, capacity=100)
        done = place(server, 1, "high", 1000, arrival_time=0)
        other = place(server, 2, "low", 5000, arrival_time=0)
        assert server.current_load == 6000

        completed = PriorityScheduler().process(server, now=3000)

        assert completed == [done]
        assert done.status is TaskStatus.COMPLETED
        assert done.completion_time == 3000
        assert done.response_time == 3000
        assert server.current_load == 5000
        assert server.total_processed == 1
        assert list(server.response_time_history) == [3000]
        assert done not in server.processing
        assert done not in server.queues
        assert other in server.processing

    def test_load_released_by_processing_time(self) -> None:
        """Load drops by the original processing time, floored at zero."""
        server = Server(server_id=1, capacity=100)
        task = place(server, 1, "high", 800)
        server.current_load = 500  # e.g. after a manual adjustment

        PriorityScheduler().process(server, now=1000)
        assert task.status is TaskStatus.COMPLETED
        assert server.current_load == 0

    def test_zero_work_task_completes(self) -> None:
        server = Server(server_id=1, capacity=100)
        task = place(server, 1, "low", 0)
        assert PriorityScheduler().process(server, now=1000) == [task]

    def test_history_is_bounded(self) -> None:
        server = Server(server_id=1, capacity=100)
        scheduler = PriorityScheduler()
        for i in range(25):
            place(server, i, "high", 500)
            scheduler.process(server, now=1000 + i)
        assert len(server.response_time_history) == 20
        assert server.total_processed == 25

    def test_failed_server_is_skipped(self) -> None:
        server = Server(server_id=1, capacity=100)
        task = place(server, 1, "high", 1000)
        server.health = HealthStatus.FAILED

        assert PriorityScheduler().process(server, now=1000) == []
        assert task.remaining_time == 1000


# =============================================================================
# Aging
# =============================================================================

class TestAging:
    """Tests for deadline-driven priority escalation."""

    def test_low_escalates_to_medium_then_high(self) -> None:
        """
        Low task, target 10000ms, arrival 0: medium once fewer than 3000ms
        remain, high once fewer than 1500ms (30% of 5000) remain.
        """
        server = Server(server_id=1, capacity=100)
        task = place(server, 1, "low", 20000)
        scheduler = PriorityScheduler()

        scheduler.age([server], now=7000)
        assert task.priority == "low"

        scheduler.age([server], now=7001)
        assert task.priority == "medium"
        assert task in server.queues.queue("medium")

        scheduler.age([server], now=8500)
        assert task.priority == "medium"

        scheduler.age([server], now=8501)
        assert task.priority == "high"
        assert task in server.queues.queue("high")
        assert server.queues.depth() == 1

    def test_one_level_per_pass(self) -> None:
        server = Server(server_id=1, capacity=100)
        task = place(server, 1, "low", 20000)

        escalated = PriorityScheduler().age([server], now=9999)
        assert escalated == [task]
        assert task.priority == "medium"

    def test_high_is_terminal(self) -> None:
        server = Server(server_id=1, capacity=100)
        task = place(server, 1, "high", 20000)
        assert PriorityScheduler().age([server], now=100000) == []
        assert task.priority == "high"

    def test_priority_never_decreases(self) -> None:
        """Property: across a long run every task only moves up PRIORITY_ORDER."""
        server = Server(server_id=1, capacity=100)
        tasks = [place(server, i, PRIORITY_ORDER[i % 3], 4000, arrival_time=i * 500)
                 for i in range(12)]
        scheduler = PriorityScheduler()
        last_rank = {t.task_id: PRIORITY_ORDER.index(t.priority) for t in tasks}

        for tick in range(1, 30):
            now = tick * 1000
            scheduler.process(server, now)
            scheduler.age([server], now)
            for task in tasks:
                rank = PRIORITY_ORDER.index(task.priority)
                assert rank <= last_rank[task.task_id]
                last_rank[task.task_id] = rank

    def test_escalated_task_is_served_from_new_queue(self) -> None:
        server = Server(server_id=1, capacity=100)
        blockers = [place(server, i, "medium", 10000, arrival_time=7000) for i in range(3)]
        aged = place(server, 9, "low", 1000)
        scheduler = PriorityScheduler()

        scheduler.age([server], now=7500)
        scheduler.age([server], now=8600)
        assert aged.priority == "high"

        completed = scheduler.process(server, now=9000)
        assert completed == [aged]
        assert [b.remaining_time for b in blockers] == [9000, 9000, 10000]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
