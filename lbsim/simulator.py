"""
Core simulation engine for the load-balancing simulator.

This module implements a discrete-time simulation of a server pool behind
a load balancer. All state of a run (servers, tasks, metrics, event log,
random source) lives in one Simulation object that external drivers step
one tick at a time and inspect afterwards.

Per-tick Order:
    1. Advance the clock and apply due recovering -> healthy transitions
    2. Health check (only on multiples of health_check_interval)
    3. Priority scheduling pass on every server
    4. Aging pass over all in-flight tasks
    5. Metrics sample, returned to the caller

Task arrivals are not part of a tick. They come from a separate cadence
(see Driver) or from direct generate_task() calls, and each new task is
routed exactly once at arrival.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum, auto
from typing import Dict, List, Optional, Sequence
import heapq
import logging
import random

from lbsim.balancer import Algorithm, SelectionStrategy, create_strategy
from lbsim.cluster import Server, ServerPool
from lbsim.config import (
    COMPARISON_FAILURE_TICK,
    COMPARISON_MAX_TICKS,
    SPEED_INTERVALS,
    SimulationConfig,
)
from lbsim.eventlog import EventLog, LogCategory
from lbsim.metrics import MetricsAggregator, MetricsSnapshot, load_std, sla_compliance
from lbsim.scheduler import PriorityScheduler
from lbsim.workload import FailureReason, Task, TaskGenerator, TaskStatus


logger = logging.getLogger(__name__)


class Simulation:
    """
    Steppable load-balancing simulation.

    Attributes:
        config: Normalized configuration of the current run
        tick: Ticks elapsed since the last reset
        pool: Server pool and health state machine
        strategy: Server selection strategy of the run
        scheduler: Per-server priority scheduler
        generator: Task generator
        tasks: Every task generated, in arrival order
        completed_tasks: Tasks that finished processing
        failed_tasks: Tasks that failed permanently
        metrics: Per-tick metrics aggregator
        event_log: Append-only observer log
    """

    def __init__(self, config: Optional[SimulationConfig] = None) -> None:
        self.config: Optional[SimulationConfig] = None
        self.reset(config or SimulationConfig())

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def reset(self, config: Optional[SimulationConfig] = None) -> None:
        """
        Reinitialize servers and all collections for a fresh run.

        The configuration is validated before anything is touched, so a
        rejected config leaves the previous run fully intact.

        Args:
            config: New configuration, or None to rerun the current one

        Raises:
            ConfigInvalid: If the configuration is structurally invalid
        """
        config = config if config is not None else self.config
        config.validate()
        config = config.normalized()

        rng = random.Random(config.seed)
        event_log = EventLog()
        pool = ServerPool(config, rng, event_log)
        strategy = create_strategy(config.algorithm, rng=rng)
        generator = TaskGenerator(
            processing_time_min=config.processing_time_min,
            processing_time_max=config.processing_time_max,
            priority_distribution=config.priority_distribution,
            rng=rng,
        )

        self.config = config
        self.rng = rng
        self.event_log = event_log
        self.pool = pool
        self.strategy: SelectionStrategy = strategy
        self.generator = generator
        self.scheduler = PriorityScheduler()
        self.metrics = MetricsAggregator()
        self.tick = 0
        self.tasks: List[Task] = []
        self.completed_tasks: List[Task] = []
        self.failed_tasks: List[Task] = []
        self._completion_logged = False

        self.event_log.record("Load balancing simulator reset - ready to start")
        logger.info(
            "Reset: %d servers, %d tasks, algorithm=%s, seed=%s",
            config.server_count, config.task_count, strategy.name, config.seed
        )

    @property
    def now(self) -> float:
        """Simulated time (ms) at the current tick."""
        return self.tick * self.config.tick_duration

    @property
    def servers(self) -> List[Server]:
        return self.pool.servers

    @property
    def finished(self) -> bool:
        """True once the full task quota was generated and every task is terminal."""
        generated = self.generator.generated
        done = len(self.completed_tasks) + len(self.failed_tasks)
        return generated >= self.config.task_count and done >= generated

    # -------------------------------------------------------------------------
    # Arrivals
    # -------------------------------------------------------------------------

    def generate_task(self) -> Task:
        """Synthesize one task at the current time and route it."""
        task = self.generator.next_task(self.now)
        self.tasks.append(task)
        self._assign(task)
        category = (
            LogCategory.HIGH_PRIORITY_ARRIVAL if task.priority == "high"
            else LogCategory.ARRIVAL
        )
        self.event_log.record(
            f"Task {task.task_id} arrived ({task.priority} priority, "
            f"{task.processing_time}ms processing time)",
            category,
        )
        return task

    def _assign(self, task: Task) -> Optional[Server]:
        """Route a new task once; failures are terminal."""
        candidates = self.pool.available()
        if not candidates:
            self._fail_assignment(task, FailureReason.NO_HEALTHY_SERVERS)
            return None

        server = self.strategy.select(candidates, task)
        if server is None:
            self._fail_assignment(task, FailureReason.SELECTION_FAILED)
            return None

        task.assigned_server = server.server_id
        task.status = TaskStatus.PROCESSING
        self.pool.assign(server, task)
        self.event_log.record(
            f"Task {task.task_id} assigned to Server {server.server_id} "
            f"({task.priority} priority)",
            LogCategory.ASSIGNMENT,
        )
        return server

    def _fail_assignment(self, task: Task, reason: FailureReason) -> None:
        task.fail(reason)
        self.failed_tasks.append(task)
        self.event_log.record(
            f"Task {task.task_id} failed - {reason.value}", LogCategory.SERVER_FAILURE
        )

    # -------------------------------------------------------------------------
    # Ticks
    # -------------------------------------------------------------------------

    def step(self) -> MetricsSnapshot:
        """
        Advance the simulation by one tick.

        Returns:
            The metrics snapshot recorded for this tick
        """
        self.tick += 1
        self.event_log.tick = self.tick
        now = self.now

        self.pool.complete_recoveries(now)
        if self.tick % self.config.health_check_interval == 0:
            self.failed_tasks.extend(self.pool.health_check(now))

        for server in self.pool.servers:
            for task in self.scheduler.process(server, now):
                self._record_completion(server, task)

        self.scheduler.age(self.pool.servers, now)

        snapshot = self.metrics.sample(
            self.tick, now, self.pool.servers, self.completed_tasks, self.failed_tasks
        )

        if self.finished and not self._completion_logged:
            self._completion_logged = True
            self.event_log.record("Simulation completed - all tasks processed")
            logger.info("All %d tasks finished at tick %d", len(self.tasks), self.tick)

        return snapshot

    def _record_completion(self, server: Server, task: Task) -> None:
        self.completed_tasks.append(task)
        if task.sla_violated:
            self.event_log.record(
                f"Task {task.task_id} SLA violation "
                f"({task.response_time:g}ms > {task.sla_target}ms)",
                LogCategory.SLA_VIOLATION,
            )
        self.event_log.record(
            f"Task {task.task_id} completed on Server {server.server_id} "
            f"({task.response_time:g}ms response time)",
            LogCategory.COMPLETION,
        )

    def step_simulation(self) -> MetricsSnapshot:
        """Manual single step: one arrival (while quota remains), then one tick."""
        if self.generator.generated < self.config.task_count:
            self.generate_task()
        return self.step()

    # -------------------------------------------------------------------------
    # Manual health overrides
    # -------------------------------------------------------------------------

    def trigger_failure(self) -> Optional[Server]:
        """Fail a random available server; returns it, or None if none was up."""
        server, drained = self.pool.trigger_failure(self.now)
        self.failed_tasks.extend(drained)
        return server

    def recover_all(self) -> List[Server]:
        """Return every failed or recovering server to healthy."""
        return self.pool.recover_all(self.now)

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def snapshot(self) -> Dict[str, object]:
        """
        Full JSON-serialisable state for external exporters.

        Returns:
            Dict with config, servers, tasks, completed, failed, metrics
            history and event log
        """
        return {
            "config": asdict(self.config),
            "algorithm": self.strategy.name,
            "tick": self.tick,
            "simulation_time": self.now,
            "servers": [s.to_dict() for s in self.pool.servers],
            "tasks": [t.to_dict() for t in self.tasks],
            "completed_tasks": [t.to_dict() for t in self.completed_tasks],
            "failed_tasks": [t.to_dict() for t in self.failed_tasks],
            "metrics": [m.to_dict() for m in self.metrics.history],
            "event_log": [e.to_dict() for e in self.event_log],
        }

    def compare_algorithms(
        self,
        algorithms: Optional[Sequence[str]] = None,
        task_count: Optional[int] = None,
        **kwargs
    ) -> Dict[str, "ComparisonResult"]:
        """Benchmark algorithms on this simulation's config, then reset it."""
        results = compare_algorithms(
            algorithms=algorithms,
            task_count=task_count,
            config=self.config,
            **kwargs
        )
        self.reset(self.config)
        return results


# =============================================================================
# Clock / Driver: two independent cadences on a virtual clock
# =============================================================================

class CadenceType(Enum):
    """Periodic event sources driving a simulation."""
    TICK = auto()
    ARRIVAL = auto()


@dataclass(order=True)
class Event:
    """
    A cadence firing at a point on the driver clock.

    Events are ordered by time, then by scheduling order, so simultaneous
    firings run in the order they were scheduled.
    """
    time: float
    seq: int
    cadence: CadenceType = field(compare=False)


class Driver:
    """
    Runs a Simulation from a tick cadence and an arrival cadence.

    The driver clock is measured in ms of driver time. Ticks fire every
    SPEED_INTERVALS[config.speed] ms and arrivals every 1000 / arrival_rate
    ms, so several arrivals may fall between two ticks. The arrival
    cadence stops by itself once the simulation holds task_count tasks,
    including any created by direct generate_task() calls.

    Attributes:
        simulation: The simulation being driven
        clock: Current driver time (ms)
        running: Whether any cadence is still scheduled
    """

    def __init__(self, simulation: Simulation) -> None:
        self.simulation = simulation
        self.clock: float = 0.0
        self.running = False
        self._events: List[Event] = []
        self._seq = 0

    @property
    def tick_interval(self) -> float:
        return float(SPEED_INTERVALS[self.simulation.config.speed])

    @property
    def arrival_interval(self) -> float:
        return 1000.0 / self.simulation.config.arrival_rate

    def _schedule(self, time: float, cadence: CadenceType) -> None:
        heapq.heappush(self._events, Event(time=time, seq=self._seq, cadence=cadence))
        self._seq += 1

    def _quota_left(self) -> bool:
        """Whether fewer than task_count tasks exist, however they were generated."""
        return self.simulation.generator.generated < self.simulation.config.task_count

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self.simulation.event_log.record("Simulation started")
        if self._quota_left():
            self._schedule(self.clock + self.arrival_interval, CadenceType.ARRIVAL)
        self._schedule(self.clock + self.tick_interval, CadenceType.TICK)

    def stop(self) -> None:
        """Cancel both cadences. Calling it again has no effect."""
        if not self.running:
            return
        self.running = False
        self._events.clear()
        logger.info("Driver stopped at tick %d", self.simulation.tick)

    def advance(self) -> Optional[MetricsSnapshot]:
        """
        Fire the next scheduled event.

        Returns:
            The tick's snapshot if the event was a tick, otherwise None
        """
        if not self._events:
            self.running = False
            return None

        event = heapq.heappop(self._events)
        self.clock = event.time
        sim = self.simulation

        if event.cadence is CadenceType.ARRIVAL:
            if self._quota_left():
                sim.generate_task()
            if self._quota_left():
                self._schedule(self.clock + self.arrival_interval, CadenceType.ARRIVAL)
            else:
                sim.event_log.record("Task generation completed")
            return None

        snapshot = sim.step()
        self._schedule(self.clock + self.tick_interval, CadenceType.TICK)
        if sim.finished:
            self.stop()
        return snapshot

    def run(self, max_ticks: Optional[int] = None) -> List[MetricsSnapshot]:
        """
        Drive the simulation until every task is terminal or max_ticks elapse.

        Returns:
            Snapshots of the ticks executed by this call
        """
        self.start()
        snapshots: List[MetricsSnapshot] = []
        while self.running:
            snapshot = self.advance()
            if snapshot is None:
                continue
            snapshots.append(snapshot)
            if max_ticks is not None and self.simulation.tick >= max_ticks:
                self.stop()
        return snapshots


def run_simulation(
    config: Optional[SimulationConfig] = None,
    max_ticks: Optional[int] = None
) -> Simulation:
    """
    Convenience function to run a complete simulation.

    Args:
        config: Run configuration (defaults to SimulationConfig())
        max_ticks: Optional tick cap

    Returns:
        The finished (or capped) Simulation, ready for inspection
    """
    sim = Simulation(config)
    Driver(sim).run(max_ticks=max_ticks)
    return sim


# =============================================================================
# Comparison Driver
# =============================================================================

@dataclass
class ComparisonResult:
    """
    Outcome of one algorithm in a comparison run.

    Attributes:
        algorithm: Algorithm name
        avg_response_time: Final average response time (ms)
        sla_compliance: Overall SLA compliance (%)
        throughput: Completed tasks per tick
        failure_rate: Failed share of finished tasks (%)
        load_variance: Std-dev of server load at the end of the run
        completed: Completed task count
        failed: Failed task count
        ticks: Ticks executed
        finished: Whether every task became terminal before the tick cap
    """
    algorithm: str
    avg_response_time: float
    sla_compliance: float
    throughput: float
    failure_rate: float
    load_variance: float
    completed: int
    failed: int
    ticks: int
    finished: bool

    def __str__(self) -> str:
        return (
            f"{self.algorithm}: "
            f"Avg Response: {self.avg_response_time / 1000:.2f}s, "
            f"SLA: {self.sla_compliance:.1f}%, "
            f"Throughput: {self.throughput:.2f}, "
            f"Failure Rate: {self.failure_rate:.1f}%"
        )


ALL_ALGORITHMS: List[str] = [a.value for a in Algorithm]


def _run_single_comparison(args: tuple) -> tuple:
    """
    Worker function for parallel comparison runs.

    Args:
        args: Tuple of (algorithm, config, task_count, max_ticks, failure_tick)

    Returns:
        Tuple of (algorithm, ComparisonResult)
    """
    algorithm, config, task_count, max_ticks, failure_tick = args
    sim = Simulation(config.with_changes(algorithm=algorithm, task_count=task_count))

    for _ in range(task_count):
        sim.generate_task()

    failure_injected = False
    while (len(sim.completed_tasks) + len(sim.failed_tasks) < task_count
           and sim.tick < max_ticks):
        sim.step()
        if not failure_injected and sim.tick > failure_tick:
            sim.trigger_failure()
            failure_injected = True

    latest = sim.metrics.history.latest
    result = ComparisonResult(
        algorithm=algorithm,
        avg_response_time=latest.avg_response_time if latest else 0.0,
        sla_compliance=sla_compliance(sim.completed_tasks)["overall"],
        throughput=latest.throughput if latest else 0.0,
        failure_rate=latest.failure_rate if latest else 0.0,
        load_variance=load_std(sim.servers),
        completed=len(sim.completed_tasks),
        failed=len(sim.failed_tasks),
        ticks=sim.tick,
        finished=sim.finished,
    )
    return (algorithm, result)


def compare_algorithms(
    algorithms: Optional[Sequence[str]] = None,
    task_count: Optional[int] = None,
    config: Optional[SimulationConfig] = None,
    max_ticks: int = COMPARISON_MAX_TICKS,
    failure_tick: int = COMPARISON_FAILURE_TICK,
    parallel: bool = False,
    max_workers: Optional[int] = None
) -> Dict[str, ComparisonResult]:
    """
    Run the full pipeline once per algorithm and tabulate the outcome.

    Each run starts from a fresh reset, generates all tasks up front,
    steps until every task is terminal (or max_ticks), and injects one
    manual failure once the tick counter passes failure_tick. With a
    seeded config every algorithm sees the same random sequence.

    Args:
        algorithms: Algorithm names (default: all six)
        task_count: Tasks per run (default: config.task_count)
        config: Base configuration (default: SimulationConfig())
        max_ticks: Tick cap per run
        failure_tick: Tick after which the failure is injected
        parallel: Whether to run algorithms in worker processes
        max_workers: Max parallel workers (default: CPU count)

    Returns:
        Dict: {algorithm: ComparisonResult}, in the requested order

    Raises:
        ValueError: If an algorithm name is unknown
    """
    config = config or SimulationConfig()
    names = [Algorithm.from_name(a).value for a in (algorithms or ALL_ALGORITHMS)]
    count = config.task_count if task_count is None else task_count

    experiments = [(name, config, count, max_ticks, failure_tick) for name in names]
    results: Dict[str, ComparisonResult] = {name: None for name in names}

    if parallel and len(experiments) > 1:
        from concurrent.futures import ProcessPoolExecutor, as_completed
        import os

        n_workers = max_workers or min(os.cpu_count() or 4, len(experiments))

        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            futures = {executor.submit(_run_single_comparison, exp): exp
                       for exp in experiments}

            for future in as_completed(futures):
                name, result = future.result()
                results[name] = result
    else:
        for exp in experiments:
            name, result = _run_single_comparison(exp)
            results[name] = result

    return results
