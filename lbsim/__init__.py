"""
Load-Balancing Simulator

A discrete-time simulator for comparing server selection strategies in
front of a pool of servers with health states, priority queues and SLA
deadlines.

Key Components:
    - config: Run configuration and simulation constants
    - workload: Task model and synthetic task generation
    - cluster: Server pool and health state machine
    - balancer: Server selection strategies
    - scheduler: Per-server priority scheduling and aging
    - metrics: Per-tick metrics aggregation
    - eventlog: Append-only event log for observers
    - simulator: Simulation engine, driver and comparison runs

Usage:
    # Run one simulation
    python -m lbsim.main --algorithm least_load

    # Compare all strategies
    python -m lbsim.main --compare

    # Run tests
    pytest lbsim/tests/
"""

from lbsim.config import (
    PRIORITY_ORDER,
    SLA_TARGETS,
    ConfigInvalid,
    SimulationConfig,
    get_sla_target,
    normalize_priority_distribution,
)

from lbsim.workload import (
    FailureReason,
    Task,
    TaskGenerator,
    TaskStatus,
)

from lbsim.cluster import (
    DeferredEvents,
    HealthStatus,
    Server,
    ServerPool,
)

from lbsim.balancer import (
    Algorithm,
    SelectionStrategy,
    create_strategy,
    simple_hash,
)

from lbsim.scheduler import (
    PriorityScheduler,
    TaskQueues,
)

from lbsim.metrics import (
    MetricsAggregator,
    MetricsSnapshot,
    percentile,
    sla_compliance,
)

from lbsim.eventlog import (
    EventLog,
    LogCategory,
    LogEvent,
)

from lbsim.simulator import (
    ComparisonResult,
    Driver,
    Simulation,
    compare_algorithms,
    run_simulation,
)

__version__ = "0.1.0"

__all__ = [
    # Config
    "PRIORITY_ORDER",
    "SLA_TARGETS",
    "ConfigInvalid",
    "SimulationConfig",
    "get_sla_target",
    "normalize_priority_distribution",
    # Workload
    "FailureReason",
    "Task",
    "TaskGenerator",
    "TaskStatus",
    # Cluster
    "DeferredEvents",
    "HealthStatus",
    "Server",
    "ServerPool",
    # Balancer
    "Algorithm",
    "SelectionStrategy",
    "create_strategy",
    "simple_hash",
    # Scheduler
    "PriorityScheduler",
    "TaskQueues",
    # Metrics
    "MetricsAggregator",
    "MetricsSnapshot",
    "percentile",
    "sla_compliance",
    # Event log
    "EventLog",
    "LogCategory",
    "LogEvent",
    # Simulator
    "ComparisonResult",
    "Driver",
    "Simulation",
    "compare_algorithms",
    "run_simulation",
]
