"""
Configuration module for the load-balancing simulator.

This module stores the fixed constants of the simulated cluster (SLA
targets per priority class, scheduler budgets, health-check cadence) and
the per-run SimulationConfig that external drivers hand to reset().

Time Units:
    - Processing times, SLA targets and recovery delays are milliseconds
    - One simulation tick covers SimulationConfig.tick_duration ms
    - Throughput is reported per tick, not per millisecond
"""

from dataclasses import dataclass, field, replace
from typing import Dict, Optional
import numbers


# =============================================================================
# Priority Classes
# =============================================================================
# Ordered from most to least urgent. The scheduler drains queues in this
# order and aging only ever moves a task towards the front of it.

PRIORITY_ORDER = ("high", "medium", "low")

SLA_TARGETS: Dict[str, int] = {
    "high": 2000,     # 2s maximum acceptable response time
    "medium": 5000,   # 5s
    "low": 10000,     # 10s
}

DEFAULT_PRIORITY_DISTRIBUTION: Dict[str, int] = {
    "high": 20,
    "medium": 50,
    "low": 30,
}


# =============================================================================
# Scheduler Constants
# =============================================================================

MAX_ADVANCEMENTS_PER_TICK: int = 3
"""Task-advancements a single server may perform in one tick."""

STEP_UNIT: int = 1000
"""Processing time (ms) removed from a task by one advancement."""

AGING_THRESHOLD: float = 0.3
"""Escalate when time left to the SLA deadline drops below this share of the target."""

RESPONSE_HISTORY_SIZE: int = 20
"""Completed response times kept per server."""

RESPONSE_WINDOW: int = 10
"""Most recent response times averaged by shortest-response-time selection."""

DEFAULT_RESPONSE_TIME: float = 1000.0
"""Score of a server that has not completed anything yet."""

NEAR_CAPACITY_RATIO: float = 0.9
"""Load/capacity ratio above which an assignment is reported as near capacity."""


# =============================================================================
# Health Model Constants
# =============================================================================

WEIGHT_RANGE = (0.75, 1.25)
"""Range of the per-server weight drawn at creation."""

SPEED_INTERVALS: Dict[str, int] = {
    "slow": 2000,
    "normal": 1000,
    "fast": 500,
    "turbo": 100,
}
"""Driver time (ms) between two ticks for each simulation speed."""


# =============================================================================
# Comparison Run Constants
# =============================================================================

COMPARISON_MAX_TICKS: int = 200
COMPARISON_FAILURE_TICK: int = 30


class ConfigInvalid(ValueError):
    """Raised by reset() when a configuration cannot describe a valid run."""


def normalize_priority_distribution(distribution: Dict[str, int]) -> Dict[str, int]:
    """
    Make the priority shares sum to 100 by adjusting the low share.

    The low share absorbs the difference and is clamped to [0, 100], so a
    distribution whose high + medium already exceeds 100 stays invalid.

    Example:
        >>> normalize_priority_distribution({"high": 30, "medium": 50, "low": 30})
        {'high': 30, 'medium': 50, 'low': 20}
    """
    result = {p: distribution.get(p, 0) for p in PRIORITY_ORDER}
    total = sum(result.values())
    if total != 100:
        result["low"] = max(0, min(100, result["low"] + 100 - total))
    return result


@dataclass(frozen=True)
class SimulationConfig:
    """
    Parameters of a single simulation run.

    Instances are immutable; use with_changes() to derive a variant (the
    comparison driver does this once per algorithm).

    Attributes:
        server_count: Number of servers in the pool
        server_capacity: Capacity of every server (same units as load)
        task_count: Total tasks the arrival cadence generates
        processing_time_min: Lower bound of a task's processing time (ms)
        processing_time_max: Upper bound of a task's processing time (ms)
        arrival_rate: Task arrivals per 1000ms of driver time
        priority_distribution: Percent share of high/medium/low arrivals
        algorithm: Selection strategy name (see balancer.Algorithm)
        failure_rate: Base probability of a random failure per health check
        failure_multiplier: Factor applied to failure_rate at every trial
        health_check_interval: Ticks between two health checks
        recovery_delay: Time (ms) a failed server stays down
        recovering_delay: Time (ms) a recovering server needs to become healthy
        degrade_threshold: Load ratio above which a healthy server degrades
        recover_threshold: Load ratio below which a degraded server recovers
        tick_duration: Simulated time (ms) covered by one tick
        speed: Driver cadence name (see SPEED_INTERVALS)
        seed: Random seed for reproducibility
    """
    server_count: int = 5
    server_capacity: float = 100
    task_count: int = 100
    processing_time_min: int = 500
    processing_time_max: int = 3000
    arrival_rate: float = 8
    priority_distribution: Dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_PRIORITY_DISTRIBUTION)
    )
    algorithm: str = "round_robin"
    failure_rate: float = 0.02
    failure_multiplier: float = 3.0
    health_check_interval: int = 3
    recovery_delay: int = 10000
    recovering_delay: int = 2000
    degrade_threshold: float = 80
    recover_threshold: float = 60
    tick_duration: int = 1000
    speed: str = "normal"
    seed: Optional[int] = None

    def with_changes(self, **changes) -> "SimulationConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def normalized(self) -> "SimulationConfig":
        """Return a copy whose priority distribution sums to 100."""
        return replace(
            self,
            priority_distribution=normalize_priority_distribution(self.priority_distribution),
        )

    def _check_types(self) -> None:
        """Reject fields whose type cannot take part in a run."""
        integral = ("server_count", "task_count", "processing_time_min",
                    "processing_time_max", "health_check_interval")
        real = ("server_capacity", "arrival_rate", "failure_rate", "failure_multiplier",
                "recovery_delay", "recovering_delay", "degrade_threshold",
                "recover_threshold", "tick_duration")

        for name in integral:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, numbers.Integral):
                raise ConfigInvalid(f"{name} must be an integer, got {value!r}")
        for name in real:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, numbers.Real):
                raise ConfigInvalid(f"{name} must be a number, got {value!r}")
        for name in ("algorithm", "speed"):
            value = getattr(self, name)
            if not isinstance(value, str):
                raise ConfigInvalid(f"{name} must be a string, got {value!r}")

        distribution = self.priority_distribution
        if not isinstance(distribution, dict):
            raise ConfigInvalid(
                f"priority_distribution must be a dict, got {distribution!r}"
            )
        for priority, share in distribution.items():
            if isinstance(share, bool) or not isinstance(share, numbers.Real):
                raise ConfigInvalid(
                    f"priority share for {priority!r} must be a number, got {share!r}"
                )

    def validate(self) -> None:
        """
        Check that the configuration describes a runnable simulation.

        Raises:
            ConfigInvalid: On the first structural problem found
        """
        # Local import: balancer -> cluster -> config would be circular at module load
        from lbsim.balancer import Algorithm

        self._check_types()

        if self.server_count < 0:
            raise ConfigInvalid(f"server_count must be >= 0, got {self.server_count}")
        if self.server_capacity <= 0:
            raise ConfigInvalid(f"server_capacity must be > 0, got {self.server_capacity}")
        if self.task_count < 0:
            raise ConfigInvalid(f"task_count must be >= 0, got {self.task_count}")
        if self.processing_time_min < 0:
            raise ConfigInvalid(
                f"processing_time_min must be >= 0, got {self.processing_time_min}"
            )
        if self.processing_time_max < self.processing_time_min:
            raise ConfigInvalid(
                f"processing_time_max ({self.processing_time_max}) must be >= "
                f"processing_time_min ({self.processing_time_min})"
            )
        if self.arrival_rate <= 0:
            raise ConfigInvalid(f"arrival_rate must be > 0, got {self.arrival_rate}")
        if not 0 <= self.failure_rate <= 1:
            raise ConfigInvalid(f"failure_rate must be in [0, 1], got {self.failure_rate}")
        if self.failure_multiplier < 0:
            raise ConfigInvalid(
                f"failure_multiplier must be >= 0, got {self.failure_multiplier}"
            )
        if self.health_check_interval < 1:
            raise ConfigInvalid(
                f"health_check_interval must be >= 1, got {self.health_check_interval}"
            )
        if self.recovery_delay < 0 or self.recovering_delay < 0:
            raise ConfigInvalid("recovery delays must be >= 0")
        if self.recover_threshold > self.degrade_threshold:
            raise ConfigInvalid(
                f"recover_threshold ({self.recover_threshold}) must not exceed "
                f"degrade_threshold ({self.degrade_threshold})"
            )
        if self.tick_duration <= 0:
            raise ConfigInvalid(f"tick_duration must be > 0, got {self.tick_duration}")
        if self.speed not in SPEED_INTERVALS:
            raise ConfigInvalid(
                f"Unknown speed: {self.speed}. Available: {list(SPEED_INTERVALS.keys())}"
            )
        try:
            Algorithm.from_name(self.algorithm)
        except ValueError as exc:
            raise ConfigInvalid(str(exc)) from exc

        distribution = self.priority_distribution
        unknown = set(distribution) - set(PRIORITY_ORDER)
        if unknown:
            raise ConfigInvalid(f"Unknown priorities in distribution: {sorted(unknown)}")
        if any(share < 0 for share in distribution.values()):
            raise ConfigInvalid("priority shares must be >= 0")
        normalized = normalize_priority_distribution(distribution)
        if sum(normalized.values()) != 100:
            raise ConfigInvalid(
                f"priority distribution cannot be normalized to 100: {distribution}"
            )


def get_sla_target(priority: str) -> int:
    """
    Get the SLA target (ms) of a priority class.

    Raises:
        ValueError: If priority is not one of PRIORITY_ORDER
    """
    if priority not in SLA_TARGETS:
        raise ValueError(f"Unknown priority: {priority}. Available: {list(PRIORITY_ORDER)}")
    return SLA_TARGETS[priority]
