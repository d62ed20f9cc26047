"""
Server selection strategies for the load-balancing simulator.

A strategy decides WHICH server receives a newly arrived task. Every
strategy sees only the servers that are currently healthy or degraded,
in id order; failed and recovering servers are filtered out upstream.

Strategies Implemented:
    1. RoundRobinStrategy: Cycles a cursor over the available servers
    2. LeastLoadStrategy: Lowest current load wins
    3. WeightedRoundRobinStrategy: Highest weight-to-load ratio wins
    4. ShortestResponseTimeStrategy: Lowest recent mean response time wins
    5. RandomizedStrategy: Roulette draw weighted by inverse load ratio
    6. ConsistentHashingStrategy: Hash of the task id modulo server count

Ties always go to the server that comes first in the input order.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Optional, Sequence, Type
import random
import re

from lbsim.cluster import Server
from lbsim.workload import Task


class Algorithm(str, Enum):
    """Closed set of selection strategies, keyed by their config name."""
    ROUND_ROBIN = "round_robin"
    LEAST_LOAD = "least_load"
    WEIGHTED_ROUND_ROBIN = "weighted_round_robin"
    SHORTEST_RESPONSE_TIME = "shortest_response_time"
    RANDOMIZED = "randomized"
    CONSISTENT_HASHING = "consistent_hashing"

    @classmethod
    def from_name(cls, name: str) -> "Algorithm":
        """
        Resolve a strategy name.

        Accepts snake_case, kebab-case and camelCase spellings, so
        "leastLoad", "least-load" and "least_load" are the same strategy.

        Raises:
            ValueError: If the name matches no strategy
        """
        if isinstance(name, cls):
            return name
        candidates = (
            name.replace("-", "_").lower(),
            re.sub(r"(?<!^)(?=[A-Z])", "_", name).replace("-", "_").lower(),
        )
        for key in candidates:
            if key in cls._value2member_map_:
                return cls(key)
        raise ValueError(
            f"Unknown algorithm: {name}. Available: {[a.value for a in cls]}"
        )


class SelectionStrategy(ABC):
    """
    Abstract base class for server selection strategies.

    Implementations may keep state between calls (the round-robin cursor)
    but never mutate the servers they are given.
    """

    algorithm: Algorithm
    label: str
    description: str

    @abstractmethod
    def select(self, servers: Sequence[Server], task: Task) -> Optional[Server]:
        """
        Choose the server that should receive a task.

        Args:
            servers: Available servers, non-empty, in id order
            task: The task being routed

        Returns:
            Chosen server, or None if the strategy cannot decide
        """
        pass

    @property
    def name(self) -> str:
        return self.algorithm.value


class RoundRobinStrategy(SelectionStrategy):
    """
    Cycles through the available servers.

    The cursor indexes the filtered list it is handed on each call, so
    when the set of available servers changes the cursor keeps its value
    but points at a different server.
    """

    algorithm = Algorithm.ROUND_ROBIN
    label = "Round Robin"
    description = "Distributes tasks sequentially across healthy servers in a circular manner"

    def __init__(self) -> None:
        self.cursor = 0

    def select(self, servers: Sequence[Server], task: Task) -> Optional[Server]:
        if not servers:
            return None
        server = servers[self.cursor % len(servers)]
        self.cursor = (self.cursor + 1) % len(servers)
        return server


class LeastLoadStrategy(SelectionStrategy):
    algorithm = Algorithm.LEAST_LOAD
    label = "Least Load"
    description = "Assigns tasks to the healthy server with the lowest current load"

    def select(self, servers: Sequence[Server], task: Task) -> Optional[Server]:
        if not servers:
            return None
        # min() keeps the first of equal keys
        return min(servers, key=lambda s: s.current_load)


class WeightedRoundRobinStrategy(SelectionStrategy):
    """Picks the best weight / max(load, 1) ratio."""

    algorithm = Algorithm.WEIGHTED_ROUND_ROBIN
    label = "Weighted RR"
    description = "Distributes tasks based on server weights and capacity ratios"

    def select(self, servers: Sequence[Server], task: Task) -> Optional[Server]:
        if not servers:
            return None
        return max(servers, key=lambda s: s.weight / max(s.current_load, 1))


class ShortestResponseTimeStrategy(SelectionStrategy):
    algorithm = Algorithm.SHORTEST_RESPONSE_TIME
    label = "Shortest Response"
    description = "Assigns tasks to the server with the fastest recent response time"

    def select(self, servers: Sequence[Server], task: Task) -> Optional[Server]:
        if not servers:
            return None
        return min(servers, key=lambda s: s.average_response_time())


class RandomizedStrategy(SelectionStrategy):
    """
    Weighted random selection.

    Each server is weighted by 1 / max(load_ratio, 0.1): idle servers get
    the largest weight (10) and the floor keeps zero load finite. One
    uniform draw over the total weight is walked down the cumulative
    weights (roulette selection).
    """

    algorithm = Algorithm.RANDOMIZED
    label = "Randomized"
    description = "Random assignment weighted by server load and health status"

    MIN_LOAD_RATIO = 0.1

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.Random()

    def select(self, servers: Sequence[Server], task: Task) -> Optional[Server]:
        if not servers:
            return None
        weights = [1 / max(s.load_ratio, self.MIN_LOAD_RATIO) for s in servers]
        remaining = self.rng.random() * sum(weights)
        for server, weight in zip(servers, weights):
            remaining -= weight
            if remaining <= 0:
                return server
        # Float residue can leave remaining marginally above zero
        return servers[-1]


def simple_hash(text: str) -> int:
    """
    32-bit rolling string hash (h = h * 31 + code point), absolute value.

    The accumulator wraps like a signed 32-bit integer, so the result is
    identical on every platform and interpreter run.

    Example:
        >>> simple_hash("1")
        49
        >>> simple_hash("12")
        1569
    """
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


class ConsistentHashingStrategy(SelectionStrategy):
    """
    Maps a task id onto the available servers by hash modulo count.

    The mapping depends on the size and order of the filtered list, so
    a task id lands elsewhere once a server fails. That loss of affinity
    is what this strategy is meant to demonstrate.
    """

    algorithm = Algorithm.CONSISTENT_HASHING
    label = "Consistent Hash"
    description = "Hash-based assignment for session affinity and consistent routing"

    def select(self, servers: Sequence[Server], task: Task) -> Optional[Server]:
        if not servers:
            return None
        return servers[simple_hash(str(task.task_id)) % len(servers)]


# =============================================================================
# Factory function for strategy creation
# =============================================================================

STRATEGIES: Dict[Algorithm, Type[SelectionStrategy]] = {
    Algorithm.ROUND_ROBIN: RoundRobinStrategy,
    Algorithm.LEAST_LOAD: LeastLoadStrategy,
    Algorithm.WEIGHTED_ROUND_ROBIN: WeightedRoundRobinStrategy,
    Algorithm.SHORTEST_RESPONSE_TIME: ShortestResponseTimeStrategy,
    Algorithm.RANDOMIZED: RandomizedStrategy,
    Algorithm.CONSISTENT_HASHING: ConsistentHashingStrategy,
}


def create_strategy(
    algorithm: str,
    rng: Optional[random.Random] = None
) -> SelectionStrategy:
    """
    Factory function to create a selection strategy by name.

    Args:
        algorithm: Strategy name or Algorithm member
        rng: Random source for strategies that draw (randomized)

    Returns:
        A fresh strategy instance with its own cursor state

    Raises:
        ValueError: If algorithm is unknown
    """
    key = Algorithm.from_name(algorithm)
    if key is Algorithm.RANDOMIZED:
        return RandomizedStrategy(rng=rng)
    return STRATEGIES[key]()
