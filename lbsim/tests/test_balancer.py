"""
Tests for the server selection strategies.

Covers:
    1. Round-robin cycling and fairness
    2. Load-, weight- and response-time-based arg-min/arg-max selection
    3. Randomized roulette selection
    4. Consistent hashing determinism
    5. The strategy factory
"""

import pytest
import random
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from lbsim.balancer import (
    Algorithm,
    ConsistentHashingStrategy,
    LeastLoadStrategy,
    RandomizedStrategy,
    RoundRobinStrategy,
    ShortestResponseTimeStrategy,
    WeightedRoundRobinStrategy,
    create_strategy,
    simple_hash,
)
from lbsim.cluster import Server
from lbsim.workload import Task


def make_servers(count: int, capacity: float = 100, weight: float = 1.0):
    return [Server(server_id=i, capacity=capacity, weight=weight) for i in range(1, count + 1)]


def make_task(task_id: int = 1, priority: str = "medium") -> Task:
    return Task(task_id=task_id, priority=priority, arrival_time=0, processing_time=1000)


# =============================================================================
# Round Robin
# =============================================================================

class TestRoundRobin:
    """Tests for RoundRobinStrategy."""

    def test_cycles_in_input_order(self) -> None:
        """Verify the sequence is s0, s1, ..., s(N-1), s0, ..."""
        servers = make_servers(3)
        strategy = RoundRobinStrategy()

        chosen = [strategy.select(servers, make_task(i)).server_id for i in range(1, 7)]
        assert chosen == [1, 2, 3, 1, 2, 3]

    @pytest.mark.parametrize("n_servers,n_tasks", [(3, 10), (4, 4), (5, 17), (2, 9)])
    def test_even_distribution(self, n_servers: int, n_tasks: int) -> None:
        """Each server receives floor(M/N) or ceil(M/N) tasks."""
        servers = make_servers(n_servers)
        strategy = RoundRobinStrategy()
        counts = {s.server_id: 0 for s in servers}

        for i in range(n_tasks):
            counts[strategy.select(servers, make_task(i + 1)).server_id] += 1

        low, high = n_tasks // n_servers, -(-n_tasks // n_servers)
        assert all(low <= c <= high for c in counts.values())
        assert sum(counts.values()) == n_tasks

    def test_cursor_indexes_filtered_list(self) -> None:
        """The cursor keeps its value when the available list shrinks."""
        servers = make_servers(3)
        strategy = RoundRobinStrategy()

        strategy.select(servers, make_task(1))  # server 1, cursor -> 1
        strategy.select(servers, make_task(2))  # server 2, cursor -> 2

        # Server 2 drops out: cursor 2 % 2 == 0 selects the first remaining
        remaining = [servers[0], servers[2]]
        assert strategy.select(remaining, make_task(3)).server_id == 1
        assert strategy.cursor == 1

    def test_empty_list_returns_none(self) -> None:
        assert RoundRobinStrategy().select([], make_task()) is None


# =============================================================================
# Load-based strategies
# =============================================================================

class TestLeastLoad:
    """Tests for LeastLoadStrategy."""

    def test_picks_minimum_load(self) -> None:
        servers = make_servers(4)
        for server, load in zip(servers, [300, 100, 200, 400]):
            server.current_load = load

        assert LeastLoadStrategy().select(servers, make_task()).server_id == 2

    def test_ties_go_to_first(self) -> None:
        servers = make_servers(3)
        for server, load in zip(servers, [50, 20, 20]):
            server.current_load = load

        assert LeastLoadStrategy().select(servers, make_task()).server_id == 2

    def test_never_above_any_other_load(self) -> None:
        """Property: the chosen load is <= every other candidate's load."""
        rng = random.Random(7)
        strategy = LeastLoadStrategy()
        for _ in range(50):
            servers = make_servers(rng.randint(1, 8))
            for server in servers:
                server.current_load = rng.randint(0, 5000)
            chosen = strategy.select(servers, make_task())
            assert all(chosen.current_load <= s.current_load for s in servers)


class TestWeightedRoundRobin:
    """Tests for WeightedRoundRobinStrategy."""

    def test_prefers_best_weight_to_load_ratio(self) -> None:
        servers = make_servers(3)
        servers[0].weight, servers[0].current_load = 1.0, 1000   # 0.001
        servers[1].weight, servers[1].current_load = 1.2, 400    # 0.003
        servers[2].weight, servers[2].current_load = 0.8, 500    # 0.0016

        assert WeightedRoundRobinStrategy().select(servers, make_task()).server_id == 2

    def test_load_floor_of_one(self) -> None:
        """Idle servers are compared by weight alone."""
        servers = make_servers(3)
        servers[0].weight = 0.9
        servers[1].weight = 1.1
        servers[2].weight = 1.1
        servers[2].current_load = 0.5  # floored to 1, ties with server 2

        assert WeightedRoundRobinStrategy().select(servers, make_task()).server_id == 2


class TestShortestResponseTime:
    """Tests for ShortestResponseTimeStrategy."""

    def test_new_server_scores_default(self) -> None:
        """A server without history (1000) beats a slow one but loses to a fast one."""
        servers = make_servers(3)
        servers[0].response_time_history.extend([2000, 3000])
        servers[2].response_time_history.extend([400, 600])
        strategy = ShortestResponseTimeStrategy()

        assert strategy.select(servers, make_task()).server_id == 3
        assert strategy.select(servers[:2], make_task()).server_id == 2

    def test_uses_last_ten_responses(self) -> None:
        server = make_servers(1)[0]
        server.response_time_history.extend([10000] * 5 + [100] * 10)
        assert server.average_response_time() == 100


class TestRandomized:
    """Tests for RandomizedStrategy."""

    def test_returns_candidate(self) -> None:
        servers = make_servers(4)
        strategy = RandomizedStrategy(rng=random.Random(1))
        for i in range(20):
            assert strategy.select(servers, make_task(i)) in servers

    def test_favours_idle_servers(self) -> None:
        """Weights 10 vs 0.1: the idle server wins about 99% of draws."""
        servers = make_servers(2)
        servers[1].current_load = 1000
        strategy = RandomizedStrategy(rng=random.Random(3))

        picks = [strategy.select(servers, make_task(i)).server_id for i in range(1000)]
        assert picks.count(1) > 950

    def test_reproducible_with_seed(self) -> None:
        servers = make_servers(5)
        a = RandomizedStrategy(rng=random.Random(42))
        b = RandomizedStrategy(rng=random.Random(42))
        picks_a = [a.select(servers, make_task(i)).server_id for i in range(50)]
        picks_b = [b.select(servers, make_task(i)).server_id for i in range(50)]
        assert picks_a == picks_b


class TestConsistentHashing:
    """Tests for simple_hash and ConsistentHashingStrategy."""

    def test_known_hash_values(self) -> None:
        assert simple_hash("") == 0
        assert simple_hash("1") == 49
        assert simple_hash("12") == 1569

    def test_hash_wraps_to_32_bits(self) -> None:
        h = simple_hash("9" * 40)
        assert 0 <= h <= 2 ** 31

    def test_deterministic(self) -> None:
        """Same id and same server list always map to the same server."""
        servers = make_servers(5)
        strategy = ConsistentHashingStrategy()
        for task_id in range(1, 50):
            first = strategy.select(servers, make_task(task_id))
            second = ConsistentHashingStrategy().select(servers, make_task(task_id))
            assert first is second

    def test_index_is_hash_modulo_count(self) -> None:
        servers = make_servers(4)
        task = make_task(12)
        expected = servers[1569 % 4]
        assert ConsistentHashingStrategy().select(servers, task) is expected


# =============================================================================
# Factory
# =============================================================================

class TestStrategyFactory:
    """Tests for create_strategy and Algorithm.from_name."""

    def test_all_algorithms_have_strategies(self) -> None:
        for algorithm in Algorithm:
            strategy = create_strategy(algorithm.value)
            assert strategy.algorithm is algorithm
            assert strategy.name == algorithm.value

    @pytest.mark.parametrize("name", ["leastLoad", "least-load", "least_load", "LEAST_LOAD"])
    def test_name_spellings(self, name: str) -> None:
        assert isinstance(create_strategy(name), LeastLoadStrategy)

    def test_fresh_cursor_per_instance(self) -> None:
        a = create_strategy("round_robin")
        b = create_strategy("round_robin")
        servers = make_servers(3)
        a.select(servers, make_task())
        assert b.cursor == 0

    def test_unknown_algorithm(self) -> None:
        with pytest.raises(ValueError, match="Unknown algorithm"):
            create_strategy("fastest")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
