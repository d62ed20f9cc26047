"""
Main entry point for the load-balancing simulator.

This script either runs a single simulation with the chosen selection
strategy and prints its final metrics, or benchmarks every strategy on
the same seeded workload and prints a comparison table.

Experiment Design (--compare):
    - All tasks are generated up front on a fresh pool
    - One server is failed manually once the run passes tick 30
    - Each run stops when every task is terminal or after 200 ticks
"""

from typing import Dict, List, Optional
import json
import logging

from lbsim.balancer import STRATEGIES, Algorithm, create_strategy
from lbsim.config import ConfigInvalid, SPEED_INTERVALS, SimulationConfig
from lbsim.simulator import ComparisonResult, Simulation, compare_algorithms, run_simulation


logger = logging.getLogger(__name__)


def print_header(title: str) -> None:
    """Print a formatted section header."""
    width = 70
    print("\n" + "=" * width)
    print(f" {title}")
    print("=" * width)


def print_comparison_table(results: Dict[str, ComparisonResult]) -> None:
    """
    Print a comparison table of strategy results.

    Args:
        results: Dict from compare_algorithms
    """
    header = (
        f"{'Algorithm':<20} | {'Avg Resp':>8} | {'SLA':>6} | "
        f"{'Thruput':>7} | {'Fail':>6} | {'Load SD':>8} | {'Ticks':>5}"
    )
    print(header)
    print("-" * len(header))

    for name, r in results.items():
        label = create_strategy(name).label
        row = (
            f"{label:<20} | {r.avg_response_time / 1000:>7.2f}s | "
            f"{r.sla_compliance:>5.1f}% | {r.throughput:>7.2f} | "
            f"{r.failure_rate:>5.1f}% | {r.load_variance:>8.1f} | {r.ticks:>5}"
        )
        print(row)


def print_simulation_summary(sim: Simulation) -> None:
    """Print the final metrics and per-server statistics of a run."""
    latest = sim.metrics.history.latest
    print_header(f"Simulation Summary ({sim.strategy.label})")
    print(f"\n  Ticks:             {sim.tick}")
    print(f"  Completed Tasks:   {len(sim.completed_tasks)}")
    print(f"  Failed Tasks:      {len(sim.failed_tasks)}")

    if latest is not None:
        print(f"  Avg Response:      {latest.avg_response_time / 1000:.2f}s")
        print(f"  P50 Response:      {latest.p50_response_time / 1000:.2f}s")
        print(f"  P95 Response:      {latest.p95_response_time / 1000:.2f}s")
        print(f"  Throughput:        {latest.throughput:.2f} tasks/tick")
        print(f"  SLA Compliance:    {latest.sla_compliance:.1f}% "
              f"(high {latest.sla_high:.1f}%, medium {latest.sla_medium:.1f}%, "
              f"low {latest.sla_low:.1f}%)")
        print(f"  Failure Rate:      {latest.failure_rate:.1f}%")
        print(f"  Availability:      {latest.availability:.1f}%")
        print(f"  Load Std-Dev:      {latest.load_std:.1f}")
        print(f"  Jitter:            {latest.jitter:.1f}ms")

    print("\n  Servers:")
    for server in sim.servers:
        print(f"    Server {server.server_id}: {server.total_processed} tasks processed, "
              f"{server.uptime:.1f}% uptime, Status: {server.health.value}")


def describe_strategies() -> str:
    """One line per selection strategy, for the CLI help text."""
    lines = ["selection strategies:"]
    for algorithm, strategy in STRATEGIES.items():
        lines.append(f"  {algorithm.value:<24} {strategy.description}")
    return "\n".join(lines)


def build_config(args) -> SimulationConfig:
    """Translate parsed CLI arguments into a SimulationConfig."""
    return SimulationConfig(
        server_count=args.servers,
        server_capacity=args.capacity,
        task_count=args.tasks,
        processing_time_min=args.processing_min,
        processing_time_max=args.processing_max,
        arrival_rate=args.arrival_rate,
        priority_distribution={
            "high": args.high,
            "medium": args.medium,
            "low": args.low,
        },
        algorithm=args.algorithm,
        failure_rate=args.failure_rate,
        speed=args.speed,
        seed=args.seed,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with CLI argument parsing."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Load-balancing simulator for selection strategy comparison",
        epilog=describe_strategies(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--algorithm", "-a", default="round_robin",
        choices=[a.value for a in Algorithm],
        help="Selection strategy (default: round_robin)"
    )
    parser.add_argument(
        "--servers", "-n", type=int, default=5,
        help="Number of servers (default: 5)"
    )
    parser.add_argument(
        "--capacity", type=float, default=100,
        help="Capacity per server (default: 100)"
    )
    parser.add_argument(
        "--tasks", "-t", type=int, default=100,
        help="Number of tasks to generate (default: 100)"
    )
    parser.add_argument(
        "--processing-min", type=int, default=500,
        help="Minimum processing time in ms (default: 500)"
    )
    parser.add_argument(
        "--processing-max", type=int, default=3000,
        help="Maximum processing time in ms (default: 3000)"
    )
    parser.add_argument(
        "--arrival-rate", type=float, default=8,
        help="Task arrivals per second (default: 8)"
    )
    parser.add_argument("--high", type=int, default=20, help="High priority share (%%)")
    parser.add_argument("--medium", type=int, default=50, help="Medium priority share (%%)")
    parser.add_argument("--low", type=int, default=30, help="Low priority share (%%)")
    parser.add_argument(
        "--failure-rate", type=float, default=0.02,
        help="Failure probability per health check (default: 0.02)"
    )
    parser.add_argument(
        "--speed", default="normal", choices=list(SPEED_INTERVALS.keys()),
        help="Tick cadence relative to arrivals (default: normal)"
    )
    parser.add_argument(
        "--max-ticks", type=int, default=None,
        help="Stop after this many ticks"
    )
    parser.add_argument(
        "--seed", "-s", type=int, default=42,
        help="Random seed (default: 42)"
    )
    parser.add_argument(
        "--compare", "-c", action="store_true",
        help="Benchmark every selection strategy"
    )
    parser.add_argument(
        "--no-parallel", action="store_true",
        help="Disable parallel execution of comparison runs"
    )
    parser.add_argument(
        "--workers", "-w", type=int, default=None,
        help="Number of parallel workers (default: CPU count)"
    )
    parser.add_argument(
        "--export", "-e", default=None,
        help="Write the full final state as JSON to this path"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Log engine events to stderr"
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = build_config(args)
    try:
        config.validate()
    except ConfigInvalid as exc:
        parser.error(str(exc))

    if args.compare:
        print_header("Load Balancing Algorithm Comparison")
        print(f"\nServers: {config.server_count}, Tasks: {config.task_count}, "
              f"Seed: {config.seed}\n")
        results = compare_algorithms(
            config=config,
            parallel=not args.no_parallel,
            max_workers=args.workers,
        )
        print_comparison_table(results)
        return 0

    sim = run_simulation(config, max_ticks=args.max_ticks)
    print_simulation_summary(sim)

    if args.export:
        with open(args.export, "w") as f:
            json.dump(sim.snapshot(), f, indent=2)
        logger.info("Exported simulation state to %s", args.export)
        print(f"\n  State exported to {args.export}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
