"""dnse2e command line: run DNS metric scenarios against a cluster."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import yaml

from dnse2e.config import build_scenarios, load_config
from dnse2e.errors import ScenarioError
from dnse2e.executor import ScenarioResult, StepExecutor
from dnse2e.kubernetes import Cluster, KubectlCluster
from dnse2e.steps import Scenario

logger = logging.getLogger("dnse2e.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="DNS metrics end-to-end scenarios")
    parser.add_argument("--config", required=True, help="Path to the YAML test case file")
    parser.add_argument("--kubeconfig", help="Kubeconfig used for kubectl and workload lookups")
    parser.add_argument(
        "--only", action="append", metavar="NAME",
        help="Run only the named case (repeatable)",
    )
    parser.add_argument("--timeout", type=float, help="Per-scenario deadline in seconds")
    parser.add_argument(
        "--metrics-host", default="localhost",
        help="Host serving the forwarded metrics port (default: localhost)",
    )
    parser.add_argument("--list", action="store_true", help="List cases and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    return parser


def print_result(result: ScenarioResult) -> None:
    """Print per-step outcome and timing of a scenario."""
    status = "PASS" if result.passed else "FAIL"
    print(f"\n{status} {result.name} ({result.duration:.1f}s)")
    for step in result.steps:
        symbol = "+" if step.passed else "-"
        suffix = " (background)" if step.background else ""
        line = f"  [{symbol}] {step.index:2d} {step.kind}{suffix} {step.duration:.2f}s"
        if step.message:
            line += f": {step.message}"
        print(line)


async def run_scenarios(
    scenarios: list[Scenario],
    cluster: Cluster,
    metrics_host: str = "localhost",
    timeout: float | None = None,
) -> list[ScenarioResult]:
    """Run scenarios one after another, collecting results."""
    results = []
    for scenario in scenarios:
        executor = StepExecutor(cluster, metrics_host=metrics_host, timeout=timeout)
        try:
            result = await executor.run(scenario)
        except ScenarioError as e:
            result = e.result or ScenarioResult(name=scenario.name, error=e)
        results.append(result)
    return results


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config).with_overrides(
            kubeconfig=args.kubeconfig, timeout=args.timeout,
        )
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error("cannot load cases from %s: %s", args.config, e)
        return 1
    scenarios = build_scenarios(config)
    if args.only:
        wanted = set(args.only)
        unknown = wanted - {s.name for s in scenarios}
        if unknown:
            logger.error("unknown cases: %s", ", ".join(sorted(unknown)))
            return 2
        scenarios = [s for s in scenarios if s.name in wanted]

    if args.list:
        for scenario in scenarios:
            print(scenario.name)
        return 0

    cluster = KubectlCluster(kubeconfig=config.kubeconfig)
    results = asyncio.run(
        run_scenarios(scenarios, cluster, metrics_host=args.metrics_host, timeout=config.timeout)
    )

    for result in results:
        print_result(result)

    passed = sum(1 for r in results if r.passed)
    failed = len(results) - passed
    print(f"\nTotal: {passed} passed, {failed} failed of {len(results)}")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
