"""Sequential scenario executor."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from dnse2e.background import BackgroundTaskRegistry
from dnse2e.errors import (
    ExecutionError,
    DuplicateTaskError,
    ExpectationMismatchError,
    ScenarioError,
    ScenarioTimeoutError,
)
from dnse2e.kubernetes import Cluster
from dnse2e.steps import OpeningStep, Scenario, ScenarioStep, StepContext

logger = logging.getLogger("dnse2e.executor")


@dataclass
class StepResult:
    """Outcome of a single step."""

    index: int
    kind: str
    passed: bool
    duration: float
    output: str | None = None
    message: str = ""
    background: bool = False


@dataclass
class ScenarioResult:
    """Outcome of a scenario run."""

    name: str
    steps: list[StepResult] = field(default_factory=list)
    error: ScenarioError | None = None
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return self.error is None and all(s.passed for s in self.steps)


def _as_scenario_error(exc: BaseException, index: int, kind: str) -> ScenarioError:
    if isinstance(exc, ScenarioError):
        return exc.attribute(index, kind)
    return ExecutionError(str(exc) or type(exc).__name__, step_index=index, step_kind=kind)


class StepExecutor:
    """Runs the steps of a scenario in order.

    Steps carrying a background id are started as tasks and left running
    until a ``Stop`` step or the end of the scenario. The first unexpected
    error aborts the run; every background task still registered is
    cancelled before the error propagates.
    """

    def __init__(
        self,
        cluster: Cluster,
        metrics_host: str = "localhost",
        timeout: float | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._cluster = cluster
        self._metrics_host = metrics_host
        self._timeout = timeout
        self._log = log or logger

    async def run(self, scenario: Scenario) -> ScenarioResult:
        """Execute ``scenario``. Raises ``ScenarioError`` on the first failure."""
        registry = BackgroundTaskRegistry(log=self._log)
        ctx = StepContext(
            cluster=self._cluster,
            background=registry,
            metrics_host=self._metrics_host,
        )
        result = ScenarioResult(name=scenario.name)
        total = len(scenario.steps)
        index, kind = -1, ""

        self._log.info("scenario %s: %d steps", scenario.name, total)
        start = time.monotonic()
        try:
            async with asyncio.timeout(self._timeout):
                for index, scenario_step in enumerate(scenario.steps):
                    kind = scenario_step.kind
                    registry.raise_for_failure()
                    self._log.info("  [%d/%d] %s", index + 1, total, kind)
                    await self._run_step(ctx, index, scenario_step, result)
            registry.raise_for_failure()
        except TimeoutError as e:
            err = ScenarioTimeoutError(
                f"scenario {scenario.name} exceeded {self._timeout}s",
                step_index=index,
                step_kind=kind,
            )
            await self._abort(registry, result, err, start)
            raise err from e
        except ScenarioError as e:
            await self._abort(registry, result, e, start)
            raise
        except BaseException:
            await registry.cancel_all()
            raise

        leftover = await registry.cancel_all()
        if leftover:
            self._log.warning(
                "scenario %s finished with background tasks still running: %s",
                scenario.name, ", ".join(leftover),
            )
        result.duration = time.monotonic() - start
        self._log.info("scenario %s passed in %.1fs", scenario.name, result.duration)
        return result

    async def _abort(
        self,
        registry: BackgroundTaskRegistry,
        result: ScenarioResult,
        err: ScenarioError,
        start: float,
    ) -> None:
        result.error = err
        result.duration = time.monotonic() - start
        err.result = result
        await registry.cancel_all()
        self._log.error("scenario %s failed: %s", result.name, err)

    async def _run_step(
        self,
        ctx: StepContext,
        index: int,
        scenario_step: ScenarioStep,
        result: ScenarioResult,
    ) -> None:
        opts = scenario_step.options
        kind = scenario_step.kind

        if opts.background_id is not None:
            await self._start_background(ctx, index, scenario_step, result)
            return

        start = time.monotonic()
        try:
            output = await scenario_step.step.run(ctx)
        except Exception as exc:
            duration = time.monotonic() - start
            if opts.expect_error:
                self._log.info("step %d (%s) failed as expected: %s", index, kind, exc)
                result.steps.append(
                    StepResult(index, kind, True, duration, message=f"expected error: {exc}")
                )
                return
            err = _as_scenario_error(exc, index, kind)
            result.steps.append(StepResult(index, kind, False, duration, message=str(err)))
            if err is exc:
                raise
            raise err from exc

        duration = time.monotonic() - start
        if opts.expect_error:
            err = ExpectationMismatchError(
                "step completed without error but an error was expected",
                step_index=index,
                step_kind=kind,
            )
            result.steps.append(StepResult(index, kind, False, duration, message=str(err)))
            raise err

        self._log.debug("step %d (%s) done in %.2fs", index, kind, duration)
        result.steps.append(
            StepResult(
                index,
                kind,
                True,
                duration,
                output=None if opts.skip_saving_output else output,
            )
        )

    async def _start_background(
        self,
        ctx: StepContext,
        index: int,
        scenario_step: ScenarioStep,
        result: ScenarioResult,
    ) -> None:
        step = scenario_step.step
        task_id = scenario_step.options.background_id
        kind = scenario_step.kind

        start = time.monotonic()
        try:
            if task_id in ctx.background:
                raise DuplicateTaskError(task_id)
            if isinstance(step, OpeningStep):
                handle = await step.open(ctx)
                coro = step.keep_alive(ctx, handle)
            else:
                coro = step.run(ctx)
            ctx.background.start(task_id, coro, step_index=index, step_kind=kind)
        except Exception as exc:
            err = _as_scenario_error(exc, index, kind)
            result.steps.append(
                StepResult(index, kind, False, time.monotonic() - start, message=str(err), background=True)
            )
            if err is exc:
                raise
            raise err from exc

        # Let the task reach its first await so cancelling it runs its cleanup.
        await asyncio.sleep(0)
        duration = time.monotonic() - start
        self._log.debug("step %d (%s) started %s in %.2fs", index, kind, task_id, duration)
        result.steps.append(StepResult(index, kind, True, duration, background=True))
