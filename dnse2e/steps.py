"""Step protocol, scenario containers and the engine's own steps."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from dnse2e.background import BackgroundTaskRegistry
    from dnse2e.kubernetes import Cluster

logger = logging.getLogger("dnse2e.steps")


@dataclass
class StepContext:
    """Collaborators shared by the steps of one scenario run."""

    cluster: Cluster
    background: BackgroundTaskRegistry
    metrics_host: str = "localhost"


class Step(Protocol):
    """A single cluster action or assertion."""

    async def run(self, ctx: StepContext) -> str | None:
        """Run the step and return its output. Raises on failure."""
        ...


@runtime_checkable
class OpeningStep(Protocol):
    """A background step with a setup phase that must finish first.

    The executor awaits ``open`` before moving on and then runs
    ``keep_alive`` with its result as the background task.
    """

    async def open(self, ctx: StepContext) -> Any: ...

    async def keep_alive(self, ctx: StepContext, handle: Any) -> str | None: ...


@dataclass(frozen=True)
class StepOptions:
    """Per-step execution options."""

    expect_error: bool = False
    skip_saving_output: bool = False
    background_id: str | None = None


@dataclass(frozen=True)
class ScenarioStep:
    """A step together with its options."""

    step: Step
    options: StepOptions = field(default_factory=StepOptions)

    @property
    def kind(self) -> str:
        return type(self.step).__name__


@dataclass(frozen=True)
class Scenario:
    """Named, ordered sequence of steps."""

    name: str
    steps: tuple[ScenarioStep, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))

    def __len__(self) -> int:
        return len(self.steps)

    def kinds(self) -> list[str]:
        """Return the kind of every step, in order."""
        return [s.kind for s in self.steps]


@dataclass(frozen=True)
class Sleep:
    """Block the scenario for a fixed duration (seconds)."""

    duration: float

    async def run(self, ctx: StepContext) -> str | None:
        logger.info("sleeping for %.1fs", self.duration)
        await asyncio.sleep(self.duration)
        return None


@dataclass(frozen=True)
class Stop:
    """Stop a background task and wait for it to terminate."""

    background_id: str

    async def run(self, ctx: StepContext) -> str | None:
        await ctx.background.stop(self.background_id)
        logger.info("stopped background task %s", self.background_id)
        return None
