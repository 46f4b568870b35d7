"""Scenario error types."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dnse2e.executor import ScenarioResult


class ScenarioError(Exception):
    """Base scenario error.

    Carries the index and kind of the failing step once the executor has
    attributed it, and the partial run result when the scenario aborted.
    """

    def __init__(
        self,
        *args: object,
        step_index: int | None = None,
        step_kind: str | None = None,
    ) -> None:
        super().__init__(*args)
        self.step_index = step_index
        self.step_kind = step_kind
        self.result: ScenarioResult | None = None

    def attribute(self, step_index: int | None, step_kind: str | None) -> ScenarioError:
        """Attach the failing step, keeping an earlier attribution."""
        if self.step_index is None:
            self.step_index = step_index
            self.step_kind = step_kind
        return self

    def __str__(self) -> str:
        message = super().__str__()
        if self.step_index is None:
            return message
        return f"step {self.step_index} ({self.step_kind}): {message}"


class ExecutionError(ScenarioError):
    """A step's underlying action failed."""


class ScenarioTimeoutError(ExecutionError):
    """The scenario deadline expired while a step was running."""


class ExpectationMismatchError(ScenarioError):
    """A step expected to fail completed without error."""


class BackgroundTaskError(ScenarioError):
    """Misuse of a background task id."""

    def __init__(self, task_id: str, message: str) -> None:
        self.task_id = task_id
        super().__init__(f"{message}: {task_id}")


class DuplicateTaskError(BackgroundTaskError):
    """A background task with the same id is already running."""

    def __init__(self, task_id: str) -> None:
        super().__init__(task_id, "background task already running")


class UnknownTaskError(BackgroundTaskError):
    """No background task is registered under the id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(task_id, "background task not found")


class ValidationError(ScenarioError):
    """Base metric validation failure."""


class MetricNotFoundError(ValidationError):
    """No sample matched the metric name and label predicate."""

    def __init__(self, metric: str, labels: dict[str, str | None]) -> None:
        self.metric = metric
        self.labels = labels
        super().__init__(f"metric {metric} with labels {labels} not found")


class AmbiguousMetricError(ValidationError):
    """More than one sample matched; the label predicate is under-constrained."""

    def __init__(self, metric: str, labels: dict[str, str | None], matches: int) -> None:
        self.metric = metric
        self.labels = labels
        self.matches = matches
        super().__init__(f"metric {metric} with labels {labels} matched {matches} samples")


class ValueMismatchError(ValidationError):
    """The matched sample does not carry the expected value."""


class ResolutionError(ValidationError):
    """Looking up the workload that owns a pod failed."""


__all__ = [
    "AmbiguousMetricError",
    "BackgroundTaskError",
    "DuplicateTaskError",
    "ExecutionError",
    "ExpectationMismatchError",
    "MetricNotFoundError",
    "ResolutionError",
    "ScenarioError",
    "ScenarioTimeoutError",
    "UnknownTaskError",
    "ValidationError",
    "ValueMismatchError",
]
