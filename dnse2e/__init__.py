"""dnse2e — end-to-end validation of DNS observability metrics in Kubernetes."""

from __future__ import annotations

from dnse2e.background import BackgroundTaskRegistry
from dnse2e.errors import (
    AmbiguousMetricError,
    BackgroundTaskError,
    DuplicateTaskError,
    ExecutionError,
    ExpectationMismatchError,
    MetricNotFoundError,
    ResolutionError,
    ScenarioError,
    ScenarioTimeoutError,
    UnknownTaskError,
    ValidationError,
    ValueMismatchError,
)
from dnse2e.executor import ScenarioResult, StepExecutor, StepResult
from dnse2e.kubernetes import Cluster, KubectlCluster, PortForwardTunnel, ResourceType
from dnse2e.prom import MetricSample, match_labels, parse_samples, validate_metric
from dnse2e.scenarios import (
    RequestValidationParams,
    ResponseValidationParams,
    build_advanced,
    build_basic,
)
from dnse2e.steps import (
    OpeningStep,
    Scenario,
    ScenarioStep,
    Sleep,
    Step,
    StepContext,
    StepOptions,
    Stop,
)
from dnse2e.validation import EMPTY_RESPONSE

__all__ = [
    "EMPTY_RESPONSE",
    "AmbiguousMetricError",
    "BackgroundTaskError",
    "BackgroundTaskRegistry",
    "Cluster",
    "DuplicateTaskError",
    "ExecutionError",
    "ExpectationMismatchError",
    "KubectlCluster",
    "MetricNotFoundError",
    "MetricSample",
    "OpeningStep",
    "PortForwardTunnel",
    "RequestValidationParams",
    "ResolutionError",
    "ResourceType",
    "ResponseValidationParams",
    "Scenario",
    "ScenarioError",
    "ScenarioResult",
    "ScenarioStep",
    "ScenarioTimeoutError",
    "Sleep",
    "Step",
    "StepContext",
    "StepExecutor",
    "StepOptions",
    "StepResult",
    "Stop",
    "UnknownTaskError",
    "ValidationError",
    "ValueMismatchError",
    "build_advanced",
    "build_basic",
    "match_labels",
    "parse_samples",
    "validate_metric",
]
