"""DNS metric scenarios."""

from __future__ import annotations

import random
from dataclasses import dataclass

from dnse2e.kubernetes import (
    CreateAgnhostStatefulSet,
    DeleteKubernetesResource,
    ExecInPod,
    PortForward,
    ResourceType,
)
from dnse2e.steps import Scenario, ScenarioStep, Sleep, StepOptions, Stop
from dnse2e.validation import (
    RETINA_PORT,
    ValidateAdvancedDNSRequestMetrics,
    ValidateAdvancedDNSResponseMetrics,
    ValidateBasicDNSRequestMetrics,
    ValidateBasicDNSResponseMetrics,
)

SLEEP_DELAY: float = 5.0
NAMESPACE = "kube-system"
RETINA_LABEL_SELECTOR = "k8s-app=retina"


@dataclass(frozen=True)
class RequestValidationParams:
    """Expected DNS request metric and the command that triggers it."""

    num_response: str
    query: str
    query_type: str
    command: str
    expect_error: bool = False
    count: str | None = None


@dataclass(frozen=True)
class ResponseValidationParams:
    """Expected DNS response metric."""

    num_response: str
    query: str
    query_type: str
    return_code: str
    response: str
    count: str | None = None


def _random_id(prefix: str, rng: random.Random | None) -> str:
    rng = rng or random.Random()
    return f"{prefix}-{rng.randrange(2**63)}"


def _assemble(
    name: str,
    task_id: str,
    req: RequestValidationParams,
    validate_request: ScenarioStep,
    validate_response: ScenarioStep,
    namespace: str,
    metrics_port: int,
    sleep_delay: float,
) -> Scenario:
    agnhost_name = f"agnhost-{task_id}"
    pod_name = f"{agnhost_name}-0"
    exec_opts = StepOptions(expect_error=req.expect_error, skip_saving_output=True)
    exec_dns = ExecInPod(pod_name=pod_name, pod_namespace=namespace, command=req.command)

    return Scenario(name, (
        ScenarioStep(CreateAgnhostStatefulSet(agnhost_name=agnhost_name, agnhost_namespace=namespace)),
        ScenarioStep(exec_dns, exec_opts),
        ScenarioStep(Sleep(sleep_delay)),
        # The first lookups after pod start are not always captured; run the command twice.
        ScenarioStep(exec_dns, exec_opts),
        ScenarioStep(Sleep(sleep_delay)),
        ScenarioStep(
            PortForward(
                namespace=namespace,
                label_selector=RETINA_LABEL_SELECTOR,
                local_port=metrics_port,
                remote_port=metrics_port,
                endpoint="metrics",
                # Forward to the agent on the node running the DNS client.
                optional_label_affinity=f"app={agnhost_name}",
            ),
            StepOptions(skip_saving_output=True, background_id=task_id),
        ),
        validate_request,
        validate_response,
        ScenarioStep(Stop(background_id=task_id)),
        ScenarioStep(
            DeleteKubernetesResource(
                resource_type=ResourceType.STATEFUL_SET,
                resource_name=agnhost_name,
                resource_namespace=namespace,
            ),
            StepOptions(skip_saving_output=True),
        ),
        ScenarioStep(Sleep(sleep_delay)),
    ))


def build_basic(
    name: str,
    req: RequestValidationParams,
    resp: ResponseValidationParams,
    *,
    namespace: str = NAMESPACE,
    metrics_port: int = RETINA_PORT,
    sleep_delay: float = SLEEP_DELAY,
    rng: random.Random | None = None,
) -> Scenario:
    """Build a scenario validating the basic DNS request/response metrics."""
    task_id = _random_id("basic-dns-port-forward", rng)
    opts = StepOptions(skip_saving_output=True)
    validate_request = ScenarioStep(
        ValidateBasicDNSRequestMetrics(
            num_response=req.num_response,
            query=req.query,
            query_type=req.query_type,
            count=req.count,
            metrics_port=metrics_port,
        ),
        opts,
    )
    validate_response = ScenarioStep(
        ValidateBasicDNSResponseMetrics(
            num_response=resp.num_response,
            query=resp.query,
            query_type=resp.query_type,
            return_code=resp.return_code,
            response=resp.response,
            count=resp.count,
            metrics_port=metrics_port,
        ),
        opts,
    )
    return _assemble(
        name, task_id, req, validate_request, validate_response,
        namespace, metrics_port, sleep_delay,
    )


def build_advanced(
    name: str,
    req: RequestValidationParams,
    resp: ResponseValidationParams,
    kubeconfig: str | None,
    *,
    namespace: str = NAMESPACE,
    metrics_port: int = RETINA_PORT,
    sleep_delay: float = SLEEP_DELAY,
    rng: random.Random | None = None,
) -> Scenario:
    """Build a scenario validating the pod-scoped DNS metrics.

    The validation steps also check that the metric's workload labels match
    the StatefulSet that owns the DNS client pod, looked up with
    ``kubeconfig``.
    """
    task_id = _random_id("adv-dns-port-forward", rng)
    agnhost_name = f"agnhost-{task_id}"
    pod_name = f"{agnhost_name}-0"
    opts = StepOptions(skip_saving_output=True)
    validate_request = ScenarioStep(
        ValidateAdvancedDNSRequestMetrics(
            namespace=namespace,
            num_response=req.num_response,
            pod_name=pod_name,
            query=req.query,
            query_type=req.query_type,
            workload_kind=str(ResourceType.STATEFUL_SET),
            workload_name=agnhost_name,
            kube_config_file_path=kubeconfig,
            count=req.count,
            metrics_port=metrics_port,
        ),
        opts,
    )
    validate_response = ScenarioStep(
        ValidateAdvancedDNSResponseMetrics(
            namespace=namespace,
            num_response=resp.num_response,
            pod_name=pod_name,
            query=resp.query,
            query_type=resp.query_type,
            return_code=resp.return_code,
            response=resp.response,
            workload_kind=str(ResourceType.STATEFUL_SET),
            workload_name=agnhost_name,
            kube_config_file_path=kubeconfig,
            count=resp.count,
            metrics_port=metrics_port,
        ),
        opts,
    )
    return _assemble(
        name, task_id, req, validate_request, validate_response,
        namespace, metrics_port, sleep_delay,
    )
