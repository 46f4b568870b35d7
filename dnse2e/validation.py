"""DNS metric validation steps."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import requests

from dnse2e.errors import ExecutionError, ResolutionError, ValueMismatchError
from dnse2e.prom import MetricSample, fetch_metrics, metrics_url, parse_samples, validate_metric
from dnse2e.steps import StepContext

logger = logging.getLogger("dnse2e.validation")

RETINA_PORT = 10093

# Label value the agent emits for responses without answer records.
EMPTY_RESPONSE = "emptyResponse"

DNS_REQUEST_COUNT = "networkobservability_dns_request_count"
DNS_RESPONSE_COUNT = "networkobservability_dns_response_count"
ADV_DNS_REQUEST_COUNT = "networkobservability_adv_dns_request_count"
ADV_DNS_RESPONSE_COUNT = "networkobservability_adv_dns_response_count"


async def scrape_metrics(ctx: StepContext, port: int) -> list[MetricSample]:
    """Fetch and parse the metrics exposed on the forwarded ``port``."""
    url = metrics_url(ctx.metrics_host, port)
    try:
        text = await asyncio.to_thread(fetch_metrics, url)
    except requests.RequestException as e:
        msg = f"failed to fetch metrics from {url}: {e}"
        raise ExecutionError(msg) from e
    return parse_samples(text)


async def check_workload_identity(
    ctx: StepContext,
    sample: MetricSample,
    pod: str,
    namespace: str,
    kubeconfig: str | None,
) -> tuple[str, str]:
    """Assert the sample is attributed to the workload that owns ``pod``."""
    try:
        kind, name = await asyncio.to_thread(
            ctx.cluster.resolve_workload_for_pod, pod, namespace, kubeconfig
        )
    except Exception as e:
        msg = f"cannot resolve workload for pod {namespace}/{pod}: {e}"
        raise ResolutionError(msg) from e

    labelled = (sample.labels.get("workload_kind"), sample.labels.get("workload_name"))
    if labelled != (kind, name):
        msg = (
            f"metric {sample.name} attributed to workload {labelled[0]}/{labelled[1]}, "
            f"pod {namespace}/{pod} belongs to {kind}/{name}"
        )
        raise ValueMismatchError(msg)
    return kind, name


def _summary(sample: MetricSample) -> str:
    return f"{sample.name}{sample.labels} = {sample.value:g}"


@dataclass(frozen=True)
class ValidateBasicDNSRequestMetrics:
    """Validate the basic DNS request counter."""

    num_response: str
    query: str
    query_type: str
    count: str | None = None
    metrics_port: int = RETINA_PORT

    def labels(self) -> dict[str, str | None]:
        return {
            "num_response": self.num_response,
            "query": self.query,
            "query_type": self.query_type,
        }

    async def run(self, ctx: StepContext) -> str | None:
        samples = await scrape_metrics(ctx, self.metrics_port)
        sample = validate_metric(samples, DNS_REQUEST_COUNT, self.labels(), self.count)
        logger.info("basic DNS request metric found: %s", _summary(sample))
        return _summary(sample)


@dataclass(frozen=True)
class ValidateBasicDNSResponseMetrics:
    """Validate the basic DNS response counter."""

    num_response: str
    query: str
    query_type: str
    return_code: str
    response: str
    count: str | None = None
    metrics_port: int = RETINA_PORT

    def labels(self) -> dict[str, str | None]:
        return {
            "num_response": self.num_response,
            "query": self.query,
            "query_type": self.query_type,
            "return_code": self.return_code,
            "response": self.response,
        }

    async def run(self, ctx: StepContext) -> str | None:
        samples = await scrape_metrics(ctx, self.metrics_port)
        sample = validate_metric(samples, DNS_RESPONSE_COUNT, self.labels(), self.count)
        logger.info("basic DNS response metric found: %s", _summary(sample))
        return _summary(sample)


@dataclass(frozen=True)
class ValidateAdvancedDNSRequestMetrics:
    """Validate the pod-scoped DNS request counter and its workload labels."""

    namespace: str
    num_response: str
    pod_name: str
    query: str
    query_type: str
    workload_kind: str
    workload_name: str
    kube_config_file_path: str | None = None
    count: str | None = None
    metrics_port: int = RETINA_PORT

    def labels(self) -> dict[str, str | None]:
        return {
            "namespace": self.namespace,
            "podname": self.pod_name,
            "num_response": self.num_response,
            "query": self.query,
            "query_type": self.query_type,
            "workload_kind": self.workload_kind,
            "workload_name": self.workload_name,
        }

    async def run(self, ctx: StepContext) -> str | None:
        samples = await scrape_metrics(ctx, self.metrics_port)
        sample = validate_metric(samples, ADV_DNS_REQUEST_COUNT, self.labels(), self.count)
        await check_workload_identity(
            ctx, sample, self.pod_name, self.namespace, self.kube_config_file_path
        )
        logger.info("advanced DNS request metric found: %s", _summary(sample))
        return _summary(sample)


@dataclass(frozen=True)
class ValidateAdvancedDNSResponseMetrics:
    """Validate the pod-scoped DNS response counter and its workload labels."""

    namespace: str
    num_response: str
    pod_name: str
    query: str
    query_type: str
    return_code: str
    response: str
    workload_kind: str
    workload_name: str
    kube_config_file_path: str | None = None
    count: str | None = None
    metrics_port: int = RETINA_PORT

    def labels(self) -> dict[str, str | None]:
        return {
            "namespace": self.namespace,
            "podname": self.pod_name,
            "num_response": self.num_response,
            "query": self.query,
            "query_type": self.query_type,
            "return_code": self.return_code,
            "response": self.response,
            "workload_kind": self.workload_kind,
            "workload_name": self.workload_name,
        }

    async def run(self, ctx: StepContext) -> str | None:
        samples = await scrape_metrics(ctx, self.metrics_port)
        sample = validate_metric(samples, ADV_DNS_RESPONSE_COUNT, self.labels(), self.count)
        await check_workload_identity(
            ctx, sample, self.pod_name, self.namespace, self.kube_config_file_path
        )
        logger.info("advanced DNS response metric found: %s", _summary(sample))
        return _summary(sample)
