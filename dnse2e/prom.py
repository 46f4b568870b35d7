"""Prometheus metrics scraping and sample matching."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import requests
from prometheus_client.parser import text_string_to_metric_families

from dnse2e.errors import AmbiguousMetricError, MetricNotFoundError, ValueMismatchError

logger = logging.getLogger("dnse2e.prom")

METRICS_PATH = "/metrics"


@dataclass(frozen=True)
class MetricSample:
    """A single (name, labels, value) sample and the type of its family."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0
    type: str = "unknown"

    def has_name(self, name: str) -> bool:
        """Check the sample name, accepting ``name_total`` for counters.

        The text parser exposes counter samples with a ``_total`` suffix
        whether or not the exporter wrote one.
        """
        if self.name == name:
            return True
        return self.type == "counter" and self.name == f"{name}_total"


def metrics_url(host: str, port: int | str) -> str:
    """Return the metrics URL for a forwarded port."""
    return f"http://{host}:{port}{METRICS_PATH}"


def fetch_metrics(url: str, timeout: float = 10) -> str:
    """Fetch the text exposition payload from ``url``."""
    resp = requests.get(url, timeout=timeout)
    resp.raise_for_status()
    return resp.text


def parse_samples(text: str) -> list[MetricSample]:
    """Parse Prometheus text format into a flat list of samples."""
    samples = []
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            samples.append(MetricSample(
                name=sample.name,
                labels=dict(sample.labels),
                value=sample.value,
                type=family.type,
            ))
    return samples


def match_labels(labels: dict[str, str], predicate: dict[str, str | None]) -> bool:
    """Check ``labels`` against ``predicate``.

    Each predicate value is compared literally; ``None`` requires the label
    to be absent. Labels not named in the predicate are ignored.
    """
    for key, expected in predicate.items():
        if expected is None:
            if key in labels:
                return False
        elif labels.get(key) != expected:
            return False
    return True


def select(
    samples: list[MetricSample], name: str, predicate: dict[str, str | None]
) -> list[MetricSample]:
    """Return the samples named ``name`` whose labels satisfy ``predicate``."""
    return [s for s in samples if s.has_name(name) and match_labels(s.labels, predicate)]


def _as_int(value: float, metric: str) -> int:
    if not float(value).is_integer():
        msg = f"metric {metric} has non-integral value {value}"
        raise ValueMismatchError(msg)
    return int(value)


def validate_metric(
    samples: list[MetricSample],
    name: str,
    predicate: dict[str, str | None],
    expected_count: str | None = None,
) -> MetricSample:
    """Assert exactly one sample matches and carries the expected count.

    Returns the matched sample. ``expected_count`` is the expected integer
    value as a string; when ``None`` any integral value is accepted.
    """
    matches = select(samples, name, predicate)
    if not matches:
        raise MetricNotFoundError(name, predicate)
    if len(matches) > 1:
        raise AmbiguousMetricError(name, predicate, len(matches))

    sample = matches[0]
    actual = _as_int(sample.value, name)
    if expected_count is not None:
        try:
            expected = int(expected_count)
        except ValueError:
            msg = f"expected count {expected_count!r} for metric {name} is not an integer"
            raise ValueMismatchError(msg) from None
        if actual != expected:
            msg = f"metric {name} with labels {predicate}: value {actual}, expected {expected}"
            raise ValueMismatchError(msg)

    logger.debug("metric %s matched %s = %d", name, sample.labels, actual)
    return sample
