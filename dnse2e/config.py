"""Loading of DNS test cases from YAML."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

import yaml

from dnse2e.scenarios import (
    NAMESPACE,
    SLEEP_DELAY,
    RequestValidationParams,
    ResponseValidationParams,
    build_advanced,
    build_basic,
)
from dnse2e.steps import Scenario
from dnse2e.validation import RETINA_PORT

logger = logging.getLogger("dnse2e.config")

CASE_KINDS = ("basic", "advanced")

_REQUEST_FIELDS = ("num_response", "query", "query_type", "command")
_RESPONSE_FIELDS = ("num_response", "query", "query_type", "return_code", "response")


@dataclass(frozen=True)
class CaseConfig:
    """A single DNS test case."""

    name: str
    kind: str
    request: RequestValidationParams
    response: ResponseValidationParams


@dataclass(frozen=True)
class RunConfig:
    """Settings shared by every case plus the cases themselves."""

    namespace: str = NAMESPACE
    metrics_port: int = RETINA_PORT
    sleep_delay: float = SLEEP_DELAY
    timeout: float | None = None
    kubeconfig: str | None = None
    cases: list[CaseConfig] = field(default_factory=list)

    def with_overrides(self, **overrides: Any) -> RunConfig:
        """Return a copy with the non-None ``overrides`` applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _require_mapping(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        msg = f"{where}: expected a mapping, got {type(value).__name__}"
        raise ValueError(msg)
    return value


def _fields(data: dict[str, Any], required: tuple[str, ...], where: str) -> dict[str, str]:
    missing = [f for f in required if f not in data]
    if missing:
        msg = f"{where}: missing fields: {', '.join(missing)}"
        raise ValueError(msg)
    return {f: str(data[f]) for f in required}


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return None if value is None else str(value)


def parse_case(data: Any, index: int) -> CaseConfig:
    """Build a ``CaseConfig`` from one entry of ``cases``."""
    where = f"cases[{index}]"
    data = _require_mapping(data, where)

    name = data.get("name")
    if not name:
        msg = f"{where}: name is required"
        raise ValueError(msg)

    kind = data.get("kind", "basic")
    if kind not in CASE_KINDS:
        msg = f"{where}: unknown kind {kind!r} (expected one of {', '.join(CASE_KINDS)})"
        raise ValueError(msg)

    req_data = _require_mapping(data.get("request"), f"{where}.request")
    resp_data = _require_mapping(data.get("response"), f"{where}.response")

    expect_error = req_data.get("expect_error", False)
    if not isinstance(expect_error, bool):
        msg = f"{where}.request: expect_error must be true or false, got {expect_error!r}"
        raise ValueError(msg)

    request = RequestValidationParams(
        **_fields(req_data, _REQUEST_FIELDS, f"{where}.request"),
        expect_error=expect_error,
        count=_optional_str(req_data, "count"),
    )
    response = ResponseValidationParams(
        **_fields(resp_data, _RESPONSE_FIELDS, f"{where}.response"),
        count=_optional_str(resp_data, "count"),
    )
    return CaseConfig(name=str(name), kind=kind, request=request, response=response)


def parse_config(data: Any) -> RunConfig:
    """Build a ``RunConfig`` from already-loaded YAML data."""
    data = _require_mapping(data, "config")

    raw_cases = data.get("cases")
    if not isinstance(raw_cases, list) or not raw_cases:
        msg = "config: cases must be a non-empty list"
        raise ValueError(msg)

    cases = [parse_case(c, i) for i, c in enumerate(raw_cases)]
    names = [c.name for c in cases]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        msg = f"config: duplicate case names: {', '.join(duplicates)}"
        raise ValueError(msg)

    timeout = data.get("timeout")
    return RunConfig(
        namespace=str(data.get("namespace", NAMESPACE)),
        metrics_port=int(data.get("metrics_port", RETINA_PORT)),
        sleep_delay=float(data.get("sleep_delay", SLEEP_DELAY)),
        timeout=None if timeout is None else float(timeout),
        kubeconfig=_optional_str(data, "kubeconfig"),
        cases=cases,
    )


def load_config(path: str) -> RunConfig:
    """Load a ``RunConfig`` from a YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f)
    config = parse_config(data)
    logger.info("loaded %d cases from %s", len(config.cases), path)
    return config


def build_scenarios(config: RunConfig) -> list[Scenario]:
    """Build one scenario per configured case."""
    scenarios = []
    for case in config.cases:
        common = {
            "namespace": config.namespace,
            "metrics_port": config.metrics_port,
            "sleep_delay": config.sleep_delay,
        }
        if case.kind == "advanced":
            scenario = build_advanced(
                case.name, case.request, case.response, config.kubeconfig, **common
            )
        else:
            scenario = build_basic(case.name, case.request, case.response, **common)
        scenarios.append(scenario)
    return scenarios
