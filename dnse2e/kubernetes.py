"""Kubernetes collaborators: kubectl-backed cluster access and cluster steps."""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

import requests
import yaml

from dnse2e.errors import ExecutionError
from dnse2e.steps import StepContext

logger = logging.getLogger("dnse2e.kubernetes")

AGNHOST_IMAGE = "registry.k8s.io/e2e-test-images/agnhost:2.40"
DEFAULT_ROLLOUT_TIMEOUT = 120
DEFAULT_TUNNEL_TIMEOUT = 30.0

# Controllers whose pods are attributed to the controller's own owner.
_INTERMEDIATE_OWNERS = frozenset({"ReplicaSet", "Job"})


class ResourceType(StrEnum):
    """Kubernetes resource kinds managed by scenarios."""

    STATEFUL_SET = "StatefulSet"
    DEPLOYMENT = "Deployment"
    DAEMON_SET = "DaemonSet"
    POD = "Pod"


class Cluster(Protocol):
    """Cluster operations consumed by scenario steps."""

    def create_workload(self, name: str, namespace: str) -> str:
        """Create the DNS-client workload and wait until it is ready."""
        ...

    def exec_in_pod(self, pod: str, namespace: str, command: str) -> str:
        """Run ``command`` in ``pod`` and return its output."""
        ...

    def port_forward(
        self,
        namespace: str,
        label_selector: str,
        local_port: int,
        remote_port: int,
        endpoint: str = "metrics",
        label_affinity: str | None = None,
    ) -> PortForwardTunnel:
        """Start a port-forward tunnel.

        Returns once ``http://localhost:<local_port>/<endpoint>`` answers.
        """
        ...

    def delete_resource(self, resource_type: str, name: str, namespace: str) -> str:
        """Delete a resource."""
        ...

    def resolve_workload_for_pod(
        self, pod: str, namespace: str, kubeconfig: str | None = None
    ) -> tuple[str, str]:
        """Return the (kind, name) of the workload owning ``pod``."""
        ...


def agnhost_statefulset(name: str, namespace: str, image: str = AGNHOST_IMAGE) -> dict[str, Any]:
    """Build the manifest of a single-replica agnhost StatefulSet."""
    labels = {"app": name}
    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {"name": name, "namespace": namespace, "labels": labels},
        "spec": {
            "serviceName": name,
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "nodeSelector": {"kubernetes.io/os": "linux"},
                    "containers": [
                        {
                            "name": name,
                            "image": image,
                            "args": ["serve-hostname"],
                            "resources": {
                                "requests": {"cpu": "10m", "memory": "20Mi"},
                                "limits": {"cpu": "100m", "memory": "100Mi"},
                            },
                        }
                    ],
                },
            },
        },
    }


def _controller_owner(obj: dict[str, Any]) -> dict[str, Any] | None:
    owners = obj.get("metadata", {}).get("ownerReferences", [])
    for owner in owners:
        if owner.get("controller"):
            return owner
    return owners[0] if owners else None


class PortForwardTunnel:
    """A running ``kubectl port-forward`` process.

    A daemon thread drains the process's stderr so kubectl never blocks on
    a full pipe; the last lines are kept for error reports.
    """

    def __init__(
        self, process: subprocess.Popen[str], log: logging.Logger | None = None, keep_lines: int = 20
    ) -> None:
        self.process = process
        self._log = log or logger
        self._errors: deque[str] = deque(maxlen=keep_lines)
        self._drainer = threading.Thread(
            target=self._drain, name=f"port-forward-{process.pid}", daemon=True
        )
        self._drainer.start()

    @property
    def pid(self) -> int:
        return self.process.pid

    def _drain(self) -> None:
        if self.process.stderr is None:
            return
        for line in self.process.stderr:
            line = line.rstrip()
            if line:
                self._log.debug("port-forward pid=%d: %s", self.process.pid, line)
                self._errors.append(line)

    def poll(self) -> int | None:
        return self.process.poll()

    def terminate(self) -> None:
        self.process.terminate()

    def kill(self) -> None:
        self.process.kill()

    def wait(self, timeout: float | None = None) -> int:
        return self.process.wait(timeout)

    def read_errors(self) -> str:
        """Return the last stderr lines, once the process has exited."""
        if self.process.poll() is not None:
            self._drainer.join(timeout=1)
        return "\n".join(self._errors)


class KubectlCluster:
    """Cluster implementation that shells out to ``kubectl``."""

    def __init__(
        self,
        kubeconfig: str | None = None,
        kubectl_bin: str = "kubectl",
        rollout_timeout: int = DEFAULT_ROLLOUT_TIMEOUT,
        tunnel_timeout: float = DEFAULT_TUNNEL_TIMEOUT,
        poll_interval: float = 0.5,
        log: logging.Logger | None = None,
    ) -> None:
        self._kubeconfig = kubeconfig
        self._bin = kubectl_bin
        self._rollout_timeout = rollout_timeout
        self._tunnel_timeout = tunnel_timeout
        self._poll_interval = poll_interval
        self._log = log or logger

    def _base_cmd(self, namespace: str | None, kubeconfig: str | None) -> list[str]:
        cmd = [self._bin]
        config = kubeconfig or self._kubeconfig
        if config:
            cmd += ["--kubeconfig", config]
        if namespace:
            cmd += ["-n", namespace]
        return cmd

    def kubectl(
        self,
        *args: str,
        namespace: str | None = None,
        kubeconfig: str | None = None,
        stdin: str | None = None,
    ) -> str:
        """Run a kubectl command and return stdout."""
        cmd = [*self._base_cmd(namespace, kubeconfig), *args]
        self._log.debug("exec: %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True, input=stdin)
        except subprocess.CalledProcessError as e:
            msg = f"kubectl {' '.join(args)} failed (exit {e.returncode}): {(e.stderr or '').strip()}"
            raise ExecutionError(msg) from e
        except OSError as e:
            msg = f"cannot run {self._bin}: {e}"
            raise ExecutionError(msg) from e
        return result.stdout.strip()

    def _get_json(
        self, kind: str, name: str | None, namespace: str, *args: str, kubeconfig: str | None = None
    ) -> dict[str, Any]:
        target = [kind, name] if name else [kind]
        output = self.kubectl(
            "get", *target, *args, "-o", "json", namespace=namespace, kubeconfig=kubeconfig
        )
        return json.loads(output)

    def create_workload(self, name: str, namespace: str) -> str:
        manifest = agnhost_statefulset(name, namespace)
        output = self.kubectl("apply", "-f", "-", namespace=namespace, stdin=yaml.safe_dump(manifest))
        self._log.info("created statefulset %s/%s", namespace, name)
        self.kubectl(
            "rollout", "status", f"statefulset/{name}", f"--timeout={self._rollout_timeout}s",
            namespace=namespace,
        )
        self._log.info("statefulset %s/%s is ready", namespace, name)
        return output

    def exec_in_pod(self, pod: str, namespace: str, command: str) -> str:
        self._log.info("exec in %s/%s: %s", namespace, pod, command)
        return self.kubectl("exec", pod, "--", *shlex.split(command), namespace=namespace)

    def select_pod(self, namespace: str, label_selector: str, label_affinity: str | None = None) -> str:
        """Pick a running pod matching ``label_selector``.

        With ``label_affinity`` the pod must share a node with a pod
        matching that selector.
        """
        pods = self._get_json("pods", None, namespace, "-l", label_selector).get("items", [])
        running = [p for p in pods if p.get("status", {}).get("phase") == "Running"]
        if not running:
            msg = f"no running pods match {label_selector} in {namespace}"
            raise ExecutionError(msg)

        if label_affinity:
            peers = self._get_json("pods", None, namespace, "-l", label_affinity).get("items", [])
            nodes = {p.get("spec", {}).get("nodeName") for p in peers} - {None}
            running = [p for p in running if p.get("spec", {}).get("nodeName") in nodes]
            if not running:
                msg = f"no pod matching {label_selector} runs on a node with {label_affinity}"
                raise ExecutionError(msg)

        return running[0]["metadata"]["name"]

    def port_forward(
        self,
        namespace: str,
        label_selector: str,
        local_port: int,
        remote_port: int,
        endpoint: str = "metrics",
        label_affinity: str | None = None,
    ) -> PortForwardTunnel:
        pod = self.select_pod(namespace, label_selector, label_affinity)
        cmd = [
            *self._base_cmd(namespace, None),
            "port-forward", f"pod/{pod}", f"{local_port}:{remote_port}",
        ]
        self._log.debug("exec: %s", " ".join(cmd))
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, text=True)
        except OSError as e:
            msg = f"cannot run {self._bin}: {e}"
            raise ExecutionError(msg) from e
        tunnel = PortForwardTunnel(proc, log=self._log)
        self._log.info("port-forward %s/%s %d:%d (pid=%d)", namespace, pod, local_port, remote_port, proc.pid)

        try:
            self._wait_for_endpoint(tunnel, f"http://localhost:{local_port}/{endpoint.lstrip('/')}")
        except BaseException:
            if tunnel.poll() is None:
                tunnel.terminate()
                try:
                    tunnel.wait(5)
                except subprocess.TimeoutExpired:
                    tunnel.kill()
                    tunnel.wait()
            raise
        return tunnel

    def _wait_for_endpoint(self, tunnel: PortForwardTunnel, url: str) -> None:
        """Poll ``url`` until it answers, the tunnel exits or the deadline passes."""
        deadline = time.monotonic() + self._tunnel_timeout
        while True:
            code = tunnel.poll()
            if code is not None:
                msg = f"port-forward exited with code {code} before {url} answered: {tunnel.read_errors()}"
                raise ExecutionError(msg)
            try:
                requests.get(url, timeout=2)
            except requests.RequestException as e:
                if time.monotonic() >= deadline:
                    msg = f"{url} not reachable after {self._tunnel_timeout}s: {e}"
                    raise ExecutionError(msg) from e
                self._log.debug("waiting for %s: %s", url, e)
                time.sleep(self._poll_interval)
                continue
            self._log.info("%s is reachable", url)
            return

    def delete_resource(self, resource_type: str, name: str, namespace: str) -> str:
        output = self.kubectl("delete", str(resource_type), name, namespace=namespace)
        self._log.info("deleted %s %s/%s", resource_type, namespace, name)
        return output

    def resolve_workload_for_pod(
        self, pod: str, namespace: str, kubeconfig: str | None = None
    ) -> tuple[str, str]:
        obj = self._get_json("pod", pod, namespace, kubeconfig=kubeconfig)
        owner = _controller_owner(obj)
        if owner is None:
            msg = f"pod {namespace}/{pod} has no owning workload"
            raise ExecutionError(msg)

        if owner["kind"] in _INTERMEDIATE_OWNERS:
            parent = self._get_json(owner["kind"], owner["name"], namespace, kubeconfig=kubeconfig)
            grand = _controller_owner(parent)
            if grand is not None:
                owner = grand

        return owner["kind"], owner["name"]


@dataclass(frozen=True)
class CreateAgnhostStatefulSet:
    """Create the agnhost StatefulSet used as a DNS client."""

    agnhost_name: str
    agnhost_namespace: str

    async def run(self, ctx: StepContext) -> str | None:
        return await asyncio.to_thread(
            ctx.cluster.create_workload, self.agnhost_name, self.agnhost_namespace
        )


@dataclass(frozen=True)
class ExecInPod:
    """Run a command inside a pod."""

    pod_name: str
    pod_namespace: str
    command: str

    async def run(self, ctx: StepContext) -> str | None:
        return await asyncio.to_thread(
            ctx.cluster.exec_in_pod, self.pod_name, self.pod_namespace, self.command
        )


@dataclass(frozen=True)
class PortForward:
    """Open a port-forward tunnel and keep it open until cancelled.

    As a background step the executor awaits ``open`` in the foreground, so
    the next step only runs once the endpoint answers, and then hands
    ``keep_alive`` to the background registry. The tunnel process exiting
    on its own is an error.
    """

    namespace: str
    label_selector: str
    local_port: int
    remote_port: int
    endpoint: str = "metrics"
    optional_label_affinity: str | None = None
    poll_interval: float = 0.5

    async def open(self, ctx: StepContext) -> PortForwardTunnel:
        opening = asyncio.ensure_future(asyncio.to_thread(
            ctx.cluster.port_forward,
            self.namespace,
            self.label_selector,
            self.local_port,
            self.remote_port,
            self.endpoint,
            self.optional_label_affinity,
        ))
        try:
            tunnel = await asyncio.shield(opening)
        except asyncio.CancelledError:
            # Cancelled while the tunnel was starting; wait for it so it can be closed.
            try:
                tunnel = await opening
            except Exception:
                raise asyncio.CancelledError from None
            await self._close(tunnel)
            raise

        logger.info("port-forward for %s open on localhost:%d", self.endpoint, self.local_port)
        return tunnel

    async def keep_alive(self, ctx: StepContext, tunnel: PortForwardTunnel) -> str | None:
        try:
            while True:
                code = tunnel.poll()
                if code is not None:
                    msg = f"port-forward for {self.endpoint} exited with code {code}: {tunnel.read_errors()}"
                    raise ExecutionError(msg)
                await asyncio.sleep(self.poll_interval)
        finally:
            await self._close(tunnel)

    async def run(self, ctx: StepContext) -> str | None:
        tunnel = await self.open(ctx)
        return await self.keep_alive(ctx, tunnel)

    async def _close(self, tunnel: PortForwardTunnel) -> None:
        if tunnel.poll() is None:
            tunnel.terminate()
            try:
                await asyncio.to_thread(tunnel.wait, 5)
            except subprocess.TimeoutExpired:
                tunnel.kill()
                await asyncio.to_thread(tunnel.wait)
        logger.info("port-forward for %s closed", self.endpoint)


@dataclass(frozen=True)
class DeleteKubernetesResource:
    """Delete a Kubernetes resource."""

    resource_type: str
    resource_name: str
    resource_namespace: str

    async def run(self, ctx: StepContext) -> str | None:
        return await asyncio.to_thread(
            ctx.cluster.delete_resource,
            self.resource_type,
            self.resource_name,
            self.resource_namespace,
        )
