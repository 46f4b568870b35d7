"""Tests for kubernetes.py — KubectlCluster and cluster steps."""

from __future__ import annotations

import asyncio
import io
import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest
import requests
import yaml

from dnse2e.background import BackgroundTaskRegistry
from dnse2e.errors import ExecutionError
from dnse2e.kubernetes import (
    CreateAgnhostStatefulSet,
    DeleteKubernetesResource,
    ExecInPod,
    KubectlCluster,
    PortForward,
    PortForwardTunnel,
    ResourceType,
    agnhost_statefulset,
)
from dnse2e.steps import StepContext
from tests.fakes import FakeCluster, FakeProcess


def _completed(stdout: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=0, stdout=stdout, stderr="")


def _pod(name: str, node: str, phase: str = "Running", owners: list[dict] | None = None) -> dict:
    return {
        "metadata": {"name": name, "ownerReferences": owners or []},
        "spec": {"nodeName": node},
        "status": {"phase": phase},
    }


def _items(*pods: dict) -> str:
    return json.dumps({"items": list(pods)})


class TestKubectl:
    def test_command_line(self) -> None:
        cluster = KubectlCluster(kubeconfig="/tmp/kc")
        with patch("dnse2e.kubernetes.subprocess.run", return_value=_completed(" ok \n")) as run:
            assert cluster.kubectl("get", "pods", namespace="kube-system") == "ok"
        cmd = run.call_args.args[0]
        assert cmd == ["kubectl", "--kubeconfig", "/tmp/kc", "-n", "kube-system", "get", "pods"]
        assert run.call_args.kwargs["check"] is True

    def test_kubeconfig_override(self) -> None:
        cluster = KubectlCluster(kubeconfig="/tmp/default")
        with patch("dnse2e.kubernetes.subprocess.run", return_value=_completed()) as run:
            cluster.kubectl("version", kubeconfig="/tmp/other")
        assert run.call_args.args[0] == ["kubectl", "--kubeconfig", "/tmp/other", "version"]

    def test_failure_wrapped(self) -> None:
        cluster = KubectlCluster()
        err = subprocess.CalledProcessError(1, ["kubectl"], stderr="Error from server (NotFound)\n")
        with patch("dnse2e.kubernetes.subprocess.run", side_effect=err), pytest.raises(
            ExecutionError, match=r"kubectl get pod x failed \(exit 1\): Error from server \(NotFound\)"
        ) as exc_info:
            cluster.kubectl("get", "pod", "x")
        assert exc_info.value.__cause__ is err

    def test_missing_binary(self) -> None:
        cluster = KubectlCluster(kubectl_bin="/nonexistent/kubectl")
        with patch("dnse2e.kubernetes.subprocess.run", side_effect=FileNotFoundError("no such file")):
            with pytest.raises(ExecutionError, match="cannot run /nonexistent/kubectl"):
                cluster.kubectl("version")


class TestKubectlCluster:
    def test_create_workload(self) -> None:
        cluster = KubectlCluster(rollout_timeout=60)
        with patch("dnse2e.kubernetes.subprocess.run", return_value=_completed("created")) as run:
            cluster.create_workload("agnhost-1", "kube-system")

        apply_call, rollout_call = run.call_args_list
        assert apply_call.args[0][-3:] == ["apply", "-f", "-"]
        manifest = yaml.safe_load(apply_call.kwargs["input"])
        assert manifest == agnhost_statefulset("agnhost-1", "kube-system")
        assert rollout_call.args[0][-3:] == ["status", "statefulset/agnhost-1", "--timeout=60s"]

    def test_manifest(self) -> None:
        manifest = agnhost_statefulset("agnhost-1", "kube-system")
        assert manifest["kind"] == "StatefulSet"
        assert manifest["spec"]["replicas"] == 1
        assert manifest["spec"]["selector"]["matchLabels"] == {"app": "agnhost-1"}
        assert manifest["spec"]["template"]["metadata"]["labels"] == {"app": "agnhost-1"}

    def test_exec_in_pod(self) -> None:
        cluster = KubectlCluster()
        with patch("dnse2e.kubernetes.subprocess.run", return_value=_completed("Name: x")) as run:
            assert cluster.exec_in_pod("agnhost-1-0", "kube-system", "nslookup kubernetes.default") == "Name: x"
        assert run.call_args.args[0] == [
            "kubectl", "-n", "kube-system", "exec", "agnhost-1-0", "--", "nslookup", "kubernetes.default",
        ]

    def test_delete_resource(self) -> None:
        cluster = KubectlCluster()
        with patch("dnse2e.kubernetes.subprocess.run", return_value=_completed()) as run:
            cluster.delete_resource(ResourceType.STATEFUL_SET, "agnhost-1", "kube-system")
        assert run.call_args.args[0][-3:] == ["delete", "StatefulSet", "agnhost-1"]

    def test_select_pod_with_affinity(self) -> None:
        cluster = KubectlCluster()
        responses = [
            _completed(_items(_pod("retina-a", "node-a"), _pod("retina-b", "node-b"))),
            _completed(_items(_pod("agnhost-1-0", "node-b"))),
        ]
        with patch("dnse2e.kubernetes.subprocess.run", side_effect=responses) as run:
            pod = cluster.select_pod("kube-system", "k8s-app=retina", "app=agnhost-1")
        assert pod == "retina-b"
        assert "k8s-app=retina" in run.call_args_list[0].args[0]
        assert "app=agnhost-1" in run.call_args_list[1].args[0]

    def test_select_pod_skips_pending(self) -> None:
        cluster = KubectlCluster()
        pods = _items(_pod("retina-a", "node-a", phase="Pending"), _pod("retina-b", "node-b"))
        with patch("dnse2e.kubernetes.subprocess.run", return_value=_completed(pods)):
            assert cluster.select_pod("kube-system", "k8s-app=retina") == "retina-b"

    def test_select_pod_none_running(self) -> None:
        cluster = KubectlCluster()
        with patch("dnse2e.kubernetes.subprocess.run", return_value=_completed(_items())):
            with pytest.raises(ExecutionError, match="no running pods"):
                cluster.select_pod("kube-system", "k8s-app=retina")

    def test_select_pod_no_colocated(self) -> None:
        cluster = KubectlCluster()
        responses = [
            _completed(_items(_pod("retina-a", "node-a"))),
            _completed(_items(_pod("agnhost-1-0", "node-b"))),
        ]
        with patch("dnse2e.kubernetes.subprocess.run", side_effect=responses):
            with pytest.raises(ExecutionError, match="runs on a node with app=agnhost-1"):
                cluster.select_pod("kube-system", "k8s-app=retina", "app=agnhost-1")

    def test_port_forward_waits_for_endpoint(self) -> None:
        cluster = KubectlCluster()
        proc = MagicMock(pid=1234, stderr=io.StringIO(""))
        proc.poll.return_value = None
        with patch.object(cluster, "select_pod", return_value="retina-b") as select, patch(
            "dnse2e.kubernetes.subprocess.Popen", return_value=proc
        ) as popen, patch(
            "dnse2e.kubernetes.requests.get", side_effect=[requests.ConnectionError("refused"), MagicMock()]
        ) as get, patch("dnse2e.kubernetes.time.sleep") as sleep:
            tunnel = cluster.port_forward("kube-system", "k8s-app=retina", 10093, 10093, "metrics", "app=x")

        assert tunnel.process is proc
        select.assert_called_once_with("kube-system", "k8s-app=retina", "app=x")
        assert popen.call_args.args[0] == [
            "kubectl", "-n", "kube-system", "port-forward", "pod/retina-b", "10093:10093",
        ]
        assert get.call_count == 2
        get.assert_called_with("http://localhost:10093/metrics", timeout=2)
        sleep.assert_called_once_with(0.5)
        proc.terminate.assert_not_called()

    def test_port_forward_exits_before_ready(self) -> None:
        cluster = KubectlCluster()
        proc = MagicMock(pid=1234, stderr=io.StringIO("error: unable to listen on port 10093\n"))
        proc.poll.return_value = 1
        with patch.object(cluster, "select_pod", return_value="retina-b"), patch(
            "dnse2e.kubernetes.subprocess.Popen", return_value=proc
        ), patch("dnse2e.kubernetes.requests.get") as get:
            with pytest.raises(ExecutionError, match="exited with code 1 before .*: error: unable to listen"):
                cluster.port_forward("kube-system", "k8s-app=retina", 10093, 10093)
        get.assert_not_called()

    def test_port_forward_endpoint_never_ready(self) -> None:
        cluster = KubectlCluster(tunnel_timeout=0)
        proc = MagicMock(pid=1234, stderr=io.StringIO(""))
        proc.poll.return_value = None
        with patch.object(cluster, "select_pod", return_value="retina-b"), patch(
            "dnse2e.kubernetes.subprocess.Popen", return_value=proc
        ), patch("dnse2e.kubernetes.requests.get", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(ExecutionError, match="http://localhost:10093/metrics not reachable"):
                cluster.port_forward("kube-system", "k8s-app=retina", 10093, 10093)
        proc.terminate.assert_called_once()
        proc.wait.assert_called_once_with(5)

    def test_resolve_statefulset(self) -> None:
        cluster = KubectlCluster()
        pod = _pod("agnhost-1-0", "node-a", owners=[
            {"kind": "StatefulSet", "name": "agnhost-1", "controller": True},
        ])
        with patch("dnse2e.kubernetes.subprocess.run", return_value=_completed(json.dumps(pod))) as run:
            assert cluster.resolve_workload_for_pod("agnhost-1-0", "kube-system", "/tmp/kc") == (
                "StatefulSet", "agnhost-1",
            )
        assert run.call_args.args[0][:3] == ["kubectl", "--kubeconfig", "/tmp/kc"]

    def test_resolve_deployment_through_replicaset(self) -> None:
        cluster = KubectlCluster()
        pod = _pod("coredns-abc-xyz", "node-a", owners=[
            {"kind": "ReplicaSet", "name": "coredns-abc", "controller": True},
        ])
        rs = {"metadata": {"name": "coredns-abc", "ownerReferences": [
            {"kind": "Deployment", "name": "coredns", "controller": True},
        ]}}
        responses = [_completed(json.dumps(pod)), _completed(json.dumps(rs))]
        with patch("dnse2e.kubernetes.subprocess.run", side_effect=responses):
            assert cluster.resolve_workload_for_pod("coredns-abc-xyz", "kube-system") == (
                "Deployment", "coredns",
            )

    def test_resolve_orphan_pod(self) -> None:
        cluster = KubectlCluster()
        pod = _pod("debug", "node-a")
        with patch("dnse2e.kubernetes.subprocess.run", return_value=_completed(json.dumps(pod))):
            with pytest.raises(ExecutionError, match="has no owning workload"):
                cluster.resolve_workload_for_pod("debug", "default")


class TestPortForwardTunnel:
    def test_drains_stderr(self) -> None:
        lines = "".join(f"Handling connection for 10093 ({i})\n" for i in range(100))
        proc = MagicMock(pid=1234, stderr=io.StringIO(lines + "error: lost connection to pod\n"))
        proc.poll.return_value = 1

        tunnel = PortForwardTunnel(proc, keep_lines=3)

        assert tunnel.read_errors() == (
            "Handling connection for 10093 (98)\n"
            "Handling connection for 10093 (99)\n"
            "error: lost connection to pod"
        )
        assert tunnel.poll() == 1
        assert tunnel.pid == 1234


class TestClusterSteps:
    async def test_create_exec_delete(self, ctx: StepContext, cluster: FakeCluster) -> None:
        await CreateAgnhostStatefulSet("agnhost-1", "kube-system").run(ctx)
        output = await ExecInPod("agnhost-1-0", "kube-system", "nslookup kubernetes.default").run(ctx)
        await DeleteKubernetesResource(ResourceType.STATEFUL_SET, "agnhost-1", "kube-system").run(ctx)

        assert output == "Server: 10.0.0.10"
        assert cluster.calls == [
            ("create", "agnhost-1", "kube-system"),
            ("exec", "agnhost-1-0", "kube-system", "nslookup kubernetes.default"),
            ("delete", "StatefulSet", "agnhost-1", "kube-system"),
        ]

    async def test_exec_error_propagates(self) -> None:
        ctx = StepContext(
            cluster=FakeCluster(exec_error=ExecutionError("command terminated with exit code 1")),
            background=BackgroundTaskRegistry(),
        )
        with pytest.raises(ExecutionError, match="exit code 1"):
            await ExecInPod("agnhost-1-0", "kube-system", "nslookup nx.").run(ctx)

    async def test_port_forward_until_cancelled(self, ctx: StepContext, cluster: FakeCluster) -> None:
        step = PortForward("kube-system", "k8s-app=retina", 10093, 10093, "metrics", "app=x", poll_interval=0.01)
        task = asyncio.create_task(step.run(ctx))
        await asyncio.sleep(0.05)
        assert not task.done()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert cluster.calls == [("port-forward", "kube-system", "k8s-app=retina", 10093, 10093, "metrics", "app=x")]
        assert cluster.processes[0].terminated

    async def test_port_forward_process_exit(self) -> None:
        cluster = FakeCluster(process=FakeProcess(returncode=1, stderr="error: lost connection to pod\n"))
        ctx = StepContext(cluster=cluster, background=BackgroundTaskRegistry())
        step = PortForward("kube-system", "k8s-app=retina", 10093, 10093, poll_interval=0.01)

        with pytest.raises(ExecutionError, match="exited with code 1: error: lost connection to pod"):
            await step.run(ctx)
        assert not cluster.processes[0].terminated

    async def test_port_forward_open_then_keep_alive(self, ctx: StepContext, cluster: FakeCluster) -> None:
        step = PortForward("kube-system", "k8s-app=retina", 10093, 10093, poll_interval=0.01)

        tunnel = await step.open(ctx)
        assert cluster.tunnel_open
        assert tunnel is cluster.processes[0]

        task = asyncio.create_task(step.keep_alive(ctx, tunnel))
        await asyncio.sleep(0.03)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        assert tunnel.terminated

    async def test_port_forward_cancelled_while_opening(self) -> None:
        cluster = FakeCluster(open_delay=0.1)
        ctx = StepContext(cluster=cluster, background=BackgroundTaskRegistry())
        step = PortForward("kube-system", "k8s-app=retina", 10093, 10093)

        task = asyncio.create_task(step.open(ctx))
        await asyncio.sleep(0.02)
        task.cancel()
        results = await asyncio.gather(task, return_exceptions=True)

        assert isinstance(results[0], asyncio.CancelledError)
        assert cluster.processes[0].terminated
